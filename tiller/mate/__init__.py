# tiller/mate package
# Named worker identities, held by one process at a time.
#
# Core components:
#   - types: Mate, MateState and camelCase serdes
#   - liveness: PID liveness and session staleness probes
#   - locking: MateLock (O_EXCL lock file, dead-holder takeover, deadline)
#   - registry: MateRegistry (add/claim/release/remove/gc, legacy migration)
#   - names: deterministic hand names
#
# Usage:
#     from tiller.mate import MateRegistry, MateState
#     registry = MateRegistry(paths)
#     registry.claim("ellis-reed", ctx, state=MateState.SAILING)

from .liveness import is_pid_alive, is_session_stale
from .locking import MateLock
from .names import hand_name, hand_name_from_seed, random_hand_name
from .registry import MateRegistry
from .types import Mate, MateState
