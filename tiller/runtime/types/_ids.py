"""ID types and generators for the types package.

Provides run id generation plus type aliases.
"""

from __future__ import annotations

import secrets
import string

# Type aliases
RunId = str
AgentId = str

RUN_ID_PREFIX = "run-"
RUN_ID_SUFFIX_LENGTH = 6


def generate_run_id() -> RunId:
    """Generate an opaque run ID.

    Creates IDs in the format: run-xxxxxx where xxxxxx is a random
    6-character lowercase alphanumeric suffix. The id carries no plan
    numbering; callers check for collisions against the store.

    Returns:
        A run identifier string.

    Example:
        >>> run_id = generate_run_id()
        >>> run_id  # e.g., "run-k3x9qa"
    """
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(RUN_ID_SUFFIX_LENGTH))
    return f"{RUN_ID_PREFIX}{suffix}"
