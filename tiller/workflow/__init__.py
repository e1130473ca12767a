# tiller/workflow package
# Declarative multi-step workflows, independent of runs.
#
# Core components:
#   - types: WorkflowDefinition, WorkflowStep, StepEdge, WorkflowInstance
#   - conditions: condition grammar (tokenizer, parser, evaluator)
#   - router: edge ordering and next-step selection
#   - loader: YAML + JSON Schema loading and semantic validation
#   - instance: one JSON file per instance
#   - executor: WorkflowExecutor, ExecutorContext hooks, build_step_prompt
#
# Usage:
#     from tiller.workflow import InstanceStore, WorkflowExecutor, load_workflow
#     definition = load_workflow("plan-review", paths)
#     store = InstanceStore(paths)
#     result = WorkflowExecutor(store).execute(definition, store.create(definition), ctx)

from .conditions import ConditionSyntaxError, evaluate_condition, parse_condition
from .executor import ABORT, ExecuteResult, ExecutorContext, ScriptedContext, WorkflowExecutor
from .instance import InstanceStore
from .loader import list_workflows, load_workflow
from .router import next_steps, select_next_step
from .types import NextStep, StepEdge, WorkflowDefinition, WorkflowInstance, WorkflowStep
