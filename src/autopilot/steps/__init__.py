from autopilot.steps.base import (
    COLLABORATOR_ERRORS,
    MonitorContext,
    Step,
    StepConfig,
    StepContext,
    StepDependencies,
    StepResult,
    StepUpdate,
    TraceMutations,
    TraceUpdate,
)
from autopilot.steps.committer import CommitterStep
from autopilot.steps.coordinator import CoordinatorStep
from autopilot.steps.noop import NoopStep
from autopilot.steps.notify import NotifyStep
from autopilot.steps.planner import PlannerStep
from autopilot.steps.pusher import PusherStep
from autopilot.steps.registry import STEP_CLASSES, build_steps
from autopilot.steps.resolver import ResolverStep
from autopilot.steps.workflow import WorkflowStep

__all__ = [
    "COLLABORATOR_ERRORS",
    "STEP_CLASSES",
    "CommitterStep",
    "CoordinatorStep",
    "MonitorContext",
    "NoopStep",
    "NotifyStep",
    "PlannerStep",
    "PusherStep",
    "ResolverStep",
    "Step",
    "StepConfig",
    "StepContext",
    "StepDependencies",
    "StepResult",
    "StepUpdate",
    "TraceMutations",
    "TraceUpdate",
    "WorkflowStep",
    "build_steps",
]
