from __future__ import annotations

from autopilot.config import AutopilotConfig
from autopilot.steps.base import Step
from autopilot.steps.committer import CommitterStep
from autopilot.steps.coordinator import CoordinatorStep
from autopilot.steps.noop import NoopStep
from autopilot.steps.notify import NotifyStep
from autopilot.steps.planner import PlannerStep
from autopilot.steps.pusher import PusherStep
from autopilot.steps.resolver import ResolverStep
from autopilot.steps.workflow import WorkflowStep

STEP_CLASSES: tuple[type[Step], ...] = (
    CoordinatorStep,
    PlannerStep,
    WorkflowStep,
    CommitterStep,
    ResolverStep,
    PusherStep,
    NotifyStep,
    NoopStep,
)


def build_steps(config: AutopilotConfig | None = None) -> dict[str, Step]:
    """Instantiate every step keyed by the action type it handles."""
    config = config or AutopilotConfig.default()
    return {
        step_class.action_type: step_class(
            max_parallel=config.steps.max_parallel(step_class.action_type)
        )
        for step_class in STEP_CLASSES
    }
