"""Per-property research workflow: steps, runs and the engine that executes them."""

from .engine import WorkflowEngine, research_fields
from .models import RunStatus, StepStatus, WorkflowRun, WorkflowStep
from .steps import StepDescriptor, StepSkipped, default_steps

__all__ = [
    "WorkflowEngine", "research_fields",
    "RunStatus", "StepStatus", "WorkflowRun", "WorkflowStep",
    "StepDescriptor", "StepSkipped", "default_steps",
]
