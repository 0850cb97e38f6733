"""
Workflow Models
===============
A WorkflowRun is one pass of the research steps over one property. Runs are
logged in the WorkflowRunLog JSON shape (camelCase keys).
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class WorkflowStep:
    step_id: str
    step_name: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    details: Optional[str] = None
    error: Optional[str] = None

    def start(self):
        self.status = StepStatus.RUNNING
        self.started_at = _now()

    def finish(self, status: StepStatus, details: Optional[str] = None, error: Optional[str] = None):
        self.status = status
        self.completed_at = _now()
        if details:
            self.details = details
        if error:
            self.error = error

    def to_dict(self) -> Dict[str, Any]:
        data = {"stepId": self.step_id, "stepName": self.step_name, "status": self.status.value}
        for key, value in (("startedAt", self.started_at), ("completedAt", self.completed_at),
                           ("details", self.details), ("error", self.error)):
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowStep":
        return cls(
            step_id=data.get("stepId", ""),
            step_name=data.get("stepName", ""),
            status=StepStatus(data.get("status", "pending")),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            details=data.get("details"),
            error=data.get("error"),
        )


@dataclass
class WorkflowRun:
    property_id: str
    property_name: str = ""
    id: str = ""
    status: RunStatus = RunStatus.RUNNING
    steps: List[WorkflowStep] = field(default_factory=list)
    started_at: str = ""
    completed_at: Optional[str] = None
    error: Optional[str] = None
    quality_gate_passed: Optional[bool] = None
    quality_gate_reason: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"run-{uuid.uuid4().hex[:8]}"
        if not self.started_at:
            self.started_at = _now()

    @property
    def is_running(self) -> bool:
        return self.status == RunStatus.RUNNING

    def step(self, step_id: str) -> Optional[WorkflowStep]:
        for s in self.steps:
            if s.step_id == step_id:
                return s
        return None

    def finish(self, status: RunStatus, error: Optional[str] = None):
        self.status = status
        self.completed_at = _now()
        if error:
            self.error = error

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "runId": self.id,
            "propertyId": self.property_id,
            "propertyName": self.property_name,
            "startedAt": self.started_at,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.completed_at is not None:
            data["completedAt"] = self.completed_at
        if self.error is not None:
            data["error"] = self.error
        if self.quality_gate_passed is not None:
            data["qualityGatePassed"] = self.quality_gate_passed
            data["qualityGateReason"] = self.quality_gate_reason or ""
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowRun":
        return cls(
            id=data.get("runId", ""),
            property_id=data.get("propertyId", ""),
            property_name=data.get("propertyName", ""),
            status=RunStatus(data.get("status", "running")),
            steps=[WorkflowStep.from_dict(s) for s in data.get("steps", [])],
            started_at=data.get("startedAt", ""),
            completed_at=data.get("completedAt"),
            error=data.get("error"),
            quality_gate_passed=data.get("qualityGatePassed"),
            quality_gate_reason=data.get("qualityGateReason"),
        )
