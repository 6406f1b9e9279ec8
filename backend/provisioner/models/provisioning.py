from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DependencyKind(str, Enum):
    """The three layers of the OCR runtime, in install order."""
    INTERPRETER = "interpreter"   # python on PATH
    PACKAGE = "package"           # cnocr distribution
    MODEL = "model"               # onnx model bundle

    @property
    def requires_interpreter(self) -> bool:
        return self is not DependencyKind.INTERPRETER


class DependencyState(str, Enum):
    UNKNOWN = "unknown"
    MISSING = "missing"
    INSTALLED = "installed"
    # Transient states, never reported by a probe
    CHECKING = "checking"
    INSTALLING = "installing"
    CANCELLING = "cancelling"

    @property
    def is_transient(self) -> bool:
        return self in (DependencyState.CHECKING, DependencyState.INSTALLING, DependencyState.CANCELLING)


class InstallStatus(str, Enum):
    INSTALLING = "installing"
    INSTALLED = "installed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EnvironmentSnapshot(BaseModel):
    """Immutable view of the three dependency states plus derived readiness."""
    model_config = ConfigDict(frozen=True)

    interpreter: DependencyState = DependencyState.UNKNOWN
    package: DependencyState = DependencyState.UNKNOWN
    model: DependencyState = DependencyState.UNKNOWN
    ready: bool = False
    model_ready: bool = False
    check_bypassed: bool = False
    status_message: str = ""
    taken_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_states(
        cls,
        states: dict[DependencyKind, DependencyState],
        check_bypassed: bool = False,
    ) -> "EnvironmentSnapshot":
        interpreter = states.get(DependencyKind.INTERPRETER, DependencyState.UNKNOWN)
        package = states.get(DependencyKind.PACKAGE, DependencyState.UNKNOWN)
        model = states.get(DependencyKind.MODEL, DependencyState.UNKNOWN)

        ready = interpreter == DependencyState.INSTALLED and package == DependencyState.INSTALLED
        model_ready = model == DependencyState.INSTALLED

        return cls(
            interpreter=interpreter,
            package=package,
            model=model,
            ready=ready,
            model_ready=model_ready,
            check_bypassed=check_bypassed,
            status_message=_status_message(interpreter, package, model, ready, model_ready),
        )

    def state_of(self, kind: DependencyKind) -> DependencyState:
        return getattr(self, kind.value)

    def missing_kinds(self) -> list[DependencyKind]:
        return [k for k in DependencyKind if self.state_of(k) != DependencyState.INSTALLED]


def _status_message(
    interpreter: DependencyState,
    package: DependencyState,
    model: DependencyState,
    ready: bool,
    model_ready: bool,
) -> str:
    if any(s.is_transient for s in (interpreter, package, model)):
        if DependencyState.INSTALLING in (interpreter, package, model):
            return "Installing OCR components..."
        return "Checking OCR environment..."
    if interpreter != DependencyState.INSTALLED:
        return "Python was not detected. Install Python to enable OCR import."
    if package != DependencyState.INSTALLED:
        return "The cnocr package is not installed."
    if not model_ready:
        # Models are downloaded automatically on first recognition
        return "OCR environment ready. Models will be downloaded on first use."
    return "OCR environment ready."


class ProgressEvent(BaseModel):
    """One item of an install stream; the last one has a terminal status."""
    kind: DependencyKind
    session_id: str
    status: InstallStatus
    progress: int = Field(ge=0, le=100)
    message: str = ""
    error_code: Optional[str] = None
    retryable: Optional[bool] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def terminal(self) -> bool:
        return self.status != InstallStatus.INSTALLING


@dataclass(frozen=True)
class ProgressSample:
    """Input to the progress estimator: time since start, optional output line or byte fraction."""
    elapsed: float
    line: Optional[str] = None
    fraction: Optional[float] = None
