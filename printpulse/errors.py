"""
PrintPulse exceptions.

Generation errors come from the Gemini adapter and carry an ErrorKind so the
HTTP layer and the stage status can report them uniformly. Stage errors come
from the transition controller and the production service.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    AUTH_MISSING = "AuthMissing"
    QUOTA_OR_BILLING = "QuotaOrBilling"
    MALFORMED_RESPONSE = "MalformedResponse"
    NO_ARTIFACT_PRODUCED = "NoArtifactProduced"
    TIMEOUT = "Timeout"
    STAGE_ORDER = "StageOrder"
    STAGE_PRECONDITION = "StagePrecondition"
    STAGE_BUSY = "StageBusy"
    STAGE_CANCELLED = "StageCancelled"
    PUBLISH_FAILED = "PublishFailed"


class PrintPulseError(Exception):
    """Base exception for all PrintPulse errors."""

    kind: Optional[ErrorKind] = None

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# ── Generation Service errors ────────────────────────────────────────────────

class GenerationError(PrintPulseError):
    """Raised when a call to the generation backend fails."""


class AuthMissingError(GenerationError):
    """No usable credential is configured."""

    kind = ErrorKind.AUTH_MISSING


class QuotaOrBillingError(GenerationError):
    """The backend rejected the call because of account limits."""

    kind = ErrorKind.QUOTA_OR_BILLING


class MalformedResponseError(GenerationError):
    """The backend output did not parse or validate."""

    kind = ErrorKind.MALFORMED_RESPONSE


class NoArtifactProducedError(GenerationError):
    """A well-formed response lacked the expected media."""

    kind = ErrorKind.NO_ARTIFACT_PRODUCED


class GenerationTimeoutError(GenerationError):
    """Transport timeout, or the poll loop ran out of attempts."""

    kind = ErrorKind.TIMEOUT


# ── Stage errors ─────────────────────────────────────────────────────────────

class StageError(PrintPulseError):
    """Base exception for stage transition errors."""


class StageOrderError(StageError):
    kind = ErrorKind.STAGE_ORDER

    def __init__(self, requested: str, current: str):
        message = f"Stage '{requested}' is not the current stage ('{current}')"
        super().__init__(message, {"requested": requested, "current": current})


class StagePreconditionError(StageError):
    kind = ErrorKind.STAGE_PRECONDITION

    def __init__(self, stage: str, missing: list):
        message = f"Cannot enter stage '{stage}': missing {', '.join(missing)}"
        super().__init__(message, {"stage": stage, "missing": missing})


class StageBusyError(StageError):
    kind = ErrorKind.STAGE_BUSY

    def __init__(self, running: str, requested: str):
        message = f"Stage '{running}' is still in progress"
        super().__init__(message, {"running": running, "requested": requested})


class StageCancelledError(StageError):
    """The project was restarted while the stage was in flight."""

    kind = ErrorKind.STAGE_CANCELLED


class MockupCapacityError(StageError):
    kind = ErrorKind.STAGE_PRECONDITION

    def __init__(self, capacity: int):
        super().__init__(
            f"Mockup run already holds {capacity} result(s)", {"capacity": capacity}
        )


# ── Publish errors ───────────────────────────────────────────────────────────

class PublishError(PrintPulseError):
    kind = ErrorKind.PUBLISH_FAILED
