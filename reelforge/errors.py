"""
Error taxonomy for ReelForge.

Every provider failure surfaces as one of three adapter-level kinds:

    Unavailable   provider down, slow, unreachable, or a timeout elapsed
    AuthRequired  the stored session is no longer authenticated
    Malformed     the provider answered, but not in a usable shape

Pipeline-level failures wrap them (StageFailed) or report planning problems
(StageUnresolvable).  Raw exceptions are mapped onto the taxonomy with
classify_error(), which also produces a structured ErrorContext with recovery
hints for logs and the activity trail.

Usage:
    from reelforge.errors import Unavailable, to_adapter_error

    try:
        await page.click(selector)
    except Exception as exc:
        raise to_adapter_error(exc, adapter_id="runway", capability="image") from exc
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from reelforge.utils import _now_iso


# ===================================================================
# EXCEPTIONS
# ===================================================================

class ReelForgeError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(ReelForgeError):
    """Adapter or runtime configuration is missing or invalid."""


class RegistryError(ReelForgeError):
    """An adapter registration violates the registry rules."""


class AdapterError(ReelForgeError):
    """A provider operation failed."""

    def __init__(
        self,
        message: str,
        adapter_id: str = "",
        capability: str = "",
        diagnostics: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message)
        self.adapter_id = adapter_id
        self.capability = capability
        self.diagnostics: List[str] = list(diagnostics or [])

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        base = super().__str__()
        if self.adapter_id:
            return f"[{self.adapter_id}:{self.capability or '-'}] {base}"
        return base


class Unavailable(AdapterError):
    """Provider unreachable, degraded, or too slow."""


class AuthRequired(AdapterError):
    """The stored session must be refreshed by an operator."""


class Malformed(AdapterError):
    """Provider output could not be parsed or was empty."""


class PipelineError(ReelForgeError):
    """Raised by the orchestrator when a run cannot complete."""


class StageUnresolvable(PipelineError):
    """No adapter is registered for a required capability key."""

    def __init__(self, capability_key: str) -> None:
        super().__init__(f"No adapter registered for '{capability_key}'")
        self.capability_key = capability_key


class StageFailed(PipelineError):
    """A core stage failed; *cause* is the underlying error."""

    def __init__(self, capability_key: str, adapter_id: str, cause: BaseException) -> None:
        super().__init__(f"Stage '{capability_key}' failed on '{adapter_id}': {cause}")
        self.capability_key = capability_key
        self.adapter_id = adapter_id
        self.cause = cause


class JobError(ReelForgeError):
    """A queued job cannot be processed."""


class InvalidPayload(JobError):
    """The job payload does not match its job type."""


class JobNotFound(JobError):
    """No job with the requested id exists."""


# ===================================================================
# ERROR CODES
# ===================================================================

class ErrorCode(str, Enum):
    """Structured error codes.

    Ranges:
        E1xxx: provider availability
        E2xxx: provider authentication
        E3xxx: provider output
        E4xxx: pipeline planning and execution
        E5xxx: job handling
        E9xxx: internal
    """

    E1001 = "PROVIDER_UNAVAILABLE"
    E1002 = "PROVIDER_TIMEOUT"
    E1003 = "NAVIGATION_FAILED"
    E1004 = "DOWNLOAD_FAILED"

    E2001 = "AUTH_REQUIRED"
    E2002 = "SESSION_EXPIRED"

    E3001 = "MALFORMED_OUTPUT"
    E3002 = "EMPTY_OUTPUT"

    E4001 = "STAGE_UNRESOLVABLE"
    E4002 = "STAGE_FAILED"

    E5001 = "INVALID_PAYLOAD"
    E5002 = "EXTRACTION_FAILED"

    E9001 = "INTERNAL_ERROR"
    E9002 = "CONFIG_INVALID"


# A job failing with one of these is parked as failed on its first attempt;
# every other failure goes back through the queue's backoff.
NON_RETRYABLE_CODES: Set[ErrorCode] = {
    ErrorCode.E5001,
    ErrorCode.E9002,
}

RECOVERY_HINTS: Dict[ErrorCode, List[str]] = {
    ErrorCode.E1001: ["Check provider status page", "Retry later"],
    ErrorCode.E1002: ["Increase the capability timeout", "Check provider latency"],
    ErrorCode.E1003: ["Verify base_url in adapters.json", "Check network connectivity"],
    ErrorCode.E1004: ["Check download_wait timeout", "Verify disk space"],
    ErrorCode.E2001: ["Log in manually and refresh the stored session"],
    ErrorCode.E2002: ["Clear the session record and re-authenticate"],
    ErrorCode.E3001: ["Provider UI may have changed", "Review flow selectors"],
    ErrorCode.E3002: ["Inspect the diagnostic screenshot", "Review output selector"],
    ErrorCode.E4001: ["Register an adapter for the capability key"],
    ErrorCode.E4002: ["Inspect the stage error and diagnostics"],
    ErrorCode.E5001: ["Fix the job payload and enqueue again"],
    ErrorCode.E5002: ["Check the source URL is reachable"],
    ErrorCode.E9001: ["Check logs for stack trace"],
    ErrorCode.E9002: ["Fix configs/adapters.json"],
}

_ADAPTER_CODE: Dict[type, ErrorCode] = {
    Unavailable: ErrorCode.E1001,
    AuthRequired: ErrorCode.E2001,
    Malformed: ErrorCode.E3001,
}


# ===================================================================
# ERROR CONTEXT
# ===================================================================

@dataclass
class ErrorContext:
    """Structured error report with classification and recovery hints."""

    code: ErrorCode
    message: str
    module: str
    operation: str
    timestamp: str = ""
    recovery_hints: List[str] = field(default_factory=list)
    retryable: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = _now_iso()
        if not self.recovery_hints:
            self.recovery_hints = list(RECOVERY_HINTS.get(self.code, []))
        if self.code in NON_RETRYABLE_CODES:
            self.retryable = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["code"] = self.code.name
        d["code_value"] = self.code.value
        return d

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.code.value}: {self.message} (module={self.module}, op={self.operation})"


# ===================================================================
# CLASSIFIER
# ===================================================================

def classify_error(
    exception: BaseException,
    module: str = "unknown",
    operation: str = "unknown",
    metadata: Optional[Dict[str, Any]] = None,
) -> ErrorContext:
    """Map a raw exception to a structured ErrorContext.

    Adapter and pipeline exceptions map directly.  Anything else is inspected
    by type name and message; Playwright's TimeoutError is matched by name so
    this module does not import the driver.
    """
    exc_type = type(exception).__name__
    exc_msg = str(exception).lower()
    meta = dict(metadata or {})
    meta["exception_type"] = exc_type

    cause_hints: List[str] = []
    if isinstance(exception, StageFailed):
        code = ErrorCode.E4002
        cause = classify_error(exception.cause)
        meta["stage"] = exception.capability_key
        meta["adapter_id"] = exception.adapter_id
        meta["cause_code"] = cause.code.name
        cause_hints = cause.recovery_hints
    elif isinstance(exception, StageUnresolvable):
        code = ErrorCode.E4001
    elif isinstance(exception, InvalidPayload):
        code = ErrorCode.E5001
    elif isinstance(exception, ConfigError):
        code = ErrorCode.E9002
    elif isinstance(exception, AdapterError):
        code = next(
            (c for cls, c in _ADAPTER_CODE.items() if isinstance(exception, cls)),
            ErrorCode.E1001,
        )
        meta.setdefault("adapter_id", exception.adapter_id)

    elif exc_type == "TimeoutError" or "timeout" in exc_msg:
        code = ErrorCode.E1002
    elif "401" in exc_msg or "unauthorized" in exc_msg or "log in" in exc_msg or "sign in" in exc_msg:
        code = ErrorCode.E2001
    elif "403" in exc_msg or "forbidden" in exc_msg or "session expired" in exc_msg:
        code = ErrorCode.E2002
    elif exc_type == "JSONDecodeError" or "decode" in exc_msg:
        code = ErrorCode.E3001
    elif "net::" in exc_msg or "navigation" in exc_msg:
        code = ErrorCode.E1003
    elif "download" in exc_msg:
        code = ErrorCode.E1004
    elif exc_type in (
        "ConnectionError", "ConnectionResetError", "ConnectionRefusedError",
        "ClientConnectorError", "ClientError", "ServerDisconnectedError",
    ):
        code = ErrorCode.E1001
    elif exc_type == "Error" and type(exception).__module__.startswith("playwright"):
        code = ErrorCode.E1001
    else:
        code = ErrorCode.E9001

    return ErrorContext(
        code=code,
        message=str(exception),
        module=module,
        operation=operation,
        recovery_hints=cause_hints + RECOVERY_HINTS.get(code, []),
        metadata=meta,
    )


_CODE_TO_ADAPTER_ERROR: Dict[ErrorCode, type] = {
    ErrorCode.E1001: Unavailable,
    ErrorCode.E1002: Unavailable,
    ErrorCode.E1003: Unavailable,
    ErrorCode.E1004: Unavailable,
    ErrorCode.E2001: AuthRequired,
    ErrorCode.E2002: AuthRequired,
    ErrorCode.E3001: Malformed,
    ErrorCode.E3002: Malformed,
}


def to_adapter_error(
    exception: BaseException,
    adapter_id: str = "",
    capability: str = "",
) -> AdapterError:
    """Convert any exception raised inside a provider call into an AdapterError.

    Unclassified failures become Unavailable: the provider did not deliver.
    """
    if isinstance(exception, AdapterError):
        if not exception.adapter_id:
            exception.adapter_id = adapter_id
        if not exception.capability:
            exception.capability = capability
        return exception
    ctx = classify_error(exception, module=adapter_id or "adapter", operation=capability)
    cls = _CODE_TO_ADAPTER_ERROR.get(ctx.code, Unavailable)
    message = str(exception) or type(exception).__name__
    return cls(message, adapter_id=adapter_id, capability=capability)
