"""
Typed exceptions for loadstage.

Provides structured error handling with:
- LoadStageError: Base exception for all loadstage errors
- ConfigurationError: Bad stages, thresholds or metric kind conflicts
- IterationError: A workload iteration failed (only raised when aborting)
- ReportingError: Summary artifacts could not be rendered or written

All exceptions include structured attributes for programmatic handling.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LoadStageError(Exception):
    """Base exception for all loadstage errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or the summary artifact."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(LoadStageError):
    """Configuration or validation error.

    Raised before any load is generated when:
    - A stage has a negative duration/target or an unparsable duration
    - A threshold expression is malformed or uses an unknown selector
    - A metric name is reused with a different kind

    Examples:
        ConfigurationError("Unknown selector", details={"expression": "p95<1"})
    """

    pass


class IterationError(LoadStageError):
    """A workload iteration raised.

    Iteration errors are normally recorded and swallowed by the executor.
    This is only raised to the caller when abort_on_error is enabled.

    Attributes:
        vu_id: Virtual user that ran the iteration
        iteration: Iteration index within that virtual user
    """

    def __init__(
        self,
        message: str,
        *,
        vu_id: Optional[int] = None,
        iteration: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if vu_id is not None:
            details["vu_id"] = vu_id
        if iteration is not None:
            details["iteration"] = iteration

        self.vu_id = vu_id
        self.iteration = iteration

        super().__init__(message, code=code, details=details)


class ReportingError(LoadStageError):
    """Summary rendering or artifact writing failed.

    The run verdict is still valid when this is raised; callers must not
    treat it as a threshold failure.

    Attributes:
        artifact: Name of the artifact that could not be produced
    """

    def __init__(
        self,
        message: str,
        *,
        artifact: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if artifact:
            details["artifact"] = artifact

        self.artifact = artifact

        super().__init__(message, code=code, details=details)


__all__ = [
    "LoadStageError",
    "ConfigurationError",
    "IterationError",
    "ReportingError",
]
