"""Exception classification, remediation and human intervention."""

from agentcrew.recovery.exception_handler import (
    ExceptionHandler,
    ExceptionHandlerConfig,
    ExceptionRecord,
    ExceptionResolution,
    ExceptionStatus,
    HumanDecision,
    HumanIntervention,
    PausedTask,
    ResolutionAction,
)

__all__ = [
    "ExceptionHandler",
    "ExceptionHandlerConfig",
    "ExceptionRecord",
    "ExceptionResolution",
    "ExceptionStatus",
    "HumanDecision",
    "HumanIntervention",
    "PausedTask",
    "ResolutionAction",
]
