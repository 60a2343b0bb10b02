"""
UnifiedError System - Consolidated error handling for AgentCrew.

One hierarchy for every failure the orchestration engine raises. Each class
fixes its category, severity and recoverability as class defaults; callers
only add a message and, where useful, ``details`` naming the ids involved.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional


# ============================================================================
# Enums & Constants
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # Engine cannot continue
    ERROR = "error"            # Operation failed, caller impacted
    WARNING = "warning"        # Request rejected, nothing changed
    INFO = "info"              # Expected outcome such as a cancellation


class ErrorCategory(Enum):
    """Error categories for classification and routing."""
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    TASK = "task"
    TIMEOUT = "timeout"
    AGENT = "agent"
    COLLABORATION = "collaboration"
    INTERNAL = "internal"


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Serialisable snapshot of an error, safe to hand to event consumers."""
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    is_recoverable: bool = True
    error_id: str = field(default_factory=lambda: f"err-{uuid.uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
        }


# ============================================================================
# Exception Hierarchy
# ============================================================================

class AgentCrewException(Exception):
    """Base exception for all AgentCrew errors."""

    category: ClassVar[ErrorCategory] = ErrorCategory.INTERNAL
    severity: ClassVar[ErrorSeverity] = ErrorSeverity.ERROR
    recoverable: ClassVar[bool] = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.context = ErrorContext(
            category=self.category,
            severity=self.severity,
            message=message,
            details=self.details,
            is_recoverable=self.recoverable,
        )

    @property
    def is_recoverable(self) -> bool:
        return self.recoverable

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return self.context.to_dict()


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(AgentCrewException):
    """Input rejected before any state changed."""
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING
    recoverable = False


class PlanValidationError(ValidationError):
    """A submitted task plan or request is malformed."""


class ConfigurationError(ValidationError):
    """The engine is not set up to serve the request."""
    category = ErrorCategory.CONFIGURATION


# ============================================================================
# Task Errors
# ============================================================================

class TaskError(AgentCrewException):
    category = ErrorCategory.TASK


class TaskNotFoundError(TaskError):
    """Referenced task or sub-task does not exist."""
    recoverable = False


class TaskExecutionError(TaskError):
    """A sub-task run failed after exhausting its attempts."""


class TaskTimeoutError(TaskError):
    """A sub-task run exceeded its wall-clock budget."""
    category = ErrorCategory.TIMEOUT


class TaskCancelledError(TaskError):
    """A sub-task run was aborted through its cancellation token."""
    severity = ErrorSeverity.INFO

    def __init__(self, message: str = "Aborted", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


# ============================================================================
# Agent Errors
# ============================================================================

class AgentError(AgentCrewException):
    """A worker capability failed or could not be reached."""
    category = ErrorCategory.AGENT


class WorkerNotFoundError(AgentError):
    recoverable = False


class AgentCommunicationError(AgentError):
    """Delivering a message to a worker capability failed."""


# ============================================================================
# Collaboration Errors
# ============================================================================

class CollaborationError(AgentCrewException):
    category = ErrorCategory.COLLABORATION
    recoverable = False


class SessionNotFoundError(CollaborationError):
    pass


class MessageNotFoundError(CollaborationError):
    pass


# ============================================================================
# Orchestrator Errors
# ============================================================================

class OrchestratorError(AgentCrewException):
    """Orchestrator error."""


class DependencyResolutionError(OrchestratorError):
    """Dependency resolution failed."""


class ExceptionNotFoundError(OrchestratorError):
    """Referenced exception record does not exist."""
    recoverable = False
