"""actflow: reliable execution of multi-step business actions."""

from .config import ActflowConfig, load_config
from .contracts import ActionRequest, RollbackSpec, WorkflowDefinition, WorkflowStep
from .dispatchers import BaseDispatcher, InMemoryDispatcher, get_dispatcher
from .engine import WorkflowEngine, create_engine
from .errors import (
    ActflowError,
    ActionError,
    AuthError,
    PermanentError,
    RateLimitError,
    RetryCancelledError,
    RetryExhaustedError,
    TransientError,
    WorkflowStepError,
    WorkflowValidationError,
)
from .events import InMemoryEventBus
from .idempotency import IdempotencyGate
from .models import StepStatus, WorkflowProgress, WorkflowResult, WorkflowStatus
from .persistence import get_repository
from .retry import RetryEngine, RetryPolicy
from .rollback import RollbackCoordinator, RollbackOptions, RollbackResult
from .validation import validate_workflow

__version__ = "0.1.0"
__all__ = [
    "ActflowConfig",
    "ActflowError",
    "ActionError",
    "ActionRequest",
    "AuthError",
    "BaseDispatcher",
    "IdempotencyGate",
    "InMemoryDispatcher",
    "InMemoryEventBus",
    "PermanentError",
    "RateLimitError",
    "RetryCancelledError",
    "RetryEngine",
    "RetryExhaustedError",
    "RetryPolicy",
    "RollbackCoordinator",
    "RollbackOptions",
    "RollbackResult",
    "RollbackSpec",
    "StepStatus",
    "TransientError",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowProgress",
    "WorkflowResult",
    "WorkflowStatus",
    "WorkflowStep",
    "WorkflowStepError",
    "WorkflowValidationError",
    "create_engine",
    "get_dispatcher",
    "get_repository",
    "load_config",
    "validate_workflow",
]
