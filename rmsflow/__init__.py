"""rmsflow: parameterized command execution and maker-checker workflow."""

from .audit import AuditContext, AuditSnapshot, RequestAuditContext
from .command import Command, CommandResult
from .config import RmsFlowConfig, load_config
from .errors import (
    Cancelled,
    DomainError,
    FieldError,
    InvalidArgument,
    MultipleResultsError,
    NotFound,
    OperationFailed,
    RmsFlowError,
    RowBindingError,
    TransactionStateError,
    ValidationFailed,
)
from .executor import CommandExecutor
from .notifiers import get_notifier
from .paging import PagedQueryEngine, PageRequest, PageResult, SortDirection, SortSpec
from .params import Direction, Parameter, ParameterList
from .store import Store, get_store
from .unit_of_work import UnitOfWork
from .workflow import (
    AuthorizationResult,
    AuthState,
    Decision,
    EntityDefinition,
    MakerCheckerService,
    WorkflowSummaryService,
)

__version__ = "0.1.0"
__all__ = [
    "AuditContext",
    "AuditSnapshot",
    "AuthState",
    "AuthorizationResult",
    "Cancelled",
    "Command",
    "CommandExecutor",
    "CommandResult",
    "Decision",
    "Direction",
    "DomainError",
    "EntityDefinition",
    "FieldError",
    "InvalidArgument",
    "MakerCheckerService",
    "MultipleResultsError",
    "NotFound",
    "OperationFailed",
    "PageRequest",
    "PageResult",
    "PagedQueryEngine",
    "Parameter",
    "ParameterList",
    "RequestAuditContext",
    "RmsFlowConfig",
    "RmsFlowError",
    "RowBindingError",
    "SortDirection",
    "SortSpec",
    "Store",
    "TransactionStateError",
    "UnitOfWork",
    "ValidationFailed",
    "WorkflowSummaryService",
    "get_notifier",
    "get_store",
    "load_config",
]
