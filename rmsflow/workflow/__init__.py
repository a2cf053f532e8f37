"""Maker-checker workflow layered on the command executor."""

from .entity import EntityDefinition, EntityView
from .machine import (
    CheckerOutcome,
    checker_stamp,
    ensure_authorizable,
    maker_stamp,
    validate_decision,
)
from .record import WorkflowRecord
from .routines import register_entity
from .service import AuthorizationResult, MakerCheckerService
from .states import ActionType, AuthLevel, AuthState, Decision, DeleteStatus
from .summary import WorkflowItem, WorkflowSummary, WorkflowSummaryService

__all__ = [
    "ActionType",
    "AuthLevel",
    "AuthState",
    "AuthorizationResult",
    "CheckerOutcome",
    "Decision",
    "DeleteStatus",
    "EntityDefinition",
    "EntityView",
    "MakerCheckerService",
    "WorkflowItem",
    "WorkflowRecord",
    "WorkflowSummary",
    "WorkflowSummaryService",
    "checker_stamp",
    "ensure_authorizable",
    "maker_stamp",
    "register_entity",
    "validate_decision",
]
