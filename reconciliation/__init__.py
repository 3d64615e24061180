"""
Reconciliation Module.

Ledger versus exchange drift detection and repair.
"""

from .service import ReconciliationService, suggest_position
from .types import (
    AuditReport,
    AuditViolation,
    CandidatePosition,
    FixReport,
    ImportReport,
    MissingFill,
    MissingOrdersReport,
    OrphanedExecution,
)


__all__ = [
    "ReconciliationService",
    "suggest_position",
    "AuditReport",
    "AuditViolation",
    "CandidatePosition",
    "FixReport",
    "ImportReport",
    "MissingFill",
    "MissingOrdersReport",
    "OrphanedExecution",
]
