"""Persistence models for the ledger kernel."""

from ledger_kernel.models.approval import (
    ApprovalChainModel,
    ApprovalGuardModel,
    ApprovalHistoryModel,
    ApprovalRequestModel,
)
from ledger_kernel.models.audit_log import AuditAction, AuditLogEntry, AuditRecord, RiskLevel
from ledger_kernel.models.ledger_entry import LedgerAllocationModel, LedgerEntryModel
from ledger_kernel.models.setting import SettingModel

__all__ = [
    "LedgerEntryModel",
    "LedgerAllocationModel",
    "ApprovalChainModel",
    "ApprovalGuardModel",
    "ApprovalRequestModel",
    "ApprovalHistoryModel",
    "AuditAction",
    "AuditLogEntry",
    "AuditRecord",
    "RiskLevel",
    "SettingModel",
]
