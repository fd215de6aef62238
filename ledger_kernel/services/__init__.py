"""Services for the ledger kernel (write side)."""

from ledger_kernel.services.alerting import LoggingNotificationSink, dispatch_alert
from ledger_kernel.services.approval_engine import ApprovalEngine
from ledger_kernel.services.auditor_service import AuditorService, AuditTrace, AuditWriteResult
from ledger_kernel.services.currency_authority import CurrencyConversionAuthority
from ledger_kernel.services.ledger_store import LedgerStore
from ledger_kernel.services.numbering import SequenceNumbering
from ledger_kernel.services.policy_registry import ApprovalPolicyRegistry
from ledger_kernel.services.rate_cache import ExpiringCache, RateCache
from ledger_kernel.services.sequence_service import SequenceService
from ledger_kernel.services.settings_service import InMemorySettings, SettingsService

__all__ = [
    "ApprovalEngine",
    "ApprovalPolicyRegistry",
    "AuditTrace",
    "AuditWriteResult",
    "AuditorService",
    "CurrencyConversionAuthority",
    "ExpiringCache",
    "InMemorySettings",
    "LedgerStore",
    "LoggingNotificationSink",
    "RateCache",
    "SequenceNumbering",
    "SequenceService",
    "SettingsService",
    "dispatch_alert",
]
