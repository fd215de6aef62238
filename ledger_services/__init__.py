"""
ledger_services -- Package init and public API.

Responsibility:
    Orchestration over the ledger kernel: approval-gated ledger
    operations that span more than one kernel service, and the periodic
    approval timer sweep.

Architecture position:
    Services -- stateful orchestration over ledger_kernel and
    ledger_config.

    Dependency direction (enforced by tests/architecture/test_layer_boundaries.py):
        ledger_services/ -> ledger_config/  (allowed)
        ledger_services/ -> ledger_kernel/  (allowed)
        ledger_kernel/   -> ledger_services/ (FORBIDDEN)
        ledger_config/   -> ledger_services/ (FORBIDDEN)

Invariants enforced:
    - DI transparency: all kernel service wiring is centralised in
      LedgerOrchestrator.
"""

from ledger_services.ledger_orchestrator import GatedEntryResult, LedgerOrchestrator
from ledger_services.sweep_job import run_sweep_loop, run_sweep_once

__all__ = [
    "GatedEntryResult",
    "LedgerOrchestrator",
    "run_sweep_loop",
    "run_sweep_once",
]
