"""
Ledger Kernel

An append-only capital/revenue ledger with an approval gate:
- Frozen exchange-rate snapshots per entry
- Serialized, balance-gated writes
- Approval chains, guards, escalation and auto-approval timers
- Full auditability via checksum hash chain
"""

__version__ = "0.1.0"
