"""
Module: ledger_kernel.db.triggers
Responsibility: Installing and removing PostgreSQL immutability triggers
    (layer 2 of 2).  The database-level complement to the ORM listeners in
    db/immutability.py.
Architecture position: Kernel > DB.  May import from db/ only.
    MUST NOT import from models/, services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - audit_log rows: no UPDATE, no DELETE.
    - approval_history and ledger_allocations rows: no UPDATE, no DELETE.
    - ledger_entries rows: no DELETE; UPDATE may only touch the validation
      columns.

Failure modes:
    - PostgreSQL RAISE EXCEPTION on any violation (surfaced by SQLAlchemy
      as InternalError / IntegrityError).
    - No-op on any other dialect.
"""

from sqlalchemy import text
from sqlalchemy.engine import Engine

from ledger_kernel.logging_config import get_logger

logger = get_logger("db.triggers")

_APPEND_ONLY_FUNCTION = """
CREATE OR REPLACE FUNCTION ledger_reject_mutation() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION '% rows are append-only (% blocked)', TG_TABLE_NAME, TG_OP;
END;
$$ LANGUAGE plpgsql;
"""

_ENTRY_UPDATE_FUNCTION = """
CREATE OR REPLACE FUNCTION ledger_entry_guard_update() RETURNS trigger AS $$
BEGIN
    IF (to_jsonb(NEW) - 'validated' - 'validated_at' - 'validated_by')
       IS DISTINCT FROM
       (to_jsonb(OLD) - 'validated' - 'validated_at' - 'validated_by') THEN
        RAISE EXCEPTION 'ledger_entries %: only validation columns may change', OLD.id;
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

# (trigger name, table, timing/event clause, function)
TRIGGERS = [
    ("trg_audit_log_no_update", "audit_log", "BEFORE UPDATE", "ledger_reject_mutation"),
    ("trg_audit_log_no_delete", "audit_log", "BEFORE DELETE", "ledger_reject_mutation"),
    ("trg_approval_history_no_update", "approval_history", "BEFORE UPDATE", "ledger_reject_mutation"),
    ("trg_approval_history_no_delete", "approval_history", "BEFORE DELETE", "ledger_reject_mutation"),
    ("trg_ledger_allocations_no_update", "ledger_allocations", "BEFORE UPDATE", "ledger_reject_mutation"),
    ("trg_ledger_allocations_no_delete", "ledger_allocations", "BEFORE DELETE", "ledger_reject_mutation"),
    ("trg_ledger_entries_no_delete", "ledger_entries", "BEFORE DELETE", "ledger_reject_mutation"),
    ("trg_ledger_entries_guard_update", "ledger_entries", "BEFORE UPDATE", "ledger_entry_guard_update"),
]

ALL_TRIGGER_NAMES = [name for name, _, _, _ in TRIGGERS]


def install_immutability_triggers(engine: Engine) -> int:
    """Install every trigger.  Returns the number installed (0 off PostgreSQL)."""
    if engine.dialect.name != "postgresql":
        return 0

    with engine.begin() as conn:
        conn.execute(text(_APPEND_ONLY_FUNCTION))
        conn.execute(text(_ENTRY_UPDATE_FUNCTION))
        for name, table, clause, function in TRIGGERS:
            conn.execute(text(f"DROP TRIGGER IF EXISTS {name} ON {table}"))
            conn.execute(text(
                f"CREATE TRIGGER {name} {clause} ON {table} "
                f"FOR EACH ROW EXECUTE FUNCTION {function}()"
            ))

    logger.info("immutability_triggers_installed", extra={"count": len(TRIGGERS)})
    return len(TRIGGERS)


def uninstall_immutability_triggers(engine: Engine) -> None:
    if engine.dialect.name != "postgresql":
        return

    with engine.begin() as conn:
        for name, table, _, _ in TRIGGERS:
            conn.execute(text(f"DROP TRIGGER IF EXISTS {name} ON {table}"))
        conn.execute(text("DROP FUNCTION IF EXISTS ledger_reject_mutation()"))
        conn.execute(text("DROP FUNCTION IF EXISTS ledger_entry_guard_update()"))

    logger.info("immutability_triggers_uninstalled")


def triggers_installed(engine: Engine) -> list[str]:
    """Names of the ledger triggers currently present."""
    if engine.dialect.name != "postgresql":
        return []
    with engine.connect() as conn:
        rows = conn.execute(
            text(
                "SELECT tgname FROM pg_trigger "
                "WHERE NOT tgisinternal AND tgname = ANY(:names)"
            ),
            {"names": ALL_TRIGGER_NAMES},
        ).scalars().all()
    return sorted(rows)
