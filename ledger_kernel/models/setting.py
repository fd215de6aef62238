"""
Module: ledger_kernel.models.setting
Responsibility: ORM persistence for runtime settings (exchange rate,
    negative-balance switch, low-balance threshold, ...).
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - (key, category) is unique; a NULL category is its own slot.
    - Values are strings; callers parse them (Decimal, bool).
"""

from datetime import datetime

from sqlalchemy import Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base


class SettingModel(Base):
    """One key/value runtime setting."""

    __tablename__ = "settings"

    __table_args__ = (
        UniqueConstraint("key", "category", name="uq_settings_key_category"),
        Index("ix_settings_key", "key"),
    )

    key: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_by: Mapped[str] = mapped_column(String(100), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        scope = f"{self.category}." if self.category else ""
        return f"<Setting {scope}{self.key}={self.value!r}>"
