"""
Base ORM Model and Column Types.

============================================================
PURPOSE
============================================================
Provides the declarative base and shared column types used by
all ORM models of the trading engine.

============================================================
COMPONENTS
============================================================
- UTCDateTime: timestamps stored as UTC, always returned aware
- Money: Numeric(24, 8) for prices, quantities and quote amounts
- Base: SQLAlchemy declarative base for all models
- TimestampMixin: created_at / updated_at columns

============================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Numeric
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# ============================================================
# COLUMN TYPES
# ============================================================

class UTCDateTime(TypeDecorator):
    """
    Timezone-safe datetime column.

    Values are normalised to UTC and stored naive, so PostgreSQL and
    SQLite behave identically. Loaded values are tagged UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def Money() -> Numeric:
    """Numeric column type for prices and quantities."""
    return Numeric(24, 8, asdecimal=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# DECLARATIVE BASE
# ============================================================

class Base(DeclarativeBase):
    """
    Declarative base for all ORM models.

    All engine models inherit from this base so a single
    metadata.create_all() builds the schema.
    """

    type_annotation_map = {
        datetime: UTCDateTime(),
        Decimal: Numeric(24, 8, asdecimal=True),
    }

    def to_dict(self) -> Dict[str, Any]:
        """Column values as a plain dict (Decimals and datetimes preserved)."""
        return {c.key: getattr(self, c.key) for c in self.__table__.columns}


class TimestampMixin:
    """
    Mixin providing standard timestamp columns.

    Timestamps are set from Python so tests can rely on them
    without server defaults.
    """

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=_utcnow,
        index=True,
        comment="Record creation timestamp (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        comment="Last update timestamp (UTC)"
    )
