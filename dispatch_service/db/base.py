"""Declarative base and the column types shared by every dispatch table."""
from __future__ import annotations

import enum

from sqlalchemy import JSON, DateTime, Enum, MetaData, Numeric
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, declared_attr

metadata = MetaData(
    naming_convention={
        "pk": "pk_%(table_name)s",
        "fk": "fk_%(table_name)s__%(column_0_name)s__%(referred_table_name)s",
        "uq": "uq_%(table_name)s__%(column_0_name)s",
        "ix": "ix_%(table_name)s__%(column_0_name)s",
        "ck": "ck_%(table_name)s__%(constraint_name)s",
    }
)

# Amounts in the ledger currency, two decimal places
Money = Numeric(12, 2)

Timestamp = DateTime(timezone=True)

# Audit snapshots and outbox payloads; sqlite in tests has no JSONB
JSONType = JSON().with_variant(JSONB(), "postgresql")


def values_enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    """Persist enum values (lower-case) rather than member names."""
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [item.value for item in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    metadata = metadata

    # Model classes are named after their tables
    @declared_attr.directive
    def __tablename__(cls) -> str:  # noqa: N805
        return cls.__name__
