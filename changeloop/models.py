"""SQLAlchemy models for the per-change state database."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator


class DecimalText(TypeDecorator):
    """Stores Decimal values as text so SQLite keeps them exact."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | None, dialect: Any) -> str | None:
        del dialect
        return None if value is None else str(value)

    def process_result_value(self, value: str | None, dialect: Any) -> Decimal | None:
        del dialect
        return None if value is None else Decimal(value)


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        list[dict[str, Any]]: JSON,
        Decimal: DecimalText,
    }


class Change(Base):
    """Lifecycle record of a single change."""

    __tablename__ = "changes"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    description: Mapped[str] = mapped_column(Text, default="")
    phase: Mapped[str] = mapped_column(String, default="proposed")
    iteration: Mapped[int] = mapped_column(Integer, default=0)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_action: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    reviews: Mapped[list["ReviewLog"]] = relationship(
        back_populates="change", cascade="all, delete-orphan", order_by="ReviewLog.id"
    )
    usage: Mapped[list["UsageLog"]] = relationship(
        back_populates="change", cascade="all, delete-orphan", order_by="UsageLog.id"
    )


class ReviewLog(Base):
    """Append-only record of parsed reviews."""

    __tablename__ = "review_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    change_id: Mapped[str] = mapped_column(ForeignKey("changes.id", ondelete="CASCADE"))
    artifact: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String)  # self-review, challenge
    verdict: Mapped[str] = mapped_column(String)
    issues: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    raw_text: Mapped[str] = mapped_column(Text, default="")
    iteration: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    change: Mapped[Change] = relationship(back_populates="reviews")


class UsageLog(Base):
    """Token usage and cost of one agent call."""

    __tablename__ = "usage_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    change_id: Mapped[str] = mapped_column(ForeignKey("changes.id", ondelete="CASCADE"))
    step: Mapped[str] = mapped_column(String)
    model: Mapped[str] = mapped_column(String)
    tokens_in: Mapped[int] = mapped_column(Integer, default=0)
    tokens_out: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[Decimal] = mapped_column(DecimalText, default=Decimal("0"))
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    change: Mapped[Change] = relationship(back_populates="usage")


class ExecutionLog(Base):
    """Step-level execution history, including failures."""

    __tablename__ = "execution_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    change_id: Mapped[str] = mapped_column(ForeignKey("changes.id", ondelete="CASCADE"))
    step: Mapped[str] = mapped_column(String)
    event: Mapped[str] = mapped_column(String)  # started, completed, failed, skipped
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
