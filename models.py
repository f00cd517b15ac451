from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


UNCATEGORIZED = "Uncategorized"


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RecurringInterval(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class ExpenseType(str, Enum):
    recurring = "recurring"
    non_recurring = "non-recurring"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("name", name="uq_category_name"),
        CheckConstraint("length(name) > 0", name="ck_category_name_not_empty"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    category_name: Mapped[str] = mapped_column(
        String(100), nullable=False, default=UNCATEGORIZED
    )
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Plain text so a bad value can be loaded and reported instead of
    # failing the whole due-query.
    recurring_interval: Mapped[Optional[str]] = mapped_column(String(16))
    next_recurrence_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_original: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    anchor_date: Mapped[Optional[date]] = mapped_column(Date)
    origin_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("expenses.id", ondelete="SET NULL")
    )
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="expenses"
    )

    __table_args__ = (
        UniqueConstraint(
            "origin_id",
            "occurrence_date",
            name="uq_expense_origin_occurrence",
        ),
        Index(
            "ix_expenses_recurring_due",
            "is_recurring",
            "is_original",
            "next_recurrence_date",
        ),
        Index("ix_expenses_category_id", "category_id"),
        Index("ix_expenses_created_at", "created_at"),
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
    )
