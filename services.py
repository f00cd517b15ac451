from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError, TransientStoreError, ValidationError
from models import UNCATEGORIZED, Category, Expense, ExpenseType, utcnow
from recurrence import compute_next, parse_interval
from schemas import CategoryIn, ExpenseIn, ExpenseUpdateIn


logger = logging.getLogger(__name__)


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class DeletedCategory:
    id: int
    name: str
    expenses_updated: int


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, sort_by: str = "newest") -> list[Category]:
        created = (
            Category.created_at.asc()
            if sort_by == "oldest"
            else Category.created_at.desc()
        )
        stmt = select(Category).order_by(created, Category.id)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError(f"Category with id {category_id} not found")
        return category

    def _find_by_name(
        self, name: str, *, exclude_id: Optional[int] = None
    ) -> Optional[Category]:
        stmt = select(Category).where(func.lower(Category.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt)

    def _lock(self, category_id: int) -> Category:
        stmt = select(Category).where(Category.id == category_id).with_for_update()
        category = self.session.scalar(stmt)
        if not category:
            raise NotFoundError(f"Category with id {category_id} not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValidationError("Category name cannot be empty")
        if self._find_by_name(clean_name):
            raise ConflictError("Category with this name already exists")
        category = Category(name=clean_name)
        self.session.add(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("Category with this name already exists") from exc
        self.session.refresh(category)
        logger.info(f"category_created: id={category.id} name={category.name!r}")
        return category

    def get_or_create(self, name: str) -> Category:
        """Resolve a category by name, creating it inside the caller's transaction."""
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Category name cannot be empty")
        existing = self._find_by_name(clean_name)
        if existing:
            return existing
        category = Category(name=clean_name)
        self.session.add(category)
        self.session.flush()
        logger.info(f"category_created_implicitly: id={category.id} name={clean_name!r}")
        return category

    def rename(self, category_id: int, new_name: str) -> Category:
        """Rename a category and every expense that displays its name, atomically."""
        clean_name = new_name.strip()
        if not clean_name:
            raise ValidationError("Category name cannot be empty")
        updated = 0
        try:
            category = self._lock(category_id)
            if clean_name != category.name:
                if self._find_by_name(clean_name, exclude_id=category.id):
                    raise ConflictError("A category with this name already exists")
                result = self.session.execute(
                    update(Expense)
                    .where(Expense.category_id == category.id)
                    .values(category_name=clean_name, updated_at=utcnow())
                )
                updated = result.rowcount or 0
                category.name = clean_name
                self.session.flush()
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("A category with this name already exists") from exc
        except OperationalError as exc:
            self.session.rollback()
            raise TransientStoreError(
                f"Could not rename category {category_id}"
            ) from exc
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(category)
        logger.info(
            f"category_renamed: id={category_id} name={clean_name!r} "
            f"expenses_updated={updated}"
        )
        return category

    def delete(self, category_id: int) -> DeletedCategory:
        """Delete a category, repointing its expenses to the uncategorized sentinel."""
        try:
            category = self._lock(category_id)
            name = category.name
            result = self.session.execute(
                update(Expense)
                .where(Expense.category_id == category.id)
                .values(
                    category_id=None,
                    category_name=UNCATEGORIZED,
                    updated_at=utcnow(),
                )
            )
            updated = result.rowcount or 0
            self.session.delete(category)
            self.session.flush()
            self.session.commit()
        except OperationalError as exc:
            self.session.rollback()
            raise TransientStoreError(
                f"Could not delete category {category_id}"
            ) from exc
        except Exception:
            self.session.rollback()
            raise
        logger.info(
            f"category_deleted: id={category_id} name={name!r} "
            f"expenses_updated={updated}"
        )
        return DeletedCategory(id=category_id, name=name, expenses_updated=updated)


class ExpenseService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense:
            raise NotFoundError(f"Expense with id {expense_id} not found")
        return expense

    def list(
        self,
        expense_type: Optional[str] = None,
        sort_by: str = "newest",
        limit: Optional[int] = None,
    ) -> list[Expense]:
        created = (
            Expense.created_at.asc() if sort_by == "oldest" else Expense.created_at.desc()
        )
        stmt = select(Expense).order_by(created, Expense.id)
        if expense_type:
            try:
                kind = ExpenseType(expense_type)
            except ValueError as exc:
                raise ValidationError(f"Invalid expense type: {expense_type}") from exc
            stmt = stmt.where(
                Expense.is_recurring.is_(kind == ExpenseType.recurring)
            )
        if limit:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).all()

    def find_by_date_range(self, start: datetime, end: datetime) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(Expense.created_at.between(start, end))
            .order_by(Expense.created_at.asc(), Expense.id.asc())
        )
        return self.session.scalars(stmt).all()

    def create(self, data: ExpenseIn, *, now: Optional[datetime] = None) -> Expense:
        if data.is_recurring:
            parse_interval(data.recurring_interval)
        now = now or utcnow()
        try:
            category = CategoryService(self.session).get_or_create(data.category_name)
            expense = Expense(
                name=data.name.strip(),
                amount_cents=to_cents(data.amount),
                category_id=category.id,
                category_name=category.name,
                is_recurring=data.is_recurring,
                recurring_interval=(
                    data.recurring_interval.value if data.is_recurring else None
                ),
                is_original=True,
                created_at=now,
                updated_at=now,
            )
            if data.is_recurring:
                self._start_series(expense, now)
            self.session.add(expense)
            self.session.flush()
            self.session.commit()
        except OperationalError as exc:
            self.session.rollback()
            raise TransientStoreError("Could not create expense") from exc
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(expense)
        logger.info(
            f"expense_created: id={expense.id} recurring={expense.is_recurring} "
            f"category={expense.category_name!r}"
        )
        return expense

    def update(
        self,
        expense_id: int,
        data: ExpenseUpdateIn,
        *,
        now: Optional[datetime] = None,
    ) -> Expense:
        expense = self.get(expense_id)
        now = now or utcnow()

        is_recurring = (
            data.is_recurring if data.is_recurring is not None else expense.is_recurring
        )
        interval = (
            data.recurring_interval.value
            if data.recurring_interval is not None
            else expense.recurring_interval
        )
        touches_recurrence = (
            data.is_recurring is not None or data.recurring_interval is not None
        )
        if touches_recurrence and is_recurring:
            if not expense.is_original:
                raise ValidationError(
                    "Materialized occurrences cannot start a recurring series"
                )
            parse_interval(interval)

        try:
            if data.name is not None:
                expense.name = data.name.strip()
            if data.amount is not None:
                expense.amount_cents = to_cents(data.amount)
            if data.category_name is not None:
                category = CategoryService(self.session).get_or_create(
                    data.category_name
                )
                expense.category_id = category.id
                expense.category_name = category.name
            if touches_recurrence:
                restart = is_recurring and (
                    not expense.is_recurring or interval != expense.recurring_interval
                )
                expense.is_recurring = is_recurring
                if is_recurring:
                    expense.recurring_interval = interval
                    if restart:
                        self._start_series(expense, now)
                else:
                    expense.recurring_interval = None
                    expense.next_recurrence_date = None
                    expense.anchor_date = None
            expense.updated_at = now
            self.session.commit()
        except OperationalError as exc:
            self.session.rollback()
            raise TransientStoreError(f"Could not update expense {expense_id}") from exc
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(expense)
        logger.info(f"expense_updated: id={expense.id}")
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        try:
            self.session.execute(
                update(Expense)
                .where(Expense.origin_id == expense.id)
                .values(origin_id=None)
            )
            self.session.delete(expense)
            self.session.commit()
        except OperationalError as exc:
            self.session.rollback()
            raise TransientStoreError(f"Could not delete expense {expense_id}") from exc
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"expense_deleted: id={expense_id}")

    @staticmethod
    def _start_series(expense: Expense, start: datetime) -> None:
        expense.anchor_date = start.date()
        expense.next_recurrence_date = compute_next(
            start, expense.recurring_interval, target_day=start.day
        )
