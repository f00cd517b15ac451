import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional, TypeVar, Union

from sqlalchemy import or_, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from errors import IntegrityAnomaly, TransientStoreError, ValidationError
from models import Expense, RecurringInterval, utcnow
from periods import utc_date, utc_day_bounds


logger = logging.getLogger(__name__)

# Upper bound on occurrences posted for one series in a single catch-up run.
MAX_CATCH_UP_OCCURRENCES = 366

D = TypeVar("D", date, datetime)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: D, months: int, *, desired_day: int) -> D:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    dim = days_in_month(year, month)
    if desired_day > dim:
        day = dim
    else:
        day = desired_day
    return base.replace(year=year, month=month, day=day)


def parse_interval(value: Union[str, RecurringInterval, None]) -> RecurringInterval:
    if value is None:
        raise ValidationError("Recurring interval is required for recurring expenses")
    try:
        return RecurringInterval(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown recurring interval: {value!r}") from exc


def compute_next(
    anchor: D,
    interval: Union[str, RecurringInterval, None],
    *,
    target_day: Optional[int] = None,
) -> D:
    """Next occurrence after ``anchor``.

    Daily and weekly rules add 1 and 7 calendar days. Monthly rules move to
    the next calendar month on ``target_day`` (default: the anchor's own day),
    clamped to the last day of that month, so Jan 31 gives Feb 28/29 and never
    rolls over into March. Aware datetimes are converted to UTC first; the
    time of day is preserved.
    """
    unit = parse_interval(interval)
    if isinstance(anchor, datetime) and anchor.tzinfo is not None:
        anchor = anchor.astimezone(timezone.utc)

    if unit == RecurringInterval.daily:
        return anchor + timedelta(days=1)
    if unit == RecurringInterval.weekly:
        return anchor + timedelta(weeks=1)

    day = target_day if target_day is not None else anchor.day
    if not 1 <= day <= 31:
        raise ValidationError(f"Invalid target day of month: {day}")
    return _add_months(anchor, 1, desired_day=day)


@dataclass
class MaterializationResult:
    created: list[int] = field(default_factory=list)
    advanced: list[int] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)

    @property
    def partially_succeeded(self) -> bool:
        return bool(self.errors)


class RecurringEngine:
    """Turns due recurring originals into concrete expenses.

    Each original is handled in its own transaction: the clone and the
    advanced ``next_recurrence_date`` are committed together or not at all.
    Clones are keyed by ``(origin_id, occurrence_date)``, and an existing
    clone for an occurrence is never created twice, so a rerun for the same
    day only advances schedules that were left behind.
    """

    def __init__(self, session: Session, *, catch_up: bool = False) -> None:
        self.session = session
        self.catch_up = catch_up

    def materialize_due(
        self, as_of: Union[date, datetime, None] = None
    ) -> MaterializationResult:
        as_of = as_of or utcnow()
        day_start, day_end = utc_day_bounds(as_of)
        try:
            originals = self._due_originals(day_start, day_end)
        except OperationalError as exc:
            self.session.rollback()
            raise TransientStoreError("Could not query due recurring expenses") from exc
        logger.info(
            f"materialize_due: as_of={day_start.date()} candidates={len(originals)}"
        )

        result = MaterializationResult()
        for original in originals:
            expense_id = original.id
            try:
                created, caught_up = self._materialize_series(original, day_end)
            except OperationalError as exc:
                self.session.rollback()
                logger.exception(f"materialize_store_failed: expense_id={expense_id}")
                error = TransientStoreError(
                    f"Store failed while materializing expense {expense_id}"
                )
                error.__cause__ = exc
                result.errors.append(error)
                continue
            except (IntegrityAnomaly, ValidationError) as exc:
                self.session.rollback()
                logger.warning(
                    f"materialize_skip: expense_id={expense_id} reason={exc}"
                )
                result.errors.append(exc)
                continue
            except Exception as exc:
                self.session.rollback()
                logger.exception(f"materialize_failed: expense_id={expense_id}")
                result.errors.append(exc)
                continue
            result.created.extend(created)
            if not caught_up:
                result.errors.append(
                    IntegrityAnomaly(
                        f"Recurring expense {expense_id} reached the catch-up limit of "
                        f"{MAX_CATCH_UP_OCCURRENCES} occurrences; the rest is posted "
                        "on the next run",
                        expense_id=expense_id,
                    )
                )
                continue
            result.advanced.append(expense_id)

        logger.info(
            f"materialize_due: as_of={day_start.date()} created={len(result.created)} "
            f"advanced={len(result.advanced)} errors={len(result.errors)}"
        )
        return result

    def _due_originals(self, day_start: datetime, day_end: datetime) -> list[Expense]:
        if self.catch_up:
            in_window = Expense.next_recurrence_date <= day_end
        else:
            in_window = Expense.next_recurrence_date.between(day_start, day_end)
        stmt = (
            select(Expense)
            .where(
                Expense.is_recurring.is_(True),
                Expense.is_original.is_(True),
                or_(in_window, Expense.next_recurrence_date.is_(None)),
            )
            .order_by(Expense.next_recurrence_date, Expense.id)
        )
        return list(self.session.scalars(stmt).all())

    def _materialize_series(
        self, original: Expense, day_end: datetime
    ) -> tuple[list[int], bool]:
        """Post every due occurrence of one series and commit.

        Returns the new clone ids and whether the schedule now lies past
        ``day_end``. Hitting the catch-up limit commits what was posted and
        reports the series as not caught up.
        """
        if original.next_recurrence_date is None:
            raise IntegrityAnomaly(
                f"Recurring expense {original.id} ({original.name}) has no "
                "next_recurrence_date",
                expense_id=original.id,
            )
        target_day = original.anchor_date.day if original.anchor_date else None

        created: list[int] = []
        caught_up = True
        iterations = 0
        while original.next_recurrence_date <= day_end:
            if iterations >= MAX_CATCH_UP_OCCURRENCES:
                logger.warning(
                    f"materialize_catch_up_limit: expense_id={original.id} "
                    f"next={original.next_recurrence_date.isoformat()}"
                )
                caught_up = False
                break
            occurrence = original.next_recurrence_date
            clone_id = self._clone_occurrence(original, occurrence)
            if clone_id is not None:
                created.append(clone_id)
            original.next_recurrence_date = compute_next(
                occurrence, original.recurring_interval, target_day=target_day
            )
            iterations += 1

        self.session.commit()
        return created, caught_up

    def _clone_occurrence(self, original: Expense, occurrence: datetime) -> Optional[int]:
        occurrence_day = utc_date(occurrence)
        exists_stmt = (
            select(Expense.id)
            .where(
                Expense.origin_id == original.id,
                Expense.occurrence_date == occurrence_day,
            )
            .limit(1)
        )
        existing = self.session.execute(exists_stmt).scalar_one_or_none()
        if existing is not None:
            logger.info(
                f"materialize_duplicate_skipped: origin_id={original.id} "
                f"occurrence_date={occurrence_day} existing_id={existing}"
            )
            return None

        now = utcnow()
        clone = Expense(
            name=original.name,
            amount_cents=original.amount_cents,
            category_id=original.category_id,
            category_name=original.category_name,
            is_recurring=original.is_recurring,
            recurring_interval=original.recurring_interval,
            next_recurrence_date=None,
            is_original=False,
            anchor_date=None,
            origin_id=original.id,
            occurrence_date=occurrence_day,
            created_at=now,
            updated_at=now,
        )
        self.session.add(clone)
        self.session.flush()
        logger.debug(
            f"materialize_clone: origin_id={original.id} clone_id={clone.id} "
            f"occurrence_date={occurrence_day}"
        )
        return clone.id


def materialize_due(
    session: Session,
    as_of: Union[date, datetime, None] = None,
    *,
    catch_up: bool = False,
) -> MaterializationResult:
    return RecurringEngine(session, catch_up=catch_up).materialize_due(as_of)
