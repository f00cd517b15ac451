from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

import recurrence
from database import Base
from errors import IntegrityAnomaly, TransientStoreError, ValidationError
from models import Expense, RecurringInterval
from recurrence import (
    MAX_CATCH_UP_OCCURRENCES,
    RecurringEngine,
    compute_next,
    days_in_month,
    materialize_due,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def add_original(session: Session, **overrides) -> int:
    values = dict(
        name="Rent",
        amount_cents=120_000,
        category_name="Housing",
        is_recurring=True,
        recurring_interval="monthly",
        next_recurrence_date=datetime(2024, 2, 29, 9, 30),
        is_original=True,
        anchor_date=date(2024, 1, 31),
        created_at=datetime(2024, 1, 31, 9, 30),
        updated_at=datetime(2024, 1, 31, 9, 30),
    )
    values.update(overrides)
    expense = Expense(**values)
    session.add(expense)
    session.commit()
    return expense.id


def clones_of(session: Session, origin_id: int) -> list[Expense]:
    stmt = (
        select(Expense)
        .where(Expense.origin_id == origin_id)
        .order_by(Expense.occurrence_date)
    )
    return session.scalars(stmt).all()


def test_daily_and_weekly_advance_by_calendar_days():
    assert compute_next(date(2024, 12, 31), "daily") == date(2025, 1, 1)
    assert compute_next(date(2024, 2, 28), RecurringInterval.daily) == date(2024, 2, 29)
    assert compute_next(date(2024, 2, 26), "weekly") == date(2024, 3, 4)
    assert compute_next(datetime(2024, 3, 30, 23, 15), "daily") == datetime(
        2024, 3, 31, 23, 15
    )


def test_aware_anchor_is_computed_in_utc():
    eastern = timezone(timedelta(hours=-5))
    anchor = datetime(2024, 3, 9, 22, 0, tzinfo=eastern)

    result = compute_next(anchor, "daily")

    assert result == datetime(2024, 3, 11, 3, 0, tzinfo=timezone.utc)
    assert result.utcoffset() == timedelta(0)


def test_monthly_clamps_to_end_of_shorter_month():
    assert compute_next(date(2023, 1, 31), "monthly") == date(2023, 2, 28)
    assert compute_next(date(2024, 1, 31), "monthly") == date(2024, 2, 29)
    assert compute_next(date(2024, 3, 31), "monthly") == date(2024, 4, 30)
    assert compute_next(date(2024, 12, 31), "monthly") == date(2025, 1, 31)
    assert compute_next(datetime(2024, 1, 31, 8, 45), "monthly") == datetime(
        2024, 2, 29, 8, 45
    )


def test_monthly_keeps_day_of_month_or_last_day_for_every_anchor():
    day = date(2023, 1, 1)
    while day <= date(2024, 12, 31):
        result = compute_next(day, "monthly")
        expected_month = day.month % 12 + 1
        expected_year = day.year + (1 if day.month == 12 else 0)
        assert (result.year, result.month) == (expected_year, expected_month)
        assert result.day == min(day.day, days_in_month(expected_year, expected_month))
        day += timedelta(days=1)


def test_monthly_without_target_day_drifts_after_a_clamp():
    assert compute_next(date(2024, 2, 29), "monthly") == date(2024, 3, 29)


def test_monthly_with_target_day_reanchors_after_a_clamp():
    assert compute_next(date(2024, 2, 29), "monthly", target_day=31) == date(2024, 3, 31)
    assert compute_next(date(2024, 3, 31), "monthly", target_day=31) == date(2024, 4, 30)


@pytest.mark.parametrize("interval", ["fortnightly", "", None])
def test_compute_next_rejects_unknown_interval(interval):
    with pytest.raises(ValidationError):
        compute_next(date(2024, 1, 1), interval)


def test_compute_next_rejects_invalid_target_day():
    with pytest.raises(ValidationError):
        compute_next(date(2024, 1, 1), "monthly", target_day=32)


def test_series_created_on_jan_31_stays_on_month_end():
    session = make_session()
    rent_id = add_original(session)

    first = materialize_due(session, date(2024, 2, 29))
    assert len(first.created) == 1
    assert first.advanced == [rent_id]
    assert first.errors == []
    rent = session.get(Expense, rent_id)
    assert rent.next_recurrence_date == datetime(2024, 3, 31, 9, 30)

    materialize_due(session, date(2024, 3, 31))
    rent = session.get(Expense, rent_id)
    assert rent.next_recurrence_date == datetime(2024, 4, 30, 9, 30)

    materialize_due(session, date(2024, 4, 30))
    rent = session.get(Expense, rent_id)
    assert rent.next_recurrence_date == datetime(2024, 5, 31, 9, 30)
    assert [c.occurrence_date for c in clones_of(session, rent_id)] == [
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
    ]


def test_clone_copies_fields_and_drops_schedule():
    session = make_session()
    rent_id = add_original(session)

    result = materialize_due(session, date(2024, 2, 29))

    clone = session.get(Expense, result.created[0])
    assert clone.id != rent_id
    assert clone.name == "Rent"
    assert clone.amount_cents == 120_000
    assert clone.category_name == "Housing"
    assert clone.is_original is False
    assert clone.next_recurrence_date is None
    assert clone.anchor_date is None
    assert clone.origin_id == rent_id
    assert clone.occurrence_date == date(2024, 2, 29)
    assert clone.created_at > datetime(2024, 1, 31, 9, 30)


def test_materialize_twice_for_same_day_creates_one_clone():
    session = make_session()
    rent_id = add_original(session)
    gym_id = add_original(
        session,
        name="Gym",
        amount_cents=3_000,
        recurring_interval="weekly",
        next_recurrence_date=datetime(2024, 2, 29, 0, 0),
        anchor_date=date(2024, 2, 22),
    )

    first = materialize_due(session, date(2024, 2, 29))
    second = materialize_due(session, date(2024, 2, 29))

    assert sorted(first.advanced) == sorted([rent_id, gym_id])
    assert len(first.created) == 2
    assert second.created == []
    assert second.advanced == []
    assert second.errors == []
    assert len(clones_of(session, rent_id)) == 1
    assert len(clones_of(session, gym_id)) == 1


def test_originals_are_strictly_after_processed_day():
    session = make_session()
    add_original(session)
    add_original(
        session,
        name="Coffee",
        amount_cents=450,
        recurring_interval="daily",
        next_recurrence_date=datetime(2024, 2, 29, 23, 59, 59),
        anchor_date=date(2024, 2, 28),
    )
    add_original(
        session,
        name="Cleaning",
        amount_cents=6_000,
        recurring_interval="weekly",
        next_recurrence_date=datetime(2024, 2, 29, 0, 0),
        anchor_date=date(2024, 2, 22),
    )

    materialize_due(session, date(2024, 2, 29))

    end_of_day = datetime(2024, 2, 29, 23, 59, 59, 999999)
    originals = session.scalars(
        select(Expense).where(Expense.is_original.is_(True))
    ).all()
    assert all(e.next_recurrence_date > end_of_day for e in originals)


def test_no_due_originals_returns_empty_result():
    session = make_session()
    add_original(session, next_recurrence_date=datetime(2024, 3, 1, 9, 30))
    add_original(session, name="One-off", is_recurring=False, recurring_interval=None,
                 next_recurrence_date=None, anchor_date=None)

    result = materialize_due(session, date(2024, 2, 29))

    assert result.created == []
    assert result.advanced == []
    assert result.errors == []
    assert result.partially_succeeded is False


def test_missing_next_date_is_reported_and_skipped():
    session = make_session()
    broken_id = add_original(session, name="Broken", next_recurrence_date=None)
    rent_id = add_original(session)

    result = materialize_due(session, date(2024, 2, 29))

    assert result.advanced == [rent_id]
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], IntegrityAnomaly)
    assert result.errors[0].expense_id == broken_id
    assert result.partially_succeeded is True
    assert clones_of(session, broken_id) == []


def test_unknown_interval_is_reported_and_rolled_back():
    session = make_session()
    odd_id = add_original(session, name="Odd", recurring_interval="fortnightly")
    rent_id = add_original(session)

    result = materialize_due(session, date(2024, 2, 29))

    assert result.advanced == [rent_id]
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], ValidationError)
    assert clones_of(session, odd_id) == []
    odd = session.get(Expense, odd_id)
    assert odd.next_recurrence_date == datetime(2024, 2, 29, 9, 30)


def test_crash_between_clone_and_advance_leaves_nothing_behind(monkeypatch):
    session = make_session()
    rent_id = add_original(session)

    def crash(*_args, **_kwargs):
        raise RuntimeError("process killed")

    monkeypatch.setattr(recurrence, "compute_next", crash)
    crashed = materialize_due(session, date(2024, 2, 29))

    assert crashed.created == []
    assert crashed.advanced == []
    assert len(crashed.errors) == 1
    assert clones_of(session, rent_id) == []
    rent = session.get(Expense, rent_id)
    assert rent.next_recurrence_date == datetime(2024, 2, 29, 9, 30)

    monkeypatch.undo()
    retried = materialize_due(session, date(2024, 2, 29))

    assert retried.advanced == [rent_id]
    assert len(clones_of(session, rent_id)) == 1
    rent = session.get(Expense, rent_id)
    assert rent.next_recurrence_date == datetime(2024, 3, 31, 9, 30)


def test_existing_clone_for_occurrence_is_not_duplicated():
    session = make_session()
    rent_id = add_original(session)
    # A clone committed without its schedule advance.
    session.add(
        Expense(
            name="Rent",
            amount_cents=120_000,
            category_name="Housing",
            is_recurring=True,
            recurring_interval="monthly",
            is_original=False,
            origin_id=rent_id,
            occurrence_date=date(2024, 2, 29),
        )
    )
    session.commit()

    result = materialize_due(session, date(2024, 2, 29))

    assert result.created == []
    assert result.advanced == [rent_id]
    assert len(clones_of(session, rent_id)) == 1
    rent = session.get(Expense, rent_id)
    assert rent.next_recurrence_date == datetime(2024, 3, 31, 9, 30)


def test_clones_are_never_materialized_again():
    session = make_session()
    add_original(
        session,
        name="Stray clone",
        is_original=False,
        next_recurrence_date=datetime(2024, 2, 29, 9, 30),
    )

    result = materialize_due(session, date(2024, 2, 29))

    assert result.created == []
    assert session.scalar(select(func.count(Expense.id))) == 1


def test_aware_as_of_uses_the_utc_day():
    session = make_session()
    rent_id = add_original(session)
    plus_five = timezone(timedelta(hours=5))

    result = materialize_due(session, datetime(2024, 3, 1, 1, 0, tzinfo=plus_five))

    assert result.advanced == [rent_id]


def test_catch_up_posts_every_missed_occurrence():
    session = make_session()
    coffee_id = add_original(
        session,
        name="Coffee",
        amount_cents=450,
        recurring_interval="daily",
        next_recurrence_date=datetime(2024, 1, 1, 7, 0),
        anchor_date=date(2023, 12, 31),
    )

    missed = materialize_due(session, date(2024, 1, 5))
    assert missed.created == []

    result = materialize_due(session, date(2024, 1, 5), catch_up=True)

    assert len(result.created) == 5
    assert result.advanced == [coffee_id]
    coffee = session.get(Expense, coffee_id)
    assert coffee.next_recurrence_date == datetime(2024, 1, 6, 7, 0)
    assert [c.occurrence_date for c in clones_of(session, coffee_id)] == [
        date(2024, 1, day) for day in range(1, 6)
    ]


def test_store_error_on_one_original_does_not_stop_the_others(monkeypatch):
    session = make_session()
    first_id = add_original(
        session,
        name="Coffee",
        amount_cents=450,
        recurring_interval="daily",
        next_recurrence_date=datetime(2024, 2, 29, 8, 0),
        anchor_date=date(2024, 2, 28),
    )
    second_id = add_original(
        session,
        name="Paper",
        amount_cents=300,
        recurring_interval="daily",
        next_recurrence_date=datetime(2024, 2, 29, 9, 0),
        anchor_date=date(2024, 2, 28),
    )
    real_clone = RecurringEngine._clone_occurrence
    calls = []

    def locked_once(self, original, occurrence):
        calls.append(original.id)
        if len(calls) == 1:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return real_clone(self, original, occurrence)

    monkeypatch.setattr(RecurringEngine, "_clone_occurrence", locked_once)

    result = materialize_due(session, date(2024, 2, 29))

    assert result.advanced == [second_id]
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], TransientStoreError)
    assert isinstance(result.errors[0].__cause__, OperationalError)
    assert clones_of(session, first_id) == []
    assert session.get(Expense, first_id).next_recurrence_date == datetime(
        2024, 2, 29, 8, 0
    )
    assert session.get(Expense, second_id).next_recurrence_date == datetime(
        2024, 3, 1, 9, 0
    )


def test_catch_up_limit_is_reported_and_resumed_on_next_run():
    session = make_session()
    coffee_id = add_original(
        session,
        name="Coffee",
        amount_cents=450,
        recurring_interval="daily",
        next_recurrence_date=datetime(2023, 1, 1, 9, 0),
        anchor_date=date(2022, 12, 31),
    )

    capped = materialize_due(session, date(2024, 6, 1), catch_up=True)

    assert len(capped.created) == MAX_CATCH_UP_OCCURRENCES
    assert capped.advanced == []
    assert len(capped.errors) == 1
    assert isinstance(capped.errors[0], IntegrityAnomaly)
    assert capped.errors[0].expense_id == coffee_id
    assert capped.partially_succeeded is True
    coffee = session.get(Expense, coffee_id)
    assert coffee.next_recurrence_date == datetime(2024, 1, 2, 9, 0)

    resumed = materialize_due(session, date(2024, 6, 1), catch_up=True)

    assert resumed.advanced == [coffee_id]
    assert resumed.errors == []
    coffee = session.get(Expense, coffee_id)
    assert coffee.next_recurrence_date == datetime(2024, 6, 2, 9, 0)
    assert len(clones_of(session, coffee_id)) == 518
