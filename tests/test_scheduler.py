from contextlib import contextmanager
from datetime import date, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import scheduler
from database import Base
from errors import TransientQueueError, TransientStoreError
from models import Expense
from reports import ReportTrigger
from scheduler import SchedulerManager, run_materializer, run_report_trigger


class RecordingPublisher:
    def __init__(self):
        self.messages = []

    def publish(self, body, *, persistent=True):
        self.messages.append(body)


def test_register_jobs_adds_materializer_and_report_jobs():
    manager = SchedulerManager(ReportTrigger(RecordingPublisher()))

    manager.register_jobs()

    jobs = {job.id: job for job in manager.scheduler.get_jobs()}
    assert set(jobs) == {"recurring_daily", "recurring_hourly_safety", "report_monthly"}
    assert jobs["recurring_daily"].args == ("daily",)
    assert jobs["report_monthly"].args[1] == "monthly"
    assert jobs["recurring_hourly_safety"].misfire_grace_time == 300
    assert all(job.coalesce for job in jobs.values())


def test_register_jobs_without_trigger_skips_report_job():
    manager = SchedulerManager()

    manager.register_jobs()

    ids = {job.id for job in manager.scheduler.get_jobs()}
    assert ids == {"recurring_daily", "recurring_hourly_safety"}


def test_run_materializer_commits_through_session_scope(monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    @contextmanager
    def scope():
        with Session(engine) as session:
            yield session
            session.commit()

    with Session(engine) as session:
        session.add(
            Expense(
                name="Coffee",
                amount_cents=450,
                category_name="Food",
                is_recurring=True,
                recurring_interval="daily",
                next_recurrence_date=datetime(2024, 1, 1, 7, 0),
                is_original=True,
                anchor_date=date(2023, 12, 31),
            )
        )
        session.commit()
    monkeypatch.setattr(scheduler, "session_scope", scope)

    result = run_materializer("test", date(2024, 1, 1))

    assert len(result.created) == 1
    assert run_materializer("test", date(2024, 1, 1)).created == []


def test_run_materializer_swallows_store_outage(monkeypatch):
    def unavailable(*_args, **_kwargs):
        raise TransientStoreError("database is locked")

    monkeypatch.setattr(scheduler, "materialize_due", unavailable)

    assert run_materializer("test", date(2024, 1, 1)) is None


def test_run_report_trigger_reports_failure_and_keeps_message():
    class DownPublisher:
        def publish(self, body, *, persistent=True):
            raise TransientQueueError("broker down")

    trigger = ReportTrigger(DownPublisher())

    assert run_report_trigger(trigger, "test") is False
    assert len(trigger.pending) == 1

    trigger.publisher = RecordingPublisher()
    assert run_report_trigger(trigger, "test") is True
    assert trigger.pending == []
    assert len(trigger.publisher.messages) == 2
