import logging
import threading
import uuid
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import export_expenses
from errors import TransientQueueError, ValidationError
from messaging import MessagePublisher
from periods import Period, previous_month, utc_date
from schemas import ReportMessage, ReportMessagePayload
from services import ExpenseService


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


def build_report_message(now: Optional[datetime] = None) -> ReportMessage:
    now = now or datetime.now(timezone.utc)
    period = previous_month(utc_date(now))
    return ReportMessage(
        id=uuid.uuid4().hex,
        timestamp=now,
        payload=ReportMessagePayload(
            period_start=period.start,
            period_end=period.end,
        ),
    )


class ReportTrigger:
    """Publishes the monthly report request.

    Messages that fail to publish stay in ``pending`` and are sent first on
    the next tick, so a month is not dropped by a broker outage. Ticks from
    the scheduler thread and the admin endpoint are serialized on one lock,
    which also keeps the publisher to one thread at a time.
    """

    def __init__(self, publisher: MessagePublisher) -> None:
        self.publisher = publisher
        self.pending: list[bytes] = []
        self._lock = threading.Lock()

    def on_monthly_tick(self, now: Optional[datetime] = None) -> None:
        message = build_report_message(now)
        logger.info(
            f"report_trigger: id={message.id} "
            f"period={message.payload.period_start}..{message.payload.period_end}"
        )
        with self._lock:
            self.pending.append(message.model_dump_json().encode("utf-8"))
            self._flush_pending()

    def flush(self) -> int:
        with self._lock:
            return self._flush_pending()

    def _flush_pending(self) -> int:
        sent = 0
        while self.pending:
            try:
                self.publisher.publish(self.pending[0], persistent=True)
            except Exception as exc:
                logger.error(
                    f"report_publish_failed: pending={len(self.pending)} "
                    "retry=next_tick",
                    exc_info=True,
                )
                if isinstance(exc, TransientQueueError):
                    raise
                raise TransientQueueError("Could not publish report request") from exc
            self.pending.pop(0)
            sent += 1
        return sent


class ReportConsumer:
    """Renders the requested month's expenses to a CSV file."""

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        reports_dir: Optional[Path] = None,
    ) -> None:
        if session_factory is None:
            from database import session_scope

            session_factory = session_scope
        self.session_factory = session_factory
        self.reports_dir = reports_dir or get_settings().reports_dir

    @staticmethod
    def _period(message: ReportMessage) -> Period:
        payload = message.payload
        if (payload.period_start is None) != (payload.period_end is None):
            raise ValidationError("Report period needs both a start and an end")
        if payload.period_start and payload.period_end:
            if payload.period_start > payload.period_end:
                raise ValidationError("Report period starts after it ends")
            return Period(
                payload.period_start.strftime("%Y-%m"),
                payload.period_start,
                payload.period_end,
            )
        return previous_month(utc_date(message.timestamp))

    def handle_message(self, body: bytes) -> Optional[Path]:
        try:
            message = ReportMessage.model_validate_json(body)
        except PydanticValidationError as exc:
            raise ValidationError("Malformed report message") from exc
        period = self._period(message)
        start, end = period.bounds()

        with self.session_factory() as session:
            expenses = ExpenseService(session).find_by_date_range(start, end)
            if not expenses:
                logger.info(f"report_empty: id={message.id} period={period.slug}")
                return None
            content = export_expenses(expenses)

        self.reports_dir.mkdir(parents=True, exist_ok=True)
        path = self.reports_dir / f"expenses_{period.slug}.csv"
        path.write_text(content, encoding="utf-8")
        logger.info(
            f"report_written: id={message.id} period={period.slug} "
            f"rows={len(expenses)} path={path}"
        )
        return path


def main() -> None:
    from messaging import RabbitMQConsumer

    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    consumer = ReportConsumer()
    RabbitMQConsumer(settings.rabbitmq_url, settings.report_queue).run(
        consumer.handle_message
    )


if __name__ == "__main__":
    main()
