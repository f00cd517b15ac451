import logging
from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import (
    ConflictError,
    NotFoundError,
    TransientQueueError,
    TransientStoreError,
    ValidationError,
)
from messaging import RabbitMQPublisher
from models import utcnow
from recurrence import materialize_due
from reports import ReportTrigger
from scheduler import SchedulerManager
from schemas import (
    CategoryIn,
    CategoryOut,
    ExpenseIn,
    ExpenseOut,
    ExpenseUpdateIn,
    MaterializationOut,
)
from services import CategoryService, ExpenseService


logger = logging.getLogger(__name__)

app = FastAPI(title="Expense Tracker")

settings = get_settings()
publisher = RabbitMQPublisher(settings.rabbitmq_url, settings.report_queue)
report_trigger = ReportTrigger(publisher)
scheduler_manager = SchedulerManager(report_trigger)

DOMAIN_ERRORS = (
    ValidationError,
    NotFoundError,
    ConflictError,
    TransientStoreError,
    TransientQueueError,
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_report_trigger() -> ReportTrigger:
    return report_trigger


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (TransientStoreError, TransientQueueError)):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.on_event("startup")
def startup_event():
    try:
        publisher.open()
    except TransientQueueError:
        logger.error(
            "rabbitmq_unavailable: publishing will reconnect on the next report tick",
            exc_info=True,
        )
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()
    publisher.close()


@app.get("/expenses", response_model=list[ExpenseOut])
def list_expenses(
    expense_type: Optional[str] = Query(None, alias="expenseType"),
    sort_by: str = Query("newest", alias="sortBy"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
):
    try:
        return ExpenseService(db).list(expense_type, sort_by, limit)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc) from exc


@app.get("/expenses/{expense_id}", response_model=ExpenseOut)
def get_expense(expense_id: int, db: Session = Depends(get_db)):
    try:
        return ExpenseService(db).get(expense_id)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc) from exc


@app.post("/expenses", response_model=ExpenseOut, status_code=201)
def create_expense(data: ExpenseIn, db: Session = Depends(get_db)):
    try:
        return ExpenseService(db).create(data)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc) from exc


@app.patch("/expenses/{expense_id}", response_model=ExpenseOut)
def update_expense(
    expense_id: int, data: ExpenseUpdateIn, db: Session = Depends(get_db)
):
    try:
        return ExpenseService(db).update(expense_id, data)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc) from exc


@app.delete("/expenses/{expense_id}", response_model=ExpenseOut)
def delete_expense(expense_id: int, db: Session = Depends(get_db)):
    service = ExpenseService(db)
    try:
        deleted = ExpenseOut.model_validate(service.get(expense_id))
        service.delete(expense_id)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc) from exc
    return deleted


@app.get("/categories", response_model=list[CategoryOut])
def list_categories(
    sort_by: str = Query("newest", alias="sortBy"), db: Session = Depends(get_db)
):
    return CategoryService(db).list_all(sort_by)


@app.get("/categories/{category_id}", response_model=CategoryOut)
def get_category(category_id: int, db: Session = Depends(get_db)):
    try:
        return CategoryService(db).get(category_id)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc) from exc


@app.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        return CategoryService(db).create(data)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc) from exc


@app.patch("/categories/{category_id}", response_model=CategoryOut)
def rename_category(category_id: int, data: CategoryIn, db: Session = Depends(get_db)):
    try:
        return CategoryService(db).rename(category_id, data.name)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc) from exc


@app.delete("/categories/{category_id}")
def delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        deleted = CategoryService(db).delete(category_id)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc) from exc
    return asdict(deleted)


@app.post("/admin/materialize", response_model=MaterializationOut)
def admin_materialize(
    as_of: Optional[date] = Query(None), db: Session = Depends(get_db)
):
    day = as_of or utcnow().date()
    try:
        result = materialize_due(db, day, catch_up=settings.recurring_catch_up)
    except DOMAIN_ERRORS as exc:
        raise http_error(exc) from exc
    return MaterializationOut(
        as_of=day,
        created=result.created,
        advanced=result.advanced,
        errors=[str(error) for error in result.errors],
    )


@app.post("/admin/reports/trigger", status_code=202)
def admin_trigger_report(trigger: ReportTrigger = Depends(get_report_trigger)):
    try:
        trigger.on_monthly_tick()
    except DOMAIN_ERRORS as exc:
        raise http_error(exc) from exc
    return {"status": "queued", "pending": len(trigger.pending)}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
