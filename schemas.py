from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from models import RecurringInterval


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    created_at: datetime
    updated_at: datetime


class ExpenseIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    category_name: str = Field(..., min_length=1, max_length=100)
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None


class ExpenseUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2
    )
    category_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    is_recurring: Optional[bool] = None
    recurring_interval: Optional[RecurringInterval] = None


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    amount_cents: int
    category_id: Optional[int]
    category_name: str
    is_recurring: bool
    recurring_interval: Optional[str]
    next_recurrence_date: Optional[datetime]
    is_original: bool
    origin_id: Optional[int]
    occurrence_date: Optional[date]
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def amount(self) -> Decimal:
        return (Decimal(self.amount_cents) / 100).quantize(Decimal("0.01"))


class MaterializationOut(BaseModel):
    as_of: date
    created: list[int]
    advanced: list[int]
    errors: list[str]


class ReportMessagePayload(BaseModel):
    report: Literal["monthly_expenses"] = "monthly_expenses"
    period_start: Optional[date] = None
    period_end: Optional[date] = None


class ReportMessage(BaseModel):
    id: str
    timestamp: datetime
    payload: ReportMessagePayload = Field(default_factory=ReportMessagePayload)
