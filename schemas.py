from datetime import date
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import TransactionType


class TransactionIn(BaseModel):
    date: date
    amount_cents: int = Field(..., gt=0)
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)

    @field_validator("category")
    @classmethod
    def _strip_category(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("Please choose a category.")
        return clean

    @field_validator("description")
    @classmethod
    def _blank_description_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        clean = value.strip()
        return clean or None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("Category name cannot be empty")
        return clean


class CategoryOrderIn(BaseModel):
    names: list[str] = Field(default_factory=list)

    @field_validator("names")
    @classmethod
    def _drop_blank_names(cls, value: list[str]) -> list[str]:
        return [name.strip() for name in value if name and name.strip()]


class BudgetIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    amount_cents: int = Field(..., ge=0)


class ReportRange(str, Enum):
    window = "window"
    this_month = "this_month"
    last_month = "last_month"


class ReportOptions(BaseModel):
    range_mode: ReportRange = ReportRange.window
    start: Optional[date] = None
    end: Optional[date] = None
    label: Optional[str] = None
    include_cents: bool = True
    notes: Optional[str] = Field(default=None, max_length=500)
    transaction_type: Optional[TransactionType] = None

    @model_validator(mode="after")
    def _window_needs_bounds(self) -> "ReportOptions":
        if self.range_mode == ReportRange.window and (
            self.start is None or self.end is None
        ):
            raise ValueError("Report window needs start and end dates")
        return self


class CheckoutSessionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: int
    email: Optional[str] = None
    price_id: str
    customer_id: Optional[str] = None
    success_url: str
    cancel_url: str
