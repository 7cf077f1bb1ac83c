"""Typed payloads for collaborator CRUD.

Patch models carry explicit per-field optionality: only fields the caller
sets are written (see :func:`backspace.venue.database.apply_patch`).
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ValidationError
from .money import to_money


class ResourceType(str, Enum):
    SEAT = "seat"
    DESK = "desk"
    ROOM = "room"


class InventoryCategory(str, Enum):
    BEVERAGE = "beverage"
    SNACK = "snack"
    OTHER = "other"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"


class PlanType(str, Enum):
    WEEKLY = "weekly"
    HALF_MONTHLY = "half-monthly"
    MONTHLY = "monthly"


PLAN_DAYS = {
    PlanType.WEEKLY: 7,
    PlanType.HALF_MONTHLY: 15,
    PlanType.MONTHLY: 30,
}


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    @field_validator("*", mode="before")
    @classmethod
    def _strip_strings(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value


class CustomerCreate(_Payload):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: Optional[str] = None
    notes: Optional[str] = None


class CustomerPatch(_Payload):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, min_length=1)
    email: Optional[str] = None
    notes: Optional[str] = None


class ResourceCreate(_Payload):
    name: str = Field(..., min_length=1)
    resource_type: ResourceType
    rate_per_hour: Decimal = Field(..., ge=0)
    max_price: Decimal = Field(Decimal("0"), ge=0)

    @field_validator("rate_per_hour", "max_price")
    @classmethod
    def _quantize(cls, value: Decimal) -> Decimal:
        return to_money(value)


class ResourcePatch(_Payload):
    name: Optional[str] = Field(None, min_length=1)
    resource_type: Optional[ResourceType] = None
    rate_per_hour: Optional[Decimal] = Field(None, ge=0)
    max_price: Optional[Decimal] = Field(None, ge=0)

    @field_validator("rate_per_hour", "max_price")
    @classmethod
    def _quantize(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        return None if value is None else to_money(value)


class InventoryItemCreate(_Payload):
    name: str = Field(..., min_length=1)
    category: InventoryCategory = InventoryCategory.OTHER
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(0, ge=0)
    min_stock: int = Field(0, ge=0)

    @field_validator("price")
    @classmethod
    def _quantize(cls, value: Decimal) -> Decimal:
        return to_money(value)


class InventoryItemPatch(_Payload):
    """Stock moves only through adjustments, so quantity is not patchable."""

    name: Optional[str] = Field(None, min_length=1)
    category: Optional[InventoryCategory] = None
    price: Optional[Decimal] = Field(None, ge=0)
    min_stock: Optional[int] = Field(None, ge=0)

    @field_validator("price")
    @classmethod
    def _quantize(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        return None if value is None else to_money(value)


class SubscriptionPatch(_Payload):
    """Plan type changes go through :func:`change_plan`, which also moves the end date."""

    price: Optional[Decimal] = Field(None, gt=0)
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None

    @field_validator("price")
    @classmethod
    def _quantize(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        return None if value is None else to_money(value)


PayloadT = TypeVar("PayloadT", bound=BaseModel)


def parse(model: Type[PayloadT], data: dict) -> PayloadT:
    """Validate ``data`` against ``model``, raising the venue ValidationError."""

    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValidationError(problems or "Invalid payload") from exc
