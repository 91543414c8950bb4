"""Strict schema baselines with forbidden extras by default."""

from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer


class StrictModel(BaseModel):
    """Neutral strict base for response DTOs."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class StrictRequestModel(StrictModel):
    """Request DTO base that always forbids unexpected fields."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True, str_strip_whitespace=True)


# Two-decimal money that serializes as a string so cents never pass through a float
MoneyAmount = Annotated[
    Decimal,
    Field(max_digits=10, decimal_places=2),
    PlainSerializer(lambda value: str(value), return_type=str, when_used="json"),
]
