"""Schemas for data returned by in-page scripts.

``evaluate()`` hands back whatever the page script produced. Each strategy
validates the payload against one of these models immediately; anything
that does not fit is treated as "strategy not applicable".
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Reading(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TextReading(_Reading):
    """Text content of the product container."""

    found: bool = False
    text: str = ""


class DropdownReading(_Reading):
    """Selectable quantities of the product's quantity control."""

    options: list[int] = Field(default_factory=list)
    input_max: Optional[int] = Field(default=None, alias="inputMax")

    @field_validator("options", mode="before")
    @classmethod
    def _keep_positive_ints(cls, value):
        if not isinstance(value, list):
            raise ValueError("options must be a list")
        numbers = []
        for item in value:
            try:
                number = int(str(item).strip())
            except ValueError:
                continue
            if number > 0:
                numbers.append(number)
        return numbers

    @field_validator("input_max", mode="before")
    @classmethod
    def _parse_max(cls, value):
        if value in (None, ""):
            return None
        try:
            number = int(str(value).strip())
        except ValueError:
            return None
        return number if number > 0 else None

    @property
    def max_quantity(self) -> Optional[int]:
        if self.options:
            return max(self.options)
        return self.input_max


class BadgeReading(_Reading):
    """Sold-out markers found in the product container."""

    found: bool = False
    badge: bool = False
    text: str = ""


class CartMessages(_Reading):
    """Alert/toast texts plus page text captured after the overflow attempt."""

    messages: list[str] = Field(default_factory=list)
    page_text: str = Field(default="", alias="pageText")
