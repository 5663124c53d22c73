"""
Wire and in-process shapes for the dispatch pipeline
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import MalformedMessageError


class OutboundMessage(BaseModel):
    """Email payload placed on the queue.

    Serialized as {"ToEmail": ..., "Subject": ..., "Body": ...}; the body is
    pre-rendered HTML. Python code uses the snake_case field names.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    recipient_address: str = Field(..., alias="ToEmail", min_length=1)
    subject: str = Field(..., alias="Subject")
    body: str = Field(..., alias="Body")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_wire(cls, payload: Union[bytes, str, Dict[str, Any]]) -> "OutboundMessage":
        try:
            if isinstance(payload, dict):
                return cls.model_validate(payload)
            return cls.model_validate_json(payload)
        except (ValidationError, ValueError, TypeError) as e:
            raise MalformedMessageError(str(e)) from e


@dataclass(frozen=True)
class DueItem:
    """A store entity whose event date crosses a reminder threshold."""
    entity_id: int
    contact_email: str
    contact_first_name: str
    related_name: str
    event_at: datetime


@dataclass(frozen=True)
class DispatchKey:
    reminder_type: str
    entity_type: str
    entity_id: int
    days_before_event: int
    target_date: date


@dataclass
class ScanReport:
    scanner: str
    today: date
    matched: int = 0
    published: int = 0
    skipped: int = 0
    failed: int = 0
