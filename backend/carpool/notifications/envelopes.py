"""
Notification envelopes: the message shape consumed by the delivery worker.

    {
      "type": "email",
      "recipient": {"user_id": 12, "email": "ada@example.edu"},
      "payload": {"template": "booking_confirmed", "subject": "...", "data": {...}},
      "metadata": {"correlation_id": "...", "source": "booking-service", "priority": "high"}
    }

Building an envelope is pure formatting. The correlation id is a UUIDv5 of
the fact being notified (e.g. ``booking:42:confirmed``), the recipient and
the template, so a redelivered change record produces the same id and the
transport can drop the duplicate.
"""

import uuid
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

CORRELATION_NAMESPACE = uuid.UUID("6f1c58a2-3d0b-4c57-9a86-0f4e2b7d9c31")

Priority = Literal["high", "normal", "low"]


class Recipient(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    email: Optional[str] = None


class Payload(BaseModel):
    model_config = ConfigDict(frozen=True)

    template: str
    subject: str
    data: dict[str, Any] = Field(default_factory=dict)


class Metadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    correlation_id: str
    source: str
    priority: Priority = "normal"


class Envelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "email"
    recipient: Recipient
    payload: Payload
    metadata: Metadata

    @property
    def correlation_id(self) -> str:
        return self.metadata.correlation_id

    def to_json(self) -> str:
        return self.model_dump_json()


def correlation_id_for(fact_key: str, recipient_id: int, template: str) -> str:
    return str(uuid.uuid5(CORRELATION_NAMESPACE, f"{fact_key}|{recipient_id}|{template}"))


def build_envelope(
    recipient_id: int,
    email: Optional[str],
    template: str,
    subject: str,
    data: Optional[dict[str, Any]] = None,
    source: str = "carpool",
    priority: Priority = "normal",
    fact_key: Optional[str] = None,
) -> Envelope:
    if fact_key is not None:
        correlation_id = correlation_id_for(fact_key, recipient_id, template)
    else:
        correlation_id = str(uuid.uuid4())

    return Envelope(
        recipient=Recipient(user_id=recipient_id, email=email),
        payload=Payload(template=template, subject=subject, data=dict(data or {})),
        metadata=Metadata(correlation_id=correlation_id, source=source, priority=priority),
    )
