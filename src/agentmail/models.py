# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic schemas for registry rows and mailbox messages.

Both record types are stored one JSON object per line. Field names on the
wire follow the mailbox format shared with other agentmail clients
(``from`` and ``message`` for messages), while the Python attributes use
``sender`` and ``body``.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

_BASE62 = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
MESSAGE_ID_LENGTH = 8


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_id(length: int = MESSAGE_ID_LENGTH) -> str:
    """Generate a short random base62 message identifier."""
    return "".join(secrets.choice(_BASE62) for _ in range(length))


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RecipientStatus(str, Enum):
    """Availability of a registered recipient.

    Attributes:
        READY: Idle and willing to be notified of new mail.
        WORK: Busy; never notified.
        OFFLINE: Away; never notified.
    """

    READY = "ready"
    WORK = "work"
    OFFLINE = "offline"

    @property
    def resets_notified(self) -> bool:
        """Whether a transition into this status clears the notified flag."""
        return self is not RecipientStatus.READY


class RecipientState(BaseModel):
    """One row of the recipient registry.

    Attributes:
        recipient: Unique recipient (window) name.
        status: Current availability.
        updated_at: Time of the last status write.
        notified: Whether the recipient was already notified during the
            current ready session.
        last_read_at: Epoch milliseconds of the last receive, if any.
    """

    model_config = ConfigDict(extra="ignore")

    recipient: Annotated[str, Field(min_length=1)]
    status: RecipientStatus
    updated_at: datetime
    notified: bool = False
    last_read_at: int | None = None

    @field_validator("updated_at")
    @classmethod
    def _updated_at_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def age(self, now: datetime | None = None) -> float:
        """Seconds since the last status write."""
        return ((now or utc_now()) - self.updated_at).total_seconds()


class Message(BaseModel):
    """One message in a recipient's mailbox.

    Attributes:
        id: Short unique identifier.
        sender: Sending window name (``from`` on the wire).
        to: Recipient window name.
        body: Message text (``message`` on the wire).
        read_flag: Set once the recipient has received the message.
        created_at: Append time; used by the aged-message retention pass.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Annotated[str, Field(min_length=1)]
    sender: Annotated[str, Field(alias="from")]
    to: str
    body: Annotated[str, Field(alias="message")]
    read_flag: bool = False
    created_at: datetime | None = None

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @classmethod
    def compose(cls, sender: str, to: str, body: str) -> Message:
        """Build a new unread message with a fresh identifier."""
        return cls(id=generate_id(), sender=sender, to=to, body=body)

    def to_line(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


__all__ = [
    "MESSAGE_ID_LENGTH",
    "Message",
    "RecipientState",
    "RecipientStatus",
    "generate_id",
    "utc_now",
]
