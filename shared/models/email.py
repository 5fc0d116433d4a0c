"""Pydantic models describing emails handed over by the upstream email pipeline."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Direction(str, Enum):
    """Which side of the conversation an email belongs to.

    Sent emails carry the user's own voice, received emails the voice of
    their correspondents. Each direction lives in its own collection.
    """

    SENT = "sent"
    RECEIVED = "received"


class IngestEmail(BaseModel):
    """One cleaned email as delivered by the upstream pipeline.

    The text is expected to be free of quoted content and signatures already.
    """

    user_id: str
    direction: Direction
    email_id: str
    text: str
    subject: str | None = None
    recipient_email: str | None = None
    sender_email: str | None = None
    relationship: str | None = None
    sent_date: datetime | None = None


class IngestRequest(BaseModel):
    """Batch of emails to index."""

    emails: list[IngestEmail] = Field(default_factory=list)


class IngestResult(BaseModel):
    """Outcome of an ingestion batch."""

    indexed: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
