"""Point models: one indexed email inside a per-user, per-direction collection."""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from pydantic import BaseModel, Field, model_validator


def parse_sent_date(value: str | None) -> datetime | None:
    """Parse a stored sent_date into an aware UTC datetime.

    Accepts ISO-8601 (written by ingestion) and RFC 2822 mail headers (written
    by older importers). Naive values are taken as UTC.

    Returns:
        datetime | None: None if the value is empty or cannot be parsed.
    """
    if not value or not value.strip():
        return None
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class SparseVector(BaseModel):
    """Sparse term-weight vector in the index/value layout used by the vector store.

    Indices are kept in ascending order so that two encodings of the same text
    compare equal element by element.

    Attributes:
        indices: Term indices (stable CRC32 hashes of the terms).
        values:  Weight for the term at the same position.
    """

    indices: list[int] = Field(default_factory=list)
    values: list[float] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_lengths(self) -> "SparseVector":
        if len(self.indices) != len(self.values):
            raise ValueError(
                f"Sparse vector has {len(self.indices)} indices but {len(self.values)} values."
            )
        return self

    def is_empty(self) -> bool:
        return not self.indices

    def as_mapping(self) -> dict[int, float]:
        return dict(zip(self.indices, self.values))

    def dot(self, other: "SparseVector") -> float:
        """Weighted dot product with another sparse vector."""
        mine = self.as_mapping()
        return sum(mine[idx] * val for idx, val in zip(other.indices, other.values) if idx in mine)


class EmailPayload(BaseModel):
    """Metadata stored alongside every point.

    Written once on ingest and never modified by the sparse migration.
    The user_id field is mandatory; it is checked again on every search hit
    even though collections are already keyed by user.

    Attributes:
        user_id:         Owner of the collection the point lives in.
        email_id:        Identifier of the email in the upstream pipeline.
        direction:       "sent" or "received".
        subject:         Subject line, if known.
        recipient_email: Recipient for sent emails.
        sender_email:    Sender for received emails.
        relationship:    Relationship to the counterpart, e.g. "colleague" or "family".
        sent_date:       Timestamp of the email, ISO-8601 when written by ingestion.
        text:            Cleaned exemplar text used for both encodings.
    """

    user_id: str
    email_id: str
    direction: str
    subject: str | None = None
    recipient_email: str | None = None
    sender_email: str | None = None
    relationship: str | None = None
    sent_date: str | None = None
    text: str = ""

    def sent_at(self) -> datetime | None:
        return parse_sent_date(self.sent_date)


class Point(BaseModel):
    """A fully specified point. Used for creation and full replacement."""

    id: str
    dense_vector: list[float]
    sparse_vector: SparseVector | None = None
    payload: EmailPayload


class PointUpdate(BaseModel):
    """Partial update of an existing point.

    Only fields that were explicitly passed are written; everything else on
    the stored point is left untouched. Presence is tracked through pydantic's
    ``model_fields_set``, so "not given" and "given" are never confused with
    a null value meaning "unchanged".
    """

    id: str
    dense_vector: list[float] | None = None
    sparse_vector: SparseVector | None = None
    payload: EmailPayload | None = None

    @model_validator(mode="after")
    def _check_fields(self) -> "PointUpdate":
        given = self.model_fields_set - {"id"}
        if not given:
            raise ValueError(f"Update for point {self.id} does not set any field.")
        for name in given:
            if getattr(self, name) is None:
                raise ValueError(f"Update for point {self.id} sets '{name}' to null; omit the field instead.")
        return self

    def has_dense(self) -> bool:
        return "dense_vector" in self.model_fields_set

    def has_sparse(self) -> bool:
        return "sparse_vector" in self.model_fields_set

    def has_payload(self) -> bool:
        return "payload" in self.model_fields_set
