from datetime import datetime

from pydantic import BaseModel, Field


class PointFilter(BaseModel):
    """Backend-independent payload filter, translated by every RAG engine.

    All conditions are combined with AND. An empty filter matches every point
    of the collection.

    Attributes:
        user_id:           Only points owned by this user.
        relationship:      Only emails whose counterpart has this relationship type.
        counterpart_email: Only emails exchanged with this address (recipient of sent mail, sender of received mail).
        date_from:         Only emails sent at or after this moment.
        date_to:           Only emails sent at or before this moment.
        exclude_email_ids: Emails to leave out, e.g. the one being answered.
    """

    user_id: str | None = None
    relationship: str | None = None
    counterpart_email: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    exclude_email_ids: list[str] = Field(default_factory=list)
