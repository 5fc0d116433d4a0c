from pydantic import BaseModel

from shared.clients.rag.models.VectorPoint import EmailPayload, SparseVector


class ScrolledPoint(BaseModel):
    """A point as returned by a scan. Vectors are only present when they were requested."""

    id: str
    payload: EmailPayload
    dense_vector: list[float] | None = None
    sparse_vector: SparseVector | None = None


class ScrollResult(BaseModel):
    """One page of a collection scan.

    Attributes:
        points:           Points on this page.
        next_page_offset: Cursor for the next page, or None when the scan is exhausted.
    """

    points: list[ScrolledPoint]
    next_page_offset: str | int | None = None
