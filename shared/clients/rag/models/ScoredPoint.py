from pydantic import BaseModel

from shared.clients.rag.models.VectorPoint import EmailPayload


class ScoredPoint(BaseModel):
    """A nearest-neighbour hit with its raw backend score.

    Dense hits carry a cosine similarity, sparse hits a weighted dot product.
    """

    id: str
    score: float
    payload: EmailPayload | None = None
