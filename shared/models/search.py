"""Pydantic models for hybrid search requests and results."""

from datetime import datetime

from pydantic import BaseModel, Field

from shared.clients.rag.models.VectorPoint import EmailPayload
from shared.models.email import Direction


class SearchFilters(BaseModel):
    """Optional payload filters, applied inside the single searched collection."""

    relationship: str | None = None
    counterpart_email: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    exclude_email_ids: list[str] = Field(default_factory=list)


class SearchRequest(BaseModel):
    """Search for stylistic exemplars of one user in one direction.

    limit and score_threshold fall back to SEARCH_DEFAULT_LIMIT and
    SEARCH_SCORE_THRESHOLD when omitted.
    """

    user_id: str
    direction: Direction = Direction.SENT
    query: str
    limit: int | None = Field(default=None, gt=0)
    score_threshold: float | None = None
    filters: SearchFilters = Field(default_factory=SearchFilters)


class SearchScores(BaseModel):
    """Per-result scores, all normalised to 0..1.

    temporal is the combined score weighted by the age of the email.
    """

    semantic: float
    lexical: float
    combined: float
    temporal: float


class SearchDocument(BaseModel):
    point_id: str
    scores: SearchScores
    payload: EmailPayload


class SearchStats(BaseModel):
    """total_candidates counts the fused candidates before the threshold, filtered_count the returned ones."""

    total_candidates: int = 0
    filtered_count: int = 0
    avg_semantic_score: float = 0.0
    avg_lexical_score: float = 0.0
    avg_combined_score: float = 0.0
    search_time_ms: float = 0.0


class QueryResult(BaseModel):
    success: bool
    documents: list[SearchDocument] = Field(default_factory=list)
    stats: SearchStats = Field(default_factory=SearchStats)
    error: str | None = None
