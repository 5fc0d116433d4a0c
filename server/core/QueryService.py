import asyncio
import time
from datetime import datetime, timezone

from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.PointFilter import PointFilter
from shared.clients.rag.models.ScoredPoint import ScoredPoint
from shared.clients.rag.models.VectorPoint import EmailPayload, SparseVector
from shared.helper.HelperConfig import HelperConfig
from shared.lexical import LexicalEncoder
from shared.lexical.LexicalStateStore import LexicalStateStore
from shared.models.email import Direction
from shared.models.errors import SearchTimeoutError
from shared.models.retrieval import RetrievalSettings
from shared.models.search import QueryResult, SearchDocument, SearchFilters, SearchRequest, SearchScores, SearchStats
from shared.semantic.SemanticEncoder import SemanticEncoder


class _Candidate:
    __slots__ = ("point_id", "payload", "semantic_raw", "lexical_raw")

    def __init__(self, point_id: str, payload: EmailPayload) -> None:
        self.point_id = point_id
        self.payload = payload
        self.semantic_raw: float | None = None
        self.lexical_raw: float | None = None


class QueryService:
    """Hybrid search over one user's collection: embed -> fan out -> fuse -> rank.

    Both signals are normalised to 0..1 before fusion:

    * semantic: cosine similarity clamped to [0, 1]
    * lexical:  dot product divided by the best dot product among the candidates

    A candidate that only one signal retrieved gets ``missing_score_floor``
    for the other one. When no lexical state has been published for the user,
    or the query shares no term with it, lexical scoring is skipped and the
    combined score equals the semantic score.
    """

    def __init__(
        self,
        helper_config: HelperConfig,
        rag_client: RAGClientInterface,
        semantic_encoder: SemanticEncoder,
        state_store: LexicalStateStore,
        settings: RetrievalSettings,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._rag_client = rag_client
        self._semantic_encoder = semantic_encoder
        self._state_store = state_store
        self._settings = settings

    ##########################################
    ################ SCORING #################
    ##########################################

    def combine_scores(self, semantic: float, lexical: float) -> float:
        """Weighted sum of two normalised scores."""
        return self._settings.semantic_weight * semantic + self._settings.lexical_weight * lexical

    def _normalize_semantic(self, raw: float | None) -> float:
        if raw is None:
            return self._settings.missing_score_floor
        return min(max(raw, 0.0), 1.0)

    def _normalize_lexical(self, raw: float | None, best: float) -> float:
        if raw is None or best <= 0:
            return self._settings.missing_score_floor
        return min(max(raw / best, 0.0), 1.0)

    ##########################################
    ############### HELPERS ##################
    ##########################################

    def _failed(self, message: str, started: float) -> QueryResult:
        return QueryResult(
            success=False,
            error=message,
            stats=SearchStats(search_time_ms=(time.perf_counter() - started) * 1000),
        )

    def _get_point_filter(self, user_id: str, filters: SearchFilters | None) -> PointFilter:
        filters = filters or SearchFilters()
        return PointFilter(
            user_id=user_id,
            relationship=filters.relationship,
            counterpart_email=filters.counterpart_email,
            date_from=filters.date_from,
            date_to=filters.date_to,
            exclude_email_ids=filters.exclude_email_ids,
        )

    async def _encode_query_lexical(self, user_id: str, query_text: str) -> SparseVector | None:
        # file read, kept off the event loop
        state = await asyncio.to_thread(self._state_store.load, user_id)
        if state is None or state.is_empty():
            self.logging.debug("No lexical state published for user '%s', searching semantic only.", user_id)
            return None
        sparse = LexicalEncoder.encode(state, query_text)
        if sparse.is_empty():
            self.logging.debug("Query shares no term with the lexical vocabulary of user '%s'.", user_id)
            return None
        return sparse

    def _collect_candidates(self, user_id: str, dense_hits: list[ScoredPoint], sparse_hits: list[ScoredPoint]) -> dict[str, _Candidate]:
        candidates: dict[str, _Candidate] = {}
        for hits, attribute in ((dense_hits, "semantic_raw"), (sparse_hits, "lexical_raw")):
            for hit in hits:
                if hit.payload is None or hit.payload.user_id != user_id:
                    self.logging.warning("Dropping point %s: payload does not belong to user '%s'.", hit.id, user_id)
                    continue
                candidate = candidates.get(hit.id)
                if candidate is None:
                    candidate = _Candidate(hit.id, hit.payload)
                    candidates[hit.id] = candidate
                setattr(candidate, attribute, hit.score)
        return candidates

    ##########################################
    ################# CORE ###################
    ##########################################

    async def search_request(self, request: SearchRequest) -> QueryResult:
        return await self.search(
            user_id=request.user_id,
            direction=request.direction,
            query_text=request.query,
            limit=request.limit,
            score_threshold=request.score_threshold,
            filters=request.filters,
        )

    async def search(
        self,
        user_id: str,
        direction: Direction | str,
        query_text: str,
        limit: int | None = None,
        score_threshold: float | None = None,
        filters: SearchFilters | None = None,
    ) -> QueryResult:
        """Rank one user's emails of one direction against a query.

        Args:
            user_id (str): Owner of the searched collection.
            direction (Direction | str): "sent" or "received".
            query_text (str): The incoming message to find exemplars for.
            limit (int | None): Maximum results, SEARCH_DEFAULT_LIMIT when None.
            score_threshold (float | None): Minimum combined score, SEARCH_SCORE_THRESHOLD when None.
            filters (SearchFilters | None): Optional payload filters.

        Returns:
            QueryResult: success=False with a reason when the user has no
                collection or corpus yet.

        Raises:
            EmbeddingError: The query could not be embedded.
            StoreError: The store could not be queried.
            SearchTimeoutError: The search exceeded SEARCH_TIMEOUT.
        """
        started = time.perf_counter()
        limit = limit or self._settings.default_limit
        threshold = self._settings.score_threshold if score_threshold is None else score_threshold
        try:
            return await asyncio.wait_for(
                self._search(started, user_id, Direction(direction), query_text, limit, threshold, filters),
                timeout=self._settings.search_timeout,
            )
        except asyncio.TimeoutError:
            self.logging.error("Search for user '%s' exceeded %.2fs.", user_id, self._settings.search_timeout)
            raise SearchTimeoutError(f"Search did not finish within {self._settings.search_timeout} seconds.")

    async def _search(
        self,
        started: float,
        user_id: str,
        direction: Direction,
        query_text: str,
        limit: int,
        threshold: float,
        filters: SearchFilters | None,
    ) -> QueryResult:
        if not query_text or not query_text.strip():
            return self._failed("Query text is empty.", started)

        collection = self._rag_client.get_collection_name(user_id, direction)
        if not await self._rag_client.do_existence_check(collection):
            self.logging.info("Collection '%s' does not exist yet.", collection)
            return self._failed(f"No {direction.value} emails indexed for user '{user_id}' yet.", started)
        if await self._rag_client.do_count(collection) == 0:
            self.logging.info("Collection '%s' is empty.", collection)
            return self._failed(f"No {direction.value} emails indexed for user '{user_id}' yet.", started)

        # semantic first: without it there is nothing to rank
        query_dense = await self._semantic_encoder.embed(query_text)
        query_sparse = await self._encode_query_lexical(user_id, query_text)

        point_filter = self._get_point_filter(user_id, filters)
        fetch_limit = self._settings.overfetch_multiplier * limit
        if query_sparse is not None:
            dense_hits, sparse_hits = await asyncio.gather(
                self._rag_client.do_search_dense(collection, query_dense, fetch_limit, point_filter),
                self._rag_client.do_search_sparse(collection, query_sparse, fetch_limit, point_filter),
            )
        else:
            dense_hits = await self._rag_client.do_search_dense(collection, query_dense, fetch_limit, point_filter)
            sparse_hits = []

        candidates = self._collect_candidates(user_id, dense_hits, sparse_hits)
        best_lexical = max((c.lexical_raw for c in candidates.values() if c.lexical_raw is not None), default=0.0)
        now = datetime.now(timezone.utc)

        scored: list[SearchDocument] = []
        for candidate in candidates.values():
            semantic = self._normalize_semantic(candidate.semantic_raw)
            if query_sparse is None:
                lexical = 0.0
                combined = semantic
            else:
                lexical = self._normalize_lexical(candidate.lexical_raw, best_lexical)
                combined = self.combine_scores(semantic, lexical)
            if candidate.payload.sent_date and candidate.payload.sent_at() is None:
                self.logging.warning("Point %s has an unreadable sent_date %r, weighting it as recent.", candidate.point_id, candidate.payload.sent_date)
            temporal = combined * self._settings.temporal_weights.weight_for(candidate.payload.sent_date, now)
            scored.append(
                SearchDocument(
                    point_id=candidate.point_id,
                    scores=SearchScores(semantic=semantic, lexical=lexical, combined=combined, temporal=temporal),
                    payload=candidate.payload,
                )
            )

        if self._settings.temporal_ranking:
            scored.sort(key=lambda doc: (-doc.scores.temporal, doc.point_id))
        else:
            scored.sort(key=lambda doc: (-doc.scores.combined, doc.point_id))
        documents = [doc for doc in scored if doc.scores.combined >= threshold][:limit]

        count = len(documents)
        stats = SearchStats(
            total_candidates=len(scored),
            filtered_count=count,
            avg_semantic_score=sum(d.scores.semantic for d in documents) / count if count else 0.0,
            avg_lexical_score=sum(d.scores.lexical for d in documents) / count if count else 0.0,
            avg_combined_score=sum(d.scores.combined for d in documents) / count if count else 0.0,
            search_time_ms=(time.perf_counter() - started) * 1000,
        )
        self.logging.info(
            "Search in '%s': %d candidates (%d dense, %d sparse), %d returned in %.1fms.",
            collection, stats.total_candidates, len(dense_hits), len(sparse_hits), count, stats.search_time_ms,
        )
        return QueryResult(success=True, documents=documents, stats=stats)
