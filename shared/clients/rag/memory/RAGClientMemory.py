"""In-process RAG engine.

Keeps collections in a dict and scores with numpy. Selected with
RAG_ENGINE=memory for local runs without a vector database; state lives as
long as the process.
"""

from datetime import datetime, timezone

import httpx
import numpy as np

from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.PointFilter import PointFilter
from shared.clients.rag.models.ScoredPoint import ScoredPoint
from shared.clients.rag.models.Scroll import ScrolledPoint, ScrollResult
from shared.clients.rag.models.VectorPoint import EmailPayload, Point, PointUpdate, SparseVector
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig
from shared.models.errors import StoreError


def _as_utc(moment: datetime) -> datetime:
    # naive timestamps are taken as UTC
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


class _MemoryCollection:
    def __init__(self, vector_size: int, distance: str, sparse_enabled: bool = True) -> None:
        self.vector_size = vector_size
        self.distance = distance
        self.sparse_enabled = sparse_enabled
        self.points: dict[str, Point] = {}


class RAGClientMemory(RAGClientInterface):
    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._collections: dict[str, _MemoryCollection] = {}

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Memory"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return []

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        return {}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return "memory://local"

    def _get_endpoint_healthcheck(self) -> str:
        return ""

    def _get_collection(self, collection: str) -> _MemoryCollection:
        found = self._collections.get(collection)
        if found is None:
            raise StoreError(f"Collection '{collection}' does not exist.")
        return found

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def boot(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        pass

    async def close(self) -> None:
        pass

    async def do_healthcheck(self) -> httpx.Response:
        return httpx.Response(200, json={"title": "memory"})

    ##########################################
    ################ FILTER ##################
    ##########################################

    def _matches(self, payload: EmailPayload, point_filter: PointFilter | None) -> bool:
        if point_filter is None:
            return True
        if point_filter.user_id and payload.user_id != point_filter.user_id:
            return False
        if point_filter.relationship and payload.relationship != point_filter.relationship:
            return False
        if point_filter.counterpart_email and point_filter.counterpart_email not in (payload.recipient_email, payload.sender_email):
            return False
        if point_filter.date_from or point_filter.date_to:
            sent = payload.sent_at()
            if sent is None:
                return False
            if point_filter.date_from and sent < _as_utc(point_filter.date_from):
                return False
            if point_filter.date_to and sent > _as_utc(point_filter.date_to):
                return False
        if payload.email_id in point_filter.exclude_email_ids:
            return False
        return True

    ##########################################
    ############ COLLECTIONS #################
    ##########################################

    async def do_existence_check(self, collection: str) -> bool:
        return collection in self._collections

    async def do_create_collection(self, collection: str, vector_size: int, distance: str = "Cosine") -> None:
        if collection in self._collections:
            raise StoreError(f"Collection '{collection}' already exists.")
        self._collections[collection] = _MemoryCollection(vector_size=vector_size, distance=distance)

    async def do_check_sparse_schema(self, collection: str) -> bool:
        return self._get_collection(collection).sparse_enabled

    async def do_add_sparse_schema(self, collection: str) -> None:
        self._get_collection(collection).sparse_enabled = True

    async def do_delete_collection(self, collection: str) -> None:
        self._collections.pop(collection, None)

    ##########################################
    ################ POINTS ##################
    ##########################################

    async def do_upsert_points(self, collection: str, points: list[Point]) -> None:
        target = self._get_collection(collection)
        for point in points:
            if len(point.dense_vector) != target.vector_size:
                raise StoreError(
                    f"Point {point.id} has a dense vector of size {len(point.dense_vector)}, collection '{collection}' expects {target.vector_size}."
                )
            if point.sparse_vector is not None and not target.sparse_enabled:
                raise StoreError(f"Collection '{collection}' has no sparse vector field.")
        for point in points:
            target.points[point.id] = point.model_copy(deep=True)

    async def do_update_points(self, collection: str, updates: list[PointUpdate]) -> None:
        target = self._get_collection(collection)
        for update in updates:
            if update.id not in target.points:
                raise StoreError(f"Point {update.id} does not exist in collection '{collection}'.")
            if update.has_sparse() and not target.sparse_enabled:
                raise StoreError(f"Collection '{collection}' has no sparse vector field.")
        for update in updates:
            stored = target.points[update.id]
            changes = {}
            if update.has_dense():
                changes["dense_vector"] = list(update.dense_vector)
            if update.has_sparse():
                changes["sparse_vector"] = update.sparse_vector.model_copy(deep=True)
            if update.has_payload():
                changes["payload"] = update.payload.model_copy(deep=True)
            target.points[update.id] = stored.model_copy(update=changes)

    async def do_scroll(self, collection: str, point_filter: PointFilter | None = None, limit: int = 1000, offset: str | int | None = None, with_vectors: bool = False) -> ScrollResult:
        target = self._get_collection(collection)
        ids = sorted(pid for pid, p in target.points.items() if self._matches(p.payload, point_filter))
        start = 0
        if offset is not None:
            start = next((i for i, pid in enumerate(ids) if pid >= str(offset)), len(ids))
        page_ids = ids[start:start + limit]
        next_offset = ids[start + limit] if start + limit < len(ids) else None

        points: list[ScrolledPoint] = []
        for pid in page_ids:
            stored = target.points[pid]
            points.append(
                ScrolledPoint(
                    id=pid,
                    payload=stored.payload.model_copy(deep=True),
                    dense_vector=list(stored.dense_vector) if with_vectors else None,
                    sparse_vector=stored.sparse_vector.model_copy(deep=True) if with_vectors and stored.sparse_vector else None,
                )
            )
        return ScrollResult(points=points, next_page_offset=next_offset)

    async def do_count(self, collection: str, point_filter: PointFilter | None = None) -> int:
        target = self._get_collection(collection)
        return sum(1 for p in target.points.values() if self._matches(p.payload, point_filter))

    ##########################################
    ################ SEARCH ##################
    ##########################################

    async def do_search_dense(self, collection: str, query_vector: list[float], limit: int, point_filter: PointFilter | None = None) -> list[ScoredPoint]:
        target = self._get_collection(collection)
        candidates = [p for p in target.points.values() if self._matches(p.payload, point_filter)]
        if not candidates:
            return []
        query = np.asarray(query_vector, dtype=np.float64)
        matrix = np.asarray([p.dense_vector for p in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)
        order = np.argsort(-scores, kind="stable")[:limit]
        return [
            ScoredPoint(id=candidates[i].id, score=float(scores[i]), payload=candidates[i].payload.model_copy(deep=True))
            for i in order
        ]

    async def do_search_sparse(self, collection: str, query_vector: SparseVector, limit: int, point_filter: PointFilter | None = None) -> list[ScoredPoint]:
        target = self._get_collection(collection)
        if query_vector.is_empty():
            return []
        hits: list[ScoredPoint] = []
        query_indices = set(query_vector.indices)
        for point in target.points.values():
            if point.sparse_vector is None or not self._matches(point.payload, point_filter):
                continue
            if query_indices.isdisjoint(point.sparse_vector.indices):
                continue
            hits.append(ScoredPoint(id=point.id, score=point.sparse_vector.dot(query_vector), payload=point.payload.model_copy(deep=True)))
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]
