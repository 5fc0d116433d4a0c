import json
from typing import Any

from shared.clients.rag.RAGClientInterface import DENSE_VECTOR_NAME, SPARSE_VECTOR_NAME, RAGClientInterface
from shared.clients.rag.models.PointFilter import PointFilter
from shared.clients.rag.models.ScoredPoint import ScoredPoint
from shared.clients.rag.models.Scroll import ScrolledPoint, ScrollResult
from shared.clients.rag.models.VectorPoint import EmailPayload, Point, PointUpdate, SparseVector
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig

_JSON_HEADERS = {"Content-Type": "application/json"}


class RAGClientQdrant(RAGClientInterface):
    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._base_url = self.get_config_val("BASE_URL", default=None, val_type="string")
        self._api_key = self.get_config_val("API_KEY", default="", val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Qdrant"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=None),
            EnvConfig(env_key="API_KEY", val_type="string", default=""),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        if self._api_key:
            return {"api-key": f"{self._api_key}"}
        else:
            return {}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/healthz"

    def _get_endpoint_collection(self, collection: str) -> str:
        return f"/collections/{collection}"

    def _get_endpoint_check_collection_existence(self, collection: str) -> str:
        return f"/collections/{collection}/exists"

    def _get_endpoint_points(self, collection: str) -> str:
        return f"/collections/{collection}/points"

    def _get_endpoint_vectors(self, collection: str) -> str:
        return f"/collections/{collection}/points/vectors"

    def _get_endpoint_payload(self, collection: str) -> str:
        return f"/collections/{collection}/points/payload"

    def _get_endpoint_scroll(self, collection: str) -> str:
        return f"/collections/{collection}/points/scroll"

    def _get_endpoint_count(self, collection: str) -> str:
        return f"/collections/{collection}/points/count"

    def _get_endpoint_search(self, collection: str) -> str:
        return f"/collections/{collection}/points/search"

    ##########################################
    ########### PAYLOAD BUILDER ##############
    ##########################################

    def get_filter_payload(self, point_filter: PointFilter | None) -> dict | None:
        """Translate a PointFilter into a Qdrant filter clause.

        Returns:
            dict | None: The "filter" value, or None when nothing is filtered.
        """
        if point_filter is None:
            return None
        must: list[dict] = []
        should: list[dict] = []
        must_not: list[dict] = []
        if point_filter.user_id:
            must.append({"key": "user_id", "match": {"value": point_filter.user_id}})
        if point_filter.relationship:
            must.append({"key": "relationship", "match": {"value": point_filter.relationship}})
        if point_filter.counterpart_email:
            should.append({"key": "recipient_email", "match": {"value": point_filter.counterpart_email}})
            should.append({"key": "sender_email", "match": {"value": point_filter.counterpart_email}})
        if point_filter.date_from or point_filter.date_to:
            date_range: dict[str, str] = {}
            if point_filter.date_from:
                date_range["gte"] = point_filter.date_from.isoformat()
            if point_filter.date_to:
                date_range["lte"] = point_filter.date_to.isoformat()
            must.append({"key": "sent_date", "range": date_range})
        if point_filter.exclude_email_ids:
            must_not.append({"key": "email_id", "match": {"any": point_filter.exclude_email_ids}})

        clause: dict[str, list[dict]] = {}
        if must:
            clause["must"] = must
        if should:
            clause["should"] = should
        if must_not:
            clause["must_not"] = must_not
        return clause or None

    def get_point_payload(self, point: Point) -> dict:
        vector: dict[str, Any] = {DENSE_VECTOR_NAME: point.dense_vector}
        if point.sparse_vector is not None:
            vector[SPARSE_VECTOR_NAME] = point.sparse_vector.model_dump()
        return {
            "id": point.id,
            "vector": vector,
            "payload": point.payload.model_dump(mode="json"),
        }

    def get_vectors_update_payload(self, update: PointUpdate) -> dict | None:
        vector: dict[str, Any] = {}
        if update.has_dense():
            vector[DENSE_VECTOR_NAME] = update.dense_vector
        if update.has_sparse():
            vector[SPARSE_VECTOR_NAME] = update.sparse_vector.model_dump()
        if not vector:
            return None
        return {"id": update.id, "vector": vector}

    def get_scroll_payload(self, point_filter: PointFilter | None, limit: int, offset: str | int | None, with_vectors: bool) -> dict:
        payload: dict[str, Any] = {
            "limit": limit,
            "with_payload": True,
            "with_vector": [DENSE_VECTOR_NAME, SPARSE_VECTOR_NAME] if with_vectors else False,
        }
        filter_clause = self.get_filter_payload(point_filter)
        if filter_clause:
            payload["filter"] = filter_clause
        if offset is not None:
            payload["offset"] = offset
        return payload

    def get_search_payload(self, vector_name: str, vector: list[float] | dict, limit: int, point_filter: PointFilter | None) -> dict:
        payload: dict[str, Any] = {
            "vector": {"name": vector_name, "vector": vector},
            "limit": limit,
            "with_payload": True,
            "with_vector": False,
        }
        filter_clause = self.get_filter_payload(point_filter)
        if filter_clause:
            payload["filter"] = filter_clause
        return payload

    ##########################################
    ########### RESPONSE PARSER ##############
    ##########################################

    def extract_scrolled_point(self, raw_point: dict) -> ScrolledPoint:
        vectors = raw_point.get("vector") or {}
        dense = vectors.get(DENSE_VECTOR_NAME) if isinstance(vectors, dict) else None
        sparse = vectors.get(SPARSE_VECTOR_NAME) if isinstance(vectors, dict) else None
        return ScrolledPoint(
            id=str(raw_point["id"]),
            payload=EmailPayload.model_validate(raw_point.get("payload") or {}),
            dense_vector=dense,
            sparse_vector=SparseVector.model_validate(sparse) if sparse else None,
        )

    def extract_scored_points(self, raw_response: dict) -> list[ScoredPoint]:
        hits: list[ScoredPoint] = []
        for raw_hit in raw_response.get("result") or []:
            payload = raw_hit.get("payload")
            hits.append(
                ScoredPoint(
                    id=str(raw_hit["id"]),
                    score=float(raw_hit.get("score", 0.0)),
                    payload=EmailPayload.model_validate(payload) if payload else None,
                )
            )
        return hits

    ##########################################
    ############ COLLECTIONS #################
    ##########################################

    async def do_existence_check(self, collection: str) -> bool:
        resp = await self.do_request(
            method="GET",
            endpoint=self._get_endpoint_check_collection_existence(collection),
            raise_on_error=True,
        )
        return bool(resp.json().get("result", {}).get("exists"))

    async def do_create_collection(self, collection: str, vector_size: int, distance: str = "Cosine") -> None:
        await self.do_request(
            method="PUT",
            json={
                "vectors": {DENSE_VECTOR_NAME: {"size": vector_size, "distance": distance}},
                "sparse_vectors": {SPARSE_VECTOR_NAME: {}},
            },
            endpoint=self._get_endpoint_collection(collection),
            raise_on_error=True,
        )

    async def do_check_sparse_schema(self, collection: str) -> bool:
        resp = await self.do_request(
            method="GET",
            endpoint=self._get_endpoint_collection(collection),
            raise_on_error=True,
        )
        params = resp.json().get("result", {}).get("config", {}).get("params", {})
        return SPARSE_VECTOR_NAME in (params.get("sparse_vectors") or {})

    async def do_add_sparse_schema(self, collection: str) -> None:
        await self.do_request(
            method="PATCH",
            json={"sparse_vectors": {SPARSE_VECTOR_NAME: {}}},
            endpoint=self._get_endpoint_collection(collection),
            raise_on_error=True,
        )

    async def do_delete_collection(self, collection: str) -> None:
        await self.do_request(
            method="DELETE",
            endpoint=self._get_endpoint_collection(collection),
            raise_on_error=True,
        )

    ##########################################
    ################ POINTS ##################
    ##########################################

    async def do_upsert_points(self, collection: str, points: list[Point]) -> None:
        if not points:
            return
        await self.do_request(
            method="PUT",
            content=json.dumps({"points": [self.get_point_payload(p) for p in points]}),
            params={"wait": "true"},
            endpoint=self._get_endpoint_points(collection),
            additional_headers=_JSON_HEADERS,
            raise_on_error=True,
        )

    async def do_update_points(self, collection: str, updates: list[PointUpdate]) -> None:
        vector_updates = [p for p in (self.get_vectors_update_payload(u) for u in updates) if p is not None]
        if vector_updates:
            # only the named vectors present in each entry are replaced
            await self.do_request(
                method="PUT",
                content=json.dumps({"points": vector_updates}),
                params={"wait": "true"},
                endpoint=self._get_endpoint_vectors(collection),
                additional_headers=_JSON_HEADERS,
                raise_on_error=True,
            )
        for update in updates:
            if not update.has_payload():
                continue
            await self.do_request(
                method="PUT",
                content=json.dumps({"payload": update.payload.model_dump(mode="json"), "points": [update.id]}),
                params={"wait": "true"},
                endpoint=self._get_endpoint_payload(collection),
                additional_headers=_JSON_HEADERS,
                raise_on_error=True,
            )

    async def do_scroll(self, collection: str, point_filter: PointFilter | None = None, limit: int = 1000, offset: str | int | None = None, with_vectors: bool = False) -> ScrollResult:
        resp = await self.do_request(
            method="POST",
            content=json.dumps(self.get_scroll_payload(point_filter, limit, offset, with_vectors)),
            endpoint=self._get_endpoint_scroll(collection),
            additional_headers=_JSON_HEADERS,
            raise_on_error=True,
        )
        result = resp.json().get("result") or {}
        return ScrollResult(
            points=[self.extract_scrolled_point(p) for p in result.get("points", [])],
            next_page_offset=result.get("next_page_offset"),
        )

    async def do_count(self, collection: str, point_filter: PointFilter | None = None) -> int:
        payload: dict[str, Any] = {"exact": True}
        filter_clause = self.get_filter_payload(point_filter)
        if filter_clause:
            payload["filter"] = filter_clause
        resp = await self.do_request(
            method="POST",
            content=json.dumps(payload),
            endpoint=self._get_endpoint_count(collection),
            additional_headers=_JSON_HEADERS,
            raise_on_error=True,
        )
        return int(resp.json().get("result", {}).get("count", 0))

    ##########################################
    ################ SEARCH ##################
    ##########################################

    async def do_search_dense(self, collection: str, query_vector: list[float], limit: int, point_filter: PointFilter | None = None) -> list[ScoredPoint]:
        resp = await self.do_request(
            method="POST",
            content=json.dumps(self.get_search_payload(DENSE_VECTOR_NAME, query_vector, limit, point_filter)),
            endpoint=self._get_endpoint_search(collection),
            additional_headers=_JSON_HEADERS,
            raise_on_error=True,
        )
        return self.extract_scored_points(resp.json())

    async def do_search_sparse(self, collection: str, query_vector: SparseVector, limit: int, point_filter: PointFilter | None = None) -> list[ScoredPoint]:
        if query_vector.is_empty():
            return []
        resp = await self.do_request(
            method="POST",
            content=json.dumps(self.get_search_payload(SPARSE_VECTOR_NAME, query_vector.model_dump(), limit, point_filter)),
            endpoint=self._get_endpoint_search(collection),
            additional_headers=_JSON_HEADERS,
            raise_on_error=True,
        )
        return self.extract_scored_points(resp.json())
