import hashlib
import math
import re
from abc import abstractmethod
from typing import AsyncIterator

from shared.clients.ClientInterface import ClientInterface
from shared.clients.rag.models.PointFilter import PointFilter
from shared.clients.rag.models.ScoredPoint import ScoredPoint
from shared.clients.rag.models.Scroll import ScrollResult
from shared.clients.rag.models.VectorPoint import Point, PointUpdate, SparseVector
from shared.helper.HelperConfig import HelperConfig
from shared.models.email import Direction
from shared.models.errors import RetrievalError, StoreError

DENSE_VECTOR_NAME = "dense"
SPARSE_VECTOR_NAME = "text-sparse"

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_-]")


class RAGClientInterface(ClientInterface):
    """Corpus store: one collection per (user, direction), one point per email.

    Every point carries a named dense vector (DENSE_VECTOR_NAME) and, once the
    lexical signal has been indexed for it, a named sparse vector
    (SPARSE_VECTOR_NAME). Collections never share points, so no operation
    ever needs to span two of them.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._collection_prefix = helper_config.get_string_val("COLLECTION_PREFIX", default="emails")
        self._near_duplicate_threshold = helper_config.get_float_val("NEAR_DUPLICATE_THRESHOLD", default=0.98)

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        """
        Returns the type of the client. E.g. "rag"
        """
        return "rag"

    def _get_error_class(self) -> type[RetrievalError]:
        return StoreError

    def get_collection_name(self, user_id: str, direction: Direction | str) -> str:
        """
        Returns the name of the collection holding one user's emails of one direction.

        User ids that contain characters outside [A-Za-z0-9_-] are sanitised and
        suffixed with a short hash of the original id, so two different users can
        never end up in the same collection.

        Args:
            user_id (str): The owner of the collection.
            direction (Direction | str): "sent" or "received".

        Returns:
            str: E.g. "emails-sent-42".
        """
        if not user_id:
            raise ValueError("A collection name requires a non-empty user_id.")
        direction = Direction(direction).value
        safe_user = _SAFE_NAME.sub("_", user_id)
        if safe_user != user_id:
            safe_user = f"{safe_user}-{hashlib.sha256(user_id.encode('utf-8')).hexdigest()[:12]}"
        return f"{self._collection_prefix}-{direction}-{safe_user}"

    ##########################################
    ############ COLLECTIONS #################
    ##########################################

    @abstractmethod
    async def do_existence_check(self, collection: str) -> bool:
        """Check if a collection exists.

        Args:
            collection (str): The collection name.

        Returns:
            bool: True if the collection exists, False otherwise.
        """
        pass

    @abstractmethod
    async def do_create_collection(self, collection: str, vector_size: int, distance: str = "Cosine") -> None:
        """Create a collection with a named dense vector and a named sparse vector.

        Args:
            collection (str): The collection name.
            vector_size (int): Dense vector dimensionality.
            distance (str): Dense distance metric.
        """
        pass

    @abstractmethod
    async def do_check_sparse_schema(self, collection: str) -> bool:
        """Return True if the collection has the sparse vector field configured."""
        pass

    @abstractmethod
    async def do_add_sparse_schema(self, collection: str) -> None:
        """Add the sparse vector field to an existing collection without touching its points."""
        pass

    @abstractmethod
    async def do_delete_collection(self, collection: str) -> None:
        """Drop a collection and all of its points."""
        pass

    async def do_ensure_collection(self, collection: str, vector_size: int, distance: str = "Cosine") -> bool:
        """Create the collection if it does not exist yet.

        Returns:
            bool: True if the collection was created by this call.
        """
        if await self.do_existence_check(collection):
            return False
        await self.do_create_collection(collection, vector_size=vector_size, distance=distance)
        self.logging.info("Created collection '%s' in %s (size=%d, distance=%s).", collection, self.get_engine_name(), vector_size, distance)
        return True

    ##########################################
    ################ POINTS ##################
    ##########################################

    @abstractmethod
    async def do_upsert_points(self, collection: str, points: list[Point]) -> None:
        """Insert points or fully replace existing points with the same id.

        Args:
            collection (str): The collection name.
            points (list[Point]): Complete points, dense vector included.
        """
        pass

    @abstractmethod
    async def do_update_points(self, collection: str, updates: list[PointUpdate]) -> None:
        """Apply partial updates to existing points.

        Only the fields explicitly set on each PointUpdate are written; the stored
        dense vector, sparse vector and payload are otherwise preserved.

        Args:
            collection (str): The collection name.
            updates (list[PointUpdate]): The partial updates.
        """
        pass

    @abstractmethod
    async def do_scroll(self, collection: str, point_filter: PointFilter | None = None, limit: int = 1000, offset: str | int | None = None, with_vectors: bool = False) -> ScrollResult:
        """Read a single page of points.

        Args:
            collection (str): The collection name.
            point_filter (PointFilter | None): Payload filter.
            limit (int): Page size.
            offset (str | int | None): Cursor from the previous page, None for the first page.
            with_vectors (bool): Include dense and sparse vectors.

        Returns:
            ScrollResult: The page and the cursor of the next one.
        """
        pass

    @abstractmethod
    async def do_count(self, collection: str, point_filter: PointFilter | None = None) -> int:
        """Count the points matching a filter."""
        pass

    async def do_scroll_pages(self, collection: str, point_filter: PointFilter | None = None, page_size: int = 1000, with_vectors: bool = False) -> AsyncIterator[ScrollResult]:
        """Yield every page of a collection scan, one page at a time.

        Only the current page is held in memory; the caller decides whether to
        accumulate.

        Args:
            collection (str): The collection name.
            point_filter (PointFilter | None): Payload filter.
            page_size (int): Points per page.
            with_vectors (bool): Include vectors in the scanned points.

        Yields:
            ScrollResult: One page per iteration.
        """
        total_points = await self.do_count(collection, point_filter)
        total_pages = math.ceil(total_points / page_size) if total_points > 0 else 1
        offset: str | int | None = None
        page = 1
        fetched = 0
        while True:
            page_result = await self.do_scroll(
                collection,
                point_filter=point_filter,
                limit=page_size,
                offset=offset,
                with_vectors=with_vectors,
            )
            fetched += len(page_result.points)
            self.logging.debug(
                "Fetched page %d of %d from '%s' in %s, %d of %d points so far.",
                page, total_pages, collection, self.get_engine_name(), fetched, total_points,
            )
            yield page_result
            offset = page_result.next_page_offset
            if offset is None:
                break
            page += 1

    ##########################################
    ################ SEARCH ##################
    ##########################################

    @abstractmethod
    async def do_search_dense(self, collection: str, query_vector: list[float], limit: int, point_filter: PointFilter | None = None) -> list[ScoredPoint]:
        """Nearest neighbours by cosine similarity of the dense vector.

        Returns:
            list[ScoredPoint]: Hits ordered by descending cosine similarity.
        """
        pass

    @abstractmethod
    async def do_search_sparse(self, collection: str, query_vector: SparseVector, limit: int, point_filter: PointFilter | None = None) -> list[ScoredPoint]:
        """Nearest neighbours by dot product of the sparse vector.

        Points without a sparse vector are never returned.

        Returns:
            list[ScoredPoint]: Hits ordered by descending dot product.
        """
        pass

    async def do_find_near_duplicates(self, collection: str, query_vector: list[float], threshold: float | None = None, limit: int = 10, point_filter: PointFilter | None = None) -> list[ScoredPoint]:
        """Points whose dense vector is almost identical to the given one.

        Args:
            collection (str): The collection name.
            query_vector (list[float]): Dense vector of the email to compare.
            threshold (float | None): Minimum cosine similarity, NEAR_DUPLICATE_THRESHOLD when None.
            limit (int): Maximum number of hits inspected.
            point_filter (PointFilter | None): Payload filter.

        Returns:
            list[ScoredPoint]: Hits at or above the threshold, most similar first.
        """
        threshold = self._near_duplicate_threshold if threshold is None else threshold
        hits = await self.do_search_dense(collection, query_vector, limit, point_filter)
        return [hit for hit in hits if hit.score >= threshold]

    ##########################################
    ################# STATS ##################
    ##########################################

    async def do_count_by_relationship(self, collection: str, point_filter: PointFilter | None = None, page_size: int = 1000) -> dict[str, int]:
        """Count the points of a collection per relationship type.

        Points without a relationship are not counted.
        """
        counts: dict[str, int] = {}
        async for page in self.do_scroll_pages(collection, point_filter=point_filter, page_size=page_size):
            for point in page.points:
                if point.payload.relationship:
                    counts[point.payload.relationship] = counts.get(point.payload.relationship, 0) + 1
        return counts
