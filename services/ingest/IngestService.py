"""Ingestion service.

Takes cleaned emails from the upstream pipeline, embeds them in batches,
adds a sparse vector when the user already has a published lexical state,
and upserts one point per email into the user's collection for the email's
direction. Points are keyed by a UUID5 of (user, direction, email), so
re-ingesting an email replaces it instead of duplicating it.
"""

import asyncio
import uuid
from collections import defaultdict

from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.VectorPoint import EmailPayload, Point
from shared.helper.HelperConfig import HelperConfig
from shared.lexical import LexicalEncoder
from shared.lexical.LexicalStateStore import LexicalStateStore
from shared.models.email import Direction, IngestEmail, IngestResult
from shared.models.errors import RetrievalError
from shared.models.retrieval import RetrievalSettings
from shared.semantic.SemanticEncoder import SemanticEncoder


def make_point_id(user_id: str, direction: Direction | str, email_id: str) -> str:
    """Build the deterministic point id of an email.

    Returns:
        str: UUID string usable as a point id in every store engine.
    """
    return str(uuid.uuid5(uuid.NAMESPACE_OID, f"{user_id}:{Direction(direction).value}:{email_id}"))


class IngestService:
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
    ############## COLLECTIONS ###############
    ##########################################

    async def ensure_collection(self, user_id: str, direction: Direction | str) -> str:
        """Create the collection of (user, direction) if needed and return its name."""
        collection = self._rag_client.get_collection_name(user_id, direction)
        await self._rag_client.do_ensure_collection(
            collection,
            vector_size=self._settings.vector_dimension,
            distance=self._settings.vector_distance,
        )
        return collection

    ##########################################
    ################ INGEST ##################
    ##########################################

    async def do_ingest(self, emails: list[IngestEmail]) -> IngestResult:
        """Index a batch of emails.

        Emails are grouped by collection. A failing group is recorded in the
        result and the remaining groups are still indexed.

        Returns:
            IngestResult: Counts of indexed and failed emails plus error messages.
        """
        result = IngestResult()
        groups: dict[tuple[str, Direction], list[IngestEmail]] = defaultdict(list)
        for email in emails:
            if not email.user_id:
                result.failed += 1
                result.errors.append(f"Email {email.email_id}: missing user_id.")
                continue
            if not email.text or not email.text.strip():
                result.failed += 1
                result.errors.append(f"Email {email.email_id}: empty text.")
                continue
            groups[(email.user_id, email.direction)].append(email)

        for (user_id, direction), group in groups.items():
            try:
                result.indexed += await self._ingest_group(user_id, direction, group)
            except RetrievalError as exc:
                self.logging.error("Ingest failed for user '%s' (%s): %s", user_id, direction.value, exc)
                result.failed += len(group)
                result.errors.append(f"User {user_id} ({direction.value}): {exc}")

        self.logging.info("Ingest complete: %d indexed, %d failed.", result.indexed, result.failed)
        return result

    async def _ingest_group(self, user_id: str, direction: Direction, emails: list[IngestEmail]) -> int:
        collection = await self.ensure_collection(user_id, direction)
        dense_vectors = await self._semantic_encoder.embed_batch([email.text for email in emails])

        state = await asyncio.to_thread(self._state_store.load, user_id)
        points: list[Point] = []
        for email, dense in zip(emails, dense_vectors):
            sparse = None
            if state is not None and not state.is_empty():
                # stored dense-only otherwise; the next migration adds the sparse vector
                sparse = LexicalEncoder.encode(state, email.text)
            points.append(
                Point(
                    id=make_point_id(user_id, direction, email.email_id),
                    dense_vector=dense,
                    sparse_vector=sparse,
                    payload=EmailPayload(
                        user_id=user_id,
                        email_id=email.email_id,
                        direction=direction.value,
                        subject=email.subject,
                        recipient_email=email.recipient_email,
                        sender_email=email.sender_email,
                        relationship=email.relationship,
                        sent_date=email.sent_date.isoformat() if email.sent_date else None,
                        text=email.text,
                    ),
                )
            )

        batch_size = self._settings.migration_batch_size
        for start in range(0, len(points), batch_size):
            await self._rag_client.do_upsert_points(collection, points[start:start + batch_size])
        self.logging.debug("Upserted %d point(s) into '%s'.", len(points), collection)
        return len(points)

    ##########################################
    ################ DELETE ##################
    ##########################################

    async def delete_user(self, user_id: str) -> list[str]:
        """Drop both collections of a user and forget their lexical state.

        Returns:
            list[str]: Names of the collections that existed and were deleted.
        """
        deleted: list[str] = []
        for direction in Direction:
            collection = self._rag_client.get_collection_name(user_id, direction)
            if await self._rag_client.do_existence_check(collection):
                await self._rag_client.do_delete_collection(collection)
                deleted.append(collection)
        self._state_store.delete(user_id)
        self.logging.info("Deleted data of user '%s': %s", user_id, ", ".join(deleted) or "no collections")
        return deleted
