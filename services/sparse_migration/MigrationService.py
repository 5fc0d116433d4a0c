"""Sparse vector migration.

Brings collections that only carry dense vectors up to dense + sparse, one
user at a time, while queries keep running against them:

    NotStarted -> SchemaChecked -> UsersEnumerated
        -> (per user: Fitting -> Encoding -> Upserting)* -> Summarized

Per user the lexical encoder is fitted on the sent corpus, then every sent
and received point gets a sparse-only update, which leaves its dense vector
and payload untouched. The fitted state is published once all of the user's
batches have been attempted, so queries never see a half-finished fit.

Batch and user failures are recorded and skipped. Only a failure to reach
the store or to enumerate users ends the run early.
"""

import asyncio
import time
from enum import Enum

from pydantic import BaseModel, Field

from shared.clients.accounts.AccountClientInterface import AccountClientInterface
from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.PointFilter import PointFilter
from shared.clients.rag.models.VectorPoint import PointUpdate
from shared.helper.HelperConfig import HelperConfig
from shared.lexical import LexicalEncoder
from shared.lexical.LexicalEncoder import LexicalEncoderState
from shared.lexical.LexicalStateStore import LexicalStateStore
from shared.models.email import Direction
from shared.models.errors import RetrievalError
from shared.models.retrieval import RetrievalSettings


class MigrationPhase(str, Enum):
    NOT_STARTED = "not_started"
    SCHEMA_CHECKED = "schema_checked"
    USERS_ENUMERATED = "users_enumerated"
    FITTING = "fitting"
    ENCODING = "encoding"
    UPSERTING = "upserting"
    SUMMARIZED = "summarized"
    FAILED = "failed"


class UserMigrationReport(BaseModel):
    user_id: str
    points_updated: int = 0
    skipped: bool = False
    failed: bool = False
    errors: list[str] = Field(default_factory=list)


class MigrationSummary(BaseModel):
    """Report of one migration run.

    Attributes:
        phase:           Summarized on completion, Failed if the run ended early.
        users_total:     Active users enumerated.
        users_processed: Users whose pass finished, with or without batch errors.
        users_skipped:   Users without sent emails.
        points_updated:  Sparse vectors written across all users.
        errors:          Human-readable error messages in the order they occurred.
        users:           Per-user details.
        duration_s:      Wall-clock duration of the run.
    """

    phase: MigrationPhase = MigrationPhase.NOT_STARTED
    users_total: int = 0
    users_processed: int = 0
    users_skipped: int = 0
    points_updated: int = 0
    errors: list[str] = Field(default_factory=list)
    users: dict[str, UserMigrationReport] = Field(default_factory=dict)
    duration_s: float = 0.0

    def format_report(self) -> str:
        lines = [
            "=" * 60,
            "Migration Summary",
            "=" * 60,
            f"Phase: {self.phase.value}",
            f"Users processed: {self.users_processed} of {self.users_total} ({self.users_skipped} skipped)",
            f"Points updated: {self.points_updated}",
            f"Errors: {len(self.errors)}",
        ]
        for number, error in enumerate(self.errors, start=1):
            lines.append(f"  {number}. {error}")
        lines.append(f"Duration: {self.duration_s:.1f}s")
        return "\n".join(lines)


class MigrationAlreadyRunningError(RuntimeError):
    pass


class MigrationService:
    """Runs the sparse vector migration over all active users."""

    def __init__(
        self,
        helper_config: HelperConfig,
        rag_client: RAGClientInterface,
        account_client: AccountClientInterface,
        state_store: LexicalStateStore,
        settings: RetrievalSettings,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._rag_client = rag_client
        self._account_client = account_client
        self._state_store = state_store
        self._settings = settings
        self._running = False
        self.phase = MigrationPhase.NOT_STARTED
        self.last_summary: MigrationSummary | None = None

    def is_running(self) -> bool:
        return self._running

    def reserve_run(self) -> None:
        """Claim the service for the next run without awaiting anything.

        Lets a caller that schedules do_run(reserved=True) for later reject a
        second request immediately instead of when the scheduled run starts.

        Raises:
            MigrationAlreadyRunningError: A run is in progress or already reserved.
        """
        if self._running:
            raise MigrationAlreadyRunningError("A migration run is already in progress.")
        self._running = True

    def _set_phase(self, phase: MigrationPhase, user_id: str | None = None) -> None:
        self.phase = phase
        if user_id:
            self.logging.debug("Migration phase for user '%s': %s", user_id, phase.value)
        else:
            self.logging.info("Migration phase: %s", phase.value)

    ##########################################
    ################## RUN ###################
    ##########################################

    async def do_run(self, reserved: bool = False) -> MigrationSummary:
        """Run the migration once over every active user.

        Args:
            reserved (bool): The caller already claimed the run with reserve_run().

        Returns:
            MigrationSummary: The report; phase is FAILED if the run ended early.

        Raises:
            MigrationAlreadyRunningError: Another run of this service is in progress.
        """
        if not reserved:
            self.reserve_run()
        started = time.perf_counter()
        summary = MigrationSummary()
        self._set_phase(MigrationPhase.NOT_STARTED)
        self.logging.info("Starting sparse vector migration...")
        try:
            await self._run(summary)
        finally:
            summary.duration_s = time.perf_counter() - started
            summary.phase = self.phase
            self.last_summary = summary
            self._running = False
            color = "green" if self.phase == MigrationPhase.SUMMARIZED and not summary.errors else "yellow"
            self.logging.info("%s", summary.format_report(), color=color)
        return summary

    async def _run(self, summary: MigrationSummary) -> None:
        try:
            await self._rag_client.do_healthcheck()
        except RetrievalError as exc:
            summary.errors.append(f"Store unreachable: {exc}")
            self._set_phase(MigrationPhase.FAILED)
            return
        self._set_phase(MigrationPhase.SCHEMA_CHECKED)

        try:
            user_ids = await self._account_client.do_fetch_active_user_ids()
        except RetrievalError as exc:
            summary.errors.append(f"Failed to enumerate users: {exc}")
            self._set_phase(MigrationPhase.FAILED)
            return
        summary.users_total = len(user_ids)
        self._set_phase(MigrationPhase.USERS_ENUMERATED)
        self.logging.info("Found %d users to process.", len(user_ids))

        for user_id in user_ids:
            report = await self.do_migrate_user(user_id)
            summary.users[user_id] = report
            summary.points_updated += report.points_updated
            summary.errors.extend(report.errors)
            if report.skipped:
                summary.users_skipped += 1
            elif not report.failed:
                summary.users_processed += 1

        self._set_phase(MigrationPhase.SUMMARIZED)

    ##########################################
    ################ PER USER ################
    ##########################################

    async def do_migrate_user(self, user_id: str) -> UserMigrationReport:
        """Fit, encode and upsert the sparse vectors of a single user.

        Never raises; any failure of the user's pass ends up in the report.
        """
        report = UserMigrationReport(user_id=user_id)
        self.logging.info("Processing user: %s", user_id)
        try:
            await self._check_user_schema(user_id)

            self._set_phase(MigrationPhase.FITTING, user_id)
            state = await self._fit_user(user_id)
            if state is None:
                report.skipped = True
                self.logging.info("No sent emails for user '%s', skipping.", user_id)
                return report

            for direction in (Direction.SENT, Direction.RECEIVED):
                report.points_updated += await self._update_collection(user_id, direction, state, report)

            await asyncio.to_thread(self._state_store.publish, user_id, state)
        except RetrievalError as exc:
            self.logging.error("Failed to process user '%s': %s", user_id, exc)
            report.failed = True
            report.errors.append(f"User {user_id}: {exc}")
            return report
        except Exception as exc:
            self.logging.exception("Unexpected error while processing user '%s': %s", user_id, exc)
            report.failed = True
            report.errors.append(f"User {user_id}: {type(exc).__name__}: {exc}")
            return report

        self.logging.info("User '%s' complete: %d points updated.", user_id, report.points_updated)
        return report

    async def _check_user_schema(self, user_id: str) -> None:
        for direction in Direction:
            collection = self._rag_client.get_collection_name(user_id, direction)
            if not await self._rag_client.do_existence_check(collection):
                continue
            if not await self._rag_client.do_check_sparse_schema(collection):
                self.logging.info("Adding sparse vector field to '%s'.", collection)
                await self._rag_client.do_add_sparse_schema(collection)

    async def _fit_user(self, user_id: str) -> LexicalEncoderState | None:
        """Fit the lexical encoder on the user's sent corpus.

        Returns:
            LexicalEncoderState | None: None if the user has no sent emails.
        """
        collection = self._rag_client.get_collection_name(user_id, Direction.SENT)
        if not await self._rag_client.do_existence_check(collection):
            return None

        texts: list[str] = []
        async for page in self._rag_client.do_scroll_pages(
            collection,
            point_filter=PointFilter(user_id=user_id),
            page_size=self._settings.scan_page_size,
        ):
            texts.extend(point.payload.text for point in page.points)
        if not texts:
            return None

        self.logging.info("Fitting lexical encoder for user '%s' on %d sent emails.", user_id, len(texts))
        return LexicalEncoder.fit(texts, k1=self._settings.bm25_k1, b=self._settings.bm25_b)

    async def _update_collection(self, user_id: str, direction: Direction, state: LexicalEncoderState, report: UserMigrationReport) -> int:
        collection = self._rag_client.get_collection_name(user_id, direction)
        if not await self._rag_client.do_existence_check(collection):
            return 0

        updated = 0
        pending: list[PointUpdate] = []
        async for page in self._rag_client.do_scroll_pages(
            collection,
            point_filter=PointFilter(user_id=user_id),
            page_size=self._settings.scan_page_size,
        ):
            self._set_phase(MigrationPhase.ENCODING, user_id)
            for point in page.points:
                pending.append(PointUpdate(id=point.id, sparse_vector=LexicalEncoder.encode(state, point.payload.text)))
            while len(pending) >= self._settings.migration_batch_size:
                batch = pending[:self._settings.migration_batch_size]
                pending = pending[self._settings.migration_batch_size:]
                updated += await self._upsert_batch(user_id, collection, batch, report)
        if pending:
            updated += await self._upsert_batch(user_id, collection, pending, report)

        self.logging.info("Updated %d %s points of user '%s'.", updated, direction.value, user_id)
        return updated

    async def _upsert_batch(self, user_id: str, collection: str, batch: list[PointUpdate], report: UserMigrationReport) -> int:
        self._set_phase(MigrationPhase.UPSERTING, user_id)
        try:
            await self._rag_client.do_update_points(collection, batch)
        except RetrievalError as exc:
            self.logging.warning("Failed to upsert batch of %d points into '%s': %s", len(batch), collection, exc)
            report.errors.append(f"Batch upsert failed for user {user_id} in {collection}: {exc}")
            return 0
        return len(batch)
