"""Sparse migration runner entry point.

Adds BM25 sparse vectors to every existing email point of every active user
and publishes each user's fitted lexical state. Safe to re-run: every write
is an idempotent update keyed by point id.

Usage:
    python -m services.sparse_migration.sparse_migration
"""

import asyncio
import sys

from services.sparse_migration.MigrationService import MigrationPhase, MigrationService
from shared.clients.accounts.AccountClientManager import AccountClientManager
from shared.clients.rag.RAGClientManager import RAGClientManager
from shared.helper.HelperConfig import HelperConfig
from shared.lexical.LexicalStateStore import LexicalStateStore
from shared.logging.logging_setup import setup_logging
from shared.models.errors import RetrievalError
from shared.models.retrieval import RetrievalSettings


async def main() -> int:
    """Run the migration once. Returns the process exit code."""
    logger = setup_logging(log_file="migration.log")
    config = HelperConfig(logger=logger)
    settings = RetrievalSettings.from_helper_config(config)

    rag_client = RAGClientManager(helper_config=config).get_client()
    account_client = AccountClientManager(helper_config=config).get_client()

    try:
        # both clients are required, without either there is nothing to migrate
        for client in (rag_client, account_client):
            try:
                await client.boot()
                await client.do_healthcheck()
            except RetrievalError as e:
                logger.error("Error booting %s client %s: %s. Aborting.", client.get_client_type(), client.get_engine_name(), e)
                return 1

        migration_service = MigrationService(
            helper_config=config,
            rag_client=rag_client,
            account_client=account_client,
            state_store=LexicalStateStore(helper_config=config, state_dir=settings.lexical_state_dir),
            settings=settings,
        )
        summary = await migration_service.do_run()
        return 0 if summary.phase == MigrationPhase.SUMMARIZED else 1
    finally:
        await rag_client.close()
        await account_client.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
