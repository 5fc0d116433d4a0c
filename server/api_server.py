"""FastAPI application entry point of the email style retrieval service."""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.logging.logging_setup import setup_logging
from shared.helper.HelperConfig import HelperConfig
from shared.clients.ClientInterface import ClientInterface
from shared.clients.rag.RAGClientManager import RAGClientManager
from shared.clients.embed.EmbedClientManager import EmbedClientManager
from shared.clients.accounts.AccountClientManager import AccountClientManager
from shared.lexical.LexicalStateStore import LexicalStateStore
from shared.models.errors import RetrievalError, SearchTimeoutError
from shared.models.retrieval import RetrievalSettings
from shared.semantic.SemanticEncoder import SemanticEncoder
from services.ingest.IngestService import IngestService
from services.sparse_migration.MigrationService import MigrationService
from server.core.QueryService import QueryService
from server.routers.SearchRouter import router as search_router
from server.routers.IngestRouter import router as ingest_router
from server.routers.MigrationRouter import router as migration_router
from server.routers.UserRouter import router as user_router

logging = setup_logging()
app_version = os.getenv("APP_VERSION", "unknown")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # when the app starts
    app.state.logging = logging
    app.state.helper_config = HelperConfig(logger=logging)
    settings = RetrievalSettings.from_helper_config(app.state.helper_config)

    rag_client = RAGClientManager(helper_config=app.state.helper_config).get_client()
    embed_client = EmbedClientManager(helper_config=app.state.helper_config).get_client()
    account_client = AccountClientManager(helper_config=app.state.helper_config).get_client()
    clients: list[ClientInterface] = [rag_client, embed_client, account_client]

    logging.info("Booting all clients...")
    for client in clients:
        await client.boot()
    logging.info("All clients booted successfully.")

    semantic_encoder = SemanticEncoder(
        helper_config=app.state.helper_config,
        embed_client=embed_client,
        dimension=settings.vector_dimension,
        cache_size=settings.semantic_cache_size,
    )
    state_store = LexicalStateStore(helper_config=app.state.helper_config, state_dir=settings.lexical_state_dir)

    app.state.settings = settings
    app.state.query_service = QueryService(
        helper_config=app.state.helper_config,
        rag_client=rag_client,
        semantic_encoder=semantic_encoder,
        state_store=state_store,
        settings=settings,
    )
    app.state.ingest_service = IngestService(
        helper_config=app.state.helper_config,
        rag_client=rag_client,
        semantic_encoder=semantic_encoder,
        state_store=state_store,
        settings=settings,
    )
    app.state.migration_service = MigrationService(
        helper_config=app.state.helper_config,
        rag_client=rag_client,
        account_client=account_client,
        state_store=state_store,
        settings=settings,
    )

    await check_connections(rag_client, semantic_encoder, account_client)

    # while the app is running...
    yield

    # when the app shuts down, close all client connections
    logging.info("Shutting down, closing all clients...")
    for client in clients:
        await client.close()
    logging.info("All clients closed.")


app = FastAPI(
    title="email_style_retrieval",
    description=(
        "Retrieves a user's most relevant past emails as stylistic exemplars for reply drafting. "
        "Fuses semantic (embedding) and lexical (BM25) relevance over per-user, per-direction collections. "
        "Search via POST /search, index via POST /ingest, backfill sparse vectors via POST /migration/run."
    ),
    version=app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(search_router)
app.include_router(ingest_router)
app.include_router(migration_router)
app.include_router(user_router)


@app.exception_handler(SearchTimeoutError)
async def handle_search_timeout(request: Request, exc: SearchTimeoutError) -> JSONResponse:
    return JSONResponse(status_code=504, content={"success": False, "error": str(exc), "code": exc.code})


@app.exception_handler(RetrievalError)
async def handle_retrieval_error(request: Request, exc: RetrievalError) -> JSONResponse:
    logging.error("Request to %s failed: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"success": False, "error": str(exc), "code": exc.code})


async def check_connections(
    rag_client: ClientInterface,
    semantic_encoder: SemanticEncoder,
    account_client: ClientInterface,
) -> None:
    """Check connectivity to all configured backends on startup.

    The accounts backend is only needed by the migration, so its failure is
    non-fatal. The store and the embedding model are required to serve queries.

    Raises:
        RetrievalError: If the store or the embedding backend is not reachable,
            or the embedding model does not match VECTOR_DIMENSION.
    """
    try:
        result = await account_client.do_healthcheck()
        if not result.is_success:
            logging.warning(
                "Accounts client '%s' is not reachable (status %d). Migration runs will fail.",
                account_client.get_engine_name(),
                result.status_code,
            )
    except RetrievalError as exc:
        logging.warning("Accounts client '%s' is not reachable: %s. Migration runs will fail.", account_client.get_engine_name(), exc)

    result = await rag_client.do_healthcheck()
    if not result.is_success:
        raise RetrievalError(
            f"RAG client '{rag_client.get_engine_name()}' is not reachable "
            f"(status {result.status_code}). Cannot serve queries."
        )

    await semantic_encoder.check_dimension()


if __name__ == "__main__":
    import uvicorn

    logging.info(
        "Starting email_style_retrieval API Server v%s from root dir: %s on port 8000...",
        app_version,
        os.environ.get("ROOT_DIR", "unknown"),
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
