import asyncio
import hashlib
import logging
import os
import tempfile

import pytest

# required before anything imports the server or the embed clients
os.environ.setdefault("ROOT_DIR", tempfile.mkdtemp(prefix="email-style-retrieval-"))
os.environ.setdefault("EMBED_MODEL", "test-embed")
os.environ.setdefault("APP_API_KEY", "test-key")

from shared.clients.embed.EmbedClientInterface import EmbedClientInterface  # noqa: E402
from shared.clients.rag.memory.RAGClientMemory import RAGClientMemory  # noqa: E402
from shared.helper.HelperConfig import HelperConfig  # noqa: E402
from shared.lexical.LexicalStateStore import LexicalStateStore  # noqa: E402
from shared.logging.logging_setup import ColorLogger  # noqa: E402
from shared.models.config import EnvConfig  # noqa: E402
from shared.models.errors import EmbeddingError  # noqa: E402
from shared.models.retrieval import RetrievalSettings  # noqa: E402
from shared.semantic.SemanticEncoder import SemanticEncoder  # noqa: E402

TEST_DIMENSION = 4


def hashed_vector(text: str, dimension: int = TEST_DIMENSION) -> list[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [0.1 + digest[i] / 255.0 for i in range(dimension)]


class FakeEmbedClient(EmbedClientInterface):
    """Deterministic embedder: fixed vectors for known texts, a hash-derived vector otherwise."""

    def __init__(self, helper_config: HelperConfig, vectors: dict[str, list[float]] | None = None):
        super().__init__(helper_config=helper_config)
        self.vectors = vectors or {}
        self.calls: list[list[str]] = []
        self.fail = False
        self.delay = 0.0

    def _get_engine_name(self) -> str:
        return "Fake"

    def _get_required_config(self) -> list[EnvConfig]:
        return []

    def _get_auth_header(self) -> dict:
        return {}

    def _get_base_url(self) -> str:
        return "fake://embed"

    def _get_endpoint_healthcheck(self) -> str:
        return ""

    def get_endpoint_embedding(self) -> str:
        return "/embed"

    def get_endpoint_model_details(self) -> str:
        return "/show"

    def get_embed_payload(self, texts: list[str]) -> dict:
        return {"input": texts}

    def extract_vector_size_from_model_info(self, model_info: dict) -> int:
        return TEST_DIMENSION

    def extract_embeddings_from_response(self, response_data: dict) -> list[list[float]]:
        return response_data["embeddings"]

    async def do_fetch_embedding_vector_size(self) -> int:
        return TEST_DIMENSION

    async def do_embed(self, texts: list[str] | str) -> list[list[float]]:
        texts = [texts] if isinstance(texts, str) else texts
        self.calls.append(list(texts))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise EmbeddingError("embedding backend unavailable")
        return [list(self.vectors.get(t, hashed_vector(t))) for t in texts]


@pytest.fixture
def helper_config() -> HelperConfig:
    return HelperConfig(logger=ColorLogger(logging.getLogger("tests")))


@pytest.fixture
def settings(tmp_path) -> RetrievalSettings:
    return RetrievalSettings(
        vector_dimension=TEST_DIMENSION,
        score_threshold=0.0,
        lexical_state_dir=str(tmp_path / "lexical_state"),
        migration_batch_size=100,
        scan_page_size=7,
    )


@pytest.fixture
def store(helper_config) -> RAGClientMemory:
    return RAGClientMemory(helper_config=helper_config)


@pytest.fixture
def embed_client(helper_config) -> FakeEmbedClient:
    return FakeEmbedClient(helper_config=helper_config)


@pytest.fixture
def semantic_encoder(helper_config, embed_client) -> SemanticEncoder:
    return SemanticEncoder(helper_config=helper_config, embed_client=embed_client, dimension=TEST_DIMENSION, cache_size=16)


@pytest.fixture
def state_store(helper_config, settings) -> LexicalStateStore:
    return LexicalStateStore(helper_config=helper_config, state_dir=settings.lexical_state_dir)
