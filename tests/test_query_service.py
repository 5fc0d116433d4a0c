import asyncio
import itertools
import threading

import pytest

from conftest import hashed_vector
from server.core.QueryService import QueryService
from shared.clients.rag.memory.RAGClientMemory import RAGClientMemory
from shared.clients.rag.models.VectorPoint import EmailPayload, Point
from shared.lexical import LexicalEncoder
from shared.lexical.LexicalStateStore import LexicalStateStore
from shared.models.errors import EmbeddingError, SearchTimeoutError
from shared.models.search import SearchFilters, SearchRequest

USER = "u1"
THANKS_CORPUS = {
    "update": "thanks for the update",
    "meeting": "see you at the meeting",
    "great": "thanks, sounds great",
}


def make_service(helper_config, store, semantic_encoder, state_store, settings) -> QueryService:
    return QueryService(
        helper_config=helper_config,
        rag_client=store,
        semantic_encoder=semantic_encoder,
        state_store=state_store,
        settings=settings,
    )


async def fill(store, emails: dict[str, str], dense: dict[str, list[float]] | None = None, state=None, sent_dates: dict[str, str] | None = None, relationships: dict[str, str] | None = None) -> str:
    collection = store.get_collection_name(USER, "sent")
    if not await store.do_existence_check(collection):
        await store.do_create_collection(collection, vector_size=4)
    points = []
    for email_id, text in emails.items():
        points.append(
            Point(
                id=email_id,
                dense_vector=(dense or {}).get(email_id, hashed_vector(text)),
                sparse_vector=LexicalEncoder.encode(state, text) if state is not None else None,
                payload=EmailPayload(
                    user_id=USER,
                    email_id=email_id,
                    direction="sent",
                    text=text,
                    sent_date=(sent_dates or {}).get(email_id),
                    relationship=(relationships or {}).get(email_id),
                ),
            )
        )
    await store.do_upsert_points(collection, points)
    return collection


@pytest.mark.asyncio
async def test_nonexistent_collection_gives_failed_result(helper_config, store, semantic_encoder, state_store, settings):
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)
    result = await service.search(USER, "sent", "anything")
    assert result.success is False
    assert result.error
    assert result.documents == []


@pytest.mark.asyncio
async def test_empty_collection_gives_failed_result(helper_config, store, semantic_encoder, state_store, settings):
    await store.do_create_collection(store.get_collection_name(USER, "received"), vector_size=4)
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)
    result = await service.search(USER, "received", "anything")
    assert result.success is False


@pytest.mark.asyncio
async def test_fifty_points_limit_five(helper_config, store, semantic_encoder, state_store, settings):
    await fill(store, {f"e{i:02d}": f"email number {i} about topic {i % 7}" for i in range(50)})
    settings.overfetch_multiplier = 10
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    result = await service.search(USER, "sent", "what about topic 3", limit=5, score_threshold=0.0)

    assert result.success
    assert len(result.documents) == 5
    assert result.stats.filtered_count == 5
    assert result.stats.total_candidates == 50
    combined = [d.scores.combined for d in result.documents]
    assert combined == sorted(combined, reverse=True)


@pytest.mark.asyncio
async def test_without_lexical_state_combined_equals_semantic(helper_config, store, semantic_encoder, state_store, settings):
    await fill(store, THANKS_CORPUS)
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    result = await service.search(USER, "sent", "thanks a lot", limit=3)

    assert result.success
    for document in result.documents:
        assert document.scores.combined == document.scores.semantic
        assert document.scores.lexical == 0.0


@pytest.mark.asyncio
async def test_lexical_signal_breaks_semantic_ties(helper_config, store, embed_client, semantic_encoder, state_store, settings):
    state = LexicalEncoder.fit(THANKS_CORPUS.values())
    state_store.publish(USER, state)
    same = [1.0, 0.0, 0.0, 0.0]
    await fill(store, THANKS_CORPUS, dense={key: same for key in THANKS_CORPUS}, state=state)
    embed_client.vectors["thanks a lot"] = same
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    result = await service.search(USER, "sent", "thanks a lot", limit=3)

    ranked = [d.point_id for d in result.documents]
    assert ranked[-1] == "meeting"
    assert set(ranked[:2]) == {"update", "great"}
    top = result.documents[0]
    assert top.scores.lexical == pytest.approx(1.0)
    assert top.scores.combined == pytest.approx(1.0)
    meeting = result.documents[-1]
    # only the dense search found it; lexical takes the floor
    assert meeting.scores.lexical == settings.missing_score_floor
    assert meeting.scores.combined == pytest.approx(settings.semantic_weight)
    for document in result.documents:
        assert 0.0 <= document.scores.semantic <= 1.0
        assert 0.0 <= document.scores.lexical <= 1.0


@pytest.mark.asyncio
async def test_missing_score_floor_is_configurable(helper_config, store, embed_client, semantic_encoder, state_store, settings):
    state = LexicalEncoder.fit(THANKS_CORPUS.values())
    state_store.publish(USER, state)
    same = [1.0, 0.0, 0.0, 0.0]
    await fill(store, THANKS_CORPUS, dense={key: same for key in THANKS_CORPUS}, state=state)
    embed_client.vectors["thanks a lot"] = same
    settings.missing_score_floor = 0.25
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    result = await service.search(USER, "sent", "thanks a lot", limit=3)

    meeting = next(d for d in result.documents if d.point_id == "meeting")
    assert meeting.scores.lexical == 0.25
    assert meeting.scores.combined == pytest.approx(settings.semantic_weight + settings.lexical_weight * 0.25)


def test_combined_score_is_monotonic_in_each_signal(helper_config, store, semantic_encoder, state_store, settings):
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)
    grid = [i / 10 for i in range(11)]
    for fixed, (low, high) in itertools.product(grid, itertools.combinations(grid, 2)):
        assert service.combine_scores(low, fixed) <= service.combine_scores(high, fixed)
        assert service.combine_scores(fixed, low) <= service.combine_scores(fixed, high)


@pytest.mark.asyncio
async def test_threshold_drops_low_scores(helper_config, store, embed_client, semantic_encoder, state_store, settings):
    await fill(
        store,
        {"close": "close text", "far": "far text"},
        dense={"close": [1.0, 0.0, 0.0, 0.0], "far": [0.0, 1.0, 0.0, 0.0]},
    )
    embed_client.vectors["query"] = [1.0, 0.1, 0.0, 0.0]
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    result = await service.search(USER, "sent", "query", limit=5, score_threshold=0.5)

    assert [d.point_id for d in result.documents] == ["close"]
    assert result.stats.total_candidates == 2
    assert result.stats.filtered_count == 1
    assert result.stats.avg_semantic_score == result.documents[0].scores.semantic


@pytest.mark.asyncio
async def test_filters_exclude_emails(helper_config, store, semantic_encoder, state_store, settings):
    await fill(store, THANKS_CORPUS)
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    request = SearchRequest(user_id=USER, query="thanks", limit=5, filters=SearchFilters(exclude_email_ids=["update"]))
    result = await service.search_request(request)

    assert "update" not in {d.point_id for d in result.documents}
    assert len(result.documents) == 2


@pytest.mark.asyncio
async def test_temporal_ranking_prefers_recent_emails(helper_config, store, embed_client, semantic_encoder, state_store, settings):
    same = [1.0, 0.0, 0.0, 0.0]
    await fill(
        store,
        {"old": "old text", "recent": "recent text"},
        dense={"old": same, "recent": same},
        sent_dates={"old": "2001-01-01T00:00:00+00:00", "recent": None},
    )
    embed_client.vectors["query"] = same
    settings.temporal_ranking = True
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    result = await service.search(USER, "sent", "query", limit=2)

    assert [d.point_id for d in result.documents] == ["recent", "old"]
    assert result.documents[1].scores.temporal == pytest.approx(result.documents[1].scores.combined * 0.5)


@pytest.mark.asyncio
async def test_semantic_failure_fails_the_search(helper_config, store, embed_client, semantic_encoder, state_store, settings):
    await fill(store, THANKS_CORPUS)
    state_store.publish(USER, LexicalEncoder.fit(THANKS_CORPUS.values()))
    embed_client.fail = True
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    with pytest.raises(EmbeddingError):
        await service.search(USER, "sent", "thanks a lot")


@pytest.mark.asyncio
async def test_slow_semantic_encoder_times_out(helper_config, store, embed_client, semantic_encoder, state_store, settings):
    await fill(store, THANKS_CORPUS)
    embed_client.delay = 1.0
    settings.search_timeout = 0.05
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    with pytest.raises(SearchTimeoutError):
        await service.search(USER, "sent", "thanks a lot")


class BarrierStore(RAGClientMemory):
    """Each nearest-neighbour call waits until the other one has started."""

    def __init__(self, helper_config):
        super().__init__(helper_config=helper_config)
        self.dense_started = asyncio.Event()
        self.sparse_started = asyncio.Event()

    async def do_search_dense(self, *args, **kwargs):
        self.dense_started.set()
        await asyncio.wait_for(self.sparse_started.wait(), timeout=1.0)
        return await super().do_search_dense(*args, **kwargs)

    async def do_search_sparse(self, *args, **kwargs):
        self.sparse_started.set()
        await asyncio.wait_for(self.dense_started.wait(), timeout=1.0)
        return await super().do_search_sparse(*args, **kwargs)


@pytest.mark.asyncio
async def test_dense_and_sparse_searches_run_concurrently(helper_config, semantic_encoder, state_store, settings):
    store = BarrierStore(helper_config)
    state = LexicalEncoder.fit(THANKS_CORPUS.values())
    state_store.publish(USER, state)
    await fill(store, THANKS_CORPUS, state=state)
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    result = await service.search(USER, "sent", "thanks a lot", limit=3)

    assert result.success
    assert store.dense_started.is_set() and store.sparse_started.is_set()


@pytest.mark.asyncio
async def test_mail_header_and_unreadable_dates_do_not_fail_the_search(helper_config, store, embed_client, semantic_encoder, state_store, settings):
    same = [1.0, 0.0, 0.0, 0.0]
    await fill(
        store,
        {"header": "header dated text", "garbled": "garbled dated text"},
        dense={"header": same, "garbled": same},
        sent_dates={"header": "Tue, 03 Oct 2023 10:00:00 +0000", "garbled": "last tuesday"},
    )
    embed_client.vectors["hello"] = same
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    result = await service.search(USER, "sent", "hello", limit=2, score_threshold=0.0)

    assert result.success is True
    scores = {d.point_id: d.scores for d in result.documents}
    assert scores["garbled"].temporal == pytest.approx(scores["garbled"].combined)
    assert scores["header"].temporal == pytest.approx(scores["header"].combined * 0.5)


@pytest.mark.asyncio
async def test_relationship_filter_restricts_candidates(helper_config, store, semantic_encoder, state_store, settings):
    await fill(store, THANKS_CORPUS, relationships={"update": "colleague", "meeting": "colleague", "great": "family"})
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    result = await service.search(USER, "sent", "thanks", limit=5, score_threshold=0.0, filters=SearchFilters(relationship="colleague"))

    assert {d.point_id for d in result.documents} == {"update", "meeting"}
    assert all(d.payload.relationship == "colleague" for d in result.documents)


class ThreadRecordingStateStore(LexicalStateStore):
    def load(self, user_id):
        self.loaded_in = threading.get_ident()
        return super().load(user_id)


@pytest.mark.asyncio
async def test_lexical_state_is_loaded_off_the_event_loop(helper_config, store, semantic_encoder, settings):
    state_store = ThreadRecordingStateStore(helper_config=helper_config, state_dir=settings.lexical_state_dir)
    await fill(store, THANKS_CORPUS)
    service = make_service(helper_config, store, semantic_encoder, state_store, settings)

    result = await service.search(USER, "sent", "thanks", score_threshold=0.0)

    assert result.success is True
    assert state_store.loaded_in != threading.get_ident()
