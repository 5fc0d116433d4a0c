from datetime import datetime, timezone

import pytest

from shared.clients.rag.models.PointFilter import PointFilter
from shared.clients.rag.models.VectorPoint import EmailPayload, Point, PointUpdate, SparseVector
from shared.models.errors import StoreError

COLLECTION = "emails-sent-u1"


def make_point(point_id: str, dense: list[float], text: str = "hello", **payload) -> Point:
    return Point(
        id=point_id,
        dense_vector=dense,
        payload=EmailPayload(user_id="u1", email_id=point_id, direction="sent", text=text, **payload),
    )


@pytest.mark.asyncio
async def test_upsert_is_idempotent_and_sparse_update_preserves_dense_and_payload(store):
    await store.do_create_collection(COLLECTION, vector_size=3)
    point = make_point("p1", [0.1, 0.2, 0.3], subject="Hi")

    await store.do_upsert_points(COLLECTION, [point])
    await store.do_upsert_points(COLLECTION, [point])
    sparse = SparseVector(indices=[3, 7], values=[0.5, 1.5])
    await store.do_update_points(COLLECTION, [PointUpdate(id="p1", sparse_vector=sparse)])

    assert await store.do_count(COLLECTION) == 1
    page = await store.do_scroll(COLLECTION, with_vectors=True)
    stored = page.points[0]
    assert stored.dense_vector == [0.1, 0.2, 0.3]
    assert stored.payload == point.payload
    assert stored.sparse_vector == sparse


@pytest.mark.asyncio
async def test_update_of_missing_point_fails(store):
    await store.do_create_collection(COLLECTION, vector_size=3)
    with pytest.raises(StoreError):
        await store.do_update_points(COLLECTION, [PointUpdate(id="ghost", sparse_vector=SparseVector())])


def test_point_update_requires_a_field_and_rejects_null():
    with pytest.raises(ValueError):
        PointUpdate(id="p1")
    with pytest.raises(ValueError):
        PointUpdate(id="p1", dense_vector=None)


@pytest.mark.asyncio
async def test_upsert_rejects_wrong_dimension(store):
    await store.do_create_collection(COLLECTION, vector_size=3)
    with pytest.raises(StoreError):
        await store.do_upsert_points(COLLECTION, [make_point("p1", [1.0, 0.0])])


@pytest.mark.asyncio
async def test_missing_collection_raises(store):
    assert not await store.do_existence_check("nope")
    with pytest.raises(StoreError):
        await store.do_count("nope")


@pytest.mark.asyncio
async def test_scroll_pages_cover_every_point_once(store):
    await store.do_create_collection(COLLECTION, vector_size=2)
    await store.do_upsert_points(COLLECTION, [make_point(f"p{i:02d}", [1.0, float(i)]) for i in range(23)])

    seen: list[str] = []
    pages = 0
    async for page in store.do_scroll_pages(COLLECTION, page_size=5):
        pages += 1
        assert len(page.points) <= 5
        seen.extend(p.id for p in page.points)

    assert pages == 5
    assert sorted(seen) == [f"p{i:02d}" for i in range(23)]


@pytest.mark.asyncio
async def test_dense_search_orders_by_cosine(store):
    await store.do_create_collection(COLLECTION, vector_size=2)
    await store.do_upsert_points(
        COLLECTION,
        [make_point("same", [2.0, 0.0]), make_point("diagonal", [1.0, 1.0]), make_point("orthogonal", [0.0, 3.0])],
    )
    hits = await store.do_search_dense(COLLECTION, [1.0, 0.0], limit=3)
    assert [h.id for h in hits] == ["same", "diagonal", "orthogonal"]
    assert hits[0].score == pytest.approx(1.0)
    assert hits[2].score == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_sparse_search_uses_dot_product_and_skips_points_without_overlap(store):
    await store.do_create_collection(COLLECTION, vector_size=2)
    points = [make_point("a", [1.0, 0.0]), make_point("b", [1.0, 0.0]), make_point("c", [1.0, 0.0])]
    points[0].sparse_vector = SparseVector(indices=[1, 2], values=[1.0, 1.0])
    points[1].sparse_vector = SparseVector(indices=[2], values=[5.0])
    points[2].sparse_vector = SparseVector(indices=[9], values=[10.0])
    await store.do_upsert_points(COLLECTION, points)

    hits = await store.do_search_sparse(COLLECTION, SparseVector(indices=[1, 2], values=[2.0, 1.0]), limit=10)
    assert [(h.id, h.score) for h in hits] == [("b", 5.0), ("a", 3.0)]


@pytest.mark.asyncio
async def test_filters(store):
    await store.do_create_collection(COLLECTION, vector_size=2)
    await store.do_upsert_points(
        COLLECTION,
        [
            make_point("old", [1.0, 0.0], recipient_email="x@example.com", sent_date="2023-01-01T00:00:00+00:00"),
            make_point("new", [1.0, 0.0], recipient_email="y@example.com", sent_date="2024-06-01T00:00:00+00:00"),
        ],
    )
    by_counterpart = await store.do_search_dense(COLLECTION, [1.0, 0.0], 10, PointFilter(counterpart_email="x@example.com"))
    assert [h.id for h in by_counterpart] == ["old"]

    since = PointFilter(date_from=datetime(2024, 1, 1, tzinfo=timezone.utc))
    assert [h.id for h in await store.do_search_dense(COLLECTION, [1.0, 0.0], 10, since)] == ["new"]

    excluded = PointFilter(exclude_email_ids=["new"])
    assert await store.do_count(COLLECTION, excluded) == 1

    assert await store.do_count(COLLECTION, PointFilter(user_id="someone-else")) == 0


@pytest.mark.asyncio
async def test_collection_names_are_scoped_and_safe(store):
    assert store.get_collection_name("42", "sent") == "emails-sent-42"
    assert store.get_collection_name("42", "received") == "emails-received-42"
    odd = store.get_collection_name("a@b.com", "sent")
    assert odd.startswith("emails-sent-a_b_com-")
    assert odd != store.get_collection_name("a_b_com", "sent")
    with pytest.raises(ValueError):
        store.get_collection_name("", "sent")


@pytest.mark.asyncio
async def test_date_filter_reads_mail_header_dates_and_skips_unreadable_ones(store):
    await store.do_create_collection(COLLECTION, vector_size=2)
    await store.do_upsert_points(
        COLLECTION,
        [
            make_point("header", [1.0, 0.0], sent_date="Sat, 01 Jun 2024 10:00:00 +0000"),
            make_point("garbled", [1.0, 0.0], sent_date="last tuesday"),
        ],
    )
    since = PointFilter(date_from=datetime(2024, 1, 1, tzinfo=timezone.utc))
    assert [h.id for h in await store.do_search_dense(COLLECTION, [1.0, 0.0], 10, since)] == ["header"]


@pytest.mark.asyncio
async def test_relationship_filter_and_counts(store):
    await store.do_create_collection(COLLECTION, vector_size=2)
    await store.do_upsert_points(
        COLLECTION,
        [
            make_point("a", [1.0, 0.0], relationship="colleague"),
            make_point("b", [1.0, 0.0], relationship="colleague"),
            make_point("c", [1.0, 0.0], relationship="family"),
            make_point("d", [1.0, 0.0]),
        ],
    )
    hits = await store.do_search_dense(COLLECTION, [1.0, 0.0], 10, PointFilter(relationship="family"))
    assert [h.id for h in hits] == ["c"]
    assert await store.do_count_by_relationship(COLLECTION, page_size=3) == {"colleague": 2, "family": 1}


@pytest.mark.asyncio
async def test_find_near_duplicates(store):
    await store.do_create_collection(COLLECTION, vector_size=2)
    await store.do_upsert_points(
        COLLECTION,
        [
            make_point("same", [1.0, 0.0]),
            make_point("close", [1.0, 0.1]),
            make_point("far", [0.0, 1.0]),
        ],
    )
    hits = await store.do_find_near_duplicates(COLLECTION, [1.0, 0.0])
    assert [h.id for h in hits] == ["same", "close"]

    strict = await store.do_find_near_duplicates(COLLECTION, [1.0, 0.0], threshold=0.999)
    assert [h.id for h in strict] == ["same"]
