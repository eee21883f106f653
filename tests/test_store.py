"""Tests for the SQLite store."""

from __future__ import annotations

from datetime import timedelta

from conftest import BASE_TIME, make_summary

from media_sync.models import ItemDetail, PageInfo, SourceKind
from media_sync.status import Status
from media_sync.store import TASK_DELETE_VIDEO


def _enrich(store, item, pages=1):
    detail = ItemDetail(
        name=item.name,
        pages=[PageInfo(pid=i, cid=1000 + i, name=f"P{i}") for i in range(1, pages + 1)],
    )
    return store.save_item_detail(item, detail)


def test_add_source_is_an_upsert(store, make_source):
    first = make_source(SourceKind.FAVORITE, "1", name="Old")
    second = make_source(SourceKind.FAVORITE, "1", name="New")
    assert first.id == second.id
    assert store.get_source(first.id).name == "New"


def test_insert_items_ignores_duplicates(store, make_source):
    source = make_source()
    store.insert_items(source, [make_summary(1), make_summary(2)])
    store.insert_items(source, [make_summary(2), make_summary(3)])
    assert store.count_items(source) == 3
    assert [item.bvid for item in store.unfilled_items(source)] == ["BV0001", "BV0002", "BV0003"]


def test_series_items_are_episodic(store, make_source):
    source = make_source(SourceKind.SERIES, "77")
    store.insert_items(source, [make_summary(1, ep_id="ep1")])
    (item,) = store.unfilled_items(source)
    assert item.is_episodic
    assert item.series_id == "77"


def test_scan_deleted_revives_soft_deleted_items(store, make_source):
    source = make_source()
    store.insert_items(source, [make_summary(1)])
    (item,) = store.unfilled_items(source)
    store.soft_delete_item(item.id)
    store.insert_items(source, [make_summary(1)])
    assert store.unfilled_items(source) == []

    store.update_source_config(source.id, scan_deleted=True)
    source = store.get_source(source.id)
    store.insert_items(source, [make_summary(1)])
    (revived,) = store.unfilled_items(source)
    assert revived.id == item.id
    assert not revived.deleted


def test_revived_item_drops_its_finished_pages(store, make_source):
    source = make_source(scan_deleted=True)
    store.insert_items(source, [make_summary(1)])
    (item,) = store.unfilled_items(source)
    pages = _enrich(store, item)
    item.download_status = Status([7, 7, 7, 7, 7]).to_int()
    pages[0].download_status = Status([7, 7, 7, 7, 7]).to_int()
    store.save_download_results(item, pages)
    store.soft_delete_item(item.id)

    store.insert_items(source, [make_summary(1)])

    assert store.pages_for(item.id) == []
    assert store.get_item(item.id).download_status == 0


def test_insert_items_keeps_pages_of_live_items(store, make_source):
    source = make_source(scan_deleted=True)
    store.insert_items(source, [make_summary(1)])
    (item,) = store.unfilled_items(source)
    _enrich(store, item)

    store.insert_items(source, [make_summary(1)])

    assert len(store.pages_for(item.id)) == 1


def test_watermark_only_moves_forward(store, make_source):
    source = make_source()
    assert store.update_watermark(source, BASE_TIME)
    assert not store.update_watermark(source, BASE_TIME - timedelta(days=1))
    assert store.get_source(source.id).latest_row_at == BASE_TIME


def test_save_item_detail_creates_pages(store, make_source):
    source = make_source()
    store.insert_items(source, [make_summary(1), make_summary(2)])
    single, multi = store.unfilled_items(source)
    assert len(_enrich(store, single)) == 1
    assert len(_enrich(store, multi, pages=3)) == 3

    handled = dict((item.bvid, (item, pages)) for item, pages in store.unhandled_items(source))
    assert handled["BV0001"][0].single_page is True
    assert handled["BV0002"][0].single_page is False
    assert [page.pid for page in handled["BV0002"][1]] == [1, 2, 3]


def test_mark_invalid_hides_item(store, make_source):
    source = make_source()
    store.insert_items(source, [make_summary(1)])
    (item,) = store.unfilled_items(source)
    store.mark_invalid(item.id)
    assert store.unfilled_items(source) == []


def test_completed_items_are_not_unhandled(store, make_source):
    source = make_source()
    store.insert_items(source, [make_summary(1)])
    (item,) = store.unfilled_items(source)
    pages = _enrich(store, item)
    item.download_status = Status([7] * 5).to_int()
    for page in pages:
        page.download_status = Status([7] * 5).to_int()
    store.save_download_results(item, pages)
    assert store.unhandled_items(source) == []


def test_failed_items_since_skips_pending_deletes(store, make_source):
    source = make_source()
    store.insert_items(source, [make_summary(1), make_summary(2)])
    first, second = store.unfilled_items(source)
    for item in (first, second):
        pages = _enrich(store, item)
        item.download_status = Status([7, 7, 7, 7, 1]).to_int()
        store.save_download_results(item, pages)

    store.enqueue_task(TASK_DELETE_VIDEO, {"video_id": second.id})
    failed = store.failed_items_since(source, BASE_TIME)
    assert [item.id for item, _ in failed] == [first.id]


def test_reset_all_failed_is_store_wide(store, make_source):
    source_a = make_source(SourceKind.FAVORITE, "1")
    source_b = make_source(SourceKind.SUBMISSION, "2")
    store.insert_items(source_a, [make_summary(1)])
    store.insert_items(source_b, [make_summary(2)])
    (item_a,) = store.unfilled_items(source_a)
    (item_b,) = store.unfilled_items(source_b)

    pages_a = _enrich(store, item_a)
    item_a.download_status = Status([7, 3, 7, 7, 7]).to_int()
    store.save_download_results(item_a, pages_a)

    pages_b = _enrich(store, item_b)
    item_b.download_status = Status([7, 7, 7, 7, 2]).to_int()
    pages_b[0].download_status = Status([7, 2, 7, 7, 7]).to_int()
    store.save_download_results(item_b, pages_b)

    items, pages = store.reset_all_failed()

    assert (items, pages) == (2, 1)
    assert Status.from_int(store.get_item(item_a.id).download_status).values() == [7, 0, 7, 7, 7]
    assert Status.from_int(store.get_item(item_b.id).download_status).values() == [7, 7, 7, 7, 0]
    (page_b,) = store.pages_for(item_b.id)
    assert Status.from_int(page_b.download_status).values() == [7, 0, 7, 7, 7]


def test_remove_source_cascades(store, make_source):
    source = make_source()
    store.insert_items(source, [make_summary(1)])
    (item,) = store.unfilled_items(source)
    _enrich(store, item)
    assert store.remove_source(source.id)
    assert store.get_item(item.id) is None
    assert store.pages_for(item.id) == []


def test_task_queue_round_trip(store):
    task_id = store.enqueue_task(TASK_DELETE_VIDEO, {"video_id": 5})
    assert store.pending_delete_video_ids() == {5}
    store.finish_task(task_id)
    assert store.pending_tasks(TASK_DELETE_VIDEO) == []


def _downloaded(store, source, index, item_status, page_status):
    store.insert_items(source, [make_summary(index)])
    item = next(item for item in store.unfilled_items(source) if item.bvid == f"BV{index:04d}")
    pages = _enrich(store, item)
    item.download_status = Status(item_status).to_int()
    pages[0].download_status = Status(page_status).to_int()
    store.save_download_results(item, pages)
    return item


def test_reset_item_clears_failed_subtasks_only(store, make_source):
    source = make_source()
    item = _downloaded(store, source, 1, [7, 6, 7, 7, 3], [7, 7, 2, 7, 7])

    assert store.reset_item(item.id)

    assert Status.from_int(store.get_item(item.id).download_status).values() == [7, 0, 7, 7, 0]
    (page,) = store.pages_for(item.id)
    assert Status.from_int(page.download_status).values() == [7, 7, 0, 7, 7]
    assert not store.reset_item(item.id)


def test_reset_item_page_reset_clears_page_dispatch(store, make_source):
    source = make_source()
    item = _downloaded(store, source, 1, [7, 7, 7, 7, 7], [7, 4, 7, 7, 7])

    assert store.reset_item(item.id)

    assert Status.from_int(store.get_item(item.id).download_status).values() == [7, 7, 7, 7, 0]


def test_forced_reset_starts_over(store, make_source):
    source = make_source()
    item = _downloaded(store, source, 1, [7, 7, 7, 7, 7], [7, 7, 7, 7, 7])

    assert store.reset_item(item.id, force=True)

    assert store.get_item(item.id).download_status == 0
    (page,) = store.pages_for(item.id)
    assert page.download_status == 0
    assert [listed.id for listed, _ in store.unhandled_items(source)] == [item.id]


def test_reset_all_failed_includes_deleted_items(store, make_source):
    source = make_source()
    item = _downloaded(store, source, 1, [7, 2, 7, 7, 7], [7, 7, 7, 7, 7])
    store.soft_delete_item(item.id)

    assert store.reset_all_failed() == (1, 0)
    assert Status.from_int(store.get_item(item.id).download_status).values() == [7, 0, 7, 7, 7]
