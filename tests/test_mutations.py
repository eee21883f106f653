"""Tests for deferred structural changes and the delete-task queue."""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import make_summary

from media_sync.config import SyncConfig
from media_sync.errors import CancelReason
from media_sync.mutations import DeleteTaskSink, MutationKind, MutationQueue, ScanState
from media_sync.models import ItemDetail, PageInfo, SourceKind
from media_sync.status import Status


def _queue(store, config=None):
    state = ScanState()
    return MutationQueue(store, state, DeleteTaskSink(store), config), state


@pytest.mark.asyncio
async def test_mutations_apply_immediately_when_idle(store, tmp_path):
    queue, _ = _queue(store)
    await queue.submit(
        MutationKind.ADD_SOURCE,
        {"kind": "favorite", "remote_id": "1", "path": str(tmp_path / "fav")},
    )
    (source,) = store.list_sources()
    assert source.kind is SourceKind.FAVORITE
    assert source.name == "favorite-1"
    assert queue.pending() == []


@pytest.mark.asyncio
async def test_mutations_wait_for_running_scan(store, make_source):
    source = make_source()
    queue, state = _queue(store)
    state.begin()

    mutation = await queue.submit(MutationKind.UPDATE_CONFIG, {"source_id": source.id, "enabled": False})
    assert queue.pending() == [mutation]
    assert await queue.drain() == 0
    assert store.get_source(source.id).enabled

    state.end()
    assert await queue.drain() == 1
    assert not store.get_source(source.id).enabled


@pytest.mark.asyncio
async def test_drain_applies_in_submission_order(store, make_source):
    source = make_source()
    queue, state = _queue(store)
    state.begin()
    await queue.submit(MutationKind.UPDATE_CONFIG, {"source_id": source.id, "name": "first"})
    await queue.submit(MutationKind.UPDATE_CONFIG, {"source_id": source.id, "name": "second"})
    await queue.submit(MutationKind.REMOVE_SOURCE, {"source_id": source.id})
    state.end()

    assert await queue.drain() == 3
    assert store.get_source(source.id) is None


@pytest.mark.asyncio
async def test_global_config_update(store):
    config = SyncConfig()
    queue, _ = _queue(store, config)
    await queue.submit(MutationKind.UPDATE_CONFIG, {"video_name": "%(bvid)s", "video_concurrency": 1})
    assert config.video_name == "%(bvid)s"
    assert config.video_concurrency == 1


@pytest.mark.asyncio
async def test_bad_mutation_is_logged_and_skipped(store, make_source):
    source = make_source()
    queue, state = _queue(store, SyncConfig())
    state.begin()
    await queue.submit(MutationKind.UPDATE_CONFIG, {"no_such_key": 1})
    await queue.submit(MutationKind.UPDATE_CONFIG, {"source_id": source.id, "name": "renamed"})
    state.end()

    assert await queue.drain() == 1
    assert store.get_source(source.id).name == "renamed"


def test_scan_state_pause_and_resume():
    state = ScanState()
    token = state.begin()
    with pytest.raises(RuntimeError):
        state.begin()
    state.pause()
    assert token.reason is CancelReason.PAUSED
    state.end()

    # still paused: the next scan starts already cancelled
    assert state.begin().cancelled
    state.end()
    state.resume()
    assert not state.begin().cancelled


@pytest.mark.asyncio
async def test_delete_task_removes_item_and_folder(store, make_source, tmp_path):
    source = make_source()
    store.insert_items(source, [make_summary(1)])
    (item,) = store.unfilled_items(source)
    folder = tmp_path / "library" / "Video 1"
    folder.mkdir(parents=True)
    (folder / "Video 1.mp4").write_text("x", encoding="utf-8")
    item.path = str(folder)
    store.save_download_results(item, [])

    sink = DeleteTaskSink(store)
    sink.enqueue_delete(item.id)
    assert await sink.process_pending() == 1

    assert store.get_item(item.id).deleted
    assert not Path(folder).exists()
    assert store.pending_delete_video_ids() == set()


@pytest.mark.asyncio
async def test_reset_mutations_reach_the_store(store, make_source):
    source = make_source()
    store.insert_items(source, [make_summary(1), make_summary(2)])
    first, second = store.unfilled_items(source)
    for item, status in ((first, [7, 7, 7, 7, 7]), (second, [7, 3, 7, 7, 7])):
        pages = store.save_item_detail(item, ItemDetail(name=item.name, pages=[PageInfo(1, 1, "P1")]))
        item.download_status = Status(status).to_int()
        store.save_download_results(item, pages)

    queue, state = _queue(store)
    state.begin()
    await queue.submit(MutationKind.RESET_VIDEO, {"video_id": first.id, "force": True})
    await queue.submit(MutationKind.RESET_FAILED, {})
    assert store.get_item(first.id).download_status == Status([7, 7, 7, 7, 7]).to_int()
    state.end()

    assert await queue.drain() == 2
    assert store.get_item(first.id).download_status == 0
    assert Status.from_int(store.get_item(second.id).download_status).values() == [7, 0, 7, 7, 7]
