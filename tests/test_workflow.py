"""End-to-end tests of the scan pipeline against the in-memory remote."""

from __future__ import annotations

import threading

import pytest
from conftest import make_summary, risk_control_error

from media_sync.cancellation import CancellationToken
from media_sync.errors import DownloadAbortError
from media_sync.models import ItemDetail, SourceKind
from media_sync.mutations import MutationKind, MutationQueue, ScanState
from media_sync.status import Status
from media_sync.workflow import process_video_source, run_scan


def _queue(ctx):
    state = ScanState()
    return state, MutationQueue(ctx.store, state, ctx.delete_sink, ctx.config)


@pytest.mark.asyncio
async def test_scan_runs_every_phase(ctx, store, make_source, client):
    source = make_source()
    client.listing = [make_summary(i) for i in (3, 2, 1)]
    state, mutations = _queue(ctx)

    (report,) = await run_scan(ctx, state, mutations)

    assert (report.new_items, report.enriched, report.downloaded, report.failed) == (3, 3, 3, 0)
    assert store.unhandled_items(source) == []
    assert not state.is_scanning()


@pytest.mark.asyncio
async def test_second_scan_without_changes_does_no_work(ctx, store, make_source, client):
    make_source()
    client.listing = [make_summary(1)]
    state, mutations = _queue(ctx)
    await run_scan(ctx, state, mutations)
    client.calls.clear()

    (report,) = await run_scan(ctx, state, mutations)

    assert report.new_items == 0
    assert client.calls == []


@pytest.mark.asyncio
async def test_risk_control_stops_the_scan(ctx, store, make_source, client):
    first = make_source(SourceKind.FAVORITE, "1")
    second = make_source(SourceKind.FAVORITE, "2")
    client.listing = [make_summary(i) for i in (2, 1)]
    client.detail_errors["BV0001"] = risk_control_error()
    state, mutations = _queue(ctx)

    reports = await run_scan(ctx, state, mutations)

    assert [report.error for report in reports] == ["risk control"]
    assert store.count_items(first) == 2
    assert store.count_items(second) == 0


@pytest.mark.asyncio
async def test_process_video_source_resets_store_after_risk_control(ctx, store, make_source, client):
    other = make_source(SourceKind.SUBMISSION, "9")
    store.insert_items(other, [make_summary(5)])
    (stale,) = store.unfilled_items(other)
    pages = store.save_item_detail(stale, ItemDetail(name="stale"))
    stale.download_status = Status([7, 7, 3, 7, 7]).to_int()
    store.save_download_results(stale, pages)

    source = make_source()
    client.listing = [make_summary(1)]
    client.stream_errors["BV0001"] = risk_control_error()

    with pytest.raises(DownloadAbortError):
        await process_video_source(ctx, source, CancellationToken())

    assert Status.from_int(store.get_item(stale.id).download_status).values() == [7, 7, 0, 7, 7]


@pytest.mark.asyncio
async def test_paused_scan_processes_nothing(ctx, store, make_source, client):
    source = make_source()
    client.listing = [make_summary(1)]
    state, mutations = _queue(ctx)
    state.begin()
    await mutations.submit(MutationKind.UPDATE_CONFIG, {"source_id": source.id, "name": "Later"})
    state.end()
    state.pause()

    reports = await run_scan(ctx, state, mutations)

    assert reports == []
    assert store.count_items(source) == 0
    assert len(mutations.pending()) == 1

    state.resume()
    await run_scan(ctx, state, mutations)
    assert store.get_source(source.id).name == "Later"


@pytest.mark.asyncio
async def test_queued_mutations_apply_after_scan(ctx, store, make_source, client):
    source = make_source()
    client.listing = [make_summary(1)]
    state, mutations = _queue(ctx)
    state.begin()
    await mutations.submit(MutationKind.UPDATE_CONFIG, {"source_id": source.id, "name": "Renamed"})
    state.end()

    await run_scan(ctx, state, mutations)

    assert store.get_source(source.id).name == "Renamed"
    assert mutations.pending() == []


@pytest.mark.asyncio
async def test_paid_locked_items_are_deleted_after_scan(ctx, store, make_source, client):
    source = make_source()
    client.listing = [make_summary(1), make_summary(2)]
    client.details["BV0002"] = ItemDetail(name="locked", paid_locked=True)
    state, mutations = _queue(ctx)

    (report,) = await run_scan(ctx, state, mutations)

    assert report.downloaded == 1
    assert store.pending_delete_video_ids() == set()
    assert store.unfilled_items(source) == []


@pytest.mark.asyncio
async def test_guard_runs_phases_when_stored_items_are_unfinished(ctx, store, make_source, client):
    source = make_source()
    store.insert_items(source, [make_summary(1)])
    client.listing = []

    report = await process_video_source(ctx, source, CancellationToken())

    assert report.new_items == 0
    assert (report.enriched, report.downloaded) == (1, 1)
    assert client.calls == ["detail:BV0001", "streams:BV0001:1"]


@pytest.mark.asyncio
async def test_store_work_runs_off_the_event_loop(ctx, store, make_source, client, monkeypatch):
    source = make_source()
    client.listing = [make_summary(1)]
    threads = []
    for name in ("insert_items", "unfilled_items", "save_item_detail", "unhandled_items", "save_download_results"):
        original = getattr(store, name)

        def recording(*args, _original=original, **kwargs):
            threads.append(threading.get_ident())
            return _original(*args, **kwargs)

        monkeypatch.setattr(store, name, recording)

    await process_video_source(ctx, source, CancellationToken())

    assert threads
    assert threading.get_ident() not in threads
