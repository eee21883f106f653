"""Tests for the download phase and the retry-once sweep."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from conftest import make_summary, risk_control_error

from media_sync.cancellation import CancellationToken
from media_sync.downloader import download_unprocessed_videos, select_best_streams
from media_sync.enrichment import fetch_video_details
from media_sync.errors import CancelReason, DownloadAbortError, OperationCancelled
from media_sync.models import ItemDetail, MediaStream, PageInfo, SourceKind, StreamKind, utc_now
from media_sync.retry import reset_risk_control_failures, retry_failed_videos_once
from media_sync.status import ITEM_PAGES, PAGE_MEDIA, Status


async def _prepare(ctx, store, source, count=1):
    store.insert_items(source, [make_summary(i) for i in range(1, count + 1)])
    await fetch_video_details(ctx, source, CancellationToken())
    return store.unhandled_items(source)


def _status(raw):
    return Status.from_int(raw).values()


@pytest.mark.asyncio
async def test_single_page_item_downloads_everything(ctx, store, make_source, fetcher):
    source = make_source()
    await _prepare(ctx, store, source)

    stats = await download_unprocessed_videos(ctx, source, CancellationToken())

    assert stats.completed == 1
    assert store.unhandled_items(source) == []
    folder = Path(source.path) / "Video 1"
    assert (folder / "Video 1.mp4").exists()
    assert (folder / "Video 1-thumb.jpg").exists()
    assert (folder / "Video 1.nfo").exists()
    assert (folder / "Video 1.danmaku.xml").exists()
    avatar_dir = Path(ctx.config.upper_path) / "1" / "100"
    assert (avatar_dir / "folder.jpg").exists()
    assert (avatar_dir / "person.nfo").exists()


@pytest.mark.asyncio
async def test_revived_item_is_downloaded_again(ctx, store, make_source, fetcher):
    source = make_source(scan_deleted=True)
    ((item, _),) = await _prepare(ctx, store, source)
    await download_unprocessed_videos(ctx, source, CancellationToken())
    folder = Path(source.path) / "Video 1"
    ctx.delete_sink.enqueue_delete(item.id)
    await ctx.delete_sink.process_pending()
    assert not folder.exists()

    fetcher.fetched.clear()
    ctx.new_scan()
    store.insert_items(source, [make_summary(1)])
    await fetch_video_details(ctx, source, CancellationToken())
    stats = await download_unprocessed_videos(ctx, source, CancellationToken())

    assert stats.completed == 1
    assert (folder / "Video 1.mp4").exists()
    assert folder / "Video 1.mp4" in fetcher.fetched


@pytest.mark.asyncio
async def test_permission_denied_cover_is_not_retried(ctx, store, make_source, fetcher):
    source = make_source()
    await _prepare(ctx, store, source)
    fetcher.errors["https://cdn.example/cover.jpg"] = PermissionError("read-only library")

    stats = await download_unprocessed_videos(ctx, source, CancellationToken())

    assert (stats.completed, stats.failed) == (1, 0)
    assert store.unhandled_items(source) == []


@pytest.mark.asyncio
async def test_multi_page_item_uses_season_layout(ctx, store, make_source, client):
    source = make_source()
    client.details["BV0001"] = ItemDetail(
        name="Course",
        cover="https://cdn.example/cover.jpg",
        pages=[PageInfo(1, 11, "Intro"), PageInfo(2, 12, "Outro")],
    )
    await _prepare(ctx, store, source)

    await download_unprocessed_videos(ctx, source, CancellationToken())

    folder = Path(source.path) / "Course"
    assert (folder / "tvshow.nfo").exists()
    assert (folder / "poster.jpg").exists()
    assert (folder / "Season 1" / "Intro - S01E01.mp4").exists()
    assert (folder / "Season 1" / "Outro - S01E02.mp4").exists()


@pytest.mark.asyncio
async def test_separate_streams_are_merged(ctx, store, make_source, client, fetcher):
    source = make_source()
    client.streams = [
        MediaStream(StreamKind.MIXED, ["https://cdn/mixed"], height=480),
        MediaStream(StreamKind.VIDEO, ["https://cdn/v"], height=1080),
        MediaStream(StreamKind.AUDIO, ["https://cdn/a"], bitrate=192.0),
    ]
    await _prepare(ctx, store, source)

    await download_unprocessed_videos(ctx, source, CancellationToken())

    media = Path(source.path) / "Video 1" / "Video 1.mp4"
    assert fetcher.merged == [media]
    assert media.read_text(encoding="utf-8") == "merged"


def test_select_best_streams():
    mixed = MediaStream(StreamKind.MIXED, ["m"], height=1080)
    video = MediaStream(StreamKind.VIDEO, ["v"], height=720)
    audio = MediaStream(StreamKind.AUDIO, ["a"], bitrate=128.0)
    assert select_best_streams([mixed, video, audio]).mixed is mixed
    choice = select_best_streams([video, audio])
    assert (choice.video, choice.audio, choice.mixed) == (video, audio, None)
    assert select_best_streams([audio]).video is None


@pytest.mark.asyncio
async def test_failed_media_counts_up(ctx, store, make_source, client):
    source = make_source()
    client.streams = [MediaStream(StreamKind.AUDIO, ["https://cdn/a"])]
    await _prepare(ctx, store, source)

    stats = await download_unprocessed_videos(ctx, source, CancellationToken())

    assert stats.failed == 1
    ((item, pages),) = store.unhandled_items(source)
    assert _status(pages[0].download_status)[PAGE_MEDIA] == 1
    assert _status(item.download_status)[ITEM_PAGES] == 1


@pytest.mark.asyncio
async def test_avatar_fetched_once_per_uploader(ctx, store, make_source, fetcher):
    source = make_source()
    await _prepare(ctx, store, source, count=3)

    await download_unprocessed_videos(ctx, source, CancellationToken())

    assert [path.name for path in fetcher.fetched].count("folder.jpg") == 1


@pytest.mark.asyncio
async def test_risk_control_keeps_pre_attempt_values(ctx, store, make_source, client):
    other_source = make_source(SourceKind.SUBMISSION, "9")
    ((other, other_pages),) = await _prepare(ctx, store, other_source)
    other.download_status = Status([7, 7, 7, 7, 4]).to_int()
    other_pages[0].download_status = Status([7, 4, 7, 7, 7]).to_int()
    store.save_download_results(other, other_pages)

    source = make_source()
    ((item, pages),) = await _prepare(ctx, store, source)
    item.download_status = Status([0, 3, 0, 0, 0]).to_int()
    pages[0].download_status = Status([7, 2, 0, 0, 0]).to_int()
    store.save_download_results(item, pages)
    client.stream_errors["BV0001"] = risk_control_error()
    token = CancellationToken()

    with pytest.raises(DownloadAbortError):
        await download_unprocessed_videos(ctx, source, token)

    assert token.reason is CancelReason.RISK_CONTROL
    assert _status(store.get_item(item.id).download_status) == [0, 3, 0, 0, 0]
    assert _status(store.pages_for(item.id)[0].download_status) == [7, 2, 0, 0, 0]

    await reset_risk_control_failures(store)

    assert _status(store.get_item(item.id).download_status) == [0, 0, 0, 0, 0]
    assert _status(store.pages_for(item.id)[0].download_status) == [7, 0, 0, 0, 0]
    assert _status(store.get_item(other.id).download_status) == [7, 7, 7, 7, 0]
    assert _status(store.pages_for(other.id)[0].download_status) == [7, 0, 7, 7, 7]


@pytest.mark.asyncio
async def test_pause_propagates_without_saving(ctx, store, make_source):
    source = make_source()
    ((item, _),) = await _prepare(ctx, store, source)
    token = CancellationToken()
    token.cancel(CancelReason.PAUSED)

    with pytest.raises(OperationCancelled):
        await download_unprocessed_videos(ctx, source, token)
    assert store.get_item(item.id).download_status == 0


@pytest.mark.asyncio
async def test_retry_once_recovers_transient_failure(ctx, store, make_source, client):
    source = make_source()
    await _prepare(ctx, store, source)
    since = utc_now() - timedelta(seconds=1)
    client.stream_errors["BV0001"] = ConnectionError("connection reset by peer")
    token = CancellationToken()

    first = await download_unprocessed_videos(ctx, source, token)
    assert first.failed == 1

    client.stream_errors.clear()
    retried = await retry_failed_videos_once(ctx, source, since, token)

    assert retried.completed == 1
    assert store.unhandled_items(source) == []


@pytest.mark.asyncio
async def test_retry_swallows_risk_control(ctx, store, make_source, client):
    source = make_source()
    await _prepare(ctx, store, source)
    since = utc_now() - timedelta(seconds=1)
    client.stream_errors["BV0001"] = ConnectionError("connection reset by peer")
    token = CancellationToken()
    await download_unprocessed_videos(ctx, source, token)

    client.stream_errors["BV0001"] = risk_control_error()
    retried = await retry_failed_videos_once(ctx, source, since, token)

    assert retried.completed == 0
    assert not token.cancelled
    ((item, pages),) = store.unhandled_items(source)
    assert _status(pages[0].download_status)[PAGE_MEDIA] == 1
