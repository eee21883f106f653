"""Tests for the refresh phase."""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import BASE_TIME, make_summary

from media_sync.cancellation import CancellationToken
from media_sync.discovery import iter_listing, refresh_series_cache, refresh_video_source
from media_sync.models import EpisodeInfo, ScanCache, SeriesInfo, SourceKind


def _listing_newest_first(count):
    return [make_summary(index) for index in range(count, 0, -1)]


@pytest.mark.asyncio
async def test_refresh_stops_at_watermark(store, make_source, client):
    source = make_source()
    client.listing = _listing_newest_first(25)
    # entries 16..25 are newer than the watermark, 1..15 are not
    store.update_watermark(source, BASE_TIME + timedelta(hours=15))
    token = CancellationToken()

    inserted = await refresh_video_source(source, iter_listing(client, source, token), store, token)

    assert inserted == 10
    assert store.count_items(source) == 10
    assert store.get_source(source.id).latest_row_at == BASE_TIME + timedelta(hours=25)


@pytest.mark.asyncio
async def test_refresh_is_idempotent(store, make_source, client):
    source = make_source()
    client.listing = _listing_newest_first(5)
    token = CancellationToken()

    assert await refresh_video_source(source, iter_listing(client, source, token), store, token) == 5
    source = store.get_source(source.id)
    assert await refresh_video_source(source, iter_listing(client, source, token), store, token) == 0
    assert store.count_items(source) == 5


@pytest.mark.asyncio
async def test_watermark_kept_when_listing_fails(store, make_source, client):
    source = make_source()
    client.listing = _listing_newest_first(25)
    client.list_error_after = 10
    token = CancellationToken()

    with pytest.raises(ConnectionError):
        await refresh_video_source(
            source, iter_listing(client, source, token), store, token, batch_size=4
        )

    # everything read before the failure is kept, the watermark is not
    assert store.count_items(source) == 10
    assert store.get_source(source.id).latest_row_at == source.latest_row_at


@pytest.mark.asyncio
async def test_watch_later_relists_everything(store, make_source, client):
    source = make_source(SourceKind.WATCH_LATER, "0")
    client.listing = _listing_newest_first(3)
    token = CancellationToken()
    await refresh_video_source(source, iter_listing(client, source, token), store, token)

    client.listing = [make_summary(0, release_time=BASE_TIME - timedelta(days=30))] + client.listing
    source = store.get_source(source.id)
    inserted = await refresh_video_source(source, iter_listing(client, source, token), store, token)
    assert inserted == 1


@pytest.mark.asyncio
async def test_series_cache_refreshed_only_when_needed(store, make_source, client):
    source = make_source(SourceKind.SERIES, "77")
    client.series["77"] = SeriesInfo("77", "Show", [EpisodeInfo("ep1", 501, "One", 1400, 1)])
    cache = ScanCache()
    token = CancellationToken()

    assert await refresh_series_cache(source, client, store, cache, token, new_items=0)
    assert cache.series_titles["77"] == "Show"
    assert store.get_source(source.id).cached_episodes[0]["cid"] == 501

    source = store.get_source(source.id)
    assert not await refresh_series_cache(source, client, store, cache, token, new_items=0)
    assert client.calls.count("series:77") == 1


@pytest.mark.asyncio
async def test_series_cache_ignores_other_kinds(store, make_source, client):
    source = make_source()
    assert not await refresh_series_cache(source, client, store, ScanCache(), CancellationToken(), 3)
