"""Refresh phase: ingest new listing entries and advance the watermark."""

import asyncio
import logging
from typing import AsyncIterator, List, Optional

from .cancellation import CancellationToken
from .client import RemoteClient
from .errors import OperationCancelled
from .models import INSERT_BATCH_SIZE, EPOCH, ItemSummary, ScanCache, SourceKind, VideoSource
from .sources import should_take
from .store import Store

logger = logging.getLogger(__name__)


async def iter_listing(
    client: RemoteClient, source: VideoSource, token: CancellationToken
) -> AsyncIterator[ItemSummary]:
    """Yield listing entries newest-first, one remote page at a time."""
    cursor: Optional[int] = None
    while True:
        page = await token.run(client.list_page(source, cursor, token=token))
        for summary in page.items:
            yield summary
        if page.next_cursor is None or not page.items:
            return
        cursor = page.next_cursor


def _insert_batch(store: Store, source: VideoSource, batch: List[ItemSummary]) -> int:
    before = store.count_items(source)
    store.insert_items(source, batch)
    return store.count_items(source) - before


async def refresh_video_source(
    source: VideoSource,
    listing: AsyncIterator[ItemSummary],
    store: Store,
    token: CancellationToken,
    batch_size: int = INSERT_BATCH_SIZE,
) -> int:
    """Insert entries newer than the watermark; return how many rows were added.

    Consumption stops at the first entry that is not newer. The watermark
    moves to the newest release time seen, but only when the listing was
    consumed without error.
    """
    latest_row_at = source.latest_row_at
    max_seen = latest_row_at
    batch: List[ItemSummary] = []
    inserted = 0
    stream_error: Optional[BaseException] = None

    try:
        async for summary in listing:
            token.raise_if_cancelled()
            release = summary.release_time
            if release > max_seen:
                max_seen = release
            if not should_take(source, release, latest_row_at):
                break
            batch.append(summary)
            if len(batch) >= batch_size:
                inserted += await asyncio.to_thread(_insert_batch, store, source, batch)
                batch = []
    except Exception as exc:
        stream_error = exc
    finally:
        aclose = getattr(listing, "aclose", None)
        if aclose is not None:
            await aclose()

    if batch:
        inserted += await asyncio.to_thread(_insert_batch, store, source, batch)

    if stream_error is not None:
        if not isinstance(stream_error, OperationCancelled):
            logger.warning(
                "Listing of %s stopped early after %d new items; watermark kept at %s",
                source.label, inserted, latest_row_at,
            )
        raise stream_error

    if max_seen > latest_row_at and max_seen != EPOCH:
        await asyncio.to_thread(store.update_watermark, source, max_seen)

    if inserted:
        logger.info("Found %d new items in %s", inserted, source.label)
    else:
        logger.debug("No new items in %s", source.label)
    return inserted


async def refresh_series_cache(
    source: VideoSource,
    client: RemoteClient,
    store: Store,
    cache: ScanCache,
    token: CancellationToken,
    new_items: int,
) -> bool:
    """Refresh the stored episode list of a series source when it may be stale."""
    if source.kind is not SourceKind.SERIES:
        return False
    if new_items == 0 and source.cached_episodes:
        return False

    info = await token.run(client.fetch_series(source.remote_id, token=token))
    cache.series_info[source.remote_id] = info
    cache.series_titles[source.remote_id] = info.title
    await asyncio.to_thread(
        store.save_series_cache,
        source,
        [
            {
                "ep_id": episode.ep_id,
                "cid": episode.cid,
                "title": episode.title,
                "duration": episode.duration,
                "episode_number": episode.episode_number,
            }
            for episode in info.episodes
        ],
    )
    logger.info("Cached %d episodes for %s", len(info.episodes), source.label)
    return True
