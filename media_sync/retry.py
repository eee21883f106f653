"""Second chance for items that failed during the current scan, and the
store-wide reset that follows a risk-control abort."""

import asyncio
import logging
from datetime import datetime
from typing import Tuple

from .cancellation import CancellationToken
from .context import SyncContext
from .downloader import DownloadStats, download_items
from .errors import DownloadAbortError
from .models import VideoSource
from .status import ITEM_AVATAR, STATUS_OK, Status
from .store import Store

logger = logging.getLogger(__name__)


async def reset_risk_control_failures(store: Store) -> Tuple[int, int]:
    """Reset unfinished subtasks of every item and page in the database.

    A lockout applies to the whole account, so everything still pending gets
    a clean slate for the next scan rather than only the current source.
    """
    items, pages = await asyncio.to_thread(store.reset_all_failed)
    logger.warning(
        "Risk control triggered; reset unfinished work of %d items and %d pages for the next scan",
        items, pages,
    )
    return items, pages


async def retry_failed_videos_once(
    ctx: SyncContext, source: VideoSource, since: datetime, token: CancellationToken
) -> DownloadStats:
    """Re-run the download phase once on items that failed since *since*.

    Risk control during this pass stops it and is only logged; the scan
    itself carries on. A pause still propagates.
    """
    failed = await asyncio.to_thread(ctx.store.failed_items_since, source, since)
    pairs = [
        (item, pages)
        for item, pages in failed
        if Status.from_int(item.download_status).any_should_run()
    ]
    if not pairs:
        return DownloadStats(0, 0)

    for item, _ in pairs:
        # the avatar failed on this very item, let it try again
        if 0 < Status.from_int(item.download_status).get(ITEM_AVATAR) < STATUS_OK:
            ctx.cache.downloaded_uppers.discard(item.upper_id)

    logger.info("Retrying %d failed items of %s", len(pairs), source.label)
    retry_token = token.child()
    try:
        stats = await download_items(ctx, source, pairs, retry_token)
    except DownloadAbortError:
        if token.cancelled:
            raise
        logger.warning("Risk control during retry of %s; leaving the rest for the next scan", source.label)
        return DownloadStats(0, len(pairs))
    logger.info(
        "Retry of %s: %d completed, %d still failing", source.label, stats.completed, stats.failed
    )
    return stats
