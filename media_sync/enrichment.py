"""Fetch-details phase: fill in fields the listing does not provide."""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from .cancellation import CancellationToken
from .context import SyncContext
from .errors import CancelReason, DownloadAbortError, ErrorKind, OperationCancelled, log_classified
from .models import (
    DEFAULT_EPISODE_DURATION,
    UNKNOWN_PART_ID,
    Collaborator,
    Item,
    ItemDetail,
    PageInfo,
    VideoSource,
)
from .sources import is_attribution_source

logger = logging.getLogger(__name__)


async def fetch_video_details(ctx: SyncContext, source: VideoSource, token: CancellationToken) -> int:
    """Enrich every item of *source* that has no details yet.

    Returns the number of items filled. Risk control aborts the whole phase
    with DownloadAbortError.
    """
    items = await asyncio.to_thread(ctx.store.unfilled_items, source)
    if not items:
        return 0

    episodic = [item for item in items if item.is_episodic]
    ordinary = [item for item in items if not item.is_episodic]
    filled = 0
    if episodic:
        filled += await _fill_episodic(ctx, source, episodic, token)
    if ordinary:
        filled += await _fill_ordinary(ctx, source, ordinary, token)
    logger.info("Fetched details of %d/%d items in %s", filled, len(items), source.label)
    return filled


def _known_episode_parts(ctx: SyncContext, source: VideoSource, series_id: str) -> Dict[str, Tuple[int, int]]:
    known = ctx.store.existing_episode_parts(series_id)
    if source.remote_id == series_id and source.cached_episodes:
        for episode in source.cached_episodes:
            known.setdefault(episode["ep_id"], (episode["cid"], episode["duration"]))
    return known


async def _fill_episodic(
    ctx: SyncContext, source: VideoSource, items: List[Item], token: CancellationToken
) -> int:
    groups: Dict[str, List[Item]] = defaultdict(list)
    for item in items:
        groups[item.series_id or source.remote_id].append(item)

    filled = 0
    for series_id, group in groups.items():
        token.raise_if_cancelled()
        known = await asyncio.to_thread(_known_episode_parts, ctx, source, series_id)
        if any(item.ep_id not in known for item in group):
            info = ctx.cache.series_info.get(series_id)
            if info is None:
                try:
                    info = await token.run(ctx.client.fetch_series(series_id, token=token))
                except OperationCancelled:
                    raise
                except Exception as exc:
                    classified = ctx.analyzer.categorize_and_record(series_id, exc)
                    if classified.is_risk_control:
                        token.cancel(CancelReason.RISK_CONTROL)
                        raise DownloadAbortError() from exc
                    log_classified(logger, f"Failed to fetch episodes of series {series_id}", classified)
                else:
                    ctx.cache.series_info[series_id] = info
                    ctx.cache.series_titles[series_id] = info.title
            if info is not None:
                for episode in info.episodes:
                    known.setdefault(episode.ep_id, (episode.cid, episode.duration))

        for item in group:
            cid, duration = known.get(item.ep_id, (UNKNOWN_PART_ID, DEFAULT_EPISODE_DURATION))
            detail = ItemDetail(
                name=item.name,
                intro=item.intro,
                cover=item.cover,
                pages=[PageInfo(pid=1, cid=cid, name=item.name, duration=duration, image=item.cover)],
            )
            await asyncio.to_thread(ctx.store.save_item_detail, item, detail)
            filled += 1
    return filled


async def _fill_ordinary(
    ctx: SyncContext, source: VideoSource, items: List[Item], token: CancellationToken
) -> int:
    semaphore = asyncio.Semaphore(ctx.config.video_concurrency)
    submission_ids = await asyncio.to_thread(ctx.store.enabled_submission_ids)
    tasks = [
        asyncio.ensure_future(_fill_one(ctx, source, item, semaphore, submission_ids, token))
        for item in items
    ]

    filled = 0
    abort: Optional[BaseException] = None
    cancelled: Optional[OperationCancelled] = None
    try:
        for next_done in asyncio.as_completed(tasks):
            try:
                filled += await next_done
            except DownloadAbortError as exc:
                abort = abort or exc
            except OperationCancelled as exc:
                if exc.reason is CancelReason.RISK_CONTROL:
                    abort = abort or DownloadAbortError()
                else:
                    cancelled = cancelled or exc
    finally:
        for task in tasks:
            task.cancel()
    if abort is not None:
        raise abort
    if cancelled is not None:
        raise cancelled
    return filled


async def _fill_one(
    ctx: SyncContext,
    source: VideoSource,
    item: Item,
    semaphore: asyncio.Semaphore,
    submission_ids: Set[str],
    token: CancellationToken,
) -> int:
    async with token.acquire(semaphore):
        try:
            detail = await token.run(ctx.client.fetch_detail(item, token=token))
        except OperationCancelled:
            raise
        except Exception as exc:
            classified = ctx.analyzer.categorize_and_record(item.bvid, exc)
            if classified.is_risk_control:
                token.cancel(CancelReason.RISK_CONTROL)
                raise DownloadAbortError() from exc
            if classified.kind is ErrorKind.NOT_FOUND:
                await asyncio.to_thread(ctx.store.mark_invalid, item.id)
            log_classified(logger, f"Failed to fetch details of {item.bvid}", classified)
            return 0

    if detail.paid_locked:
        logger.info("%s is paid content that is not unlocked; queueing deletion", item.bvid)
        await asyncio.to_thread(ctx.delete_sink.enqueue_delete, item.id)
        return 0

    member = select_attribution(detail.staff, source, submission_ids)
    if member is not None and member.mid != detail.upper_id:
        logger.info(
            "Re-attributing collaborative item %s from %s to subscribed %s",
            item.bvid, detail.upper_name or detail.upper_id, member.name,
        )
        detail.upper_id = member.mid
        detail.upper_name = member.name
        detail.upper_face = member.face

    await asyncio.to_thread(ctx.store.save_item_detail, item, detail)
    return 1


def select_attribution(
    staff: List[Collaborator], source: VideoSource, submission_ids: Set[str]
) -> Optional[Collaborator]:
    """Pick the collaborator a collaborative item should be filed under.

    The originating source wins when it is itself an uploader subscription;
    otherwise exactly one collaborator must match an enabled subscription.
    """
    if len(staff) <= 1:
        return None
    if is_attribution_source(source):
        for member in staff:
            if member.mid == source.remote_id:
                return member
    matches = [member for member in staff if member.mid in submission_ids]
    if len(matches) == 1:
        return matches[0]
    return None
