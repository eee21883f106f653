"""Scan pipeline: refresh, enrich, download and retry each source in turn."""

import asyncio
import logging
from typing import List, Optional, Sequence

from .cancellation import CancellationToken
from .context import SyncContext
from .discovery import iter_listing, refresh_series_cache, refresh_video_source
from .downloader import download_unprocessed_videos
from .enrichment import fetch_video_details
from .errors import (
    CancelReason,
    DownloadAbortError,
    OperationCancelled,
    classify,
    log_classified,
)
from .models import SourceReport, VideoSource, utc_now
from .mutations import MutationQueue, ScanState
from .retry import reset_risk_control_failures, retry_failed_videos_once

logger = logging.getLogger(__name__)


async def _refresh(ctx: SyncContext, source: VideoSource, token: CancellationToken) -> int:
    """Discovery for one source. Risk control becomes DownloadAbortError."""
    try:
        new_items = await refresh_video_source(
            source, iter_listing(ctx.client, source, token), ctx.store, token
        )
        await refresh_series_cache(source, ctx.client, ctx.store, ctx.cache, token, new_items)
    except OperationCancelled:
        raise
    except Exception as exc:
        classified = ctx.analyzer.categorize_and_record(source.remote_id, exc)
        if classified.is_risk_control:
            token.cancel(CancelReason.RISK_CONTROL)
            raise DownloadAbortError() from exc
        raise
    return new_items


def _has_pending_work(ctx: SyncContext, source: VideoSource) -> bool:
    return bool(ctx.store.unfilled_items(source)) or bool(ctx.store.unhandled_items(source))


async def process_video_source(
    ctx: SyncContext, source: VideoSource, token: CancellationToken
) -> SourceReport:
    """Run every phase for *source*.

    Risk control in any phase resets unfinished work store-wide and is
    raised as DownloadAbortError so the caller stops the scan. A pause is
    raised as OperationCancelled.
    """
    report = SourceReport(label=source.label)
    started = utc_now()
    try:
        report.new_items = await _refresh(ctx, source, token)
        if report.new_items == 0 and not await asyncio.to_thread(_has_pending_work, ctx, source):
            logger.debug("Nothing to do for %s", source.label)
            return report
        token.raise_if_cancelled()

        report.enriched = await fetch_video_details(ctx, source, token)
        stats = await download_unprocessed_videos(ctx, source, token)
        retried = await retry_failed_videos_once(ctx, source, started, token)
    except DownloadAbortError:
        await reset_risk_control_failures(ctx.store)
        raise
    except OperationCancelled as exc:
        if exc.reason is CancelReason.RISK_CONTROL:
            await reset_risk_control_failures(ctx.store)
            raise DownloadAbortError() from exc
        raise

    report.downloaded = stats.completed + retried.completed
    report.retried = retried.completed + retried.failed
    report.failed = max(stats.failed - retried.completed, 0)
    return report


async def run_scan(
    ctx: SyncContext,
    state: ScanState,
    mutations: MutationQueue,
    sources: Optional[Sequence[VideoSource]] = None,
) -> List[SourceReport]:
    """Process every enabled source once, then apply deferred changes.

    The scan stops early on risk control or a pause. Queued deletions and
    mutations are applied afterwards unless the scan was paused.
    """
    token = state.begin()
    ctx.new_scan()
    reports: List[SourceReport] = []
    try:
        if sources is None:
            sources = await asyncio.to_thread(ctx.store.list_sources, True)
        logger.info("Starting scan of %d sources", len(sources))
        for source in sources:
            if token.cancelled:
                break
            if not source.enabled:
                continue
            logger.info("Scanning %s", source.label)
            try:
                reports.append(await process_video_source(ctx, source, token))
            except DownloadAbortError:
                logger.error("Risk control triggered while scanning %s; stopping this scan", source.label)
                reports.append(SourceReport(label=source.label, error="risk control"))
                break
            except OperationCancelled:
                logger.info("Scan paused while processing %s", source.label)
                break
            except Exception as exc:
                classified = classify(exc)
                log_classified(logger, f"Failed to scan {source.label}", classified)
                reports.append(SourceReport(label=source.label, error=classified.message))
    finally:
        state.end()

    if not state.paused:
        await ctx.delete_sink.process_pending()
        await mutations.drain()
    log_scan_summary(ctx, reports)
    return reports


def log_scan_summary(ctx: SyncContext, reports: Sequence[SourceReport]) -> None:
    logger.info("Scan finished: %d sources processed", len(reports))
    for report in reports:
        if report.error:
            logger.info("  %s: stopped (%s)", report.label, report.error)
            continue
        logger.info(
            "  %s: %d new, %d enriched, %d downloaded, %d failed, %d retried",
            report.label, report.new_items, report.enriched, report.downloaded,
            report.failed, report.retried,
        )
    ctx.analyzer.log_summary(logger)
