"""Download phase: run the item and page subtasks of unhandled items."""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, NamedTuple, Optional, Sequence, Tuple

from yt_dlp.utils import sanitize_filename

from .cancellation import CancellationToken
from .context import SyncContext
from .errors import (
    CancelReason,
    DownloadAbortError,
    OperationCancelled,
    StreamUnavailableError,
    classify,
    log_classified,
)
from .models import Item, MediaStream, Page, SourceKind, StreamKind, VideoSource
from .naming import generate_unique_folder_name
from .status import (
    ITEM_AVATAR,
    ITEM_AVATAR_SIDECAR,
    ITEM_COVER,
    ITEM_PAGES,
    ITEM_SIDECAR,
    ITEM_SUBTASK_NAMES,
    PAGE_COMMENTS,
    PAGE_COVER,
    PAGE_MEDIA,
    PAGE_SIDECAR,
    PAGE_SUBTASK_NAMES,
    PAGE_SUBTITLES,
    Outcome,
    Status,
    SubtaskResult,
    min_page_status,
)

logger = logging.getLogger(__name__)

Subtask = Callable[[], Awaitable[Optional[SubtaskResult]]]


class DownloadStats(NamedTuple):
    completed: int
    failed: int


class StreamChoice(NamedTuple):
    video: Optional[MediaStream]
    audio: Optional[MediaStream]
    mixed: Optional[MediaStream]


async def download_unprocessed_videos(
    ctx: SyncContext, source: VideoSource, token: CancellationToken
) -> DownloadStats:
    """Download everything of *source* that still has work to do."""
    pairs = await asyncio.to_thread(ctx.store.unhandled_items, source)
    if not pairs:
        return DownloadStats(0, 0)
    logger.info("Downloading %d items of %s", len(pairs), source.label)
    return await download_items(ctx, source, pairs, token)


async def download_items(
    ctx: SyncContext,
    source: VideoSource,
    pairs: Sequence[Tuple[Item, List[Page]]],
    token: CancellationToken,
) -> DownloadStats:
    """Run the subtasks of *pairs* with bounded concurrency.

    Finished items are persisted one by one. When risk control fires the
    in-flight items are dropped unsaved and DownloadAbortError is raised.
    """
    semaphore = asyncio.Semaphore(ctx.config.video_concurrency)
    tasks = []
    for item, pages in pairs:
        fetch_avatar = bool(item.upper_id) and item.upper_id not in ctx.cache.downloaded_uppers
        if fetch_avatar:
            ctx.cache.downloaded_uppers.add(item.upper_id)
        tasks.append(
            asyncio.ensure_future(
                download_video_pages(ctx, source, item, pages, semaphore, fetch_avatar, token)
            )
        )

    completed = failed = 0
    abort = False
    cancelled: Optional[OperationCancelled] = None
    try:
        for next_done in asyncio.as_completed(tasks):
            try:
                item, pages = await next_done
            except DownloadAbortError:
                abort = True
                continue
            except OperationCancelled as exc:
                if exc.reason is CancelReason.RISK_CONTROL:
                    abort = True
                else:
                    cancelled = cancelled or exc
                continue
            except (OSError, ValueError) as exc:
                failed += 1
                logger.error("Could not prepare download: %s", exc)
                continue
            await asyncio.to_thread(ctx.store.save_download_results, item, pages)
            status = Status.from_int(item.download_status)
            if status.is_completed():
                completed += 1
                logger.info("Downloaded %s", item.name)
            elif status.has_failures():
                failed += 1
    finally:
        for task in tasks:
            task.cancel()

    if abort:
        raise DownloadAbortError()
    if cancelled is not None:
        raise cancelled
    return DownloadStats(completed, failed)


async def _series_title(ctx: SyncContext, source: VideoSource, item: Item, token: CancellationToken) -> str:
    if source.kind is SourceKind.SERIES or not item.series_id:
        return source.name
    title = ctx.cache.series_titles.get(item.series_id)
    if title:
        return title
    try:
        info = await token.run(ctx.client.fetch_series(item.series_id, token=token))
    except OperationCancelled:
        raise
    except Exception as exc:
        classified = classify(exc)
        if classified.is_risk_control:
            token.cancel(CancelReason.RISK_CONTROL)
            raise DownloadAbortError() from exc
        log_classified(logger, f"Failed to fetch title of series {item.series_id}", classified)
        return item.series_id
    ctx.cache.series_info[item.series_id] = info
    ctx.cache.series_titles[item.series_id] = info.title
    return info.title


async def resolve_item_path(
    ctx: SyncContext, source: VideoSource, item: Item, token: CancellationToken
) -> Path:
    root = Path(source.path)
    if item.is_episodic:
        title = await _series_title(ctx, source, item, token)
        return root / sanitize_filename(title) / f"Season {item.season_number or 1:02d}"
    if source.kind is SourceKind.COLLECTION and ctx.config.collection_folder_mode == "unified":
        return root / sanitize_filename(source.name)
    name = ctx.renderer.render_video(item)
    if ctx.renderer.needs_deduplication:
        name = await asyncio.to_thread(
            generate_unique_folder_name, root, name, item.bvid, item.pubtime.strftime("%Y-%m-%d"), item
        )
    return root / name


def page_base(ctx: SyncContext, item: Item, page: Page, item_dir: Path) -> Path:
    """Path of a page's files without extension."""
    name = ctx.renderer.render_page(item, page)
    if item.is_episodic:
        episode = item.episode_number or page.pid
        return item_dir / f"{name} - S{item.season_number or 1:02d}E{episode:02d}"
    if item.single_page:
        return item_dir / name
    return item_dir / "Season 1" / f"{name} - S01E{page.pid:02d}"


def _with_suffix(base: Path, suffix: str) -> Path:
    # page names may contain dots, so never use Path.with_suffix here
    return base.with_name(base.name + suffix)


def _show_dir(item: Item, item_dir: Path) -> Path:
    return item_dir.parent if item.is_episodic else item_dir


def _upper_dir(ctx: SyncContext, item: Item) -> Optional[Path]:
    if not ctx.config.upper_path or not item.upper_id:
        return None
    return Path(ctx.config.upper_path) / item.upper_id[0] / item.upper_id


async def _run_subtask(should_run: bool, subtask: Subtask, token: CancellationToken) -> SubtaskResult:
    if not should_run:
        return SubtaskResult.skipped()
    try:
        result = await subtask()
    except Exception as exc:
        classified = classify(exc)
        if classified.is_risk_control:
            token.cancel(CancelReason.RISK_CONTROL)
        if classified.is_benign:
            return SubtaskResult.ignored(exc)
        return SubtaskResult.failed(exc)
    return result if result is not None else SubtaskResult.succeeded()


def _raise_if_interrupted(token: CancellationToken) -> None:
    if token.reason is CancelReason.RISK_CONTROL:
        raise DownloadAbortError()
    token.raise_if_cancelled()


def _report(
    ctx: SyncContext,
    label: str,
    video_id: str,
    results: Sequence[SubtaskResult],
    names: Sequence[str],
) -> None:
    for name, result in zip(names, results):
        if result.error is None or result.outcome is Outcome.SKIPPED:
            continue
        classified = ctx.analyzer.categorize_and_record(video_id, result.error)
        log_classified(logger, f"{label} {name}", classified)


async def download_video_pages(
    ctx: SyncContext,
    source: VideoSource,
    item: Item,
    pages: List[Page],
    semaphore: asyncio.Semaphore,
    fetch_avatar: bool,
    token: CancellationToken,
) -> Tuple[Item, List[Page]]:
    """Run the five item subtasks, the last of which downloads the pages.

    Returns the item and its pages with updated statuses; nothing is
    persisted here.
    """
    async with token.acquire(semaphore):
        status = Status.from_int(item.download_status)
        run = status.should_run()
        item_dir = await resolve_item_path(ctx, source, item, token)
        show_dir = _show_dir(item, item_dir)
        upper_dir = _upper_dir(ctx, item)
        config = ctx.config
        # single-page items keep their poster and sidecar at page level
        show_level = not item.single_page or item.is_episodic

        async def cover() -> Optional[SubtaskResult]:
            if not item.cover:
                return SubtaskResult.skipped()
            await ctx.fetcher.fetch([item.cover], show_dir / "poster.jpg", token)
            return None

        async def sidecar() -> None:
            await ctx.sidecar.write_item(item, show_dir / "tvshow.nfo")

        async def avatar() -> Optional[SubtaskResult]:
            if not item.upper_face:
                return SubtaskResult.skipped()
            await ctx.fetcher.fetch([item.upper_face], upper_dir / "folder.jpg", token)
            return None

        async def person() -> None:
            await ctx.sidecar.write_person(item, upper_dir / "person.nfo")

        async def dispatch() -> SubtaskResult:
            return await dispatch_download_pages(ctx, item, pages, item_dir, token)

        results = await asyncio.gather(
            _run_subtask(run[ITEM_COVER] and show_level and not config.skip_cover, cover, token),
            _run_subtask(run[ITEM_SIDECAR] and show_level and not config.skip_sidecar, sidecar, token),
            _run_subtask(run[ITEM_AVATAR] and fetch_avatar and upper_dir is not None, avatar, token),
            _run_subtask(
                run[ITEM_AVATAR_SIDECAR] and fetch_avatar and upper_dir is not None and not config.skip_sidecar,
                person,
                token,
            ),
            _run_subtask(run[ITEM_PAGES], dispatch, token),
        )
        _raise_if_interrupted(token)
        _report(ctx, f"Item {item.bvid}", item.bvid, results, ITEM_SUBTASK_NAMES)
        status.update(results)
        item.download_status = status.to_int()
        item.path = str(item_dir)
        return item, pages


async def dispatch_download_pages(
    ctx: SyncContext,
    item: Item,
    pages: List[Page],
    item_dir: Path,
    token: CancellationToken,
) -> SubtaskResult:
    """Download every page that has work left; report the lowest page value."""
    semaphore = asyncio.Semaphore(ctx.config.page_concurrency)
    todo = [page for page in pages if Status.from_int(page.download_status).any_should_run()]
    outcomes = await asyncio.gather(
        *(download_page(ctx, item, page, item_dir, semaphore, token) for page in todo),
        return_exceptions=True,
    )
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    return SubtaskResult.fixed(min_page_status(page.download_status for page in pages))


async def download_page(
    ctx: SyncContext,
    item: Item,
    page: Page,
    item_dir: Path,
    semaphore: asyncio.Semaphore,
    token: CancellationToken,
) -> Page:
    async with token.acquire(semaphore):
        status = Status.from_int(page.download_status)
        run = status.should_run()
        base = page_base(ctx, item, page, item_dir)
        media_path = _with_suffix(base, ".mp4")
        config = ctx.config

        async def cover() -> Optional[SubtaskResult]:
            url = page.image or item.cover
            if not url:
                return SubtaskResult.skipped()
            await ctx.fetcher.fetch([url], _with_suffix(base, "-thumb.jpg"), token)
            return None

        async def media() -> None:
            await fetch_page_media(ctx, item, page, media_path, token)

        async def sidecar() -> None:
            await ctx.sidecar.write_page(item, page, _with_suffix(base, ".nfo"))

        async def comments() -> Optional[SubtaskResult]:
            overlay = await token.run(ctx.client.fetch_comments(item, page, token=token))
            if overlay is None:
                return SubtaskResult.skipped()
            await asyncio.to_thread(_write_bytes, _with_suffix(base, f".danmaku.{overlay.ext}"), overlay.body)
            return None

        async def subtitles() -> Optional[SubtaskResult]:
            tracks = await token.run(ctx.client.fetch_subtitles(item, page, token=token))
            if not tracks:
                return SubtaskResult.skipped()
            for track in tracks:
                destination = _with_suffix(base, f".{track.lang}.{track.ext}")
                await asyncio.to_thread(_write_bytes, destination, track.body.encode("utf-8"))
            return None

        results = await asyncio.gather(
            _run_subtask(run[PAGE_COVER] and not config.skip_cover, cover, token),
            _run_subtask(run[PAGE_MEDIA], media, token),
            _run_subtask(run[PAGE_SIDECAR] and not config.skip_sidecar, sidecar, token),
            _run_subtask(run[PAGE_COMMENTS] and not config.skip_comments, comments, token),
            _run_subtask(run[PAGE_SUBTITLES] and not config.skip_subtitles, subtitles, token),
        )
        _raise_if_interrupted(token)
        _report(ctx, f"Page {item.bvid} P{page.pid}", item.bvid, results, PAGE_SUBTASK_NAMES)
        status.update(results)
        page.download_status = status.to_int()
        page.path = str(media_path)
        return page


def _write_bytes(destination: Path, body: bytes) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(body)


def select_best_streams(streams: Sequence[MediaStream]) -> StreamChoice:
    """Pick the best video and audio pair, or a mixed stream if it is better."""
    def quality(stream: MediaStream) -> Tuple[int, float]:
        return stream.height, stream.bitrate

    videos = [s for s in streams if s.kind is StreamKind.VIDEO]
    audios = [s for s in streams if s.kind is StreamKind.AUDIO]
    mixed = [s for s in streams if s.kind is StreamKind.MIXED]
    best_video = max(videos, key=quality, default=None)
    best_audio = max(audios, key=lambda s: s.bitrate, default=None)
    best_mixed = max(mixed, key=quality, default=None)

    if best_mixed is not None and (best_video is None or best_mixed.height >= best_video.height):
        return StreamChoice(None, None, best_mixed)
    return StreamChoice(best_video, best_audio, None)


async def fetch_page_media(
    ctx: SyncContext, item: Item, page: Page, destination: Path, token: CancellationToken
) -> None:
    streams = await token.run(ctx.client.fetch_streams(item, page, token=token))
    choice = select_best_streams(streams)
    if choice.mixed is not None:
        await ctx.fetcher.fetch(choice.mixed.urls, destination, token, choice.mixed.http_headers)
        return
    if choice.video is None:
        raise StreamUnavailableError(f"no playable video stream for {item.bvid} P{page.pid}")
    if choice.audio is None:
        await ctx.fetcher.fetch(choice.video.urls, destination, token, choice.video.http_headers)
        return

    video_tmp = _with_suffix(destination, ".video.tmp")
    audio_tmp = _with_suffix(destination, ".audio.tmp")
    try:
        await ctx.fetcher.fetch(choice.video.urls, video_tmp, token, choice.video.http_headers)
        await ctx.fetcher.fetch(choice.audio.urls, audio_tmp, token, choice.audio.http_headers)
        await ctx.fetcher.merge(video_tmp, audio_tmp, destination, token)
    finally:
        for leftover in (video_tmp, audio_tmp):
            if leftover.exists():
                leftover.unlink()
