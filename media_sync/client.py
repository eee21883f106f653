"""Remote listing/detail client contract and its yt-dlp implementation."""

import asyncio
import logging
import re
import urllib.parse
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional, Protocol

import yt_dlp
from yt_dlp.utils import DownloadError, unified_timestamp

from .cancellation import CancellationToken
from .errors import PAID_LOCK_CODE, RemoteError, RiskControlError, classify
from .logger import YtDlpLogger
from .models import (
    DEFAULT_EPISODE_DURATION,
    LISTING_PAGE_SIZE,
    Collaborator,
    CommentsOverlay,
    EpisodeInfo,
    Item,
    ItemDetail,
    ItemSummary,
    ListingPage,
    MediaStream,
    Page,
    PageInfo,
    SeriesInfo,
    SourceKind,
    StreamKind,
    Subtitle,
    VideoSource,
    from_timestamp,
)
from .sources import listing_url
from .ytdlp_options import build_ydl_options

logger = logging.getLogger(__name__)

PAID_FRAGMENTS = (
    "supporter-only",
    "charging",
    "premium members only",
    "only available for premium",
    f"code {PAID_LOCK_CODE}",
)

COMMENTS_LANG = "danmaku"
_CODE_PATTERN = re.compile(r"code[\s:=]*(-?\d{2,6})")
_PAGE_INFO_CACHE_SIZE = 32


class RemoteClient(Protocol):
    """What the sync engine needs from the remote service."""

    async def list_page(
        self, source: VideoSource, cursor: Optional[int], *, token: CancellationToken
    ) -> ListingPage: ...

    async def fetch_detail(self, item: Item, *, token: CancellationToken) -> ItemDetail: ...

    async def fetch_series(self, series_id: str, *, token: CancellationToken) -> SeriesInfo: ...

    async def fetch_streams(
        self, item: Item, page: Page, *, token: CancellationToken
    ) -> List[MediaStream]: ...

    async def fetch_comments(
        self, item: Item, page: Page, *, token: CancellationToken
    ) -> Optional[CommentsOverlay]: ...

    async def fetch_subtitles(
        self, item: Item, page: Page, *, token: CancellationToken
    ) -> List[Subtitle]: ...


def translate_error(exc: DownloadError) -> Exception:
    """Turn a yt-dlp error into a RemoteError when it carries a service code."""
    text = str(exc)
    match = _CODE_PATTERN.search(text.lower())
    if match:
        code = int(match.group(1))
        error = RemoteError(code, text)
        if classify(error).is_risk_control:
            return RiskControlError(code, text)
        return error
    if classify(exc).is_risk_control:
        return RiskControlError(-412, text)
    return exc


def _release_time(entry: dict) -> Optional[datetime]:
    for key in ("timestamp", "release_timestamp", "modified_timestamp"):
        if entry.get(key) is not None:
            return from_timestamp(entry[key])
    if entry.get("upload_date"):
        stamp = unified_timestamp(entry["upload_date"])
        if stamp is not None:
            return from_timestamp(stamp)
    return None


def _digits(value: str) -> int:
    found = re.findall(r"\d+", value or "")
    return int(found[-1]) if found else 0


def page_url(item: Item, page: Page) -> str:
    """URL of a single part of a multi-part item."""
    base = item.url or f"https://www.bilibili.com/video/{item.bvid}"
    if item.single_page or item.is_episodic:
        return base
    parts = urllib.parse.urlsplit(base)
    query = dict(urllib.parse.parse_qsl(parts.query))
    query["p"] = str(page.pid)
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


class YtDlpClient:
    """RemoteClient backed by yt-dlp extractors, run in worker threads."""

    def __init__(self, config, page_size: int = LISTING_PAGE_SIZE) -> None:
        self.config = config
        self.page_size = page_size
        self.ytdl_logger = YtDlpLogger()
        self._page_info: "OrderedDict[str, dict]" = OrderedDict()
        self._page_locks: Dict[str, asyncio.Lock] = {}

    def _extract(self, url: str, **overrides) -> dict:
        opts = build_ydl_options(self.config, self.ytdl_logger, **overrides)
        self.ytdl_logger.set_context(url)
        with yt_dlp.YoutubeDL(opts) as ydl:
            try:
                info = ydl.extract_info(url, download=False)
            except DownloadError as exc:
                raise translate_error(exc) from exc
            return ydl.sanitize_info(info)

    def _read_url(self, url: str) -> bytes:
        opts = build_ydl_options(self.config, self.ytdl_logger)
        with yt_dlp.YoutubeDL(opts) as ydl:
            with ydl.urlopen(url) as response:
                return response.read()

    async def _call(self, token: CancellationToken, func, *args, **kwargs):
        backoff = self.ytdl_logger.check_rate_limit_backoff()
        if backoff:
            logger.warning("Rate limited by remote service, pausing %ss before next request", backoff)
            await token.sleep(backoff)
            self.ytdl_logger.reset_rate_limit()
        return await token.run(asyncio.to_thread(func, *args, **kwargs))

    async def list_page(
        self, source: VideoSource, cursor: Optional[int], *, token: CancellationToken
    ) -> ListingPage:
        start = cursor or 1
        end = start + self.page_size - 1
        info = await self._call(
            token,
            self._extract,
            listing_url(source),
            extract_flat="in_playlist",
            playlist_items=f"{start}-{end}",
        )
        entries = [entry for entry in info.get("entries") or [] if entry]
        summaries = []
        for entry in entries:
            summary = await self._summary_from_entry(source, entry, token)
            if summary is not None:
                summaries.append(summary)
        next_cursor = end + 1 if len(entries) >= self.page_size else None
        return ListingPage(items=summaries, next_cursor=next_cursor)

    async def _summary_from_entry(
        self, source: VideoSource, entry: dict, token: CancellationToken
    ) -> Optional[ItemSummary]:
        url = entry.get("url") or entry.get("webpage_url") or ""
        release = _release_time(entry)
        if release is None and url:
            # flat entries of some listings carry no timestamp; resolve them
            entry = await self._call(token, self._extract, url)
            release = _release_time(entry)
        if release is None:
            logger.debug("Skipping listing entry without a release time: %s", entry.get("id"))
            return None

        episodic = source.kind is SourceKind.SERIES
        entry_id = str(entry.get("id") or "")
        return ItemSummary(
            bvid=re.sub(r"_p\d+$", "", entry_id),
            name=entry.get("title") or entry_id,
            url=url,
            release_time=release,
            cover=entry.get("thumbnail") or "",
            upper_id=str(entry.get("uploader_id") or entry.get("channel_id") or ""),
            upper_name=entry.get("uploader") or entry.get("channel") or "",
            is_episodic=episodic,
            series_id=source.remote_id if episodic else None,
            ep_id=entry_id if episodic else "",
            season_number=entry.get("season_number"),
            episode_number=entry.get("episode_number"),
        )

    async def fetch_detail(self, item: Item, *, token: CancellationToken) -> ItemDetail:
        url = item.url or f"https://www.bilibili.com/video/{item.bvid}"
        try:
            info = await self._call(token, self._extract, url, extract_flat="in_playlist", noplaylist=False)
        except (RemoteError, DownloadError) as exc:
            if isinstance(exc, RemoteError) and exc.code == PAID_LOCK_CODE:
                return ItemDetail(name=item.name, paid_locked=True)
            if any(fragment in str(exc).lower() for fragment in PAID_FRAGMENTS):
                return ItemDetail(name=item.name, paid_locked=True)
            raise

        if info.get("_type") == "playlist":
            pages = [
                PageInfo(
                    pid=idx,
                    cid=int(entry.get("cid") or _digits(str(entry.get("id")))),
                    name=entry.get("title") or f"P{idx}",
                    duration=int(entry.get("duration") or 0),
                )
                for idx, entry in enumerate(info.get("entries") or [], start=1)
                if entry
            ]
        else:
            pages = [
                PageInfo(
                    pid=1,
                    cid=int(info.get("cid") or _digits(str(info.get("id")))),
                    name=info.get("title") or item.name,
                    duration=int(info.get("duration") or 0),
                    width=info.get("width"),
                    height=info.get("height"),
                    image=info.get("thumbnail") or "",
                )
            ]

        staff = [
            Collaborator(
                mid=str(member.get("mid")),
                name=member.get("name") or "",
                face=member.get("face") or "",
                title=member.get("title") or "",
            )
            for member in info.get("staff") or []
            if member.get("mid") is not None
        ]
        pubtime = _release_time(info)
        return ItemDetail(
            name=info.get("title") or item.name,
            intro=info.get("description") or "",
            cover=info.get("thumbnail") or item.cover,
            tags=list(info.get("tags") or []),
            pages=pages,
            staff=staff,
            upper_id=str(info.get("uploader_id") or ""),
            upper_name=info.get("uploader") or "",
            upper_face=info.get("uploader_avatar") or "",
            pubtime=pubtime,
        )

    async def fetch_series(self, series_id: str, *, token: CancellationToken) -> SeriesInfo:
        url = f"https://www.bilibili.com/bangumi/play/ss{series_id}"
        info = await self._call(token, self._extract, url, extract_flat="in_playlist")
        episodes = []
        for idx, entry in enumerate(info.get("entries") or [], start=1):
            if not entry:
                continue
            ep_id = str(entry.get("id") or "")
            episodes.append(
                EpisodeInfo(
                    ep_id=ep_id,
                    cid=int(entry.get("cid") or _digits(ep_id)),
                    title=entry.get("title") or "",
                    duration=int(entry.get("duration") or 0) or DEFAULT_EPISODE_DURATION,
                    episode_number=entry.get("episode_number") or idx,
                )
            )
        return SeriesInfo(series_id=series_id, title=info.get("title") or series_id, episodes=episodes)

    async def _page_info_for(self, item: Item, page: Page, token: CancellationToken) -> dict:
        url = page_url(item, page)
        # media, comments and subtitles of a page ask at the same time; extract once
        lock = self._page_locks.setdefault(url, asyncio.Lock())
        try:
            async with lock:
                cached = self._page_info.get(url)
                if cached is not None:
                    self._page_info.move_to_end(url)
                    return cached
                info = await self._call(token, self._extract, url, noplaylist=True)
                self._page_info[url] = info
                while len(self._page_info) > _PAGE_INFO_CACHE_SIZE:
                    self._page_info.popitem(last=False)
                return info
        finally:
            if not lock.locked() and self._page_locks.get(url) is lock:
                del self._page_locks[url]

    async def fetch_streams(
        self, item: Item, page: Page, *, token: CancellationToken
    ) -> List[MediaStream]:
        info = await self._page_info_for(item, page, token)
        if self.config.format:
            # yt-dlp already applied the user's selector
            formats = info.get("requested_formats") or ([info] if info.get("url") else [])
        else:
            formats = info.get("formats") or ([info] if info.get("url") else [])
        streams = []
        for fmt in formats:
            url = fmt.get("url")
            if not url or fmt.get("protocol", "https") not in ("http", "https"):
                continue
            vcodec = fmt.get("vcodec") or "none"
            acodec = fmt.get("acodec") or "none"
            if vcodec != "none" and acodec != "none":
                kind = StreamKind.MIXED
            elif vcodec != "none":
                kind = StreamKind.VIDEO
            elif acodec != "none":
                kind = StreamKind.AUDIO
            else:
                continue
            urls = [url] + [
                backup for backup in (fmt.get("backup_url"), fmt.get("backupUrl")) if isinstance(backup, str)
            ]
            streams.append(
                MediaStream(
                    kind=kind,
                    urls=urls,
                    height=int(fmt.get("height") or 0),
                    bitrate=float(fmt.get("tbr") or fmt.get("abr") or 0.0),
                    codec=vcodec if kind is not StreamKind.AUDIO else acodec,
                    ext=fmt.get("ext") or "mp4",
                    http_headers=dict(fmt.get("http_headers") or {}),
                )
            )
        return streams

    async def fetch_comments(
        self, item: Item, page: Page, *, token: CancellationToken
    ) -> Optional[CommentsOverlay]:
        info = await self._page_info_for(item, page, token)
        tracks = (info.get("subtitles") or {}).get(COMMENTS_LANG) or []
        for track in tracks:
            if track.get("url"):
                body = await self._call(token, self._read_url, track["url"])
                return CommentsOverlay(body=body, ext=track.get("ext") or "xml")
        return None

    async def fetch_subtitles(
        self, item: Item, page: Page, *, token: CancellationToken
    ) -> List[Subtitle]:
        info = await self._page_info_for(item, page, token)
        subtitles = []
        for lang, tracks in (info.get("subtitles") or {}).items():
            if lang == COMMENTS_LANG:
                continue
            for track in tracks:
                if track.get("url"):
                    body = await self._call(token, self._read_url, track["url"])
                    subtitles.append(
                        Subtitle(lang=lang, body=body.decode("utf-8", "ignore"), ext=track.get("ext") or "srt")
                    )
                    break
        return subtitles
