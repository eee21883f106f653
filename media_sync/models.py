"""Data models, enums, and constants for the media sync engine."""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set

# Constants
DEFAULT_VIDEO_CONCURRENCY = 3
DEFAULT_PAGE_CONCURRENCY = 2
DEFAULT_VIDEO_TEMPLATE = "%(title)s"
DEFAULT_PAGE_TEMPLATE = "%(ptitle)s"
INSERT_BATCH_SIZE = 10
LISTING_PAGE_SIZE = 20

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Fallbacks for episodes whose part id was not resolvable
UNKNOWN_PART_ID = -1
DEFAULT_EPISODE_DURATION = 1440

MEDIA_EXTENSIONS = (".mp4", ".mkv", ".flv", ".webm", ".m4a", ".mov")

# User-Agent rotation pool to appear as different browsers
USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0',
]

# Environment variable names
ENV_DATABASE = "MEDIA_SYNC_DATABASE"
ENV_COOKIES_FROM_BROWSER = "MEDIA_SYNC_COOKIES_FROM_BROWSER"
ENV_COOKIES_FILE = "MEDIA_SYNC_COOKIES_FILE"
ENV_PROXY = "MEDIA_SYNC_PROXY"


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_time(value: datetime) -> str:
    """Render *value* in the storage time format (UTC)."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIME_FORMAT)


def parse_time(value: Optional[str]) -> datetime:
    """Parse a stored timestamp; missing values map to the epoch."""
    if not value:
        return EPOCH
    return datetime.strptime(value, TIME_FORMAT).replace(tzinfo=timezone.utc)


def from_timestamp(value: Optional[float]) -> datetime:
    if value is None:
        return EPOCH
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class SourceKind(Enum):
    """Kind of remote listing mirrored by a video source."""
    FAVORITE = "favorite"
    COLLECTION = "collection"
    SUBMISSION = "submission"
    WATCH_LATER = "watch_later"
    SERIES = "series"


def normalize_url(url: str) -> str:
    """Normalize and validate a URL."""
    cleaned = url.strip()
    if not cleaned:
        raise ValueError("missing URL")

    if not re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", cleaned):
        cleaned = "https://" + cleaned.lstrip("/")

    return cleaned.rstrip("/")


@dataclass
class VideoSource:
    """A remote listing mirrored into a local folder."""
    id: Optional[int]
    kind: SourceKind
    remote_id: str
    name: str
    url: str
    path: str
    enabled: bool = True
    scan_deleted: bool = False
    latest_row_at: datetime = EPOCH
    cached_episodes: Optional[List[dict]] = None

    @property
    def label(self) -> str:
        return f"{self.kind.value}「{self.name}」"


@dataclass
class Item:
    """One unit of content (a "video") owned by a single source."""
    id: Optional[int]
    source_id: int
    bvid: str
    name: str
    url: str = ""
    intro: str = ""
    cover: str = ""
    upper_id: str = ""
    upper_name: str = ""
    upper_face: str = ""
    path: str = ""
    download_status: int = 0
    single_page: Optional[bool] = None
    valid: bool = True
    deleted: bool = False
    tags: List[str] = field(default_factory=list)
    staff: List["Collaborator"] = field(default_factory=list)
    is_episodic: bool = False
    series_id: Optional[str] = None
    ep_id: str = ""
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    ctime: datetime = EPOCH
    pubtime: datetime = EPOCH
    favtime: datetime = EPOCH


@dataclass
class Page:
    """One downloadable part of an item."""
    id: Optional[int]
    video_id: int
    pid: int
    cid: int
    name: str
    duration: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    image: str = ""
    path: str = ""
    download_status: int = 0


@dataclass(frozen=True)
class ItemSummary:
    """A listing entry as produced by the remote listing."""
    bvid: str
    name: str
    url: str
    release_time: datetime
    cover: str = ""
    upper_id: str = ""
    upper_name: str = ""
    ctime: Optional[datetime] = None
    pubtime: Optional[datetime] = None
    favtime: Optional[datetime] = None
    is_episodic: bool = False
    series_id: Optional[str] = None
    ep_id: str = ""
    season_number: Optional[int] = None
    episode_number: Optional[int] = None


@dataclass
class ListingPage:
    items: List[ItemSummary]
    next_cursor: Optional[int] = None


@dataclass(frozen=True)
class Collaborator:
    mid: str
    name: str
    face: str = ""
    title: str = ""


@dataclass(frozen=True)
class PageInfo:
    pid: int
    cid: int
    name: str
    duration: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    image: str = ""


@dataclass
class ItemDetail:
    """Fields that the listing does not carry."""
    name: str
    intro: str = ""
    cover: str = ""
    tags: List[str] = field(default_factory=list)
    pages: List[PageInfo] = field(default_factory=list)
    staff: List[Collaborator] = field(default_factory=list)
    upper_id: str = ""
    upper_name: str = ""
    upper_face: str = ""
    pubtime: Optional[datetime] = None
    paid_locked: bool = False


@dataclass(frozen=True)
class EpisodeInfo:
    ep_id: str
    cid: int
    title: str = ""
    duration: int = DEFAULT_EPISODE_DURATION
    episode_number: Optional[int] = None


@dataclass
class SeriesInfo:
    series_id: str
    title: str
    episodes: List[EpisodeInfo] = field(default_factory=list)


class StreamKind(Enum):
    MIXED = "mixed"
    VIDEO = "video"
    AUDIO = "audio"


@dataclass(frozen=True)
class MediaStream:
    """One encoded stream with the quality metadata used for selection."""
    kind: StreamKind
    urls: List[str]
    height: int = 0
    bitrate: float = 0.0
    codec: str = ""
    ext: str = "mp4"
    http_headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Subtitle:
    lang: str
    body: str
    ext: str = "srt"


@dataclass(frozen=True)
class CommentsOverlay:
    body: bytes
    ext: str = "xml"


@dataclass
class ErrorPattern:
    """Tracks a specific error pattern and its occurrences."""
    error_type: str
    count: int = 0
    video_ids: List[str] = field(default_factory=list)
    sample_messages: List[str] = field(default_factory=list)
    first_seen: Optional[float] = None
    last_seen: Optional[float] = None

    def record(self, video_id: Optional[str], message: str) -> None:
        """Record an occurrence of this error pattern."""
        self.count += 1
        timestamp = time.time()

        if self.first_seen is None:
            self.first_seen = timestamp
        self.last_seen = timestamp

        if video_id and video_id not in self.video_ids:
            self.video_ids.append(video_id)

        # Keep only the first 5 sample messages to avoid memory bloat
        if len(self.sample_messages) < 5 and message not in self.sample_messages:
            self.sample_messages.append(message)


@dataclass
class ScanCache:
    """State shared by the phases of one scan invocation."""
    series_titles: Dict[str, str] = field(default_factory=dict)
    series_info: Dict[str, SeriesInfo] = field(default_factory=dict)
    downloaded_uppers: Set[str] = field(default_factory=set)


@dataclass
class SourceReport:
    """Per-source counters reported at the end of a scan."""
    label: str
    new_items: int = 0
    enriched: int = 0
    downloaded: int = 0
    failed: int = 0
    retried: int = 0
    error: Optional[str] = None
