"""Video source capabilities and sources-file parsing."""

import logging
import re
import shlex
import time
import urllib.error
import urllib.request
from datetime import datetime
from typing import List, Optional, Tuple

from .errors import RemoteSourceError
from .models import SourceKind, VideoSource, normalize_url

logger = logging.getLogger(__name__)

PREFIX_MAP = {
    "favorite": SourceKind.FAVORITE,
    "fav": SourceKind.FAVORITE,
    "collection": SourceKind.COLLECTION,
    "season": SourceKind.COLLECTION,
    "submission": SourceKind.SUBMISSION,
    "upper": SourceKind.SUBMISSION,
    "user": SourceKind.SUBMISSION,
    "watch_later": SourceKind.WATCH_LATER,
    "watchlater": SourceKind.WATCH_LATER,
    "series": SourceKind.SERIES,
    "bangumi": SourceKind.SERIES,
}

# Sources that re-list everything on each scan instead of stopping at the watermark
FULL_LISTING_KINDS = frozenset({SourceKind.WATCH_LATER, SourceKind.SERIES})


def should_take(source: VideoSource, release_time: datetime, latest_row_at: datetime) -> bool:
    """Whether a listed item is still newer than what the source already holds."""
    if source.kind in FULL_LISTING_KINDS:
        return True
    return release_time > latest_row_at


def relation_id(source: VideoSource) -> int:
    """Owner id stamped on the items a source inserts."""
    if source.id is None:
        raise ValueError(f"source {source.label} has not been saved")
    return source.id


def video_filter(source: VideoSource) -> Tuple[str, tuple]:
    """SQL predicate selecting the items owned by *source*."""
    return "video.source_id = ?", (relation_id(source),)


def is_attribution_source(source: VideoSource) -> bool:
    return source.kind is SourceKind.SUBMISSION


def listing_url(source: VideoSource) -> str:
    """URL of the remote listing, derived from the remote id when not given."""
    if source.url:
        return normalize_url(source.url)

    remote_id = source.remote_id
    if source.kind is SourceKind.FAVORITE:
        return f"https://www.bilibili.com/medialist/detail/ml{remote_id}"
    if source.kind is SourceKind.SUBMISSION:
        return f"https://space.bilibili.com/{remote_id}/video"
    if source.kind is SourceKind.WATCH_LATER:
        return "https://www.bilibili.com/watchlater/#/list"
    if source.kind is SourceKind.SERIES:
        return f"https://www.bilibili.com/bangumi/play/ss{remote_id}"
    if source.kind is SourceKind.COLLECTION:
        # collections are addressed as "<owner id>:<collection id>"
        owner, _, sid = remote_id.partition(":")
        if not sid:
            raise ValueError(f"collection id must look like '<owner>:<id>', got {remote_id!r}")
        return f"https://space.bilibili.com/{owner}/channel/collectiondetail?sid={sid}"
    raise ValueError(f"unsupported source kind: {source.kind}")


def parse_source_line(line: str) -> Optional[VideoSource]:
    """Parse a sources-file line into an unsaved VideoSource.

    Format: ``<kind>:<remote id> <destination path> [url] [name=<name>]``.
    Quote paths that contain spaces.
    """
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None

    comment_match = re.search(r"\s#", stripped)
    if comment_match:
        stripped = stripped[: comment_match.start()].rstrip()
        if not stripped:
            return None

    try:
        tokens = shlex.split(stripped)
    except ValueError as exc:
        raise ValueError(f"unbalanced quotes: {exc}") from exc

    head, rest = tokens[0], tokens[1:]
    if ":" not in head:
        raise ValueError(f"missing source kind prefix in {head!r}")
    prefix, remote_id = head.split(":", 1)
    kind = PREFIX_MAP.get(prefix.strip().lower())
    if kind is None:
        raise ValueError(f"unknown source kind {prefix!r}")
    remote_id = remote_id.strip()
    if not remote_id and kind is not SourceKind.WATCH_LATER:
        raise ValueError("missing remote id after prefix")

    path: Optional[str] = None
    url = ""
    name = ""
    for token in rest:
        if token.startswith("name="):
            name = token[len("name="):]
        elif "://" in token:
            url = normalize_url(token)
        elif path is None:
            path = token
        else:
            raise ValueError(f"unexpected token {token!r}")
    if not path:
        raise ValueError("missing destination path")

    remote_id = remote_id or "0"
    return VideoSource(
        id=None,
        kind=kind,
        remote_id=remote_id,
        name=name or f"{kind.value}-{remote_id}",
        url=url,
        path=path,
    )


def _parse_lines(lines, origin: str) -> List[VideoSource]:
    sources: List[VideoSource] = []
    for idx, line in enumerate(lines, start=1):
        try:
            parsed = parse_source_line(line)
        except ValueError as exc:
            raise RemoteSourceError(f"{origin}:{idx}: {exc}") from exc
        if parsed:
            sources.append(parsed)
    return sources


def load_sources_from_file(path: str) -> List[VideoSource]:
    """Load sources from a local file."""
    with open(path, "r", encoding="utf-8") as f:
        sources = _parse_lines(f, path)
    logger.info("Loaded %d sources from %s", len(sources), path)
    return sources


def load_sources_from_url(url: str) -> List[VideoSource]:
    """Load sources from a remote URL with retry logic."""
    logger.info("Fetching source list from %s ...", url)

    max_retries = 4
    base_delay = 2.0

    for attempt in range(max_retries):
        try:
            with urllib.request.urlopen(url, timeout=30) as response:
                data = response.read().decode("utf-8")
            break
        except (urllib.error.HTTPError, urllib.error.URLError) as exc:
            if attempt < max_retries - 1:
                delay = base_delay * (2 ** attempt)  # 2s, 4s, 8s
                logger.warning(
                    "Failed to fetch (attempt %d/%d): %s. Retrying in %ss...",
                    attempt + 1, max_retries, exc, delay,
                )
                time.sleep(delay)
            else:
                raise RemoteSourceError(
                    f"Failed to fetch source list from {url} after {max_retries} attempts: {exc}"
                ) from exc

    sources = _parse_lines(data.splitlines(), url)
    logger.info("Loaded %d sources from remote list", len(sources))
    return sources
