"""Shared fixtures: an on-disk store and in-memory fakes for the remote side."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from media_sync.config import SyncConfig
from media_sync.context import SyncContext
from media_sync.errors import RiskControlError
from media_sync.models import (
    CommentsOverlay,
    ItemDetail,
    ItemSummary,
    ListingPage,
    MediaStream,
    PageInfo,
    SeriesInfo,
    SourceKind,
    StreamKind,
    VideoSource,
)
from media_sync.store import Store

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_summary(index: int, **overrides) -> ItemSummary:
    values = {
        "bvid": f"BV{index:04d}",
        "name": f"Video {index}",
        "url": f"https://www.bilibili.com/video/BV{index:04d}",
        "release_time": BASE_TIME + timedelta(hours=index),
        "upper_id": "100",
        "upper_name": "Uploader",
    }
    values.update(overrides)
    return ItemSummary(**values)


class FakeClient:
    """RemoteClient double driven by plain dictionaries."""

    def __init__(self) -> None:
        self.listing: List[ItemSummary] = []
        self.page_size = 10
        self.details: Dict[str, ItemDetail] = {}
        self.detail_errors: Dict[str, BaseException] = {}
        self.series: Dict[str, SeriesInfo] = {}
        self.streams: List[MediaStream] = [
            MediaStream(StreamKind.MIXED, ["https://cdn.example/media.mp4"], height=720)
        ]
        self.stream_errors: Dict[str, BaseException] = {}
        self.list_error_after: Optional[int] = None
        self.calls: List[str] = []

    async def list_page(self, source, cursor, *, token):
        start = cursor or 0
        if self.list_error_after is not None and start >= self.list_error_after:
            raise ConnectionError("connection reset by peer")
        chunk = self.listing[start:start + self.page_size]
        next_cursor = start + self.page_size if start + self.page_size < len(self.listing) else None
        return ListingPage(chunk, next_cursor)

    async def fetch_detail(self, item, *, token):
        self.calls.append(f"detail:{item.bvid}")
        if item.bvid in self.detail_errors:
            raise self.detail_errors[item.bvid]
        if item.bvid in self.details:
            return self.details[item.bvid]
        return ItemDetail(
            name=item.name,
            cover="https://cdn.example/cover.jpg",
            pages=[PageInfo(pid=1, cid=1000, name=item.name, duration=60)],
            upper_id=item.upper_id,
            upper_name=item.upper_name,
            upper_face="https://cdn.example/face.jpg",
        )

    async def fetch_series(self, series_id, *, token):
        self.calls.append(f"series:{series_id}")
        return self.series[series_id]

    async def fetch_streams(self, item, page, *, token):
        self.calls.append(f"streams:{item.bvid}:{page.pid}")
        if item.bvid in self.stream_errors:
            raise self.stream_errors[item.bvid]
        return list(self.streams)

    async def fetch_comments(self, item, page, *, token):
        return CommentsOverlay(b"<i></i>")

    async def fetch_subtitles(self, item, page, *, token):
        return []


class FakeFetcher:
    """Fetcher double that writes the URL into the destination file."""

    def __init__(self) -> None:
        self.fetched: List[Path] = []
        self.merged: List[Path] = []
        self.errors: Dict[str, BaseException] = {}

    async def fetch(self, urls, destination, token, headers=None):
        token.raise_if_cancelled()
        for url in urls:
            if url in self.errors:
                raise self.errors[url]
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(urls[0], encoding="utf-8")
        self.fetched.append(destination)
        return len(urls[0])

    async def merge(self, video_path, audio_path, output, token):
        Path(output).write_text("merged", encoding="utf-8")
        self.merged.append(Path(output))


@pytest.fixture
def store(tmp_path: Path) -> Store:
    db = Store(tmp_path / "sync.db")
    db.initialize()
    return db


@pytest.fixture
def make_source(store: Store, tmp_path: Path):
    def _make(kind: SourceKind = SourceKind.FAVORITE, remote_id: str = "1", **overrides) -> VideoSource:
        values = {
            "id": None,
            "kind": kind,
            "remote_id": remote_id,
            "name": f"{kind.value} {remote_id}",
            "url": "",
            "path": str(tmp_path / "library" / f"{kind.value}-{remote_id}"),
        }
        values.update(overrides)
        return store.add_source(VideoSource(**values))

    return _make


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def ctx(store: Store, client: FakeClient, fetcher: FakeFetcher, tmp_path: Path) -> SyncContext:
    config = SyncConfig(database=str(tmp_path / "sync.db"), upper_path=str(tmp_path / "uppers"))
    context = SyncContext.build(config, store, client)
    context.fetcher = fetcher
    return context


def risk_control_error() -> RiskControlError:
    return RiskControlError(-352, "request blocked by risk control")
