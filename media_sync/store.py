"""SQLite persistence for sources, items, pages and queued tasks."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .models import (
    Collaborator,
    Item,
    ItemDetail,
    ItemSummary,
    Page,
    PageInfo,
    SourceKind,
    VideoSource,
    format_time,
    parse_time,
    utc_now,
)
from .sources import relation_id, video_filter
from .status import ITEM_PAGES, STATUS_NOT_STARTED, Status

logger = logging.getLogger(__name__)

TASK_DELETE_VIDEO = "delete_video"
TASK_PENDING = "pending"
TASK_DONE = "done"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS video_source (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    remote_id TEXT NOT NULL,
    name TEXT NOT NULL,
    url TEXT NOT NULL DEFAULT '',
    path TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    scan_deleted INTEGER NOT NULL DEFAULT 0,
    latest_row_at TEXT NOT NULL DEFAULT '1970-01-01 00:00:00',
    cached_episodes_json TEXT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (kind, remote_id)
);

CREATE TABLE IF NOT EXISTS video (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL REFERENCES video_source(id) ON DELETE CASCADE,
    bvid TEXT NOT NULL,
    ep_id TEXT NOT NULL DEFAULT '',
    name TEXT NOT NULL,
    url TEXT NOT NULL DEFAULT '',
    intro TEXT NOT NULL DEFAULT '',
    cover TEXT NOT NULL DEFAULT '',
    upper_id TEXT NOT NULL DEFAULT '',
    upper_name TEXT NOT NULL DEFAULT '',
    upper_face TEXT NOT NULL DEFAULT '',
    path TEXT NOT NULL DEFAULT '',
    download_status INTEGER NOT NULL DEFAULT 0,
    single_page INTEGER NULL,
    valid INTEGER NOT NULL DEFAULT 1,
    deleted INTEGER NOT NULL DEFAULT 0,
    tags_json TEXT NULL,
    staff_json TEXT NULL,
    is_episodic INTEGER NOT NULL DEFAULT 0,
    series_id TEXT NULL,
    season_number INTEGER NULL,
    episode_number INTEGER NULL,
    ctime TEXT NOT NULL,
    pubtime TEXT NOT NULL,
    favtime TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (source_id, bvid, ep_id)
);

CREATE INDEX IF NOT EXISTS idx_video_source_state
ON video(source_id, valid, deleted);

CREATE INDEX IF NOT EXISTS idx_video_series
ON video(series_id);

CREATE TABLE IF NOT EXISTS page (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    video_id INTEGER NOT NULL REFERENCES video(id) ON DELETE CASCADE,
    pid INTEGER NOT NULL,
    cid INTEGER NOT NULL,
    name TEXT NOT NULL,
    duration INTEGER NOT NULL DEFAULT 0,
    width INTEGER NULL,
    height INTEGER NULL,
    image TEXT NOT NULL DEFAULT '',
    path TEXT NOT NULL DEFAULT '',
    download_status INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (video_id, pid)
);

CREATE TABLE IF NOT EXISTS task_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    finished_at TEXT NULL
);

CREATE INDEX IF NOT EXISTS idx_task_queue_pending
ON task_queue(task_type, status);
"""

_ITEM_COLUMNS = (
    "id, source_id, bvid, ep_id, name, url, intro, cover, upper_id, upper_name, upper_face, "
    "path, download_status, single_page, valid, deleted, tags_json, staff_json, is_episodic, "
    "series_id, season_number, episode_number, ctime, pubtime, favtime"
)


class Store:
    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)

    # sources

    def add_source(self, source: VideoSource) -> VideoSource:
        """Insert *source*, or refresh name/url/path of an existing one."""
        now = format_time(utc_now())
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO video_source (kind, remote_id, name, url, path, enabled, scan_deleted, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (kind, remote_id) DO UPDATE SET
                    name = excluded.name,
                    url = excluded.url,
                    path = excluded.path
                """,
                (
                    source.kind.value,
                    source.remote_id,
                    source.name,
                    source.url,
                    source.path,
                    int(source.enabled),
                    int(source.scan_deleted),
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM video_source WHERE kind = ? AND remote_id = ?",
                (source.kind.value, source.remote_id),
            ).fetchone()
        return _row_to_source(row)

    def get_source(self, source_id: int) -> Optional[VideoSource]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM video_source WHERE id = ?", (source_id,)).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self, enabled_only: bool = True) -> List[VideoSource]:
        query = "SELECT * FROM video_source"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY id"
        with self.connection() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_source(row) for row in rows]

    def remove_source(self, source_id: int) -> bool:
        """Delete a source together with every item it owns."""
        with self.connection() as conn:
            cursor = conn.execute("DELETE FROM video_source WHERE id = ?", (source_id,))
        return cursor.rowcount > 0

    def update_source_config(
        self,
        source_id: int,
        enabled: Optional[bool] = None,
        path: Optional[str] = None,
        scan_deleted: Optional[bool] = None,
        name: Optional[str] = None,
    ) -> bool:
        assignments = []
        params: List[object] = []
        if enabled is not None:
            assignments.append("enabled = ?")
            params.append(int(enabled))
        if path is not None:
            assignments.append("path = ?")
            params.append(path)
        if scan_deleted is not None:
            assignments.append("scan_deleted = ?")
            params.append(int(scan_deleted))
        if name is not None:
            assignments.append("name = ?")
            params.append(name)
        if not assignments:
            return False
        params.append(source_id)
        with self.connection() as conn:
            cursor = conn.execute(
                f"UPDATE video_source SET {', '.join(assignments)} WHERE id = ?", params
            )
        return cursor.rowcount > 0

    def update_watermark(self, source: VideoSource, latest: datetime) -> bool:
        """Move the watermark forward; older values are ignored."""
        value = format_time(latest)
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE video_source SET latest_row_at = ? WHERE id = ? AND latest_row_at < ?",
                (value, source.id, value),
            )
        if cursor.rowcount:
            source.latest_row_at = parse_time(value)
            return True
        return False

    def save_series_cache(self, source: VideoSource, episodes: List[dict]) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE video_source SET cached_episodes_json = ? WHERE id = ?",
                (json.dumps(episodes, ensure_ascii=False), source.id),
            )
        source.cached_episodes = episodes

    def enabled_submission_ids(self) -> Set[str]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT remote_id FROM video_source WHERE enabled = 1 AND kind = ?",
                (SourceKind.SUBMISSION.value,),
            ).fetchall()
        return {row["remote_id"] for row in rows}

    # items

    def count_items(self, source: VideoSource) -> int:
        predicate, params = video_filter(source)
        with self.connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM video WHERE {predicate}", params).fetchone()
        return int(row[0])

    def insert_items(self, source: VideoSource, summaries: Sequence[ItemSummary]) -> None:
        """Insert listing entries, ignoring ones already present.

        When the source scans deleted items, soft-deleted rows are revived
        with a clean status and their pages are dropped, so enrichment
        recreates them and every file is fetched again.
        """
        if not summaries:
            return
        now = format_time(utc_now())
        if source.scan_deleted:
            conflict = """
                ON CONFLICT (source_id, bvid, ep_id) DO UPDATE SET
                    deleted = 0,
                    valid = 1,
                    download_status = 0,
                    path = '',
                    single_page = NULL,
                    updated_at = excluded.updated_at
                WHERE video.deleted = 1
            """
        else:
            conflict = "ON CONFLICT (source_id, bvid, ep_id) DO NOTHING"
        owner = relation_id(source)
        rows = []
        for summary in summaries:
            release = summary.release_time
            rows.append(
                (
                    owner,
                    summary.bvid,
                    summary.ep_id,
                    summary.name,
                    summary.url,
                    summary.cover,
                    summary.upper_id,
                    summary.upper_name,
                    int(summary.is_episodic or source.kind is SourceKind.SERIES),
                    summary.series_id or (source.remote_id if source.kind is SourceKind.SERIES else None),
                    summary.season_number,
                    summary.episode_number,
                    format_time(summary.ctime or release),
                    format_time(summary.pubtime or release),
                    format_time(summary.favtime or release),
                    now,
                    now,
                )
            )
        with self.connection() as conn:
            revived: List[int] = []
            if source.scan_deleted:
                keys = {(summary.bvid, summary.ep_id) for summary in summaries}
                revived = [
                    row["id"]
                    for row in conn.execute(
                        "SELECT id, bvid, ep_id FROM video WHERE source_id = ? AND deleted = 1", (owner,)
                    ).fetchall()
                    if (row["bvid"], row["ep_id"]) in keys
                ]
            conn.executemany(
                f"""
                INSERT INTO video (
                    source_id, bvid, ep_id, name, url, cover, upper_id, upper_name,
                    is_episodic, series_id, season_number, episode_number,
                    ctime, pubtime, favtime, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                {conflict}
                """,
                rows,
            )
            if revived:
                conn.executemany("DELETE FROM page WHERE video_id = ?", [(item_id,) for item_id in revived])
                logger.info("Revived %d deleted items of %s", len(revived), source.label)

    def get_item(self, item_id: int) -> Optional[Item]:
        with self.connection() as conn:
            row = conn.execute(f"SELECT {_ITEM_COLUMNS} FROM video WHERE id = ?", (item_id,)).fetchone()
        return _row_to_item(row) if row else None

    def unfilled_items(self, source: VideoSource) -> List[Item]:
        """Items whose details have not been fetched yet."""
        predicate, params = video_filter(source)
        with self.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ITEM_COLUMNS} FROM video
                WHERE {predicate} AND valid = 1 AND deleted = 0 AND single_page IS NULL
                ORDER BY id
                """,
                params,
            ).fetchall()
        return [_row_to_item(row) for row in rows]

    def unhandled_items(self, source: VideoSource) -> List[Tuple[Item, List[Page]]]:
        """Enriched items with at least one subtask still eligible to run."""
        predicate, params = video_filter(source)
        with self.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ITEM_COLUMNS} FROM video
                WHERE {predicate} AND valid = 1 AND deleted = 0 AND single_page IS NOT NULL
                ORDER BY id
                """,
                params,
            ).fetchall()
            items = [
                _row_to_item(row)
                for row in rows
                if Status.from_int(row["download_status"]).any_should_run()
            ]
            pages = self._pages_for(conn, [item.id for item in items])
        return [(item, pages.get(item.id, [])) for item in items]

    def failed_items_since(self, source: VideoSource, since: datetime) -> List[Tuple[Item, List[Page]]]:
        """Items touched at or after *since* that still carry failed subtasks.

        Items with a pending delete task are left out.
        """
        predicate, params = video_filter(source)
        pending_deletes = self.pending_delete_video_ids()
        with self.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ITEM_COLUMNS} FROM video
                WHERE {predicate} AND valid = 1 AND deleted = 0 AND single_page IS NOT NULL
                AND updated_at >= ?
                ORDER BY id
                """,
                (*params, format_time(since)),
            ).fetchall()
            candidates = [_row_to_item(row) for row in rows if row["id"] not in pending_deletes]
            pages = self._pages_for(conn, [item.id for item in candidates])

        result = []
        for item in candidates:
            item_pages = pages.get(item.id, [])
            if Status.from_int(item.download_status).has_failures() or any(
                Status.from_int(page.download_status).has_failures() for page in item_pages
            ):
                result.append((item, item_pages))
        return result

    def existing_episode_parts(self, series_id: str) -> Dict[str, Tuple[int, int]]:
        """Known ``ep_id -> (part id, duration)`` for a series from stored pages."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT video.ep_id AS ep_id, page.cid AS cid, page.duration AS duration
                FROM video JOIN page ON page.video_id = video.id
                WHERE video.series_id = ? AND video.ep_id != '' AND page.cid > 0
                """,
                (series_id,),
            ).fetchall()
        return {row["ep_id"]: (row["cid"], row["duration"]) for row in rows}

    def save_item_detail(self, item: Item, detail: ItemDetail) -> List[Page]:
        """Persist enriched fields and create the item's pages in one transaction."""
        now = format_time(utc_now())
        single_page = len(detail.pages) == 1
        item.name = detail.name or item.name
        item.intro = detail.intro
        item.cover = detail.cover or item.cover
        item.tags = list(detail.tags)
        item.staff = list(detail.staff)
        if detail.upper_id:
            item.upper_id = detail.upper_id
            item.upper_name = detail.upper_name
            item.upper_face = detail.upper_face
        if detail.pubtime is not None:
            item.pubtime = detail.pubtime
        item.single_page = single_page

        with self.connection() as conn:
            conn.execute(
                """
                UPDATE video SET
                    name = ?, intro = ?, cover = ?, tags_json = ?, staff_json = ?,
                    upper_id = ?, upper_name = ?, upper_face = ?, pubtime = ?,
                    single_page = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    item.name,
                    item.intro,
                    item.cover,
                    json.dumps(item.tags, ensure_ascii=False),
                    json.dumps([vars(member) for member in item.staff], ensure_ascii=False),
                    item.upper_id,
                    item.upper_name,
                    item.upper_face,
                    format_time(item.pubtime),
                    int(single_page),
                    now,
                    item.id,
                ),
            )
            self._insert_pages(conn, item.id, detail.pages, now)
            pages = self._pages_for(conn, [item.id]).get(item.id, [])
        return pages

    @staticmethod
    def _insert_pages(conn: sqlite3.Connection, item_id: int, infos: Iterable[PageInfo], now: str) -> None:
        conn.executemany(
            """
            INSERT INTO page (video_id, pid, cid, name, duration, width, height, image, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (video_id, pid) DO NOTHING
            """,
            [
                (item_id, info.pid, info.cid, info.name, info.duration, info.width, info.height, info.image, now, now)
                for info in infos
            ],
        )

    def mark_invalid(self, item_id: int) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE video SET valid = 0, updated_at = ? WHERE id = ?",
                (format_time(utc_now()), item_id),
            )

    def soft_delete_item(self, item_id: int) -> Optional[Item]:
        item = self.get_item(item_id)
        if item is None:
            return None
        with self.connection() as conn:
            conn.execute(
                "UPDATE video SET deleted = 1, updated_at = ? WHERE id = ?",
                (format_time(utc_now()), item_id),
            )
        item.deleted = True
        return item

    def save_download_results(self, item: Item, pages: Sequence[Page]) -> None:
        """Write an item's status and its pages' statuses in one transaction."""
        now = format_time(utc_now())
        with self.connection() as conn:
            conn.execute(
                "UPDATE video SET download_status = ?, path = ?, updated_at = ? WHERE id = ?",
                (item.download_status, item.path, now, item.id),
            )
            conn.executemany(
                "UPDATE page SET download_status = ?, path = ?, updated_at = ? WHERE id = ?",
                [(page.download_status, page.path, now, page.id) for page in pages],
            )

    def pages_for(self, item_id: int) -> List[Page]:
        with self.connection() as conn:
            return self._pages_for(conn, [item_id]).get(item_id, [])

    @staticmethod
    def _pages_for(conn: sqlite3.Connection, item_ids: Sequence[int]) -> Dict[int, List[Page]]:
        result: Dict[int, List[Page]] = {}
        if not item_ids:
            return result
        # keep well below SQLite's bound parameter limit
        for start in range(0, len(item_ids), 500):
            chunk = list(item_ids[start:start + 500])
            placeholders = ", ".join("?" for _ in chunk)
            rows = conn.execute(
                f"SELECT * FROM page WHERE video_id IN ({placeholders}) ORDER BY video_id, pid",
                chunk,
            ).fetchall()
            for row in rows:
                result.setdefault(row["video_id"], []).append(_row_to_page(row))
        return result

    def reset_item(self, item_id: int, force: bool = False) -> bool:
        """Clear failed subtasks of one item and its pages, or every subtask with *force*.

        Returns whether anything changed.
        """
        with self.connection() as conn:
            items, pages = self._reset_statuses(conn, force, item_id)
        return bool(items or pages)

    def reset_all_failed(self) -> Tuple[int, int]:
        """Clear failed subtasks of every item and page in the database.

        Soft-deleted rows are included so a later revival starts clean.
        Returns the number of items and pages that changed.
        """
        with self.connection() as conn:
            return self._reset_statuses(conn, False)

    @staticmethod
    def _reset_statuses(
        conn: sqlite3.Connection, force: bool, item_id: Optional[int] = None
    ) -> Tuple[int, int]:
        now = format_time(utc_now())
        if item_id is None:
            page_rows = conn.execute("SELECT id, video_id, download_status FROM page").fetchall()
            item_rows = conn.execute("SELECT id, download_status FROM video").fetchall()
        else:
            page_rows = conn.execute(
                "SELECT id, video_id, download_status FROM page WHERE video_id = ?", (item_id,)
            ).fetchall()
            item_rows = conn.execute(
                "SELECT id, download_status FROM video WHERE id = ?", (item_id,)
            ).fetchall()

        page_updates = []
        touched_items: Set[int] = set()
        for row in page_rows:
            status = Status.from_int(row["download_status"])
            if status.reset_all() if force else status.reset_failed():
                page_updates.append((status.to_int(), now, row["id"]))
                touched_items.add(row["video_id"])

        item_updates = []
        for row in item_rows:
            status = Status.from_int(row["download_status"])
            changed = status.reset_all() if force else status.reset_failed()
            # the page-dispatch subtask mirrors its pages, so it reruns with them
            if row["id"] in touched_items and status.get(ITEM_PAGES) != STATUS_NOT_STARTED:
                status.set(ITEM_PAGES, STATUS_NOT_STARTED)
                changed = True
            if changed:
                item_updates.append((status.to_int(), now, row["id"]))

        conn.executemany(
            "UPDATE page SET download_status = ?, updated_at = ? WHERE id = ?", page_updates
        )
        conn.executemany(
            "UPDATE video SET download_status = ?, updated_at = ? WHERE id = ?", item_updates
        )
        return len(item_updates), len(page_updates)
    # tasks

    def enqueue_task(self, task_type: str, payload: dict) -> int:
        with self.connection() as conn:
            cursor = conn.execute(
                "INSERT INTO task_queue (task_type, payload_json, status, created_at) VALUES (?, ?, ?, ?)",
                (task_type, json.dumps(payload), TASK_PENDING, format_time(utc_now())),
            )
        return int(cursor.lastrowid)

    def pending_tasks(self, task_type: str) -> List[Tuple[int, dict]]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT id, payload_json FROM task_queue WHERE task_type = ? AND status = ? ORDER BY id",
                (task_type, TASK_PENDING),
            ).fetchall()
        return [(row["id"], json.loads(row["payload_json"])) for row in rows]

    def finish_task(self, task_id: int) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE task_queue SET status = ?, finished_at = ? WHERE id = ?",
                (TASK_DONE, format_time(utc_now()), task_id),
            )

    def pending_delete_video_ids(self) -> Set[int]:
        return {
            int(payload["video_id"])
            for _, payload in self.pending_tasks(TASK_DELETE_VIDEO)
            if "video_id" in payload
        }


def _row_to_source(row: sqlite3.Row) -> VideoSource:
    cached = row["cached_episodes_json"]
    return VideoSource(
        id=row["id"],
        kind=SourceKind(row["kind"]),
        remote_id=row["remote_id"],
        name=row["name"],
        url=row["url"],
        path=row["path"],
        enabled=bool(row["enabled"]),
        scan_deleted=bool(row["scan_deleted"]),
        latest_row_at=parse_time(row["latest_row_at"]),
        cached_episodes=json.loads(cached) if cached else None,
    )


def _row_to_item(row: sqlite3.Row) -> Item:
    tags = json.loads(row["tags_json"]) if row["tags_json"] else []
    staff = [Collaborator(**member) for member in json.loads(row["staff_json"])] if row["staff_json"] else []
    single_page = row["single_page"]
    return Item(
        id=row["id"],
        source_id=row["source_id"],
        bvid=row["bvid"],
        ep_id=row["ep_id"],
        name=row["name"],
        url=row["url"],
        intro=row["intro"],
        cover=row["cover"],
        upper_id=row["upper_id"],
        upper_name=row["upper_name"],
        upper_face=row["upper_face"],
        path=row["path"],
        download_status=row["download_status"],
        single_page=None if single_page is None else bool(single_page),
        valid=bool(row["valid"]),
        deleted=bool(row["deleted"]),
        tags=tags,
        staff=staff,
        is_episodic=bool(row["is_episodic"]),
        series_id=row["series_id"],
        season_number=row["season_number"],
        episode_number=row["episode_number"],
        ctime=parse_time(row["ctime"]),
        pubtime=parse_time(row["pubtime"]),
        favtime=parse_time(row["favtime"]),
    )


def _row_to_page(row: sqlite3.Row) -> Page:
    return Page(
        id=row["id"],
        video_id=row["video_id"],
        pid=row["pid"],
        cid=row["cid"],
        name=row["name"],
        duration=row["duration"],
        width=row["width"],
        height=row["height"],
        image=row["image"],
        path=row["path"],
        download_status=row["download_status"],
    )
