"""Structural changes deferred while a scan is running."""

import asyncio
import logging
import shutil
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .cancellation import CancellationToken
from .errors import CancelReason
from .models import SourceKind, VideoSource, format_time, utc_now
from .store import TASK_DELETE_VIDEO, Store

logger = logging.getLogger(__name__)


class MutationKind(Enum):
    ADD_SOURCE = "add_source"
    REMOVE_SOURCE = "remove_source"
    UPDATE_CONFIG = "update_config"
    DELETE_VIDEO = "delete_video"
    RESET_VIDEO = "reset_video"
    RESET_FAILED = "reset_failed"


@dataclass
class PendingMutation:
    kind: MutationKind
    payload: Dict[str, Any]
    task_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=lambda: format_time(utc_now()))


class ScanState:
    """Tracks the single scan a process may run at a time."""

    def __init__(self) -> None:
        self._token: Optional[CancellationToken] = None
        self.paused = False

    def is_scanning(self) -> bool:
        return self._token is not None

    @property
    def token(self) -> Optional[CancellationToken]:
        return self._token

    def begin(self) -> CancellationToken:
        if self._token is not None:
            raise RuntimeError("a scan is already running")
        self._token = CancellationToken()
        if self.paused:
            self._token.cancel(CancelReason.PAUSED)
        return self._token

    def end(self) -> None:
        self._token = None

    def pause(self) -> None:
        """Stop the running scan at its next suspension point."""
        self.paused = True
        if self._token is not None:
            self._token.cancel(CancelReason.PAUSED)

    def resume(self) -> None:
        self.paused = False


class DeleteTaskSink:
    """Persisted queue of item deletions."""

    def __init__(self, store: Store) -> None:
        self.store = store

    def enqueue_delete(self, item_id: int) -> int:
        task_id = self.store.enqueue_task(TASK_DELETE_VIDEO, {"video_id": item_id})
        logger.info("Queued deletion of item %s (task %s)", item_id, task_id)
        return task_id

    async def process_pending(self, remove_files: bool = True) -> int:
        """Soft-delete every queued item and remove its folder."""
        processed = 0
        for task_id, payload in await asyncio.to_thread(self.store.pending_tasks, TASK_DELETE_VIDEO):
            item = await asyncio.to_thread(self.store.soft_delete_item, int(payload["video_id"]))
            if item is not None and remove_files and item.path:
                await asyncio.to_thread(shutil.rmtree, item.path, True)
                logger.info("Deleted %s and its folder %s", item.name, item.path)
            await asyncio.to_thread(self.store.finish_task, task_id)
            processed += 1
        return processed


class MutationQueue:
    """Applies mutations at once when idle, otherwise after the scan."""

    def __init__(self, store: Store, state: ScanState, delete_sink: DeleteTaskSink, config=None) -> None:
        self.store = store
        self.state = state
        self.delete_sink = delete_sink
        self.config = config
        self._pending: List[PendingMutation] = []

    def pending(self) -> List[PendingMutation]:
        return list(self._pending)

    def enqueue(self, mutation: PendingMutation) -> None:
        self._pending.append(mutation)
        logger.info("Scan in progress, queued %s (task %s)", mutation.kind.value, mutation.task_id)

    async def submit(self, kind: MutationKind, payload: Dict[str, Any]) -> PendingMutation:
        mutation = PendingMutation(kind, payload)
        if self.state.is_scanning():
            self.enqueue(mutation)
        else:
            await self._apply(mutation)
        return mutation

    async def drain(self) -> int:
        """Apply queued mutations in submission order."""
        if self.state.is_scanning() or self.state.paused:
            return 0
        applied = 0
        while self._pending:
            mutation = self._pending.pop(0)
            try:
                await self._apply(mutation)
                applied += 1
            except (ValueError, KeyError, OSError) as exc:
                logger.error("Failed to apply %s (task %s): %s", mutation.kind.value, mutation.task_id, exc)
        return applied

    async def _apply(self, mutation: PendingMutation) -> None:
        payload = mutation.payload
        if mutation.kind is MutationKind.ADD_SOURCE:
            source = await asyncio.to_thread(
                self.store.add_source,
                VideoSource(
                    id=None,
                    kind=SourceKind(payload["kind"]),
                    remote_id=str(payload["remote_id"]),
                    name=payload.get("name") or f"{payload['kind']}-{payload['remote_id']}",
                    url=payload.get("url", ""),
                    path=payload["path"],
                    enabled=payload.get("enabled", True),
                    scan_deleted=payload.get("scan_deleted", False),
                ),
            )
            logger.info("Added source %s", source.label)
        elif mutation.kind is MutationKind.REMOVE_SOURCE:
            if await asyncio.to_thread(self.store.remove_source, int(payload["source_id"])):
                logger.info("Removed source %s", payload["source_id"])
        elif mutation.kind is MutationKind.UPDATE_CONFIG:
            await self._update_config(payload)
        elif mutation.kind is MutationKind.DELETE_VIDEO:
            await asyncio.to_thread(self.delete_sink.enqueue_delete, int(payload["video_id"]))
            await self.delete_sink.process_pending()
        elif mutation.kind is MutationKind.RESET_VIDEO:
            video_id = int(payload["video_id"])
            force = bool(payload.get("force", False))
            if await asyncio.to_thread(self.store.reset_item, video_id, force):
                logger.info("Reset %s subtasks of item %s", "all" if force else "failed", video_id)
        elif mutation.kind is MutationKind.RESET_FAILED:
            items, pages = await asyncio.to_thread(self.store.reset_all_failed)
            logger.info("Reset failed subtasks of %d items and %d pages", items, pages)

    async def _update_config(self, payload: Dict[str, Any]) -> None:
        if "source_id" in payload:
            fields = {key: payload[key] for key in ("enabled", "path", "scan_deleted", "name") if key in payload}
            await asyncio.to_thread(self.store.update_source_config, int(payload["source_id"]), **fields)
            return
        if self.config is None:
            raise ValueError("no configuration object to update")
        for key, value in payload.items():
            if not hasattr(self.config, key):
                raise KeyError(f"unknown configuration key {key!r}")
            setattr(self.config, key, value)
        logger.info("Updated configuration: %s", ", ".join(sorted(payload)))
