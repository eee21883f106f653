"""Collaborators shared by the phases of one scan."""

from dataclasses import dataclass, field

from .client import RemoteClient
from .config import SyncConfig
from .errors import ErrorAnalyzer
from .fetcher import Fetcher
from .models import ScanCache
from .mutations import DeleteTaskSink
from .naming import PathRenderer
from .sidecar import SidecarWriter
from .store import Store


@dataclass
class SyncContext:
    config: SyncConfig
    store: Store
    client: RemoteClient
    fetcher: Fetcher
    renderer: PathRenderer
    sidecar: SidecarWriter
    delete_sink: DeleteTaskSink
    cache: ScanCache = field(default_factory=ScanCache)
    analyzer: ErrorAnalyzer = field(default_factory=ErrorAnalyzer)

    @classmethod
    def build(cls, config: SyncConfig, store: Store, client: RemoteClient) -> "SyncContext":
        context = cls(
            config=config,
            store=store,
            client=client,
            fetcher=Fetcher(config),
            renderer=PathRenderer(config.video_name, config.page_name),
            sidecar=SidecarWriter(),
            delete_sink=DeleteTaskSink(store),
        )
        if config.error_log:
            context.analyzer.set_error_log_path(config.error_log)
        return context

    def new_scan(self) -> None:
        """Start a fresh per-scan cache and error tally.

        Templates are re-read so configuration updates applied between scans
        take effect.
        """
        self.cache = ScanCache()
        self.renderer = PathRenderer(self.config.video_name, self.config.page_name)
        error_log = self.analyzer.error_log_path
        self.analyzer = ErrorAnalyzer()
        if error_log:
            self.analyzer.set_error_log_path(error_log)
