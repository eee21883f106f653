"""Local mirror of remote video sources."""

# Import main components for easier access
from .cancellation import CancellationToken
from .client import RemoteClient, YtDlpClient
from .config import SyncConfig, apply_environment_defaults, config_from_args, parse_args, positive_int
from .context import SyncContext
from .discovery import iter_listing, refresh_series_cache, refresh_video_source
from .downloader import download_unprocessed_videos, download_video_pages
from .enrichment import fetch_video_details
from .errors import (
    DownloadAbortError,
    ErrorAnalyzer,
    OperationCancelled,
    RemoteError,
    RemoteSourceError,
    RiskControlError,
    classify,
)
from .logger import YtDlpLogger, configure_logging
from .models import Item, Page, SourceKind, VideoSource, normalize_url
from .mutations import DeleteTaskSink, MutationKind, MutationQueue, ScanState
from .retry import reset_risk_control_failures, retry_failed_videos_once
from .sources import load_sources_from_file, load_sources_from_url, parse_source_line
from .status import STATUS_OK, Status, SubtaskResult
from .store import Store
from .workflow import process_video_source, run_scan

__all__ = [
    # Main entry points
    "parse_args",
    "run_scan",
    "process_video_source",
    # Pipeline phases
    "refresh_video_source",
    "refresh_series_cache",
    "iter_listing",
    "fetch_video_details",
    "download_unprocessed_videos",
    "download_video_pages",
    "retry_failed_videos_once",
    "reset_risk_control_failures",
    # Source handling
    "parse_source_line",
    "load_sources_from_file",
    "load_sources_from_url",
    "normalize_url",
    # Models and data structures
    "SourceKind",
    "VideoSource",
    "Item",
    "Page",
    "Status",
    "SubtaskResult",
    "STATUS_OK",
    "Store",
    "SyncContext",
    "CancellationToken",
    "ScanState",
    "MutationKind",
    "MutationQueue",
    "DeleteTaskSink",
    # Remote access
    "RemoteClient",
    "YtDlpClient",
    # Errors and logging
    "classify",
    "ErrorAnalyzer",
    "RemoteError",
    "RiskControlError",
    "RemoteSourceError",
    "DownloadAbortError",
    "OperationCancelled",
    "YtDlpLogger",
    "configure_logging",
    # Configuration
    "SyncConfig",
    "apply_environment_defaults",
    "config_from_args",
    "positive_int",
]
