"""Configuration and argument parsing for the sync runner."""

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional

from .models import (
    DEFAULT_PAGE_CONCURRENCY,
    DEFAULT_PAGE_TEMPLATE,
    DEFAULT_VIDEO_CONCURRENCY,
    DEFAULT_VIDEO_TEMPLATE,
    ENV_COOKIES_FILE,
    ENV_COOKIES_FROM_BROWSER,
    ENV_DATABASE,
    ENV_PROXY,
)

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "media_sync.db"
COLLECTION_FOLDER_MODES = ("separate", "unified")

VALID_CONFIG_KEYS = {
    "database", "video_concurrency", "page_concurrency", "video_name", "page_name",
    "upper_path", "skip_cover", "skip_sidecar", "skip_comments", "skip_subtitles",
    "collection_folder_mode", "format", "cookies_from_browser", "cookies", "proxy",
    "proxy_file", "user_agent", "sleep_requests", "socket_timeout", "ffmpeg",
    "error_log", "log_level", "log_file", "interval", "sources_file", "sources_url",
}


@dataclass
class SyncConfig:
    """Settings read by the pipeline phases."""
    database: str = DEFAULT_DATABASE
    video_concurrency: int = DEFAULT_VIDEO_CONCURRENCY
    page_concurrency: int = DEFAULT_PAGE_CONCURRENCY
    video_name: str = DEFAULT_VIDEO_TEMPLATE
    page_name: str = DEFAULT_PAGE_TEMPLATE
    upper_path: str = ""
    skip_cover: bool = False
    skip_sidecar: bool = False
    skip_comments: bool = False
    skip_subtitles: bool = False
    collection_folder_mode: str = "separate"
    format: Optional[str] = None
    cookies_from_browser: Optional[str] = None
    cookies: Optional[str] = None
    proxy: Optional[str] = None
    proxy_file: Optional[str] = None
    user_agent: Optional[str] = None
    sleep_requests: Optional[float] = None
    socket_timeout: float = 30.0
    ffmpeg: str = "ffmpeg"
    error_log: Optional[str] = None


def positive_int(value: str) -> int:
    """Return *value* parsed as a positive integer for argparse."""

    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise argparse.ArgumentTypeError(
            "Expected a positive integer"
        ) from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("Expected a positive integer")

    return parsed


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a JSON file.

    Returns a dictionary of values used as defaults for command-line
    arguments. A missing or invalid file yields an empty dictionary.
    """
    if not os.path.exists(config_path):
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = json.load(f)
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse config file %s: %s. Ignoring.", config_path, exc)
        return {}
    except OSError as exc:
        logger.warning("Failed to read config file %s: %s. Ignoring.", config_path, exc)
        return {}

    if not isinstance(config, dict):
        logger.warning("Config file %s must contain a JSON object. Ignoring.", config_path)
        return {}

    invalid_keys = set(config.keys()) - VALID_CONFIG_KEYS
    if invalid_keys:
        logger.warning("Unknown config keys ignored: %s", ", ".join(sorted(invalid_keys)))

    return {k: v for k, v in config.items() if k in VALID_CONFIG_KEYS}


def _config_path_from_argv(argv: List[str]) -> str:
    config_path = "config.json"
    if "--config" in argv:
        config_idx = argv.index("--config")
        if config_idx + 1 < len(argv):
            config_path = argv[config_idx + 1]
    return config_path


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments, using the config file for defaults."""
    if argv is None:
        argv = sys.argv[1:]

    config_path = _config_path_from_argv(argv)
    config = load_config_file(config_path)
    if config:
        logger.info("Loaded configuration from %s", config_path)

    parser = argparse.ArgumentParser(
        description="Mirror remote video sources (favorites, collections, uploads, watch later, series) into local folders."
    )
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to JSON configuration file (default: config.json)",
    )
    parser.add_argument(
        "--sources-file",
        default=config.get("sources_file"),
        help=(
            "Text file with one source per line: '<kind>:<remote id> <path> [url] [name=<name>]'."
            " Kinds: favorite, collection, submission, watch_later, series."
        ),
    )
    parser.add_argument("--sources-url", default=config.get("sources_url"), help="URL of a remote sources file")
    parser.add_argument("--database", default=config.get("database"), help=f"SQLite database path (default: {DEFAULT_DATABASE})")
    parser.add_argument(
        "--video-concurrency",
        type=positive_int,
        default=config.get("video_concurrency", DEFAULT_VIDEO_CONCURRENCY),
        help=f"Items processed concurrently per source (default: {DEFAULT_VIDEO_CONCURRENCY})",
    )
    parser.add_argument(
        "--page-concurrency",
        type=positive_int,
        default=config.get("page_concurrency", DEFAULT_PAGE_CONCURRENCY),
        help=f"Pages processed concurrently per item (default: {DEFAULT_PAGE_CONCURRENCY})",
    )
    parser.add_argument("--video-name", default=config.get("video_name", DEFAULT_VIDEO_TEMPLATE), help="Folder name template for items, e.g. '%%(upper_name)s/%%(title)s'")
    parser.add_argument("--page-name", default=config.get("page_name", DEFAULT_PAGE_TEMPLATE), help="File name template for pages")
    parser.add_argument("--upper-path", default=config.get("upper_path", ""), help="Folder for uploader avatars and person sidecars (disabled when empty)")
    parser.add_argument("--skip-cover", action="store_true", default=config.get("skip_cover", False), help="Do not download covers")
    parser.add_argument("--skip-sidecar", action="store_true", default=config.get("skip_sidecar", False), help="Do not write NFO sidecars")
    parser.add_argument("--skip-comments", action="store_true", default=config.get("skip_comments", False), help="Do not download comment overlays")
    parser.add_argument("--skip-subtitles", action="store_true", default=config.get("skip_subtitles", False), help="Do not download subtitles")
    parser.add_argument(
        "--collection-folder-mode",
        choices=COLLECTION_FOLDER_MODES,
        default=config.get("collection_folder_mode", "separate"),
        help="'separate' gives each collection item its own folder, 'unified' puts them all in one",
    )
    parser.add_argument("--format", default=config.get("format"), help="Format selector passed to yt-dlp when resolving streams")
    parser.add_argument("--cookies-from-browser", default=config.get("cookies_from_browser"), help="Use cookies from your browser (chrome, firefox, edge, ...)")
    parser.add_argument("--cookies", default=config.get("cookies"), help="Netscape cookies file")
    parser.add_argument("--proxy", default=config.get("proxy"), help="Proxy URL for all requests")
    parser.add_argument("--proxy-file", default=config.get("proxy_file"), help="File with proxy URLs (one per line), rotated randomly")
    parser.add_argument("--user-agent", default=config.get("user_agent"), help="Fixed User-Agent (default: rotate)")
    parser.add_argument(
        "--sleep-requests",
        type=float,
        default=config.get("sleep_requests", 1.0),
        help="Seconds to sleep between metadata requests (default: 1.0, helps avoid risk control)",
    )
    parser.add_argument("--socket-timeout", type=float, default=config.get("socket_timeout", 30.0), help="Network timeout in seconds")
    parser.add_argument("--ffmpeg", default=config.get("ffmpeg", "ffmpeg"), help="ffmpeg binary used to merge streams")
    parser.add_argument("--error-log", default=config.get("error_log"), help="Append classified errors to this file")
    parser.add_argument("--log-level", default=config.get("log_level", "INFO"), help="Logging level (default: INFO)")
    parser.add_argument("--log-file", default=config.get("log_file"), help="Also write logs to this file")
    parser.add_argument(
        "--interval",
        type=float,
        default=config.get("interval", 0.0),
        help="Seconds between scans; 0 runs a single scan (default: 0)",
    )
    parser.add_argument("--reset-failed", action="store_true", help="Clear failed subtasks of every item before scanning")
    parser.add_argument("--reset-video", type=positive_int, action="append", metavar="ID", help="Clear failed subtasks of this item id before scanning (repeatable)")
    parser.add_argument("--force", action="store_true", help="With --reset-video, clear every subtask so the item is downloaded again")
    return parser.parse_args(argv)


def _normalize_env_str(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def apply_environment_defaults(args, environ: Optional[Dict[str, str]] = None) -> None:
    """Populate database, cookie and proxy settings from the environment when missing."""

    if environ is None:
        environ = os.environ

    if not getattr(args, "database", None):
        args.database = _normalize_env_str(environ.get(ENV_DATABASE)) or DEFAULT_DATABASE

    if not getattr(args, "cookies_from_browser", None):
        args.cookies_from_browser = _normalize_env_str(environ.get(ENV_COOKIES_FROM_BROWSER))

    if not getattr(args, "cookies", None):
        cookie_file = _normalize_env_str(environ.get(ENV_COOKIES_FILE))
        args.cookies = os.path.expanduser(cookie_file) if cookie_file else None

    if not getattr(args, "proxy", None):
        args.proxy = _normalize_env_str(environ.get(ENV_PROXY))


def config_from_args(args) -> SyncConfig:
    """Build a SyncConfig from an argparse namespace (or any attribute bag)."""
    values = {f.name: getattr(args, f.name) for f in fields(SyncConfig) if getattr(args, f.name, None) is not None}
    return SyncConfig(**values)
