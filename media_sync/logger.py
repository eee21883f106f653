"""Logging setup and the yt-dlp logger bridge."""

import logging
import sys
import time
from typing import List, Optional

from .errors import RATE_LIMIT_FRAGMENTS, RISK_CONTROL_FRAGMENTS

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Install console (and optional file) handlers on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # yt-dlp debug output goes through YtDlpLogger; keep third-party chatter down
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class YtDlpLogger:
    """Logger passed to yt-dlp that routes its messages into ``logging``.

    It also counts lockout and rate-limit signatures so callers can back
    off before the next request.
    """

    UNAVAILABLE_FRAGMENTS = (
        "video unavailable",
        "has been deleted",
        "does not exist",
        "supporter-only",
        "charging",
        "premium members only",
        "http error 404",
        "http error 410",
    )

    IGNORED_FRAGMENTS = (
        "falling back on generic information extractor",
    )

    def __init__(self, name: str = "media_sync.ytdlp") -> None:
        self._log = logging.getLogger(name)
        self.current_url: Optional[str] = None
        self.current_video_id: Optional[str] = None
        self.video_unavailable_errors = 0
        self.other_errors = 0
        self.risk_control_hits = 0
        self.rate_limit_count = 0
        self.rate_limit_timestamps: List[float] = []

    def set_context(self, url: Optional[str], video_id: Optional[str] = None) -> None:
        self.current_url = url
        self.current_video_id = video_id

    def check_rate_limit_backoff(self) -> Optional[int]:
        """Seconds to wait before the next request, or None.

        Backoff grows with consecutive rate-limit hits: 30s, 60s, then 120s.
        """
        if self.rate_limit_count == 0:
            return None
        if self.rate_limit_count == 1:
            return 30
        if self.rate_limit_count == 2:
            return 60
        return 120

    def reset_rate_limit(self) -> None:
        self.rate_limit_count = 0

    def log_summary(self) -> None:
        """Report the yt-dlp error counts gathered since the last call, then clear them."""
        if self.risk_control_hits or self.video_unavailable_errors or self.other_errors:
            self._log.info(
                "yt-dlp errors this scan: %d risk control, %d unavailable, %d other",
                self.risk_control_hits, self.video_unavailable_errors, self.other_errors,
            )
        if self.risk_control_hits:
            self._log.warning("The remote service flagged requests; consider longer --sleep-requests or fresh cookies")
        self.risk_control_hits = 0
        self.video_unavailable_errors = 0
        self.other_errors = 0

    def _format_with_context(self, message: str) -> str:
        context_parts = []
        if self.current_url:
            context_parts.append(f"url={self.current_url}")
        if self.current_video_id:
            context_parts.append(f"video_id={self.current_video_id}")
        if context_parts:
            return f"[{' '.join(context_parts)}] {message}"
        return message

    def _is_expected_unavailable_error(self, text: str) -> bool:
        lowered = text.lower()
        if any(fragment in lowered for fragment in self.IGNORED_FRAGMENTS):
            return True
        return any(fragment in lowered for fragment in self.UNAVAILABLE_FRAGMENTS)

    def _handle_message(self, text: str) -> None:
        lowered = text.lower()
        if any(fragment in lowered for fragment in self.IGNORED_FRAGMENTS):
            return

        if any(fragment in lowered for fragment in RISK_CONTROL_FRAGMENTS):
            self.risk_control_hits += 1
        elif any(fragment in lowered for fragment in RATE_LIMIT_FRAGMENTS):
            self.rate_limit_count += 1
            self.rate_limit_timestamps.append(time.time())
            # Keep only recent timestamps (last 10 minutes)
            cutoff_time = time.time() - 600
            self.rate_limit_timestamps = [ts for ts in self.rate_limit_timestamps if ts > cutoff_time]
        elif any(fragment in lowered for fragment in self.UNAVAILABLE_FRAGMENTS):
            self.video_unavailable_errors += 1
        else:
            self.other_errors += 1

    @staticmethod
    def _ensure_text(message) -> str:
        if isinstance(message, bytes):
            return message.decode("utf-8", "ignore")
        return str(message)

    def debug(self, message) -> None:  # yt-dlp calls this
        text = self._ensure_text(message)
        # yt-dlp routes info-level output through debug with a prefix
        if text.startswith("[debug] "):
            self._log.debug(self._format_with_context(text[len("[debug] "):]))
        else:
            self._log.debug(self._format_with_context(text))

    def info(self, message) -> None:
        self._log.info(self._format_with_context(self._ensure_text(message)))

    def warning(self, message) -> None:
        text = self._ensure_text(message)
        if self._is_expected_unavailable_error(text):
            self._log.debug(self._format_with_context(text))
        else:
            self._log.warning(self._format_with_context(text))

    def error(self, message) -> None:
        text = self._ensure_text(message)
        if self._is_expected_unavailable_error(text):
            self._log.debug(self._format_with_context(text))
        else:
            self._log.error(self._format_with_context(text))
        self._handle_message(text)
