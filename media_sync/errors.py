"""Error taxonomy, failure classification and per-scan error analysis."""

import asyncio
import logging
import socket
import urllib.error
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional

from .models import ErrorPattern

logger = logging.getLogger(__name__)

# Remote service codes with a fixed meaning
RISK_CONTROL_CODES = frozenset({-352, -412, 87008})
NOT_FOUND_CODES = frozenset({-404, 62002, 62004})
PAID_LOCK_CODE = 87007
PERMISSION_CODES = frozenset({-403, PAID_LOCK_CODE})
AUTH_CODES = frozenset({-101, -111})
RATE_LIMIT_CODES = frozenset({-509, -799, 429})


class SyncError(Exception):
    """Base class for errors raised by the sync engine."""


class RemoteError(SyncError):
    """The remote service answered with a non-zero status code."""

    def __init__(self, code: int, message: str = "") -> None:
        self.code = code
        self.message = message
        super().__init__(f"remote error {code}: {message}" if message else f"remote error {code}")


class RiskControlError(RemoteError):
    """The remote service temporarily blocked automated access."""

    def __init__(self, code: int = -352, message: str = "request blocked by risk control") -> None:
        super().__init__(code, message)


class DownloadAbortError(SyncError):
    """Risk control was hit; the current scan must stop."""

    def __init__(self, message: str = "risk control triggered, scan aborted") -> None:
        super().__init__(message)


class CancelReason(Enum):
    PAUSED = "paused"
    RISK_CONTROL = "risk_control"
    SHUTDOWN = "shutdown"


class OperationCancelled(SyncError):
    """Raised at a suspension point after the scan's cancellation token fired."""

    def __init__(self, reason: CancelReason) -> None:
        self.reason = reason
        super().__init__(f"operation cancelled ({reason.value})")


class RemoteSourceError(SyncError):
    """Raised when a sources list cannot be retrieved or parsed."""


class StreamUnavailableError(SyncError):
    """No usable media stream was offered for a page."""


class MergeError(SyncError):
    """ffmpeg failed to merge separate video and audio streams."""


class ErrorKind(Enum):
    NOT_FOUND = "not_found"
    PERMISSION = "permission"
    AUTH = "auth"
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    RISK_CONTROL = "risk_control"
    USER_CANCELLED = "user_cancelled"
    PARSE = "parse"
    FILESYSTEM = "filesystem"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT, ErrorKind.SERVER})
# retrying cannot fix these; the subtask is recorded as done
BENIGN_KINDS = frozenset({ErrorKind.NOT_FOUND, ErrorKind.PERMISSION, ErrorKind.FILESYSTEM})


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    code: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def is_risk_control(self) -> bool:
        return self.kind is ErrorKind.RISK_CONTROL

    @property
    def is_benign(self) -> bool:
        """Failures that retrying will not fix."""
        return self.kind in BENIGN_KINDS


# Text signatures for failures that only surface as messages (yt-dlp errors).
# Order matters: more specific first.
RISK_CONTROL_FRAGMENTS = (
    "http error 412",
    "precondition failed",
    "request is blocked",
    "risk control",
    "code -352",
    "code -412",
    "code 87008",
)

PERMISSION_FRAGMENTS = (
    "supporter-only",
    "charging",
    "members-only",
    "members only",
    "requires purchase",
    "premium",
    "http error 403",
    "forbidden",
)

AUTH_FRAGMENTS = (
    "login required",
    "sign in",
    "account not logged in",
    "http error 401",
)

NOT_FOUND_FRAGMENTS = (
    "http error 404",
    "http error 410",
    "video unavailable",
    "has been deleted",
    "does not exist",
    "not found",
)

RATE_LIMIT_FRAGMENTS = (
    "http error 429",
    "too many requests",
    "rate limit",
)

SERVER_FRAGMENTS = (
    "http error 500",
    "http error 502",
    "http error 503",
    "http error 504",
    "bad gateway",
    "service unavailable",
)

TIMEOUT_FRAGMENTS = (
    "timed out",
    "timeout",
)

NETWORK_FRAGMENTS = (
    "connection reset",
    "connection refused",
    "connection aborted",
    "remote end closed",
    "network is unreachable",
    "name or service not known",
    "temporary failure in name resolution",
    "unable to download webpage",
)

_FRAGMENT_TABLE = (
    (ErrorKind.RISK_CONTROL, RISK_CONTROL_FRAGMENTS),
    (ErrorKind.PERMISSION, PERMISSION_FRAGMENTS),
    (ErrorKind.AUTH, AUTH_FRAGMENTS),
    (ErrorKind.RATE_LIMIT, RATE_LIMIT_FRAGMENTS),
    (ErrorKind.SERVER, SERVER_FRAGMENTS),
    (ErrorKind.NOT_FOUND, NOT_FOUND_FRAGMENTS),
    (ErrorKind.TIMEOUT, TIMEOUT_FRAGMENTS),
    (ErrorKind.NETWORK, NETWORK_FRAGMENTS),
)


def _kind_for_code(code: int) -> ErrorKind:
    if code in RISK_CONTROL_CODES:
        return ErrorKind.RISK_CONTROL
    if code in NOT_FOUND_CODES:
        return ErrorKind.NOT_FOUND
    if code in PERMISSION_CODES:
        return ErrorKind.PERMISSION
    if code in AUTH_CODES:
        return ErrorKind.AUTH
    if code in RATE_LIMIT_CODES:
        return ErrorKind.RATE_LIMIT
    return ErrorKind.UNKNOWN


def _kind_for_http_status(status: int) -> ErrorKind:
    if status in (404, 410):
        return ErrorKind.NOT_FOUND
    if status == 401:
        return ErrorKind.AUTH
    if status == 403:
        return ErrorKind.PERMISSION
    if status == 412:
        return ErrorKind.RISK_CONTROL
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status >= 500:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


def _kind_for_message(message: str) -> ErrorKind:
    lowered = message.lower()
    for kind, fragments in _FRAGMENT_TABLE:
        if any(fragment in lowered for fragment in fragments):
            return kind
    return ErrorKind.UNKNOWN


def _classify_single(exc: BaseException) -> ClassifiedError:
    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, OperationCancelled):
        if exc.reason is CancelReason.RISK_CONTROL:
            return ClassifiedError(ErrorKind.RISK_CONTROL, message)
        return ClassifiedError(ErrorKind.USER_CANCELLED, message)
    if isinstance(exc, DownloadAbortError):
        return ClassifiedError(ErrorKind.RISK_CONTROL, message)
    if isinstance(exc, RemoteError):
        kind = _kind_for_code(exc.code)
        if kind is ErrorKind.UNKNOWN:
            kind = _kind_for_message(exc.message)
        return ClassifiedError(kind, message, exc.code)
    if isinstance(exc, urllib.error.HTTPError):
        return ClassifiedError(_kind_for_http_status(exc.code), message, exc.code)
    if isinstance(exc, (asyncio.TimeoutError, socket.timeout, TimeoutError)):
        return ClassifiedError(ErrorKind.TIMEOUT, message)
    if isinstance(exc, urllib.error.URLError):
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            return ClassifiedError(ErrorKind.TIMEOUT, message)
        return ClassifiedError(ErrorKind.NETWORK, message)
    if isinstance(exc, ConnectionError):
        return ClassifiedError(ErrorKind.NETWORK, message)
    if isinstance(exc, (StreamUnavailableError, MergeError)):
        return ClassifiedError(ErrorKind.UNKNOWN, message)
    if isinstance(exc, OSError):
        return ClassifiedError(ErrorKind.FILESYSTEM, message)
    if isinstance(exc, (ValueError, KeyError)):
        kind = _kind_for_message(message)
        return ClassifiedError(kind if kind is not ErrorKind.UNKNOWN else ErrorKind.PARSE, message)

    return ClassifiedError(_kind_for_message(message), message)


def _iter_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def classify(exc: BaseException) -> ClassifiedError:
    """Classify *exc*, looking through its cause chain.

    A risk-control signature anywhere in the chain wins. Otherwise the first
    link with a recognised kind decides.
    """
    results = [_classify_single(link) for link in _iter_chain(exc)]
    for result in results:
        if result.is_risk_control:
            return result
    for result in results:
        if result.kind is not ErrorKind.UNKNOWN:
            return ClassifiedError(result.kind, str(exc) or result.message, result.code)
    return results[0]


def is_risk_control(exc: BaseException) -> bool:
    return classify(exc).is_risk_control


def is_user_cancelled(exc: BaseException) -> bool:
    return classify(exc).kind is ErrorKind.USER_CANCELLED


def log_classified(
    log: logging.Logger, context: str, classified: ClassifiedError
) -> None:
    """Log a classified failure at the severity its kind calls for."""
    kind = classified.kind
    text = f"{context}: {classified.message}"
    if kind is ErrorKind.NOT_FOUND:
        log.debug("%s [not found]", text)
    elif kind in (ErrorKind.PERMISSION, ErrorKind.AUTH):
        log.info("%s [%s]", text, kind.value)
    elif kind is ErrorKind.USER_CANCELLED:
        log.info("%s [paused]", text)
    elif classified.retryable:
        log.warning("%s [%s] (retry eligible)", text, kind.value)
    elif kind is ErrorKind.RISK_CONTROL:
        log.error("%s [risk control]", text)
    else:
        log.error("%s [%s]", text, kind.value)


class ErrorAnalyzer:
    """Tallies classified failures over one scan and suggests remediation."""

    def __init__(self) -> None:
        self.patterns: Dict[str, ErrorPattern] = {
            kind.value: ErrorPattern(kind.value) for kind in ErrorKind
        }
        self.total_errors = 0
        self.error_log_path: Optional[str] = None

    def set_error_log_path(self, path: str) -> None:
        """Set the path for the detailed error log file."""
        self.error_log_path = path

    def categorize_and_record(self, video_id: Optional[str], exc: BaseException) -> ClassifiedError:
        """Classify an error and record it. Returns the classification."""
        classified = classify(exc)
        if classified.kind is ErrorKind.USER_CANCELLED:
            return classified
        self.total_errors += 1
        self.patterns[classified.kind.value].record(video_id, classified.message)

        if self.error_log_path:
            self._append_to_error_log(video_id, classified)
        return classified

    def _append_to_error_log(self, video_id: Optional[str], classified: ClassifiedError) -> None:
        try:
            timestamp = datetime.now().isoformat()
            video_id_str = video_id or "unknown"
            log_entry = f"[{timestamp}] [{classified.kind.value}] {video_id_str}: {classified.message}\n"

            with open(self.error_log_path, "a", encoding="utf-8") as f:
                f.write(log_entry)
        except OSError as exc:
            # Don't fail the scan if error logging fails
            logger.warning("Failed to write to error log: %s", exc)

    def count(self, kind: ErrorKind) -> int:
        return self.patterns[kind.value].count

    def get_recommendations(self) -> List[str]:
        """Generate recommendations based on error patterns."""
        recommendations = []

        if self.total_errors == 0:
            return ["No errors detected - scan completed successfully!"]

        if self.count(ErrorKind.RISK_CONTROL) > 0:
            recommendations.append(
                f"Risk control ({self.count(ErrorKind.RISK_CONTROL)} errors): "
                "the remote service blocked automated access. Pending work was reset and will be "
                "retried next scan. Lower --video-concurrency or raise --sleep-requests."
            )

        if self.count(ErrorKind.RATE_LIMIT) > 0:
            recommendations.append(
                f"Rate limiting ({self.count(ErrorKind.RATE_LIMIT)} errors): "
                "increase --sleep-requests or use a proxy."
            )

        if self.count(ErrorKind.AUTH) + self.count(ErrorKind.PERMISSION) > 0:
            recommendations.append(
                f"Access denied ({self.count(ErrorKind.AUTH) + self.count(ErrorKind.PERMISSION)} errors): "
                "refresh cookies with --cookies-from-browser or --cookies."
            )

        if self.count(ErrorKind.NOT_FOUND) > 0:
            recommendations.append(
                f"Not found ({self.count(ErrorKind.NOT_FOUND)} errors): "
                "the content was removed upstream. This is expected for old favorites."
            )

        transient = self.count(ErrorKind.NETWORK) + self.count(ErrorKind.TIMEOUT) + self.count(ErrorKind.SERVER)
        if transient > 0:
            recommendations.append(
                f"Transient network failures ({transient} errors): "
                "these are retried automatically on the next scan."
            )

        if self.count(ErrorKind.FILESYSTEM) > 0:
            recommendations.append(
                f"Filesystem ({self.count(ErrorKind.FILESYSTEM)} errors): "
                "check free space and permissions of the destination folders."
            )

        if self.count(ErrorKind.UNKNOWN) + self.count(ErrorKind.PARSE) > 0:
            recommendations.append(
                f"Unknown errors ({self.count(ErrorKind.UNKNOWN) + self.count(ErrorKind.PARSE)}): "
                "check the error log for details."
            )

        return recommendations

    def log_summary(self, log: Optional[logging.Logger] = None) -> None:
        """Log a summary of error patterns."""
        log = log or logger
        if self.total_errors == 0:
            log.info("No errors detected during scan")
            return

        log.info("Error pattern analysis: %d errors", self.total_errors)
        sorted_patterns = sorted(self.patterns.items(), key=lambda x: x[1].count, reverse=True)
        for name, pattern in sorted_patterns:
            if pattern.count > 0:
                sample = pattern.sample_messages[0][:80] if pattern.sample_messages else ""
                log.info(
                    "  %s: %d occurrences, %d items affected. Sample: %s",
                    name.replace("_", " "),
                    pattern.count,
                    len(pattern.video_ids),
                    sample,
                )
        for rec in self.get_recommendations():
            log.info("  %s", rec)
        if self.error_log_path:
            log.info("Detailed error log: %s", self.error_log_path)
