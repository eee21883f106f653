"""Plain HTTP file fetching with URL fallback, plus ffmpeg stream merging."""

import asyncio
import logging
import os
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence

from .cancellation import CancellationToken
from .errors import CancelReason, MergeError, OperationCancelled, classify
from .ytdlp_options import select_proxy, select_random_user_agent

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1 << 16


class Fetcher:
    """Downloads remote files, trying each mirror URL in turn."""

    def __init__(
        self,
        config=None,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 2.0,
        ffmpeg: str = "ffmpeg",
    ) -> None:
        self.config = config
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.ffmpeg = getattr(config, "ffmpeg", None) or ffmpeg

    def _opener(self) -> urllib.request.OpenerDirector:
        proxy = select_proxy(self.config) if self.config is not None else None
        if proxy:
            return urllib.request.build_opener(
                urllib.request.ProxyHandler({"http": proxy, "https": proxy})
            )
        return urllib.request.build_opener()

    def _headers(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {
            "User-Agent": getattr(self.config, "user_agent", None) or select_random_user_agent(),
            "Referer": "https://www.bilibili.com/",
        }
        if extra:
            headers.update(extra)
        return headers

    async def fetch(
        self,
        urls: Sequence[str],
        destination: Path,
        token: CancellationToken,
        headers: Optional[Dict[str, str]] = None,
    ) -> int:
        """Download the first reachable URL of *urls* into *destination*.

        Returns the number of bytes written. Risk-control failures are raised
        at once instead of trying the next mirror.
        """
        if not urls:
            raise ValueError(f"no URL to fetch for {destination}")
        last_error: Optional[BaseException] = None
        for url in urls:
            try:
                return await token.run(
                    asyncio.to_thread(
                        self._fetch_with_retry,
                        url,
                        Path(destination),
                        self._headers(headers),
                        lambda: token.cancelled,
                    )
                )
            except OperationCancelled:
                raise
            except (urllib.error.URLError, OSError) as exc:
                if classify(exc).is_risk_control:
                    raise
                logger.debug("Fetch of %s failed, trying next URL: %s", url, exc)
                last_error = exc
        raise last_error

    def _fetch_with_retry(
        self,
        url: str,
        destination: Path,
        headers: Dict[str, str],
        cancelled: Callable[[], bool],
    ) -> int:
        for attempt in range(self.max_retries):
            try:
                return self._download(url, destination, headers, cancelled)
            except (urllib.error.URLError, ConnectionError, TimeoutError) as exc:
                classified = classify(exc)
                if not classified.retryable or attempt == self.max_retries - 1:
                    raise
                delay = self.base_delay * (2 ** attempt)  # 2s, 4s, 8s
                logger.debug(
                    "Fetch attempt %d/%d for %s failed: %s. Retrying in %ss...",
                    attempt + 1, self.max_retries, url, exc, delay,
                )
                time.sleep(delay)
        raise RuntimeError("unreachable")

    def _download(
        self,
        url: str,
        destination: Path,
        headers: Dict[str, str],
        cancelled: Callable[[], bool],
    ) -> int:
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = destination.with_name(destination.name + ".part")
        request = urllib.request.Request(url, headers=headers)
        written = 0
        try:
            with self._opener().open(request, timeout=self.timeout) as response, open(tmp_path, "wb") as out:
                while True:
                    if cancelled():
                        raise OperationCancelled(CancelReason.SHUTDOWN)
                    chunk = response.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
            os.replace(tmp_path, destination)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return written

    async def merge(
        self,
        video_path: Path,
        audio_path: Path,
        output: Path,
        token: CancellationToken,
    ) -> None:
        """Mux separate video and audio files into *output* with ffmpeg."""
        process = await asyncio.create_subprocess_exec(
            self.ffmpeg,
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            str(video_path),
            "-i",
            str(audio_path),
            "-c",
            "copy",
            str(output),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await token.run(process.communicate())
        except OperationCancelled:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        if process.returncode != 0:
            tail = stderr.decode("utf-8", "ignore").strip().splitlines()[-3:]
            raise MergeError(f"ffmpeg exited with {process.returncode}: {' '.join(tail)}")
        for leftover in (video_path, audio_path):
            if leftover.exists():
                leftover.unlink()
