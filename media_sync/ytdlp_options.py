"""yt-dlp options builder with user-agent and proxy rotation."""

import logging
import random
from typing import List, Optional

from .logger import YtDlpLogger
from .models import USER_AGENTS

logger = logging.getLogger(__name__)


def select_random_user_agent() -> str:
    """Select a random User-Agent from the pool to rotate through different browsers."""
    return random.choice(USER_AGENTS)


def load_proxies_from_file(proxy_file: str) -> List[str]:
    """Load proxy URLs from a file, one per line."""
    proxies: List[str] = []
    try:
        with open(proxy_file, "r", encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                # Skip empty lines and comments
                if stripped and not stripped.startswith("#"):
                    proxies.append(stripped)
        if proxies:
            logger.info("Loaded %d proxies from %s", len(proxies), proxy_file)
        else:
            logger.warning("No proxies found in %s", proxy_file)
        return proxies
    except FileNotFoundError:
        logger.error("Proxy file not found: %s", proxy_file)
        return []
    except OSError as exc:
        logger.error("Error reading proxy file %s: %s", proxy_file, exc)
        return []


def select_proxy(config) -> Optional[str]:
    """Return one proxy URL from the configuration, or None."""
    if getattr(config, "proxy", None):
        return config.proxy

    proxy_file = getattr(config, "proxy_file", None)
    if proxy_file:
        # Load proxies once and keep them on the config object
        if getattr(config, "_proxy_pool", None) is None:
            config._proxy_pool = load_proxies_from_file(proxy_file)

        if config._proxy_pool:
            return random.choice(config._proxy_pool)

    return None


def build_ydl_options(config, ytdl_logger: YtDlpLogger, **overrides) -> dict:
    """Build yt-dlp options for metadata extraction.

    Media is fetched by ``Fetcher``; yt-dlp is used only to resolve listings,
    details and stream URLs, so ``skip_download`` is always set.
    """
    user_agent = getattr(config, "user_agent", None) or select_random_user_agent()
    proxy = select_proxy(config)

    ydl_opts = {
        "skip_download": True,
        "ignoreerrors": False,
        "noprogress": True,
        "quiet": True,
        "no_warnings": False,
        "retries": 3,
        "extractor_retries": 2,
        "socket_timeout": getattr(config, "socket_timeout", 30),
        "logger": ytdl_logger,
        "http_headers": {
            "User-Agent": user_agent,
            "Referer": "https://www.bilibili.com/",
        },
    }

    if proxy:
        ydl_opts["proxy"] = proxy
    if getattr(config, "cookies_from_browser", None):
        ydl_opts["cookiesfrombrowser"] = (config.cookies_from_browser,)
    if getattr(config, "cookies", None):
        ydl_opts["cookiefile"] = config.cookies
    if getattr(config, "sleep_requests", None):
        ydl_opts["sleep_interval_requests"] = config.sleep_requests
    if getattr(config, "format", None):
        ydl_opts["format"] = config.format

    ydl_opts.update(overrides)

    debug_parts = [
        f"format={ydl_opts.get('format', 'yt-dlp-default')}",
        f"user_agent={user_agent.split('(')[0].strip()}",
    ]
    if proxy:
        debug_parts.append(f"proxy={proxy}")
    if "sleep_interval_requests" in ydl_opts:
        debug_parts.append(f"sleep_requests={ydl_opts['sleep_interval_requests']}")
    if "extract_flat" in ydl_opts:
        debug_parts.append(f"extract_flat={ydl_opts['extract_flat']}")
    logger.debug("Constructed yt-dlp options: %s", ", ".join(debug_parts))

    return ydl_opts
