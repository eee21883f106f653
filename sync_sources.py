#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
sync_sources.py

Mirror remote video sources (favorites, collections, uploader submissions,
watch-later and series) into local folders.

Usage:
    python sync_sources.py --sources-file sources.txt
    python sync_sources.py --sources-url https://example.com/sources.txt --interval 3600

Send SIGUSR1 to pause a running scan and SIGUSR2 to resume.
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List

from media_sync import (
    MutationKind,
    MutationQueue,
    RemoteSourceError,
    ScanState,
    Store,
    SyncContext,
    VideoSource,
    YtDlpClient,
    apply_environment_defaults,
    config_from_args,
    configure_logging,
    load_sources_from_file,
    load_sources_from_url,
    parse_args,
    run_scan,
)

logger = logging.getLogger("sync_sources")


def load_sources(args) -> List[VideoSource]:
    sources: List[VideoSource] = []
    if args.sources_file:
        sources.extend(load_sources_from_file(args.sources_file))
    if args.sources_url:
        sources.extend(load_sources_from_url(args.sources_url))
    return sources


async def register_sources(mutations: MutationQueue, sources: List[VideoSource]) -> None:
    for source in sources:
        await mutations.submit(
            MutationKind.ADD_SOURCE,
            {
                "kind": source.kind.value,
                "remote_id": source.remote_id,
                "name": source.name,
                "url": source.url,
                "path": source.path,
            },
        )


def install_pause_handlers(state: ScanState) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGUSR1, _pause, state)
        loop.add_signal_handler(signal.SIGUSR2, _resume, state)
    except (AttributeError, NotImplementedError):
        logger.debug("Signal handlers not supported on this platform; pause/resume disabled")


def _pause(state: ScanState) -> None:
    logger.info("Pausing scans")
    state.pause()


def _resume(state: ScanState) -> None:
    logger.info("Resuming scans")
    state.resume()


async def run(args) -> int:
    config = config_from_args(args)
    store = Store(Path(config.database))
    await asyncio.to_thread(store.initialize)

    client = YtDlpClient(config)
    ctx = SyncContext.build(config, store, client)
    state = ScanState()
    mutations = MutationQueue(store, state, ctx.delete_sink, config)
    install_pause_handlers(state)

    try:
        sources = load_sources(args)
    except (OSError, RemoteSourceError) as exc:
        logger.error("Could not load sources: %s", exc)
        return 1
    await register_sources(mutations, sources)
    for video_id in args.reset_video or []:
        await mutations.submit(MutationKind.RESET_VIDEO, {"video_id": video_id, "force": args.force})
    if args.reset_failed:
        await mutations.submit(MutationKind.RESET_FAILED, {})

    if not await asyncio.to_thread(store.list_sources, True):
        logger.error("No enabled sources. Provide --sources-file or --sources-url.")
        return 1

    while True:
        if state.paused:
            logger.info("Scans are paused; waiting for resume")
        else:
            await run_scan(ctx, state, mutations)
            client.ytdl_logger.log_summary()
        if not args.interval:
            break
        logger.info("Next scan in %.0f seconds", args.interval)
        await asyncio.sleep(args.interval)

    logger.info("All done.")
    return 0


def main() -> int:
    args = parse_args()
    configure_logging(args.log_level, args.log_file)
    apply_environment_defaults(args)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Stopping.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
