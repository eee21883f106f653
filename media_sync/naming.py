"""Destination path rendering and folder-name collision resolution."""

import logging
import os
import random
from pathlib import Path
from typing import Dict, Optional

from yt_dlp.utils import sanitize_filename

from .models import DEFAULT_PAGE_TEMPLATE, DEFAULT_VIDEO_TEMPLATE, MEDIA_EXTENSIONS, Item, Page

logger = logging.getLogger(__name__)

MAX_NUMBERED_ATTEMPTS = 1000


def _clean_component(value: str) -> str:
    cleaned = value.strip().strip(".").strip()
    return cleaned or "_"


class PathRenderer:
    """Renders yt-dlp style ``%(field)s`` templates into relative paths.

    Field values are sanitized, so only literal ``/`` in the template can
    create sub-folders.
    """

    def __init__(
        self,
        video_template: str = DEFAULT_VIDEO_TEMPLATE,
        page_template: str = DEFAULT_PAGE_TEMPLATE,
    ) -> None:
        self.video_template = video_template
        self.page_template = page_template

    @property
    def needs_deduplication(self) -> bool:
        """Whether two items can render the same folder name."""
        template = self.video_template
        return "title" in template or ("name" in template and "upper_name" not in template)

    @staticmethod
    def video_fields(item: Item) -> Dict[str, object]:
        return {
            "bvid": item.bvid,
            "title": item.name,
            "name": item.name,
            "upper_name": item.upper_name,
            "upper_mid": item.upper_id,
            "pubtime": item.pubtime.strftime("%Y-%m-%d"),
            "fav_time": item.favtime.strftime("%Y-%m-%d"),
            "ctime": item.ctime.strftime("%Y-%m-%d"),
            "season_number": item.season_number or 1,
            "episode_number": item.episode_number or 0,
        }

    @classmethod
    def page_fields(cls, item: Item, page: Page) -> Dict[str, object]:
        fields = cls.video_fields(item)
        fields.update(
            {
                "ptitle": page.name or item.name,
                "pid": page.pid,
                "pid_pad": f"{page.pid:02}",
                "duration": page.duration,
            }
        )
        return fields

    def render_video(self, item: Item) -> str:
        return self.render(self.video_template, self.video_fields(item))

    def render_page(self, item: Item, page: Page) -> str:
        return self.render(self.page_template, self.page_fields(item, page))

    @staticmethod
    def render(template: str, fields: Dict[str, object]) -> str:
        safe = {
            key: sanitize_filename(value) if isinstance(value, str) else value
            for key, value in fields.items()
        }
        try:
            rendered = template % safe
        except KeyError as exc:
            raise ValueError(f"unknown template field {exc} in {template!r}") from exc
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid template {template!r}: {exc}") from exc
        parts = [_clean_component(part) for part in rendered.split("/") if part.strip()]
        if not parts:
            raise ValueError(f"template {template!r} rendered an empty path")
        return os.path.join(*parts)


def folder_belongs_to_item(folder: Path, item: Item) -> bool:
    """Whether an existing *folder* already holds *item*'s files.

    Matched by the stored path (as given, normalized, by folder name or as a
    path suffix), then by any file named after the item's id. A folder with
    no media file at all is free to reuse.
    """
    if item.path:
        stored = Path(item.path)
        if folder == stored:
            return True
        if os.path.normcase(os.path.abspath(folder)) == os.path.normcase(os.path.abspath(stored)):
            return True
        if folder.name == stored.name:
            return True
        folder_text, stored_text = folder.as_posix(), stored.as_posix()
        if folder_text.endswith(stored_text) or stored_text.endswith(folder_text):
            return True

    has_media = False
    try:
        for entry in folder.rglob("*"):
            if not entry.is_file():
                continue
            if item.bvid and item.bvid in entry.name:
                return True
            if entry.suffix.lower() in MEDIA_EXTENSIONS:
                has_media = True
    except OSError as exc:
        logger.debug("Could not inspect %s: %s", folder, exc)
        return False
    return not has_media


def _is_free(parent: Path, name: str, item: Optional[Item]) -> bool:
    candidate = parent / name
    if not candidate.exists():
        return True
    return item is not None and folder_belongs_to_item(candidate, item)


def generate_unique_folder_name(
    parent: Path,
    base_name: str,
    bvid: str,
    pubdate: str,
    item: Optional[Item] = None,
) -> str:
    """Pick a folder name under *parent* that no other item occupies.

    Tries ``base``, ``base-<pubdate>``, ``base-<bvid>``, then ``base-1``,
    ``base-2`` ... and finally a random suffix.
    """
    if _is_free(parent, base_name, item):
        return base_name

    with_date = f"{base_name}-{pubdate}"
    if _is_free(parent, with_date, item):
        logger.info("Folder name collision, appending publish date: %s -> %s", base_name, with_date)
        return with_date

    with_id = f"{base_name}-{bvid}"
    if _is_free(parent, with_id, item):
        logger.info("Folder name collision, appending id: %s -> %s", base_name, with_id)
        return with_id

    for counter in range(1, MAX_NUMBERED_ATTEMPTS + 1):
        numbered = f"{base_name}-{counter}"
        if _is_free(parent, numbered, item):
            logger.warning("Severe folder name collision, using numeric suffix: %s -> %s", base_name, numbered)
            return numbered

    suffix = random.randint(10000, 99999)
    logger.warning("Folder name collision unresolved, using random suffix for %s", base_name)
    return f"{base_name}-{suffix}"
