"""Kodi/Emby style NFO sidecar files."""

import asyncio
import os
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Optional

from .models import Item, Page, format_time


def _add(parent: ET.Element, tag: str, text: Optional[object]) -> ET.Element:
    element = ET.SubElement(parent, tag)
    if text is not None:
        element.text = str(text)
    return element


class SidecarWriter:
    """Writes descriptor files next to downloaded media."""

    def movie(self, item: Item) -> ET.Element:
        root = ET.Element("movie")
        self._common(root, item)
        _add(root, "year", item.pubtime.year)
        return root

    def tvshow(self, item: Item) -> ET.Element:
        root = ET.Element("tvshow")
        self._common(root, item)
        _add(root, "year", item.pubtime.year)
        return root

    def episode(self, item: Item, page: Page) -> ET.Element:
        root = ET.Element("episodedetails")
        _add(root, "plot", item.intro)
        _add(root, "outline", None)
        _add(root, "title", page.name or item.name)
        _add(root, "season", item.season_number or 1)
        _add(root, "episode", item.episode_number or page.pid)
        _add(root, "runtime", page.duration // 60 if page.duration else None)
        _add(root, "uniqueid", f"{item.bvid}-{page.pid}").set("type", "bilibili")
        return root

    def person(self, item: Item) -> ET.Element:
        root = ET.Element("person")
        _add(root, "plot", None)
        _add(root, "outline", None)
        _add(root, "lockdata", "false")
        _add(root, "dateadded", format_time(item.pubtime))
        _add(root, "title", item.upper_id)
        _add(root, "sorttitle", item.upper_id)
        return root

    @staticmethod
    def _common(root: ET.Element, item: Item) -> None:
        _add(root, "plot", item.intro)
        _add(root, "outline", None)
        _add(root, "title", item.name)
        actor = _add(root, "actor", None)
        _add(actor, "name", item.upper_id)
        _add(actor, "role", item.upper_name)
        for tag in item.tags:
            _add(root, "genre", tag)
        _add(root, "premiered", item.pubtime.strftime("%Y-%m-%d"))
        _add(root, "dateadded", format_time(item.favtime))
        _add(root, "uniqueid", item.bvid).set("type", "bilibili")

    async def write(self, element: ET.Element, destination: Path) -> None:
        await asyncio.to_thread(self._write_sync, element, Path(destination))

    @staticmethod
    def _write_sync(element: ET.Element, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        ET.indent(element)
        tmp_path = destination.with_name(destination.name + ".tmp")
        ET.ElementTree(element).write(tmp_path, encoding="utf-8", xml_declaration=True)
        os.replace(tmp_path, destination)

    async def write_item(self, item: Item, destination: Path) -> None:
        element = self.movie(item) if item.single_page else self.tvshow(item)
        await self.write(element, destination)

    async def write_page(self, item: Item, page: Page, destination: Path) -> None:
        element = self.movie(item) if item.single_page else self.episode(item, page)
        await self.write(element, destination)

    async def write_person(self, item: Item, destination: Path) -> None:
        await self.write(self.person(item), destination)
