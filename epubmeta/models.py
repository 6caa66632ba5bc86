from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Union

from .contents import extract_contents
from .dom import xhtml_root_from_bytes
from .errors import StructureError

XHTML_MEDIA_TYPE = "application/xhtml+xml"
NCX_MEDIA_TYPE = "application/x-dtbncx+xml"

DataLoader = Callable[[], Optional[bytes]]


@dataclass(eq=False)
class Item:
    """One resource declared in the package manifest."""

    id: str
    href: str
    media_type: str = XHTML_MEDIA_TYPE
    size: int = 0
    path: str = ""
    loader: Optional[DataLoader] = field(default=None, repr=False)
    _data: Optional[bytes] = field(default=None, init=False, repr=False)

    def get_data(self) -> bytes:
        if self._data is None:
            payload = self.loader() if self.loader is not None else None
            self._data = payload or b""
        return self._data

    def get_size(self) -> int:
        return self.size

    def get_contents(
        self,
        fragment_begin: Optional[str] = None,
        fragment_end: Optional[str] = None,
        keep_markup: bool = False,
    ) -> str:
        data = self.get_data()
        if not data:
            raise StructureError(f"Failed to read from EPUB container: {self.path or self.href}")
        root = xhtml_root_from_bytes(data, self.path or self.href)
        return extract_contents(root, fragment_begin, fragment_end, keep_markup)


class Manifest(Mapping):
    """Manifest items by id, in declaration order. Read-only for callers."""

    def __init__(self) -> None:
        self._items: dict[str, Item] = {}

    def _create_item(
        self,
        item_id: str,
        href: str,
        loader: Optional[DataLoader],
        size: int = 0,
        media_type: Optional[str] = None,
        path: str = "",
    ) -> Item:
        if item_id in self._items:
            raise StructureError(f"Item with ID {item_id} already exists!")
        item = Item(
            id=item_id,
            href=href,
            media_type=media_type or XHTML_MEDIA_TYPE,
            size=size,
            path=path,
            loader=loader,
        )
        self._items[item_id] = item
        return item

    def __getitem__(self, item_id: str) -> Item:
        return self._items[item_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def first(self) -> Optional[Item]:
        return next(iter(self._items.values()), None)

    def last(self) -> Optional[Item]:
        return next(reversed(self._items.values()), None) if self._items else None

    def find_by_path(self, path: str) -> Optional[Item]:
        for item in self._items.values():
            if item.path == path:
                return item
        return None


class _ReadOnlyList(Sequence):
    def __init__(self) -> None:
        self._entries: list = []

    def __getitem__(self, index: Union[int, slice]):
        return self._entries[index]

    def __len__(self) -> int:
        return len(self._entries)

    def first(self):
        return self._entries[0] if self._entries else None

    def last(self):
        return self._entries[-1] if self._entries else None


class Spine(_ReadOnlyList):
    """Reading order: manifest items by reference, plus the TOC item."""

    def __init__(self, toc_item: Item) -> None:
        super().__init__()
        self.toc_item = toc_item

    def _append_item(self, item: Item) -> None:
        self._entries.append(item)


@dataclass
class NavPoint:
    id: str
    class_name: str
    play_order: int
    label: str
    content_source_file: str
    content_source_fragment: Optional[str] = None
    children: "NavPointList" = field(default_factory=lambda: NavPointList())

    @classmethod
    def from_source(cls, id: str, class_name: str, play_order: int, label: str, content_source: str) -> "NavPoint":
        source_file, sep, fragment = (content_source or "").partition("#")
        return cls(
            id=id,
            class_name=class_name,
            play_order=play_order,
            label=label,
            content_source_file=source_file,
            content_source_fragment=fragment if sep else None,
        )

    @property
    def content_source(self) -> str:
        if self.content_source_fragment:
            return f"{self.content_source_file}#{self.content_source_fragment}"
        return self.content_source_file


class NavPointList(_ReadOnlyList):
    def _add_nav_point(self, nav_point: NavPoint) -> None:
        self._entries.append(nav_point)

    def find_nav_points_for_file(self, file: str) -> list[NavPoint]:
        matches: list[NavPoint] = []
        for nav_point in self._entries:
            if nav_point.content_source_file == file:
                matches.append(nav_point)
            matches.extend(nav_point.children.find_nav_points_for_file(file))
        return matches

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NavPointList):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"NavPointList({self._entries!r})"


@dataclass
class Toc:
    doc_title: str
    doc_author: str
    nav_map: NavPointList = field(default_factory=NavPointList)

    def find_nav_points_for_file(self, file: str) -> list[NavPoint]:
        return self.nav_map.find_nav_points_for_file(file)
