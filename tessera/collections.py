"""Page listings for templates.

``PageCollection`` is the ``pages`` global: every successfully parsed page
of the site as a ``page`` mapping, with helpers for the usual listing
queries. Each entry also carries ``folder``, the directory of its source
relative to the content root ("" at the top level).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import Any

from .content import ContentItem


def _sort_value(value: Any) -> tuple:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value, "")
    return (1, 0, str(value))


class PageCollection(Sequence[dict]):
    """Sorted, filterable view of the content set.

    Plain iteration follows source path order. ``on_use`` is called
    whenever a template reads the collection, so a render can tell that its
    output depends on the whole content set.
    """

    def __init__(self, pages: Iterable[dict], on_use: Callable[[], None] | None = None):
        self._pages = list(pages)
        self._on_use = on_use

    @classmethod
    def from_items(
        cls, items: Iterable[ContentItem], on_use: Callable[[], None] | None = None
    ) -> PageCollection:
        entries = []
        for item in sorted(items, key=lambda item: item.rel_path.as_posix()):
            page = item.page_context()
            parent = item.rel_path.parent.as_posix()
            page["folder"] = "" if parent == "." else parent
            entries.append(page)
        return cls(entries, on_use)

    def _used(self) -> None:
        if self._on_use is not None:
            self._on_use()

    def _derive(self, pages: Iterable[dict]) -> PageCollection:
        return PageCollection(pages, self._on_use)

    def __iter__(self) -> Iterator[dict]:
        self._used()
        return iter(self._pages)

    def __len__(self) -> int:
        self._used()
        return len(self._pages)

    def __getitem__(self, item):
        self._used()
        if isinstance(item, slice):
            return self._derive(self._pages[item])
        return self._pages[item]

    def in_folder(self, folder: str, recursive: bool = True) -> PageCollection:
        """Pages whose source lives in *folder* (and below it, if *recursive*)."""
        self._used()
        folder = folder.strip("/")

        def matches(page: dict) -> bool:
            if page["folder"] == folder:
                return True
            if not recursive:
                return False
            return not folder or page["folder"].startswith(folder + "/")

        return self._derive(page for page in self._pages if matches(page))

    def with_tag(self, tag: str) -> PageCollection:
        self._used()

        def tagged(page: dict) -> bool:
            tags = page.get("tags")
            if isinstance(tags, str):
                return tag in (t.strip() for t in tags.split(","))
            return isinstance(tags, list) and tag in tags

        return self._derive(page for page in self._pages if tagged(page))

    def sorted(self, key: str = "date", reverse: bool = True) -> PageCollection:
        """Sort by a front-matter key, newest/highest first by default.

        Pages without the key come last in source order; ties keep source
        order as well.
        """
        self._used()
        present = [page for page in self._pages if page.get(key) is not None]
        missing = [page for page in self._pages if page.get(key) is None]
        present.sort(key=lambda page: _sort_value(page[key]), reverse=reverse)
        return self._derive(present + missing)

    def latest(self, count: int = 5) -> PageCollection:
        return self.sorted()[:count]

    def __repr__(self) -> str:  # pragma: no cover - for debugging
        return f"PageCollection({len(self._pages)} pages)"
