"""Typed front-matter values.

Front matter is parsed from YAML, but the rest of the build never handles
raw YAML objects. Each value is converted once into one of five variants:

- Text: strings (and dates, stored as ISO strings).
- Number: integers and floats.
- Flag: booleans.
- Items: sequences of values.
- Table: mappings of string keys to values.

Lookups that need a particular variant go through ``FrontMatter.expect``,
which raises ``TypeMismatch`` rather than coercing.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Union

from .errors import MalformedFrontMatter, TypeMismatch


@dataclass(frozen=True)
class Text:
    value: str

    def unwrap(self) -> str:
        return self.value


@dataclass(frozen=True)
class Number:
    value: int | float

    def unwrap(self) -> int | float:
        return self.value


@dataclass(frozen=True)
class Flag:
    value: bool

    def unwrap(self) -> bool:
        return self.value


@dataclass(frozen=True)
class Items:
    values: tuple[Value, ...]

    def unwrap(self) -> list[Any]:
        return [item.unwrap() for item in self.values]


@dataclass(frozen=True)
class Table:
    entries: tuple[tuple[str, Value], ...]

    def unwrap(self) -> dict[str, Any]:
        return {key: value.unwrap() for key, value in self.entries}


Value = Union[Text, Number, Flag, Items, Table]

_VARIANT_NAMES = {
    Text: "text",
    Number: "number",
    Flag: "flag",
    Items: "items",
    Table: "table",
}


def variant_name(value: Value) -> str:
    """Return the human-readable variant name used in error messages."""
    return _VARIANT_NAMES[type(value)]


def to_value(raw: Any, path: Path | None = None, key: str = "") -> Value:
    """Convert a YAML-loaded object into a front-matter variant.

    Args:
        raw: Object produced by ``yaml.safe_load``.
        path: Source file, for error reporting.
        key: Dotted key of the value, for error reporting.

    Returns:
        The matching variant.

    Raises:
        MalformedFrontMatter: If the object has no variant.
    """
    # bool is a subclass of int, so it must be checked first.
    if isinstance(raw, bool):
        return Flag(raw)
    if isinstance(raw, (int, float)):
        return Number(raw)
    if isinstance(raw, str):
        return Text(raw)
    if raw is None:
        return Text("")
    if isinstance(raw, (datetime, date)):
        return Text(raw.isoformat())
    if isinstance(raw, (list, tuple)):
        return Items(
            tuple(to_value(item, path, f"{key}[{i}]") for i, item in enumerate(raw))
        )
    if isinstance(raw, dict):
        return Table(tuple(_table_entries(raw, path, key)))
    raise MalformedFrontMatter(
        f"unsupported value for '{key}': {type(raw).__name__}", path
    )


def _table_entries(raw: dict, path: Path | None, prefix: str):
    for name, item in raw.items():
        if not isinstance(name, str):
            raise MalformedFrontMatter(
                f"front matter keys must be strings, got {name!r}", path
            )
        dotted = f"{prefix}.{name}" if prefix else name
        yield name, to_value(item, path, dotted)


class FrontMatter(Mapping[str, Value]):
    """Ordered, read-only mapping of front-matter keys to typed values."""

    def __init__(self, entries: Mapping[str, Value] | None = None):
        self._entries: dict[str, Value] = dict(entries or {})

    @classmethod
    def from_yaml(cls, raw: Any, path: Path | None = None) -> FrontMatter:
        """Build front matter from a ``yaml.safe_load`` result."""
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise MalformedFrontMatter(
                f"front matter must be a mapping, got {type(raw).__name__}", path
            )
        return cls(dict(_table_entries(raw, path, "")))

    def __getitem__(self, key: str) -> Value:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:  # pragma: no cover - for debugging
        return f"FrontMatter({self._entries!r})"

    def expect(self, key: str, kind: type, path: Path | None = None) -> Value | None:
        """Return the value for *key* if it is of variant *kind*.

        Returns None when the key is absent.

        Raises:
            TypeMismatch: If the key is present with another variant.
        """
        value = self._entries.get(key)
        if value is None:
            return None
        if not isinstance(value, kind):
            raise TypeMismatch(key, _VARIANT_NAMES[kind], variant_name(value), path)
        return value

    def with_defaults(self, defaults: Mapping[str, Value]) -> FrontMatter:
        """Return a copy with *defaults* filled in for missing keys."""
        merged = dict(self._entries)
        for key, value in defaults.items():
            merged.setdefault(key, value)
        return FrontMatter(merged)

    def unwrap(self) -> dict[str, Any]:
        """Return plain Python values for the rendering context."""
        return {key: value.unwrap() for key, value in self._entries.items()}
