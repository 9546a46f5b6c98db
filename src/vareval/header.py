"""Structured ``key=value`` metadata lines.

Two shapes are supported:

- scalar lines, ``KEY=VALUE``
- structured lines, ``KEY=<field=val,field=val,...>``

Structured values are quoted when they contain a comma or a space, and the
``Description`` field is always quoted. Embedded double quotes are written as-is;
there is no escaping in this format.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional


_ALWAYS_QUOTED = "Description"


class EncodingError(ValueError):
    """Raised when a structured line has a field without a bound value."""


def _needs_quotes(name: str, value: str) -> bool:
    return "," in value or " " in value or name == _ALWAYS_QUOTED


def encode_fields(fields: Mapping[str, Optional[object]]) -> str:
    """Render ``fields`` as ``<k1=v1,k2=v2,...>`` in mapping order."""
    parts: List[str] = []
    for name, value in fields.items():
        if value is None:
            raise EncodingError(f"Header problem: unbound value at {name} from {dict(fields)}")
        text = str(value)
        if _needs_quotes(name, text):
            text = f'"{text}"'
        parts.append(f"{name}={text}")
    return "<" + ",".join(parts) + ">"


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class MetadataLine:
    """One metadata line; ordering follows the rendered ``key=value`` text."""

    key: str
    value: str

    @classmethod
    def structured(cls, key: str, fields: Mapping[str, Optional[object]]) -> "MetadataLine":
        return cls(key=key, value=encode_fields(fields))

    def __str__(self) -> str:
        return f"{self.key}={self.value}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MetadataLine):
            return NotImplemented
        return self.key == other.key and self.value == other.value

    def __hash__(self) -> int:
        return hash((self.key, self.value))

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, MetadataLine):
            return NotImplemented
        return str(self) < str(other)


def decode_line(text: str) -> MetadataLine:
    """Split a scalar ``KEY=VALUE`` line on its first ``=``.

    A leading ``##`` is stripped. Structured values are returned verbatim as the value.
    """
    line = text.rstrip("\r\n")
    if line.startswith("##"):
        line = line[2:]
    key, sep, value = line.partition("=")
    if not sep:
        raise ValueError(f"Not a key=value metadata line: {text!r}")
    return MetadataLine(key=key, value=value)


def format_metadata_block(lines: Iterable[MetadataLine]) -> List[str]:
    """Sorted, de-duplicated ``##key=value`` lines for a file header."""
    return ["##" + str(line) for line in sorted(set(lines))]
