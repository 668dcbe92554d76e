# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Ordered, multi-valued message header.

A Header keeps fields in the order they were read or added. Lookups are
case-insensitive and repeated fields (e.g. two ``Date`` lines) are kept in
their original order. No MIME semantics are validated here.

Example::

    with open("message.eml", "rb") as fp:
        header = Header.parse(fp)
        body = fp.read()

    header.add("X-Delivered-By", "mdc")
    for value in header.fields("Received"):
        ...
"""

from __future__ import annotations

import io
from collections.abc import Iterable, Iterator
from typing import BinaryIO

from .errors import MalformedHeaderError

DEFAULT_MAX_HEADER_BYTES = 1024 * 1024

_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


def _valid_name(name: str) -> bool:
    return bool(name) and all(33 <= ord(ch) <= 126 and ch != ":" for ch in name)


class Header:
    """Ordered collection of ``(name, value)`` header fields."""

    def __init__(self, fields: Iterable[tuple[str, str]] = ()):
        self._fields: list[tuple[str, str]] = []
        for name, value in fields:
            self.add(name, value)

    @classmethod
    def parse(cls, stream: BinaryIO, *, max_bytes: int = DEFAULT_MAX_HEADER_BYTES) -> Header:
        """Read a header block from a binary stream.

        Reads up to and including the empty line that terminates the header,
        leaving the stream positioned at the first body byte. Folded lines
        are unfolded into the preceding field value.

        Args:
            stream: Binary stream supporting ``readline()``.
            max_bytes: Maximum total header size accepted.

        Raises:
            MalformedHeaderError: On invalid field syntax, a header larger
                than ``max_bytes``, or end of stream before the terminator.
        """
        fields: list[list[str]] = []
        total = 0

        while True:
            raw = stream.readline(max_bytes - total + 1)
            if not raw:
                raise MalformedHeaderError("Unexpected end of stream before end of header")
            total += len(raw)
            if total > max_bytes:
                raise MalformedHeaderError(f"Header exceeds {max_bytes} bytes")
            if not raw.endswith(b"\n"):
                raise MalformedHeaderError("Unexpected end of stream before end of header")

            line = raw.rstrip(b"\r\n").decode(_ENCODING, _ERRORS)
            if not line:
                break

            if line[0] in " \t":
                if not fields:
                    raise MalformedHeaderError("Continuation line without a preceding field")
                fields[-1][1] += line
                continue

            name, sep, value = line.partition(":")
            if not sep:
                raise MalformedHeaderError(f"Malformed header line: {line[:80]!r}")
            if not _valid_name(name):
                raise MalformedHeaderError(f"Invalid header field name: {name[:80]!r}")
            fields.append([name, value])

        header = cls()
        header._fields = [(name, value.strip()) for name, value in fields]
        return header

    @classmethod
    def parse_bytes(cls, data: bytes, **kwargs) -> tuple[Header, bytes]:
        """Parse a header from ``data`` and return it with the remaining body bytes."""
        stream = io.BytesIO(data)
        header = cls.parse(stream, **kwargs)
        return header, stream.read()

    def add(self, name: str, value: str) -> None:
        """Append a field. Existing fields with the same name are kept."""
        if not _valid_name(name):
            raise MalformedHeaderError(f"Invalid header field name: {name!r}")
        if "\r" in value or "\n" in value:
            raise MalformedHeaderError(f"Header field {name} contains a line break")
        self._fields.append((name, value))

    def fields(self, name: str) -> Iterator[str]:
        """Yield the values of all fields called ``name``, in original order."""
        key = name.lower()
        for field_name, value in self._fields:
            if field_name.lower() == key:
                yield value

    def get(self, name: str, default: str | None = None) -> str | None:
        """Return the first value of ``name`` or ``default``."""
        return next(self.fields(name), default)

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def names(self) -> list[str]:
        """Distinct field names in order of first appearance."""
        seen: dict[str, str] = {}
        for name, _ in self._fields:
            seen.setdefault(name.lower(), name)
        return list(seen.values())

    def copy(self) -> Header:
        header = Header()
        header._fields = list(self._fields)
        return header

    def to_bytes(self) -> bytes:
        """Render the header as CRLF-terminated lines plus the empty terminator line."""
        lines = [f"{name}: {value}\r\n" for name, value in self._fields]
        lines.append("\r\n")
        return "".join(lines).encode(_ENCODING, _ERRORS)

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._fields))

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        return f"<Header {len(self._fields)} fields>"
