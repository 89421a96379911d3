"""Fragment file content.

Fragments store every file as a string. Binary files use one of two
string-encoded forms; everything else is plain UTF-8 text:

  - "__BASE64__<payload>"
  - "data:<mime>;base64,<payload>"

`parse_content` turns the stored string into an explicit variant so callers
never sniff prefixes themselves.
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Union

BASE64_MARKER = "__BASE64__"

_DATA_URI_RE = re.compile(r"^data:([^;,]+);base64,(.*)$", re.DOTALL)


@dataclass(frozen=True)
class TextContent:
    text: str

    def to_bytes(self) -> bytes:
        return self.text.encode("utf-8")

    def encode(self) -> str:
        return self.text


@dataclass(frozen=True)
class Base64Content:
    data: str

    def to_bytes(self) -> bytes:
        return _b64decode(self.data)

    def encode(self) -> str:
        return BASE64_MARKER + self.data


@dataclass(frozen=True)
class DataUriContent:
    mime: str
    data: str

    def to_bytes(self) -> bytes:
        return _b64decode(self.data)

    def encode(self) -> str:
        return f"data:{self.mime};base64,{self.data}"


FileContent = Union[TextContent, Base64Content, DataUriContent]


def _b64decode(data: str) -> bytes:
    cleaned = "".join((data or "").split())
    # Stored payloads are sometimes missing their padding.
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64 payload: {e}") from e


def parse_content(raw: str) -> FileContent:
    s = raw if isinstance(raw, str) else str(raw or "")
    if s.startswith(BASE64_MARKER):
        return Base64Content(s[len(BASE64_MARKER) :])
    if s.startswith("data:"):
        m = _DATA_URI_RE.match(s)
        if m:
            return DataUriContent(mime=m.group(1), data=m.group(2))
    return TextContent(s)


def decode_content(raw: str) -> bytes:
    return parse_content(raw).to_bytes()


def encode_bytes(data: bytes, *, mime: str | None = None) -> FileContent:
    """Choose the stored form for raw bytes: text when it is valid UTF-8."""
    if mime is None and b"\x00" not in data:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            pass
        else:
            if not text.startswith(BASE64_MARKER) and not _DATA_URI_RE.match(text):
                return TextContent(text)
    payload = base64.b64encode(data).decode("ascii")
    if mime:
        return DataUriContent(mime=mime, data=payload)
    return Base64Content(payload)
