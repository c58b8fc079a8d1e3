from __future__ import annotations

import base64
import binascii
import gzip
import json
import zlib
from typing import Any, Mapping

from .errors import ParseError

MODE_PERMANENT = "mode_permanent"
OPERATING_MODE = "operating_mode"

DEFAULT_REFERENTIALS: dict[str, dict[int, str]] = {
    MODE_PERMANENT: {0: "comfort", 1: "reduced", 2: "standby", 3: "off"},
    OPERATING_MODE: {0: "heat", 1: "cool", 2: "auto"},
}


class ReferentialTable:
    """Read-only code <-> label lookup for device protocol fields."""

    def __init__(self, categories: Mapping[str, Mapping[int, str]] | None = None, *, version: str | None = None):
        src = categories if categories is not None else DEFAULT_REFERENTIALS
        self._by_code: dict[str, dict[int, str]] = {str(k): dict(v) for k, v in src.items()}
        self._by_label: dict[str, dict[str, int]] = {
            cat: {label.lower(): code for code, label in m.items()} for cat, m in self._by_code.items()
        }
        self.version = version

    @classmethod
    def defaults(cls) -> "ReferentialTable":
        return cls(DEFAULT_REFERENTIALS, version="builtin")

    def categories(self) -> list[str]:
        return sorted(self._by_code)

    def label(self, category: str, code: int | None) -> str | None:
        if code is None:
            return None
        return self._by_code.get(category, {}).get(int(code))

    def code(self, category: str, label: str) -> int | None:
        return self._by_label.get(category, {}).get(str(label).strip().lower())

    def labels(self, category: str) -> list[str]:
        m = self._by_code.get(category, {})
        return [m[k] for k in sorted(m)]

    def __len__(self) -> int:
        return len(self._by_code)


def _decompress(blob: bytes) -> bytes:
    if blob[:2] == b"\x1f\x8b":
        return gzip.decompress(blob)
    try:
        return zlib.decompress(blob)
    except zlib.error:
        # raw deflate stream without header
        return zlib.decompress(blob, -zlib.MAX_WBITS)


def _categories_from(obj: Any) -> dict[str, dict[int, str]]:
    if not isinstance(obj, dict):
        raise ParseError("referentials: expected an object of categories")
    out: dict[str, dict[int, str]] = {}
    for cat, entries in obj.items():
        table: dict[int, str] = {}
        if isinstance(entries, dict):
            items = entries.items()
        elif isinstance(entries, list):
            items = [
                (e.get("code"), e.get("label", e.get("value")))
                for e in entries
                if isinstance(e, dict)
            ]
        else:
            continue
        for code, label in items:
            try:
                table[int(code)] = str(label)
            except (TypeError, ValueError):
                continue
        if table:
            out[str(cat)] = table
    return out


def decode_referentials(payload: Any) -> ReferentialTable:
    """Decode the compressed referentials payload.

    Accepts ``{"version": ..., "data": "<base64>"}``, a bare base64 string or
    raw compressed bytes. The decompressed body is a JSON object mapping each
    category to ``{code: label}`` or a list of ``{"code", "label"}`` entries.
    Categories missing from the payload fall back to the built-in defaults.
    """
    version: str | None = None
    if isinstance(payload, dict):
        version = str(payload["version"]) if payload.get("version") is not None else None
        payload = payload.get("data")
    if isinstance(payload, str):
        try:
            blob = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ParseError(f"referentials: bad base64 ({e})") from e
    elif isinstance(payload, (bytes, bytearray)):
        blob = bytes(payload)
    else:
        raise ParseError("referentials: missing data")

    try:
        text = _decompress(blob).decode("utf-8")
        obj = json.loads(text)
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"referentials: cannot decode payload ({e})") from e

    merged: dict[str, dict[int, str]] = {k: dict(v) for k, v in DEFAULT_REFERENTIALS.items()}
    merged.update(_categories_from(obj))
    return ReferentialTable(merged, version=version)
