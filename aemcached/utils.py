from __future__ import annotations

from .defaults import ENCODING


def bytestr(value: str | bytes | int | float, encoding: str = ENCODING) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode(encoding)
    return str(value).encode(encoding)


def decodedstr(value: str | bytes, encoding: str = ENCODING) -> str:
    if isinstance(value, bytes):
        return value.decode(encoding)
    return value
