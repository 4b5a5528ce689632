# SPDX-License-Identifier: BSD-2
from typing import (
    Optional,
    Union,
    Dict,
    Tuple,
)


def _CLASS_INT_ATTRS_from_string(
    cls: object, str_value: str, fixup_map: Optional[Dict[str, str]] = None
) -> int:
    """
    Given a class, lookup int attributes by name and return that attribute value.
    :param cls: The class to search.
    :param str_value: The key for the attribute in the class.
    """

    friendly = {
        key.upper(): value
        for (key, value) in vars(cls).items()
        if isinstance(value, int)
    }

    if fixup_map is not None and str_value.upper() in fixup_map:
        str_value = fixup_map[str_value.upper()]

    return friendly[str_value.upper()]


def _to_bytes(
    value: Union[None, bytes, bytearray, str, memoryview],
    name: str = "value",
    encoding: str = "utf-8",
) -> bytes:
    """Convert a secret or buffer argument to bytes.

    None:  b""
    bytes: bytes
    str:   str.encode()
    """
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode(encoding=encoding)
    if hasattr(value, "__bytes__"):
        return bytes(value)
    raise TypeError(
        f"expected {name} to be bytes, str or None, got {value.__class__.__name__}"
    )


def _unpack_int(buf: bytes, offset: int, size: int) -> Tuple[int, int]:
    end = offset + size
    if end > len(buf):
        raise ValueError(
            f"buffer too short, need {size} bytes at offset {offset}, have {len(buf) - offset}"
        )
    return int.from_bytes(buf[offset:end], byteorder="big"), end


def _unpack_sized(buf: bytes, offset: int) -> Tuple[bytes, int]:
    size, offset = _unpack_int(buf, offset, 2)
    end = offset + size
    if end > len(buf):
        raise ValueError(
            f"buffer too short for sized buffer of {size} bytes at offset {offset}"
        )
    return bytes(buf[offset:end]), end


def _pack_sized(data: bytes) -> bytes:
    if len(data) > 0xFFFF:
        raise ValueError(f"sized buffer too large, got {len(data)} bytes")
    return len(data).to_bytes(2, byteorder="big") + data
