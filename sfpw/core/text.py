"""Helpers for rendering wire bytes in debug logs."""

from __future__ import annotations


def is_text(data: bytes) -> bool:
    return all(32 <= b <= 126 or b in (9, 10, 13) for b in data)


def hexdump(data: bytes) -> str:
    lines: list[str] = []
    for offset in range(0, len(data), 16):
        row = data[offset : offset + 16]
        left = " ".join(f"{b:02x}" for b in row[:8])
        right = " ".join(f"{b:02x}" for b in row[8:])
        ascii_col = "".join(chr(b) if 32 <= b < 127 else "." for b in row)
        lines.append(f"{offset:04x}  {left:<23}  {right:<23}  |{ascii_col}|")
    return "\n".join(lines)


def describe_body(data: bytes | None) -> str:
    if not data:
        return "<empty>"
    if is_text(data):
        return data.decode("ascii")
    return data.hex()
