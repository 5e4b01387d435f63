from __future__ import annotations
import re
import uuid

_JAVA_PUBLIC_CLASS = re.compile(r"public\s+(?:(?:final|abstract)\s+)*class\s+(\w+)")


def new_run_id() -> str:
    return uuid.uuid4().hex


def normalize_lang(tag: str) -> str:
    return (tag or "").strip().lower()


def extract_java_class_name(source: str, default: str = "Main") -> str:
    """Name of the first public class in `source`, or `default` when there is none."""
    m = _JAVA_PUBLIC_CLASS.search(source or "")
    return m.group(1) if m else default


def decode_output(data: bytes | None, limit: int) -> str:
    """Decode captured process output, cutting it at `limit` bytes."""
    data = data or b""
    cut = limit > 0 and len(data) > limit
    if cut:
        data = data[:limit]
    text = data.decode("utf-8", errors="replace")
    return text + "\n[output truncated]\n" if cut else text
