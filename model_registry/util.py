"""Shared helpers: time, JSON, durable file writes."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce unix seconds, ISO strings or datetimes to an aware UTC datetime.
    Returns None for missing or unparseable input."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def mkdirp(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON document.

    A file that fails to parse is renamed aside (``<name>.corrupt.<ts>``) so it
    does not block later runs, and None is returned. A missing file is None.
    Other OS errors propagate: an unreadable medium is the caller's problem.
    """
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        ts = utc_now().strftime("%Y%m%dT%H%M%S")
        corrupt_path = path.with_name(f"{path.name}.corrupt.{ts}")
        try:
            path.rename(corrupt_path)
            logger.warning("Corrupt JSON: %s -> %s: %s", path.name, corrupt_path.name, e)
        except OSError:
            logger.warning("Corrupt JSON: %s: %s (could not rename)", path.name, e)
        return None


def atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON atomically with fsync + directory sync.
    Survives process crash and power loss."""
    dir_path = str(path.parent) or "."
    fd, tmp = tempfile.mkstemp(dir=dir_path, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, sort_keys=True, ensure_ascii=False, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, str(path))
        dir_fd = os.open(dir_path, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
