from __future__ import annotations

import os
import re
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Optional

from .errors import ValidationError

DEFAULT_APP_DIRNAME = "punchclock"


def default_data_dir() -> Path:
    """Return OS-appropriate data directory for punchclock.

    - Windows: %APPDATA%\\punchclock
    - macOS:  ~/Library/Application Support/punchclock
    - Linux:  ~/.local/share/punchclock (or $XDG_DATA_HOME)

    ``PUNCHCLOCK_HOME`` overrides all of the above.
    """
    override = os.environ.get("PUNCHCLOCK_HOME")
    if override:
        return Path(override).expanduser()

    if os.name == "nt":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / DEFAULT_APP_DIRNAME
        return Path.home() / "AppData" / "Roaming" / DEFAULT_APP_DIRNAME

    # XDG for *nix
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / DEFAULT_APP_DIRNAME

    if sys_platform() == "darwin":
        return Path.home() / "Library" / "Application Support" / DEFAULT_APP_DIRNAME

    return Path.home() / ".local" / "share" / DEFAULT_APP_DIRNAME


def sys_platform() -> str:
    import platform
    return platform.system().lower()


def ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def format_duration(seconds: float) -> str:
    seconds = max(0.0, float(seconds))
    total = int(round(seconds))
    h = total // 3600
    m = (total % 3600) // 60
    s = total % 60
    if h > 0:
        return f"{h}h {m:02d}m {s:02d}s"
    if m > 0:
        return f"{m}m {s:02d}s"
    return f"{s}s"


_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([dhms])", re.IGNORECASE)
_DURATION_FULL_RE = re.compile(r"^\s*(?:\d+(?:\.\d+)?\s*[dhms]\s*)+$", re.IGNORECASE)
_UNIT_SECONDS = {"d": 86400, "h": 3600, "m": 60, "s": 1}


def parse_duration(text: str) -> float:
    """Parse "2h", "30m", "1d", "2.5h" or "1h 30m" into seconds."""
    if not text or not _DURATION_FULL_RE.match(text):
        raise ValidationError(f'Invalid duration {text!r}. Use a format like "2h", "30m", "1d", "2.5h" or "1h 30m"')
    total = 0.0
    for value, unit in _DURATION_PART_RE.findall(text):
        total += float(value) * _UNIT_SECONDS[unit.lower()]
    if total <= 0:
        raise ValidationError("Duration must be positive")
    return total


_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def parse_timestamp(text: str, now: Optional[datetime] = None) -> datetime:
    """Parse an ``--at`` value into an aware UTC datetime.

    Accepts ISO 8601 (naive values are local time) or ``HH:MM[:SS]`` meaning
    that time today, local.
    """
    s = text.strip()
    m = _CLOCK_RE.match(s)
    if m:
        now_local = (now or datetime.now(timezone.utc)).astimezone()
        try:
            t = time(int(m.group(1)), int(m.group(2)), int(m.group(3) or 0))
        except ValueError as e:
            raise ValidationError(f"Invalid time {text!r}: {e}") from e
        dt = datetime.combine(now_local.date(), t, tzinfo=now_local.tzinfo)
        return dt.astimezone(timezone.utc)

    try:
        dt = datetime.fromisoformat(s)
    except ValueError as e:
        raise ValidationError(f"Invalid timestamp {text!r}; use ISO 8601 or HH:MM") from e
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.astimezone(timezone.utc)


def parse_date(text: str) -> date:
    try:
        return date.fromisoformat(text.strip())
    except ValueError as e:
        raise ValidationError(f"Invalid date {text!r}; use YYYY-MM-DD") from e


def local_midnight_utc(d: date) -> datetime:
    return datetime.combine(d, time()).astimezone().astimezone(timezone.utc)


def date_range_utc(from_text: Optional[str], to_text: Optional[str]) -> tuple[Optional[datetime], Optional[datetime]]:
    """Turn inclusive local ``--from``/``--to`` dates into a half-open UTC window."""
    start = local_midnight_utc(parse_date(from_text)) if from_text else None
    end = local_midnight_utc(parse_date(to_text) + timedelta(days=1)) if to_text else None
    if start is not None and end is not None and end <= start:
        raise ValidationError("--to must not be before --from")
    return start, end
