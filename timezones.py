"""Resolve stored timezone labels and answer calendar questions in a user's zone.

Every "what day is it for this user" decision goes through this module; it is
also the only place that reads the system clock (``utc_now``).
"""

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")

# Representative zones without DST, so the offset always matches the label.
UTC_OFFSET_TO_IANA: dict[str, str] = {
    "UTC-12:00": "Etc/GMT+12",
    "UTC-11:00": "Pacific/Pago_Pago",
    "UTC-10:00": "Pacific/Honolulu",
    "UTC-09:30": "Pacific/Marquesas",
    "UTC-09:00": "Pacific/Gambier",
    "UTC-08:00": "Pacific/Pitcairn",
    "UTC-07:00": "America/Phoenix",
    "UTC-06:00": "America/Regina",
    "UTC-05:00": "America/Bogota",
    "UTC-04:00": "America/Caracas",
    "UTC-03:00": "America/Sao_Paulo",
    "UTC-02:00": "Atlantic/South_Georgia",
    "UTC-01:00": "Atlantic/Cape_Verde",
    "UTC+00:00": "UTC",
    "UTC+01:00": "Africa/Lagos",
    "UTC+02:00": "Africa/Johannesburg",
    "UTC+03:00": "Europe/Moscow",
    "UTC+03:30": "Asia/Tehran",
    "UTC+04:00": "Asia/Dubai",
    "UTC+04:30": "Asia/Kabul",
    "UTC+05:00": "Asia/Karachi",
    "UTC+05:30": "Asia/Kolkata",
    "UTC+05:45": "Asia/Kathmandu",
    "UTC+06:00": "Asia/Dhaka",
    "UTC+06:30": "Asia/Yangon",
    "UTC+07:00": "Asia/Bangkok",
    "UTC+08:00": "Asia/Shanghai",
    "UTC+08:45": "Australia/Eucla",
    "UTC+09:00": "Asia/Tokyo",
    "UTC+09:30": "Australia/Darwin",
    "UTC+10:00": "Australia/Brisbane",
    "UTC+11:00": "Pacific/Guadalcanal",
    "UTC+12:00": "Pacific/Tarawa",
    "UTC+13:00": "Pacific/Tongatapu",
    "UTC+14:00": "Pacific/Kiritimati",
}

_UTC_ALIASES = {"", "utc", "gmt", "z", "etc/utc", "etc/gmt"}
_OFFSET_RE = re.compile(
    r"^(?:UTC|GMT)?\s*(?P<sign>[+-])\s*(?P<hours>\d{1,2})(?::?(?P<minutes>\d{2}))?$",
    re.IGNORECASE,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_offset_label(label: str) -> Optional[str]:
    """Turn "+5:30", "GMT+0530" or "utc+05:30" into "UTC+05:30"."""
    match = _OFFSET_RE.match(label.strip())
    if not match:
        return None
    hours = int(match.group("hours"))
    minutes = int(match.group("minutes") or 0)
    if hours > 14 or minutes >= 60:
        return None
    return f"UTC{match.group('sign')}{hours:02d}:{minutes:02d}"


def resolve_name(label: Optional[str]) -> str:
    raw = (label or "").strip()
    if raw.lower() in _UTC_ALIASES:
        return "UTC"

    offset_label = normalize_offset_label(raw)
    if offset_label is not None:
        if offset_label == "UTC-00:00":
            return "UTC"
        iana = UTC_OFFSET_TO_IANA.get(offset_label)
        if iana is None:
            logger.warning(f"timezone_fallback: label={label!r} reason=unknown_offset")
            return "UTC"
        return iana

    try:
        ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"timezone_fallback: label={label!r} reason=unknown_zone")
        return "UTC"
    return raw


def resolve(label: Optional[str]) -> ZoneInfo:
    """Map an IANA name or fixed-offset label to a zone; unknown input is UTC."""
    return _zone(resolve_name(label))


@lru_cache(maxsize=256)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def today_in(zone: ZoneInfo, now: Optional[datetime] = None) -> date:
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(zone).date()


def day_bounds(day: date, zone: ZoneInfo) -> tuple[datetime, datetime]:
    """Return the UTC instants [start, end) covering ``day`` in ``zone``."""
    start_local = datetime.combine(day, time.min, tzinfo=zone)
    end_local = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def to_storage(instant: datetime) -> datetime:
    """Naive UTC, the form DateTime columns are stored in."""
    if instant.tzinfo is None:
        return instant
    return instant.astimezone(timezone.utc).replace(tzinfo=None)


def local_noon_utc(day: date, zone: ZoneInfo) -> datetime:
    local = datetime.combine(day, time(12, 0), tzinfo=zone)
    return to_storage(local)
