"""Utility helpers for string normalization, unit conversion and path handling."""

from __future__ import annotations

import datetime as dt
import logging
import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
ORDINAL_SUFFIX_PATTERN = re.compile(r"\b(\d+)(st|nd|rd|th)\b")
HEIGHT_PATTERN = re.compile(r"^\s*(\d+)\s*'\s*(\d*)")

logger = logging.getLogger("video_downloader")

# Tried in order after the configured format.
FALLBACK_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%b %d, %Y",
    "%d %b %Y",
    "%B %d, %Y",
    "%d %B %Y",
)


def slugify(value: str, fallback: str = "video") -> str:
    """Generate a filesystem-friendly slug using ASCII characters only."""
    normalized = value.encode("ascii", "ignore").decode("ascii")
    normalized = normalized.lower()
    normalized = SLUG_PATTERN.sub("-", normalized).strip("-")
    return normalized or fallback


def parse_date(
    raw: Optional[str], date_format: str = "", remove_suffix: bool = False
) -> Optional[dt.date]:
    """Parse ``raw`` with ``date_format``, then with a few common layouts.

    Empty or unrecognised text yields ``None``; a missing date is logged,
    not treated as a failed scrape.
    """
    if not raw or not raw.strip():
        return None
    text = raw.strip()
    if remove_suffix:
        text = ORDINAL_SUFFIX_PATTERN.sub(r"\1", text)
    candidates = [date_format] if date_format else []
    candidates.extend(fmt for fmt in FALLBACK_DATE_FORMATS if fmt != date_format)
    for fmt in candidates:
        try:
            return dt.datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return dt.datetime.fromisoformat(text).date()
    except ValueError:
        logger.warning("Could not parse date %r (format %r), leaving it empty", raw, date_format)
        return None


def height_to_centimeters(height: str) -> int:
    """Convert a feet/inches height such as ``5'10"`` to whole centimeters."""
    if not height or not height.strip():
        raise ValueError("Height string cannot be empty")
    match = HEIGHT_PATTERN.match(height)
    if not match:
        raise ValueError(f"Invalid height {height!r}; expected a value like 5'10\"")
    feet = int(match.group(1))
    inches = int(match.group(2)) if match.group(2) else 0
    return round(feet * 30.48 + inches * 2.54)


def pounds_to_kilograms(pounds: str) -> int:
    """Convert a weight in pounds to whole kilograms."""
    try:
        lbs = float(str(pounds).strip())
    except ValueError as exc:
        raise ValueError(f"Weight {pounds!r} is not a number") from exc
    return round(lbs * 0.45359237)


def centimeters_to_inches(centimeters: float) -> float:
    """Convert centimeters to inches, rounded to one decimal place."""
    return round(centimeters / 2.54, 1)


def rewrite_url(url: Optional[str], search: str, replace: str) -> Optional[str]:
    """Apply a plain search/replace rewrite when ``search`` is configured."""
    if url is None or not search:
        return url
    return url.replace(search, replace)


def strip_query(url: str) -> str:
    """Drop the query string and fragment from ``url``."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def unique_destination(directory: Path, filename: str) -> Path:
    """Return a path in ``directory`` that does not exist yet.

    Collisions get a `` (n)`` counter before the extension.
    """
    candidate = directory / filename
    stem = Path(filename).stem
    suffix = Path(filename).suffix
    counter = 1
    while candidate.exists():
        candidate = directory / f"{stem} ({counter}){suffix}"
        counter += 1
    return candidate
