"""Data models used throughout the video pipeline."""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional


class Stage(Enum):
    """Pipeline stages in execution order; the value is the completion marker."""

    ACQUIRE = "acquired"
    ENRICH = "enriched"
    PUBLISH = "published"

    @property
    def marker(self) -> str:
        return self.value


class StageState(Enum):
    """Where a video sits in the acquire -> enrich -> publish progression."""

    PENDING = "pending"
    ACQUIRED = "acquired"
    ENRICHED = "enriched"
    PUBLISHED = "published"
    IGNORED = "ignored"


@dataclass
class Performer:
    """Performer credited on a video, with optional profile details."""

    name: str
    url: str
    cover_image: Optional[str] = None
    details: Optional[str] = None
    country: Optional[str] = None
    gender: Optional[str] = None
    ethnicity: Optional[str] = None
    hair_color: Optional[str] = None
    eye_color: Optional[str] = None
    height: Optional[str] = None
    weight: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Performer":
        known = {f.name for f in fields(cls)}
        values = {_LEGACY_KEYS.get(key, key): value for key, value in data.items()}
        return cls(**{key: value for key, value in values.items() if key in known})


@dataclass
class Video:
    """A discovered video tracked through acquisition, enrichment and publication."""

    id: int
    url: str
    page_num: int
    title: Optional[str] = None
    details: Optional[str] = None
    cover_image: Optional[str] = None
    date: Optional[dt.date] = None
    studio: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    performers: List[Performer] = field(default_factory=list)
    downloaded_file: Optional[str] = None
    acquired: bool = False
    enriched: bool = False
    published: bool = False
    ignore: bool = False

    def is_complete(self, stage: Stage) -> bool:
        return bool(getattr(self, stage.marker))

    @property
    def state(self) -> StageState:
        if self.ignore:
            return StageState.IGNORED
        if self.published:
            return StageState.PUBLISHED
        if self.enriched:
            return StageState.ENRICHED
        if self.acquired:
            return StageState.ACQUIRED
        return StageState.PENDING

    @property
    def label(self) -> str:
        return self.title or self.url

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat() if self.date else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Video":
        values = {_LEGACY_KEYS.get(key, key): value for key, value in data.items()}
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in values.items() if key in known}

        raw_date = values.get("date")
        if isinstance(raw_date, str) and raw_date:
            values["date"] = dt.date.fromisoformat(raw_date[:10])
        elif not raw_date:
            values["date"] = None
        values["performers"] = [
            Performer.from_dict(p) for p in values.get("performers") or []
        ]
        values["tags"] = list(values.get("tags") or [])
        if "acquired" not in values:
            # Older checkpoints only recorded the downloaded file.
            values["acquired"] = bool(values.get("downloaded_file"))
        return cls(**values)


# camelCase keys written by earlier checkpoint formats.
_LEGACY_KEYS = {
    "pageNum": "page_num",
    "coverImage": "cover_image",
    "downloadedFile": "downloaded_file",
    "scrapeComplete": "enriched",
    "stashComplete": "published",
    "hairColor": "hair_color",
    "eyeColor": "eye_color",
}
