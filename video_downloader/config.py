"""Configuration objects and loading for the video pipeline."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union, get_args, get_origin, get_type_hints

DEFAULT_PREFERRED_QUALITIES = ["1080p", "720p", "540p", "480p", "360p", "240p", "160p"]


class ConfigError(ValueError):
    """Raised when a configuration file cannot be used."""


@dataclass
class Cookie:
    """Cookie injected into the browser context before the first navigation."""

    name: str
    value: str
    domain: str
    path: str = "/"


@dataclass
class GeneralConfig:
    """Browser, checkpoint and run-range settings."""

    cache_path: Path = Path("cache")
    cache_file_name: Optional[str] = None
    ws_endpoint: Optional[str] = None
    existing_page: bool = False
    user_agent: Optional[str] = None
    headless: bool = True
    navigation_timeout: float = 60.0
    max_attempts: int = 3
    browser_restart_delay: float = 5.0
    start_video: int = -1
    end_video: int = -1
    quit_after: int = 0


@dataclass
class CatalogConfig:
    """Settings for crawling the paged video list."""

    pages_url: str = ""
    title_selector: str = ""
    link_selector: str = ""
    allowed_href_prefix: str = ""
    start_page: int = 1
    end_page: int = 1
    videos_per_page: int = 0
    wait_after_load: float = 1.0
    scroll_step: int = 500
    scroll_delay: float = 1.0
    max_scrolls: int = 50
    force_refresh: bool = False
    resume_scrape: bool = False
    stop_after_catalog: bool = False


@dataclass
class DownloadConfig:
    """Settings for the acquisition stage."""

    move_path: Path = Path("downloads")
    popup_selector: str = ""
    link_selector: str = ""
    download_type: str = "single"
    preferred_quality_type: str = "title"
    preferred_qualities: List[str] = field(
        default_factory=lambda: list(DEFAULT_PREFERRED_QUALITIES)
    )
    download_timeout: float = 600.0
    force_rerun: bool = False


@dataclass
class ScrapeConfig:
    """Settings for the metadata enrichment stage."""

    title_selector: str = ""
    details_selector: str = ""
    date_selector: str = ""
    date_format: str = "%Y-%m-%d"
    date_remove_suffix: bool = False
    performers_selector: str = ""
    studio_selector: str = ""
    tags_selector: str = ""
    cover_image_selector: str = ""
    performer_cover_image_selector: str = ""
    wait_after_load: float = 5.0
    force_rerun: bool = False


@dataclass
class StashConfig:
    """Settings for publishing scenes to the Stash GraphQL API."""

    url: str = ""
    api_key: Optional[str] = None
    stash_path: str = ""
    studio_id: Optional[str] = None
    scene_url_search: str = ""
    scene_url_replace: str = ""
    scene_cover_image_search: str = ""
    scene_cover_image_replace: str = ""
    performer_url_search: str = ""
    performer_url_replace: str = ""
    performer_cover_image_search: str = ""
    performer_cover_image_replace: str = ""
    performer_height_convert: bool = False
    performer_weight_convert: bool = False
    scene_poll_attempts: int = 30
    scene_poll_delay: float = 2.0
    request_timeout: float = 30.0
    force_rerun: bool = False


@dataclass
class AppConfig:
    """Top-level settings that control a full pipeline run."""

    name: str = "videos"
    general: GeneralConfig = field(default_factory=GeneralConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    scrape: ScrapeConfig = field(default_factory=ScrapeConfig)
    stash: StashConfig = field(default_factory=StashConfig)
    cookies: List[Cookie] = field(default_factory=list)

    @property
    def checkpoint_path(self) -> Path:
        file_name = self.general.cache_file_name or f"{self.name}.json"
        return Path(self.general.cache_path) / file_name


_PATH_FIELDS = {"cache_path", "move_path"}


def _matches(value: Any, hint: Any) -> bool:
    """Return whether a decoded JSON value fits a field annotation."""
    origin = get_origin(hint)
    if origin is Union:
        return any(_matches(value, arg) for arg in get_args(hint))
    if origin is list:
        (item,) = get_args(hint) or (Any,)
        return isinstance(value, list) and all(_matches(entry, item) for entry in value)
    if hint is Any:
        return True
    if hint is type(None):
        return value is None
    if hint is Path:
        return isinstance(value, str)
    if hint is bool:
        return isinstance(value, bool)
    if hint is int:
        return isinstance(value, int) and not isinstance(value, bool)
    if hint is float:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, hint)


def _build_section(cls: type, raw: Any, section: str) -> Any:
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"Section '{section}' must be an object")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}': {', '.join(unknown)}")
    hints = get_type_hints(cls)
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        if not _matches(value, hints[key]):
            raise ConfigError(f"Invalid value for '{section}.{key}': {value!r}")
        values[key] = Path(value).expanduser() if key in _PATH_FIELDS else value
    try:
        return cls(**values)
    except TypeError as exc:
        raise ConfigError(f"Invalid '{section}': {exc}") from exc


def config_from_dict(data: Dict[str, Any]) -> AppConfig:
    """Build an ``AppConfig`` from a decoded JSON document."""
    sections = {
        "general": GeneralConfig,
        "catalog": CatalogConfig,
        "download": DownloadConfig,
        "scrape": ScrapeConfig,
        "stash": StashConfig,
    }
    unknown = sorted(set(data) - set(sections) - {"name", "cookies"})
    if unknown:
        raise ConfigError(f"Unknown configuration sections: {', '.join(unknown)}")

    name = data.get("name") or "videos"
    if not isinstance(name, str):
        raise ConfigError(f"Invalid value for 'name': {name!r}")
    raw_cookies = data.get("cookies") or []
    if not isinstance(raw_cookies, list):
        raise ConfigError("'cookies' must be a list")

    cookies = []
    for idx, raw_cookie in enumerate(raw_cookies):
        cookies.append(_build_section(Cookie, raw_cookie, f"cookies[{idx}]"))

    config = AppConfig(
        name=name,
        cookies=cookies,
        **{key: _build_section(cls, data.get(key), key) for key, cls in sections.items()},
    )
    if config.download.download_type not in ("single", "multi"):
        raise ConfigError(
            f"download.download_type must be 'single' or 'multi', got {config.download.download_type!r}"
        )
    if config.download.preferred_quality_type not in ("title", "url"):
        raise ConfigError(
            "download.preferred_quality_type must be 'title' or 'url', "
            f"got {config.download.preferred_quality_type!r}"
        )
    if config.general.max_attempts < 1:
        raise ConfigError("general.max_attempts must be at least 1")
    return config


def load_config(path: Path) -> AppConfig:
    """Read a JSON configuration file."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Cannot read configuration {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in configuration {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration {path} must contain a JSON object")
    return config_from_dict(data)
