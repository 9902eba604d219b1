"""Publication stage: register downloaded videos as scenes in Stash."""

from __future__ import annotations

import asyncio
import logging
import posixpath
from pathlib import PureWindowsPath
from typing import Any, Dict, List, Optional

import requests

from .config import StashConfig
from .models import Performer, Video
from .session import cancellable_sleep
from .utils import height_to_centimeters, pounds_to_kilograms, rewrite_url

logger = logging.getLogger("video_downloader")

SCAN_MUTATION = """
mutation MetadataScan($input: ScanMetadataInput!) {
  metadataScan(input: $input)
}"""

FIND_SCENES_QUERY = """
query FindScenes($filter: FindFilterType!) {
  findScenes(filter: $filter) {
    scenes { id title files { path } }
  }
}"""

FIND_TAGS_QUERY = """
query FindTags($filter: FindFilterType!) {
  findTags(filter: $filter) { count tags { id name } }
}"""

CREATE_TAG_MUTATION = """
mutation TagCreate($input: TagCreateInput!) {
  tagCreate(input: $input) { id }
}"""

FIND_PERFORMERS_QUERY = """
query FindPerformers($filter: FindFilterType!) {
  findPerformers(filter: $filter) { count performers { id name } }
}"""

CREATE_PERFORMER_MUTATION = """
mutation PerformerCreate($input: PerformerCreateInput!) {
  performerCreate(input: $input) { id }
}"""

UPDATE_PERFORMER_MUTATION = """
mutation PerformerUpdate($input: PerformerUpdateInput!) {
  performerUpdate(input: $input) { id }
}"""

FIND_STUDIOS_QUERY = """
query FindStudios($filter: FindFilterType!) {
  findStudios(filter: $filter) { count studios { id name } }
}"""

CREATE_STUDIO_MUTATION = """
mutation StudioCreate($input: StudioCreateInput!) {
  studioCreate(input: $input) { id }
}"""

UPDATE_SCENE_MUTATION = """
mutation SceneUpdate($input: SceneUpdateInput!) {
  sceneUpdate(input: $input) { id }
}"""

SCAN_INPUT = {
    "scanGenerateCovers": False,
    "scanGeneratePreviews": False,
    "scanGenerateImagePreviews": False,
    "scanGenerateSprites": False,
    "scanGeneratePhashes": True,
    "scanGenerateThumbnails": False,
    "scanGenerateClipPreviews": False,
}

STASH_GENDERS = {
    "MALE",
    "FEMALE",
    "TRANSGENDER_MALE",
    "TRANSGENDER_FEMALE",
    "INTERSEX",
    "NON_BINARY",
}


class StashError(RuntimeError):
    """Raised when the Stash API rejects a request or returns errors."""


def _strip(value: Optional[str]) -> Optional[str]:
    return value.strip() if value else value


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def normalize_gender(raw: Optional[str]) -> Optional[str]:
    """Map free text such as ``"Non binary"`` onto a Stash gender enum value."""
    if not raw:
        return None
    candidate = raw.strip().upper().replace("-", "_").replace(" ", "_")
    return candidate if candidate in STASH_GENDERS else None


class StashPublisher:
    """Minimal GraphQL client for the handful of Stash operations we need."""

    def __init__(
        self,
        config: StashConfig,
        session: Optional[requests.Session] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.config = config
        self.cancel_event = cancel_event
        self._session = session or requests.Session()

    def close(self) -> None:
        self._session.close()

    def _post(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["ApiKey"] = self.config.api_key
        resp = self._session.post(
            self.config.url,
            json={"query": query, "variables": variables},
            headers=headers,
            timeout=self.config.request_timeout,
        )
        if not resp.ok:
            raise StashError(f"GraphQL HTTP {resp.status_code}: {resp.text[:500]}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise StashError(f"Failed to parse GraphQL JSON: {resp.text[:500]}") from exc
        if payload.get("errors"):
            raise StashError(f"GraphQL returned errors: {payload['errors']}")
        return payload.get("data") or {}

    async def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._post, query, variables)

    async def _find_id(
        self, query: str, field: str, collection: str, name: str
    ) -> Optional[str]:
        data = await self._graphql(query, {"filter": {"q": f'"{name}"'}})
        wanted = name.upper()
        for entry in (data.get(field) or {}).get(collection) or []:
            if (entry.get("name") or "").upper() == wanted:
                return entry.get("id")
        return None

    def scene_file_path(self, video: Video) -> str:
        filename = PureWindowsPath(video.downloaded_file or "").name
        return posixpath.join(self.config.stash_path, filename).replace("\\", "/")

    async def _find_scene(self, video: Video) -> str:
        file_path = self.scene_file_path(video)
        wanted = file_path.upper()
        attempts = max(1, self.config.scene_poll_attempts)
        for attempt in range(1, attempts + 1):
            data = await self._graphql(FIND_SCENES_QUERY, {"filter": {"q": f'"{file_path}"'}})
            for scene in (data.get("findScenes") or {}).get("scenes") or []:
                files = scene.get("files") or []
                if files and (files[0].get("path") or "").upper() == wanted:
                    return scene["id"]
            if attempt < attempts:
                logger.debug("%s: Scene not indexed yet, polling again", video.id)
                await cancellable_sleep(self.config.scene_poll_delay, self.cancel_event)
        raise StashError(f"Scene for {file_path} not found after scanning")

    async def _ensure_tag(self, name: str) -> str:
        tag_id = await self._find_id(FIND_TAGS_QUERY, "findTags", "tags", name)
        if tag_id is None:
            data = await self._graphql(CREATE_TAG_MUTATION, {"input": {"name": name}})
            tag_id = data["tagCreate"]["id"]
        return tag_id

    async def _ensure_studio(self, name: str) -> str:
        studio_id = await self._find_id(FIND_STUDIOS_QUERY, "findStudios", "studios", name)
        if studio_id is None:
            data = await self._graphql(CREATE_STUDIO_MUTATION, {"input": {"name": name}})
            studio_id = data["studioCreate"]["id"]
        return studio_id

    async def _ensure_performer(self, performer: Performer) -> str:
        config = self.config
        name = performer.name.strip()
        url = _strip(
            rewrite_url(performer.url, config.performer_url_search, config.performer_url_replace)
        )
        performer_id = await self._find_id(
            FIND_PERFORMERS_QUERY, "findPerformers", "performers", name
        )
        if performer_id is None:
            data = await self._graphql(
                CREATE_PERFORMER_MUTATION, {"input": _compact({"name": name, "url": url})}
            )
            performer_id = data["performerCreate"]["id"]

        height = None
        if config.performer_height_convert and performer.height:
            try:
                height = height_to_centimeters(performer.height)
            except ValueError as exc:
                logger.warning("Ignoring height for performer %s: %s", name, exc)
        weight = None
        if config.performer_weight_convert and performer.weight:
            try:
                weight = pounds_to_kilograms(performer.weight)
            except ValueError as exc:
                logger.warning("Ignoring weight for performer %s: %s", name, exc)

        image = rewrite_url(
            performer.cover_image,
            config.performer_cover_image_search,
            config.performer_cover_image_replace,
        )
        update = _compact(
            {
                "id": performer_id,
                "name": name,
                "url": url,
                "image": _strip(image),
                "details": _strip(performer.details),
                "country": _strip(performer.country),
                "eye_color": _strip(performer.eye_color),
                "hair_color": _strip(performer.hair_color),
                "ethnicity": _strip(performer.ethnicity),
                "height_cm": height,
                "weight": weight,
                "gender": normalize_gender(performer.gender),
            }
        )
        await self._graphql(UPDATE_PERFORMER_MUTATION, {"input": update})
        return performer_id

    async def publish(self, video: Video) -> Video:
        config = self.config
        if not video.downloaded_file:
            raise StashError(f"Video {video.id} has no downloaded file to publish")
        logger.info("%s: Creating '%s' scene in Stash ...", video.id, video.label)

        await self._graphql(SCAN_MUTATION, {"input": SCAN_INPUT})
        scene_id = await self._find_scene(video)

        tag_ids: List[str] = []
        for tag in video.tags:
            tag_ids.append(await self._ensure_tag(tag))
        performer_ids: List[str] = []
        for performer in video.performers:
            performer_ids.append(await self._ensure_performer(performer))
        if video.studio:
            studio_id = await self._ensure_studio(video.studio)
        else:
            studio_id = config.studio_id

        scene = _compact(
            {
                "id": scene_id,
                "title": _strip(video.title),
                "details": _strip(video.details),
                "url": _strip(
                    rewrite_url(video.url, config.scene_url_search, config.scene_url_replace)
                ),
                "date": video.date.isoformat() if video.date else None,
                "tag_ids": tag_ids,
                "performer_ids": performer_ids,
                "studio_id": studio_id,
                "cover_image": _strip(
                    rewrite_url(
                        video.cover_image,
                        config.scene_cover_image_search,
                        config.scene_cover_image_replace,
                    )
                ),
            }
        )
        await self._graphql(UPDATE_SCENE_MUTATION, {"input": scene})

        video.published = True
        logger.info("%s: Updated scene %s in Stash for '%s'", video.id, scene_id, video.label)
        return video
