"""Durable JSON checkpoint of the full video list."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Sequence

from .models import Video

logger = logging.getLogger("video_downloader")


class CheckpointError(RuntimeError):
    """Raised when the checkpoint cannot be read or written."""


def load_videos(path: Path) -> List[Video]:
    """Load the checkpoint at ``path``; a missing file is an empty catalog.

    An existing file that cannot be parsed raises ``CheckpointError`` rather
    than being treated as empty, which would discard recorded progress.
    """
    path = Path(path)
    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CheckpointError(f"Cannot read checkpoint {path}: {exc}") from exc
    if not isinstance(raw, list):
        raise CheckpointError(f"Checkpoint {path} must contain a JSON array")

    videos: List[Video] = []
    for position, entry in enumerate(raw, start=1):
        if not isinstance(entry, dict):
            raise CheckpointError(f"Checkpoint {path} entry {position} is not an object")
        try:
            videos.append(Video.from_dict(entry))
        except (TypeError, ValueError) as exc:
            raise CheckpointError(
                f"Checkpoint {path} entry {position} is invalid: {exc}"
            ) from exc
    logger.info("Loaded %d videos from %s", len(videos), path.resolve())
    return videos


def save_videos(path: Path, videos: Sequence[Video]) -> None:
    """Atomically replace the checkpoint at ``path`` with ``videos``."""
    path = Path(path)
    payload = json.dumps([video.to_dict() for video in videos], indent=2, ensure_ascii=False)
    tmp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except OSError as exc:
        if tmp_path is not None:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
        raise CheckpointError(f"Cannot write checkpoint {path}: {exc}") from exc
    logger.debug("Saved %d videos to %s", len(videos), path.resolve())
