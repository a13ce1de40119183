from __future__ import annotations

import logging
import math
import mimetypes
import pathlib
import re
import shutil
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence

from moviepy import VideoFileClip
from PIL import Image

from clip_service.config import Settings
from clip_service.errors import ValidationError
from clip_service.models.domain import MediaItem, MediaKind

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class UploadedMedia:
    filename: str
    data: bytes
    content_type: str | None = None


class MediaIntake:
    """Persists uploads under a per-session directory and resolves each slot's metadata.

    Slot ``i`` is the ``i``-th uploaded file in submission order; its metadata
    comes from the ``type{i}``, ``duration{i}`` and ``text{i}`` form fields.
    """

    def __init__(self, settings: Settings, logger: Optional[logging.Logger] = None) -> None:
        self.settings = settings
        self.temp_root = pathlib.Path(settings.temp_dir)
        self.log = logger or logging.getLogger(__name__)

    def session_dir(self, session_id: str) -> pathlib.Path:
        return self.temp_root / session_id

    def persist(
        self,
        session_id: str,
        uploads: Sequence[UploadedMedia],
        metadata: Mapping[str, str],
    ) -> List[MediaItem]:
        if not uploads:
            raise ValidationError("No files were uploaded")
        if len(uploads) > self.settings.max_media_items:
            raise ValidationError(
                f"At most {self.settings.max_media_items} media items are allowed, got {len(uploads)}"
            )
        session_dir = self.session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        items: List[MediaItem] = []
        try:
            for index, upload in enumerate(uploads):
                items.append(self._persist_item(session_id, session_dir, index, upload, metadata))
        except Exception:
            shutil.rmtree(session_dir, ignore_errors=True)
            raise
        self.log.info(
            "media intake completed",
            extra={"session_id": session_id, "media_item_count": len(items)},
        )
        return items

    def _persist_item(
        self,
        session_id: str,
        session_dir: pathlib.Path,
        index: int,
        upload: UploadedMedia,
        metadata: Mapping[str, str],
    ) -> MediaItem:
        kind = self._resolve_kind(index, upload, metadata.get(f"type{index}"))
        path = session_dir / f"{session_id}_{index}_{self._safe_name(upload.filename, index)}"
        path.write_bytes(upload.data)
        if kind == MediaKind.IMAGE:
            self._verify_image(path, index)
            duration = self.resolve_image_duration(metadata.get(f"duration{index}"))
        else:
            duration = self.resolve_video_duration(metadata.get(f"duration{index}"), path)
        caption = metadata.get(f"text{index}") or ""
        self.log.debug(
            "media item persisted",
            extra={"session_id": session_id, "index": index, "kind": kind.value, "duration": duration, "path": str(path)},
        )
        return MediaItem(source_path=str(path), kind=kind, display_duration=duration, caption_text=caption)

    def resolve_image_duration(self, raw: str | None) -> float:
        value = _parse_duration(raw)
        if value is None:
            return self.settings.image_default_duration
        return min(max(value, self.settings.image_min_duration), self.settings.image_max_duration)

    def resolve_video_duration(self, raw: str | None, path: pathlib.Path | None = None) -> float:
        value = _parse_duration(raw)
        if value is not None:
            return value
        if path is not None:
            probed = self.probe_video_duration(path)
            if probed is not None:
                return probed
        self.log.warning(
            "invalid video duration, using fallback",
            extra={"raw_duration": raw, "fallback": self.settings.video_fallback_duration},
        )
        return self.settings.video_fallback_duration

    def probe_video_duration(self, path: pathlib.Path) -> float | None:
        try:
            with VideoFileClip(str(path), audio=False) as clip:
                duration = clip.duration
        except Exception:
            self.log.debug("video duration probe failed", extra={"path": str(path)}, exc_info=True)
            return None
        return _parse_duration(None if duration is None else str(duration))

    def _resolve_kind(self, index: int, upload: UploadedMedia, raw: str | None) -> MediaKind:
        if raw:
            try:
                return MediaKind(raw.strip().lower())
            except ValueError as exc:
                raise ValidationError(f"type{index} must be 'image' or 'video', got {raw!r}") from exc
        guessed = upload.content_type or mimetypes.guess_type(upload.filename)[0] or ""
        if guessed.startswith("image/"):
            return MediaKind.IMAGE
        if guessed.startswith("video/"):
            return MediaKind.VIDEO
        raise ValidationError(f"type{index} is missing and cannot be inferred from {upload.filename!r}")

    def _verify_image(self, path: pathlib.Path, index: int) -> None:
        try:
            with Image.open(path) as image:
                image.verify()
        except (OSError, SyntaxError, ValueError) as exc:
            raise ValidationError(f"file{index} is not a readable image") from exc

    def _safe_name(self, filename: str, index: int) -> str:
        name = pathlib.PurePath(filename.replace("\\", "/")).name if filename else ""
        name = _UNSAFE_NAME_CHARS.sub("_", name).strip("._")
        return name or f"media{index}"


def _parse_duration(raw: str | None) -> float | None:
    if raw is None:
        return None
    try:
        value = float(str(raw).strip())
    except ValueError:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value
