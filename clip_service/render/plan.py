from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from clip_service.models.domain import MediaItem, MediaKind

FRAME_WIDTH = 1280
FRAME_HEIGHT = 720
FRAME_RATE = 30
FADE_SECONDS = 0.5

CAPTION_FONT_SIZE = 36
CAPTION_MARGIN_BOTTOM = 20
OUTPUT_LABEL = "outv"

FALLBACK_CAPTION_FONTS = (
    "assets/fonts/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "C:/Windows/Fonts/arial.ttf",
)

# Characters with a meaning inside one filter's option list, and inside the graph.
_OPTION_SPECIAL = "\\':"
_GRAPH_SPECIAL = "\\'[],;"
_WHITESPACE_RUN = re.compile(r"\s+")

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderInput:
    path: str
    loop: bool

    def args(self) -> List[str]:
        if self.loop:
            return ["-loop", "1", "-i", self.path]
        return ["-i", self.path]


@dataclass(frozen=True)
class RenderPlan:
    inputs: Tuple[RenderInput, ...]
    filters: Tuple[str, ...]
    total_duration: float
    captioned: Tuple[int, ...] = ()
    output_label: str = OUTPUT_LABEL

    @property
    def filter_complex(self) -> str:
        return ";".join(self.filters)

    def input_args(self) -> List[str]:
        args: List[str] = []
        for item in self.inputs:
            args.extend(item.args())
        return args


def resolve_caption_font(*candidates: str | None) -> str | None:
    """Return the first candidate font file that exists, or None when captions must be skipped."""
    for path in candidates:
        if path and os.path.isfile(path):
            return os.path.abspath(path)
    return None


def fade_length(duration: float) -> float:
    return min(FADE_SECONDS, duration / 2)


def build_render_plan(items: Sequence[MediaItem], caption_font: Optional[str] = None) -> RenderPlan:
    """Build the filter graph that renders ``items`` in order into one video stream.

    Every item is fitted into a 1280x720 frame at 30 fps, trimmed to its
    display duration and faded in and out. Non-empty captions are drawn at the
    bottom of that item's segment when ``caption_font`` is set; otherwise the
    caption is skipped with a warning. The segments are concatenated video-only.
    """
    if not items:
        raise ValueError("at least one media item is required")

    inputs: List[RenderInput] = []
    filters: List[str] = []
    labels: List[str] = []
    captioned: List[int] = []
    total_duration = 0.0

    for index, item in enumerate(items):
        duration = item.display_duration
        total_duration += duration
        inputs.append(RenderInput(path=item.source_path, loop=item.kind == MediaKind.IMAGE))
        filters.append(_segment_filter(index, duration))
        label = f"v{index}"

        if item.has_caption:
            if caption_font:
                filters.append(_caption_filter(label, caption_font, item.caption_text))
                label = f"v{index}text"
                captioned.append(index)
            else:
                log.warning("skipping text overlay due to missing font", extra={"index": index})
        labels.append(f"[{label}]")

    filters.append(f"{''.join(labels)}concat=n={len(items)}:v=1:a=0[{OUTPUT_LABEL}]")
    return RenderPlan(
        inputs=tuple(inputs),
        filters=tuple(filters),
        total_duration=total_duration,
        captioned=tuple(captioned),
    )


def _segment_filter(index: int, duration: float) -> str:
    fade = fade_length(duration)
    chain = [
        f"scale={FRAME_WIDTH}:{FRAME_HEIGHT}:force_original_aspect_ratio=decrease",
        f"pad={FRAME_WIDTH}:{FRAME_HEIGHT}:(ow-iw)/2:(oh-ih)/2",
        "setsar=1",
        f"fps={FRAME_RATE}",
        f"trim=duration={format_seconds(duration)}",
        "setpts=PTS-STARTPTS",
        f"fade=t=in:st=0:d={format_seconds(fade)}",
        f"fade=t=out:st={format_seconds(duration - fade)}:d={format_seconds(fade)}",
    ]
    return f"[{index}:v]{','.join(chain)}[v{index}]"


def _caption_filter(label: str, font_path: str, text: str) -> str:
    font_path = font_path.replace("\\", "/")
    options = [
        f"fontfile={escape_filter_value(font_path)}",
        f"fontsize={CAPTION_FONT_SIZE}",
        "fontcolor=white",
        "box=1",
        "boxcolor=black@0.5",
        "boxborderw=5",
        "x=(w-tw)/2",
        f"y=h-th-{CAPTION_MARGIN_BOTTOM}",
        f"text={escape_drawtext_text(text)}",
        "expansion=none",
    ]
    return f"[{label}]drawtext={':'.join(options)}[{label}text]"


def format_seconds(value: float) -> str:
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def escape_filter_value(value: str) -> str:
    """Escape an option value of a filter that is written inside a filter graph.

    ffmpeg unescapes twice: once when it splits the graph into filters and
    once when it splits a filter's arguments into options.
    """
    return _backslash_escape(_backslash_escape(value, _OPTION_SPECIAL), _GRAPH_SPECIAL)


def escape_drawtext_text(text: str) -> str:
    """Escape caption text for drawtext with ``expansion=none``.

    Whitespace runs collapse to one space. Spaces are escaped so a caption
    that is only whitespace still reaches drawtext intact.
    """
    text = _WHITESPACE_RUN.sub(" ", text)
    return _backslash_escape(_backslash_escape(text, _OPTION_SPECIAL + " "), _GRAPH_SPECIAL)


def _backslash_escape(value: str, special: str) -> str:
    return "".join("\\" + char if char in special else char for char in value)
