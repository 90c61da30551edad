"""
Caption composition generator.

Pure computation: transcription words, preset styles, video metadata and
per-project overrides in, a render specification out. No I/O, so the
caption pipeline runs it inline rather than through a queue.
"""

import uuid
from dataclasses import dataclass
from typing import Any

DEFAULT_STYLES: dict[str, Any] = {
    "display_mode": "line",
    "font_family": "Inter",
    "font_weight": 800,
    "font_style": "normal",
    "line_height": 1.2,
    "fill_color": "#FFFFFF",
    "highlight_style": "color",
    "highlight_color": "#FFD700",
    "inactive_color": "#FFFFFF",
    "inactive_opacity": 0.8,
    "stroke_enabled": True,
    "stroke_color": "#000000",
    "stroke_width": 4,
    "shadow_enabled": False,
    "background_color": None,
}

# Overrides a project may set on top of its preset
OVERRIDABLE = (
    "font_size",
    "highlight_color",
    "inactive_color",
    "inactive_opacity",
    "background_color",
    "words_per_line",
    "lines_per_page",
)


@dataclass
class VideoMeta:
    width: int = 1920
    height: int = 1080
    duration: float = 60.0
    fps: int = 30

    @property
    def is_portrait(self) -> bool:
        return self.height > self.width

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any] | None) -> "VideoMeta":
        metadata = metadata or {}
        return cls(
            width=int(metadata.get("width") or 1920),
            height=int(metadata.get("height") or 1080),
            duration=float(metadata.get("duration") or 60.0),
            fps=int(metadata.get("fps") or 30),
        )


def caption_layout(video: VideoMeta, overrides: dict[str, Any]) -> dict[str, Any]:
    """Font size, paging and placement from the frame shape."""
    if video.is_portrait:
        layout = {"font_size": round(video.width * 0.07), "words_per_line": 3, "lines_per_page": 2, "y": "70%"}
    else:
        layout = {"font_size": round(video.height * 0.06), "words_per_line": 6, "lines_per_page": 2, "y": "85%"}
    layout["width_percent"] = 90
    layout["height_percent"] = 20
    for key in ("font_size", "words_per_line", "lines_per_page"):
        if overrides.get(key):
            layout[key] = overrides[key]
    return layout


def caption_words(words: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Spoken words only, with millisecond timing."""
    return [
        {
            "word": w["text"],
            "start_ms": round(float(w["start"]) * 1000),
            "end_ms": round(float(w["end"]) * 1000),
        }
        for w in words
        if w.get("type", "word") == "word" and w.get("text", "").strip()
    ]


def paginate(words: list[dict[str, Any]], words_per_line: int, lines_per_page: int) -> list[dict[str, Any]]:
    per_page = max(words_per_line * lines_per_page, 1)
    pages = []
    for i in range(0, len(words), per_page):
        chunk = words[i : i + per_page]
        pages.append(
            {
                "start_ms": chunk[0]["start_ms"],
                "end_ms": chunk[-1]["end_ms"],
                "lines": [chunk[j : j + words_per_line] for j in range(0, len(chunk), words_per_line)],
            }
        )
    return pages


def generate_composition(
    words: list[dict[str, Any]],
    preset: dict[str, Any] | None,
    video: VideoMeta,
    overrides: dict[str, Any] | None = None,
    *,
    name: str = "Captioned Video",
    video_url: str | None = None,
    file_id: str | None = None,
    language: str | None = None,
) -> dict[str, Any]:
    """
    Build the render specification for a captioned video.

    Args:
        words: Transcription words (text, start/end in seconds, type)
        preset: Preset styles; defaults are used for missing keys
        video: Source frame size, duration and fps
        overrides: Project settings layered over the preset

    Returns:
        ``{"project": ..., "elements": [video, caption], "metadata": ...}``

    Raises:
        ValueError: If there are no spoken words to caption
    """
    overrides = overrides or {}
    styles = {**DEFAULT_STYLES, **(preset or {})}
    styles.update({k: v for k, v in overrides.items() if k in OVERRIDABLE and v is not None})

    spoken = caption_words(words)
    if not spoken:
        raise ValueError("Transcription has no words")

    layout = caption_layout(video, overrides)
    caption_end = spoken[-1]["end_ms"] / 1000

    video_element = {
        "id": str(uuid.uuid4()),
        "type": "video",
        "name": "Source Video",
        "source": video_url,
        "file_id": file_id,
        "track": 1,
        "time": 0,
        "duration": video.duration,
        "fit": "contain",
        "volume": 100,
    }
    caption_element = {
        "id": str(uuid.uuid4()),
        "type": "caption",
        "name": "Captions",
        "source_element_id": video_element["id"],
        "track": 2,
        "time": 0,
        "duration": min(caption_end, video.duration),
        "x": "50%",
        "y": layout["y"],
        "width": f"{layout['width_percent']}%",
        "height": f"{layout['height_percent']}%",
        "font_size": styles.get("font_size") or layout["font_size"],
        "words_per_line": layout["words_per_line"],
        "lines_per_page": layout["lines_per_page"],
        "language": language or "en",
        "styles": {k: v for k, v in styles.items() if k not in ("font_size", "words_per_line", "lines_per_page")},
        "pages": paginate(spoken, layout["words_per_line"], layout["lines_per_page"]),
    }

    return {
        "project": {
            "name": name,
            "width": video.width,
            "height": video.height,
            "fps": video.fps,
            "duration": video.duration,
            "background_color": "#000000",
            "output_format": overrides.get("output_format", "mp4"),
        },
        "elements": [video_element, caption_element],
        "metadata": {
            "word_count": len(spoken),
            "page_count": len(caption_element["pages"]),
            "is_portrait": video.is_portrait,
        },
    }
