"""Media file information using FFprobe."""

import json
import subprocess

from shotline.config import Settings, get_settings


def _run_ffprobe(source: str, *args: str, settings: Settings | None = None) -> dict:
    """Run ffprobe against a local path or URL and return parsed JSON."""
    settings = settings or get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        source,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=settings.probe_timeout_s)
    except subprocess.TimeoutExpired:
        raise RuntimeError(f"ffprobe timed out after {settings.probe_timeout_s}s")
    if result.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {result.stderr.strip() or 'unreadable media'}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"Failed to parse ffprobe output: {e}")


def _parse_fps(rate: str | None) -> float | None:
    if not rate or "/" not in rate:
        return None
    num, den = rate.split("/", 1)
    if int(den) <= 0:
        return None
    return round(int(num) / int(den), 3)


def probe_media(source: str, settings: Settings | None = None) -> dict:
    """
    Probe a media file for duration, dimensions and codecs.

    Args:
        source: Local path or URL readable by ffprobe

    Returns:
        Dictionary with duration (seconds), width, height, fps, codecs and
        has_video / has_audio flags

    Raises:
        RuntimeError: If ffprobe fails or times out
    """
    data = _run_ffprobe(source, "-show_format", "-show_streams", settings=settings)

    info = {
        "duration": None,
        "width": None,
        "height": None,
        "fps": None,
        "video_codec": None,
        "audio_codec": None,
        "sample_rate": None,
        "channels": None,
        "bitrate": None,
        "has_video": False,
        "has_audio": False,
    }

    format_info = data.get("format", {})
    if "duration" in format_info:
        info["duration"] = float(format_info["duration"])
    if format_info.get("bit_rate"):
        info["bitrate"] = int(format_info["bit_rate"])

    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")

        if codec_type == "video" and not info["has_video"]:
            info["has_video"] = True
            info["width"] = stream.get("width")
            info["height"] = stream.get("height")
            info["video_codec"] = stream.get("codec_name")
            info["fps"] = _parse_fps(stream.get("r_frame_rate"))

        elif codec_type == "audio" and not info["has_audio"]:
            info["has_audio"] = True
            info["audio_codec"] = stream.get("codec_name")
            info["sample_rate"] = int(stream.get("sample_rate", 0)) or None
            info["channels"] = stream.get("channels")

    return info
