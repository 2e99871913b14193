"""Frame and audio extraction for video analysis.

Frames come from OpenCV; audio probing and clipping shell out to
ffprobe/ffmpeg.
"""

import json
import logging
import shutil
import subprocess
from pathlib import Path

import cv2
from PIL import Image

from thumbnails import to_rgb_thumbnail

logger = logging.getLogger(__name__)


class MediaToolError(RuntimeError):
    """ffmpeg/ffprobe missing or failed."""


def _ensure_tool(name: str) -> None:
    if shutil.which(name) is None:
        raise MediaToolError(f"Missing required binary: {name}")


def read_frames(path: Path, positions: tuple[float, ...], max_size: int) -> list[Image.Image]:
    """Grab one frame at each normalized position (0..1) of the video.

    Raises OSError if the file cannot be opened. Positions that cannot be
    decoded are dropped, so the result may be shorter than positions.
    """
    cap = cv2.VideoCapture(str(path))
    if not cap.isOpened():
        raise OSError(f"Cannot open video: {path}")
    try:
        frame_count = cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0
        frames = []
        for pos in positions:
            if frame_count > 0:
                cap.set(cv2.CAP_PROP_POS_FRAMES, int(frame_count * pos))
            ok, bgr = cap.read()
            if not ok or bgr is None:
                logger.debug("No frame at %.2f in %s", pos, path)
                continue
            rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
            frames.append(to_rgb_thumbnail(Image.fromarray(rgb), max_size))
        return frames
    finally:
        cap.release()


def has_audio_track(path: Path) -> bool:
    _ensure_tool("ffprobe")
    cmd = [
        "ffprobe", "-v", "error",
        "-select_streams", "a",
        "-show_entries", "stream=codec_type",
        "-print_format", "json",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as exc:
        raise MediaToolError(f"ffprobe failed: {(exc.stderr or '').strip()}") from exc
    payload = json.loads(result.stdout or "{}")
    return bool(payload.get("streams"))


def extract_audio_segment(path: Path, start: float, duration: float, dest: Path) -> Path:
    """Write a mono 16 kHz clip of [start, start + duration) to dest."""
    _ensure_tool("ffmpeg")
    cmd = [
        "ffmpeg", "-y",
        "-ss", f"{start:.2f}",
        "-t", f"{duration:.2f}",
        "-i", str(path),
        "-vn", "-ac", "1", "-ar", "16000",
        str(dest),
    ]
    try:
        subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as exc:
        raise MediaToolError(f"ffmpeg audio extract failed: {(exc.stderr or '').strip()}") from exc
    return dest
