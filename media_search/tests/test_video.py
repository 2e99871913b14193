import shutil
import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from video import has_audio_track, read_frames


def _write_video(path: Path, frames: int = 30, size=(64, 48)) -> Path:
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), 10, size)
    for i in range(frames):
        frame = np.full((size[1], size[0], 3), i * 8 % 256, dtype=np.uint8)
        writer.write(frame)
    writer.release()
    return path


def test_read_frames(tmp_path):
    path = _write_video(tmp_path / "clip.avi")

    frames = read_frames(path, (0.25, 0.5, 0.75), 32)

    assert len(frames) == 3
    for frame in frames:
        assert frame.mode == "RGB"
        assert max(frame.size) <= 32


def test_read_frames_missing_file(tmp_path):
    with pytest.raises(OSError):
        read_frames(tmp_path / "missing.avi", (0.5,), 32)


@pytest.mark.skipif(shutil.which("ffprobe") is None, reason="ffprobe not installed")
def test_silent_video_has_no_audio(tmp_path):
    assert has_audio_track(_write_video(tmp_path / "silent.avi")) is False
