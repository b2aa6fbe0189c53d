from __future__ import annotations

import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional, Tuple

import cv2  # type: ignore

from .models import RawMedia

THUMB_WIDTH = 512
POSTER_TIMESTAMP_S = 0.5
FFMPEG_TIMEOUT_S = 30.0


def ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None


def derive_video_thumbnail(
    video: RawMedia,
    *,
    timestamp_s: float = POSTER_TIMESTAMP_S,
    timeout_s: float = FFMPEG_TIMEOUT_S,
) -> Optional[RawMedia]:
    """Extract one JPEG still from a video payload for classification.

    Returns None when ffmpeg is missing, cannot decode the payload or runs past
    ``timeout_s``; the caller then classifies the raw payload instead.
    """
    if not ffmpeg_available():
        return None

    suffix = Path(video.filename).suffix or ".mp4"
    with tempfile.TemporaryDirectory(prefix="registrar-thumb-") as workdir:
        source = Path(workdir) / f"source{suffix}"
        poster = Path(workdir) / "poster.jpg"
        source.write_bytes(video.data)

        measured = _extract_and_measure(source, timestamp_s, poster, timeout_s)
        if measured is None and timestamp_s > 0:
            # Loops shorter than the seek point: take the first frame.
            measured = _extract_and_measure(source, 0.0, poster, timeout_s)
        if measured is None:
            return None

        return RawMedia(
            data=poster.read_bytes(),
            filename=f"{Path(video.filename).stem}_poster.jpg",
            mime_type="image/jpeg",
        )


def _extract_and_measure(video_path: Path, timestamp: float, output_path: Path, timeout_s: float) -> Tuple[int, int] | None:
    command = [
        "ffmpeg",
        "-nostdin",
        "-v",
        "error",
        "-ss",
        f"{max(timestamp, 0.0):.3f}",
        "-i",
        str(video_path),
        "-frames:v",
        "1",
        "-vf",
        f"scale={THUMB_WIDTH}:-2",
        "-q:v",
        "2",
        "-y",
        str(output_path),
    ]
    try:
        subprocess.run(command, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, timeout=timeout_s)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
        output_path.unlink(missing_ok=True)
        return None

    image = cv2.imread(str(output_path))
    if image is None:
        output_path.unlink(missing_ok=True)
        return None
    height, width = image.shape[:2]
    return width, height


__all__ = ["derive_video_thumbnail", "ffmpeg_available", "THUMB_WIDTH"]
