from __future__ import annotations

import subprocess

import cv2
import numpy as np
import pytest

from registrar.ingest.models import RawMedia
from registrar.ingest.thumbnails import THUMB_WIDTH, derive_video_thumbnail, ffmpeg_available

requires_ffmpeg = pytest.mark.skipif(not ffmpeg_available(), reason="ffmpeg not installed")


@requires_ffmpeg
def test_derive_video_thumbnail_returns_scaled_jpeg(generated_video_file):
    video = RawMedia(data=generated_video_file.read_bytes(), filename="loop.mp4", mime_type="video/mp4")

    poster = derive_video_thumbnail(video)

    assert poster is not None
    assert poster.mime_type == "image/jpeg"
    assert poster.filename == "loop_poster.jpg"
    image = cv2.imdecode(np.frombuffer(poster.data, dtype=np.uint8), cv2.IMREAD_COLOR)
    height, width = image.shape[:2]
    assert width == THUMB_WIDTH
    assert height == 288


@requires_ffmpeg
def test_seek_past_end_falls_back_to_first_frame(generated_video_file):
    video = RawMedia(data=generated_video_file.read_bytes(), filename="loop.mp4", mime_type="video/mp4")
    assert derive_video_thumbnail(video, timestamp_s=30.0) is not None


@requires_ffmpeg
def test_undecodable_payload_yields_none():
    assert derive_video_thumbnail(RawMedia(data=b"not a video", filename="broken.mp4")) is None


def test_missing_ffmpeg_yields_none(monkeypatch):
    monkeypatch.setattr("registrar.ingest.thumbnails.shutil.which", lambda name: None)
    assert derive_video_thumbnail(RawMedia(data=b"bytes", filename="clip.mp4")) is None


def test_ffmpeg_overrunning_timeout_yields_none(monkeypatch):
    calls = []

    def overrun(command, **kwargs):
        calls.append(kwargs["timeout"])
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    monkeypatch.setattr("registrar.ingest.thumbnails.shutil.which", lambda name: "/usr/bin/ffmpeg")
    monkeypatch.setattr("registrar.ingest.thumbnails.subprocess.run", overrun)

    assert derive_video_thumbnail(RawMedia(data=b"bytes", filename="clip.mp4"), timeout_s=2.0) is None
    assert calls == [2.0, 2.0]
