from __future__ import annotations

from pathlib import Path

import pytest

from sound_design_pipeline.media import loudness
from sound_design_pipeline.media.ffmpeg_safe import FFmpegError
from sound_design_pipeline.media.loudness import (
    LOUDNORM_TARGETS,
    FfmpegLoudnessNormalizer,
    loudnorm_filter,
    parse_loudnorm_stats,
)

STDERR = """
[Parsed_loudnorm_0 @ 0x55d]
{
	"input_i" : "-31.42",
	"input_tp" : "-9.10",
	"input_lra" : "4.20",
	"input_thresh" : "-41.80",
	"output_i" : "-24.01",
	"normalization_type" : "dynamic",
	"target_offset" : "0.01"
}
"""


def test_parse_loudnorm_stats() -> None:
    stats = parse_loudnorm_stats("size=N/A time=00:00:05.00\n" + STDERR)
    assert stats == {
        "input_i": -31.42,
        "input_tp": -9.10,
        "input_lra": 4.20,
        "input_thresh": -41.80,
    }


@pytest.mark.parametrize("bad", ["", "no json here", '{"input_i": "-inf-ish", "input_tp": "x"}'])
def test_parse_loudnorm_stats_rejects_garbage(bad: str) -> None:
    with pytest.raises(FFmpegError):
        parse_loudnorm_stats(bad)


def test_loudnorm_filter_uses_measured_values() -> None:
    f = loudnorm_filter(LOUDNORM_TARGETS["sfx"], parse_loudnorm_stats(STDERR))
    assert f.startswith("loudnorm=I=-18.0:TP=-2.0:LRA=11")
    assert "measured_I=-31.42" in f
    assert "measured_thresh=-41.8" in f
    assert "linear=true" in f


def test_short_clip_is_left_alone(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(loudness, "ffprobe_duration_seconds", lambda p: 0.2)

    def _no_ffmpeg(*a, **k):
        raise AssertionError("ffmpeg should not run")

    monkeypatch.setattr(loudness, "run_ffmpeg", _no_ffmpeg)
    src = tmp_path / "a.mp3"
    out = FfmpegLoudnessNormalizer().normalize_sync(src, LOUDNORM_TARGETS["sfx"], tmp_path / "b.mp3")
    assert out == src


def test_clip_near_target_is_left_alone(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(loudness, "ffprobe_duration_seconds", lambda p: 4.0)
    norm = FfmpegLoudnessNormalizer()
    monkeypatch.setattr(
        norm,
        "measure",
        lambda p: {"input_i": -27.8, "input_tp": -5.0, "input_lra": 3.0, "input_thresh": -38.0},
    )
    src = tmp_path / "amb.mp3"
    assert norm.normalize_sync(src, LOUDNORM_TARGETS["ambient"], tmp_path / "x.mp3") == src


def test_second_pass_runs_with_measured_filter(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []
    monkeypatch.setattr(loudness, "ffprobe_duration_seconds", lambda p: 4.0)
    monkeypatch.setattr(loudness, "run_ffmpeg", lambda argv, **kw: calls.append(list(argv)))
    norm = FfmpegLoudnessNormalizer(ffmpeg_bin="ffmpeg")
    monkeypatch.setattr(
        norm,
        "measure",
        lambda p: {"input_i": -31.0, "input_tp": -9.0, "input_lra": 4.0, "input_thresh": -41.0},
    )
    out = norm.normalize_sync(tmp_path / "m.mp3", LOUDNORM_TARGETS["music"], tmp_path / "m.norm.mp3")
    assert out == tmp_path / "m.norm.mp3"
    assert len(calls) == 1
    af = calls[0][calls[0].index("-af") + 1]
    assert af.startswith("loudnorm=I=-24.0")
    assert calls[0][-1] == str(tmp_path / "m.norm.mp3")


def test_refused_flag_never_starts_ffmpeg() -> None:
    from sound_design_pipeline.media.ffmpeg_safe import run_ffmpeg

    with pytest.raises(FFmpegError, match="-filter_script"):
        run_ffmpeg(["ffmpeg", "-filter_script", "/etc/passwd", "-i", "a.mp3", "out.mp3"])


def test_local_uploader_probes_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import asyncio

    from sound_design_pipeline.jobs.cancel import CancelToken
    from sound_design_pipeline.media import upload

    video = tmp_path / "clip.mp4"
    video.write_bytes(b"\x00" * 16)
    monkeypatch.setattr(
        upload,
        "ffprobe_media_info",
        lambda p: {"format_name": "mov,mp4", "duration_s": 12.5, "has_audio": True},
    )
    ref = asyncio.run(upload.LocalMediaUploader().upload(video, CancelToken()))
    assert ref.uri.startswith("file://")
    assert ref.duration_s == 12.5
    assert ref.mime_type == "video/mp4"
    assert ref.meta["has_audio"] is True

    with pytest.raises(FileNotFoundError):
        asyncio.run(upload.LocalMediaUploader().upload(tmp_path / "missing.mp4", CancelToken()))
