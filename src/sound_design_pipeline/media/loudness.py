"""
EBU R128 dual-pass loudness normalization for generated layers.

Pass 1 measures (loudnorm prints a JSON block on stderr); pass 2 applies a linear gain
using the measured values so short clips are not pumped by the dynamic mode.
"""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path

from sound_design_pipeline.config import get_settings
from sound_design_pipeline.media.ffmpeg_safe import (
    FFmpegError,
    ffprobe_duration_seconds,
    run_ffmpeg,
)
from sound_design_pipeline.pipeline.collaborators import LoudnessTarget
from sound_design_pipeline.utils.log import logger

TRUE_PEAK_DBTP = -2.0

# Integrated loudness per layer: music sits under dialogue, ambience is felt more than heard.
LOUDNORM_TARGETS: dict[str, LoudnessTarget] = {
    "music": LoudnessTarget(integrated_lufs=-24.0, true_peak_db=TRUE_PEAK_DBTP),
    "ambient": LoudnessTarget(integrated_lufs=-28.0, true_peak_db=TRUE_PEAK_DBTP),
    "sfx": LoudnessTarget(integrated_lufs=-18.0, true_peak_db=TRUE_PEAK_DBTP),
}

MIN_MEASURE_DURATION_S = 0.5
SKIP_WITHIN_LU = 0.5

_STATS_RE = re.compile(r"\{[^{}]*\"input_i\"[^{}]*\}", re.DOTALL)
_STAT_KEYS = ("input_i", "input_tp", "input_lra", "input_thresh")


def parse_loudnorm_stats(stderr: str) -> dict[str, float]:
    m = _STATS_RE.search(str(stderr or ""))
    if not m:
        raise FFmpegError("Could not parse loudnorm stats from ffmpeg output")
    try:
        raw = json.loads(m.group(0))
        return {k: float(raw[k]) for k in _STAT_KEYS}
    except (KeyError, TypeError, ValueError) as ex:
        raise FFmpegError(f"Failed to parse loudnorm JSON: {ex}") from ex


def loudnorm_filter(target: LoudnessTarget, measured: dict[str, float]) -> str:
    return (
        f"loudnorm=I={target.integrated_lufs}:TP={target.true_peak_db}:LRA={target.lra}:"
        f"measured_I={measured['input_i']}:measured_TP={measured['input_tp']}:"
        f"measured_LRA={measured['input_lra']}:measured_thresh={measured['input_thresh']}:"
        "linear=true:print_format=none"
    )


class FfmpegLoudnessNormalizer:
    def __init__(self, *, ffmpeg_bin: str | None = None, timeout_s: int = 120) -> None:
        self.ffmpeg_bin = ffmpeg_bin
        self.timeout_s = int(timeout_s)

    def _bin(self) -> str:
        return str(self.ffmpeg_bin or get_settings().ffmpeg_bin)

    def measure(self, input_path: Path) -> dict[str, float]:
        p = run_ffmpeg(
            [
                self._bin(),
                "-hide_banner",
                "-nostdin",
                "-i",
                str(input_path),
                "-af",
                "loudnorm=print_format=json",
                "-f",
                "null",
                "-",
            ],
            timeout_s=self.timeout_s,
            capture=True,
        )
        return parse_loudnorm_stats(p.stderr if p is not None else "")

    def normalize_sync(self, input_path: Path, target: LoudnessTarget, output_path: Path) -> Path:
        """
        Returns input_path untouched when the clip is too short to measure or already
        within SKIP_WITHIN_LU of the target.
        """
        if ffprobe_duration_seconds(input_path) < MIN_MEASURE_DURATION_S:
            return input_path
        stats = self.measure(input_path)
        if abs(stats["input_i"] - target.integrated_lufs) < SKIP_WITHIN_LU:
            return input_path
        run_ffmpeg(
            [
                self._bin(),
                "-y",
                "-hide_banner",
                "-nostdin",
                "-i",
                str(input_path),
                "-af",
                loudnorm_filter(target, stats),
                str(output_path),
            ],
            timeout_s=self.timeout_s,
        )
        logger.debug(
            "loudness_normalized",
            path=str(input_path),
            measured_i=stats["input_i"],
            target_i=target.integrated_lufs,
        )
        return output_path

    async def normalize(self, input_path: Path, target: LoudnessTarget, output_path: Path) -> Path:
        return await asyncio.to_thread(self.normalize_sync, Path(input_path), target, Path(output_path))
