"""
argv-only ffmpeg/ffprobe execution for the media helpers.

Nothing here goes through a shell. Flags that make ffmpeg read or write side files
named on the command line are refused before the process starts.
"""

from __future__ import annotations

import json
import subprocess
from contextlib import suppress
from pathlib import Path
from typing import Any

from sound_design_pipeline.config import get_settings
from sound_design_pipeline.utils.log import logger

_REFUSED_FLAGS = frozenset(
    {"-filter_script", "-filter_script:a", "-filter_complex_script", "-stats_file", "-vstats_file"}
)
STDERR_TAIL_CHARS = 2000


class FFmpegError(RuntimeError):
    pass


def _check_argv(argv: list[str]) -> None:
    refused = [a for a in argv if a in _REFUSED_FLAGS]
    if refused:
        raise FFmpegError(f"Refusing ffmpeg flag(s): {', '.join(refused)}")


def _stderr_tail(raw: str | bytes | None) -> str:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    text = str(raw or "")
    return text[-STDERR_TAIL_CHARS:]


def _exec(argv: list[str], *, timeout_s: float | None, capture: bool) -> subprocess.CompletedProcess[str]:
    _check_argv(argv)
    tool = Path(argv[0]).name if argv else "ffmpeg"
    try:
        return subprocess.run(
            argv,
            check=True,
            text=True,
            stdout=subprocess.PIPE if capture else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as ex:
        raise FFmpegError(f"{tool} timed out after {timeout_s}s") from ex
    except subprocess.CalledProcessError as ex:
        tail = _stderr_tail(ex.stderr)
        logger.warning("ffmpeg_failed", tool=tool, exit=ex.returncode, stderr_tail=tail[-400:])
        raise FFmpegError(f"{tool} exited with {ex.returncode}: {tail}") from ex
    except OSError as ex:
        raise FFmpegError(f"{tool} could not be started: {ex}") from ex


def run_ffmpeg(
    argv: list[str], *, timeout_s: float | None = None, capture: bool = False
) -> subprocess.CompletedProcess[str] | None:
    """
    With capture=True the completed process is returned; loudnorm prints its
    measurement block on stderr.
    """
    p = _exec(argv, timeout_s=timeout_s, capture=capture)
    return p if capture else None


def _ffprobe(path: Path, entries: list[str], *, timeout_s: float) -> str:
    argv = [str(get_settings().ffprobe_bin), "-v", "error", *entries, str(path)]
    return _exec(argv, timeout_s=timeout_s, capture=True).stdout or ""


def ffprobe_duration_seconds(path: Path, *, timeout_s: float = 20) -> float:
    out = _ffprobe(
        path,
        ["-show_entries", "format=duration", "-of", "default=noprint_wrappers=1:nokey=1"],
        timeout_s=timeout_s,
    ).strip()
    try:
        return float(out)
    except ValueError as ex:
        raise FFmpegError(f"ffprobe returned no duration for {path}") from ex


def ffprobe_media_info(path: Path, *, timeout_s: float = 20) -> dict[str, Any]:
    """
    Container summary for an uploaded video: format name, duration and whether any
    audio stream is present.
    """
    out = _ffprobe(path, ["-print_format", "json", "-show_format", "-show_streams"], timeout_s=timeout_s)
    try:
        data = json.loads(out) if out.strip() else {}
    except json.JSONDecodeError as ex:
        raise FFmpegError(f"ffprobe returned invalid JSON: {ex}") from ex

    fmt = data.get("format") or {}
    duration_s = 0.0
    with suppress(TypeError, ValueError):
        duration_s = float(fmt.get("duration") or 0.0)
    streams = data.get("streams") or []
    return {
        "format_name": str(fmt.get("format_name") or ""),
        "duration_s": duration_s,
        "has_audio": any(st.get("codec_type") == "audio" for st in streams if isinstance(st, dict)),
    }
