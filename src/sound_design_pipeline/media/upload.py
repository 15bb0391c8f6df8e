from __future__ import annotations

import asyncio
import mimetypes
from pathlib import Path

from sound_design_pipeline.jobs.cancel import CancelToken
from sound_design_pipeline.media.ffmpeg_safe import FFmpegError, ffprobe_media_info
from sound_design_pipeline.pipeline.schemas import MediaRef


class LocalMediaUploader:
    """
    Default upload collaborator: the video already sits on local disk, so "uploading"
    means probing it and handing back a file:// reference.
    """

    async def upload(self, video_path: Path, cancel: CancelToken) -> MediaRef:
        cancel.raise_if_cancelled()
        p = Path(video_path)
        if not p.is_file():
            raise FileNotFoundError(f"video not found: {p}")
        info = await asyncio.to_thread(ffprobe_media_info, p)
        if float(info.get("duration_s") or 0.0) <= 0.0:
            raise FFmpegError(f"could not determine duration of {p.name}")
        mime = mimetypes.guess_type(p.name)[0] or "video/mp4"
        return MediaRef(
            uri=p.resolve().as_uri(),
            mime_type=mime,
            duration_s=float(info["duration_s"]),
            meta={"format_name": info.get("format_name", ""), "has_audio": bool(info.get("has_audio"))},
        )
