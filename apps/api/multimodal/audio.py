import base64
import logging
import os
import tempfile
from typing import Optional, Tuple

import ffmpeg

logger = logging.getLogger(__name__)

PASSTHROUGH_FORMATS = {"mp3", "wav"}


def normalize_engine_audio(source_path: str, output_path: str) -> str:
    """
    Convert an engine recording to mono MP3.
    Returns path to audio file.
    """
    try:
        (
            ffmpeg
            .input(source_path)
            .output(output_path, format='mp3', ac=1, audio_bitrate='64k')  # Mono, small enough for the API
            .overwrite_output()
            .run(quiet=True)
        )
        return output_path
    except ffmpeg.Error as e:
        logger.error(f"Error normalizing audio: {e.stderr.decode() if e.stderr else str(e)}")
        raise


def prepare_audio_payload(data: bytes, filename: Optional[str]) -> Tuple[str, str]:
    """
    Return (base64 audio, format) ready for an audio-capable chat model.
    Falls back to the original bytes when they are already mp3/wav.
    """
    suffix = os.path.splitext(filename or "")[1].lower().lstrip(".") or "bin"
    with tempfile.TemporaryDirectory(prefix="vex_audio_") as tmp_dir:
        source_path = os.path.join(tmp_dir, f"source.{suffix}")
        output_path = os.path.join(tmp_dir, "engine.mp3")
        with open(source_path, "wb") as handle:
            handle.write(data)
        try:
            normalize_engine_audio(source_path, output_path)
            with open(output_path, "rb") as handle:
                return base64.b64encode(handle.read()).decode("utf-8"), "mp3"
        except (ffmpeg.Error, OSError):
            if suffix in PASSTHROUGH_FORMATS:
                logger.warning("ffmpeg normalization failed for %s; sending original %s", filename, suffix)
                return base64.b64encode(data).decode("utf-8"), suffix
            raise
