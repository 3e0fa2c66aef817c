"""Audio redaction — mute every PII time window in the original recording.

One ffmpeg pass: a chain of volume filters, each muting one range, re-encoded
to MP3. There is no fallback: if ffmpeg fails, nothing may be stored under a
"redacted" name.
"""

import shutil
import subprocess
from pathlib import Path
from loguru import logger

from config.errors import AudioProcessingError
from config.schemas import PiiRange

OUTPUT_CODEC = "libmp3lame"


def build_mute_filter(ranges: list[PiiRange]) -> str:
    """One 'volume to 0 between start and end' expression per range, chained."""
    return ",".join(
        f"volume=enable='between(t,{r.start:.3f},{r.end:.3f})':volume=0"
        for r in ranges
    )


def redact_audio(
    input_path: str,
    output_path: str,
    ranges: list[PiiRange],
    ffmpeg_path: str = "ffmpeg",
) -> str:
    """Write a copy of input_path with every range silenced.

    Args:
        input_path: Original audio file
        output_path: Where to write the redacted audio
        ranges: Merged PII ranges (seconds)
        ffmpeg_path: ffmpeg executable

    Returns:
        output_path

    Raises:
        AudioProcessingError: ffmpeg exited non-zero or could not be started
    """
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)

    if not ranges:
        shutil.copyfile(input_path, output_path)
        logger.info("Redaction: no PII ranges, output is an exact copy of the input")
        return output_path

    mute_filter = build_mute_filter(ranges)
    cmd = [
        ffmpeg_path, "-y", "-i", str(input_path),
        "-af", mute_filter,
        "-c:a", OUTPUT_CODEC, str(output_path),
    ]
    logger.debug(f"ffmpeg mute filter: {mute_filter}")

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise AudioProcessingError(f"Could not start ffmpeg ({ffmpeg_path}): {e}") from e

    if result.returncode != 0:
        logger.error(f"ffmpeg redaction failed (exit {result.returncode}): {result.stderr[-500:]}")
        raise AudioProcessingError(
            f"ffmpeg exited with code {result.returncode}: {result.stderr[-500:]}"
        )

    logger.info(f"Redaction: muted {len(ranges)} ranges → {output_path}")
    return output_path
