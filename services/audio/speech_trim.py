"""Speech activity trimming — cut long non-speech stretches before transcription.

Only used for large recordings (door-to-door calls with long walks between
houses) to reduce transcription cost. The trimmed stream is never redacted or
stored as the call audio; word timestamps from it are mapped back onto the
original timeline with remap_words_to_original().

Uses ffmpeg's silencedetect filter for analysis, stream-copy for extraction,
and the concat demuxer to join the kept segments.
"""

import re
import subprocess
from pathlib import Path
from loguru import logger

from config.errors import SpeechTrimError
from config.schemas import SpeechSegment, VadMetadata, Word
from config.settings import SpeechTrimSettings

_SILENCE_START_RE = re.compile(r"silence_start:\s*(-?[\d.]+)")
_SILENCE_END_RE = re.compile(r"silence_end:\s*(-?[\d.]+)")
_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


def should_attempt_trim(asset_size: int, settings: SpeechTrimSettings) -> str | None:
    """Return None if trimming should run, else the reason it is skipped."""
    if not settings.enabled:
        return "disabled"
    if asset_size <= settings.min_size_bytes:
        return "below_size_threshold"
    return None


def detect_silences(
    input_path: str,
    noise_db: float,
    min_silence_sec: float,
    ffmpeg_path: str = "ffmpeg",
) -> tuple[list[tuple[float, float | None]], float]:
    """Run silencedetect and return (silence intervals, total duration in seconds)."""
    cmd = [
        ffmpeg_path, "-hide_banner", "-nostats", "-i", str(input_path),
        "-af", f"silencedetect=noise={noise_db}dB:d={min_silence_sec}",
        "-f", "null", "-",
    ]
    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        raise SpeechTrimError(f"ffmpeg silencedetect failed: {result.stderr[-500:]}")
    return parse_silence_output(result.stderr)


def parse_silence_output(stderr: str) -> tuple[list[tuple[float, float | None]], float]:
    """Parse silencedetect stderr into paired (start, end) silences and the total duration.

    A trailing silence_start without a matching silence_end (silence runs to
    end of file) is returned with end=None.
    """
    duration_match = _DURATION_RE.search(stderr)
    if duration_match is None:
        raise SpeechTrimError("Could not read input duration from ffmpeg output")
    hours, minutes, seconds = duration_match.groups()
    total_duration = int(hours) * 3600 + int(minutes) * 60 + float(seconds)

    silences: list[tuple[float, float | None]] = []
    pending_start: float | None = None
    for line in stderr.splitlines():
        start_match = _SILENCE_START_RE.search(line)
        if start_match:
            pending_start = max(0.0, float(start_match.group(1)))
            continue
        end_match = _SILENCE_END_RE.search(line)
        if end_match and pending_start is not None:
            silences.append((pending_start, float(end_match.group(1))))
            pending_start = None
    if pending_start is not None:
        silences.append((pending_start, None))

    return silences, total_duration


def build_speech_segments(
    silences: list[tuple[float, float | None]],
    total_duration: float,
    min_segment_sec: float = 1.0,
) -> list[SpeechSegment]:
    """Speech segments are the gaps between silences; each must last min_segment_sec."""
    segments = []
    cursor = 0.0
    for silence_start, silence_end in silences:
        if silence_start - cursor >= min_segment_sec:
            segments.append(_segment(cursor, silence_start))
        cursor = total_duration if silence_end is None else silence_end

    # Speech continues past the last silence to the end of the asset
    if total_duration - cursor >= min_segment_sec:
        segments.append(_segment(cursor, total_duration))
    return segments


def _segment(start: float, end: float) -> SpeechSegment:
    return SpeechSegment(start=round(start, 3), end=round(end, 3), duration=round(end - start, 3))


def compute_vad_metadata(segments: list[SpeechSegment], total_duration: float) -> VadMetadata:
    speech_duration = sum(s.duration for s in segments)
    if total_duration > 0:
        savings = (total_duration - speech_duration) / total_duration * 100
    else:
        savings = 0.0
    return VadMetadata(
        used=False,
        original_duration=round(total_duration, 2),
        trimmed_duration=round(speech_duration, 2),
        silence_removed=round(total_duration - speech_duration, 2),
        segment_count=len(segments),
        cost_savings_percent=round(savings, 2),
    )


def worth_trimming(segments: list[SpeechSegment], total_duration: float, min_savings_percent: float = 10.0) -> bool:
    """True only when the savings strictly exceed min_savings_percent."""
    if not segments or total_duration <= 0:
        return False
    speech_duration = sum(s.duration for s in segments)
    savings = (total_duration - speech_duration) / total_duration * 100
    # Compared at microsecond-percent precision so an exact 10% split never trims
    return round(savings, 6) > min_savings_percent


def trim_speech(
    input_path: str,
    work_dir: str,
    settings: SpeechTrimSettings,
    ffmpeg_path: str = "ffmpeg",
) -> tuple[str | None, VadMetadata, list[SpeechSegment]]:
    """Analyze the audio and, if worthwhile, write a trimmed copy holding only speech.

    Returns:
        (trimmed_path or None, metadata, kept segments). trimmed_path is None when
        the savings are too small to bother.

    Raises:
        SpeechTrimError: on any ffmpeg failure. Callers treat this as non-fatal.
    """
    silences, total_duration = detect_silences(
        input_path, settings.noise_db, settings.min_silence_sec, ffmpeg_path
    )
    segments = build_speech_segments(silences, total_duration, settings.min_segment_sec)
    metadata = compute_vad_metadata(segments, total_duration)

    logger.info(
        f"Speech trim analysis: {len(silences)} silences, {len(segments)} speech segments, "
        f"{metadata.trimmed_duration:.1f}s of {total_duration:.1f}s is speech "
        f"({metadata.cost_savings_percent:.1f}% savings)"
    )

    if not worth_trimming(segments, total_duration, settings.min_savings_percent):
        logger.info(f"Speech trim: savings ≤ {settings.min_savings_percent:.0f}%, keeping original audio")
        return None, metadata.model_copy(update={"skipped_reason": "low_savings"}), segments

    work = Path(work_dir)
    work.mkdir(parents=True, exist_ok=True)
    suffix = Path(input_path).suffix or ".mp3"

    segment_paths = []
    for i, seg in enumerate(segments):
        seg_path = work / f"segment_{i:04d}{suffix}"
        _run_ffmpeg(
            [ffmpeg_path, "-y", "-ss", f"{seg.start:.3f}", "-to", f"{seg.end:.3f}",
             "-i", str(input_path), "-c", "copy", str(seg_path)],
            f"segment {i} extraction",
        )
        segment_paths.append(seg_path)

    list_path = work / "segments.txt"
    list_path.write_text("".join(f"file '{p.resolve()}'\n" for p in segment_paths))

    trimmed_path = work / f"trimmed{suffix}"
    _run_ffmpeg(
        [ffmpeg_path, "-y", "-f", "concat", "-safe", "0", "-i", str(list_path),
         "-c", "copy", str(trimmed_path)],
        "segment concatenation",
    )

    logger.info(
        f"Speech trim: {total_duration:.1f}s → {metadata.trimmed_duration:.1f}s "
        f"({len(segments)} segments stitched)"
    )
    return str(trimmed_path), metadata.model_copy(update={"used": True}), segments


def _run_ffmpeg(cmd: list[str], step: str) -> None:
    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        raise SpeechTrimError(f"ffmpeg {step} failed: {result.stderr[-500:]}")


def remap_words_to_original(words: list[Word], segments: list[SpeechSegment]) -> list[Word]:
    """Map word timestamps on the trimmed timeline back onto the original recording.

    Segment i occupies [offset_i, offset_i + duration_i) in the trimmed stream,
    where offset_i is the summed duration of the segments before it.
    """
    if not segments:
        return list(words)

    offsets = []
    acc = 0.0
    for seg in segments:
        offsets.append(acc)
        acc += seg.duration

    def to_original(t: float, is_end: bool) -> float:
        # An end that lands exactly on a boundary belongs to the earlier segment
        for seg, offset in zip(reversed(segments), reversed(offsets)):
            if t > offset or (t == offset and not is_end) or offset == 0.0:
                return round(seg.start + min(max(t - offset, 0.0), seg.duration), 3)
        return round(segments[0].start + t, 3)

    return [
        w.model_copy(update={"start": to_original(w.start, False), "end": to_original(w.end, True)})
        for w in words
    ]
