"""PII range merging — raw detector matches → sorted, bounded, non-overlapping ranges.

The merged list feeds a single ffmpeg filter chain, so its length is capped.
Touching ranges (next.start == last.end) merge, same as overlapping ones.
"""

from loguru import logger

from config.schemas import PiiRange

MAX_PII_RANGES = 180


def clamp_pii_ranges(ranges: list[PiiRange], audio_duration: float) -> list[PiiRange]:
    """Drop invalid ranges and clamp ends to the audio duration.

    Ranges with negative times, zero or negative length, or a start past
    the end of the audio are dropped. A non-positive duration disables clamping.
    """
    if not ranges or audio_duration <= 0:
        return list(ranges)

    bounded = []
    for r in ranges:
        if r.start < 0 or r.end < 0 or r.start >= r.end:
            logger.warning(f"Skipping invalid PII range: {r.start}-{r.end}")
            continue
        if r.start >= audio_duration:
            logger.warning(f"Skipping PII range beyond audio duration: {r.start}-{r.end} (duration: {audio_duration})")
            continue
        if r.end > audio_duration:
            logger.debug(f"Clamping PII range end {r.end} → {audio_duration}")
            r = r.model_copy(update={"end": audio_duration})
        bounded.append(r)
    return bounded


def merge_pii_ranges(ranges: list[PiiRange], max_ranges: int = MAX_PII_RANGES) -> list[PiiRange]:
    """Merge overlapping or touching ranges, then coalesce down to max_ranges.

    Pure function: the input list and its ranges are never modified.
    """
    if not ranges:
        return []

    ordered = sorted(ranges, key=lambda r: (r.start, r.end))
    merged: list[PiiRange] = [ordered[0]]

    for r in ordered[1:]:
        last = merged[-1]
        if r.start <= last.end:
            if r.end > last.end:
                merged[-1] = last.model_copy(update={"end": r.end})
        else:
            merged.append(r)

    coalesced = merged
    while len(coalesced) > max_ranges:
        coalesced = _coalesce_pass(coalesced, max_ranges)

    if len(coalesced) != len(merged):
        logger.info(f"PII ranges coalesced {len(merged)} → {len(coalesced)} (limit {max_ranges})")
    return coalesced


def _coalesce_pass(ranges: list[PiiRange], max_ranges: int) -> list[PiiRange]:
    """Walk adjacent pairs left to right, joining each pair while still over the limit."""
    out: list[PiiRange] = []
    i = 0
    while i < len(ranges):
        remaining = len(ranges) - i
        if i + 1 < len(ranges) and len(out) + remaining > max_ranges:
            first, second = ranges[i], ranges[i + 1]
            label = first.label if first.label == second.label else "pii"
            out.append(PiiRange(
                start=min(first.start, second.start),
                end=max(first.end, second.end),
                label=label,
            ))
            i += 2
        else:
            out.append(ranges[i])
            i += 1
    return out


def total_coverage(ranges: list[PiiRange]) -> float:
    """Seconds covered by a merged (non-overlapping) range list."""
    return sum(r.end - r.start for r in ranges)
