"""Find the recorded segments that overlap an export window."""

from __future__ import annotations

from typing import List, Sequence

from dashcam_export.errors import NoSegmentsInRange
from dashcam_export.models import RelevantSegment, Segment


def intersect_segments(
    segments: Sequence[Segment],
    start_time_ms: float,
    end_time_ms: float,
) -> List[RelevantSegment]:
    """Return the segments whose span overlaps ``[start_time_ms, end_time_ms)``.

    Segments are treated as contiguous: each one starts where the previous one
    ended, using its nominal duration when the real duration is unknown.
    """
    relevant: List[RelevantSegment] = []
    cumulative_ms = 0.0

    for index, segment in enumerate(segments):
        seg_start = cumulative_ms
        seg_end = cumulative_ms + segment.duration_ms
        if seg_end > start_time_ms and seg_start < end_time_ms:
            relevant.append(
                RelevantSegment(
                    index=index,
                    segment=segment,
                    seg_start_ms=seg_start,
                    seg_end_ms=seg_end,
                )
            )
        cumulative_ms = seg_end

    if not relevant:
        raise NoSegmentsInRange(start_time_ms, end_time_ms)
    return relevant


__all__ = ["intersect_segments"]
