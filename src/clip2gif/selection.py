"""
Segment selection with input clamping.

Keeps ``start``/``end`` consistent whenever either bound changes:
- start >= 0
- end >= start + MIN_SEGMENT_SECONDS
- end <= media duration, once the duration is known
"""

import math
from typing import Optional

from clip2gif.models import MIN_SEGMENT_SECONDS, ConversionJob, OutputSpec, SourceMedia

DEFAULT_END = 3.0


def _q(value: float) -> float:
    """Quantize to milliseconds so clamped bounds compare exactly."""
    return round(value, 3)


class SegmentSelection:
    """The part of the source video that will become the GIF."""

    def __init__(self, media_duration: float = 0.0, start: float = 0.0, end: float = DEFAULT_END):
        self._media_duration = max(0.0, float(media_duration))
        self._start = float(start)
        self._end = float(end)
        self._normalize()

    @property
    def start(self) -> float:
        return self._start

    @property
    def end(self) -> float:
        return self._end

    @property
    def media_duration(self) -> float:
        return self._media_duration

    @property
    def duration(self) -> float:
        return max(0.0, _q(self._end - self._start))

    def set_start(self, value: float) -> None:
        self._start = float(value)
        self._normalize()

    def set_end(self, value: float) -> None:
        self._end = float(value)
        self._normalize()

    def set_media_duration(self, duration: float) -> None:
        """Adopt a newly probed media duration and reset the end to at most 3s."""
        self._media_duration = max(0.0, float(duration))
        if self._media_duration > 0:
            self._end = min(DEFAULT_END, math.floor(self._media_duration))
        self._normalize()

    def _normalize(self) -> None:
        limit: Optional[float] = self._media_duration if self._media_duration > 0 else None
        start = max(0.0, self._start)
        end = self._end
        if limit is not None:
            start = min(start, max(0.0, limit - MIN_SEGMENT_SECONDS))
            end = min(end, limit)
        if end < start + MIN_SEGMENT_SECONDS:
            end = start + MIN_SEGMENT_SECONDS
            if limit is not None and end > limit:
                # Media shorter than the minimum segment: take all of it
                end = limit
                start = max(0.0, limit - MIN_SEGMENT_SECONDS)
        self._start = _q(start)
        self._end = _q(end)

    def to_job(self, source: SourceMedia, output: OutputSpec, loop: bool = True) -> ConversionJob:
        return ConversionJob(source=source, start=self._start, end=self._end, output=output, loop=loop)

    def __repr__(self) -> str:
        return f"SegmentSelection(start={self._start}, end={self._end}, media_duration={self._media_duration})"
