import math

from lesson_sync.config import settings
from lesson_sync.models import VideoProgress


def compute_percentage(current_time: float, duration: float) -> float:
    """``current_time / duration * 100`` clamped to [0, 100]; 0 for an unknown duration."""
    if not (math.isfinite(current_time) and math.isfinite(duration)) or duration <= 0:
        return 0.0
    return max(0.0, min(100.0, current_time / duration * 100))


def merge_segments(
    segments: list[tuple[float, float]], gap: float = 0.0
) -> list[tuple[float, float]]:
    """Sort and coalesce ranges that overlap or sit within *gap* seconds."""
    merged: list[tuple[float, float]] = []
    for start, end in sorted(segments):
        if merged and start <= merged[-1][1] + gap:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def covered_seconds(segments: list[tuple[float, float]]) -> float:
    return sum(end - start for start, end in merge_segments(segments))


def advance(
    previous: VideoProgress | None,
    current_time: float,
    duration: float,
    *,
    gap: float | None = None,
) -> VideoProgress:
    """Fold one player tick into the lesson's progress.

    A tick that lands within *gap* seconds after the end of a watched segment
    extends it, which is what continuous playback looks like at the player's
    250 ms tick rate.  Anything else (a seek) opens a new zero-length segment
    at the new position.  ``completion_rate`` is the share of the video that
    has actually been played and never goes down, so seeking straight to the
    end moves ``percentage`` but not ``completion_rate``.
    """
    gap = settings.segment_gap_seconds if gap is None else gap
    # a non-finite duration is as good as unknown; a non-finite position
    # falls back to where playback last was
    if not math.isfinite(duration):
        duration = 0.0
    if not math.isfinite(current_time):
        current_time = previous.current_time if previous else 0.0
    current_time = max(0.0, current_time)
    if duration > 0:
        current_time = min(current_time, duration)

    segments = list(previous.watched_segments) if previous else []
    last_time = previous.current_time if previous else None

    if last_time is not None and segments and last_time <= current_time <= last_time + gap:
        segments.append((last_time, current_time))
    else:
        segments.append((current_time, current_time))
    segments = merge_segments(segments)

    completion = 0.0
    if duration > 0:
        completion = min(100.0, covered_seconds(segments) / duration * 100)
    if previous:
        completion = max(completion, previous.completion_rate)

    return VideoProgress(
        current_time=current_time,
        duration=duration,
        percentage=compute_percentage(current_time, duration),
        watched_segments=segments,
        completion_rate=completion,
    )
