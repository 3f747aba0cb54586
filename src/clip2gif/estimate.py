"""Output size approximation for UI feedback."""

from clip2gif.filters import profile_for
from clip2gif.models import ExplicitHeight, Height, Quality

# Frames without an explicit height are assumed to be 4:3
AUTO_HEIGHT_RATIO = 0.75


def estimate_size_kb(duration: float, width: int, height: Height, fps: int, quality: Quality) -> int:
    """Rough GIF size in KB for the given segment and settings."""
    if duration <= 0:
        return 0
    if isinstance(height, ExplicitHeight):
        frame_height = height.pixels
    else:
        frame_height = round(width * AUTO_HEIGHT_RATIO)
    pixels_per_frame = width * frame_height
    total_frames = duration * fps
    return round(pixels_per_frame * total_frames * profile_for(quality).size_factor / 8000)


def format_size(num_bytes: float) -> str:
    """Format a byte count as B, KB or MB."""
    if num_bytes < 1024:
        return f"{int(num_bytes)} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"
