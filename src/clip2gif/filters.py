"""
Filter graph construction for clip2gif.

Contains:
- Quality profiles (max width, palette size, stats mode, dither algorithm)
- Named colour/sharpen filters
- Resolution clamping
- Filter chain and ffmpeg argument building for the palette and encode passes

Everything here is pure: no engine, no I/O.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from clip2gif.models import (
    AutoHeight,
    ExplicitHeight,
    Height,
    OutputSpec,
    Quality,
    SettingsSnapshot,
)

# -------------------- STATIC TABLES --------------------


@dataclass(frozen=True)
class QualityProfile:
    """Everything a quality tier decides."""

    max_width: int
    max_colors: int
    stats_mode: str
    dither: str
    size_factor: float


QUALITY_PROFILES: Dict[Quality, QualityProfile] = {
    Quality.FAST: QualityProfile(
        max_width=320, max_colors=64, stats_mode="diff", dither="bayer:bayer_scale=3", size_factor=0.3
    ),
    Quality.BALANCED: QualityProfile(
        max_width=480, max_colors=128, stats_mode="full", dither="sierra2", size_factor=0.5
    ),
    Quality.BEST: QualityProfile(
        max_width=640, max_colors=256, stats_mode="full", dither="floyd_steinberg", size_factor=0.8
    ),
}

# id -> (display name, ffmpeg filter); "none" is the identity filter
NAMED_FILTERS: Dict[str, Tuple[str, str]] = {
    "none": ("Original", ""),
    "sharpen": ("Sharpen", "unsharp=5:5:1.0:5:5:0.0"),
    "vintage": ("Vintage", "colorchannelmixer=.393:.769:.189:0:.349:.686:.168:0:.272:.534:.131"),
    "bright": ("Brightness+", "eq=brightness=0.1:contrast=1.1"),
}

# ffmpeg's scale filter keeps the aspect ratio for a -1 dimension
AUTO_SCALE_MARKER = "-1"


def profile_for(quality: Quality) -> QualityProfile:
    return QUALITY_PROFILES[quality]


def named_filter(filter_id: str) -> Optional[str]:
    """Return the ffmpeg expression for a named filter, or None if it adds no stage."""
    entry = NAMED_FILTERS.get(filter_id)
    if entry is None or not entry[1]:
        return None
    return entry[1]


# -------------------- DIMENSIONS --------------------


def resolve_dimensions(width: int, height: Height, quality: Quality) -> Tuple[int, Height]:
    """
    Clamp the width to the quality tier and rescale an explicit height to match.

    Returns:
        Tuple of (final_width, final_height). An auto height stays auto.
    """
    final_width = min(width, profile_for(quality).max_width)
    if isinstance(height, AutoHeight):
        return final_width, height
    if final_width == width:
        return final_width, height
    scaled = max(1, round(height.pixels * final_width / width))
    return final_width, ExplicitHeight(scaled)


def _height_term(height: Height) -> str:
    if isinstance(height, ExplicitHeight):
        return str(height.pixels)
    return AUTO_SCALE_MARKER


# -------------------- FILTER CHAINS --------------------


def build_filter_chain(width: int, height: Height, fps: int, quality: Quality, filter_id: str) -> str:
    """
    Build the per-frame filter chain: frame rate, scale, optional named filter.

    Example:
        >>> build_filter_chain(600, AUTO, 12, Quality.FAST, "none")
        'fps=12,scale=320:-1:flags=lanczos'
    """
    final_width, final_height = resolve_dimensions(width, height, quality)
    stages = [f"fps={fps}", f"scale={final_width}:{_height_term(final_height)}:flags=lanczos"]
    extra = named_filter(filter_id)
    if extra:
        stages.append(extra)
    return ",".join(stages)


def palettegen_filter(quality: Quality) -> str:
    profile = profile_for(quality)
    return f"palettegen=stats_mode={profile.stats_mode}:max_colors={profile.max_colors}"


def paletteuse_filter(quality: Quality) -> str:
    return f"paletteuse=dither={profile_for(quality).dither}:diff_mode=rectangle"


@dataclass(frozen=True)
class FilterPlan:
    """Resolved filter settings for one output spec."""

    chain: str
    width: int
    height: Height
    profile: QualityProfile

    def snapshot(self, spec: OutputSpec, duration: float, loop: bool) -> SettingsSnapshot:
        return SettingsSnapshot(
            duration=duration,
            width=self.width,
            height=self.height,
            fps=spec.fps,
            quality=spec.quality,
            filter_id=spec.filter_id,
            max_colors=self.profile.max_colors,
            stats_mode=self.profile.stats_mode,
            dither=self.profile.dither,
            loop=loop,
        )


def plan_output(spec: OutputSpec) -> FilterPlan:
    final_width, final_height = resolve_dimensions(spec.width, spec.height, spec.quality)
    return FilterPlan(
        chain=build_filter_chain(spec.width, spec.height, spec.fps, spec.quality, spec.filter_id),
        width=final_width,
        height=final_height,
        profile=profile_for(spec.quality),
    )


# -------------------- ENGINE ARGUMENTS --------------------


def fmt_seconds(value: float) -> str:
    """Format seconds for -ss/-t with millisecond precision."""
    return f"{value:.3f}"


def build_palette_args(
    input_name: str,
    palette_name: str,
    start: float,
    duration: float,
    chain: str,
    quality: Quality,
) -> List[str]:
    """Arguments for the first pass, which writes the palette image."""
    return [
        "-ss", fmt_seconds(start),
        "-t", fmt_seconds(duration),
        "-i", input_name,
        "-vf", f"{chain},{palettegen_filter(quality)}",
        "-y", palette_name,
    ]


def build_encode_args(
    input_name: str,
    palette_name: str,
    output_name: str,
    start: float,
    duration: float,
    chain: str,
    quality: Quality,
    loop: bool,
) -> List[str]:
    """Arguments for the second pass, which maps frames onto the palette."""
    graph = f"[0:v]{chain}[v];[v][1:v]{paletteuse_filter(quality)}"
    return [
        "-ss", fmt_seconds(start),
        "-t", fmt_seconds(duration),
        "-i", input_name,
        "-i", palette_name,
        "-filter_complex", graph,
        # gif muxer: 0 loops forever, -1 plays once
        "-loop", "0" if loop else "-1",
        "-y", output_name,
    ]
