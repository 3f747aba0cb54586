"""
Data model for clip2gif.

Engine sources, output settings, conversion jobs and artifacts. Height is a
tagged variant (AutoHeight | ExplicitHeight) rather than a sentinel value.
"""

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional, Tuple, Union
from urllib.parse import urlparse

from clip2gif.errors import InputValidationError

if TYPE_CHECKING:
    from clip2gif.history import DisplayHandle

ALLOWED_FPS: Tuple[int, ...] = (8, 12, 15, 20, 24, 30)
MIN_WIDTH = 64
MIN_HEIGHT = 64
MIN_SEGMENT_SECONDS = 0.1


# -------------------- ENGINE --------------------


@dataclass(frozen=True)
class EngineSource:
    """One candidate location for the engine resources."""

    base: str
    label: str


def parse_source(value: str) -> EngineSource:
    """Parse ``base`` or ``base|label`` into an EngineSource."""
    base, _sep, label = value.partition("|")
    base = base.strip().rstrip("/")
    if not base:
        raise ValueError(f"empty engine source: {value!r}")
    label = label.strip()
    if not label:
        parsed = urlparse(base)
        label = parsed.netloc or parsed.scheme or base
    return EngineSource(base=base, label=label)


class EngineState(enum.Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


# -------------------- OUTPUT SETTINGS --------------------


class Quality(enum.Enum):
    FAST = "fast"
    BALANCED = "balanced"
    BEST = "best"


@dataclass(frozen=True)
class AutoHeight:
    """Height follows the source aspect ratio."""

    def __str__(self) -> str:
        return "auto"


@dataclass(frozen=True)
class ExplicitHeight:
    pixels: int

    def __str__(self) -> str:
        return str(self.pixels)


Height = Union[AutoHeight, ExplicitHeight]
AUTO = AutoHeight()


def parse_height(value: Union[str, int, "Height"]) -> Height:
    """Parse "auto" or a pixel count."""
    if isinstance(value, (AutoHeight, ExplicitHeight)):
        return value
    if isinstance(value, int):
        return ExplicitHeight(value)
    text = str(value).strip().lower()
    if text in ("auto", ""):
        return AUTO
    try:
        return ExplicitHeight(int(text))
    except ValueError:
        raise InputValidationError(f"invalid height: {value!r}") from None


@dataclass(frozen=True)
class OutputSpec:
    """Requested output settings."""

    width: int
    height: Height = AUTO
    fps: int = 15
    quality: Quality = Quality.BALANCED
    filter_id: str = "none"

    def validate(self) -> None:
        """Raise InputValidationError if any setting is out of range."""
        if not isinstance(self.width, int) or self.width < MIN_WIDTH:
            raise InputValidationError(f"width must be an integer >= {MIN_WIDTH}, got {self.width!r}")
        if not isinstance(self.height, (AutoHeight, ExplicitHeight)):
            raise InputValidationError(f"invalid height: {self.height!r}")
        if isinstance(self.height, ExplicitHeight) and self.height.pixels < MIN_HEIGHT:
            raise InputValidationError(f"height must be >= {MIN_HEIGHT} or auto, got {self.height.pixels}")
        if self.fps not in ALLOWED_FPS:
            allowed = ", ".join(str(f) for f in ALLOWED_FPS)
            raise InputValidationError(f"fps must be one of {allowed}, got {self.fps!r}")
        if not isinstance(self.quality, Quality):
            raise InputValidationError(f"invalid quality: {self.quality!r}")


# -------------------- JOBS --------------------


@dataclass(frozen=True)
class SourceMedia:
    """Source video bytes plus the name they came from."""

    name: str
    data: bytes

    @classmethod
    def from_path(cls, path: Path) -> "SourceMedia":
        return cls(name=path.name, data=path.read_bytes())

    @property
    def extension(self) -> str:
        ext = Path(self.name).suffix.lstrip(".").lower()
        return ext or "mp4"


@dataclass(frozen=True)
class ConversionJob:
    """One request to turn a segment of a video into a GIF."""

    source: SourceMedia
    start: float
    end: float
    output: OutputSpec
    loop: bool = True

    @property
    def duration(self) -> float:
        return max(0.0, self.end - self.start)

    def validate(self) -> None:
        if not self.source.data:
            raise InputValidationError("source media is empty")
        if self.start < 0:
            raise InputValidationError(f"start must be >= 0, got {self.start}")
        if self.end <= self.start:
            raise InputValidationError(f"end ({self.end}) must be after start ({self.start})")
        # Allow for float noise in values produced by the selection clamp
        if self.end - self.start < MIN_SEGMENT_SECONDS - 1e-9:
            raise InputValidationError(
                f"segment must be at least {MIN_SEGMENT_SECONDS}s long, got {self.end - self.start:.3f}s"
            )
        self.output.validate()


# -------------------- ARTIFACTS --------------------


@dataclass(frozen=True)
class SettingsSnapshot:
    """Settings actually used to produce an artifact."""

    duration: float
    width: int
    height: Height
    fps: int
    quality: Quality
    filter_id: str
    max_colors: int
    stats_mode: str
    dither: str
    loop: bool

    def to_dict(self) -> Dict[str, object]:
        return {
            "duration": round(self.duration, 3),
            "width": self.width,
            "height": str(self.height),
            "fps": self.fps,
            "quality": self.quality.value,
            "filter": self.filter_id,
            "max_colors": self.max_colors,
            "stats_mode": self.stats_mode,
            "dither": self.dither,
            "loop": self.loop,
        }


@dataclass(frozen=True)
class Artifact:
    """A generated GIF and the settings that produced it."""

    id: str
    payload: bytes
    created_at: float
    settings: SettingsSnapshot
    handle: Optional["DisplayHandle"] = None

    @property
    def size(self) -> int:
        return len(self.payload)


# -------------------- PRESETS --------------------


@dataclass(frozen=True)
class Preset:
    id: str
    name: str
    width: int
    height: Height
    fps: int
    quality: Quality

    def apply(self, filter_id: str = "none") -> OutputSpec:
        return OutputSpec(
            width=self.width,
            height=self.height,
            fps=self.fps,
            quality=self.quality,
            filter_id=filter_id,
        )


PRESETS: Dict[str, Preset] = {
    "social": Preset("social", "Social media", 480, ExplicitHeight(480), 15, Quality.BALANCED),
    "web": Preset("web", "Web / blog", 600, AUTO, 12, Quality.FAST),
    "hd": Preset("hd", "High quality", 720, AUTO, 20, Quality.BEST),
    "mini": Preset("mini", "Ultra light", 320, AUTO, 8, Quality.FAST),
}
