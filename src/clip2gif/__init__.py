"""
clip2gif - Turn a segment of a video into an animated GIF with ffmpeg.

The ffmpeg engine is staged from a list of mirrors (the last one that worked
is tried first), then each job runs a palette pass and an encode pass. The
five most recent results are kept in memory.

Example usage:
    # As a command-line tool
    $ clip2gif clip.mp4 --start 2 --end 5 --quality best

    # As a Python module
    import asyncio
    from clip2gif import ClipSession, MemoryStore, SourceCache, get_app_dirs, parse_source

    session = ClipSession.create(get_app_dirs())
    asyncio.run(session.start([parse_source("system:")], SourceCache(MemoryStore())))
"""

__version__ = "1.0.0"
__author__ = "clip2gif contributors"
__license__ = "GPL-3.0"
__description__ = "Convert video segments to animated GIFs with a mirrored ffmpeg engine"

# Public API exports
from clip2gif.config import Config, get_app_dirs, load_config_file
from clip2gif.engine import Engine, EngineDescriptor, EngineService, FFmpegEngine
from clip2gif.errors import (
    BusyError,
    Clip2GifError,
    CleanupError,
    EncodingError,
    EngineNotReadyError,
    InputValidationError,
    LoadCancelledError,
    LoadError,
)
from clip2gif.estimate import estimate_size_kb
from clip2gif.filters import build_filter_chain, plan_output
from clip2gif.history import ArtifactHistory, HandleStore
from clip2gif.json_progress import JSONProgressOutput
from clip2gif.mirrors import CancelToken, JsonFileStore, MemoryStore, MirrorLoader, SourceCache
from clip2gif.models import (
    AUTO,
    Artifact,
    ConversionJob,
    EngineSource,
    ExplicitHeight,
    OutputSpec,
    Quality,
    SourceMedia,
    parse_source,
)
from clip2gif.pipeline import ConversionPipeline, PipelineState
from clip2gif.selection import SegmentSelection
from clip2gif.session import ClipSession

__all__ = [
    # Version info
    "__version__",
    "__author__",
    "__license__",
    # Config
    "Config",
    "get_app_dirs",
    "load_config_file",
    # Model
    "AUTO",
    "Artifact",
    "ConversionJob",
    "EngineSource",
    "ExplicitHeight",
    "OutputSpec",
    "Quality",
    "SourceMedia",
    "parse_source",
    "SegmentSelection",
    # Filters / estimate
    "build_filter_chain",
    "plan_output",
    "estimate_size_kb",
    # Engine
    "Engine",
    "EngineDescriptor",
    "EngineService",
    "FFmpegEngine",
    "CancelToken",
    "JsonFileStore",
    "MemoryStore",
    "MirrorLoader",
    "SourceCache",
    # Conversion
    "ConversionPipeline",
    "PipelineState",
    "ArtifactHistory",
    "HandleStore",
    "ClipSession",
    # Errors
    "Clip2GifError",
    "BusyError",
    "CleanupError",
    "EncodingError",
    "EngineNotReadyError",
    "InputValidationError",
    "LoadCancelledError",
    "LoadError",
    # JSON progress
    "JSONProgressOutput",
]
