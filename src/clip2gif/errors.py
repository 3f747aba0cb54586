"""
Exception types for clip2gif.

Orchestration errors (raised to callers):
- LoadError: every engine source failed, fatal until restart
- InputValidationError: malformed job, caller fixes input and resubmits
- EncodingError: engine failed mid-pipeline, cleanup already ran
- BusyError: a job is already in flight
- CleanupError: logged only, never raised to callers

Engine errors (raised by the engine, translated by the orchestration layer):
- EngineLoadError, EngineExecError, ResourceError
"""

from typing import List, Optional


class Clip2GifError(Exception):
    """Base class for all clip2gif errors."""


class LoadError(Clip2GifError):
    """No engine source could be loaded."""

    def __init__(self, message: str, failures: Optional[List[str]] = None):
        super().__init__(message)
        self.failures = list(failures or [])


class LoadCancelledError(LoadError):
    """The load request was superseded before an engine became ready."""


class EngineNotReadyError(Clip2GifError):
    """A job was submitted before the engine reached READY."""


class InputValidationError(Clip2GifError):
    """The conversion job violates an input invariant."""


class EncodingError(Clip2GifError):
    """The engine failed while generating the palette or encoding."""

    def __init__(self, message: str, stage: str = ""):
        super().__init__(message)
        self.message = message
        self.stage = stage


class BusyError(Clip2GifError):
    """Another conversion job is already running."""


class CleanupError(Clip2GifError):
    """Removing a working-storage entry failed."""


# -------------------- ENGINE ERRORS --------------------


class EngineError(Exception):
    """Base class for errors reported by the media engine."""


class EngineLoadError(EngineError):
    """The engine rejected its resources."""


class EngineExecError(EngineError):
    """An engine command exited unsuccessfully."""

    def __init__(self, returncode: int, diagnostic: str):
        self.returncode = returncode
        self.diagnostic = diagnostic
        super().__init__(f"ffmpeg exited with code {returncode}: {diagnostic}")


class ResourceError(EngineError):
    """An engine resource could not be fetched from a source."""
