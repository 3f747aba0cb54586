"""
Conversion pipeline for clip2gif.

Runs one job at a time through a two-pass palette-then-encode sequence:

    IDLE -> PREPARING -> GENERATING_PALETTE -> ENCODING -> FINALIZING
         -> SUCCEEDED | FAILED -> IDLE

Working-storage entries created by a run are always deleted before run()
returns, whatever the outcome.
"""

import enum
import itertools
import logging
import time
from typing import Callable, Iterable, Optional, Tuple

from clip2gif.engine import Engine
from clip2gif.errors import (
    BusyError,
    CleanupError,
    EncodingError,
    EngineError,
    EngineExecError,
    EngineNotReadyError,
)
from clip2gif.events import EventChannel, Subscription
from clip2gif.filters import build_encode_args, build_palette_args, plan_output
from clip2gif.history import ArtifactHistory, HandleStore
from clip2gif.models import Artifact, ConversionJob

logger = logging.getLogger(__name__)


class PipelineState(enum.Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    GENERATING_PALETTE = "generating_palette"
    ENCODING = "encoding"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ProgressCallback = Callable[[PipelineState, int], None]

# Disambiguates names generated within the same millisecond
_sequence = itertools.count(1)


def working_names(extension: str, clock: Callable[[], float] = time.time) -> Tuple[str, str, str, str]:
    """Return (stamp, input, palette, output) names unique to one run."""
    stamp = f"{int(clock() * 1000)}_{next(_sequence)}"
    return stamp, f"input_{stamp}.{extension}", f"palette_{stamp}.png", f"output_{stamp}.gif"


def scale_progress(fraction: float) -> int:
    """Map an engine progress fraction onto 0-100."""
    return max(0, min(100, round(fraction * 100)))


class ConversionPipeline:
    """Drives the engine through one conversion job at a time."""

    def __init__(
        self,
        handles: HandleStore,
        history: Optional[ArtifactHistory] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.handles = handles
        self.history = history
        self.clock = clock
        self._state = PipelineState.IDLE
        self._events: EventChannel[PipelineState] = EventChannel("pipeline-state")

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state is not PipelineState.IDLE

    def subscribe(self, callback: Callable[[PipelineState], None]) -> Subscription:
        return self._events.subscribe(callback)

    def _enter(self, state: PipelineState) -> None:
        if state is self._state:
            return
        logger.debug("Pipeline state %s -> %s", self._state.value, state.value)
        self._state = state
        self._events.emit(state)

    async def run(
        self,
        engine: Engine,
        job: ConversionJob,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Artifact:
        """
        Convert one job into an artifact.

        Raises:
            BusyError: another job is in flight.
            EngineNotReadyError: the engine has not been loaded.
            InputValidationError: the job violates an input invariant.
            EncodingError: the engine failed; working storage is already cleaned.
        """
        if self.busy:
            raise BusyError(f"a conversion is already running ({self._state.value})")

        self._enter(PipelineState.PREPARING)
        try:
            artifact = await self._convert(engine, job, on_progress)
            if self.history is not None:
                self.history.insert(artifact)
                self.history.set_current(artifact)
        except BaseException as e:
            logger.info("Conversion failed: %s", e)
            self._enter(PipelineState.FAILED)
            raise
        else:
            logger.info("Conversion succeeded: artifact %s (%d bytes)", artifact.id, artifact.size)
            self._enter(PipelineState.SUCCEEDED)
            return artifact
        finally:
            self._enter(PipelineState.IDLE)

    async def _convert(
        self,
        engine: Engine,
        job: ConversionJob,
        on_progress: Optional[ProgressCallback],
    ) -> Artifact:
        if not engine.loaded:
            raise EngineNotReadyError("engine is not loaded")
        job.validate()

        plan = plan_output(job.output)
        duration = job.duration
        stamp, input_name, palette_name, output_name = working_names(job.source.extension, self.clock)
        logger.info(
            "Converting %s [%.3fs-%.3fs] with %s",
            job.source.name,
            job.start,
            job.end,
            plan.chain,
        )

        def forward(fraction: float) -> None:
            if on_progress is not None:
                on_progress(self._state, scale_progress(fraction))

        subscription = engine.on_progress(forward)
        try:
            try:
                await engine.write_file(input_name, job.source.data)

                self._enter(PipelineState.GENERATING_PALETTE)
                await engine.exec(
                    build_palette_args(input_name, palette_name, job.start, duration, plan.chain, job.output.quality)
                )

                self._enter(PipelineState.ENCODING)
                await engine.exec(
                    build_encode_args(
                        input_name,
                        palette_name,
                        output_name,
                        job.start,
                        duration,
                        plan.chain,
                        job.output.quality,
                        job.loop,
                    )
                )

                self._enter(PipelineState.FINALIZING)
                data = await engine.read_file(output_name)
            except (EngineError, OSError) as e:
                diagnostic = e.diagnostic if isinstance(e, EngineExecError) else str(e)
                raise EncodingError(diagnostic, stage=self._state.value) from e

            if not data:
                raise EncodingError("engine produced an empty output", stage=self._state.value)
            try:
                handle = self.handles.create(data)
            except OSError as e:
                raise EncodingError(f"cannot export artifact: {e}", stage=self._state.value) from e

            return Artifact(
                id=stamp,
                payload=data,
                created_at=self.clock(),
                settings=plan.snapshot(job.output, duration, job.loop),
                handle=handle,
            )
        finally:
            subscription.unsubscribe()
            await self._cleanup(engine, (input_name, palette_name, output_name))

    async def _cleanup(self, engine: Engine, names: Iterable[str]) -> None:
        for name in names:
            try:
                await engine.delete_file(name)
            except Exception as e:
                # Never replaces the primary result
                logger.warning("%s", CleanupError(f"failed to delete {name}: {e}"))
