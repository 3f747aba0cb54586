"""
Media engine for clip2gif.

Contains:
- The Engine command surface (load, exec, working storage, log/progress events)
- FFmpegEngine, which drives a staged ffmpeg build through asyncio subprocesses
- FFmpeg progress parsing
- EngineService, the explicit owner of the engine lifecycle
"""

import abc
import asyncio
import hashlib
import json
import logging
import os
import re
import shlex
import shutil
import stat
import tempfile
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from clip2gif.errors import EngineError, EngineExecError, EngineLoadError, EngineNotReadyError
from clip2gif.events import EventChannel, Subscription
from clip2gif.models import EngineState

logger = logging.getLogger(__name__)

ENGINE_NAME = "ffmpeg"


@dataclass(frozen=True)
class EngineDescriptor:
    """Locations of the staged engine resources."""

    core: Path
    binary: Path
    worker: Optional[Path] = None


# -------------------- PROGRESS PARSING --------------------


def parse_ffmpeg_progress(line: str, dur_ms: int) -> Dict[str, Any]:
    """
    Parse an ffmpeg stats line.

    Args:
        line: A line from ffmpeg stderr output.
        dur_ms: Length of the processed window in milliseconds.

    Returns:
        Dict with progress metrics:
        - fraction: float (0-1)
        - current_time_ms: int
        - frame: int
        - fps: float
        - speed: str (e.g., "2.5x")
    """
    result: Dict[str, Any] = {
        "fraction": 0.0,
        "current_time_ms": 0,
        "frame": 0,
        "fps": 0.0,
        "speed": "",
    }

    # time=00:01:23.45; some builds use a comma as decimal separator
    m = re.search(r"time=\s*(\d+):(\d+):(\d+)[\.,](\d+)", line)
    if m:
        h, mi, s, cs = int(m.group(1)), int(m.group(2)), int(m.group(3)), int(m.group(4))
        current_ms = (h * 3600 + mi * 60 + s) * 1000 + cs * 10
        result["current_time_ms"] = current_ms
        if dur_ms > 0:
            result["fraction"] = min(1.0, current_ms / dur_ms)

    m = re.search(r"frame=\s*(\d+)", line)
    if m:
        result["frame"] = int(m.group(1))

    m = re.search(r"fps=\s*([0-9.]+)", line)
    if m:
        try:
            result["fps"] = float(m.group(1))
        except ValueError:
            pass

    m = re.search(r"speed=\s*([0-9.]+)x", line)
    if m:
        result["speed"] = f"{float(m.group(1)):.1f}x"

    return result


def window_ms(argv: Sequence[str]) -> int:
    """Return the -t window of an argument list in milliseconds (0 if absent)."""
    for i, arg in enumerate(argv[:-1]):
        if arg == "-t":
            try:
                return int(float(argv[i + 1]) * 1000)
            except ValueError:
                return 0
    return 0


async def _iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield stderr lines; ffmpeg terminates stats lines with a carriage return."""
    buffer = b""
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        buffer += chunk
        parts = re.split(rb"[\r\n]", buffer)
        buffer = parts.pop()
        for part in parts:
            text = part.decode("utf-8", errors="replace").strip()
            if text:
                yield text
    text = buffer.decode("utf-8", errors="replace").strip()
    if text:
        yield text


def _diagnostic(lines: Sequence[str]) -> str:
    """Pick the last few non-stats lines of ffmpeg output."""
    useful = [ln for ln in lines if not ln.startswith("frame=") and not ln.startswith("size=")]
    return " | ".join(useful[-3:]) or "no diagnostic output"


# -------------------- ENGINE INTERFACE --------------------


class Engine(abc.ABC):
    """Command surface of the media engine."""

    def __init__(self) -> None:
        self.loaded = False
        self._log: EventChannel[str] = EventChannel("engine-log")
        self._progress: EventChannel[float] = EventChannel("engine-progress")

    def on_log(self, callback: Callable[[str], None]) -> Subscription:
        return self._log.subscribe(callback)

    def on_progress(self, callback: Callable[[float], None]) -> Subscription:
        """Subscribe to progress fractions (0..1) of the running command."""
        return self._progress.subscribe(callback)

    @abc.abstractmethod
    async def load(self, descriptor: EngineDescriptor) -> None: ...

    @abc.abstractmethod
    async def exec(self, argv: Sequence[str]) -> None: ...

    @abc.abstractmethod
    async def write_file(self, name: str, data: bytes) -> None: ...

    @abc.abstractmethod
    async def read_file(self, name: str) -> bytes: ...

    @abc.abstractmethod
    async def delete_file(self, name: str) -> None: ...

    async def probe_duration(self, path: Path) -> float:
        """Duration of a media file in seconds, 0.0 when unknown."""
        return 0.0

    def close(self) -> None:
        """Release the working storage."""


# -------------------- FFMPEG ENGINE --------------------


def _read_core_definition(path: Path) -> Dict[str, Any]:
    try:
        manifest = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise EngineLoadError(f"unreadable core definition {path.name}: {e}") from e
    if not isinstance(manifest, dict) or manifest.get("name") != ENGINE_NAME:
        raise EngineLoadError(f"core definition {path.name} does not describe {ENGINE_NAME}")
    return manifest


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _verify_checksums(manifest: Dict[str, Any], descriptor: EngineDescriptor) -> None:
    checksums = manifest.get("sha256") or {}
    resources = {"ffmpeg": descriptor.binary, "ffprobe": descriptor.worker}
    for name, path in resources.items():
        expected = checksums.get(name)
        if not expected or path is None:
            continue
        actual = sha256_file(path)
        if actual.lower() != str(expected).lower():
            raise EngineLoadError(f"checksum mismatch for {name}: expected {expected}, got {actual}")


def _ensure_executable(path: Path) -> None:
    if os.access(path, os.X_OK):
        return
    try:
        mode = path.stat().st_mode
        path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as e:
        raise EngineLoadError(f"cannot make {path} executable: {e}") from e


async def _communicate(cmd: List[str]) -> Tuple[int, str]:
    """Run a short command and return (returncode, stdout)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise EngineLoadError(f"cannot start {cmd[0]}: {e}") from e
    try:
        out, _err = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise
    return proc.returncode or 0, out.decode("utf-8", errors="replace")


class FFmpegEngine(Engine):
    """Engine backed by an ffmpeg executable and a private working directory."""

    def __init__(self, work_root: Path):
        super().__init__()
        self.work_root = work_root
        self.binary: Optional[Path] = None
        self.worker: Optional[Path] = None
        self.version = ""
        self._storage: Optional[Path] = None

    async def load(self, descriptor: EngineDescriptor) -> None:
        if self.loaded:
            raise EngineLoadError("engine is already loaded")

        manifest = await asyncio.to_thread(_read_core_definition, descriptor.core)
        await asyncio.to_thread(_verify_checksums, manifest, descriptor)
        _ensure_executable(descriptor.binary)
        if descriptor.worker is not None:
            _ensure_executable(descriptor.worker)

        returncode, out = await _communicate([str(descriptor.binary), "-hide_banner", "-version"])
        if returncode != 0:
            raise EngineLoadError(f"{descriptor.binary} -version exited with code {returncode}")
        self.version = out.splitlines()[0].strip() if out.strip() else manifest.get("version", "unknown")
        self._log.emit(self.version)

        self.work_root.mkdir(parents=True, exist_ok=True)
        self._storage = Path(tempfile.mkdtemp(prefix="work-", dir=str(self.work_root)))
        self.binary = descriptor.binary
        self.worker = descriptor.worker
        self.loaded = True
        logger.info("Engine loaded: %s", self.version)

    def _path(self, name: str) -> Path:
        if not self.loaded or self._storage is None:
            raise EngineError("engine is not loaded")
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            raise EngineError(f"invalid working-storage name: {name!r}")
        return self._storage / name

    async def write_file(self, name: str, data: bytes) -> None:
        path = self._path(name)
        try:
            await asyncio.to_thread(path.write_bytes, data)
        except OSError as e:
            raise EngineError(f"cannot write {name} to working storage: {e}") from e

    async def read_file(self, name: str) -> bytes:
        path = self._path(name)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise EngineError(f"no such file in working storage: {name}") from None
        except OSError as e:
            raise EngineError(f"cannot read {name} from working storage: {e}") from e

    async def delete_file(self, name: str) -> None:
        """Delete a working-storage entry; deleting a missing entry is a no-op."""
        path = self._path(name)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def exec(self, argv: Sequence[str]) -> None:
        if not self.loaded or self.binary is None:
            raise EngineError("engine is not loaded")

        dur_ms = window_ms(argv)
        cmd = [str(self.binary), "-hide_banner", "-nostdin", *argv]
        logger.debug("exec: %s", shlex.join(cmd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self._storage),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EngineError(f"cannot start {self.binary}: {e}") from e
        tail: Deque[str] = deque(maxlen=20)
        try:
            assert proc.stderr is not None
            async for line in _iter_lines(proc.stderr):
                tail.append(line)
                self._log.emit(line)
                info = parse_ffmpeg_progress(line, dur_ms)
                if info["current_time_ms"] and dur_ms > 0:
                    self._progress.emit(info["fraction"])
            returncode = await proc.wait()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        if returncode != 0:
            raise EngineExecError(returncode, _diagnostic(list(tail)))

    async def probe_duration(self, path: Path) -> float:
        if self.worker is None:
            return 0.0
        cmd = [
            str(self.worker),
            "-v",
            "error",
            "-of",
            "json",
            "-show_entries",
            "format=duration:stream=codec_type,duration",
            str(path),
        ]
        try:
            returncode, out = await _communicate(cmd)
            if returncode != 0:
                return 0.0
            j = json.loads(out)
        except (EngineLoadError, ValueError):
            return 0.0

        dur = 0.0
        if j.get("format", {}).get("duration"):
            dur = float(j["format"]["duration"])
        if dur <= 0:
            for s in j.get("streams", []):
                if s.get("codec_type") == "video" and s.get("duration"):
                    dur = float(s["duration"])
                    if dur > 0:
                        break
        return max(0.0, dur)

    def close(self) -> None:
        if self._storage is not None:
            shutil.rmtree(self._storage, ignore_errors=True)
            self._storage = None


# -------------------- LIFECYCLE --------------------


class EngineService:
    """
    Owns the single engine instance and its lifecycle.

    UNLOADED -> LOADING -> READY, with LOADING -> FAILED -> LOADING cycles
    across mirror attempts. READY is final. A FAILED state marked terminal
    means every source was exhausted.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.terminal = False
        self._state = EngineState.UNLOADED
        self._events: EventChannel[EngineState] = EventChannel("engine-state")

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state is EngineState.READY

    def subscribe(self, callback: Callable[[EngineState], None]) -> Subscription:
        return self._events.subscribe(callback)

    def transition(self, state: EngineState) -> None:
        if self._state is EngineState.READY and state is not EngineState.READY:
            raise RuntimeError("engine is ready; its state can no longer change")
        if state is self._state:
            return
        logger.debug("Engine state %s -> %s", self._state.value, state.value)
        self._state = state
        self._events.emit(state)

    def mark_exhausted(self) -> None:
        self.transition(EngineState.FAILED)
        self.terminal = True

    def require_ready(self) -> Engine:
        if not self.ready:
            raise EngineNotReadyError(f"engine is {self._state.value}; jobs are accepted only when ready")
        return self.engine

    def close(self) -> None:
        self.engine.close()
