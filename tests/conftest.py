"""
Pytest configuration and shared fixtures for clip2gif tests.
"""

import asyncio
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional, Sequence

import pytest

# Add src to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from clip2gif.engine import Engine, EngineDescriptor  # noqa: E402
from clip2gif.errors import EngineExecError, EngineLoadError, ResourceError  # noqa: E402

FAKE_GIF = b"GIF89a" + b"\x00" * 64


class FakeEngine(Engine):
    """
    In-memory engine.

    ``load_behaviour`` maps a source directory name to "fail" or "hang";
    anything else loads. ``fail_at`` names a pipeline step ("palette",
    "encode" or "read") that should fail.
    """

    def __init__(self) -> None:
        super().__init__()
        self.files: Dict[str, bytes] = {}
        self.commands: List[List[str]] = []
        self.loads: List[EngineDescriptor] = []
        self.deleted: List[str] = []
        self.load_behaviour: Dict[str, str] = {}
        self.fail_at: Optional[str] = None
        self.fail_delete = False
        self.output = FAKE_GIF
        self.exec_hook = None
        self.duration = 0.0
        self.closed = False

    async def load(self, descriptor: EngineDescriptor) -> None:
        self.loads.append(descriptor)
        behaviour = self.load_behaviour.get(descriptor.core.parent.name)
        if behaviour == "fail":
            raise EngineLoadError(f"bad core in {descriptor.core.parent.name}")
        if behaviour == "hang":
            await asyncio.sleep(60)
        self.loaded = True

    async def exec(self, argv: Sequence[str]) -> None:
        argv = list(argv)
        self.commands.append(argv)
        step = "palette" if any("palettegen" in a for a in argv) else "encode"
        if self.exec_hook is not None:
            await self.exec_hook(step)
        for fraction in (0.0, 0.5, 1.0):
            self._progress.emit(fraction)
        if self.fail_at == step:
            self._log.emit("Error while filtering: Invalid argument")
            raise EngineExecError(1, "Error while filtering: Invalid argument")
        self.files[argv[-1]] = self.output if step == "encode" else b"PNG"

    async def write_file(self, name: str, data: bytes) -> None:
        self.files[name] = data

    async def read_file(self, name: str) -> bytes:
        if self.fail_at == "read" or name not in self.files:
            raise EngineExecError(1, f"{name}: No such file or directory")
        return self.files[name]

    async def delete_file(self, name: str) -> None:
        self.deleted.append(name)
        if self.fail_delete:
            raise OSError(f"cannot delete {name}")
        self.files.pop(name, None)

    async def probe_duration(self, path: Path) -> float:
        return self.duration

    def close(self) -> None:
        self.closed = True


class FakeFetcher:
    """Stages nothing; bases listed in ``missing`` fail to stage."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.missing: List[str] = []
        self.staged: List[str] = []

    async def stage(self, source, cancel) -> EngineDescriptor:
        cancel.raise_if_cancelled()
        self.staged.append(source.base)
        if source.base in self.missing:
            raise ResourceError(f"{source.base}/engine.json not found")
        folder = self.root / source.label
        return EngineDescriptor(core=folder / "engine.json", binary=folder / "ffmpeg")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config_dir(temp_dir: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = temp_dir / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def temp_state_dir(temp_dir: Path) -> Path:
    """Create a temporary state directory."""
    state_dir = temp_dir / "state"
    state_dir.mkdir(parents=True, exist_ok=True)
    return state_dir


@pytest.fixture
def mock_xdg_dirs(temp_dir: Path, monkeypatch):
    """Mock XDG directories to use temporary paths."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(temp_dir / "config"))
    monkeypatch.setenv("XDG_STATE_HOME", str(temp_dir / "state"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(temp_dir / "cache"))


@pytest.fixture
def default_config():
    """Return a default Config instance for testing."""
    from clip2gif.config import Config

    return Config()


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def loaded_engine() -> FakeEngine:
    engine = FakeEngine()
    engine.loaded = True
    return engine


@pytest.fixture
def fake_fetcher(temp_dir: Path) -> FakeFetcher:
    return FakeFetcher(temp_dir / "engine")


@pytest.fixture
def handle_store(temp_dir: Path):
    from clip2gif.history import HandleStore

    return HandleStore(temp_dir / "handles")


@pytest.fixture
def make_job():
    """Factory for valid conversion jobs."""
    from clip2gif.models import ConversionJob, OutputSpec, Quality, SourceMedia

    def _make(start: float = 0.0, end: float = 2.0, width: int = 480, quality=Quality.BALANCED, **kw):
        spec = OutputSpec(width=width, quality=quality, **{k: v for k, v in kw.items() if k != "loop"})
        source = SourceMedia(name="clip.mp4", data=b"\x00\x00\x00\x18ftypmp42")
        return ConversionJob(source=source, start=start, end=end, output=spec, loop=kw.get("loop", True))

    return _make


@pytest.fixture(scope="session")
def test_sample_mp4(tmp_path_factory) -> Path:
    """
    Create a small test MP4 file using ffmpeg.

    320x240 test pattern, 4 seconds at 24 fps.
    """
    if not shutil.which("ffmpeg"):
        pytest.skip("ffmpeg not available for creating test files")

    mp4_path = tmp_path_factory.mktemp("data") / "sample.mp4"
    cmd = [
        "ffmpeg",
        "-y",
        "-f",
        "lavfi",
        "-i",
        "testsrc=duration=4:size=320x240:rate=24",
        "-pix_fmt",
        "yuv420p",
        str(mp4_path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=60)
        if result.returncode != 0:
            pytest.skip(f"Failed to create test file: {result.stderr.decode()[:200]}")
    except subprocess.TimeoutExpired:
        pytest.skip("Timeout creating test file")

    return mp4_path


@pytest.fixture
def sample_artifact():
    """An artifact without a display handle."""
    from clip2gif.filters import plan_output
    from clip2gif.models import Artifact, OutputSpec, Quality

    spec = OutputSpec(width=600, quality=Quality.FAST, filter_id="vintage")
    return Artifact(
        id="1700000000000_1",
        payload=FAKE_GIF,
        created_at=1700000000.0,
        settings=plan_output(spec).snapshot(spec, 2.0, True),
    )
