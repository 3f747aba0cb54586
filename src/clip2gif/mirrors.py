"""
Engine bootstrap from untrusted mirrors.

Handles:
- Versioned cache of the last source that worked (stale schema keys purged)
- Staging the engine resources from HTTP(S), file:// or system: sources
- Strictly sequential attempts with a per-attempt timeout
- Cooperative cancellation between suspend points
"""

import abc
import asyncio
import hashlib
import json
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx

from clip2gif.engine import Engine, EngineDescriptor, EngineService
from clip2gif.errors import EngineError, LoadCancelledError, LoadError, ResourceError
from clip2gif.events import EventChannel, Subscription
from clip2gif.models import EngineSource, EngineState

logger = logging.getLogger(__name__)

CORE_RESOURCE = "engine.json"
BINARY_RESOURCE = "ffmpeg"
WORKER_RESOURCE = "ffprobe"

CACHE_KEY_PREFIX = "clip2gif.engine-source.v"
CACHE_SCHEMA_VERSION = 2

DEFAULT_ATTEMPT_TIMEOUT = 30.0
DOWNLOAD_CHUNK = 1024 * 1024


# -------------------- KEY-VALUE STORES --------------------


class KeyValueStore(abc.ABC):
    """Small durable key-value store."""

    @abc.abstractmethod
    def get(self, key: str) -> Optional[Any]: ...

    @abc.abstractmethod
    def set(self, key: str, value: Any) -> None: ...

    @abc.abstractmethod
    def delete(self, key: str) -> None: ...

    @abc.abstractmethod
    def keys(self) -> List[str]: ...


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Optional[Any]:
        return self.data.get(key)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self.data)


class JsonFileStore(KeyValueStore):
    """Key-value store kept in one JSON document, rewritten atomically."""

    def __init__(self, path: Path):
        self.path = path
        self._data: Dict[str, Any] = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable cache %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(self._data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._write()

    def delete(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._write()

    def keys(self) -> List[str]:
        return list(self._data)


def cache_key(version: int = CACHE_SCHEMA_VERSION) -> str:
    return f"{CACHE_KEY_PREFIX}{version}"


class SourceCache:
    """
    The last engine source that loaded successfully.

    Older schema versions are deleted when the cache is opened, before the
    current entry can be read.
    """

    def __init__(self, store: KeyValueStore, version: int = CACHE_SCHEMA_VERSION):
        self.store = store
        self.version = version
        self.purged = self.purge_stale()

    @property
    def key(self) -> str:
        return cache_key(self.version)

    def purge_stale(self) -> List[str]:
        removed = []
        for key in self.store.keys():
            if not key.startswith(CACHE_KEY_PREFIX):
                continue
            suffix = key[len(CACHE_KEY_PREFIX):]
            if suffix.isdigit() and int(suffix) < self.version:
                self.store.delete(key)
                removed.append(key)
        if removed:
            logger.debug("Purged stale engine cache keys: %s", ", ".join(removed))
        return removed

    def load_source(self) -> Optional[EngineSource]:
        value = self.store.get(self.key)
        if value is None:
            return None
        if (
            not isinstance(value, dict)
            or value.get("schemaVersion") != self.version
            or not isinstance(value.get("base"), str)
            or not value.get("base")
        ):
            logger.warning("Discarding malformed engine cache entry: %r", value)
            self.store.delete(self.key)
            return None
        return EngineSource(base=value["base"], label=str(value.get("label") or value["base"]))

    def save_source(self, source: EngineSource) -> None:
        self.store.set(self.key, {"schemaVersion": self.version, "base": source.base, "label": source.label})

    def forget(self) -> None:
        self.store.delete(self.key)


# -------------------- CANCELLATION --------------------


class CancelToken:
    """Cooperative cancellation flag, checked at every suspend point."""

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise LoadCancelledError("engine load was cancelled")


# -------------------- RESOURCE STAGING --------------------


def _slug(source: EngineSource) -> str:
    digest = hashlib.sha256(source.base.encode("utf-8")).hexdigest()[:12]
    label = re.sub(r"[^A-Za-z0-9._-]+", "-", source.label).strip("-") or "source"
    return f"{label}-{digest}"


class ResourceFetcher:
    """Stages the resources of one source into a local directory."""

    def __init__(
        self,
        root: Path,
        http_timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.root = root
        self.http_timeout = http_timeout
        self.transport = transport

    async def stage(self, source: EngineSource, cancel: CancelToken) -> EngineDescriptor:
        try:
            scheme = urlparse(source.base).scheme
        except ValueError as e:
            raise ResourceError(f"malformed source {source.base!r}: {e}") from e

        dest_dir = self.root / _slug(source)
        dest_dir.mkdir(parents=True, exist_ok=True)

        if scheme == "system":
            return await self._stage_system(dest_dir, cancel)

        async with httpx.AsyncClient(
            follow_redirects=True, timeout=self.http_timeout, transport=self.transport
        ) as client:
            core = await self._fetch(client, source, CORE_RESOURCE, dest_dir, cancel)
            binary = await self._fetch(client, source, BINARY_RESOURCE, dest_dir, cancel)
            try:
                worker: Optional[Path] = await self._fetch(client, source, WORKER_RESOURCE, dest_dir, cancel)
            except ResourceError as e:
                logger.info("Optional %s unavailable from %s: %s", WORKER_RESOURCE, source.label, e)
                worker = None
        return EngineDescriptor(core=core, binary=binary, worker=worker)

    async def _fetch(
        self,
        client: httpx.AsyncClient,
        source: EngineSource,
        name: str,
        dest_dir: Path,
        cancel: CancelToken,
    ) -> Path:
        cancel.raise_if_cancelled()
        url = f"{source.base}/{name}"
        dest = dest_dir / name
        scheme = urlparse(url).scheme

        if scheme == "file":
            src = Path(url2pathname(urlparse(url).path))
            if not src.is_file():
                raise ResourceError(f"{url} not found")
            await asyncio.to_thread(shutil.copyfile, src, dest)
            return dest

        if scheme not in ("http", "https"):
            raise ResourceError(f"unsupported source scheme: {scheme or source.base}")

        logger.debug("Fetching %s", url)
        partial = dest.with_name(dest.name + ".part")
        try:
            async with client.stream("GET", url) as r:
                r.raise_for_status()
                with partial.open("wb") as f:
                    async for chunk in r.aiter_bytes(DOWNLOAD_CHUNK):
                        cancel.raise_if_cancelled()
                        f.write(chunk)
        except httpx.HTTPError as e:
            partial.unlink(missing_ok=True)
            raise ResourceError(f"failed to fetch {url}: {e}") from e
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        os.replace(partial, dest)
        return dest

    async def _stage_system(self, dest_dir: Path, cancel: CancelToken) -> EngineDescriptor:
        cancel.raise_if_cancelled()
        binary = shutil.which(BINARY_RESOURCE)
        if binary is None:
            raise ResourceError(f"{BINARY_RESOURCE} not found on PATH")
        worker = shutil.which(WORKER_RESOURCE)
        core = dest_dir / CORE_RESOURCE
        core.write_text(json.dumps({"name": "ffmpeg", "version": "system"}), encoding="utf-8")
        return EngineDescriptor(core=core, binary=Path(binary), worker=Path(worker) if worker else None)


# -------------------- LOADER --------------------


@dataclass(frozen=True)
class MirrorAttempt:
    """Progress report for one attempt: outcome is "trying", "ok" or "failed"."""

    index: int  # 0 for the cached source, 1-based for the list
    total: int
    source: EngineSource
    cached: bool
    outcome: str
    error: Optional[str] = None


class MirrorLoader:
    """Loads the engine from the first source that works."""

    def __init__(self, service: EngineService, fetcher: ResourceFetcher):
        self.service = service
        self.fetcher = fetcher
        self._loading = False
        self._attempts: EventChannel[MirrorAttempt] = EventChannel("mirror-attempt")

    def on_attempt(self, callback: Callable[[MirrorAttempt], None]) -> Subscription:
        return self._attempts.subscribe(callback)

    async def load(
        self,
        sources: Sequence[EngineSource],
        cache: SourceCache,
        timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
        cancel: Optional[CancelToken] = None,
    ) -> Engine:
        """
        Return a ready engine, trying the cached source first and then each source in order.

        Raises:
            LoadError: every source failed, or an earlier load exhausted them.
            LoadCancelledError: the token was cancelled before an engine became ready.
        """
        service = self.service
        if service.ready:
            return service.engine
        if service.terminal:
            raise LoadError("engine sources were exhausted earlier; restart to retry")
        if self._loading:
            raise LoadError("an engine load is already in progress")

        cancel = cancel or CancelToken()
        failures: List[str] = []
        self._loading = True
        try:
            skip_base: Optional[str] = None
            cached = cache.load_source()
            if cached is not None:
                cancel.raise_if_cancelled()
                error = await self._attempt(cached, 0, len(sources), True, timeout, cancel)
                if error is None:
                    service.transition(EngineState.READY)
                    return service.engine
                failures.append(f"{cached.label} (cached): {error}")
                cache.forget()
                skip_base = cached.base

            for index, source in enumerate(sources, 1):
                cancel.raise_if_cancelled()
                if source.base == skip_base:
                    continue
                error = await self._attempt(source, index, len(sources), False, timeout, cancel)
                if error is None:
                    cache.save_source(source)
                    service.transition(EngineState.READY)
                    return service.engine
                failures.append(f"{source.label}: {error}")

            service.mark_exhausted()
            detail = "; ".join(failures) or "no engine sources configured"
            raise LoadError(f"all engine sources failed ({detail})", failures)
        except LoadCancelledError:
            if not service.ready:
                service.transition(EngineState.UNLOADED)
            raise
        finally:
            self._loading = False

    async def _attempt(
        self,
        source: EngineSource,
        index: int,
        total: int,
        cached: bool,
        timeout: float,
        cancel: CancelToken,
    ) -> Optional[str]:
        """Try one source; returns None on success or the failure reason."""
        self.service.transition(EngineState.LOADING)
        self._attempts.emit(MirrorAttempt(index, total, source, cached, "trying"))
        logger.info("Loading engine from %s%s", source.label, " (cached)" if cached else "")
        try:
            descriptor = await self.fetcher.stage(source, cancel)
            cancel.raise_if_cancelled()
            await asyncio.wait_for(self.service.engine.load(descriptor), timeout)
        except LoadCancelledError:
            raise
        except asyncio.TimeoutError:
            error = f"timed out after {timeout:g}s"
        except (EngineError, OSError) as e:
            error = str(e)
        except Exception as e:
            # Malformed bases and client errors fail this source only
            error = f"{type(e).__name__}: {e}"
        else:
            self._attempts.emit(MirrorAttempt(index, total, source, cached, "ok"))
            return None

        logger.warning("Engine source %s failed: %s", source.label, error)
        self.service.transition(EngineState.FAILED)
        self._attempts.emit(MirrorAttempt(index, total, source, cached, "failed", error))
        return error
