"""
Tests for the mirror loader, source cache and resource staging.
"""

import asyncio
import json

import httpx
import pytest


def _sources(*labels):
    from clip2gif.models import EngineSource

    return [EngineSource(base=f"https://{label.lower()}.example/ffmpeg", label=label) for label in labels]


def _loader(fake_engine, fake_fetcher):
    from clip2gif.engine import EngineService
    from clip2gif.mirrors import MirrorLoader

    service = EngineService(fake_engine)
    return service, MirrorLoader(service, fake_fetcher)


def _cache(initial=None):
    from clip2gif.mirrors import MemoryStore, SourceCache

    store = MemoryStore(initial)
    return store, SourceCache(store)


class TestSourceCache:
    """Tests for the versioned source cache."""

    def test_stale_versions_purged_on_open(self):
        from clip2gif.mirrors import cache_key

        store, cache = _cache(
            {
                cache_key(1): {"schemaVersion": 1, "base": "https://old.example", "label": "old"},
                cache_key(2): {"schemaVersion": 2, "base": "https://new.example", "label": "new"},
                "unrelated": 1,
            }
        )

        assert cache.purged == [cache_key(1)]
        assert sorted(store.keys()) == sorted([cache_key(2), "unrelated"])
        assert cache.load_source().label == "new"

    def test_round_trip(self):
        from clip2gif.models import EngineSource

        store, cache = _cache()
        cache.save_source(EngineSource("https://b.example", "B"))

        assert store.data[cache.key] == {"schemaVersion": 2, "base": "https://b.example", "label": "B"}
        assert cache.load_source() == EngineSource("https://b.example", "B")

    def test_malformed_entry_discarded(self):
        from clip2gif.mirrors import cache_key

        store, cache = _cache({cache_key(2): {"schemaVersion": 2}})

        assert cache.load_source() is None
        assert cache_key(2) not in store.data

    def test_forget(self):
        from clip2gif.models import EngineSource

        _store, cache = _cache()
        cache.save_source(EngineSource("https://b.example", "B"))
        cache.forget()

        assert cache.load_source() is None


class TestJsonFileStore:
    """Tests for the JSON-file key-value store."""

    def test_persists(self, temp_state_dir):
        from clip2gif.mirrors import JsonFileStore

        path = temp_state_dir / "engine-cache.json"
        JsonFileStore(path).set("k", {"a": 1})

        assert JsonFileStore(path).get("k") == {"a": 1}
        assert json.loads(path.read_text()) == {"k": {"a": 1}}

    def test_corrupt_file_ignored(self, temp_state_dir):
        from clip2gif.mirrors import JsonFileStore

        path = temp_state_dir / "engine-cache.json"
        path.write_text("{not json")

        store = JsonFileStore(path)
        assert store.keys() == []
        store.set("k", 1)
        assert JsonFileStore(path).get("k") == 1

    def test_delete(self, temp_state_dir):
        from clip2gif.mirrors import JsonFileStore

        path = temp_state_dir / "engine-cache.json"
        store = JsonFileStore(path)
        store.set("k", 1)
        store.delete("k")
        store.delete("missing")

        assert JsonFileStore(path).keys() == []


class TestMirrorLoader:
    """Tests for MirrorLoader."""

    def test_first_failure_then_success(self, fake_engine, fake_fetcher):
        """[A fails, B works]: one attempt each, B is cached."""
        from clip2gif.models import EngineState

        service, loader = _loader(fake_engine, fake_fetcher)
        fake_engine.load_behaviour = {"A": "fail"}
        store, cache = _cache()
        sources = _sources("A", "B", "C")

        engine = asyncio.run(loader.load(sources, cache))

        assert engine is fake_engine
        assert fake_fetcher.staged == [sources[0].base, sources[1].base]
        assert [d.core.parent.name for d in fake_engine.loads] == ["A", "B"]
        assert cache.load_source() == sources[1]
        assert service.state is EngineState.READY

    def test_cached_source_tried_first(self, fake_engine, fake_fetcher):
        """A cached source that works means no attempts against the list."""
        from clip2gif.models import EngineSource

        _service, loader = _loader(fake_engine, fake_fetcher)
        cached = EngineSource("https://cached.example/ffmpeg", "cached")
        _store, cache = _cache()
        cache.save_source(cached)

        asyncio.run(loader.load(_sources("A", "B"), cache))

        assert fake_fetcher.staged == [cached.base]

    def test_failed_cached_source_forgotten(self, fake_engine, fake_fetcher):
        from clip2gif.models import EngineSource

        _service, loader = _loader(fake_engine, fake_fetcher)
        cached = EngineSource("https://cached.example/ffmpeg", "cached")
        fake_fetcher.missing = [cached.base]
        _store, cache = _cache()
        cache.save_source(cached)
        sources = _sources("A")

        asyncio.run(loader.load(sources, cache))

        assert fake_fetcher.staged == [cached.base, sources[0].base]
        assert cache.load_source() == sources[0]

    def test_failed_cached_source_not_retried_from_list(self, fake_engine, fake_fetcher):
        _service, loader = _loader(fake_engine, fake_fetcher)
        sources = _sources("A", "B")
        fake_fetcher.missing = [sources[0].base]
        _store, cache = _cache()
        cache.save_source(sources[0])

        asyncio.run(loader.load(sources, cache))

        assert fake_fetcher.staged == [sources[0].base, sources[1].base]

    def test_attempt_timeout(self, fake_engine, fake_fetcher):
        """A hanging load counts as a failure and the next source is tried."""
        _service, loader = _loader(fake_engine, fake_fetcher)
        fake_engine.load_behaviour = {"A": "hang"}
        attempts = []
        loader.on_attempt(attempts.append)
        _store, cache = _cache()

        asyncio.run(loader.load(_sources("A", "B"), cache, timeout=0.05))

        failed = [a for a in attempts if a.outcome == "failed"]
        assert len(failed) == 1
        assert "timed out" in failed[0].error
        assert cache.load_source().label == "B"

    def test_attempt_events(self, fake_engine, fake_fetcher):
        from clip2gif.models import EngineState

        service, loader = _loader(fake_engine, fake_fetcher)
        fake_fetcher.missing = [_sources("A")[0].base]
        attempts, states = [], []
        loader.on_attempt(attempts.append)
        service.subscribe(states.append)

        asyncio.run(loader.load(_sources("A", "B"), _cache()[1]))

        assert [(a.source.label, a.index, a.total, a.outcome) for a in attempts] == [
            ("A", 1, 2, "trying"),
            ("A", 1, 2, "failed"),
            ("B", 2, 2, "trying"),
            ("B", 2, 2, "ok"),
        ]
        assert states == [EngineState.LOADING, EngineState.FAILED, EngineState.LOADING, EngineState.READY]

    def test_all_sources_fail(self, fake_engine, fake_fetcher):
        """Exhausting the list is terminal until restart."""
        from clip2gif.errors import LoadError
        from clip2gif.models import EngineState

        service, loader = _loader(fake_engine, fake_fetcher)
        sources = _sources("A", "B")
        fake_fetcher.missing = [s.base for s in sources]
        _store, cache = _cache()

        with pytest.raises(LoadError) as exc_info:
            asyncio.run(loader.load(sources, cache))

        assert len(exc_info.value.failures) == 2
        assert service.state is EngineState.FAILED
        assert service.terminal
        assert cache.load_source() is None

        staged = list(fake_fetcher.staged)
        with pytest.raises(LoadError):
            asyncio.run(loader.load(sources, cache))
        assert fake_fetcher.staged == staged

    def test_unexpected_error_fails_that_source_only(self, fake_engine, fake_fetcher):
        """Any error from a source moves the loader on to the next one."""
        from clip2gif.models import EngineState

        service, loader = _loader(fake_engine, fake_fetcher)
        sources = _sources("A", "B")
        stage = fake_fetcher.stage
        events = []
        loader.on_attempt(events.append)

        async def flaky_stage(source, cancel):
            if source.label == "A":
                raise ValueError("bad port")
            return await stage(source, cancel)

        fake_fetcher.stage = flaky_stage
        _store, cache = _cache()

        asyncio.run(loader.load(sources, cache))

        assert service.state is EngineState.READY
        assert cache.load_source() == sources[1]
        assert [(e.source.label, e.outcome) for e in events] == [
            ("A", "trying"),
            ("A", "failed"),
            ("B", "trying"),
            ("B", "ok"),
        ]
        assert "ValueError" in events[1].error

    def test_no_sources(self, fake_engine, fake_fetcher):
        from clip2gif.errors import LoadError

        _service, loader = _loader(fake_engine, fake_fetcher)
        with pytest.raises(LoadError, match="no engine sources"):
            asyncio.run(loader.load([], _cache()[1]))

    def test_already_ready(self, fake_engine, fake_fetcher):
        _service, loader = _loader(fake_engine, fake_fetcher)
        _store, cache = _cache()
        asyncio.run(loader.load(_sources("A"), cache))

        assert asyncio.run(loader.load(_sources("B"), cache)) is fake_engine
        assert len(fake_fetcher.staged) == 1

    def test_cancelled_before_start(self, fake_engine, fake_fetcher):
        from clip2gif.errors import LoadCancelledError
        from clip2gif.mirrors import CancelToken
        from clip2gif.models import EngineState

        service, loader = _loader(fake_engine, fake_fetcher)
        cancel = CancelToken()
        cancel.cancel()

        with pytest.raises(LoadCancelledError):
            asyncio.run(loader.load(_sources("A"), _cache()[1], cancel=cancel))

        assert fake_fetcher.staged == []
        assert service.state is EngineState.UNLOADED
        assert not service.terminal

    def test_cancel_stops_further_attempts(self, fake_engine, fake_fetcher):
        from clip2gif.errors import LoadCancelledError
        from clip2gif.mirrors import CancelToken
        from clip2gif.models import EngineState

        service, loader = _loader(fake_engine, fake_fetcher)
        sources = _sources("A", "B", "C")
        fake_fetcher.missing = [sources[0].base]
        cancel = CancelToken()
        loader.on_attempt(lambda a: cancel.cancel() if a.outcome == "failed" else None)

        with pytest.raises(LoadCancelledError):
            asyncio.run(loader.load(sources, _cache()[1], cancel=cancel))

        assert fake_fetcher.staged == [sources[0].base]
        assert service.state is EngineState.UNLOADED

    def test_load_can_resume_after_cancel(self, fake_engine, fake_fetcher):
        from clip2gif.errors import LoadCancelledError
        from clip2gif.mirrors import CancelToken

        _service, loader = _loader(fake_engine, fake_fetcher)
        cancel = CancelToken()
        cancel.cancel()
        with pytest.raises(LoadCancelledError):
            asyncio.run(loader.load(_sources("A"), _cache()[1], cancel=cancel))

        assert asyncio.run(loader.load(_sources("A"), _cache()[1])) is fake_engine


class TestResourceFetcher:
    """Tests for staging engine resources."""

    def _transport(self, files, requests=None):
        def handler(request: httpx.Request) -> httpx.Response:
            if requests is not None:
                requests.append(request.url.path)
            name = request.url.path.rsplit("/", 1)[-1]
            if name in files:
                return httpx.Response(200, content=files[name])
            return httpx.Response(404)

        return httpx.MockTransport(handler)

    def test_http_stage_with_optional_worker_missing(self, temp_dir):
        from clip2gif.mirrors import CancelToken, ResourceFetcher
        from clip2gif.models import parse_source

        requests = []
        transport = self._transport({"engine.json": b'{"name": "ffmpeg"}', "ffmpeg": b"\x7fELF"}, requests)
        fetcher = ResourceFetcher(temp_dir / "engine", transport=transport)

        descriptor = asyncio.run(fetcher.stage(parse_source("https://m.example/ff/|m"), CancelToken()))

        assert descriptor.core.read_bytes() == b'{"name": "ffmpeg"}'
        assert descriptor.binary.read_bytes() == b"\x7fELF"
        assert descriptor.worker is None
        assert requests == ["/ff/engine.json", "/ff/ffmpeg", "/ff/ffprobe"]
        assert not list(descriptor.binary.parent.glob("*.part"))

    def test_http_stage_with_worker(self, temp_dir):
        from clip2gif.mirrors import CancelToken, ResourceFetcher
        from clip2gif.models import parse_source

        transport = self._transport({"engine.json": b"{}", "ffmpeg": b"bin", "ffprobe": b"probe"})
        fetcher = ResourceFetcher(temp_dir / "engine", transport=transport)

        descriptor = asyncio.run(fetcher.stage(parse_source("https://m.example/ff"), CancelToken()))

        assert descriptor.worker is not None
        assert descriptor.worker.read_bytes() == b"probe"

    def test_missing_binary_is_resource_error(self, temp_dir):
        from clip2gif.errors import ResourceError
        from clip2gif.mirrors import CancelToken, ResourceFetcher
        from clip2gif.models import parse_source

        fetcher = ResourceFetcher(temp_dir / "engine", transport=self._transport({"engine.json": b"{}"}))

        with pytest.raises(ResourceError, match="ffmpeg"):
            asyncio.run(fetcher.stage(parse_source("https://m.example/ff"), CancelToken()))

    def test_file_source(self, temp_dir):
        from clip2gif.mirrors import CancelToken, ResourceFetcher
        from clip2gif.models import parse_source

        build = temp_dir / "build"
        build.mkdir()
        (build / "engine.json").write_text('{"name": "ffmpeg"}')
        (build / "ffmpeg").write_bytes(b"bin")
        fetcher = ResourceFetcher(temp_dir / "engine")

        descriptor = asyncio.run(fetcher.stage(parse_source(build.as_uri() + "|local"), CancelToken()))

        assert descriptor.binary.read_bytes() == b"bin"
        assert descriptor.binary.parent != build
        assert descriptor.worker is None

    def test_unsupported_scheme(self, temp_dir):
        from clip2gif.errors import ResourceError
        from clip2gif.mirrors import CancelToken, ResourceFetcher
        from clip2gif.models import parse_source

        fetcher = ResourceFetcher(temp_dir / "engine")
        with pytest.raises(ResourceError, match="unsupported"):
            asyncio.run(fetcher.stage(parse_source("ftp://m.example/ff"), CancelToken()))

    def test_cancelled_fetch(self, temp_dir):
        from clip2gif.errors import LoadCancelledError
        from clip2gif.mirrors import CancelToken, ResourceFetcher
        from clip2gif.models import parse_source

        cancel = CancelToken()
        cancel.cancel()
        fetcher = ResourceFetcher(temp_dir / "engine", transport=self._transport({}))

        with pytest.raises(LoadCancelledError):
            asyncio.run(fetcher.stage(parse_source("https://m.example/ff"), cancel))

    def test_loader_with_http_mirrors(self, temp_dir, fake_engine):
        """Unreachable first mirror, working second mirror, real staging."""
        from clip2gif.engine import EngineService
        from clip2gif.mirrors import MirrorLoader, ResourceFetcher
        from clip2gif.models import parse_source

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "down.example":
                raise httpx.ConnectError("connection refused", request=request)
            name = request.url.path.rsplit("/", 1)[-1]
            files = {"engine.json": b'{"name": "ffmpeg"}', "ffmpeg": b"bin"}
            return httpx.Response(200, content=files[name]) if name in files else httpx.Response(404)

        fetcher = ResourceFetcher(temp_dir / "engine", transport=httpx.MockTransport(handler))
        loader = MirrorLoader(EngineService(fake_engine), fetcher)
        _store, cache = _cache()
        sources = [parse_source("https://down.example/ff|down"), parse_source("https://up.example/ff|up")]

        asyncio.run(loader.load(sources, cache))

        assert cache.load_source().label == "up"
        assert fake_engine.loads[0].binary.read_bytes() == b"bin"

    def test_malformed_base(self, temp_dir):
        from clip2gif.errors import ResourceError
        from clip2gif.mirrors import CancelToken, ResourceFetcher
        from clip2gif.models import EngineSource

        fetcher = ResourceFetcher(temp_dir / "engine", transport=self._transport({}))
        with pytest.raises(ResourceError, match="malformed"):
            asyncio.run(fetcher.stage(EngineSource(base="https://[broken/ff", label="bad"), CancelToken()))

    def test_loader_moves_past_malformed_mirror(self, temp_dir, fake_engine):
        """An unparseable base fails its own attempt; the next mirror still loads."""
        from clip2gif.engine import EngineService
        from clip2gif.mirrors import MirrorLoader, ResourceFetcher
        from clip2gif.models import EngineSource, EngineState

        transport = self._transport({"engine.json": b'{"name": "ffmpeg"}', "ffmpeg": b"bin"})
        service = EngineService(fake_engine)
        loader = MirrorLoader(service, ResourceFetcher(temp_dir / "engine", transport=transport))
        _store, cache = _cache()
        sources = [
            EngineSource(base="https://[broken/ff", label="bad"),
            EngineSource(base="https://good.example/ff", label="good"),
        ]

        asyncio.run(loader.load(sources, cache))

        assert service.state is EngineState.READY
        assert cache.load_source().label == "good"
        assert len(fake_engine.loads) == 1
