"""
Command-line interface for clip2gif.

Parses arguments, loads the engine from the configured mirrors and converts
one or more segments of a video into GIF files.
"""

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

from rich.logging import RichHandler

from clip2gif import __author__, __license__, __version__
from clip2gif.config import (
    Config,
    apply_config_to_args,
    get_app_dirs,
    load_config_file,
    save_default_config,
)
from clip2gif.errors import (
    BusyError,
    Clip2GifError,
    EncodingError,
    EngineNotReadyError,
    InputValidationError,
    LoadCancelledError,
    LoadError,
)
from clip2gif.estimate import estimate_size_kb, format_size
from clip2gif.filters import NAMED_FILTERS, plan_output
from clip2gif.json_progress import JSONProgressOutput
from clip2gif.mirrors import CancelToken, JsonFileStore, SourceCache
from clip2gif.models import (
    ALLOWED_FPS,
    PRESETS,
    Artifact,
    OutputSpec,
    Quality,
    SourceMedia,
    parse_height,
    parse_source,
)
from clip2gif.selection import DEFAULT_END, SegmentSelection
from clip2gif.session import ClipSession
from clip2gif.ui import LegacyProgressUI, SimpleRichUI

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_CONVERSION = 2
EXIT_ENGINE = 3
EXIT_INTERRUPTED = 130

ENGINE_CACHE_FILE = "engine-cache.json"
LOG_FILE = "clip2gif.log"

Segment = Tuple[Optional[float], Optional[float]]
UI = Union[SimpleRichUI, LegacyProgressUI]


# -------------------- ARGUMENT PARSING --------------------


def parse_segment(value: str) -> Tuple[float, float]:
    """Parse ``START:END`` in seconds."""
    start_s, sep, end_s = value.partition(":")
    if not sep:
        raise argparse.ArgumentTypeError(f"expected START:END, got {value!r}")
    try:
        start, end = float(start_s), float(end_s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected numbers in START:END, got {value!r}") from None
    if start < 0 or end <= start:
        raise argparse.ArgumentTypeError(f"segment end must be after a non-negative start: {value!r}")
    return start, end


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clip2gif",
        description="Convert a segment of a video into an animated GIF.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s clip.mp4                          # First 3 seconds at 480px, 15 fps
  %(prog)s clip.mp4 --start 2 --end 5.5      # One segment
  %(prog)s clip.mp4 --segment 0:2 --segment 4:6 -o out.gif
  %(prog)s clip.mp4 --preset social --filter vintage
  %(prog)s clip.mp4 --estimate               # Size estimate only, no engine
  %(prog)s --mirror https://example.org/ffmpeg/6.1|mirror-a clip.mp4
  %(prog)s --show-dirs                       # Show config/cache/log directories
        """,
    )

    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}\nAuthor: {__author__}\nLicense: {__license__}",
    )

    parser.add_argument("input", nargs="?", help="Video file to convert")

    seg_group = parser.add_argument_group("Segment")
    seg_group.add_argument("--start", type=float, default=None, help="Segment start in seconds (default: 0)")
    seg_group.add_argument("--end", type=float, default=None, help="Segment end in seconds (default: 3)")
    seg_group.add_argument(
        "--segment",
        action="append",
        type=parse_segment,
        default=[],
        metavar="START:END",
        help="Convert this segment; repeat for several GIFs",
    )

    out_group = parser.add_argument_group("Output settings")
    out_group.add_argument("-o", "--output", default=None, help="Output GIF path")
    out_group.add_argument("--width", type=int, default=None, help="Requested width in pixels (default: 480)")
    out_group.add_argument("--height", default=None, help='Height in pixels or "auto" (default: auto)')
    out_group.add_argument("--fps", type=int, choices=ALLOWED_FPS, default=None)
    out_group.add_argument("--quality", choices=[q.value for q in Quality], default=None)
    out_group.add_argument("--filter", choices=list(NAMED_FILTERS), default=None)
    out_group.add_argument("--preset", choices=list(PRESETS), default=None, help="Apply a named preset")
    out_group.add_argument("--loop", action="store_true", default=None, help="Loop forever (default)")
    out_group.add_argument("--no-loop", action="store_false", dest="loop", help="Play once")

    engine_group = parser.add_argument_group("Engine")
    engine_group.add_argument(
        "--mirror",
        action="append",
        default=[],
        metavar="BASE[|LABEL]",
        help="Engine source; repeat to build the fallback list (replaces configured mirrors)",
    )
    engine_group.add_argument("--timeout", type=float, default=None, help="Seconds per load attempt (default: 30)")

    ui_group = parser.add_argument_group("UI")
    ui_group.add_argument("--no-progress", action="store_false", dest="progress", default=None)
    ui_group.add_argument("--json-progress", action="store_true", default=None, help="Emit JSON lines on stdout")
    ui_group.add_argument("-d", "--debug", action="store_true", help="Enable debug output")

    util_group = parser.add_argument_group("Utility commands")
    util_group.add_argument("--show-dirs", action="store_true", help="Show config/cache/log directories")
    util_group.add_argument("--list-presets", action="store_true", help="List presets")
    util_group.add_argument("--list-filters", action="store_true", help="List named filters")
    util_group.add_argument("--estimate", action="store_true", help="Print the size estimate and filter chain")
    util_group.add_argument("--clear-engine-cache", action="store_true", help="Forget the last working mirror")

    return parser


CLI_SETTINGS = ("width", "height", "fps", "quality", "filter", "loop", "timeout", "progress", "json_progress")


def parse_args(args: Optional[List[str]] = None) -> Tuple[Config, argparse.Namespace]:
    """Parse command-line arguments into a Config plus the raw namespace."""
    ns = build_parser().parse_args(args)

    cfg = Config()
    for attr in CLI_SETTINGS:
        value = getattr(ns, attr)
        if value is not None:
            setattr(cfg, attr, value)
    if ns.mirror:
        cfg.mirrors = list(ns.mirror)
    cfg.debug = ns.debug
    return cfg, ns


def explicit_settings(ns: argparse.Namespace) -> Set[str]:
    """Config attributes the user gave on the command line."""
    explicit = {attr for attr in CLI_SETTINGS if getattr(ns, attr) is not None}
    if ns.mirror:
        explicit.add("mirrors")
    return explicit


def apply_preset(cfg: Config, preset_id: str) -> None:
    """Replace the size, rate and quality settings with a preset's."""
    spec = PRESETS[preset_id].apply(cfg.filter)
    cfg.width = spec.width
    cfg.height = str(spec.height)
    cfg.fps = spec.fps
    cfg.quality = spec.quality.value


def output_spec_from_config(cfg: Config) -> OutputSpec:
    try:
        quality = Quality(cfg.quality)
    except ValueError:
        raise InputValidationError(f"unknown quality: {cfg.quality!r}") from None
    if cfg.filter not in NAMED_FILTERS:
        logger.warning("Unknown filter %r ignored", cfg.filter)
    spec = OutputSpec(
        width=cfg.width,
        height=parse_height(cfg.height),
        fps=cfg.fps,
        quality=quality,
        filter_id=cfg.filter,
    )
    spec.validate()
    return spec


def requested_segments(ns: argparse.Namespace) -> List[Segment]:
    if ns.segment:
        return list(ns.segment)
    return [(ns.start, ns.end)]


def resolve_selection(segment: Segment, media_duration: float) -> SegmentSelection:
    """Clamp a requested segment to the media; unset bounds fall back to the defaults."""
    start, end = segment
    if start is None and end is None:
        selection = SegmentSelection()
        selection.set_media_duration(media_duration)
        return selection
    start = 0.0 if start is None else start
    end = start + DEFAULT_END if end is None else end
    return SegmentSelection(media_duration=media_duration, start=start, end=end)


def output_paths(input_path: Path, output: Optional[str], output_dir: Optional[str], count: int) -> List[Path]:
    """One output path per segment; several segments get a numeric suffix."""
    if output:
        base = Path(output).expanduser()
    else:
        folder = Path(output_dir).expanduser() if output_dir else input_path.parent
        base = folder / f"{input_path.stem}.gif"
    if count == 1:
        return [base]
    return [base.with_name(f"{base.stem}_{i}{base.suffix or '.gif'}") for i in range(1, count + 1)]


# -------------------- LOGGING --------------------


def setup_logging(logs_dir: Optional[Path], debug: bool = False) -> None:
    root = logging.getLogger("clip2gif")
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = RichHandler(show_path=debug, rich_tracebacks=debug)
    console.setLevel(logging.DEBUG if debug else logging.WARNING)
    root.addHandler(console)

    if logs_dir is not None:
        try:
            file_handler = logging.FileHandler(logs_dir / LOG_FILE, encoding="utf-8")
        except OSError as e:
            root.warning("Cannot open log file in %s: %s", logs_dir, e)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
            root.addHandler(file_handler)


# -------------------- UTILITY COMMANDS --------------------


def print_estimate(cfg: Config, ns: argparse.Namespace) -> int:
    try:
        spec = output_spec_from_config(cfg)
    except InputValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    plan = plan_output(spec)
    print(f"Filter chain: {plan.chain}")
    print(f"Output size:  {plan.width}x{plan.height} ({plan.profile.max_colors} colours, {plan.profile.dither})")
    for start, end in requested_segments(ns):
        selection = resolve_selection((start, end), 0.0)
        kb = estimate_size_kb(selection.duration, spec.width, spec.height, spec.fps, spec.quality)
        print(f"  {selection.start:.1f}s-{selection.end:.1f}s  ~{format_size(kb * 1024)}")
    return EXIT_OK


def handle_utility_commands(cfg: Config, ns: argparse.Namespace, dirs: Dict[str, Path]) -> Optional[int]:
    """Handle utility commands that exit immediately."""
    if ns.show_dirs:
        print("clip2gif directories:")
        print()
        print("User directories (XDG):")
        print(f"  Config:  {dirs['config']}")
        print(f"  State:   {dirs['state']}")
        print(f"  Logs:    {dirs['logs']}")
        print(f"  Cache:   {dirs['cache']}")
        print(f"  Engine:  {dirs['engine']}")
        print(f"  Tmp:     {dirs['tmp']}")
        return EXIT_OK

    if ns.list_presets:
        print("Presets:")
        for preset in PRESETS.values():
            print(
                f"  {preset.id:<8} {preset.name:<14} {preset.width}px x {preset.height}, "
                f"{preset.fps} fps, {preset.quality.value}"
            )
        return EXIT_OK

    if ns.list_filters:
        print("Filters:")
        for filter_id, (name, expression) in NAMED_FILTERS.items():
            print(f"  {filter_id:<8} {name:<12} {expression or '-'}")
        return EXIT_OK

    if ns.clear_engine_cache:
        cache = SourceCache(JsonFileStore(dirs["state"] / ENGINE_CACHE_FILE))
        cache.forget()
        print("Engine source cache cleared")
        return EXIT_OK

    if ns.estimate:
        return print_estimate(cfg, ns)

    return None


# -------------------- CONVERSION --------------------


def make_ui(cfg: Config) -> Optional[UI]:
    if cfg.json_progress:
        return None
    if cfg.progress:
        return SimpleRichUI(progress_enabled=True)
    return LegacyProgressUI(progress=False, stream=sys.stderr)


async def run(
    cfg: Config,
    ns: argparse.Namespace,
    dirs: Dict[str, Path],
    cancel: Optional[CancelToken] = None,
    session: Optional[ClipSession] = None,
) -> int:
    """Load the engine and convert every requested segment. Returns an exit code."""
    json_out = JSONProgressOutput() if cfg.json_progress else None
    ui = make_ui(cfg)

    input_path = Path(ns.input).expanduser()
    try:
        spec = output_spec_from_config(cfg)
        sources = [parse_source(m) for m in cfg.mirrors]
        media = SourceMedia.from_path(input_path)
    except (InputValidationError, ValueError, OSError) as e:
        logger.info("Invalid input: %s", e)
        if json_out:
            json_out.error("validation", str(e))
        elif ui:
            ui.log_error(str(e))
        return EXIT_USAGE

    session = session or ClipSession.create(dirs, http_timeout=cfg.http_timeout)
    cache = SourceCache(JsonFileStore(dirs["state"] / ENGINE_CACHE_FILE))

    subscriptions = []
    if json_out:
        subscriptions.append(session.service.subscribe(json_out.engine_state))
        subscriptions.append(session.loader.on_attempt(json_out.mirror_attempt))
    if ui:
        subscriptions.append(session.service.subscribe(ui.engine_state))
        subscriptions.append(session.loader.on_attempt(ui.mirror_attempt))

    t0 = time.time()
    failed = False
    try:
        try:
            await session.start(sources, cache, timeout=cfg.timeout, cancel=cancel)
        except LoadCancelledError:
            raise
        except LoadError as e:
            logger.info("Engine load failed: %s", e)
            if json_out:
                json_out.error("load", str(e))
            elif ui:
                ui.log_error(str(e))
            return EXIT_ENGINE

        media_duration = await session.service.engine.probe_duration(input_path)
        logger.debug("Media duration: %.3fs", media_duration)

        segments = requested_segments(ns)
        targets = output_paths(input_path, ns.output, cfg.output_dir, len(segments))
        for number, (segment, target) in enumerate(zip(segments, targets), 1):
            selection = resolve_selection(segment, media_duration)
            job = selection.to_job(media, spec, loop=cfg.loop)
            label = f"{media.name} {selection.start:.1f}s-{selection.end:.1f}s"
            if json_out:
                json_out.job_start(number, len(segments))
            if ui:
                ui.job_start(number, len(segments), label)

            def on_progress(state, percent):
                if json_out:
                    json_out.progress(state, percent)
                if ui:
                    ui.update_progress(state, percent)

            try:
                artifact = await session.convert(job, on_progress)
            except (EncodingError, InputValidationError, BusyError, EngineNotReadyError) as e:
                failed = True
                kind = "encoding" if isinstance(e, EncodingError) else "validation"
                logger.info("Segment %d failed: %s", number, e)
                if ui:
                    ui.job_done()
                if json_out:
                    json_out.error(kind, str(e))
                elif ui:
                    ui.log_error(str(e))
                continue

            path = write_artifact(artifact, target)
            if ui:
                ui.job_done()
                ui.log_artifact(artifact, str(path))
            if json_out:
                json_out.artifact(artifact, list(session.history.entries), str(path))

        if ui:
            ui.show_history(session.history.entries)
            ui.print_summary(time.time() - t0)
        if json_out:
            json_out.complete()
        return EXIT_CONVERSION if failed else EXIT_OK
    finally:
        for subscription in subscriptions:
            subscription.unsubscribe()
        session.close()


def write_artifact(artifact: Artifact, target: Path) -> Path:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(artifact.payload)
    logger.info("Wrote %s (%d bytes)", target, artifact.size)
    return target


# -------------------- MAIN --------------------


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point."""
    cfg, ns = parse_args(args)

    dirs = get_app_dirs()
    setup_logging(dirs["logs"], debug=cfg.debug)

    save_default_config(dirs["config"])
    file_config = load_config_file(dirs["config"])
    if file_config:
        apply_config_to_args(file_config, cfg, explicit=explicit_settings(ns))
    if ns.preset:
        apply_preset(cfg, ns.preset)
        # Explicit size options still win over the preset
        for attr in ("width", "height", "fps", "quality"):
            value = getattr(ns, attr)
            if value is not None:
                setattr(cfg, attr, value)
    if ns.progress is None:
        cfg.apply_script_mode()

    result = handle_utility_commands(cfg, ns, dirs)
    if result is not None:
        return result

    if not ns.input:
        build_parser().print_usage(sys.stderr)
        print("clip2gif: error: an input video is required", file=sys.stderr)
        return EXIT_USAGE

    cancel = CancelToken()
    try:
        return asyncio.run(run(cfg, ns, dirs, cancel=cancel))
    except (KeyboardInterrupt, LoadCancelledError):
        cancel.cancel()
        print("\nInterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Clip2GifError as e:
        logger.error("%s", e)
        return EXIT_CONVERSION


if __name__ == "__main__":
    sys.exit(main())
