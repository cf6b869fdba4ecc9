#!/usr/bin/env python3
"""
Command-line entry point for the activity heatmap renderer.

Exit status: 0 on success, 1 for configuration or input problems, 2 when
the output sink fails, 130 when interrupted.
"""

import argparse
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from activity_import import ActivityImporter
from constants import (
    DEFAULT_WIDTH, DEFAULT_HEIGHT, DEFAULT_ZOOM, DEFAULT_TINT, DEFAULT_OUTPUT,
    DEFAULT_FRAME_RATE, DEFAULT_TILE_URL, DEFAULT_TRACK_WORKERS,
    DEFAULT_FETCH_WORKERS, DEFAULT_MAX_TILES, DEFAULT_HEAT_STYLE,
)
from heat_accumulator import HeatmapKind
from heat_styles import HeatStyleName
from heatmap_renderer import HeatmapRenderer, RenderSummary
from render_config import RenderConfig
from rich_console import (
    console,
    setup_rich_logging,
    create_render_progress,
    print_banner,
    print_config_summary,
    print_phase,
    print_import_summary,
    print_completion_summary,
    print_error,
)
from tile_cache import TileCache, create_tile_provider
from video_io import FFmpegWriter, FrameSink, OutputSinkError, PngSink, RawStreamSink, save_png

logger = logging.getLogger(__name__)

__version__ = "1.0.0"

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_SINK = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="activity-heatmap",
        description="Render a heatmap of GPX/FIT activities over map tiles, "
                    "as a PNG or as a stream of raw RGBA frames.",
    )
    parser.add_argument("directory", help="Directory of activity files or a Strava bulk export")
    parser.add_argument("--lat", type=float, required=True, help="Latitude of the image center")
    parser.add_argument("--lon", type=float, required=True, help="Longitude of the image center")
    parser.add_argument("-o", "--output", default=DEFAULT_OUTPUT, help="PNG file for the final image")
    parser.add_argument("-W", "--width", type=int, default=DEFAULT_WIDTH, help="Image width in pixels")
    parser.add_argument("-H", "--height", type=int, default=DEFAULT_HEIGHT, help="Image height in pixels")
    parser.add_argument("-z", "--zoom", type=int, default=DEFAULT_ZOOM, help="Map zoom level (0-19)")
    parser.add_argument("--url", default=DEFAULT_TILE_URL,
                        help="Tile URL or path pattern with {z}, {x} and {y}")
    parser.add_argument("--tint", type=float, default=DEFAULT_TINT,
                        help="Heat blend strength between 0 and 1")
    parser.add_argument("--heatmap", choices=[k.value for k in HeatmapKind], default=HeatmapKind.PIXEL.value,
                        help="pixel: activity lines; squadrat/squadratino: visited zoom 14/17 tiles")
    parser.add_argument("--style", choices=[s.value for s in HeatStyleName], default=DEFAULT_HEAT_STYLE,
                        help="Heat color style")
    parser.add_argument("-r", "--frame-rate", type=int, default=DEFAULT_FRAME_RATE,
                        help="Tile updates per streamed frame")
    parser.add_argument("-s", "--stream", action="store_true",
                        help="Write raw RGBA frames to stdout while rendering")
    parser.add_argument("--video", help="Encode streamed frames to this file with ffmpeg instead of stdout")
    parser.add_argument("-t", "--title", action="store_true", help="Caption streamed frames with the activity name")
    parser.add_argument("-d", "--date", action="store_true", help="Caption streamed frames with the activity date")
    parser.add_argument("--workers", type=int, default=DEFAULT_TRACK_WORKERS, help="Track processing threads")
    parser.add_argument("--fetch-workers", type=int, default=DEFAULT_FETCH_WORKERS,
                        help="Simultaneous tile downloads")
    parser.add_argument("--max-tiles", type=int, default=DEFAULT_MAX_TILES, help="Resident tile ceiling")
    parser.add_argument("--cache-dir", help="Directory for downloaded tiles")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def config_from_args(args: argparse.Namespace) -> RenderConfig:
    """Build a validated RenderConfig from parsed arguments.

    Raises:
        pydantic.ValidationError: If any value is out of range
    """
    stream = args.stream or bool(args.video)
    return RenderConfig(
        lat=args.lat,
        lon=args.lon,
        zoom=args.zoom,
        width=args.width,
        height=args.height,
        tint=args.tint,
        heat_style=args.style,
        heatmap_kind=args.heatmap,
        stream=stream,
        frame_rate=args.frame_rate,
        video=args.video,
        render_title=args.title,
        render_date=args.date,
        workers=args.workers,
        fetch_workers=args.fetch_workers,
        max_tiles=args.max_tiles,
        tile_url=args.url,
        cache_dir=args.cache_dir,
        output=args.output,
    )


def format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "config"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def open_sink(config: RenderConfig, stdout=None) -> FrameSink:
    """Frame sink for the configured mode. FFmpegWriter is opened by its context manager."""
    size = (config.width, config.height)
    if not config.stream:
        return PngSink(config.output, size)
    if config.video:
        return FFmpegWriter(config.video, size, fps=config.video_fps)
    stream = stdout if stdout is not None else sys.stdout.buffer
    return RawStreamSink(stream, size)


def render(config: RenderConfig, tracks: List, stdout=None) -> RenderSummary:
    """Run the render pipeline, showing a progress bar on the console."""
    provider = create_tile_provider(config.tile_url, cache_dir=config.cache_dir,
                                    timeout=config.fetch_timeout)
    cache = TileCache(provider, max_tiles=config.max_tiles, fetch_workers=config.fetch_workers,
                      max_attempts=config.fetch_attempts)
    with cache, open_sink(config, stdout) as sink:
        with create_render_progress() as progress:
            task = progress.add_task("Rendering", total=len(tracks), status="")

            def on_progress(summary: RenderSummary) -> None:
                progress.update(task, completed=summary.tracks_applied + summary.tracks_skipped,
                                status=f"{renderer.emitter.frames_emitted} frames")

            renderer = HeatmapRenderer(config, cache, sink, on_progress=on_progress)
            try:
                summary = renderer.render(tracks)
            except KeyboardInterrupt:
                renderer.cancel()
                raise
    return summary


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_rich_logging(args.verbose)

    try:
        config = config_from_args(args)
    except ValidationError as e:
        print_error(f"Invalid configuration: {format_validation_error(e)}")
        return EXIT_CONFIG
    except ValueError as e:
        print_error(f"Invalid configuration: {e}")
        return EXIT_CONFIG

    if config.stream and not config.video and sys.stdout.isatty():
        print_error(
            "Refusing to write binary frames to a terminal",
            hint=f"pipe into an encoder, e.g. | ffmpeg -f rawvideo -pix_fmt rgba "
                 f"-s {config.width}x{config.height} -i - heatmap.mp4, or use --video",
        )
        return EXIT_CONFIG

    print_banner(__version__)
    print_config_summary(config)

    try:
        print_phase(1, 2, "Reading activities")
        try:
            tracks, import_summary = ActivityImporter(args.directory, workers=config.workers).load()
        except (FileNotFoundError, NotADirectoryError) as e:
            print_error(str(e))
            return EXIT_CONFIG
        print_import_summary(import_summary)
        if not tracks:
            logger.warning("No activities to render, output will only show the base map")

        print_phase(2, 2, "Rendering heatmap")
        try:
            summary = render(config, tracks)
        except OutputSinkError as e:
            print_error(f"Output failed: {e}", hint="the downstream consumer stopped accepting frames")
            return EXIT_SINK
    except KeyboardInterrupt:
        console.print("\n[warning]Interrupted[/]")
        return EXIT_INTERRUPTED

    if config.stream and summary.final_frame is not None:
        save_png(config.output, summary.final_frame)
    print_completion_summary(summary, config.output, config.video)
    return EXIT_INTERRUPTED if summary.cancelled else EXIT_OK


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
