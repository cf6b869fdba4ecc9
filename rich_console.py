"""
Rich console configuration for the activity heatmap renderer.

Provides terminal output with progress bars, panels, and styled logging.
Everything goes to stderr: stdout may be carrying the raw frame stream.
"""

import logging
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.theme import Theme
from rich.panel import Panel
from rich.table import Table
from rich.progress import (
    Progress,
    SpinnerColumn,
    TextColumn,
    BarColumn,
    TaskProgressColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
    MofNCompleteColumn,
)

HEAT_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "highlight": "bold magenta",
    "muted": "dim",
    "heat": "bold red",
    "tile": "bold blue",
    "gps": "green",
})

# Global console instance
console = Console(theme=HEAT_THEME, stderr=True)


def setup_rich_logging(verbose: bool = False) -> None:
    """
    Configure logging to use Rich handler.

    Args:
        verbose: Enable DEBUG level logging with full details
    """
    level = logging.DEBUG if verbose else logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=console,
                show_time=verbose,
                show_path=verbose,
                rich_tracebacks=True,
                tracebacks_show_locals=verbose,
                markup=False,
            )
        ],
        force=True,  # Override any existing configuration
    )


def create_import_progress() -> Progress:
    """
    Create a lighter progress bar for decoding activity files.

    Returns:
        Configured Progress instance for activity import
    """
    return Progress(
        SpinnerColumn("dots"),
        TextColumn("[cyan]{task.description}"),
        BarColumn(bar_width=30, style="dim cyan", complete_style="cyan"),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )


def create_render_progress() -> Progress:
    """
    Create a progress bar for rendering with frame tracking.

    The task carries a "status" field, e.g. the number of frames emitted.

    Returns:
        Configured Progress instance for rendering
    """
    return Progress(
        SpinnerColumn("dots"),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(bar_width=40, style="cyan", complete_style="green"),
        TaskProgressColumn(),
        MofNCompleteColumn(),
        TextColumn("[dim]{task.fields[status]}[/]"),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        console=console,
        transient=False,
    )


def print_banner(version: str = "1.0.0") -> None:
    """
    Print a styled startup banner.

    Args:
        version: Version string to display
    """
    console.print("\n[heat]░▒▓█[/] [bold]Activity Heatmap[/] [heat]█▓▒░[/]")
    console.print("[dim]Tile-based heat accumulation and streaming renderer[/]")
    console.print(f"[muted]Version {version}[/]\n")


def print_config_summary(config: Any, track_count: Optional[int] = None) -> None:
    """
    Print a styled configuration summary panel.

    Args:
        config: RenderConfig of the run
        track_count: Number of tracks to render, if already known
    """
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value", style="bold")

    if track_count is not None:
        table.add_row("Tracks", f"[highlight]{track_count}[/]")
    table.add_row("Center", f"[gps]{config.lat:.5f}, {config.lon:.5f}[/]")
    table.add_row("Zoom", str(config.zoom))
    table.add_row("Size", f"{config.width}x{config.height}")
    table.add_row("Heatmap", f"{config.heatmap_kind.value} / [heat]{config.heat_style.value}[/]")
    table.add_row("Tint", f"{config.tint:.2f}")
    if config.stream:
        target = config.video or "stdout"
        table.add_row("Stream", f"[highlight]{target}[/] (frame every {config.frame_rate:,} tile updates)")
    else:
        table.add_row("Stream", "[dim]off[/]")
    table.add_row("Output", f"[green]{config.output}[/]")
    table.add_row("Tiles", f"[tile]{config.tile_url}[/]")

    panel = Panel(
        table,
        title="[bold]Configuration[/]",
        border_style="cyan",
        padding=(1, 2),
    )
    console.print(panel)
    console.print()


def print_phase(phase_num: int, total_phases: int, description: str) -> None:
    """
    Print a phase header for multi-step processing.

    Args:
        phase_num: Current phase number (1-indexed)
        total_phases: Total number of phases
        description: Description of this phase
    """
    console.print(
        f"\n[bold cyan]Step {phase_num}/{total_phases}:[/] [bold]{description}[/]"
    )


def print_import_summary(summary: Any) -> None:
    """One-line import result, with warnings for anything that was left out."""
    console.print(f"[success]Decoded {summary.decoded} of {summary.total} activities[/]")
    if summary.skipped:
        console.print(f"[warning]Skipped {summary.skipped} unreadable activity files[/]")
    if summary.without_file:
        console.print(f"[warning]Found {summary.without_file} activities without files[/]")
    if summary.unreadable_records:
        console.print(f"[warning]Could not read {summary.unreadable_records} activity records[/]")
    if summary.bad_dates:
        console.print(f"[warning]Could not parse {summary.bad_dates} timestamps[/]")


def print_completion_summary(summary: Any, output_file: str, video_file: Optional[str] = None) -> None:
    """
    Print a styled completion summary.

    Args:
        summary: RenderSummary of the run
        output_file: Path of the final PNG
        video_file: Path of the encoded video, if any
    """
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold green")

    table.add_row("Tracks Applied", f"{summary.tracks_applied:,}")
    if summary.tracks_skipped:
        table.add_row("Tracks Skipped", f"[warning]{summary.tracks_skipped:,}[/]")
    table.add_row("Tile Updates", f"{summary.tile_events:,}")
    table.add_row("Frames", f"{summary.frames_emitted:,}")
    if summary.blank_tiles:
        table.add_row("Blank Tiles", f"[warning]{summary.blank_tiles}[/]")
    table.add_row("Output", output_file)
    if video_file:
        table.add_row("Video", video_file)

    cancelled = summary.cancelled
    panel = Panel(
        table,
        title="[bold yellow]Cancelled[/]" if cancelled else "[bold green]Complete[/]",
        border_style="yellow" if cancelled else "green",
        padding=(1, 2),
    )
    console.print()
    console.print(panel)


def print_error(message: str, hint: Optional[str] = None) -> None:
    """
    Print a styled error message.

    Args:
        message: Error message
        hint: Optional hint for resolution
    """
    console.print(f"\n[error]Error:[/] {escape(message)}")
    if hint:
        console.print(f"[muted]Hint: {hint}[/]")
