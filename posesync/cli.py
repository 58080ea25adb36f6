"""
Command line for the pose sync engine.

Offline tools around the engine core: fit a calibration, condition a pano
path, test points against the site boundary, and replay a synthetic sync
session.
"""

import json
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .calibration import print_calibration_report
from .config import load_config
from .dataset import generate_synthetic_path, load_boundary, load_calibration_set, load_dataset
from .errors import PoseSyncError
from .models import CalibrationSet, Pose, Quaternion
from .orchestrator import SOURCE_A, SOURCE_B, PoseSyncOrchestrator, SyncOutcome
from .path_conditioner import PathConditioner
from .scheduler import ManualClock
from .transform import CoordinateTransformPipeline

console = Console()
app = typer.Typer(help="BIM / panorama pose synchronization tools")

# Reference site correspondences (pano dataset -> model)
DEMO_PAIRS = (
    ((0.0, 0.0, 0.0), (19.0, 35.0, 0.0)),
    ((10.0, 0.0, 0.0), (21.0, 17.0, 0.0)),
    ((0.0, 10.0, 0.0), (13.0, 13.0, 0.0)),
)


def _flip_option(flip_axis: int) -> Optional[int]:
    return None if flip_axis < 0 else flip_axis


@app.command()
def calibrate(
    pairs_path: Path = typer.Argument(..., help="JSON file of correspondence pairs"),
    output: Optional[Path] = typer.Option(None, help="Write the fitted transform to this JSON file"),
    flip_axis: int = typer.Option(0, help="Axis negated on pano points before solving (-1 disables)"),
    derive_orientation: bool = typer.Option(
        False, "--derive-orientation", help="Use the solved rotation as calibration quaternion"
    ),
):
    """Fit the pano -> model similarity transform from correspondence pairs."""
    try:
        calibration_set = load_calibration_set(pairs_path)
        pipeline = CoordinateTransformPipeline.from_calibration(
            calibration_set,
            flip_axis=_flip_option(flip_axis),
            derive_orientation=derive_orientation,
        )
    except PoseSyncError as e:
        console.print(f"[bold red]Calibration failed:[/bold red] {e}")
        raise typer.Exit(1)

    print_calibration_report(pipeline.calibration, calibration_set)

    if output:
        data = pipeline.to_dict()
        data["residuals"] = list(pipeline.calibration.residuals)
        data["max_error"] = pipeline.calibration.max_error
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, 'w') as f:
            json.dump(data, f, indent=2)
        console.print(f"[green]Saved transform to {output}[/green]")


@app.command()
def condition(
    dataset_path: Path = typer.Argument(..., help="Pano dataset JSON ({'frames': [...]})"),
    output: Path = typer.Option(Path("./conditioned_path.json"), help="Output path JSON"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config JSON"),
    manhattan: bool = typer.Option(False, "--manhattan", help="Snap the path to axis-aligned headings"),
    window: Optional[int] = typer.Option(None, help="Savitzky-Golay window (odd)"),
    order: Optional[int] = typer.Option(None, help="Savitzky-Golay polynomial order"),
    min_separation: Optional[float] = typer.Option(None, help="Minimum spacing between samples (m)"),
):
    """Smooth, filter and space out a raw pano path."""
    try:
        config = load_config(
            config_path,
            manhattan=True if manhattan else None,
            smoothing_window=window,
            smoothing_order=order,
            min_separation=min_separation,
        )
        points, image_refs = load_dataset(dataset_path)
        result = PathConditioner(config).condition(points, image_refs)
    except PoseSyncError as e:
        console.print(f"[bold red]Conditioning failed:[/bold red] {e}")
        raise typer.Exit(1)

    output.parent.mkdir(parents=True, exist_ok=True)
    with open(output, 'w') as f:
        json.dump({
            "frames": [p.to_dict() for p in result.points],
            "stats": result.stats,
            "warnings": result.warnings,
        }, f, indent=2)

    min_sep = result.stats.get("min_separation")
    console.print(Panel.fit(
        f"[bold green]Path conditioned[/bold green]\n\n"
        f"Points: {result.stats['point_count']}\n"
        f"Length: {result.stats['total_length']:.2f} m\n"
        f"Min separation: {'n/a' if min_sep is None else f'{min_sep:.3f} m'}\n"
        f"Repairs: {result.stats.get('repairs', 0)}\n"
        f"Output: {output}",
        border_style="green"
    ))


@app.command()
def boundary(
    boundary_path: Path = typer.Argument(..., help="Boundary JSON (vertex list or {'vertices': ...})"),
    x: float = typer.Argument(..., help="Model x"),
    y: float = typer.Argument(..., help="Model y"),
    margin: Optional[float] = typer.Option(None, help="Safety margin (m), overrides the file"),
):
    """Test a model-frame point against the site boundary and clamp it."""
    try:
        guard = load_boundary(boundary_path, margin)
        result = guard.clamp(x, y)
    except PoseSyncError as e:
        console.print(f"[bold red]Boundary check failed:[/bold red] {e}")
        raise typer.Exit(1)

    table = Table(title="Boundary check")
    table.add_column("Field")
    table.add_column("Value", justify="right")
    table.add_row("Inside", str(not result.was_clamped))
    table.add_row("Clamped x", f"{result.x:.4f}")
    table.add_row("Clamped y", f"{result.y:.4f}")
    table.add_row("Distance to edge", f"{result.distance:.4f}")
    table.add_row("Margin", f"{guard.margin:.2f}")
    console.print(table)


class _EchoViewer:
    """Viewer stand-in that reports every applied pose straight back."""

    def __init__(self):
        self.pending: List = []
        self.applied = 0

    def apply_pose(self, pose: Pose, *, animate: bool, token: str) -> None:
        self.applied += 1
        self.pending.append((pose, token))


@app.command()
def simulate(
    steps: int = typer.Option(120, help="Synthetic path length"),
    seed: int = typer.Option(0, help="Random seed for the synthetic path"),
    fps: float = typer.Option(60.0, help="Tick rate"),
    reports: int = typer.Option(10, help="Pano reports to replay"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config JSON"),
):
    """Replay a synthetic session where both viewers echo every driven pose."""
    try:
        config = load_config(config_path)
        raw = generate_synthetic_path(steps=steps, seed=seed)
        path = PathConditioner(config).condition(raw).points
        pipeline = CoordinateTransformPipeline.from_calibration(
            CalibrationSet.from_points([p[0] for p in DEMO_PAIRS], [p[1] for p in DEMO_PAIRS]),
            flip_axis=config.flip_axis,
        )
    except PoseSyncError as e:
        console.print(f"[bold red]Simulation setup failed:[/bold red] {e}")
        raise typer.Exit(1)

    clock = ManualClock()
    orchestrator = PoseSyncOrchestrator(pipeline, config, path=path, clock=clock)
    viewers = {SOURCE_A: _EchoViewer(), SOURCE_B: _EchoViewer()}
    for source, viewer in viewers.items():
        orchestrator.attach(source, viewer)

    frame_time = 1.0 / fps
    stride = max(1, len(path) // max(1, reports))
    authority_flips = 0
    echoes = 0

    for i in range(0, len(path), stride)[:reports]:
        sample = path[i]
        pose = Pose(sample.position, Quaternion.identity())
        orchestrator.report_pose(SOURCE_B, pose)

        while orchestrator.is_animating:
            clock.advance(frame_time)
            orchestrator.tick(frame_time)
            # Echo driven poses back, alternating with and without their token
            for source, viewer in viewers.items():
                for echo, token in viewer.pending:
                    result = orchestrator.report_pose(source, echo, token if echoes % 2 == 0 else None)
                    echoes += 1
                    if result.outcome is SyncOutcome.ACCEPTED:
                        authority_flips += 1
                viewer.pending.clear()

        clock.advance(config.suppression_window)

    jump = orchestrator.request_floor_jump(path[len(path) // 2].position, source=SOURCE_B)

    table = Table(title="Sync simulation")
    table.add_column("Counter")
    table.add_column("Value", justify="right")
    for name, value in orchestrator.stats.reports.items():
        table.add_row(f"reports.{name}", str(value))
    table.add_row("frames_applied", str(orchestrator.stats.frames_applied))
    table.add_row("echo_authority_flips", str(authority_flips))
    table.add_row("jump_index", str(jump.index))
    table.add_row("generation", str(orchestrator.state.generation))
    console.print(table)

    if authority_flips:
        console.print(f"[bold red]Loop detected: {authority_flips} echoes flipped authority[/bold red]")
        raise typer.Exit(1)
    console.print("[green]No echo changed authority[/green]")


@app.command("stages")
def list_stages():
    """List the engine stages."""
    stages = [
        ("1. Condition", "Savitzky-Golay, Kalman, minimum separation, optional Manhattan snap"),
        ("2. Calibrate", "Umeyama similarity fit from correspondence pairs"),
        ("3. Transform", "Flip + similarity for positions, quaternion chain for orientations"),
        ("4. Guard", "Clamp model positions into the site boundary"),
        ("5. Sync", "Authority, generation counter, suppression tokens, interpolation"),
    ]

    console.print("[bold]Engine Stages:[/bold]\n")
    for name, desc in stages:
        console.print(f"  [blue]{name}[/blue]: {desc}")


if __name__ == "__main__":
    app()
