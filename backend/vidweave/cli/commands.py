"""CLI commands for vidweave using Typer and Rich.

Commands:
- generate: Create a project and run a generation job with live status
- plan: Dry-run the scene planner and show the scenes
- models: Show the model catalogue with cost estimates
- status: Show a project and its generated scenes
"""

import asyncio
import logging
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vidweave import validate_dependencies
from vidweave.config import settings
from vidweave.db import async_session, init_database, shutdown
from vidweave.db.state_sink import SqlProjectStateSink
from vidweave.errors import ProjectNotFoundError
from vidweave.orchestrator.state import TERMINAL_STATES
from vidweave.pipeline.prompt_parser import parse_prompt
from vidweave.pipeline.scene_planner import plan_scenes
from vidweave.schemas.jobs import JobRequest
from vidweave.services.model_catalog import STATIC_CATALOGUE, estimate_cost
from vidweave.workers.job_queue import build_job_queue

app = typer.Typer(name="vidweave", help="Prompt-to-video generation pipeline")
console = Console()

_STATUS_COLORS = {
    "draft": "white",
    "processing": "yellow",
    "completed": "green",
    "failed": "red",
}


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def generate(
    prompt: str = typer.Argument(..., help="Text prompt for video generation"),
    duration: float = typer.Option(30.0, "--duration", "-d", help="Total video duration in seconds"),
    user_id: str = typer.Option("local", "--user", "-u", help="Owner of the project"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Video model id"),
    style: Optional[str] = typer.Option(None, "--style", "-s", help="Visual style"),
    mood: Optional[str] = typer.Option(None, "--mood", help="Mood"),
    audio_url: Optional[str] = typer.Option(None, "--audio", help="Audio track URL or path to mix in"),
    reference_frames: bool = typer.Option(
        False, "--reference-frames/--no-reference-frames",
        help="Start each scene from the previous scene's last frame",
    ),
):
    """Generate a new video from a text prompt.

    Creates a project, queues a job for it and follows the job to completion.
    """
    if duration <= 0:
        console.print("[red]Error:[/red] duration must be positive")
        raise typer.Exit(code=1)

    try:
        validate_dependencies()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    model_id = model or settings.provider.default_model
    profile = next((m for m in STATIC_CATALOGUE if m.id == model_id), None)
    if profile is not None:
        console.print(
            f"[yellow]Estimated cost:[/yellow] ~${estimate_cost(profile, duration):.2f} ({model_id})"
        )
    console.print()

    config = {"model_id": model_id, "use_reference_frame": reference_frames}
    asyncio.run(_generate_async(prompt, duration, user_id, config, style, mood, audio_url))


async def _generate_async(
    prompt: str, duration: float, user_id: str, config: dict,
    style: Optional[str], mood: Optional[str], audio_url: Optional[str],
):
    """Async implementation of generate command."""
    await init_database()
    sink = SqlProjectStateSink(async_session)
    project = await sink.create_project(user_id, prompt, duration, config)
    console.print(f"[green]Created project:[/green] {project.id}")

    queue = build_job_queue()
    await queue.start()
    try:
        job_id = queue.submit(JobRequest(
            project_id=project.id, user_id=user_id, prompt=prompt, duration=duration,
            style=style, mood=mood, audio_url=audio_url,
        ))
        with console.status("[bold green]Queued...") as status:
            job_status = queue.get_status(job_id)
            while job_status.status not in TERMINAL_STATES:
                status.update(f"[bold green][{job_status.progress}%] {job_status.message}")
                await asyncio.sleep(0.5)
                job_status = queue.get_status(job_id)
    finally:
        await queue.stop()
        await shutdown()

    if job_status.status == "completed":
        console.print("[green]✓[/green] Video generation complete!")
        console.print(f"[green]Video:[/green] {job_status.result.video_url}")
        if job_status.result.thumbnail_url:
            console.print(f"[green]Thumbnail:[/green] {job_status.result.thumbnail_url}")
    else:
        console.print(f"[red]✗ Generation failed:[/red] {job_status.error}")
        console.print(f"[yellow]Scenes generated so far:[/yellow] vidweave status {project.id}")
        raise typer.Exit(code=1)


@app.command()
def plan(
    prompt: str = typer.Argument(..., help="Text prompt to plan"),
    duration: float = typer.Option(30.0, "--duration", "-d", help="Total video duration in seconds"),
    style: Optional[str] = typer.Option(None, "--style", "-s", help="Visual style"),
    mood: Optional[str] = typer.Option(None, "--mood", help="Mood"),
):
    """Show the scenes a prompt would be split into, without generating."""
    parsed = parse_prompt(prompt, duration)
    update = {k: v for k, v in (("style", style), ("mood", mood)) if v}
    if update:
        parsed = parsed.model_copy(update=update)

    try:
        scenes = plan_scenes(prompt, duration, parsed)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(
        f"[bold]Style:[/bold] {parsed.style or '-'}  [bold]Mood:[/bold] {parsed.mood or '-'}  "
        f"[bold]Aspect:[/bold] {parsed.aspect_ratio or '-'}"
    )
    if parsed.constraints:
        console.print(f"[bold]Constraints:[/bold] {parsed.constraints}")

    table = Table(title=f"{len(scenes)} scenes, {duration:g}s")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Start", justify="right")
    table.add_column("End", justify="right")
    table.add_column("Prompt")
    for scene in scenes:
        table.add_row(
            str(scene.scene_number),
            f"{scene.start_time:.2f}s",
            f"{scene.end_time:.2f}s",
            scene.prompt,
        )
    console.print(table)


@app.command()
def models(
    duration: Optional[float] = typer.Option(None, "--duration", "-d", help="Estimate cost for this duration"),
):
    """List the model catalogue."""
    table = Table(title="Video models")
    table.add_column("Model", style="cyan")
    table.add_column("Family")
    table.add_column("Tier")
    table.add_column("Max clip", justify="right")
    table.add_column("$/s", justify="right")
    if duration:
        table.add_column(f"Cost ({duration:g}s)", justify="right", style="yellow")

    for profile in STATIC_CATALOGUE:
        row = [
            profile.id,
            profile.family,
            profile.tier,
            f"{profile.max_duration:g}s",
            f"{profile.cost_per_second:.2f}",
        ]
        if duration:
            row.append(f"${estimate_cost(profile, duration):.2f}")
        table.add_row(*row)
    console.print(table)


@app.command()
def status(
    project_id: str = typer.Argument(..., help="Project UUID"),
):
    """Show project status and its scenes."""
    asyncio.run(_status_async(project_id))


async def _status_async(project_id_str: str):
    """Async implementation of status command."""
    try:
        project_uuid = uuid.UUID(project_id_str)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid project UUID: {project_id_str}")
        raise typer.Exit(code=1)

    await init_database()
    sink = SqlProjectStateSink(async_session)
    try:
        project = await sink.read_project_with_scenes(project_uuid)
    except ProjectNotFoundError:
        console.print(f"[red]Error:[/red] Project not found: {project_uuid}")
        raise typer.Exit(code=1)
    finally:
        await shutdown()

    color = _STATUS_COLORS.get(project.status, "white")
    prompt_display = project.prompt if len(project.prompt) <= 80 else project.prompt[:77] + "..."
    info_lines = [
        f"[bold]ID:[/bold] {project.id}",
        f"[bold]Prompt:[/bold] {prompt_display}",
        f"[bold]Status:[/bold] [{color}]{project.status}[/{color}]",
        f"[bold]Duration:[/bold] {project.duration:g}s",
        f"[bold]Scenes:[/bold] {len(project.scenes)}",
        f"[bold]Created:[/bold] {project.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    config = project.config or {}
    if config.get("model_id"):
        info_lines.append(f"[bold]Model:[/bold] {config['model_id']}")
    if config.get("video_url"):
        info_lines.append(f"[bold]Video:[/bold] [green]{config['video_url']}[/green]")
    if project.thumbnail_url:
        info_lines.append(f"[bold]Thumbnail:[/bold] {project.thumbnail_url}")
    if project.status == "failed" and project.error_message:
        info_lines.append(f"[bold]Error:[/bold] [red]{project.error_message}[/red]")

    console.print(Panel("\n".join(info_lines), title="[bold]Project Status[/bold]", border_style="blue"))

    if project.scenes:
        table = Table()
        table.add_column("#", justify="right", style="cyan")
        table.add_column("Start", justify="right")
        table.add_column("Length", justify="right")
        table.add_column("Clip")
        table.add_column("Frames", justify="center")
        for scene in project.scenes:
            frames = sum(1 for url in (scene.first_frame_url, scene.last_frame_url) if url)
            table.add_row(
                str(scene.scene_number),
                f"{scene.start_time:.1f}s",
                f"{scene.duration:.1f}s",
                scene.video_url,
                f"{frames}/2",
            )
        console.print(table)
