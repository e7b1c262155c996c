from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
from contextlib import ExitStack
from pathlib import Path
from time import perf_counter

import typer

from vidiff.compare.report import comparison_payload, export_comparison
from vidiff.config import Settings, load_settings
from vidiff.errors import VideoDiffError
from vidiff.logging_config import configure_logging
from vidiff.models import ComparisonJob, ComparisonResult, RequestState, VideoUpload
from vidiff.service.orchestrator import ComparisonOrchestrator

app = typer.Typer(help="Compare the objects detected in two videos.")
config_app = typer.Typer(help="Configuration commands.")

app.add_typer(config_app, name="config")

logger = logging.getLogger(__name__)

_VIDEO_MEDIA_TYPES = {
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".m4v": "video/x-m4v",
}

PROGRESS_STATES = [
    RequestState.VALIDATING,
    RequestState.SAMPLING,
    RequestState.DETECTING,
    RequestState.AGGREGATING,
    RequestState.DIFFING,
]


def _bootstrap(config_path: Path | None) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path or "defaults")
    return settings


def _build_orchestrator(settings: Settings) -> ComparisonOrchestrator:
    return ComparisonOrchestrator.from_settings(settings)


def _progress_reporter() -> ComparisonJob:
    total_steps = len(PROGRESS_STATES)
    started_at = perf_counter()

    def _on_transition(job: ComparisonJob, state: RequestState) -> None:
        elapsed = perf_counter() - started_at
        if state in PROGRESS_STATES:
            step_index = PROGRESS_STATES.index(state) + 1
            typer.echo(f"[{step_index}/{total_steps}] {state.value}...", err=True)
        elif state is RequestState.COMPLETED:
            typer.echo(f"[{total_steps}/{total_steps}] Completed in {elapsed:.1f}s", err=True)
        elif state is RequestState.FAILED:
            typer.echo(f"Comparison failed after {elapsed:.1f}s", err=True)

    return ComparisonJob(on_transition=_on_transition)


def _video_upload(field_name: str, path: Path) -> VideoUpload:
    resolved = path.expanduser().resolve()
    if not resolved.exists():
        raise FileNotFoundError(f"Video file not found: {resolved}")

    media_type = _VIDEO_MEDIA_TYPES.get(resolved.suffix.lower()) or mimetypes.guess_type(resolved.name)[0]
    return VideoUpload(
        field_name=field_name,
        filename=resolved.name,
        media_type=media_type or "application/octet-stream",
        stream=resolved.open("rb"),
        size=resolved.stat().st_size,
    )


async def _compare_files(
    orchestrator: ComparisonOrchestrator,
    video1: VideoUpload,
    video2: VideoUpload,
    job: ComparisonJob,
) -> ComparisonResult:
    try:
        return await orchestrator.compare(video1, video2, job=job)
    finally:
        orchestrator.close()


_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    envvar="VIDEO_DIFF_CONFIG",
    help="Path to YAML configuration file (defaults to configs/default.yaml when present).",
)


@config_app.command("show")
def show_config(config_path: Path | None = _CONFIG_OPTION) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@app.command("compare")
def compare(
    video1: Path = typer.Argument(..., help="Reference video."),
    video2: Path = typer.Argument(..., help="Video compared against the reference."),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Optional report path; .csv writes one row per changed label, anything else writes JSON.",
    ),
    config_path: Path | None = _CONFIG_OPTION,
) -> None:
    """Compare two local video files and print the labels added and removed in VIDEO2."""

    settings = _bootstrap(config_path)

    with ExitStack() as stack:
        try:
            upload1 = _video_upload("video1", video1)
            stack.callback(upload1.stream.close)
            upload2 = _video_upload("video2", video2)
            stack.callback(upload2.stream.close)

            orchestrator = _build_orchestrator(settings)
            result = asyncio.run(_compare_files(orchestrator, upload1, upload2, _progress_reporter()))
        except VideoDiffError as exc:
            logger.error("Comparison failed: %s", exc.message)
            typer.echo(f"Error: {exc.code}: {exc.message}", err=True)
            raise typer.Exit(code=1) from exc
        except (FileNotFoundError, ValueError) as exc:
            logger.error("Comparison failed: %s", exc)
            typer.echo(f"Error: {exc}", err=True)
            raise typer.Exit(code=1) from exc

    payload = comparison_payload(result)
    if output is not None:
        report_path = export_comparison(result, output)
        payload["report_path"] = str(report_path)
    typer.echo(json.dumps(payload, indent=2))


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, help="Bind address (defaults to server.host)."),
    port: int | None = typer.Option(None, help="Bind port (defaults to server.port)."),
    config_path: Path | None = _CONFIG_OPTION,
) -> None:
    """Run the HTTP comparison service."""

    import uvicorn

    from vidiff.api import create_app

    settings = _bootstrap(config_path)
    application = create_app(settings)
    uvicorn.run(
        application,
        host=host or settings.server.host,
        port=port or settings.server.port,
        log_config=None,
    )


if __name__ == "__main__":
    app()
