from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from app.schemas import BatchRequest, BatchStatus
from cli.client import ApiClient, load_events
from cli.config import CLIConfig, load_config
from cli.render import render_batch, render_twin
from datastore.batch_results import MockBatchTable
from datastore.clients import build_twin_client
from datastore.twin_graph import build_default_graph
from services.processor import InboundMessage, IngestionService
from settings import get_settings


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Submit telemetry batches to the twin health service and inspect twins.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1)
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        help="Seconds between status checks when waiting for completion.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Maximum seconds to wait when polling for results.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(
        base_url=base_url,
        poll_interval=poll_interval,
        poll_timeout=timeout,
    )
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("send")
def send_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="JSON batch file."),
    wait: bool = typer.Option(
        False,
        "--wait/--no-wait",
        help="Wait for the batch to finish and display the result.",
    ),
) -> None:
    """Submit a batch of telemetry events."""
    state = _get_state(ctx)
    typer.echo(f"Sending {file} to {state.config.base_url} ...")
    batch_id = state.client.send_batch(file)
    typer.secho(f"Batch accepted. batch_id={batch_id}", fg=typer.colors.GREEN)

    if not wait:
        return

    interval = state.config.poll_interval
    poll_timeout = state.config.poll_timeout
    typer.echo(f"Waiting for processing (interval={interval}s, timeout={poll_timeout}s)...")
    result = state.client.poll_result(batch_id, interval=interval, timeout=poll_timeout)
    typer.echo()
    render_batch(result)
    if result.get("status") != "succeeded":
        raise typer.Exit(code=2)


@app.command("result")
def result_command(
    ctx: typer.Context,
    batch_id: str = typer.Argument(..., help="Identifier returned from the send command."),
) -> None:
    """Fetch the processing record of a batch."""
    state = _get_state(ctx)
    render_batch(state.client.get_result(batch_id))


@app.command("twin")
def twin_command(
    ctx: typer.Context,
    dt_id: str = typer.Argument(..., help="Twin identifier ($dtId)."),
) -> None:
    """Show the current properties of a twin."""
    state = _get_state(ctx)
    render_twin(state.client.get_twin(dt_id))


@app.command("process")
def process_command(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="JSON batch file."),
    graph_path: Optional[Path] = typer.Option(
        None,
        "--graph",
        help="Twin graph JSON file (defaults to TWIN_GRAPH_PERSISTENCE_PATH).",
    ),
) -> None:
    """Process a batch in this process, without the HTTP service."""
    try:
        request = BatchRequest.model_validate({"events": load_events(file)})
    except ValidationError as exc:
        raise typer.BadParameter(f"File {file} holds malformed events: {exc.error_count()} errors.") from exc

    settings = get_settings()
    graph = build_default_graph(str(graph_path)) if graph_path is not None else None
    service = IngestionService(
        table=MockBatchTable(),
        client_factory=lambda: build_twin_client(settings, graph=graph),
        workers=1,
        sensor_model=settings.sensor_model,
        flush=settings.flush_events,
    )
    try:
        record = service.process_now(
            [InboundMessage(event.device_id, event.payload) for event in request.events]
        )
    finally:
        service.shutdown()

    render_batch(record.model_dump(mode="json"))
    if record.status is not BatchStatus.succeeded:
        raise typer.Exit(code=2)
