from __future__ import annotations

from typing import Any, Dict, Iterable

import typer

_STATUS_COLORS = {
    "succeeded": typer.colors.GREEN,
    "failed": typer.colors.RED,
    "deferred": typer.colors.YELLOW,
}


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_batch(payload: Dict[str, Any]) -> None:
    echo_heading("Batch Result")
    status = payload.get("status")
    typer.echo(f"batch_id: {payload.get('batch_id')}")
    typer.secho(f"status: {status}", fg=_STATUS_COLORS.get(str(status)))
    echo_key_values(
        [
            ("received_at", payload.get("received_at")),
            ("processed_at", payload.get("processed_at")),
            ("processing_ms", payload.get("processing_ms")),
            ("event_count", payload.get("event_count")),
        ]
    )
    if payload.get("detail"):
        typer.echo(f"detail: {payload['detail']}")

    events = payload.get("events") or []
    typer.echo()
    echo_heading("Events")
    if events:
        for event in events:
            line = f"  - #{event.get('index')} {event.get('device_id')}: {event.get('status')}"
            if event.get("computed_health") is not None:
                line += f" (asset {event.get('asset_id')} health={event['computed_health']:.1f})"
            elif event.get("reason"):
                line += f" ({event['reason']})"
            typer.echo(line)
    else:
        typer.echo("No events processed.")

    errors = payload.get("errors") or []
    typer.echo()
    echo_heading("Errors")
    if errors:
        for error in errors:
            typer.echo(
                f"  - event {error.get('index')} [{error.get('kind')}]: {error.get('reason')}"
            )
    else:
        typer.echo("No errors recorded.")


def render_twin(payload: Dict[str, Any]) -> None:
    echo_heading(f"Twin {payload.get('$dtId')}")
    metadata = payload.get("$metadata") or {}
    if metadata.get("$model"):
        typer.echo(f"model: {metadata['$model']}")
    echo_key_values(
        (key, value) for key, value in sorted(payload.items()) if not key.startswith("$")
    )
