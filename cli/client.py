from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Dict, List

import httpx
import typer

from cli.config import CLIConfig

_PENDING_STATUSES = {"received", "processing"}


def load_events(path: Path) -> List[Dict[str, Any]]:
    """Read a batch file: a JSON list of events or an object with ``events``."""
    if not path.exists():
        raise typer.BadParameter(f"File {path} does not exist.")
    if not path.is_file():
        raise typer.BadParameter(f"Path {path} is not a file.")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"File {path} is not valid JSON: {exc.msg}.") from exc
    events = data.get("events") if isinstance(data, dict) else data
    if not isinstance(events, list) or not events:
        raise typer.BadParameter(f"File {path} contains no events.")
    return events


class ApiClient:
    """Minimal HTTP client for the ingestion service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=30.0)

    def close(self) -> None:
        self._client.close()

    def send_batch(self, path: Path) -> str:
        events = load_events(path)
        try:
            response = self._client.post("/batches", json={"events": events})
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        payload = response.json()
        batch_id = payload.get("batch_id")
        if not isinstance(batch_id, str):
            raise typer.BadParameter("Unexpected response payload when submitting batch.")
        return batch_id

    def get_result(self, batch_id: str) -> Dict[str, Any]:
        try:
            response = self._client.get(f"/batches/{batch_id}")
            if response.status_code == 404:
                raise typer.BadParameter(f"Batch {batch_id} was not found.")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    def get_twin(self, dt_id: str) -> Dict[str, Any]:
        try:
            response = self._client.get(f"/twins/{dt_id}")
            if response.status_code == 404:
                raise typer.BadParameter(f"Twin {dt_id} was not found.")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    def poll_result(self, batch_id: str, interval: float, timeout: float) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout
        last_payload: Dict[str, Any] | None = None
        while time.monotonic() <= deadline:
            last_payload = self.get_result(batch_id)
            if last_payload.get("status") not in _PENDING_STATUSES:
                return last_payload
            time.sleep(interval)
        typer.secho(
            (
                f"Timed out waiting for batch {batch_id}. "
                f"Last status: {last_payload.get('status') if last_payload else 'unknown'}"
            ),
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: Any = None
        try:
            detail = exc.response.json().get("detail")
        except ValueError:
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
