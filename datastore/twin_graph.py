"""In-process stand-in for the managed twin graph service."""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional

from models.twins import DT_ID
from settings import get_settings

_SELECT_RE = re.compile(
    r"^\s*SELECT\s+\*\s+FROM\s+DigitalTwins\s+(?P<alias>\w+)(?:\s+WHERE\s+(?P<where>.+?))?\s*;?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_AND_RE = re.compile(r"\s+AND\s+", re.IGNORECASE)
_LITERAL = r"'(?P<literal>(?:[^'\\]|\\.)*)'"
_MODEL_RE = re.compile(rf"^IS_OF_MODEL\(\s*(?P<alias>\w+)\s*,\s*{_LITERAL}\s*\)$", re.IGNORECASE)
_EQUALS_RE = re.compile(rf"^(?P<alias>\w+)\.(?P<prop>\$?\w+)\s*=\s*{_LITERAL}$")
_ESCAPE_RE = re.compile(r"\\(.)")

Predicate = Callable[[Dict[str, Any]], bool]


@dataclass(frozen=True)
class TwinQuery:
    """Parsed form of the supported ``SELECT * FROM DigitalTwins`` subset."""

    text: str
    predicates: tuple[Predicate, ...]

    def matches(self, twin: Dict[str, Any]) -> bool:
        return all(predicate(twin) for predicate in self.predicates)


def _model_predicate(model: str) -> Predicate:
    def predicate(twin: Dict[str, Any]) -> bool:
        metadata = twin.get("$metadata") or {}
        return metadata.get("$model") == model

    return predicate


def _equals_predicate(prop: str, value: str) -> Predicate:
    def predicate(twin: Dict[str, Any]) -> bool:
        if prop not in twin:
            return False
        return str(twin[prop]) == value

    return predicate


def _unescape(literal: str) -> str:
    return _ESCAPE_RE.sub(r"\1", literal)


def parse_query(text: str) -> TwinQuery:
    match = _SELECT_RE.match(text)
    if match is None:
        raise ValueError(f"Unsupported twin query: {text!r}")
    alias = match.group("alias")
    where = match.group("where")
    predicates: list[Predicate] = []
    if where:
        for clause in _AND_RE.split(where.strip()):
            clause = clause.strip()
            model_match = _MODEL_RE.match(clause)
            if model_match and model_match.group("alias") == alias:
                predicates.append(_model_predicate(_unescape(model_match.group("literal"))))
                continue
            equals_match = _EQUALS_RE.match(clause)
            if equals_match and equals_match.group("alias") == alias:
                predicates.append(
                    _equals_predicate(
                        equals_match.group("prop"), _unescape(equals_match.group("literal"))
                    )
                )
                continue
            raise ValueError(f"Unsupported twin query condition: {clause!r}")
    return TwinQuery(text=text, predicates=tuple(predicates))


def apply_operations(twin: Dict[str, Any], operations: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a patched copy of ``twin``; any invalid operation rejects the whole patch."""
    patched = copy.deepcopy(twin)
    for operation in operations:
        op = operation.get("op")
        path = operation.get("path", "")
        if not isinstance(path, str) or not path.startswith("/") or len(path) < 2:
            raise ValueError(f"Invalid patch path {path!r}.")
        name = path[1:]
        if "/" in name:
            raise ValueError(f"Nested patch path {path!r} is not supported.")
        if name.startswith("$"):
            raise ValueError(f"System property {path!r} cannot be patched.")

        if op == "add":
            if "value" not in operation:
                raise ValueError(f"Missing value for add on {path!r}.")
            patched[name] = operation["value"]
        elif op == "replace":
            if name not in patched:
                raise ValueError(f"Cannot replace missing property {path!r}.")
            if "value" not in operation:
                raise ValueError(f"Missing value for replace on {path!r}.")
            patched[name] = operation["value"]
        elif op == "remove":
            if name not in patched:
                raise ValueError(f"Cannot remove missing property {path!r}.")
            del patched[name]
        else:
            raise ValueError(f"Unsupported patch operation {op!r}.")
    return patched


class MockTwinGraph:

    def __init__(self, persistence_path: Optional[Path] = None) -> None:
        self._twins: Dict[str, Dict[str, Any]] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def upsert_twin(self, twin: Dict[str, Any]) -> None:
        dt_id = twin.get(DT_ID)
        if not isinstance(dt_id, str) or not dt_id:
            raise ValueError("Twin is missing a $dtId.")
        with self._lock:
            self._twins[dt_id] = copy.deepcopy(twin)
            self._persist()

    def get_twin(self, dt_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            twin = self._twins.get(dt_id)
            if twin is None:
                return None
            return copy.deepcopy(twin)

    def scan(self) -> list[Dict[str, Any]]:
        """Return deep copies of all twins ordered by ``$dtId``."""

        with self._lock:
            return [copy.deepcopy(self._twins[key]) for key in sorted(self._twins)]

    def query(self, text: str) -> List[Dict[str, Any]]:
        parsed = parse_query(text)
        with self._lock:
            return [
                copy.deepcopy(self._twins[key])
                for key in sorted(self._twins)
                if parsed.matches(self._twins[key])
            ]

    def patch(self, dt_id: str, operations: Iterable[Dict[str, Any]]) -> None:
        with self._lock:
            twin = self._twins.get(dt_id)
            if twin is None:
                raise KeyError(f"Twin {dt_id!r} not found.")
            self._twins[dt_id] = apply_operations(twin, operations)
            self._persist()

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {dt_id: twin for dt_id, twin in self._twins.items()}
        self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            data = {}

        # Accept both the keyed snapshot written by _persist and a plain list
        # of twins as produced by import tooling.
        twins = data.values() if isinstance(data, dict) else data
        for twin in twins:
            if isinstance(twin, dict) and isinstance(twin.get(DT_ID), str):
                self._twins[twin[DT_ID]] = twin


@lru_cache
def build_default_graph(path: Optional[str] = None) -> MockTwinGraph:
    settings = get_settings()
    graph_path = settings.graph_persistence_path if path is None else path
    persistence = Path(graph_path) if graph_path else None
    return MockTwinGraph(persistence_path=persistence)
