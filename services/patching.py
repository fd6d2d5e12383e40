"""JSON-Patch document construction for twin property updates."""

from __future__ import annotations

from typing import Any, Collection, Dict, Iterator, List, Mapping, Optional

PatchOperation = Dict[str, Any]


class PatchDocument:
    """Ordered list of property operations applied atomically to one twin."""

    def __init__(self) -> None:
        self._ops: List[PatchOperation] = []

    def append_add(self, path: str, value: Any) -> None:
        self._ops.append({"op": "add", "path": path, "value": value})

    def append_replace(self, path: str, value: Any) -> None:
        self._ops.append({"op": "replace", "path": path, "value": value})

    def append_remove(self, path: str) -> None:
        self._ops.append({"op": "remove", "path": path})

    @property
    def operations(self) -> List[PatchOperation]:
        return [dict(op) for op in self._ops]

    def __len__(self) -> int:
        return len(self._ops)

    def __iter__(self) -> Iterator[PatchOperation]:
        return iter(self.operations)

    def __bool__(self) -> bool:
        return bool(self._ops)


def property_path(name: str) -> str:
    return f"/{name}"


def build_patch(
    existing: Collection[str],
    updates: Mapping[str, Optional[float]],
) -> PatchDocument:
    """Build the minimal patch for ``updates`` against a twin's populated properties.

    Properties already present become ``replace`` operations, the rest ``add``.
    Negative values (and ``None``) mark a field the payload did not carry and
    produce no operation at all.
    """
    patch = PatchDocument()
    for name, value in updates.items():
        if value is None or value < 0:
            continue
        if name in existing:
            patch.append_replace(property_path(name), value)
        else:
            patch.append_add(property_path(name), value)
    return patch
