"""JSON export/import of mark sets."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from mpp.marks import Mark, mark_from_dict

SCHEMA_MARKS_V1 = "mpp.marks.1"


def marks_to_payload(marks: Iterable[Mark], metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    items = [mark.to_dict() for mark in marks]
    return {
        "schema_version": SCHEMA_MARKS_V1,
        "count": len(items),
        "marks": items,
        "metadata": metadata or {},
    }


def marks_from_payload(payload: Dict[str, Any]) -> List[Mark]:
    version = payload.get("schema_version")
    if version != SCHEMA_MARKS_V1:
        raise ValueError(f"Unexpected marks schema version: {version}")
    raw = payload.get("marks")
    if not isinstance(raw, list):
        raise ValueError("Marks payload must contain a 'marks' list")

    marks: List[Mark] = []
    seen = set()
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError(f"Mark entries must be objects, got {type(item).__name__}")
        mark = mark_from_dict(item)
        if mark.identifier in seen:
            raise ValueError(f"Duplicate mark identifier {mark.identifier} in payload")
        seen.add(mark.identifier)
        marks.append(mark)
    return marks


def write_marks_json(path: Path, marks: Iterable[Mark], metadata: Optional[Dict[str, Any]] = None) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(marks_to_payload(marks, metadata), f, indent=2)
    return path


def read_marks_json(path: Path) -> List[Mark]:
    with Path(path).open("r", encoding="utf-8") as f:
        payload = json.load(f)
    if not isinstance(payload, dict):
        raise ValueError(f"Marks file must hold a JSON object: {path}")
    return marks_from_payload(payload)
