# checkpoints/fingerprint.py
from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Iterable, List, Mapping

from ..config import ConfigDoc

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# fingerprint = sha256(stable_json({
#     "id": point id,
#     "anchor_task": anchor,
#     "selected": [[key_path, resolved value or null], ...]   (configured order)
# }))
#
# Only the listed key paths feed the digest, so edits anywhere else in the
# document never invalidate the checkpoint.
# ---------------------------------------------------------------------


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _tagged(value: Any) -> Dict[str, str]:
    # TOML dates/times carry their type so they never collide with an equal-looking string
    text = value.isoformat() if hasattr(value, "isoformat") else str(value)
    return {"$type": type(value).__name__, "value": text}


def _json_dumps_stable(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_tagged)


def _normalize(value: Any) -> Any:
    """Round-trip through JSON so manifests compare equal to freshly resolved values."""
    return json.loads(_json_dumps_stable(value))


def selected_inputs(doc: ConfigDoc, paths: Iterable[str]) -> Dict[str, Any]:
    """Resolved values at each key path, in configured order; missing paths map to None."""
    return {p: _normalize(doc.value_path(p)) for p in paths}


def compute_fingerprint(point_id: str, anchor_task: str, selected: Mapping[str, Any]) -> str:
    payload = {
        "id": point_id,
        "anchor_task": anchor_task,
        "selected": [[k, v] for k, v in selected.items()],
    }
    return _sha256_str(_json_dumps_stable(payload))


def compute_lineage(anchor_task: str, fingerprint: str) -> str:
    return _sha256_str(f"{anchor_task}\n{fingerprint}")


def changed_paths(previous: Mapping[str, Any], current: Mapping[str, Any]) -> List[str]:
    """Key paths whose value differs between two fingerprint input maps."""
    out = []
    for k, v in current.items():
        if k not in previous or _normalize(previous[k]) != v:
            out.append(k)
    for k in previous:
        if k not in current:
            out.append(k)
    return out


def describe_changes(paths: List[str], limit: int = 3) -> str:
    shown = ", ".join(paths[:limit])
    extra = len(paths) - limit
    if extra > 0:
        return f"inputs changed at {shown} (+{extra} more)"
    return f"inputs changed at {shown}"
