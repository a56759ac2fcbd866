"""Save and restore session snapshots as JSON so a paused run survives restarts."""

import dataclasses
import json
import logging
import os
import time
import types
from enum import Enum
from pathlib import Path
from typing import Any, Union, get_args, get_origin, get_type_hints

from src.models import DialogueEntry, SessionState
from src.session import SessionStore

logger = logging.getLogger(__name__)

MAX_SESSION_AGE_SEC = 24 * 60 * 60


def _build(tp: Any, value: Any) -> Any:
    if value is None or tp is Any:
        return value
    origin = get_origin(tp)
    if origin in (Union, types.UnionType):
        inner = [a for a in get_args(tp) if a is not type(None)]
        return _build(inner[0], value)
    if origin is tuple:
        item_type = get_args(tp)[0]
        return tuple(_build(item_type, v) for v in value)
    if origin is dict:
        return dict(value)
    if isinstance(tp, type) and issubclass(tp, Enum):
        return tp(value)
    if dataclasses.is_dataclass(tp):
        return from_dict(tp, value)
    if tp is float:
        return float(value)
    return value


def from_dict(cls: type, data: dict[str, Any]) -> Any:
    """Rebuild a dataclass from its asdict() form. Missing keys take field defaults."""
    hints = get_type_hints(cls)
    kwargs = {
        f.name: _build(hints[f.name], data[f.name])
        for f in dataclasses.fields(cls)
        if f.name in data
    }
    return cls(**kwargs)


def snapshot_to_dict(state: SessionState, dialogue: tuple[DialogueEntry, ...], timestamp: float) -> dict[str, Any]:
    return {
        "generated_document": state.generated_document,
        "dialogue_entries": [dataclasses.asdict(d) for d in dialogue],
        "session_state": dataclasses.asdict(state),
        "timestamp": timestamp,
    }


def save_snapshot(store: SessionStore, path: Path, now: float | None = None) -> Path:
    """Write the store's state to ``path`` atomically."""
    snapshot = snapshot_to_dict(store.state, store.dialogue, now if now is not None else time.time())
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(snapshot, indent=2, default=str), encoding="utf-8")
    os.replace(tmp_path, path)
    logger.debug("Session snapshot saved to %s", path)
    return path


def load_snapshot(
    path: Path,
    max_age_sec: float = MAX_SESSION_AGE_SEC,
    now: float | None = None,
) -> tuple[SessionState, tuple[DialogueEntry, ...]] | None:
    """Read a snapshot. Returns None when missing, unreadable, or too old."""
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        age = (now if now is not None else time.time()) - float(raw["timestamp"])
        if age > max_age_sec:
            logger.info("Ignoring session snapshot older than %.0fh: %s", max_age_sec / 3600, path)
            return None
        state_raw = dict(raw.get("session_state", {}))
        state_raw.setdefault("generated_document", raw.get("generated_document"))
        state = from_dict(SessionState, state_raw)
        dialogue = tuple(from_dict(DialogueEntry, d) for d in raw.get("dialogue_entries", []))
    except (OSError, ValueError, KeyError, TypeError) as exc:
        logger.warning("Ignoring unreadable session snapshot %s: %s", path, exc)
        return None
    return state, dialogue


def restore_session(store: SessionStore, path: Path, max_age_sec: float = MAX_SESSION_AGE_SEC) -> bool:
    """Hydrate ``store`` from ``path``. Returns False when nothing was restored."""
    loaded = load_snapshot(path, max_age_sec)
    if loaded is None:
        return False
    state, dialogue = loaded
    store.hydrate(state, dialogue)
    logger.info("Restored session with %d round(s) from %s", len(state.rounds), path)
    return True
