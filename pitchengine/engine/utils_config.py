# pitchengine/engine/utils_config.py
from __future__ import annotations

import dataclasses
from enum import Enum
from typing import Any, Mapping

from .errors import ConfigError


def coalesce_not_none(*vals: Any) -> Any:
    """Return the first value that is not None (0 is valid and must be preserved)."""
    for v in vals:
        if v is not None:
            return v
    return None


def _coerce_like(current: Any, value: Any) -> Any:
    # Keep the declared field type when overriding from JSON / CLI strings.
    if isinstance(current, Enum) and not isinstance(value, Enum):
        return type(current)(value)
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(current, int) and not isinstance(current, bool) and isinstance(value, (str, float)):
        return int(float(value))
    if isinstance(current, float) and isinstance(value, (str, int)):
        return float(value)
    return value


def apply_dotted_overrides(target: Any, overrides: Mapping[str, Any]) -> None:
    """
    Apply dotted-path overrides into nested dataclasses/dicts, e.g.
    ``{"gain.max_gain": 8.0, "vocal.vibrato_min_extent": 20}``.

    Dataclass fields must already exist (typos raise ConfigError); dict
    containers accept new keys.
    """
    for path, value in (overrides or {}).items():
        parts = str(path).split(".")
        cur = target
        for i, part in enumerate(parts):
            last = (i == len(parts) - 1)

            if isinstance(cur, dict):
                if last:
                    cur[part] = value
                    break
                cur = cur.setdefault(part, {})
                continue

            if dataclasses.is_dataclass(cur):
                names = {f.name for f in dataclasses.fields(cur)}
                if part not in names:
                    raise ConfigError(f"Unknown config key '{path}' ({type(cur).__name__} has no '{part}')")
                if last:
                    try:
                        setattr(cur, part, _coerce_like(getattr(cur, part), value))
                    except (TypeError, ValueError) as exc:
                        raise ConfigError(f"Invalid value for '{path}': {value!r} ({exc})") from exc
                    break
                cur = getattr(cur, part)
                continue

            raise ConfigError(f"Cannot descend into '{part}' of '{path}'")
