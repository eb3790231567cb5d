from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "rostersync.toml"

IDENTITY_MODES = ("username", "email")


@dataclass(frozen=True)
class SyncConfig:
    debounce_ms: int = 200
    staleness_hours: float = 24
    repo_name_template: str = "{assignment}-{group}"
    git_identity_mode: str = "username"

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000

    @property
    def staleness(self) -> timedelta:
        return timedelta(hours=self.staleness_hours)


def _coerce_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_config(data: dict[str, Any]) -> SyncConfig:
    """Build a SyncConfig from parsed TOML.

    Settings may sit at the top level or under a `[rostersync]` table.
    """
    data = _coerce_dict(data.get("rostersync")) or data
    defaults = SyncConfig()

    debounce_ms = data.get("debounce_ms", defaults.debounce_ms)
    if isinstance(debounce_ms, bool) or not isinstance(debounce_ms, int) or debounce_ms < 0:
        raise ValueError("debounce_ms must be a non-negative integer")

    staleness_hours = data.get("staleness_hours", defaults.staleness_hours)
    if isinstance(staleness_hours, bool) or not isinstance(staleness_hours, (int, float)) or staleness_hours <= 0:
        raise ValueError("staleness_hours must be a positive number")

    template = str(data.get("repo_name_template", defaults.repo_name_template)).strip()
    if "{assignment}" not in template and "{group}" not in template and "{group_id}" not in template:
        raise ValueError("repo_name_template must reference {assignment}, {group} or {group_id}")

    mode = str(data.get("git_identity_mode", defaults.git_identity_mode)).strip().lower()
    if mode not in IDENTITY_MODES:
        raise ValueError(f"git_identity_mode must be one of: {', '.join(IDENTITY_MODES)}")

    return SyncConfig(
        debounce_ms=debounce_ms,
        staleness_hours=staleness_hours,
        repo_name_template=template,
        git_identity_mode=mode,
    )


def load_config(path: Path | None = None) -> SyncConfig:
    """Load settings from TOML, or defaults when no path is given."""
    import tomllib

    if path is None:
        return SyncConfig()
    data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
    return parse_config(data)


def find_config(start: Path) -> Path | None:
    """Find rostersync.toml by walking up from `start`."""
    cur = start.resolve()
    for p in (cur, *cur.parents):
        candidate = p / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None
