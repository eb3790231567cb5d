"""Load and save roster documents (JSON or YAML)."""

from __future__ import annotations

import json
from pathlib import Path

import yaml

from .models import Roster

YAML_SUFFIXES = {".yml", ".yaml"}


def load_roster(path: Path) -> Roster:
    """Read a roster document. A missing or empty file yields an empty roster."""
    path = Path(path)
    if not path.exists():
        return Roster.empty()
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return Roster.empty()
    if path.suffix.lower() in YAML_SUFFIXES:
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Roster document {path} must contain a mapping")
    return Roster.from_dict(data)


def save_roster(roster: Roster, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = roster.to_dict()
    if path.suffix.lower() in YAML_SUFFIXES:
        text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    else:
        text = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    path.write_text(text, encoding="utf-8")
    return path
