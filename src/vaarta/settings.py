# vaarta: Lightweight YAML settings loader.

from __future__ import annotations

import pathlib
from typing import Any, Dict

import yaml

from .config import STATE_DIR


def load_settings(workdir: pathlib.Path) -> Dict[str, Any]:
    """
    Load settings from <workdir>/.vaarta/settings.yaml or settings.yml.

    Returns an empty dict {} when the settings file is missing, unreadable, or
    does not contain a mapping. The function never raises.
    """
    state_dir = pathlib.Path(workdir) / STATE_DIR
    for p in (state_dir / "settings.yaml", state_dir / "settings.yml"):
        try:
            if not (p.exists() and p.is_file()):
                continue
            data = yaml.safe_load(p.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError):
            continue
        # Non-mapping YAML is treated as empty settings.
        return data if isinstance(data, dict) else {}
    return {}


def section(settings: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return settings[name] when it is a mapping, else {}."""
    value = settings.get(name) if isinstance(settings, dict) else None
    return value if isinstance(value, dict) else {}
