# vaarta: Prompt templates shipped in vaarta.resources, loaded via importlib.resources, with per-project overrides for the system instruction.

import pathlib
from importlib import resources
from typing import Any, Dict, Optional

from .config import STATE_DIR
from .fs import read_text_if_exists

SYSTEM_PROMPT_FILE = "prompt_system.txt"


def get_prompt(name: str, **kwargs) -> str:
    """
    Load a text prompt from the vaarta.resources package.

    If kwargs are provided, apply str.format(**kwargs) to the content so prompts can
    contain placeholders. If no kwargs are provided, return the raw text without
    attempting formatting to avoid accidental brace handling.
    """
    data = resources.files("vaarta.resources").joinpath(name).read_text(encoding="utf-8")
    if kwargs:
        return data.format(**kwargs)
    return data


def resolve_system_prompt(workdir: pathlib.Path, settings: Optional[Dict[str, Any]] = None, ctx=None) -> str:
    """
    Pick the system instruction for a session.

    Priority:
      1) <workdir>/.vaarta/prompt_system.txt when present and non-empty.
      2) settings['system_prompt'] when it is a non-empty string.
      3) The packaged default.
    """
    project_text = read_text_if_exists(pathlib.Path(workdir) / STATE_DIR / SYSTEM_PROMPT_FILE)
    if project_text and project_text.strip():
        if ctx is not None:
            ctx.log(f"Using project-level system prompt: {STATE_DIR}/{SYSTEM_PROMPT_FILE}")
        return project_text
    configured = (settings or {}).get("system_prompt")
    if isinstance(configured, str) and configured.strip():
        return configured
    return get_prompt(SYSTEM_PROMPT_FILE)
