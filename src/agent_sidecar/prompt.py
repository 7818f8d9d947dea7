"""Instructions for the default engine."""

from __future__ import annotations

import logging
from pathlib import Path

from agent_sidecar.options import SessionOptions

logger = logging.getLogger("sidecar")

WORKSPACE_PROMPT = """
You are a careful coding agent working inside the user's workspace.

Core behaviors:
- Default to short, actionable answers; prefer code over prose.
- Use the read_file and list_files tools to inspect the workspace before answering questions about it.
- Paths are relative to the workspace root; you cannot read outside it.
- Keep messages plain text/markdown; no HTML or emojis.
- Follow project conventions; match existing style.
- If lacking context, ask brief clarifying questions before proceeding.
""".strip()

PRESETS = {"workspace": WORKSPACE_PROMPT}

PROJECT_INSTRUCTION_FILES = ("AGENTS.md",)


def load_project_instructions(cwd: str) -> str | None:
    root = Path(cwd)
    for name in PROJECT_INSTRUCTION_FILES:
        path = root / name
        try:
            if path.is_file():
                return path.read_text(encoding="utf-8", errors="ignore")
        except OSError:
            logger.warning("Could not read %s", path, exc_info=True)
    return None


def build_instructions(options: SessionOptions) -> str:
    """Preset prompt, followed by project instructions when the `project` source is enabled."""

    base = PRESETS.get(options.profile.system_prompt_preset, WORKSPACE_PROMPT)
    if "project" not in options.profile.setting_sources:
        return base
    project = load_project_instructions(options.cwd)
    if project:
        return f"{base}\n\n{project}"
    return base
