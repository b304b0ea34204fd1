"""System prompt assembly.

Blocks are ordered stable-first so the cached prefix survives across
turns: identity, instruction files, project metadata, then the
uncached recent-context block.
"""

from __future__ import annotations

import logging
import platform
from pathlib import Path
from typing import Any

from parley.api.models import SystemBlock
from parley.config import Settings

logger = logging.getLogger(__name__)

INSTRUCTIONS_SEPARATOR = "\n\n---\n\n"
INSTRUCTIONS_TRUNCATED = "\n[instructions truncated]"
PROJECT_METADATA_HEADER = "[Project metadata]"
RECENT_CONTEXT_HEADER = "[Recent context]\n"


def build_identity(
    settings: Settings,
    project: str | None = None,
    working_directory: str | None = None,
) -> str:
    """Identity block text: who the agent is and where it is working."""
    if settings.identity_prompt:
        identity = settings.identity_prompt
    else:
        identity = f"You are {settings.agent_name}. {settings.agent_description}."
    if project:
        identity += f"\nActive project: {project}."
    if working_directory:
        identity += f"\nWorking directory: {working_directory}"
    identity += f"\nPlatform: {platform.system()}. Home: {Path.home()}"
    return identity


def instruction_paths(settings: Settings, working_directory: str | None = None) -> list[Path]:
    """Instruction files in precedence order: global, workspace, project.

    Paths resolving to the same file are listed once.
    """
    name = settings.instructions_filename
    candidates = [
        Path(settings.global_instructions_dir).expanduser() / name,
        Path(settings.workspace_dir).expanduser() / name,
    ]
    if working_directory:
        candidates.append(Path(working_directory).expanduser() / name)

    seen: set[Path] = set()
    paths: list[Path] = []
    for path in candidates:
        resolved = path.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        paths.append(path)
    return paths


def load_instructions(settings: Settings, working_directory: str | None = None) -> str:
    """Concatenate every instruction file that exists, capped in length."""
    parts: list[str] = []
    for path in instruction_paths(settings, working_directory):
        if not path.is_file():
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read instructions %s: %s", path, e)
            continue
        if text.strip():
            parts.append(text)

    combined = INSTRUCTIONS_SEPARATOR.join(parts)
    limit = settings.instructions_max_chars
    if len(combined) > limit:
        logger.info("Instructions truncated from %d to %d chars", len(combined), limit)
        combined = combined[:limit] + INSTRUCTIONS_TRUNCATED
    return combined


def format_project_metadata(metadata: dict[str, Any] | str) -> str:
    if isinstance(metadata, str):
        return f"{PROJECT_METADATA_HEADER}\n{metadata}"
    lines = [PROJECT_METADATA_HEADER]
    lines.extend(f"{key}: {value}" for key, value in metadata.items())
    return "\n".join(lines)


def build_system_prompt(
    settings: Settings,
    project: str | None = None,
    working_directory: str | None = None,
    project_metadata: dict[str, Any] | str | None = None,
    recent_context: str | None = None,
) -> list[SystemBlock]:
    """Build the full list of system blocks for a fresh conversation."""
    blocks = [SystemBlock(build_identity(settings, project, working_directory), cached=True)]

    instructions = load_instructions(settings, working_directory)
    if instructions:
        blocks.append(SystemBlock(instructions, cached=True))

    if project_metadata:
        blocks.append(SystemBlock(format_project_metadata(project_metadata), cached=True))

    if recent_context:
        blocks.append(SystemBlock(RECENT_CONTEXT_HEADER + recent_context, cached=False))

    return blocks
