"""Append-only library of skill artifacts emitted by the Manager."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from agent_duo.orchestrator.models import SkillArtifact, SkillDraft
from agent_duo.orchestrator.state import atomic_write_text, to_iso, utc_now

logger = logging.getLogger(__name__)

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def slugify_skill_name(name: str) -> str:
    slug = _SLUG_INVALID.sub("-", name.strip().lower()).strip("-")
    return slug[:80] or "skill"


class SkillLibrary:
    """Skill documents stored as `skills/<slug>.md`.

    Nothing is ever deleted; a skill re-emitted under an existing name gets a
    new revision section appended.
    """

    def __init__(self, skills_dir: Path) -> None:
        self.skills_dir = skills_dir

    def list_skills(self) -> list[SkillArtifact]:
        """All skills, oldest first."""

        if not self.skills_dir.exists():
            return []
        artifacts = [
            SkillArtifact(
                name=path.stem,
                content=path.read_text("utf-8", errors="replace"),
                modified_at=path.stat().st_mtime,
            )
            for path in self.skills_dir.glob("*.md")
            if path.is_file()
        ]
        artifacts.sort(key=lambda artifact: (artifact.modified_at, artifact.name))
        return artifacts

    def names(self) -> list[str]:
        if not self.skills_dir.exists():
            return []
        return sorted(path.stem for path in self.skills_dir.glob("*.md"))

    def count(self) -> int:
        return len(self.names())

    def add(self, draft: SkillDraft) -> str:
        """Persist a skill and return its stored name."""

        name = slugify_skill_name(draft.name)
        path = self.skills_dir / f"{name}.md"
        body = draft.content.strip()
        if path.exists():
            existing = path.read_text("utf-8", errors="replace").rstrip()
            text = f"{existing}\n\n## Revision {to_iso(utc_now())}\n\n{body}\n"
            logger.info("Skill %s revised", name)
        else:
            text = f"{body}\n"
            logger.info("Skill %s created", name)
        atomic_write_text(path, text)
        return name

    def render_context(self, *, max_chars: int) -> str:
        """Render skills for the Worker prompt, newest first within `max_chars`."""

        artifacts = self.list_skills()
        if not artifacts:
            return "No skills loaded yet."

        sections: list[str] = []
        omitted: list[str] = []
        used = 0
        for artifact in reversed(artifacts):
            section = f"### {artifact.name}\n{artifact.content.strip()}\n"
            if used + len(section) > max_chars:
                omitted.append(artifact.name)
                continue
            sections.append(section)
            used += len(section)

        lines = ["## Available Skills", "", *sections]
        if omitted:
            lines.append(
                "Skills omitted to fit the context budget: " + ", ".join(sorted(omitted)),
            )
        return "\n".join(lines).rstrip()
