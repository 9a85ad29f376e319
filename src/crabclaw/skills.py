"""
Skills - human-authored instructions exposed to the model as passive tools.

A skill is a directory containing SKILL.md. The file may start with a YAML
frontmatter block carrying `name` and `description`; the rest is the body.
Calling `skill.<name>` simply returns the body. Nothing is executed.

Project skills (<workspace>/.agent/skills) take precedence over global
ones (~/.agent/skills) with the same name, compared case-insensitively.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

SKILLS_DIR = Path(".agent") / "skills"
SKILL_FILE = "SKILL.md"


@dataclass
class Skill:
    name: str
    description: str
    body: str
    location: Path
    source: str = "project"

    @property
    def tool_name(self) -> str:
        return f"skill.{self.name}"


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Split a `---` delimited YAML header from the body."""
    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        return {}, text
    for index in range(1, len(lines)):
        if lines[index].strip() == "---":
            header = "\n".join(lines[1:index])
            body = "\n".join(lines[index + 1:]).strip()
            try:
                data = yaml.safe_load(header) or {}
            except yaml.YAMLError as e:
                logger.warning(f"Invalid skill frontmatter: {e}")
                return {}, body
            if not isinstance(data, dict):
                return {}, body
            return data, body
    return {}, text


def load_skill(path: Path, source: str = "project") -> Skill | None:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning(f"Cannot read skill {path}: {e}")
        return None
    meta, body = split_frontmatter(text)
    name = str(meta.get("name") or path.parent.name).strip()
    if not name:
        return None
    description = str(meta.get("description") or "").strip()
    if not description:
        first = next((line.strip("# ").strip() for line in body.splitlines() if line.strip()), "")
        description = first or f"Skill {name}"
    return Skill(name=name, description=description, body=body, location=path, source=source)


def _scan(root: Path, source: str) -> list[Skill]:
    if not root.is_dir():
        return []
    skills = []
    for skill_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        skill_file = skill_dir / SKILL_FILE
        if skill_file.is_file():
            skill = load_skill(skill_file, source)
            if skill is not None:
                skills.append(skill)
    return skills


def discover_skills(workspace: str | Path, home: str | Path | None = None) -> list[Skill]:
    """
    Find project and global skills, deduplicated by name with project skills
    winning, and return them sorted by name.
    """
    roots = [(Path(workspace) / SKILLS_DIR, "project")]
    home_dir = Path(home) if home is not None else Path.home()
    roots.append((home_dir / SKILLS_DIR, "global"))

    seen: set[str] = set()
    found: list[Skill] = []
    for root, source in roots:
        for skill in _scan(root, source):
            key = skill.name.casefold()
            if key in seen:
                logger.debug(f"Skill {skill.name} from {source} shadowed by an earlier one")
                continue
            seen.add(key)
            found.append(skill)
    found.sort(key=lambda s: s.name.casefold())
    logger.info(f"Discovered {len(found)} skill(s)")
    return found
