"""
Skill Registry.

Skills are markdown manuals that condition the sub-agents.
Each lives in its own directory as ``SKILL.md`` with YAML
front matter::

    ---
    name: sql-generation
    description: Rules for writing ClickHouse SQL
    ---
    # SQL Generation
    ...

The registry walks the root directory once, caches the
formatted content of every skill, and serves lookups from
the cache for the rest of its lifetime.  Formatted content
always starts with ``SKILL_BANNER_PREFIX``; agents use that
banner to tell a real manual from a "not found" message.
"""

import logging
import os
import posixpath
import re
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from console_agent.config import settings
from console_agent.schemas import Skill

logger = logging.getLogger(__name__)

SKILL_FILENAME = "SKILL.md"
SKILL_BANNER_PREFIX = "# Manual Loaded: "

_FRONT_MATTER_RE = re.compile(
    r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)",
    re.DOTALL,
)


class SkillFormatError(ValueError):
    """Raised when a skill document cannot be parsed."""


def format_skill(name: str, body: str) -> str:
    """Return ``"# Manual Loaded: <name>\\n\\n<body>"``."""
    return f"{SKILL_BANNER_PREFIX}{name}\n\n{body}"


def is_loaded_skill(content: Optional[str]) -> bool:
    """True if *content* is a formatted skill manual."""
    return bool(content) and content.startswith(SKILL_BANNER_PREFIX)


def parse_skill_document(raw: str) -> Tuple[Dict, str]:
    """
    Split a skill document into front matter and body.

    Parameters:
        raw (str): Full ``SKILL.md`` text.

    Returns:
        tuple[dict, str]: (front matter mapping, stripped body)

    Raises:
        SkillFormatError: Front matter is not a YAML mapping.
    """
    match = _FRONT_MATTER_RE.match(raw)
    if not match:
        return {}, raw.strip()
    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        raise SkillFormatError(f"invalid front matter: {exc}") from exc
    if not isinstance(data, dict):
        raise SkillFormatError("front matter must be a mapping")
    return data, raw[match.end():].strip()


def is_safe_relative_path(path: str) -> bool:
    """Reject empty, absolute or parent-escaping paths."""
    if not path:
        return False
    normalized = path.replace("\\", "/")
    if normalized.startswith("/") or os.path.isabs(path):
        return False
    normalized = posixpath.normpath(normalized)
    return normalized != ".." and not normalized.startswith("../")


class SkillRegistry:
    """
    Lazily populated, thread-safe cache of skill manuals.

    Parameters:
        root_dir (str, optional): Directory to scan; defaults
            to ``settings.skills_root_dir``.
        max_skill_bytes (int, optional): Documents larger than
            this are skipped.
    """

    def __init__(
        self,
        root_dir: Optional[str] = None,
        max_skill_bytes: Optional[int] = None,
    ) -> None:
        self.root_dir = Path(root_dir or settings.skills_root_dir)
        self.max_skill_bytes = max_skill_bytes or settings.max_skill_bytes
        self._lock = threading.Lock()
        self._skills: Optional[List[Skill]] = None
        self._content: Dict[str, str] = {}
        self._dirs: Dict[str, Path] = {}

    # ----- public API ------------------------------------------------

    def list_skills(self) -> List[Skill]:
        """Return every discovered skill, sorted by name."""
        return list(self._ensure_loaded())

    def get_skill(self, name: str) -> Optional[str]:
        """
        Return the formatted manual for *name*, or None.

        Lookup tries an exact key first, then a case-insensitive
        scan over canonical and directory names.
        """
        trimmed = (name or "").strip()
        if not is_safe_relative_path(trimmed):
            return None
        self._ensure_loaded()
        key = self._resolve_key(trimmed)
        return self._content.get(key) if key else None

    def get_skill_resource(
        self,
        skill_name: str,
        path: str,
    ) -> Optional[str]:
        """
        Read an extra file shipped inside a skill directory.

        Parameters:
            skill_name (str): Canonical or directory name.
            path (str): Relative path inside the skill dir,
                e.g. ``rules/partition-pruning.md``.

        Returns:
            str | None: File text, or None when the skill or
            file is missing, unsafe or too large.
        """
        path = (path or "").strip()
        if not is_safe_relative_path(path):
            return None
        if posixpath.basename(path.replace("\\", "/")).lower() == "skill.md":
            return None

        self._ensure_loaded()
        key = self._resolve_key((skill_name or "").strip())
        if key is None:
            return None
        skill_dir = self._dirs[key].resolve()
        target = (skill_dir / path).resolve()
        try:
            target.relative_to(skill_dir)
        except ValueError:
            return None
        return self._read_text(target)

    def clear_cache(self) -> None:
        """Drop the cache; the next lookup re-scans the store."""
        with self._lock:
            self._skills = None
            self._content = {}
            self._dirs = {}

    # ----- loading ---------------------------------------------------

    def _ensure_loaded(self) -> List[Skill]:
        skills = self._skills
        if skills is not None:
            return skills
        with self._lock:
            if self._skills is None:
                self._skills = self._build_cache()
            return self._skills

    def _build_cache(self) -> List[Skill]:
        skills: List[Skill] = []
        content: Dict[str, str] = {}
        dirs: Dict[str, Path] = {}

        for skill_file in self._walk_skill_files():
            raw = self._read_text(skill_file)
            if not raw or not raw.strip():
                continue
            try:
                data, body = parse_skill_document(raw)
            except SkillFormatError as exc:
                logger.warning(
                    "[skills] skipping %s: %s", skill_file, exc
                )
                continue

            dir_name = skill_file.parent.name
            meta_name = data.get("name")
            name = (
                meta_name.strip()
                if isinstance(meta_name, str) and meta_name.strip()
                else dir_name
            )
            description = data.get("description")
            if not isinstance(description, str):
                description = ""

            if name in content:
                logger.warning(
                    "[skills] duplicate skill '%s' at %s ignored",
                    name,
                    skill_file,
                )
                continue

            formatted = format_skill(name, body)
            skills.append(Skill(
                name=name,
                description=description.strip(),
                content=formatted,
            ))
            content[name] = formatted
            dirs[name] = skill_file.parent
            if dir_name != name and dir_name not in content:
                content[dir_name] = formatted
                dirs[dir_name] = skill_file.parent

            logger.info("[skills] loaded '%s' from %s", name, skill_file)

        skills.sort(key=lambda s: s.name)
        self._content = content
        self._dirs = dirs
        return skills

    def _walk_skill_files(self) -> List[Path]:
        found: List[Path] = []
        if not self.root_dir.is_dir():
            logger.warning(
                "[skills] root directory %s does not exist",
                self.root_dir,
            )
            return found

        for dirpath, dirnames, filenames in os.walk(self.root_dir):
            dirnames[:] = sorted(
                d for d in dirnames if not d.startswith(".")
            )
            if SKILL_FILENAME in filenames:
                found.append(Path(dirpath) / SKILL_FILENAME)
        return found

    def _read_text(self, path: Path) -> Optional[str]:
        try:
            if not path.is_file():
                return None
            size = path.stat().st_size
            if size > self.max_skill_bytes:
                logger.warning(
                    "[skills] skipping %s (%d bytes exceeds %d)",
                    path,
                    size,
                    self.max_skill_bytes,
                )
                return None
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("[skills] cannot read %s: %s", path, exc)
            return None

    def _resolve_key(self, name: str) -> Optional[str]:
        if name in self._content:
            return name
        lowered = name.lower()
        for key in self._content:
            if key.lower() == lowered:
                return key
        return None
