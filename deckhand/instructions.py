"""Load and render prompt templates from disk.

Templates ship inside the package under ``deckhand/prompts/``. A file
with the same name in ``~/.deckhand/instructions/`` takes precedence, so the
guidelines and summarizer prompts can be tuned without editing the install.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping


_PERSONAL_DIR = Path("~/.deckhand/instructions").expanduser()


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read and render instruction templates with personal-override support.

    Resolution order for every template:
      1. ``personal_dir / name``  (``~/.deckhand/instructions/``)
      2. ``base_dir / name``      (packaged ``prompts/``)
    """

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = self._resolve_base_dir(base_dir)
        self.personal_dir: Path = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str] = {}

    @staticmethod
    def _resolve_base_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("DECKHAND_INSTRUCTIONS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return (Path(__file__).resolve().parent / "prompts").resolve()

    def _path(self, name: str) -> Path:
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def is_overridden(self, name: str) -> bool:
        """Return ``True`` if a personal override exists for *name*."""
        return (self.personal_dir / name).is_file()

    def load(self, name: str) -> str:
        """Load instruction template content by filename."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(
                f"Instruction template not found: {path}. "
                "Add the file under the instructions folder."
            )
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, **variables: object) -> str:
        """Render template with simple ``str.format`` placeholder substitution."""
        template = self.load(name)
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return template.format_map(_SafeFormatDict(values)).strip()

    def list_templates(self) -> list[str]:
        """Names of all templates visible through either layer."""
        names: set[str] = set()
        for directory in (self.base_dir, self.personal_dir):
            if directory.is_dir():
                names.update(p.name for p in directory.glob("*.md"))
        return sorted(names)

    def clear_cache(self) -> None:
        self._cache.clear()


_loader: InstructionLoader | None = None


def get_instruction_loader() -> InstructionLoader:
    """Shared loader for the packaged templates."""
    global _loader
    if _loader is None:
        _loader = InstructionLoader()
    return _loader


PROJECT_INSTRUCTIONS_PATH = Path(".deckhand") / "DECKHAND.md"


def load_project_instructions(working_directory: Path | str | None = None) -> str | None:
    """Project-specific instructions from ``.deckhand/DECKHAND.md``, if present."""
    root = Path(working_directory) if working_directory is not None else Path.cwd()
    path = root / PROJECT_INSTRUCTIONS_PATH
    if not path.is_file():
        return None
    content = path.read_text(encoding="utf-8").strip()
    return content or None
