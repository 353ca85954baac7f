"""Filesystem helpers for locating workflow definition files."""

from __future__ import annotations

import fnmatch
from pathlib import Path
from typing import Iterable, Set

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


def _load_gitignore_patterns(search_path: Path) -> Set[str]:
    """Collect ignore patterns from ``.gitignore`` files in the search path and its parents."""
    patterns: Set[str] = {
        "__pycache__/",
        ".git/",
        ".venv/",
        "venv/",
        "node_modules/",
        "build/",
        "dist/",
        "*.egg-info/",
        ".github/",
    }

    current_path = search_path if search_path.is_dir() else search_path.parent
    while current_path != current_path.parent:
        gitignore_file = current_path / ".gitignore"
        if gitignore_file.exists():
            try:
                with open(gitignore_file, "r", encoding="utf-8") as f:
                    for line in f:
                        line = line.strip()
                        if line and not line.startswith("#"):
                            patterns.add(line)
            except (OSError, UnicodeDecodeError):
                # unreadable ignore files are skipped
                pass
        current_path = current_path.parent

    return patterns


def _should_ignore_path(path: Path, patterns: Set[str], base_path: Path) -> bool:
    """Check whether ``path`` matches any ignore pattern relative to ``base_path``."""
    try:
        relative_path = path.relative_to(base_path)
    except ValueError:
        return False

    path_str = str(relative_path)
    for pattern in patterns:
        if pattern.endswith("/"):
            directory = pattern[:-1]
            if any(fnmatch.fnmatch(part, directory) for part in relative_path.parts[:-1]):
                return True
        elif fnmatch.fnmatch(path.name, pattern) or fnmatch.fnmatch(path_str, pattern):
            return True
    return False


def _iter_definition_files(
    search_path: Path, respect_gitignore: bool = True
) -> Iterable[Path]:
    """Yield YAML/JSON files under ``search_path``, honouring ``.gitignore``."""

    if search_path.is_file():
        if search_path.suffix.lower() in DEFINITION_SUFFIXES:
            yield search_path
        return

    patterns: Set[str] = set()
    if respect_gitignore:
        patterns = _load_gitignore_patterns(search_path)

    for candidate in sorted(search_path.rglob("*")):
        if not candidate.is_file() or candidate.suffix.lower() not in DEFINITION_SUFFIXES:
            continue
        if respect_gitignore and _should_ignore_path(candidate, patterns, search_path):
            continue
        yield candidate


def _format_path(path: Path, base_path: Path) -> str:
    """Return ``path`` relative to ``base_path`` when possible."""
    try:
        return f"./{path.relative_to(base_path)}"
    except ValueError:
        return str(path)
