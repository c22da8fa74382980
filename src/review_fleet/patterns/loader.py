"""Pattern set loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .defaults import default_patterns
from .models import DetectionPatterns


class PatternLoadError(RuntimeError):
    """Raised when one or more pattern files cannot be parsed."""


class PatternLoader:
    """Loads detection pattern overrides from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, DetectionPatterns]:
        """Load pattern sets from all configured search paths.

        Later search paths override earlier ones when ids collide.
        """

        sets: dict[str, DetectionPatterns] = {}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    patterns = DetectionPatterns.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Pattern validation error in {path}: {exc}")
                    continue

                sets[patterns.id] = patterns

        if errors:
            raise PatternLoadError("; ".join(errors))

        return sets

    def effective(self) -> DetectionPatterns:
        """Built-in defaults with every loaded set layered on top, in load order."""

        patterns = default_patterns()
        for override in self.load_all().values():
            patterns = patterns.merged_with(override)
        return patterns


def load_patterns(search_paths: Iterable[Path] | None = None) -> DetectionPatterns:
    return PatternLoader(search_paths).effective()


__all__ = ["PatternLoadError", "PatternLoader", "load_patterns"]
