"""Base resolver with shared template loading utilities.

This module provides common functionality for resolving templates:
- Error types with stable codes
- YAML loading with caching

Used by the directory and HTTP template repositories.
"""

import logging
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)


class ResolverError(Exception):
    """Base exception for resolver errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class TemplateNotFoundError(ResolverError):
    """Template not found in the repository."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__("E301", f"Template not found: {template_id}")


class TemplateInvalidError(ResolverError):
    """Template exists but cannot be used."""

    def __init__(self, template_id: str, reason: str):
        self.template_id = template_id
        super().__init__("E302", f"Template {template_id} is invalid: {reason}")


class ResolverBase:
    """Base class for YAML-backed resolution with caching."""

    def __init__(self, root: Path):
        """Initialize resolver.

        Args:
            root: Directory holding the YAML documents
        """
        self.root = Path(root)
        self._cache: dict[Path, dict] = {}

    def clear_cache(self) -> None:
        """Drop cached documents so edited files are read again."""
        self._cache.clear()
        logger.info("Cache cleared")

    def _load_yaml(self, path: Path) -> Optional[dict]:
        """Load YAML file (cached).

        Returns:
            Parsed YAML content as dict, or None if file missing

        Raises:
            ResolverError: If the file is not valid YAML
        """
        if path in self._cache:
            return self._cache[path]
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ResolverError("E500", f"Invalid YAML in {path}: {e}") from e
        self._cache[path] = data
        return data
