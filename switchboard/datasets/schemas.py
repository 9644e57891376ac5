from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

logger = logging.getLogger(__name__)

BUNDLED_DIR = Path(__file__).resolve().with_name("bundled")


class SchemaRegistry:
    """Named JSON schemas used to gate datasets before they reach a service."""

    def __init__(self, extra_dirs: list[Path] | None = None) -> None:
        self._validators: dict[str, Draft202012Validator] = {}
        for directory in [BUNDLED_DIR, *(extra_dirs or [])]:
            self.load_dir(directory)

    def load_dir(self, directory: Path) -> list[str]:
        if not directory.is_dir():
            return []
        loaded: list[str] = []
        for path in sorted(directory.glob("*.json")):
            try:
                schema = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("skipping unreadable schema %s: %s", path, exc)
                continue
            name = path.stem
            try:
                self.register(name, schema)
            except SchemaError as exc:
                logger.warning("skipping invalid schema %s: %s", path, exc.message)
                continue
            loaded.append(name)
        return loaded

    def register(self, name: str, schema: dict[str, Any]) -> None:
        Draft202012Validator.check_schema(schema)
        self._validators[name] = Draft202012Validator(schema)

    def names(self) -> list[str]:
        return sorted(self._validators)

    def validate(self, name: str, document: Any) -> list[str]:
        """Return validation error messages; an unknown schema is itself an error."""
        validator = self._validators.get(name)
        if validator is None:
            return [f"unknown schema: {name}"]
        errors = sorted(validator.iter_errors(document), key=lambda item: [str(part) for part in item.path])
        return [f"{'/'.join(str(part) for part in error.path) or '<root>'}: {error.message}" for error in errors[:5]]
