"""Versioned, append-only allow-list of event types.

The list lives in ``event_types.json``. Each version only *adds* types; a
file whose later version repeats or removes an earlier type is rejected at
load time so historical events never become invalid.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

HOLDING_EVENT_TYPE = "unrecognized"


class EventTypeRegistry:
    """Set of allowed event types, built from additive versions."""

    def __init__(self, versions: list[dict[str, Any]], prefixes: list[str] | None = None) -> None:
        self._types: set[str] = set()
        self._prefixes = tuple(prefixes or ())
        self._version = 0
        for entry in sorted(versions, key=lambda v: int(v["version"])):
            version = int(entry["version"])
            if version <= self._version:
                msg = f"Duplicate allow-list version {version}"
                raise ValueError(msg)
            repeated = self._types.intersection(entry["added"])
            if repeated:
                msg = f"Allow-list version {version} re-adds {sorted(repeated)}"
                raise ValueError(msg)
            self._types.update(entry["added"])
            self._version = version

    @classmethod
    def from_document(cls, doc: dict[str, Any], up_to_version: int | None = None) -> EventTypeRegistry:
        versions = doc.get("versions", [])
        if up_to_version is not None:
            versions = [v for v in versions if int(v["version"]) <= up_to_version]
        return cls(versions, doc.get("prefixes", []))

    @classmethod
    def load(cls, path: str | Path | None = None, up_to_version: int | None = None) -> EventTypeRegistry:
        """Load from ``path`` or the packaged ``event_types.json``."""
        if path:
            raw = Path(path).read_text(encoding="utf-8")
        else:
            raw = resources.files("gamepulse.events").joinpath("event_types.json").read_text(encoding="utf-8")
        registry = cls.from_document(json.loads(raw), up_to_version)
        logger.info("Event allow-list loaded: version %d, %d types", registry.version, len(registry))
        return registry

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._types)

    def __contains__(self, event_type: object) -> bool:
        return isinstance(event_type, str) and self.is_allowed(event_type)

    def is_allowed(self, event_type: str) -> bool:
        if event_type in self._types:
            return True
        return any(event_type.startswith(p) and len(event_type) > len(p) for p in self._prefixes)


@lru_cache
def get_registry(path: str = "") -> EventTypeRegistry:
    """Cached registry for the configured allow-list file."""
    return EventTypeRegistry.load(path or None)
