"""Tests for the versioned event allow-list."""

import json
from importlib import resources

import pytest

from gamepulse.events.allowlist import EventTypeRegistry, get_registry


def _packaged_document() -> dict:
    text = resources.files("gamepulse.events").joinpath("event_types.json").read_text(encoding="utf-8")
    return json.loads(text)


class TestPackagedAllowList:
    """The allow-list shipped with the package."""

    def test_latest_version_loaded(self):
        registry = EventTypeRegistry.load()
        assert registry.version == 3
        assert "game_ended" in registry
        assert "tournament_ticket_granted" in registry

    def test_older_version_lacks_later_types(self):
        v1 = EventTypeRegistry.from_document(_packaged_document(), up_to_version=1)
        assert v1.version == 1
        assert "game_ended" in v1
        assert "first_open" not in v1

    def test_prefix_family(self):
        registry = get_registry()
        assert registry.is_allowed("conversion_level_5")
        assert not registry.is_allowed("conversion_")
        assert not registry.is_allowed("made_up_event")

    def test_non_string_not_contained(self):
        assert 42 not in get_registry()


class TestAppendOnly:
    """Later versions may only add types."""

    def test_re_adding_a_type_is_rejected(self):
        versions = [
            {"version": 1, "added": ["game_started"]},
            {"version": 2, "added": ["game_started", "game_ended"]},
        ]
        with pytest.raises(ValueError, match="re-adds"):
            EventTypeRegistry(versions)

    def test_duplicate_version_is_rejected(self):
        versions = [{"version": 1, "added": ["a"]}, {"version": 1, "added": ["b"]}]
        with pytest.raises(ValueError, match="Duplicate"):
            EventTypeRegistry(versions)

    def test_versions_accumulate(self):
        registry = EventTypeRegistry([{"version": 2, "added": ["b"]}, {"version": 1, "added": ["a"]}])
        assert registry.version == 2
        assert len(registry) == 2

    def test_load_from_path(self, tmp_path):
        path = tmp_path / "types.json"
        path.write_text(json.dumps({"versions": [{"version": 1, "added": ["x"]}]}))
        registry = EventTypeRegistry.load(path)
        assert "x" in registry
        assert "game_ended" not in registry
