"""
Tests for Plugin Manifests.

This test suite covers:
1. Manifest parsing (valid/minimal cases)
2. Structural validation with the offending field reported
3. File-level errors (missing, undecodable)
4. Command descriptor normalization
"""

import json
import tempfile
from pathlib import Path

import pytest

from chatplug.plugin.errors import (
    ManifestError,
    ManifestParseError,
    ManifestValidationError,
    NotFoundError,
    PluginError,
)
from chatplug.plugin.manifest import (
    DEFAULT_MAIN,
    CommandDescriptor,
    manifest_from_data,
    parse_manifest,
    validate_manifest_structure,
)


def write_manifest(directory: Path, data) -> Path:
    manifest_path = directory / "plugin.json"
    with open(manifest_path, "w") as f:
        json.dump(data, f)
    return manifest_path


class TestManifestParsing:
    """Test manifest parsing from disk."""

    def test_parse_valid_manifest(self):
        """Should parse a full manifest successfully."""
        with tempfile.TemporaryDirectory() as tmpdir:
            manifest_path = write_manifest(
                Path(tmpdir),
                {
                    "name": "weather",
                    "version": "2.1.0",
                    "main": "weather.py",
                    "description": "Weather lookups",
                    "author": "Test Author",
                    "dependencies": ["http"],
                    "commands": ["forecast", {"name": "wind", "aliases": ["w"]}],
                },
            )

            manifest = parse_manifest(manifest_path)

            assert manifest.name == "weather"
            assert manifest.version == "2.1.0"
            assert manifest.main == "weather.py"
            assert manifest.description == "Weather lookups"
            assert manifest.author == "Test Author"
            assert manifest.dependencies == ("http",)
            assert [c.name for c in manifest.commands] == ["forecast", "wind"]
            assert manifest.commands[1].aliases == ("w",)

    def test_parse_minimal_manifest(self):
        """Should parse manifest with only required fields."""
        with tempfile.TemporaryDirectory() as tmpdir:
            manifest_path = write_manifest(Path(tmpdir), {"name": "ping", "version": "1.0.0"})

            manifest = parse_manifest(manifest_path)

            assert manifest.name == "ping"
            assert manifest.main == DEFAULT_MAIN
            assert manifest.description == ""
            assert manifest.dependencies == ()
            assert manifest.commands == ()

    def test_raw_data_kept_but_not_compared(self):
        """Unknown keys survive in raw_data without affecting equality."""
        first = manifest_from_data({"name": "a", "version": "1", "homepage": "x"})
        second = manifest_from_data({"name": "a", "version": "1"})

        assert first.raw_data["homepage"] == "x"
        assert first == second

    def test_parse_missing_file(self):
        """Missing plugin.json should raise NotFoundError."""
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(NotFoundError, match="not found"):
                parse_manifest(Path(tmpdir) / "plugin.json")

    def test_parse_invalid_json(self):
        """Undecodable plugin.json should raise ManifestParseError."""
        with tempfile.TemporaryDirectory() as tmpdir:
            manifest_path = Path(tmpdir) / "plugin.json"
            manifest_path.write_text("{ not json")

            with pytest.raises(ManifestParseError, match="Failed to parse"):
                parse_manifest(manifest_path)

    def test_error_hierarchy(self):
        """Manifest errors should be catchable as PluginError."""
        assert issubclass(ManifestParseError, ManifestError)
        assert issubclass(ManifestValidationError, ManifestError)
        assert issubclass(ManifestError, PluginError)
        assert issubclass(NotFoundError, PluginError)


class TestManifestValidation:
    """Test structural validation."""

    @pytest.mark.parametrize(
        "data, field",
        [
            ([], "manifest"),
            ({"version": "1.0.0"}, "name"),
            ({"name": "", "version": "1.0.0"}, "name"),
            ({"name": "x"}, "version"),
            ({"name": "x", "version": 1}, "version"),
            ({"name": "x", "version": "1", "description": 3}, "description"),
            ({"name": "x", "version": "1", "author": ["me"]}, "author"),
            ({"name": "x", "version": "1", "main": "index.js"}, "main"),
            ({"name": "x", "version": "1", "main": "../other.py"}, "main"),
            ({"name": "x", "version": "1", "main": "/abs/bot.py"}, "main"),
            ({"name": "x", "version": "1", "main": "sub/bot.py"}, "main"),
            ({"name": "x", "version": "1", "main": "sub\\bot.py"}, "main"),
            ({"name": "x", "version": "1", "dependencies": {"a": "1"}}, "dependencies"),
            ({"name": "x", "version": "1", "dependencies": [""]}, "dependencies"),
            ({"name": "x", "version": "1", "commands": "ping"}, "commands"),
            ({"name": "x", "version": "1", "commands": [42]}, "commands"),
            (
                {"name": "x", "version": "1", "commands": [{"name": "a", "aliases": "b"}]},
                "commands",
            ),
        ],
    )
    def test_invalid_field_reported(self, data, field):
        """Each structural violation names the offending field."""
        with pytest.raises(ManifestValidationError) as exc_info:
            validate_manifest_structure(data)

        assert exc_info.value.field == field

    def test_valid_structure_passes(self):
        """A well-formed manifest raises nothing."""
        validate_manifest_structure(
            {
                "name": "x",
                "version": "1",
                "commands": ["a", {"name": "b", "aliases": ["c"]}],
                "dependencies": ["y"],
            }
        )


class TestCommandDescriptors:
    """Test command descriptor normalization."""

    def test_string_command(self):
        manifest = manifest_from_data({"name": "x", "version": "1", "commands": ["ping"]})
        assert manifest.commands == (CommandDescriptor(name="ping"),)

    def test_object_command(self):
        manifest = manifest_from_data(
            {
                "name": "x",
                "version": "1",
                "commands": [
                    {
                        "name": "ping",
                        "description": "Reply with pong",
                        "usage": "!ping",
                        "aliases": ["p", "pp"],
                    }
                ],
            }
        )

        command = manifest.commands[0]
        assert command.description == "Reply with pong"
        assert command.usage == "!ping"
        assert command.aliases == ("p", "pp")
