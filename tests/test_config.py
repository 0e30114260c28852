"""
Tests for configuration loading and option resolution.
"""

from pathlib import Path

import pytest

from runchange.config import (
    DEFAULT_TRIGGERS,
    ConfigError,
    Options,
    load_config,
    parse_trigger_kinds,
    resolve_options,
    resolve_targets,
)
from runchange.events import EventType


def write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "run-change.yaml"
    path.write_text(text)
    return path


class TestLoadConfig:
    """YAML configuration files."""

    def test_full_file(self, tmp_path):
        path = write_config(
            tmp_path,
            """
paths: [src, /srv/data]
command: make test
recursive: true
verbose: 2
run_once: true
run_at_start: true
quiet: true
command_timeout: 30
shutdown_grace_period: 1.5
trigger_on: [modified, chmod]
exclude_patterns: ['\\.log$']
""",
        )

        config = load_config(path)

        assert config.paths == [(tmp_path / "src").resolve(), Path("/srv/data")]
        assert config.options == {
            "command": "make test",
            "recursive": True,
            "verbosity": 2,
            "run_once": True,
            "run_at_start": True,
            "quiet": True,
            "command_timeout": 30.0,
            "shutdown_grace_period": 1.5,
            "trigger_on": frozenset({EventType.MODIFIED, EventType.CHMOD}),
            "exclude_patterns": (r"\.log$",),
        }

    def test_empty_file(self, tmp_path):
        config = load_config(write_config(tmp_path, ""))

        assert config.paths == []
        assert config.options == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.yaml")

    @pytest.mark.parametrize(
        "text, message",
        [
            ("- a\n- b\n", "mapping"),
            ("colour: blue\n", "Unknown configuration keys: colour"),
            ("recursive: yes please\n", "recursive must be a boolean"),
            ("verbose: -1\n", "verbose"),
            ("command_timeout: 0\n", "command_timeout must be positive"),
            ("shutdown_grace_period: soon\n", "shutdown_grace_period must be numeric"),
            ("trigger_on: [startup]\n", "trigger_on"),
            ("paths: [1, 2]\n", "paths must contain only strings"),
            ("command: [make]\n", "command must be a string"),
        ],
    )
    def test_invalid_values(self, tmp_path, text, message):
        with pytest.raises(ConfigError, match=message):
            load_config(write_config(tmp_path, text))


class TestResolveOptions:
    """Precedence of command line over file over defaults."""

    def test_defaults(self):
        options = resolve_options({"command": "make"})

        assert options == Options(command="make")
        assert options.trigger_on == DEFAULT_TRIGGERS
        assert EventType.CHMOD not in options.trigger_on
        assert options.command_timeout is None
        assert options.shutdown_grace_period == 0.0

    def test_cli_overrides_file(self, tmp_path):
        config = load_config(write_config(tmp_path, "command: make\nquiet: true\nverbose: 1\n"))

        options = resolve_options({"command": None, "quiet": None, "verbosity": 3}, config)

        assert options.command == "make"
        assert options.quiet is True
        assert options.verbosity == 3

    def test_trigger_kinds_from_cli_string(self):
        options = resolve_options({"command": "make", "trigger_on": "modified, deleted"})

        assert options.trigger_on == frozenset({EventType.MODIFIED, EventType.DELETED})

    def test_invalid_exclude_pattern(self, tmp_path):
        config = load_config(write_config(tmp_path, "exclude_patterns: ['(unclosed']\n"))

        with pytest.raises(ConfigError, match="Invalid exclude pattern"):
            resolve_options({"command": "make"}, config)

    def test_negative_grace_period(self):
        with pytest.raises(ConfigError):
            resolve_options({"command": "make", "shutdown_grace_period": -1})

    def test_unknown_trigger_kind(self):
        with pytest.raises(ConfigError):
            parse_trigger_kinds(["renamed"], "trigger_on")


class TestResolveTargets:
    """Watch path normalization."""

    def test_targets(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "src").mkdir()
        (tmp_path / "setup.cfg").write_text("")

        targets = resolve_targets([Path("src"), Path("./setup.cfg"), Path("src/../src")], recursive=True)

        assert [target.path.name for target in targets] == ["src", "setup.cfg"]
        assert targets[0].is_directory
        assert not targets[1].is_directory
        assert all(target.recursive for target in targets)
        assert all(target.path.is_absolute() for target in targets)

    def test_missing_path_is_treated_as_file(self, tmp_path):
        (target,) = resolve_targets([tmp_path / "later.txt"], recursive=False)

        assert not target.is_directory
