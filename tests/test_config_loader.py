"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from manateectl.config import AppConfig, ConfigError, default_config, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(tmp_path / "absent.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.logs_dir == Path("/var/log/manateectl")
    assert config.templates_dir == Path("./etc")
    assert config.commands.zfs_bin == "zfs"
    assert config.processes.launcher == ("/usr/bin/ctrun", "-l", "child", "-o", "noorphan")
    assert config.processes.interpreter == "node"
    assert config.processes.interpreter_args == ("--abort-on-uncaught-exception",)
    assert config.processes.verbosity == "-vvv"
    assert config.health.poll_interval_ms == 2000
    assert config.health.timeout_ms == 30000
    assert config.health.connect_timeout == 5.0


def test_default_config_ignores_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """default_config never consults the environment."""
    monkeypatch.setenv("MANATEECTL_HEALTH__TIMEOUT_MS", "5")

    assert default_config().health.timeout_ms == 30000


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "manateectl.yml"
    cfg.write_text(
        "logs_dir: {logs}\n"
        "commands:\n"
        "  zfs_bin: /usr/sbin/zfs\n"
        "processes:\n"
        "  launcher: []\n"
        "  sitter: /opt/manatee/sitter.js\n"
        "health:\n"
        "  timeout_ms: 60000\n".format(logs=tmp_path / "logs")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.logs_dir == tmp_path / "logs"
    assert config.commands.zfs_bin == "/usr/sbin/zfs"
    assert config.commands.chown_bin == "chown"
    assert config.processes.launcher == ()
    assert config.processes.sitter == Path("/opt/manatee/sitter.js")
    assert config.processes.snapshotter == Path("../snapshotter.js")
    assert config.health.timeout_ms == 60000
    assert config.health.poll_interval_ms == 2000


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "manateectl.yml"
    cfg.write_text("health:\n  timeout_ms: 60000\n")
    env = {
        "MANATEECTL_HEALTH__TIMEOUT_MS": "90000",
        "MANATEECTL_HEALTH__CONNECT_TIMEOUT": "2.5",
        "MANATEECTL_TEMPLATES_DIR": str(tmp_path / "templates"),
        "MANATEECTL_PROCESSES__LAUNCHER": "ctrun -l child",
        "UNRELATED": "ignored",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.health.timeout_ms == 90000
    assert config.health.connect_timeout == 2.5
    assert config.templates_dir == tmp_path / "templates"
    assert config.processes.launcher == ("ctrun", "-l", "child")


def test_overrides_beat_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    env = {"MANATEECTL_HEALTH__POLL_INTERVAL_MS": "500"}

    config = load_config(
        tmp_path / "absent.yml", env=env, overrides={"health": {"poll_interval_ms": 25}}
    )

    assert config.health.poll_interval_ms == 25


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("commands:\n  chown_bin: /usr/bin/chown\n")

    env = {"MANATEECTL_CONFIG_FILE": str(cfg)}
    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.commands.chown_bin == "/usr/bin/chown"


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """to_dict renders paths as strings and tuples as lists."""
    data = load_config(tmp_path / "absent.yml", env={}).to_dict()

    assert data["logs_dir"] == "/var/log/manateectl"
    assert data["processes"]["launcher"][0] == "/usr/bin/ctrun"  # type: ignore[index]
    assert data["health"]["timeout_ms"] == 30000  # type: ignore[index]


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A non-mapping document raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    """Unexpected keys inside a section trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("health:\n  retries: 3\n")

    with pytest.raises(ConfigError, match="Unknown health configuration keys"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    "value",
    ["0", "-5", "soon", "true", "2.5"],
)
def test_invalid_health_timeout_raises(tmp_path: Path, value: str) -> None:
    """Health deadlines must be positive integers."""
    with pytest.raises(ConfigError):
        load_config(
            tmp_path / "absent.yml", env={"MANATEECTL_HEALTH__TIMEOUT_MS": value}
        )


def test_launcher_must_be_a_list(tmp_path: Path) -> None:
    """A mapping where a command list is expected is rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("processes:\n  launcher:\n    bin: ctrun\n")

    with pytest.raises(ConfigError, match="processes.launcher"):
        load_config(config_file=cfg, env={})
