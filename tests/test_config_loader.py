"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from cryptimgctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.runtime_dir == Path("/run/cryptimgctl")
    assert config.logs_dir == Path("/var/log/cryptimgctl")
    assert config.templates_dir == Path("/etc/cryptimgctl/templates")
    assert config.lock_timeout == 30.0
    assert config.min_passphrase_length == 32
    assert config.kernel_module == "nbd"
    assert config.luks_type == "luks2"
    assert config.binaries.qemu_nbd == "qemu-nbd"
    assert config.binaries.fsck == "e2fsck"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "cryptimgctl.yml"
    cfg.write_text(
        f"runtime_dir: {tmp_path / 'run'}\n"
        "luks_type: luks1\n"
        "min_passphrase_length: 48\n"
        "binaries:\n"
        "  cryptsetup: /usr/local/sbin/cryptsetup\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.runtime_dir == tmp_path / "run"
    assert config.luks_type == "luks1"
    assert config.min_passphrase_length == 48
    assert config.binaries.cryptsetup == "/usr/local/sbin/cryptsetup"
    assert config.binaries.qemu_nbd == "qemu-nbd"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "cryptimgctl.yml"
    cfg.write_text("lock_timeout: 10\n")
    env = {
        "CRYPTIMGCTL_LOCK_TIMEOUT": "45",
        "CRYPTIMGCTL_LOGS_DIR": str(tmp_path / "logs"),
        "CRYPTIMGCTL_BINARIES__QEMU_NBD": "/opt/qemu/bin/qemu-nbd",
        "CRYPTIMGCTL_ELEVATED": "1",
        "UNRELATED": "ignored",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.lock_timeout == 45.0
    assert config.logs_dir == tmp_path / "logs"
    assert config.binaries.qemu_nbd == "/opt/qemu/bin/qemu-nbd"


def test_overrides_beat_environment(tmp_path: Path) -> None:
    """Programmatic overrides have the final say."""
    env = {"CRYPTIMGCTL_LOCK_TIMEOUT": "45"}

    config = load_config(
        config_file=tmp_path / "missing.yml",
        env=env,
        overrides={"lock_timeout": 2.5},
    )

    assert config.lock_timeout == 2.5


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("kernel_module: nbd_custom\n")

    config = load_config(env={"CRYPTIMGCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.kernel_module == "nbd_custom"


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a ConfigError."""
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


def test_unknown_binary_key_raises(tmp_path: Path) -> None:
    """Only known tools can be configured."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("binaries:\n  losetup: /sbin/losetup\n")

    with pytest.raises(ConfigError, match="Unknown binaries configuration keys"):
        load_config(config_file=cfg, env={})


def test_invalid_luks_type_raises(tmp_path: Path) -> None:
    """Unsupported LUKS versions raise ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("luks_type: plain\n")

    with pytest.raises(ConfigError, match="Unsupported LUKS type"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize("value", ["0", "-1", "soon"])
def test_invalid_lock_timeout_raises(tmp_path: Path, value: str) -> None:
    """Lock timeouts must be positive numbers."""
    with pytest.raises(ConfigError):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"CRYPTIMGCTL_LOCK_TIMEOUT": value},
        )


def test_min_passphrase_length_must_be_positive(tmp_path: Path) -> None:
    """A zero minimum would disable the strength check entirely."""
    with pytest.raises(ConfigError, match="min_passphrase_length"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"CRYPTIMGCTL_MIN_PASSPHRASE_LENGTH": "0"},
        )


def test_empty_binary_path_raises(tmp_path: Path) -> None:
    """Binary paths cannot be blank."""
    with pytest.raises(ConfigError, match="binaries.mount"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"CRYPTIMGCTL_BINARIES__MOUNT": "''"},
        )


def test_required_binaries_exclude_sudo() -> None:
    """sudo is only needed for elevation, not by the lifecycle itself."""
    config = load_config(config_file="/nonexistent/cryptimgctl.yml", env={})

    assert "sudo" not in config.binaries.required()
    assert len(config.binaries.required()) == 9
    assert config.to_dict()["binaries"]["sudo"] == "sudo"  # type: ignore[index]
