"""Configuration loader for cryptimgctl.

This module centralises the logic for reading configuration values from
multiple sources, in increasing order of precedence:

1. Built-in defaults.
2. ``/etc/cryptimgctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``CRYPTIMGCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CRYPTIMGCTL_LOCK_TIMEOUT=5
    export CRYPTIMGCTL_BINARIES__QEMU_NBD=/usr/local/bin/qemu-nbd

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load cryptimgctl configuration. Install with "
        "`pip install cryptimgctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CRYPTIMGCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
ELEVATED_ENV_VAR = f"{ENV_PREFIX}ELEVATED"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    ELEVATED_ENV_VAR,
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BinariesConfig:
    """External tools invoked by the lifecycle and setup flows."""

    qemu_nbd: str = "qemu-nbd"
    nbd_client: str = "nbd-client"
    cryptsetup: str = "cryptsetup"
    fsck: str = "e2fsck"
    mkfs: str = "mkfs.ext4"
    mount: str = "mount"
    umount: str = "umount"
    fstrim: str = "fstrim"
    modprobe: str = "modprobe"
    sudo: str = "sudo"

    def required(self) -> tuple[str, ...]:
        """Return every binary the tools depend on, in a stable order."""
        return (
            self.qemu_nbd,
            self.nbd_client,
            self.cryptsetup,
            self.fsck,
            self.mkfs,
            self.mount,
            self.umount,
            self.fstrim,
            self.modprobe,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "qemu_nbd": self.qemu_nbd,
            "nbd_client": self.nbd_client,
            "cryptsetup": self.cryptsetup,
            "fsck": self.fsck,
            "mkfs": self.mkfs,
            "mount": self.mount,
            "umount": self.umount,
            "fstrim": self.fstrim,
            "modprobe": self.modprobe,
            "sudo": self.sudo,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for cryptimgctl."""

    config_file: Path
    runtime_dir: Path
    logs_dir: Path
    templates_dir: Path
    lock_timeout: float
    min_passphrase_length: int
    kernel_module: str
    luks_type: str
    lifecycle_command: str
    binaries: BinariesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "runtime_dir": str(self.runtime_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "min_passphrase_length": self.min_passphrase_length,
            "kernel_module": self.kernel_module,
            "luks_type": self.luks_type,
            "lifecycle_command": self.lifecycle_command,
            "binaries": self.binaries.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/cryptimgctl/config.yml",
    "runtime_dir": "/run/cryptimgctl",
    "logs_dir": "/var/log/cryptimgctl",
    "templates_dir": "/etc/cryptimgctl/templates",
    "lock_timeout": 30.0,
    "min_passphrase_length": 32,
    "kernel_module": "nbd",
    "luks_type": "luks2",
    "lifecycle_command": "cryptimgctl",
    "binaries": BinariesConfig().to_dict(),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_BINARY_KEYS = set(BinariesConfig().to_dict().keys())
ALLOWED_LUKS_TYPES = {"luks1", "luks2"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    luks_type = raw.get("luks_type")
    if luks_type is not None and str(luks_type) not in ALLOWED_LUKS_TYPES:
        allowed = ", ".join(sorted(ALLOWED_LUKS_TYPES))
        raise ConfigError(f"Unsupported LUKS type '{luks_type}'. Allowed: {allowed}.")

    binaries = raw.get("binaries")
    if binaries is not None:
        binaries_map = _as_dict(binaries, "binaries")
        unknown = set(binaries_map.keys()) - ALLOWED_BINARY_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown binaries configuration keys: {joined}.")
        for key, value in binaries_map.items():
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"binaries.{key} must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    min_length = _expect_int(
        raw.get("min_passphrase_length"), "min_passphrase_length", default=32
    )
    if min_length < 1:
        raise ConfigError("min_passphrase_length must be at least 1.")

    kernel_module = str(raw.get("kernel_module", "nbd")).strip()
    if not kernel_module:
        raise ConfigError("kernel_module must be a non-empty string.")

    binaries_mapping = _as_dict(raw.get("binaries"), "binaries")
    defaults = BinariesConfig()
    binaries = BinariesConfig(
        **{
            key: str(binaries_mapping.get(key, getattr(defaults, key))).strip()
            for key in ALLOWED_BINARY_KEYS
        }
    )

    return AppConfig(
        config_file=config_file,
        runtime_dir=runtime_dir,
        logs_dir=logs_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        min_passphrase_length=min_length,
        kernel_module=kernel_module,
        luks_type=str(raw.get("luks_type", "luks2")),
        lifecycle_command=str(raw.get("lifecycle_command", "cryptimgctl")),
        binaries=binaries,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BinariesConfig",
    "CONFIG_ENV_VAR",
    "ConfigError",
    "ELEVATED_ENV_VAR",
    "load_config",
]
