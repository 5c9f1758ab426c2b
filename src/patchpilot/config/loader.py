"""
patchpilot — runtime config loader.

File: src/patchpilot/config/loader.py

Purpose
- Assemble the effective runtime config from four layers, lowest first:
  built-in defaults, ``patchpilot.toml``, ``PATCHPILOT_*`` environment
  variables, and dotted CLI overrides.

Notes
- Every layer is validated as soon as it is merged so an error names the
  layer that introduced it.
- Relative entries under ``[paths]`` resolve against the directory that holds
  the config file, not the process working directory.
- Environment variables are only honoured for keys that exist in the merged
  file config, so a typo in a variable name is ignored rather than creating a
  new key.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from patchpilot.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "patchpilot.toml"
ENV_PREFIX: Final[str] = "PATCHPILOT_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

KeyPath = tuple[str, ...]
_Coercer = Callable[[str, str], object]


class ConfigLoadError(ValueError):
    """Raised when a config layer cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    ``config_path`` defaults to ``./patchpilot.toml``; a missing default file
    is tolerated, a missing explicit file is a :class:`ConfigLoadError`.
    """

    source = _config_source(config_path)
    file_layer = _read_toml(source, required=config_path is not None)
    config = assert_valid_config(merge_config(default_config(), file_layer))

    env_layer = _env_layer(config, os.environ if environ is None else environ)
    config = merge_config(config, env_layer)
    config = merge_config(config, _cli_layer(cli_overrides or {}))
    assert_valid_config(config)

    return assert_valid_config(normalize_paths(config, base_dir=source.parent))


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load ``path`` on top of defaults, honouring the process environment."""

    return load_config(path)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Return a copy of ``config`` with every ``[paths]``-style entry made absolute."""

    result = merge_config({}, config)
    for key_path in PATH_FIELDS:
        raw = _lookup(result, key_path)
        if isinstance(raw, str) and raw:
            _assign(result, key_path, _absolute_posix(raw, base_dir))
    return result


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    return redact_config(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Compact, key-sorted JSON of the redacted config; identical input gives identical text."""

    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


# -- layers ------------------------------------------------------------------


def _config_source(config_path: str | Path | None) -> Path:
    if config_path is None:
        return Path.cwd().joinpath(DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(source: Path, *, required: bool) -> dict[str, Any]:
    if not source.is_file():
        if required:
            raise ConfigLoadError(f"config file not found: {source}")
        return {}
    try:
        document = tomllib.loads(source.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {source}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {source}: {exc}") from exc
    return document


def _env_layer(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key_path, current in _leaves(config):
        variable = ENV_PREFIX + "_".join(part.upper() for part in key_path)
        raw = environ.get(variable)
        if raw is None:
            continue
        coercer = _coercer_for(current)
        if coercer is None:
            continue
        label = f"{variable} -> {'.'.join(key_path)}"
        _assign(layer, key_path, coercer(raw.strip(), label))
    return layer


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted in sorted(overrides):
        value = overrides[dotted]
        key_path = tuple(part for part in dotted.split(".") if part)
        if not key_path:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        if isinstance(value, Mapping):
            value = merge_config({}, value)
        _assign(layer, key_path, value)
    return layer


# -- environment coercion ----------------------------------------------------


def _as_text(raw: str, label: str) -> object:
    return raw


def _as_list(raw: str, label: str) -> object:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _as_int(raw: str, label: str) -> object:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigLoadError(f"{label} must be an integer") from exc


def _as_float(raw: str, label: str) -> object:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigLoadError(f"{label} must be a number") from exc


def _as_bool(raw: str, label: str) -> object:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ConfigLoadError(f"{label} must be a boolean (true/false/1/0/yes/no/on/off)")


def _coercer_for(current: object) -> _Coercer | None:
    # bool before int: True is an int
    if isinstance(current, bool):
        return _as_bool
    if isinstance(current, int):
        return _as_int
    if isinstance(current, float):
        return _as_float
    if isinstance(current, str):
        return _as_text
    if isinstance(current, (list, tuple)):
        return _as_list
    return None


# -- nested mapping helpers --------------------------------------------------


def _leaves(node: Mapping[str, object], prefix: KeyPath = ()) -> Iterator[tuple[KeyPath, object]]:
    for key in sorted(node):
        value = node[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _lookup(node: Mapping[str, object], key_path: KeyPath) -> object | None:
    current: object = node
    for key in key_path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _assign(node: dict[str, Any], key_path: KeyPath, value: object) -> None:
    *parents, leaf = key_path
    for key in parents:
        child = node.get(key)
        if not isinstance(child, dict):
            child = node[key] = {}
        node = child
    node[leaf] = value


def _absolute_posix(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "effective_config",
    "load_config",
    "load_config_file",
    "normalize_paths",
]
