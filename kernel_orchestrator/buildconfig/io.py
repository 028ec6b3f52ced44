"""Build config loading.

This module assembles the flat configuration namespace from the base
build.config, its fragments and caller overrides, and validates it into a
BuildConfig.

Build config files are shell-style assignment files::

    . ${ROOT_DIR}/common/build.config.common
    export ARCH=arm64
    MAKE_GOALS="${MAKE_GOALS} modules"

Fragments ending in .yaml, .yml or .json are flat mappings instead.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from kernel_orchestrator.buildconfig.schema import BuildConfig
from kernel_orchestrator.errors import (
    INVALID_VALUE,
    UNKNOWN_KEYS,
    ConfigurationError,
    PreconditionError,
)

logger = logging.getLogger(__name__)

CHILD_PREFIX = "GKI_"

_ASSIGNMENT = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
_INCLUDE = re.compile(r"^(?:\.|source)\s+(.+)$")
_VARIABLE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML fragment and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON fragment and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def expand_variables(text: str, env: Mapping[str, str]) -> str:
    """Expand ``$VAR`` and ``${VAR}`` references; unknown names expand empty."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        return env.get(name, "")

    return _VARIABLE.sub(_replace, text)


def _unquote(raw: str, env: Mapping[str, str]) -> str:
    """Unquote a shell value, expanding variables outside single quotes.

    Words are split the way the shell splits them and joined with single
    spaces. Unquoted expansions are word-split; double-quoted ones are not.
    An unquoted ``#`` at the start of a word begins a comment.

    Raises:
        ConfigurationError: If a quote is not terminated.
    """
    words: list[str] = []
    current: list[str] = []
    in_word = False

    def flush() -> None:
        nonlocal in_word
        if in_word:
            words.append("".join(current))
            current.clear()
            in_word = False

    def unterminated() -> ConfigurationError:
        return ConfigurationError(
            f"Cannot parse value {raw.strip()!r}: no closing quotation", code=INVALID_VALUE
        )

    i = 0
    while i < len(raw):
        c = raw[i]
        if c == "'":
            end = raw.find("'", i + 1)
            if end < 0:
                raise unterminated()
            current.append(raw[i + 1 : end])
            in_word = True
            i = end + 1
        elif c == '"':
            i += 1
            chunk: list[str] = []
            while i < len(raw) and raw[i] != '"':
                if raw[i] == "\\" and i + 1 < len(raw) and raw[i + 1] in '"\\$`':
                    chunk.append(raw[i + 1])
                    i += 2
                    continue
                variable = _VARIABLE.match(raw, i)
                if variable:
                    chunk.append(env.get(variable.group(1) or variable.group(2), ""))
                    i = variable.end()
                    continue
                chunk.append(raw[i])
                i += 1
            if i >= len(raw):
                raise unterminated()
            current.append("".join(chunk))
            in_word = True
            i += 1
        elif c == "\\":
            if i + 1 < len(raw):
                current.append(raw[i + 1])
                in_word = True
            i += 2
        elif c.isspace():
            flush()
            i += 1
        elif c == "#" and not in_word:
            break
        else:
            variable = _VARIABLE.match(raw, i)
            if variable:
                value = env.get(variable.group(1) or variable.group(2), "")
                if value[:1].isspace():
                    flush()
                for n, part in enumerate(value.split()):
                    if n:
                        flush()
                    current.append(part)
                    in_word = True
                if value[-1:].isspace():
                    flush()
                i = variable.end()
            else:
                current.append(c)
                in_word = True
                i += 1
    flush()
    return " ".join(words)


def _to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else ""
    if isinstance(value, (list, tuple)):
        return " ".join(str(v) for v in value)
    return str(value)


def parse_build_config_file(
    path: Path,
    root_dir: Path,
    env: dict[str, str],
    _seen: frozenset[Path] = frozenset(),
) -> dict[str, str]:
    """Parse a shell-style build config file.

    Assignments are applied to ``env`` in order so later lines can refer to
    earlier values. Includes (``. file`` or ``source file``) are resolved
    against the repository root.

    Args:
        path: Config file path.
        root_dir: Repository root used for includes.
        env: Mapping updated in place with the assignments.

    Returns:
        The assignments made by this file and its includes.

    Raises:
        PreconditionError: If the file or an include does not exist.
        ConfigurationError: If a line cannot be parsed.
    """
    resolved = path.resolve()
    if resolved in _seen:
        raise ConfigurationError(f"Recursive include of {path}", code=INVALID_VALUE)
    if not path.is_file():
        raise PreconditionError(f"Build config not found: {path}", path=path)

    if path.suffix in (".yaml", ".yml", ".json"):
        data = load_json(path) if path.suffix == ".json" else load_yaml(path)
        assigned = {str(k): _to_str(v) for k, v in data.items()}
        env.update(assigned)
        return assigned

    assigned: dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    for lineno, line in enumerate(lines, start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        include = _INCLUDE.match(stripped)
        if include:
            target = _unquote(include.group(1), env)
            include_path = Path(target)
            if not include_path.is_absolute():
                include_path = root_dir / include_path
            assigned.update(
                parse_build_config_file(
                    include_path, root_dir, env, _seen | {resolved}
                )
            )
            continue

        assignment = _ASSIGNMENT.match(stripped)
        if not assignment:
            logger.debug("%s:%d: ignoring non-assignment line", path, lineno)
            continue
        key, raw = assignment.groups()
        value = _unquote(raw, env)
        env[key] = value
        assigned[key] = value

    return assigned


def is_recognized_key(key: str, options: frozenset[str]) -> bool:
    """Return True for build options and their ``GKI_`` child forms."""
    if key in options:
        return True
    return key.startswith(CHILD_PREFIX) and key[len(CHILD_PREFIX) :] in options


def assemble_environment(
    caller_env: Mapping[str, str],
    root_dir: Path,
    strict_keys: bool = False,
) -> dict[str, str]:
    """Assemble the raw configuration namespace.

    Layers, lowest precedence first: BUILD_CONFIG, each
    BUILD_CONFIG_FRAGMENTS file, then caller overrides. Empty caller values
    do not override file values.

    Args:
        caller_env: Process environment plus explicit overrides.
        root_dir: Repository root.
        strict_keys: Reject unknown keys found in config files.

    Returns:
        Flat ``KEY -> value`` mapping.

    Raises:
        ConfigurationError: On unknown keys in strict mode.
        PreconditionError: If a config file is missing.
    """
    options = frozenset(BuildConfig.option_names())
    overrides = {k: v for k, v in caller_env.items() if v != ""}

    env: dict[str, str] = {"ROOT_DIR": str(root_dir)}
    env.update(overrides)

    build_config = overrides.get("BUILD_CONFIG", "build.config")
    file_keys: dict[str, str] = {}
    file_keys.update(parse_build_config_file(root_dir / build_config, root_dir, env))

    fragments = overrides.get("BUILD_CONFIG_FRAGMENTS", env.get("BUILD_CONFIG_FRAGMENTS", ""))
    for fragment in fragments.split():
        logger.debug("Applying build config fragment %s", fragment)
        file_keys.update(parse_build_config_file(root_dir / fragment, root_dir, env))

    unknown = sorted(k for k in file_keys if not is_recognized_key(k, options))
    if unknown:
        if strict_keys:
            raise ConfigurationError(
                f"Unrecognized build config keys: {', '.join(unknown)}",
                keys=unknown,
                code=UNKNOWN_KEYS,
            )
        logger.debug("Ignoring unrecognized build config keys: %s", ", ".join(unknown))

    # Caller overrides win over anything the files assigned
    env.update(overrides)
    env.setdefault("BUILD_CONFIG", build_config)
    return env


def load_build_config(raw_env: Mapping[str, str]) -> BuildConfig:
    """Validate a raw configuration namespace into a BuildConfig.

    Unknown keys are ignored. Empty values are treated as unset.

    Args:
        raw_env: Flat ``KEY -> value`` mapping.

    Returns:
        Validated, frozen BuildConfig.

    Raises:
        ConfigurationError: On conflicting options or invalid values.
    """
    options = frozenset(BuildConfig.option_names())
    values = {k: str(v) for k, v in raw_env.items() if k in options}
    child_values = {
        k: str(v)
        for k, v in raw_env.items()
        if k.startswith(CHILD_PREFIX) and k[len(CHILD_PREFIX) :] in options
    }

    data: dict[str, Any] = {k: v for k, v in values.items() if v != ""}
    data["__values__"] = values
    data["__child_values__"] = child_values

    try:
        return BuildConfig.model_validate(data)
    except ValidationError as e:
        keys = [str(err["loc"][0]) for err in e.errors() if err["loc"]]
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(
            f"Invalid build configuration: {details}",
            keys=keys,
            code=INVALID_VALUE,
        ) from e


__all__ = [
    "CHILD_PREFIX",
    "assemble_environment",
    "expand_variables",
    "is_recognized_key",
    "load_build_config",
    "load_json",
    "load_yaml",
    "parse_build_config_file",
]
