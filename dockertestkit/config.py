"""Settings read from ``~/.testcontainers.properties`` and the environment."""

from __future__ import annotations

import dataclasses
import os
import re
from dataclasses import dataclass
from pathlib import Path

PROPERTIES_FILE_NAME = ".testcontainers.properties"
RYUK_PRIVILEGED_ENV = "TESTCONTAINERS_RYUK_CONTAINER_PRIVILEGED"

_KEY_VALUE = re.compile(r"((?:\\.|[^\s=:\\])*)[ \t\f]*[=:]?[ \t\f]*(.*)", re.DOTALL)
_ESCAPE = re.compile(r"\\(u[0-9a-fA-F]{4}|.)", re.DOTALL)
_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}
_INTEGER = re.compile(r"[+-]?[0-9]+")
_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


@dataclass(frozen=True)
class ContainersConfig:
    """Connection and reaper settings."""

    host: str = ""
    tls_verify: int = 0
    cert_path: str = ""
    ryuk_privileged: bool = False


def _unescape(text: str) -> str:
    def replace(match: re.Match[str]) -> str:
        code = match.group(1)
        if len(code) == 5 and code[0] == "u":
            return chr(int(code[1:], 16))
        return _ESCAPES.get(code, code)

    return _ESCAPE.sub(replace, text)


def _ends_with_continuation(line: str) -> bool:
    trailing = len(line) - len(line.rstrip("\\"))
    return trailing % 2 == 1


def _logical_lines(text: str):
    physical = iter(text.splitlines())
    for raw in physical:
        line = raw.lstrip(" \t\f")
        if not line or line[0] in "#!":
            continue
        while _ends_with_continuation(line):
            line = line[:-1]
            following = next(physical, None)
            if following is None:
                break
            line += following.lstrip(" \t\f")
        yield line


def parse_properties(text: str) -> dict[str, str]:
    """Parse properties-file text into a mapping; later keys override earlier ones."""
    properties: dict[str, str] = {}
    for line in _logical_lines(text):
        match = _KEY_VALUE.match(line)
        if match is None:
            continue
        key, value = match.groups()
        properties[_unescape(key)] = _unescape(value.rstrip(" \t\f"))
    return properties


def _parse_int(name: str, value: str) -> int:
    if not _INTEGER.fullmatch(value):
        raise ValueError(f"invalid integer value {value!r} for {name}")
    return int(value)


def _parse_bool(name: str, value: str) -> bool:
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean value {value!r} for {name}")


def _decode(properties: dict[str, str]) -> ContainersConfig:
    return ContainersConfig(
        host=properties.get("docker.host", ""),
        tls_verify=_parse_int("docker.tls.verify", properties.get("docker.tls.verify", "0")),
        cert_path=properties.get("docker.cert.path", ""),
        ryuk_privileged=_parse_bool(
            "ryuk.container.privileged",
            properties.get("ryuk.container.privileged", "false"),
        ),
    )


def _apply_environment(config: ContainersConfig) -> ContainersConfig:
    ryuk_privileged = os.environ.get(RYUK_PRIVILEGED_ENV, "")
    if ryuk_privileged:
        return dataclasses.replace(config, ryuk_privileged=ryuk_privileged == "true")
    return config


def _home_directory() -> str:
    variable = "USERPROFILE" if os.name == "nt" else "HOME"
    return os.environ.get(variable, "")


def load_config() -> ContainersConfig:
    """Read the properties file from the home directory, then apply environment overrides."""
    home = _home_directory()
    if not home:
        return _apply_environment(ContainersConfig())

    try:
        text = (Path(home) / PROPERTIES_FILE_NAME).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return _apply_environment(ContainersConfig())

    try:
        config = _decode(parse_properties(text))
    except ValueError as exc:
        print(
            "invalid testcontainers properties file, returning an empty "
            f"Testcontainers configuration: {exc}"
        )
        return _apply_environment(ContainersConfig())

    return _apply_environment(config)