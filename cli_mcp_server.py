#!/usr/bin/env python3
"""MCP server exposing declaratively configured command-line tools."""

import argparse
import asyncio
import csv
import io
import json
import logging
import math
import os
import re
import sys
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import yaml
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    CallToolResult,
    ErrorData,
    Implementation,
    InitializeResult,
    ListPromptsResult,
    ListResourcesResult,
    ListToolsResult,
    ServerCapabilities,
    TextContent,
    Tool,
    ToolsCapability,
)

__version__ = "1.0.0"

# ── Logging (stderr only; stdout is MCP protocol) ──────────────────────

log = logging.getLogger("cli-mcp")

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _setup_logging(level: str = "info"):
    logging.basicConfig(
        level=_LOG_LEVELS.get((level or "").lower(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
        force=True,
    )


# ── Config ───────────────────────────────────────────────────────────────

SERVER_NAME = "cli-mcp"
PROTOCOL_VERSION = "2024-11-05"

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_OUTPUT = 10 * 1024 * 1024
TRUNCATION_MARKER = "\n... (output truncated)"

# Longest accepted request line on stdin
MAX_REQUEST_LINE = 16 * 1024 * 1024

ARGUMENT_TYPES = ("string", "boolean", "integer", "float", "array", "object")
OUTPUT_TYPES = ("raw", "json", "lines", "regex", "csv", "xml")

# Substrings that make a token look like a shell expression. Checked in order.
INJECTION_PATTERNS = (
    "$(",
    "`",
    "&&",
    "||",
    ";",
    "|",
    ">",
    "<",
    ">>",
    "<<",
    "\n",
    "\r",
    "$IFS",
    "${IFS}",
)

_SCHEMA_TYPES = {
    "boolean": "boolean",
    "integer": "integer",
    "float": "number",
    "array": "array",
    "object": "object",
}


# ── Errors ───────────────────────────────────────────────────────────────


class ConfigError(ValueError):
    """Raised when a tool catalog cannot be loaded. Fatal at startup."""


class ToolError(Exception):
    """Base class for per-call failures reported back inside a tool result."""

    output = ""


class MissingRequiredArgument(ToolError):
    def __init__(self, name: str):
        super().__init__(f"required argument {name} not provided")
        self.name = name


class InvalidValueType(ToolError):
    def __init__(self, name: str, expected: str, value: Any = None):
        super().__init__(
            f"argument {name}: expected {expected}, got {type(value).__name__} {value!r}"
        )
        self.name = name
        self.expected = expected


class SecurityViolation(ToolError):
    def __init__(
        self,
        reason: str,
        token: Optional[str] = None,
        pattern: Optional[str] = None,
    ):
        super().__init__(f"command blocked by security policy: {reason}")
        self.reason = reason
        self.token = token
        self.pattern = pattern


class ExecutionTimeout(ToolError):
    def __init__(self, timeout: float):
        super().__init__(f"command timed out after {timeout:g}s")
        self.timeout = timeout


class ExecutionFailed(ToolError):
    def __init__(
        self, exit_code: Optional[int], output: str = "", reason: str = ""
    ):
        if exit_code is not None:
            msg = f"command failed with exit code {exit_code}"
        else:
            msg = f"command failed: {reason}"
        super().__init__(msg)
        self.exit_code = exit_code
        self.output = output
        self.reason = reason


class ChainStepFailed(ToolError):
    def __init__(self, step: int, output: str, cause: Exception):
        super().__init__(f"chain step {step} failed: {cause}")
        self.step = step
        self.output = output
        self.cause = cause


class OutputParseError(ToolError):
    pass


class RPCError(Exception):
    """Transport-level failure, answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


# ── Helpers ──────────────────────────────────────────────────────────────


def _humanize_bytes(n: int) -> str:
    v = float(n)
    for unit in ("B", "KB", "MB"):
        if v < 1024:
            return f"{v:.0f}{unit}" if unit == "B" else f"{v:.1f}{unit}"
        v /= 1024
    return f"{v:.1f}GB"


def _truncate(text: str, limit: int) -> str:
    """Cap text at `limit` UTF-8 bytes and append the truncation marker."""
    data = text.encode()
    if limit <= 0 or len(data) <= limit:
        return text
    log.debug(
        f"Output truncated: {_humanize_bytes(len(data))} total, "
        f"keeping first {_humanize_bytes(limit)}"
    )
    return data[:limit].decode(errors="ignore") + TRUNCATION_MARKER


def _stringify(value: Any) -> str:
    """Textual form of a JSON value as it appears on a command line."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Optional sign and ASCII digits only: no spaces, underscores or other scripts.
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


def _validate_env_key(key: str) -> bool:
    return bool(_ENV_KEY_RE.match(key))


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_FULL_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ns|us|µs|ms|s|m|h))+$")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _parse_duration(value: Any) -> Optional[float]:
    """Parse '30s', '1m30s', '500ms' or a bare number of seconds. 0 means unset."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        try:
            seconds = float(text)
        except ValueError:
            if not _DURATION_FULL_RE.match(text):
                raise ConfigError(f"Invalid duration: {value!r}") from None
            seconds = sum(
                float(n) * _DURATION_UNITS[unit]
                for n, unit in _DURATION_RE.findall(text)
            )
    if seconds < 0:
        raise ConfigError(f"Duration must not be negative: {value!r}")
    return seconds or None


# ── Tool catalog ─────────────────────────────────────────────────────────

_CONDITION_RE = re.compile(
    r"^\s*\$\{\s*([A-Za-z_][A-Za-z0-9_.-]*)\s*\}\s*(==|!=)\s*(.*?)\s*$",
    re.DOTALL,
)


@dataclass(frozen=True)
class Condition:
    """A `${name} op literal` comparison gating a flag argument."""

    variable: str
    operator: str
    literal: str

    @classmethod
    def parse(cls, expression: str) -> "Condition":
        m = _CONDITION_RE.match(expression or "")
        if not m:
            raise ConfigError(f"Invalid condition: {expression!r}")
        literal = m.group(3)
        if len(literal) >= 2 and literal[0] == literal[-1] and literal[0] in "\"'":
            literal = literal[1:-1]
        return cls(variable=m.group(1), operator=m.group(2), literal=literal)

    def evaluate(self, values: dict) -> bool:
        if self.variable not in values:
            return False
        actual = _stringify(values[self.variable])
        if self.operator == "==":
            return actual == self.literal
        return actual != self.literal


@dataclass(frozen=True)
class ArgumentSpec:
    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    flag: str = ""
    default: Any = None
    min: Optional[int] = None
    max: Optional[int] = None
    validation: str = ""
    when: Optional[Condition] = None
    positional: bool = False
    position: int = 0


@dataclass(frozen=True)
class RegexGroup:
    name: str
    type: str = "string"


@dataclass(frozen=True)
class OutputSpec:
    type: str = "raw"
    pattern: str = ""
    groups: tuple[RegexGroup, ...] = ()
    jq: str = ""


@dataclass(frozen=True)
class ChainStep:
    command: str = ""
    arguments: tuple[str, ...] = ()


@dataclass(frozen=True)
class ToolDefinition:
    catalog: str
    name: str
    description: str
    command: str = ""
    arguments: tuple[ArgumentSpec, ...] = ()
    output: OutputSpec = field(default_factory=OutputSpec)
    chain: tuple[ChainStep, ...] = ()

    @property
    def qualified_name(self) -> str:
        return f"{self.catalog}_{self.name}"


@dataclass(frozen=True)
class Settings:
    command: str
    working_dir: str = "."
    timeout: Optional[float] = None
    environment: tuple[str, ...] = ()
    shell: str = ""


@dataclass(frozen=True)
class SecurityPolicy:
    allowed_paths: tuple[str, ...] = ()
    blocked_commands: tuple[str, ...] = ()
    max_output_size: int = DEFAULT_MAX_OUTPUT
    rate_limit: str = ""
    disable_injection_check: bool = False

    def is_blocked(self, command: str) -> bool:
        return command in self.blocked_commands

    def is_path_allowed(self, path: str) -> bool:
        # Plain prefix match: "/home/user" also admits "/home/user2".
        if not self.allowed_paths:
            return True
        abs_path = os.path.abspath(path)
        return any(
            abs_path.startswith(os.path.abspath(allowed))
            for allowed in self.allowed_paths
        )


@dataclass(frozen=True)
class Catalog:
    name: str
    settings: Settings
    security: SecurityPolicy = field(default_factory=SecurityPolicy)
    tools: tuple[ToolDefinition, ...] = ()
    description: str = ""
    version: str = "1.0"
    source: str = ""


# ── Catalog loading ──────────────────────────────────────────────────────


def _mapping(data: dict, key: str, where: str) -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where}{key} must be a mapping")
    return value


def _sequence(data: dict, key: str, where: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{where}{key} must be a list")
    return value


def _optional_int(value: Any, what: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{what} must be an integer")
    return value


def _parse_argument(tool_name: str, raw: Any) -> ArgumentSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"tool {tool_name}: each argument must be a mapping")
    name = raw.get("name") or ""
    if not name:
        raise ConfigError(f"tool {tool_name}: argument name is required")
    where = f"tool {tool_name}, argument {name}"
    arg_type = raw.get("type") or "string"
    if arg_type not in ARGUMENT_TYPES:
        raise ConfigError(f"{where}: invalid type {arg_type}")
    required = bool(raw.get("required", False))
    default = raw.get("default")
    if required and default is not None:
        raise ConfigError(f"{where}: required arguments cannot have defaults")
    when = None
    if raw.get("when"):
        try:
            when = Condition.parse(str(raw["when"]))
        except ConfigError as e:
            raise ConfigError(f"{where}: {e}") from None
    return ArgumentSpec(
        name=str(name),
        type=arg_type,
        description=str(raw.get("description") or ""),
        required=required,
        flag=str(raw.get("flag") or ""),
        default=default,
        min=_optional_int(raw.get("min"), f"{where}: min"),
        max=_optional_int(raw.get("max"), f"{where}: max"),
        validation=str(raw.get("validation") or ""),
        when=when,
        positional=bool(raw.get("positional", False)),
        position=_optional_int(raw.get("position"), f"{where}: position") or 0,
    )


def _parse_output(tool_name: str, raw: dict) -> OutputSpec:
    output_type = raw.get("type") or "raw"
    if output_type not in OUTPUT_TYPES:
        raise ConfigError(f"tool {tool_name}: invalid output type {output_type}")
    pattern = str(raw.get("pattern") or "")
    if output_type == "regex" and not pattern:
        raise ConfigError(f"tool {tool_name}: pattern is required for regex output")
    groups = []
    for g in _sequence(raw, "groups", f"tool {tool_name}: output."):
        if not isinstance(g, dict) or not g.get("name"):
            raise ConfigError(f"tool {tool_name}: each output group needs a name")
        groups.append(RegexGroup(name=str(g["name"]), type=str(g.get("type") or "string")))
    return OutputSpec(
        type=output_type,
        pattern=pattern,
        groups=tuple(groups),
        jq=str(raw.get("jq") or ""),
    )


def _parse_tool(catalog_name: str, raw: Any) -> ToolDefinition:
    if not isinstance(raw, dict):
        raise ConfigError("each tool must be a mapping")
    name = raw.get("name") or ""
    if not name:
        raise ConfigError("tool name is required")
    description = raw.get("description") or ""
    if not description:
        raise ConfigError(f"tool {name}: description is required")

    arguments = [
        _parse_argument(name, a) for a in _sequence(raw, "arguments", f"tool {name}: ")
    ]
    seen: set[str] = set()
    for arg in arguments:
        if arg.name in seen:
            raise ConfigError(f"tool {name}: duplicate argument {arg.name}")
        seen.add(arg.name)

    chain = []
    for step in _sequence(raw, "chain", f"tool {name}: "):
        if not isinstance(step, dict):
            raise ConfigError(f"tool {name}: each chain step must be a mapping")
        chain.append(
            ChainStep(
                command=str(step.get("command") or ""),
                arguments=tuple(
                    str(a) for a in _sequence(step, "arguments", f"tool {name}: chain.")
                ),
            )
        )

    return ToolDefinition(
        catalog=catalog_name,
        name=str(name),
        description=str(description),
        command=str(raw.get("command") or ""),
        arguments=tuple(arguments),
        output=_parse_output(name, _mapping(raw, "output", f"tool {name}: ")),
        chain=tuple(chain),
    )


def _parse_environment(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, dict):
        raw = [f"{k}={_stringify(v)}" for k, v in raw.items()]
    if not isinstance(raw, list):
        raise ConfigError("settings.environment must be a list of KEY=VALUE entries")
    entries = []
    for entry in raw:
        key, sep, _ = str(entry).partition("=")
        if not sep or not _validate_env_key(key):
            raise ConfigError(f"Invalid environment entry: {entry!r}")
        entries.append(str(entry))
    return tuple(entries)


def catalog_from_dict(data: dict, source: str = "") -> Catalog:
    """Build a validated Catalog from an already-parsed configuration document."""
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a mapping")
    metadata = _mapping(data, "metadata", "")
    settings = _mapping(data, "settings", "")
    security = _mapping(data, "security", "")

    name = metadata.get("name") or ""
    if not name:
        raise ConfigError("metadata.name is required")
    command = settings.get("command") or ""
    if not command:
        raise ConfigError("settings.command is required")
    raw_tools = _sequence(data, "tools", "")
    if not raw_tools:
        raise ConfigError("at least one tool must be defined")

    max_output = _optional_int(
        security.get("max_output_size"), "security.max_output_size"
    )
    return Catalog(
        name=str(name),
        description=str(metadata.get("description") or ""),
        version=str(data.get("version") or "1.0"),
        source=source,
        settings=Settings(
            command=str(command),
            working_dir=str(settings.get("working_dir") or "."),
            timeout=_parse_duration(settings.get("timeout")),
            environment=_parse_environment(settings.get("environment")),
            shell=str(settings.get("shell") or ""),
        ),
        security=SecurityPolicy(
            allowed_paths=tuple(
                str(p) for p in _sequence(security, "allowed_paths", "security.")
            ),
            blocked_commands=tuple(
                str(c) for c in _sequence(security, "blocked_commands", "security.")
            ),
            max_output_size=max_output or DEFAULT_MAX_OUTPUT,
            rate_limit=str(security.get("rate_limit") or ""),
            disable_injection_check=bool(
                security.get("disable_injection_check", False)
            ),
        ),
        tools=tuple(_parse_tool(str(name), t) for t in raw_tools),
    )


def load_catalog(path: str) -> Catalog:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"failed to read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse YAML in {path}: {e}") from e
    try:
        return catalog_from_dict(data, source=path)
    except ConfigError as e:
        raise ConfigError(f"{path}: configuration validation failed: {e}") from None


def build_tool_index(
    catalogs: list[Catalog],
) -> dict[str, tuple[Catalog, ToolDefinition]]:
    index: dict[str, tuple[Catalog, ToolDefinition]] = {}
    for catalog in catalogs:
        for tool in catalog.tools:
            qualified = tool.qualified_name
            if qualified in index:
                raise ConfigError(f"Duplicate tool name: {qualified}")
            index[qualified] = (catalog, tool)
    return index


# ── Command builder ──────────────────────────────────────────────────────


def _flag_tokens(flag: str, text: str) -> list[str]:
    if not flag:
        return [text]
    if "=" in flag:
        return [flag + text]
    return [flag, text]


class CommandBuilder:
    """Turns a tool's argument schema plus caller values into argv tokens."""

    def build(self, catalog: Catalog, tool: ToolDefinition, values: dict) -> list[str]:
        tokens = []
        if catalog.settings.command:
            tokens.append(catalog.settings.command)
        if tool.command:
            tokens.append(tool.command)

        positional = sorted(
            (a for a in tool.arguments if a.positional), key=lambda a: a.position
        )
        for arg in positional:
            found, value = self._resolve(arg, values)
            if found:
                tokens.extend(self._positional_tokens(arg, value))

        for arg in tool.arguments:
            if arg.positional:
                continue
            found, value = self._resolve(arg, values)
            if not found:
                continue
            if arg.when is not None and not arg.when.evaluate(values):
                continue
            tokens.extend(self._flag_argument_tokens(arg, value))
        return tokens

    def _resolve(self, arg: ArgumentSpec, values: dict) -> tuple[bool, Any]:
        value = values.get(arg.name)
        if value is not None:
            return True, value
        if arg.default is not None:
            return True, arg.default
        if arg.required:
            raise MissingRequiredArgument(arg.name)
        return False, None

    def _positional_tokens(self, arg: ArgumentSpec, value: Any) -> list[str]:
        if arg.type == "boolean":
            self._require_bool(arg, value)
            return []
        if arg.type == "array":
            return [_stringify(item) for item in self._as_list(value)]
        return [self.format_value(arg, value)]

    def _flag_argument_tokens(self, arg: ArgumentSpec, value: Any) -> list[str]:
        if arg.type == "boolean":
            if self._require_bool(arg, value) and arg.flag:
                return [arg.flag]
            return []
        if arg.type == "array":
            tokens = []
            for item in self._as_list(value):
                tokens.extend(_flag_tokens(arg.flag, _stringify(item)))
            return tokens
        return _flag_tokens(arg.flag, self.format_value(arg, value))

    @staticmethod
    def _require_bool(arg: ArgumentSpec, value: Any) -> bool:
        if not isinstance(value, bool):
            raise InvalidValueType(arg.name, "boolean", value)
        return value

    @staticmethod
    def _as_list(value: Any) -> list:
        if isinstance(value, (list, tuple)):
            return list(value)
        return [value]

    def format_value(self, arg: ArgumentSpec, value: Any) -> str:
        """Render a scalar value for the argument's declared type."""
        if arg.type == "integer":
            return self._format_integer(arg, value)
        if arg.type == "float":
            return f"{self._to_float(arg, value):f}"
        if arg.type == "object":
            try:
                return json.dumps(value, separators=(",", ":"))
            except (TypeError, ValueError):
                raise InvalidValueType(arg.name, "object", value) from None
        return _stringify(value)

    @staticmethod
    def _format_integer(arg: ArgumentSpec, value: Any) -> str:
        if isinstance(value, bool):
            raise InvalidValueType(arg.name, "integer", value)
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float) and math.isfinite(value):
            return str(int(value))
        if isinstance(value, str) and _INTEGER_RE.fullmatch(value):
            return str(int(value))
        raise InvalidValueType(arg.name, "integer", value)

    @staticmethod
    def _to_float(arg: ArgumentSpec, value: Any) -> float:
        if isinstance(value, bool):
            raise InvalidValueType(arg.name, "float", value)
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                pass
        raise InvalidValueType(arg.name, "float", value)


# ── Sandbox validator ────────────────────────────────────────────────────


def _find_injection_pattern(token: str) -> Optional[str]:
    for pattern in INJECTION_PATTERNS:
        if pattern in token:
            return pattern
    return None


def _looks_like_path(token: str) -> bool:
    return token.startswith(("/", "./", "../")) or "/" in token


class SandboxValidator:
    """
    Heuristic pre-execution check of argv tokens against a SecurityPolicy.
    Substring and position based; quoting is not interpreted.
    """

    def validate(self, tokens: list[str], policy: SecurityPolicy):
        if not tokens:
            raise SecurityViolation("empty command")

        command = os.path.basename(tokens[0])
        if policy.is_blocked(command):
            raise SecurityViolation(f"command '{command}' is blocked", token=tokens[0])

        if policy.disable_injection_check:
            return

        for token in tokens:
            pattern = _find_injection_pattern(token)
            if pattern is not None:
                raise SecurityViolation(
                    f"potential command injection detected: "
                    f"pattern {pattern!r} in argument {token!r}",
                    token=token,
                    pattern=pattern,
                )

        for token in tokens[1:]:
            if _looks_like_path(token) and not policy.is_path_allowed(token):
                raise SecurityViolation(
                    f"path '{token}' is not in allowed paths", token=token
                )


# ── Output parser ────────────────────────────────────────────────────────


def _dump(value: Any) -> str:
    try:
        return json.dumps(value, indent=2, ensure_ascii=False, allow_nan=False)
    except ValueError as e:
        raise OutputParseError(f"output is not representable as JSON: {e}") from e


def _reject_constant(name: str):
    raise ValueError(f"non-standard JSON constant {name}")


def _coerce(value: str, type_name: str) -> Any:
    if type_name == "integer":
        if _INTEGER_RE.fullmatch(value):
            return int(value)
        return value
    if type_name in ("float", "number"):
        try:
            number = float(value)
        except ValueError:
            return value
        return number if math.isfinite(number) else value
    if type_name == "boolean":
        lower = value.lower()
        if lower in ("true", "yes", "1"):
            return True
        if lower in ("false", "no", "0"):
            return False
        return value
    return value


def _parse_json(text: str, spec: OutputSpec) -> str:
    try:
        data = json.loads(text, parse_constant=_reject_constant)
    except ValueError as e:
        raise OutputParseError(f"invalid JSON: {e}") from e
    return _dump(data)


def _parse_lines(text: str, spec: OutputSpec) -> str:
    return _dump([line.strip() for line in text.split("\n") if line.strip()])


def _parse_regex(text: str, spec: OutputSpec) -> str:
    if not spec.pattern:
        raise OutputParseError("regex pattern is required")
    try:
        regex = re.compile(spec.pattern)
    except re.error as e:
        raise OutputParseError(f"invalid regex pattern: {e}") from e

    results = []
    for m in regex.finditer(text):
        if spec.groups:
            item = {}
            for i, group in enumerate(spec.groups, start=1):
                if i <= regex.groups:
                    item[group.name] = _coerce(m.group(i) or "", group.type)
        else:
            item = {
                f"group{i}": m.group(i) or "" for i in range(1, regex.groups + 1)
            }
        results.append(item)
    return _dump(results)


def _parse_csv(text: str, spec: OutputSpec) -> str:
    try:
        records = [
            r for r in csv.reader(io.StringIO(text), skipinitialspace=True) if r
        ]
    except csv.Error as e:
        raise OutputParseError(f"failed to parse CSV: {e}") from e
    if not records:
        return "[]"
    headers = records[0]
    return _dump([dict(zip(headers, row)) for row in records[1:]])


def _xml_to_value(elem: ET.Element) -> Any:
    children = list(elem)
    text = (elem.text or "").strip()
    if not children and not elem.attrib:
        return text
    node: dict[str, Any] = {f"@{k}": v for k, v in elem.attrib.items()}
    for child in children:
        value = _xml_to_value(child)
        if child.tag not in node:
            node[child.tag] = value
        elif isinstance(node[child.tag], list):
            node[child.tag].append(value)
        else:
            node[child.tag] = [node[child.tag], value]
    if text:
        node["#text"] = text
    return node


def _parse_xml(text: str, spec: OutputSpec) -> str:
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise OutputParseError(f"failed to parse XML: {e}") from e
    return _dump({root.tag: _xml_to_value(root)})


_PARSERS = {
    "json": _parse_json,
    "lines": _parse_lines,
    "regex": _parse_regex,
    "csv": _parse_csv,
    "xml": _parse_xml,
}


def parse_output(text: str, spec: OutputSpec) -> str:
    """Reinterpret captured output per spec.type. Unknown types pass through."""
    parser = _PARSERS.get(spec.type)
    if parser is None:
        return text
    return parser(text, spec)


# ── Debug tracer ─────────────────────────────────────────────────────────


@dataclass
class TraceEvent:
    timestamp: str
    direction: str  # "in", "out" or "internal"
    type: str
    data: Any = None
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        d = {
            "timestamp": self.timestamp,
            "direction": self.direction,
            "type": self.type,
            "data": self.data,
        }
        if self.metadata:
            d["metadata"] = self.metadata
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "TraceEvent":
        return cls(
            timestamp=str(d.get("timestamp", "")),
            direction=str(d.get("direction", "")),
            type=str(d.get("type", "")),
            data=d.get("data"),
            metadata=d.get("metadata"),
        )


class Tracer:
    """
    Observer for protocol and process events.

    Variants: DisabledTracer drops everything, RecordingTracer keeps and
    optionally persists events, ReplayTracer serves a previously saved
    sequence read-only.
    """

    recording = False

    def trace_incoming(self, kind: str, data: Any, metadata: Optional[dict] = None):
        self._emit("in", kind, data, metadata)

    def trace_outgoing(self, kind: str, data: Any, metadata: Optional[dict] = None):
        self._emit("out", kind, data, metadata)

    def trace_command(self, argv: list[str], workdir: str, env: list[str]):
        self._emit(
            "internal",
            "command",
            " ".join(argv),
            {
                "command": argv[0] if argv else "",
                "args": argv[1:],
                "working_dir": workdir,
                "env": env,
            },
        )

    def trace_command_output(
        self,
        output: str,
        exit_code: Optional[int],
        error: Optional[Exception] = None,
    ):
        metadata: dict[str, Any] = {"exit_code": exit_code, "success": error is None}
        if error is not None:
            metadata["error"] = str(error)
        self._emit("internal", "output", output, metadata)

    def _emit(self, direction: str, kind: str, data: Any, metadata: Optional[dict]):
        if not self.recording:
            return
        event = TraceEvent(
            timestamp=datetime.now(timezone.utc).isoformat(),
            direction=direction,
            type=kind,
            data=data,
            metadata=metadata,
        )
        log.debug(f"TRACE {direction} {kind}")
        self._record(event)

    def _record(self, event: TraceEvent):
        pass

    @property
    def events(self) -> tuple[TraceEvent, ...]:
        return ()

    def next_event(self) -> Optional[TraceEvent]:
        return None

    def summary(self) -> dict[str, int]:
        events = self.events
        return {
            "total_events": len(events),
            "incoming": sum(1 for e in events if e.direction == "in"),
            "outgoing": sum(1 for e in events if e.direction == "out"),
            "commands": sum(
                1 for e in events if e.direction == "internal" and e.type == "command"
            ),
        }

    def log_summary(self):
        pass

    def close(self):
        pass


class DisabledTracer(Tracer):
    pass


class RecordingTracer(Tracer):
    """Keeps every event in memory; with a path, also appends them to disk."""

    recording = True

    def __init__(self, path: Optional[str] = None):
        self._events: list[TraceEvent] = []
        self._path = path
        self._file = None
        if path:
            try:
                self._file = open(path, "w", encoding="utf-8")
            except OSError as e:
                raise ConfigError(f"failed to create trace file: {e}") from e
            log.info(f"Debug tracing enabled: {path}")

    def _record(self, event: TraceEvent):
        self._events.append(event)
        if self._file is not None:
            self._file.write(json.dumps(event.to_dict(), default=str) + "\n")
            self._file.flush()

    @property
    def events(self) -> tuple[TraceEvent, ...]:
        return tuple(self._events)

    def log_summary(self):
        s = self.summary()
        log.info(
            f"Debug trace summary: {s['total_events']} events "
            f"({s['incoming']} in, {s['outgoing']} out, {s['commands']} commands)"
        )

    def close(self):
        """Rewrite the trace file as one JSON array and close it."""
        if self._file is None:
            return
        self._file.seek(0)
        self._file.truncate()
        json.dump(
            [e.to_dict() for e in self._events], self._file, indent=2, default=str
        )
        self._file.close()
        self._file = None


class ReplayTracer(Tracer):
    """Serves a saved trace in order. Never records."""

    def __init__(self, path: str):
        try:
            with open(path, encoding="utf-8") as f:
                raw = json.load(f)
        except OSError as e:
            raise ConfigError(f"failed to read replay file: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"failed to parse replay file: {e}") from e
        if not isinstance(raw, list) or not all(isinstance(e, dict) for e in raw):
            raise ConfigError("replay file must contain a JSON array of events")
        self._events = tuple(TraceEvent.from_dict(e) for e in raw)
        self._index = 0
        log.info(f"Replay mode enabled: {path} ({len(self._events)} events)")

    @property
    def events(self) -> tuple[TraceEvent, ...]:
        return self._events

    @property
    def remaining(self) -> int:
        return len(self._events) - self._index

    def next_event(self) -> Optional[TraceEvent]:
        if self._index >= len(self._events):
            return None
        event = self._events[self._index]
        self._index += 1
        return event


def make_tracer(
    debug: bool = False,
    trace_file: Optional[str] = None,
    replay_file: Optional[str] = None,
) -> Tracer:
    if replay_file:
        return ReplayTracer(replay_file)
    if debug or trace_file:
        return RecordingTracer(trace_file)
    return DisabledTracer()


# ── Process executor ─────────────────────────────────────────────────────

_PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")


def _substitute(template: str, values: dict) -> str:
    def repl(m: re.Match) -> str:
        name = m.group(1)
        if name in values:
            return _stringify(values[name])
        return m.group(0)

    return _PLACEHOLDER_RE.sub(repl, template)


async def _spawn(
    argv: list[str], workdir: str, env: dict[str, str], timeout: float
) -> tuple[int, str]:
    """Run argv to completion. Returns (exit code, stdout + stderr)."""
    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=workdir,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        if proc and proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise ExecutionTimeout(timeout) from None

    output = stdout.decode(errors="replace")
    err_text = stderr.decode(errors="replace")
    if err_text:
        output += "\n" + err_text
    return proc.returncode or 0, output


class CommandExecutor:
    """Builds, validates and runs tool invocations as external processes."""

    def __init__(
        self,
        builder: Optional[CommandBuilder] = None,
        sandbox: Optional[SandboxValidator] = None,
        tracer: Optional[Tracer] = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        default_workdir: Optional[str] = None,
    ):
        self.builder = builder or CommandBuilder()
        self.sandbox = sandbox or SandboxValidator()
        self.tracer = tracer or DisabledTracer()
        self.default_timeout = default_timeout
        self.default_workdir = default_workdir

    def working_dir(self, catalog: Catalog) -> str:
        workdir = catalog.settings.working_dir
        if not workdir or workdir == ".":
            return self.default_workdir or os.getcwd()
        return workdir

    def timeout(self, catalog: Catalog) -> float:
        return catalog.settings.timeout or self.default_timeout

    def environment(self, catalog: Catalog) -> dict[str, str]:
        env = dict(os.environ)
        for entry in catalog.settings.environment:
            key, _, value = entry.partition("=")
            env[key] = value
        return env

    async def execute(self, catalog: Catalog, tool: ToolDefinition, values: dict) -> str:
        argv = self.builder.build(catalog, tool, values)
        self.sandbox.validate(argv, catalog.security)
        output = await self._run(argv, catalog)
        try:
            return parse_output(output, tool.output)
        except OutputParseError as e:
            log.warning(f"Failed to parse output of {tool.qualified_name}, returning raw: {e}")
            return output

    async def execute_chain(
        self, catalog: Catalog, chain: tuple[ChainStep, ...], values: dict
    ) -> str:
        """
        Run chain steps in order with the catalog's base command.

        Steps skip sandbox validation and output parsing. The first failing
        step aborts with ChainStepFailed carrying the 1-based step index and
        the joined output of the steps that succeeded before it.
        """
        outputs: list[str] = []
        for i, step in enumerate(chain, start=1):
            argv = [catalog.settings.command]
            if step.command:
                argv.append(step.command)
            argv.extend(_substitute(a, values) for a in step.arguments)
            log.debug(f"Executing chain step {i}: {argv}")
            try:
                outputs.append(await self._run(argv, catalog))
            except (ExecutionFailed, ExecutionTimeout) as e:
                raise ChainStepFailed(i, "\n".join(outputs), e) from e
        return "\n".join(outputs)

    async def _run(self, argv: list[str], catalog: Catalog) -> str:
        workdir = self.working_dir(catalog)
        timeout = self.timeout(catalog)
        log.debug(f"Executing command: {argv} (cwd={workdir}, timeout={timeout:g}s)")
        self.tracer.trace_command(argv, workdir, list(catalog.settings.environment))

        try:
            exit_code, output = await _spawn(
                argv, workdir, self.environment(catalog), timeout
            )
        except ExecutionTimeout as e:
            self.tracer.trace_command_output("", None, e)
            raise
        except (OSError, ValueError) as e:
            # ValueError: NUL bytes or unencodable text in argv or env
            failure = ExecutionFailed(None, "", str(e))
            self.tracer.trace_command_output("", None, failure)
            raise failure from e

        output = _truncate(output, catalog.security.max_output_size)
        if exit_code != 0:
            failure = ExecutionFailed(exit_code, output)
            self.tracer.trace_command_output(output, exit_code, failure)
            raise failure
        self.tracer.trace_command_output(output, exit_code)
        return output


# ── MCP Server ───────────────────────────────────────────────────────────


def _dump_model(model) -> dict:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _failure_text(error: ToolError) -> str:
    text = f"Command failed: {error}"
    if error.output:
        text += f"\n\n{error.output}"
    return text


class MCPServer:
    """
    Line-delimited JSON-RPC 2.0 dispatcher.

    Requests are handled strictly one at a time: each is read, fully
    processed (including the tool's process) and answered before the next
    line is read, so responses always follow request order.
    """

    def __init__(
        self,
        catalogs: list[Catalog],
        executor: Optional[CommandExecutor] = None,
        tracer: Optional[Tracer] = None,
        out=None,
    ):
        self.catalogs = list(catalogs)
        self.tools = build_tool_index(self.catalogs)
        self.tracer = tracer or DisabledTracer()
        self.executor = executor or CommandExecutor(tracer=self.tracer)
        self._out = out if out is not None else sys.stdout
        self._handlers = {
            "initialize": self._initialize,
            "ping": self._ping,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
            "prompts/list": self._list_prompts,
            "resources/list": self._list_resources,
        }

    # -- transport --

    async def run(self):
        """Serve stdin/stdout until the client closes the stream."""
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=MAX_REQUEST_LINE)
        await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
        )
        await self.serve(reader)

    async def serve(self, reader: asyncio.StreamReader):
        log.info(f"MCP server started ({len(self.tools)} tools)")
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError as e:
                    log.error(f"Failed to read request: {e}")
                    continue
                if not line:
                    log.info("Client disconnected")
                    return
                try:
                    response = await self.handle_line(line.decode(errors="replace"))
                except Exception:
                    log.exception("Failed to handle request line")
                    continue
                if response is None:
                    continue
                try:
                    self._send(response)
                except ValueError as e:
                    log.error(f"Failed to send response id={response.get('id')!r}: {e}")
        finally:
            self.tracer.log_summary()
            self.tracer.close()

    def _send(self, message: dict):
        self._out.write(json.dumps(message, separators=(",", ":")) + "\n")
        self._out.flush()
        log.debug(f"Sent response id={message.get('id')} error={'error' in message}")

    # -- dispatch --

    async def handle_line(self, line: str) -> Optional[dict]:
        """Handle one request line. Returns the response, or None for notifications."""
        text = line.strip()
        if not text:
            return None
        try:
            message = json.loads(text)
        except json.JSONDecodeError as e:
            log.error(f"Failed to parse request: {e}")
            return self._error(None, PARSE_ERROR, f"Parse error: {e}")
        if not isinstance(message, dict):
            return self._error(None, INVALID_REQUEST, "Request must be a JSON object")

        req_id = message.get("id")
        method = message.get("method")
        if not isinstance(method, str) or not method:
            return self._error(req_id, INVALID_REQUEST, "Missing method")
        log.debug(f"Received request id={req_id} method={method}")

        if "id" not in message:
            self.tracer.trace_incoming("notification", message, {"method": method})
            self._notification(method)
            return None

        self.tracer.trace_incoming("request", message, {"method": method, "id": req_id})
        handler = self._handlers.get(method)
        if handler is None:
            return self._error(req_id, METHOD_NOT_FOUND, f"Method not found: {method}", method)

        params = message.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return self._error(req_id, INVALID_PARAMS, "Invalid parameters", method)

        try:
            result = await handler(params)
        except RPCError as e:
            return self._error(req_id, e.code, e.message, method, e.data)
        except Exception as e:
            log.exception(f"Failed to handle {method}")
            return self._error(req_id, INTERNAL_ERROR, str(e), method)
        return self._result(req_id, result, method)

    def _notification(self, method: str):
        if method == "notifications/initialized":
            log.info("Client initialized")
        else:
            log.debug(f"Ignoring notification {method}")

    def _result(self, req_id: Any, result: dict, method: str) -> dict:
        kind = "response"
        if method == "tools/call":
            kind = "tool_error" if result.get("isError") else "tool_result"
        self.tracer.trace_outgoing(kind, result, {"method": method, "id": req_id})
        return {"jsonrpc": "2.0", "id": req_id, "result": result}

    def _error(
        self,
        req_id: Any,
        code: int,
        message: str,
        method: str = "",
        data: Any = None,
    ) -> dict:
        error = _dump_model(ErrorData(code=code, message=message, data=data))
        self.tracer.trace_outgoing(
            "error", error, {"original_method": method, "id": req_id}
        )
        return {"jsonrpc": "2.0", "id": req_id, "error": error}

    # -- handlers --

    async def _initialize(self, params: dict) -> dict:
        client = params.get("clientInfo") or {}
        if isinstance(client, dict) and client.get("name"):
            log.info(f"Initializing session for {client['name']} {client.get('version', '')}")
        return _dump_model(
            InitializeResult(
                protocolVersion=PROTOCOL_VERSION,
                capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
                serverInfo=Implementation(name=SERVER_NAME, version=__version__),
            )
        )

    async def _ping(self, params: dict) -> dict:
        return {}

    async def _list_tools(self, params: dict) -> dict:
        tools = [
            self.tool_descriptor(tool)
            for catalog in self.catalogs
            for tool in catalog.tools
        ]
        return _dump_model(ListToolsResult(tools=tools))

    async def _list_prompts(self, params: dict) -> dict:
        return _dump_model(ListPromptsResult(prompts=[]))

    async def _list_resources(self, params: dict) -> dict:
        return _dump_model(ListResourcesResult(resources=[]))

    async def _call_tool(self, params: dict) -> dict:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise RPCError(INVALID_PARAMS, "Invalid parameters", "missing tool name")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise RPCError(INVALID_PARAMS, "Invalid parameters", "arguments must be an object")

        entry = self.tools.get(name)
        if entry is None:
            raise RPCError(INVALID_PARAMS, f"Tool not found: {name}")
        catalog, tool = entry

        self.tracer.trace_incoming(
            "tool_call",
            {"name": name, "arguments": arguments},
            {"tool_name": name, "config": catalog.name},
        )
        try:
            if tool.chain:
                text = await self.executor.execute_chain(catalog, tool.chain, arguments)
            else:
                text = await self.executor.execute(catalog, tool, arguments)
        except ToolError as e:
            log.info(f"Tool {name} failed: {e}")
            return self._tool_result(_failure_text(e), is_error=True)
        return self._tool_result(text)

    @staticmethod
    def _tool_result(text: str, is_error: bool = False) -> dict:
        return _dump_model(
            CallToolResult(
                content=[TextContent(type="text", text=text)], isError=is_error
            )
        )

    @staticmethod
    def tool_descriptor(tool: ToolDefinition) -> Tool:
        properties: dict[str, dict] = {}
        required = []
        for arg in tool.arguments:
            prop: dict[str, Any] = {"type": _SCHEMA_TYPES.get(arg.type, "string")}
            if arg.description:
                prop["description"] = arg.description
            if arg.default is not None:
                prop["default"] = arg.default
            if arg.min is not None:
                prop["minimum"] = arg.min
            if arg.max is not None:
                prop["maximum"] = arg.max
            if arg.type == "array":
                prop["items"] = {"type": "string"}
            properties[arg.name] = prop
            if arg.required:
                required.append(arg.name)
        return Tool(
            name=tool.qualified_name,
            description=tool.description,
            inputSchema={"type": "object", "properties": properties, "required": required},
        )


# ── Entry point ──────────────────────────────────────────────────────────


def generate_claude_config(catalogs: list[Catalog], paths: list[str]) -> str:
    servers = {
        catalog.name: {"command": SERVER_NAME, "args": ["--config", path]}
        for catalog, path in zip(catalogs, paths)
    }
    return json.dumps({"mcpServers": servers}, indent=2)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=SERVER_NAME,
        description="Expose command-line tools described in YAML as MCP tools over stdio.",
    )
    parser.add_argument(
        "--config",
        action="append",
        default=[],
        type=os.path.abspath,
        metavar="PATH",
        help="YAML tool configuration (repeatable)",
    )
    parser.add_argument("--working-dir", help="Working directory for catalogs without one")
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="Default command timeout in seconds",
    )
    parser.add_argument(
        "--log-level", default="info", help="Log level (debug, info, warn, error)"
    )
    parser.add_argument(
        "--generate-claude-config",
        action="store_true",
        help="Print a desktop client mcpServers block and exit",
    )
    parser.add_argument(
        "--validate", action="store_true", help="Validate configuration only"
    )
    parser.add_argument(
        "--test", action="store_true", help="Initialise the server, then exit"
    )
    parser.add_argument(
        "--version", action="version", version=f"{SERVER_NAME} version {__version__}"
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable message and command tracing"
    )
    parser.add_argument(
        "--debug-trace", metavar="FILE", help="Save the debug trace to FILE (implies --debug)"
    )
    parser.add_argument("--replay-trace", metavar="FILE", help="Load a saved trace for replay")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    _setup_logging(args.log_level)

    if not args.config:
        log.error("At least one config file must be specified with --config")
        return 1

    catalogs = []
    try:
        for path in args.config:
            catalogs.append(load_catalog(path))
            log.info(f"Loaded configuration: {path}")
        build_tool_index(catalogs)
    except ConfigError as e:
        log.error(f"Failed to load configuration: {e}")
        return 1

    if args.validate:
        print("All configurations are valid")
        return 0

    if args.generate_claude_config:
        print(generate_claude_config(catalogs, args.config))
        return 0

    try:
        tracer = make_tracer(
            debug=args.debug or bool(args.debug_trace),
            trace_file=args.debug_trace,
            replay_file=args.replay_trace,
        )
    except ConfigError as e:
        log.error(f"Failed to set up tracer: {e}")
        return 1

    executor = CommandExecutor(
        tracer=tracer,
        default_timeout=args.timeout,
        default_workdir=args.working_dir,
    )
    server = MCPServer(catalogs, executor=executor, tracer=tracer)

    if args.test:
        log.info("Running in test mode")
        tracer.close()
        return 0

    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        log.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
