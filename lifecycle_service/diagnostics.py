"""
Diagnostics and logging for the lifecycle service.

Structured log records with correlation IDs, three output formats and
severity filtering. Records are written with ``print`` to stdout, or stderr
for error and fatal.
"""

from __future__ import annotations

import json
import sys
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, Protocol, cast

from pydantic import BaseModel

# ---------------------------------------------------------------------
# Types & constants
# ---------------------------------------------------------------------

LogSeverity = Literal["debug", "info", "warn", "error", "fatal"]
LogOutputFormat = Literal["json", "human", "structured-text"]

SEVERITY_LEVELS: dict[LogSeverity, int] = {
    "debug": 0,
    "info": 1,
    "warn": 2,
    "error": 3,
    "fatal": 4,
}

OUTPUT_FORMATS: tuple[LogOutputFormat, ...] = ("json", "human", "structured-text")

# ANSI colors
RESET = "\x1b[0m"
COLORS = {
    "debug": "\x1b[36m",
    "info": "\x1b[32m",
    "warn": "\x1b[33m",
    "error": "\x1b[31m",
    "fatal": "\x1b[35m",
    "msg": "\x1b[34m",
}

SCOPE_DELIMITER = "."
RESERVED_JSON_KEYS = frozenset({"ts", "level", "msg", "service", "correlation_id"})


def parse_log_severity(value: str | None) -> LogSeverity:
    """Map a configured level name onto a severity; unknown names mean ``info``."""
    normalized = (value or "").strip().lower()
    if normalized == "warning":
        normalized = "warn"
    if normalized in SEVERITY_LEVELS:
        return cast(LogSeverity, normalized)
    return "info"


def parse_output_format(value: str | None) -> LogOutputFormat:
    normalized = (value or "").strip().lower()
    if normalized in OUTPUT_FORMATS:
        return cast(LogOutputFormat, normalized)
    return "json"


# ---------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------


class Logger(Protocol):
    def debug(self, message: str, fields: dict[str, Any] | None = None) -> None: ...
    def info(self, message: str, fields: dict[str, Any] | None = None) -> None: ...
    def warn(self, message: str, fields: dict[str, Any] | None = None) -> None: ...
    def error(
        self,
        error: BaseException | None,
        message: str | dict[str, Any] = "",
        fields: dict[str, Any] | None = None,
    ) -> None: ...
    def fatal(
        self,
        error: BaseException | None,
        message: str | dict[str, Any] = "",
        fields: dict[str, Any] | None = None,
    ) -> None: ...
    def create_child(self, scope_id: str) -> Logger: ...


class CorrelationIdGenerator(Protocol):
    def generate_root_id(self) -> str: ...
    def create_scoped_id(self, parent_id: str, scope: str) -> str: ...
    def extract_root_id(self, scoped_id: str) -> str: ...


class DiagnosticContext(Protocol):
    correlation_id_generator: CorrelationIdGenerator
    logger: Logger

    def create_child_logger(self, correlation_id: str) -> Logger: ...
    def get_child_diagnostic_context(
        self,
        default_logger_args: dict[str, Any] | None = None,
        scope_id: str | None = None,
    ) -> DiagnosticContext: ...


# ---------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------


@dataclass
class LogEntry:
    timestamp: str
    severity: LogSeverity
    message: str
    service_name: str
    correlation_id: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass
class DiagnosticConfig:
    minimum_severity: LogSeverity = "info"
    output_format: LogOutputFormat = "json"
    correlation_id: str | None = None
    default_logger_args: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------
# Correlation IDs
# ---------------------------------------------------------------------


class _CorrelationIdGenerator:
    def generate_root_id(self) -> str:
        return f"proc-{uuid.uuid4().hex[:12]}"

    def create_scoped_id(self, parent_id: str, scope: str) -> str:
        return f"{parent_id}{SCOPE_DELIMITER}{scope}"

    def extract_root_id(self, scoped_id: str) -> str:
        idx = scoped_id.find(SCOPE_DELIMITER)
        return scoped_id if idx == -1 else scoped_id[:idx]


def create_correlation_id_generator() -> CorrelationIdGenerator:
    return _CorrelationIdGenerator()


# ---------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------


def _serialize_field(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, (int, float, bool)) or value is None:
        return json.dumps(value)
    return f'"{value}"'


def format_log_entry(entry: LogEntry, fmt: LogOutputFormat) -> str:
    """Render a log entry in the requested format."""
    if fmt == "json":
        data: dict[str, Any] = {
            "ts": entry.timestamp,
            "level": entry.severity,
            "msg": entry.message,
            "service": entry.service_name,
        }
        if entry.correlation_id:
            data["correlation_id"] = entry.correlation_id
        for key, value in entry.fields.items():
            if key not in RESERVED_JSON_KEYS:
                data[key] = value
        return json.dumps(data, default=str)

    if fmt == "structured-text":
        parts = [
            f"ts={entry.timestamp}",
            f"service={entry.service_name}",
            f"level={entry.severity}",
            f'msg="{entry.message}"',
        ]
        if entry.correlation_id:
            parts.append(f"correlation_id={entry.correlation_id}")
        for k, v in entry.fields.items():
            parts.append(f"{k}={_serialize_field(v)}")
        return " ".join(parts)

    color = COLORS[entry.severity]
    parts = [
        f"{color}{entry.severity}{RESET}",
        f'service="{COLORS["msg"]}{entry.service_name}{RESET}"',
        f'ts="{COLORS["msg"]}{entry.timestamp}{RESET}"',
        f'msg="{color}{entry.message}{RESET}"',
    ]
    for k, v in entry.fields.items():
        parts.append(f"\n\t{k}={color}{_serialize_field(v)}{RESET}")
    return " ".join(parts)


def format_error_as_params(error: BaseException | None) -> dict[str, Any]:
    if error is None:
        return {}
    params: dict[str, Any] = {"error_name": type(error).__name__}
    tb = error.__traceback__
    if tb:
        params["stack"] = "".join(traceback.format_exception(type(error), error, tb))
    to_plain = getattr(error, "to_error_plain_object", None)
    if callable(to_plain):
        params.update(to_plain())
    return params


# ---------------------------------------------------------------------
# Logger implementation
# ---------------------------------------------------------------------


class _Logger:
    def __init__(self, service: str, corr_id: str | None, config: DiagnosticConfig):
        self.service = service
        self.corr_id = corr_id
        self.cfg = config
        self.min_level = SEVERITY_LEVELS[config.minimum_severity]

    def _emit(self, severity: LogSeverity, message: str, fields: dict[str, Any] | None):
        if SEVERITY_LEVELS[severity] < self.min_level:
            return

        entry = LogEntry(
            timestamp=datetime.now(UTC).isoformat(),
            severity=severity,
            message=message,
            service_name=self.service,
            correlation_id=self.corr_id,
            fields={**self.cfg.default_logger_args, **(fields or {})},
        )

        out = format_log_entry(entry, self.cfg.output_format)
        stream = sys.stderr if severity in ("error", "fatal") else sys.stdout
        print(out, file=stream, flush=True)

    def debug(self, msg: str, fields: dict[str, Any] | None = None):
        self._emit("debug", msg, fields)

    def info(self, msg: str, fields: dict[str, Any] | None = None):
        self._emit("info", msg, fields)

    def warn(self, msg: str, fields: dict[str, Any] | None = None):
        self._emit("warn", msg, fields)

    def _emit_error(
        self,
        severity: LogSeverity,
        err: BaseException | None,
        msg: str | dict[str, Any],
        fields: dict[str, Any] | None,
    ):
        payload = fields if isinstance(msg, str) else msg
        if isinstance(msg, str) and msg:
            message = msg
        elif err is not None:
            message = str(err) or type(err).__name__
        else:
            message = "Error occurred"
        extra = {"error": str(err)} if err is not None and message != str(err) else {}
        self._emit(severity, message, {**extra, **format_error_as_params(err), **(payload or {})})

    def error(
        self,
        err: BaseException | None,
        msg: str | dict[str, Any] = "",
        fields: dict[str, Any] | None = None,
    ):
        self._emit_error("error", err, msg, fields)

    def fatal(
        self,
        err: BaseException | None,
        msg: str | dict[str, Any] = "",
        fields: dict[str, Any] | None = None,
    ):
        self._emit_error("fatal", err, msg, fields)

    def create_child(self, scope: str) -> Logger:
        corr = f"{self.corr_id}{SCOPE_DELIMITER}{scope}" if self.corr_id else scope
        return create_logger(self.service, corr, self.cfg)


def create_logger(service: str, corr_id: str | None, cfg: DiagnosticConfig | None = None) -> Logger:
    return _Logger(service, corr_id, cfg or DiagnosticConfig())


# ---------------------------------------------------------------------
# Diagnostic context
# ---------------------------------------------------------------------


class _DiagnosticContext:
    def __init__(self, service: str, cfg: DiagnosticConfig):
        self.service = service
        self.cfg = cfg
        self.correlation_id_generator = create_correlation_id_generator()
        self.root_id = cfg.correlation_id or self.correlation_id_generator.generate_root_id()
        self.logger = create_logger(service, self.root_id, cfg)

    def create_child_logger(self, corr_id: str) -> Logger:
        return create_logger(self.service, corr_id, self.cfg)

    def get_child_diagnostic_context(
        self, default_logger_args: dict[str, Any] | None = None, scope_id: str | None = None
    ) -> DiagnosticContext:
        new_cfg = DiagnosticConfig(
            minimum_severity=self.cfg.minimum_severity,
            output_format=self.cfg.output_format,
            correlation_id=scope_id or self.root_id,
            default_logger_args={**self.cfg.default_logger_args, **(default_logger_args or {})},
        )
        return _DiagnosticContext(self.service, new_cfg)


def diagnostic_config_from_env(env: BaseModel) -> DiagnosticConfig:
    """Read LOG_LEVEL and LOG_FORMAT off an env model when it defines them."""
    return DiagnosticConfig(
        minimum_severity=parse_log_severity(getattr(env, "LOG_LEVEL", None)),
        output_format=parse_output_format(getattr(env, "LOG_FORMAT", None)),
    )


def create_diagnostic_context(
    env: BaseModel, cfg: DiagnosticConfig | None = None
) -> DiagnosticContext:
    if not hasattr(env, "PROCESS_NAME"):
        raise ValueError("env_context must have PROCESS_NAME attribute")
    return _DiagnosticContext(env.PROCESS_NAME, cfg or diagnostic_config_from_env(env))
