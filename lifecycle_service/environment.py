"""
Environment configuration parsing and validation.

Provides:
- Typed parsing of environment variables into Pydantic models
- Coercion of env strings (bool, int, float, dict, list, BaseModel, durations)
- Sensitive value redaction in error messages
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from re import Pattern
from typing import Annotated, Any, Generic, TypeVar, Union, overload

from pydantic import BaseModel, BeforeValidator, Field, ValidationError

SENSITIVE_PATTERNS: list[Pattern[str]] = [
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"key", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
    re.compile(r"credential", re.IGNORECASE),
    re.compile(r"auth", re.IGNORECASE),
]

DURATION_UNITS: dict[str, float] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: Any) -> float:
    """Convert a duration to seconds.

    Numbers are taken as seconds. Strings may be plain numbers (``"1.5"``) or
    unit sequences such as ``"500ms"``, ``"2s"`` or ``"1m30s"``. An empty value
    is zero.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ValueError("duration must not be a boolean")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            seconds = float(text)
        except ValueError:
            seconds = 0.0
            pos = 0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise ValueError(f'invalid duration "{text}"') from None

    if seconds < 0:
        raise ValueError("duration must not be negative")
    return seconds


Duration = Annotated[float, BeforeValidator(parse_duration)]


class DefaultEnv(BaseModel):
    """Base environment configuration schema.

    Custom environment models extend this class so PROCESS_NAME and NODE_ENV
    are always available.
    """

    PROCESS_NAME: str = Field(..., min_length=1, description="Name of the process")
    NODE_ENV: str | None = Field(default="development", description="Environment name")
    PORT: int = Field(default=8080, ge=0, le=65535, description="HTTP port number")


class ServiceEnv(DefaultEnv):
    PROCESS_NAME: str = Field(
        default="lifecycle-service", min_length=1, description="Name of the process"
    )
    HOST: str = Field(default="0.0.0.0", description="Interface the listener binds to")
    LOG_LEVEL: str = Field(default="info", description="debug, info, warn or error")
    LOG_FORMAT: str = Field(default="json", description="json, human or structured-text")
    STARTUP_DELAY: Duration = Field(default=0.0, description="Delay before listening")
    SHUTDOWN_TIMEOUT: Duration = Field(
        default=10.0, gt=0, description="Graceful stop timeout before forcing"
    )
    HEARTBEAT_INTERVAL: Duration = Field(default=0.0, description="Heartbeat period, 0 disables")
    WORKER_INTERVAL: Duration = Field(default=0.0, description="Worker period, 0 disables")

    @property
    def bind_address(self) -> str:
        if ":" in self.HOST:
            return f"[{self.HOST}]:{self.PORT}"
        return f"{self.HOST}:{self.PORT}"


T = TypeVar("T", bound=DefaultEnv)


@dataclass
class EnvValidationError:
    path: str
    message: str
    value: Any = None

    def __str__(self) -> str:
        val = f" (value={self.value!r})" if self.value is not None else ""
        return f"{self.path}: {self.message}{val}"


@dataclass
class ParsedEnv(Generic[T]):
    config: T
    errors: list[EnvValidationError] | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors


class EnvConfigurationError(ValueError):
    """Raised when the environment does not satisfy the model."""

    def __init__(self, errors: list[EnvValidationError], redact_sensitive: bool) -> None:
        super().__init__(format_validation_errors(errors, redact_sensitive))
        self.errors = errors


@dataclass
class EnvParserConfig:
    redact_sensitive: bool = True
    source: dict[str, str | None] | None = None

    def __post_init__(self):
        if self.source is None:
            self.source = dict(os.environ)


def redact_value(key: str, value: Any) -> Any:
    if any(p.search(key) for p in SENSITIVE_PATTERNS):
        return "[REDACTED]"
    return value


def _unwrap_optional_type(tp: Any) -> Any:
    if getattr(tp, "__origin__", None) is Union or type(tp).__name__ == "UnionType":
        args = [a for a in tp.__args__ if a is not type(None)]
        if args:
            return args[0]
    return tp


def coerce_environment_value(value: str | None, target_type: Any) -> Any:
    """Convert an environment string to the field's Python type."""
    if value in (None, ""):
        return None

    target_type = _unwrap_optional_type(target_type)

    try:
        if target_type is bool:
            lower = value.lower()
            if lower in {"true", "1", "yes", "on"}:
                return True
            if lower in {"false", "0", "no", "off"}:
                return False
            raise ValueError(f'Cannot interpret "{value}" as boolean')

        if target_type is int:
            return int(value)
        if target_type is float:
            return float(value)

        if target_type in (dict, list):
            return json.loads(value)

        if isinstance(target_type, type) and issubclass(target_type, BaseModel):
            return target_type.model_validate_json(value)

        return value
    except Exception as e:
        raise ValueError(f"Failed to coerce '{value}' to {target_type}: {e}") from e


def format_validation_errors(errors: list[EnvValidationError], redact_sensitive: bool) -> str:
    lines = ["Environment configuration validation failed:"]
    for err in errors:
        val = redact_value(err.path, err.value) if redact_sensitive else err.value
        val_part = f", got {json.dumps(val, default=str)}" if val is not None else ""
        lines.append(f"  - {err.path}: {err.message}{val_part}")
    return "\n".join(lines)


def convert_pydantic_errors(
    exc: ValidationError, source: dict[str, Any], redact: bool
) -> list[EnvValidationError]:
    results: list[EnvValidationError] = []
    for err in exc.errors():
        path = ".".join(str(x) for x in err["loc"]) or "root"

        val: Any = source
        for part in err["loc"]:
            if isinstance(val, dict):
                val = val.get(part)
            else:
                val = None
                break

        if redact:
            val = redact_value(path, val)

        results.append(EnvValidationError(path, err["msg"], val))
    return results


class EnvParser:
    """Parse and validate environment variables into a Pydantic model."""

    def _coerce_source(
        self, source: dict[str, str | None], model: type[DefaultEnv]
    ) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for name, field in model.model_fields.items():
            raw = source.get(name)
            if raw in (None, ""):
                continue
            try:
                result[name] = coerce_environment_value(raw, field.annotation)
            except ValueError:
                # leave it to the model's validators (durations, literals)
                result[name] = raw
        return result

    def validate(
        self, model: type[T], source: dict[str, Any], config: EnvParserConfig
    ) -> ParsedEnv[T]:
        """Validate without raising."""
        try:
            return ParsedEnv(model.model_validate(source), None)
        except ValidationError as e:
            errs = convert_pydantic_errors(e, source, config.redact_sensitive)
            return ParsedEnv(model.model_construct(**source), errs)

    def parse(self, model: type[T], config: EnvParserConfig | None = None) -> T:
        """Parse the environment into a validated model; raise EnvConfigurationError."""
        config = config or EnvParserConfig()
        coerced = self._coerce_source(config.source or {}, model)
        result = self.validate(model, coerced, config)

        if result.errors:
            raise EnvConfigurationError(result.errors, config.redact_sensitive)
        return result.config


def create_env_parser() -> EnvParser:
    return EnvParser()


@overload
def create_env_context(model: type[T], config: EnvParserConfig | None = None) -> T: ...
@overload
def create_env_context(model: None = None, config: EnvParserConfig | None = None) -> ServiceEnv: ...


def create_env_context(
    model: type[T] | None = None,
    config: EnvParserConfig | None = None,
) -> T | ServiceEnv:
    """Create a typed environment configuration context."""
    parser = EnvParser()
    if model is None:
        return parser.parse(ServiceEnv, config)

    if not issubclass(model, DefaultEnv):
        raise TypeError(
            f"{model.__name__} must extend DefaultEnv (must define PROCESS_NAME and NODE_ENV)."
        )
    return parser.parse(model, config)
