"""Tests for diagnostics module."""

import json
import re

from lifecycle_service import (
    BindError,
    ServiceEnv,
    create_correlation_id_generator,
    create_diagnostic_context,
    create_logger,
)
from lifecycle_service.diagnostics import (
    DiagnosticConfig,
    parse_log_severity,
    parse_output_format,
)


def create_test_env_context(**overrides) -> ServiceEnv:
    return ServiceEnv(PROCESS_NAME="test-service", NODE_ENV="test", **overrides)


class TestCorrelationIdGenerator:
    def test_generates_root_ids_with_proc_prefix(self):
        generator = create_correlation_id_generator()
        root_id = generator.generate_root_id()
        assert re.match(r"^proc-[0-9a-f]{12}$", root_id)

    def test_creates_nested_scoped_ids(self):
        generator = create_correlation_id_generator()
        root_id = generator.generate_root_id()
        first_scope = generator.create_scoped_id(root_id, "heartbeat")
        second_scope = generator.create_scoped_id(first_scope, "tick")
        assert re.match(r"^proc-.+\.heartbeat\.tick$", second_scope)

    def test_extracts_root_id_from_scoped_id(self):
        generator = create_correlation_id_generator()
        assert generator.extract_root_id("proc-abc.worker.job") == "proc-abc"
        assert generator.extract_root_id("proc-simple") == "proc-simple"


class TestSeverityParsing:
    def test_known_levels_are_kept(self):
        assert parse_log_severity("debug") == "debug"
        assert parse_log_severity("WARN") == "warn"
        assert parse_log_severity("warning") == "warn"
        assert parse_log_severity("error") == "error"

    def test_unknown_or_missing_level_falls_back_to_info(self):
        assert parse_log_severity("verbose") == "info"
        assert parse_log_severity("") == "info"
        assert parse_log_severity(None) == "info"

    def test_unknown_format_falls_back_to_json(self):
        assert parse_output_format("human") == "human"
        assert parse_output_format("xml") == "json"


class TestLogger:
    def test_logs_info_messages_as_flat_json(self, capsys):
        logger = create_logger("test-service", "test-id", DiagnosticConfig(output_format="json"))
        logger.info("request completed", {"status": 200, "path": "/"})

        parsed = json.loads(capsys.readouterr().out.strip())

        assert parsed["level"] == "info"
        assert parsed["msg"] == "request completed"
        assert parsed["service"] == "test-service"
        assert parsed["correlation_id"] == "test-id"
        assert parsed["status"] == 200
        assert parsed["path"] == "/"
        assert "ts" in parsed

    def test_fields_cannot_override_reserved_keys(self, capsys):
        logger = create_logger("test-service", None, DiagnosticConfig(output_format="json"))
        logger.info("real message", {"msg": "spoofed", "level": "fatal"})

        parsed = json.loads(capsys.readouterr().out.strip())

        assert parsed["msg"] == "real message"
        assert parsed["level"] == "info"

    def test_logs_error_messages_to_stderr(self, capsys):
        logger = create_logger("test-service", "test-id", DiagnosticConfig(output_format="json"))
        logger.error(Exception("Test error"), "Shutdown callback failed", {"code": 500})

        captured = capsys.readouterr()
        parsed = json.loads(captured.err.strip())

        assert captured.out == ""
        assert parsed["level"] == "error"
        assert parsed["msg"] == "Shutdown callback failed"
        assert parsed["error"] == "Test error"
        assert parsed["error_name"] == "Exception"
        assert parsed["code"] == 500

    def test_error_without_message_uses_error_text(self, capsys):
        logger = create_logger("test-service", None, DiagnosticConfig(output_format="json"))
        logger.error(RuntimeError("boom"))

        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed["msg"] == "boom"
        assert "error" not in parsed

    def test_error_fields_include_plain_object_of_lifecycle_errors(self, capsys):
        logger = create_logger("test-service", None, DiagnosticConfig(output_format="json"))
        logger.fatal(BindError("127.0.0.1:80", "permission denied"), "Listener failed")

        parsed = json.loads(capsys.readouterr().err.strip())
        assert parsed["level"] == "fatal"
        assert parsed["bind_address"] == "127.0.0.1:80"
        assert parsed["reason"] == "permission denied"

    def test_error_with_dict_message(self, capsys):
        logger = create_logger("test-service", "test-id", DiagnosticConfig(output_format="json"))
        logger.error(Exception("Test error"), {"code": 500, "retry": True})

        parsed = json.loads(capsys.readouterr().err.strip())

        assert parsed["msg"] == "Test error"
        assert parsed["code"] == 500
        assert parsed["retry"] is True

    def test_respects_minimum_severity_level(self, capsys):
        logger = create_logger(
            "test-service",
            "test-id",
            DiagnosticConfig(minimum_severity="warn", output_format="json"),
        )

        logger.debug("Debug message")
        logger.info("Info message")
        logger.warn("Warning message")

        lines = [line for line in capsys.readouterr().out.strip().split("\n") if line]

        assert len(lines) == 1
        assert json.loads(lines[0])["level"] == "warn"

    def test_creates_child_logger_with_scoped_correlation_id(self, capsys):
        parent_logger = create_logger(
            "test-service", "parent-id", DiagnosticConfig(output_format="json")
        )
        parent_logger.create_child("worker").info("Child message")

        parsed = json.loads(capsys.readouterr().out.strip())
        assert parsed["correlation_id"] == "parent-id.worker"

    def test_formats_logs_as_human_readable_text(self, capsys):
        logger = create_logger("test-service", "test-id", DiagnosticConfig(output_format="human"))
        logger.info("Human readable message", {"key": "value"})

        output = capsys.readouterr().out

        assert "info" in output
        assert "service=" in output
        assert "Human readable message" in output
        assert "key=" in output

    def test_formats_logs_as_structured_text(self, capsys):
        logger = create_logger(
            "test-service", "test-id", DiagnosticConfig(output_format="structured-text")
        )
        logger.info("Structured message", {"key": "value", "count": 42, "ok": True})

        output = capsys.readouterr().out

        assert "level=info" in output
        assert 'msg="Structured message"' in output
        assert "correlation_id=test-id" in output
        assert 'key="value"' in output
        assert "count=42" in output
        assert "ok=true" in output

    def test_omits_correlation_id_when_absent(self, capsys):
        logger = create_logger("test-service", None, DiagnosticConfig(output_format="json"))
        logger.info("Message without correlation")

        parsed = json.loads(capsys.readouterr().out.strip())
        assert "correlation_id" not in parsed


class TestDiagnosticContext:
    def test_config_is_derived_from_env(self, capsys):
        context = create_diagnostic_context(
            create_test_env_context(LOG_LEVEL="error", LOG_FORMAT="json")
        )

        context.logger.info("hidden")
        context.logger.error(None, "shown")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert json.loads(captured.err.strip())["msg"] == "shown"

    def test_root_logger_uses_generated_correlation_id(self, capsys):
        context = create_diagnostic_context(
            create_test_env_context(), DiagnosticConfig(output_format="json")
        )
        context.logger.info("Test message")

        parsed = json.loads(capsys.readouterr().out.strip())
        assert re.match(r"^proc-[0-9a-f]{12}$", parsed["correlation_id"])

    def test_child_context_uses_scope_id_and_default_args(self, capsys):
        parent_context = create_diagnostic_context(
            create_test_env_context(),
            DiagnosticConfig(output_format="json", correlation_id="parent-id"),
        )

        child_context = parent_context.get_child_diagnostic_context(
            {"method": "GET"}, "7-abc123"
        )
        child_context.logger.info("Child context message")

        parsed = json.loads(capsys.readouterr().out.strip())
        assert parsed["correlation_id"] == "7-abc123"
        assert parsed["method"] == "GET"
