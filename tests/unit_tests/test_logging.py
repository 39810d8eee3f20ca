"""Test suite for logging configuration, audit and alert sinks."""

import json
import logging
import sys
from unittest.mock import MagicMock
from unittest.mock import patch

import pytest
from fastapi import Request
from fastapi import Response

from scim_sync.monitoring.logger import NOISY_LOGGERS
from scim_sync.monitoring.logger import REDACTED
from scim_sync.monitoring.logger import configure_logger
from scim_sync.monitoring.logger import get_formatted_stacktrace
from scim_sync.monitoring.logger import log_response_info
from scim_sync.monitoring.logger import process_log_record
from scim_sync.monitoring.request_context import ANONYMOUS_ACTOR
from scim_sync.monitoring.request_context import get_actor_from_headers
from scim_sync.monitoring.request_context import get_request_context
from scim_sync.monitoring.request_context import request_id_ctx
from scim_sync.sync.alerts import LoggingAlertSink
from scim_sync.sync.alerts import OperationalAlert
from scim_sync.sync.alerts import log_operator_notification
from scim_sync.sync.audit import CompositeAuditSink
from scim_sync.sync.audit import InMemoryAuditSink
from scim_sync.sync.audit import LoggingAuditSink
from scim_sync.sync.enums import AuditOutcome
from scim_sync.sync.enums import DriftType
from scim_sync.sync.enums import ResourceType
from scim_sync.sync.enums import Severity
from scim_sync.sync.exceptions import TransientProviderError
from scim_sync.sync.models import AuditEntry
from scim_sync.sync.models import DriftReport
from tests.consts import ACTOR
from tests.consts import API_BASE
from tests.consts import PROVIDER_ID
from tests.consts import TENANT_ID


def _raised():
    try:
        raise ValueError("boom")
    except ValueError:
        return sys.exc_info()


class TestConfigureLogger:
    """Tests for configure_logger."""

    @patch("scim_sync.monitoring.logger.logger")
    def test_replaces_default_sink(self, mock_logger):
        configure_logger(log_level="debug")

        mock_logger.remove.assert_called_once_with()
        mock_logger.add.assert_called_once()
        kwargs = mock_logger.add.call_args.kwargs
        assert kwargs["level"] == "DEBUG"
        assert kwargs["sink"] is sys.stdout
        assert kwargs["filter"] is process_log_record

    @patch("scim_sync.monitoring.logger.logger")
    def test_quiets_noisy_loggers(self, mock_logger):
        configure_logger()

        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING


class TestProcessLogRecord:
    """Tests for the record filter."""

    def test_extra_serialized_to_json(self):
        record = {"extra": {"tenant_id": TENANT_ID, "count": 3}, "exception": None}

        processed = process_log_record(record)

        assert json.loads(processed["extra"]) == {"tenant_id": TENANT_ID, "count": 3}
        assert processed["stacktrace"] == ""

    def test_empty_extra_untouched(self):
        processed = process_log_record({"extra": {}, "exception": None})

        assert processed["extra"] == {}

    def test_exception_adds_single_line_stacktrace(self):
        processed = process_log_record({"extra": {}, "exception": _raised()})

        assert "ValueError: boom" in processed["stacktrace"]
        assert "\n" not in processed["stacktrace"]

    def test_formatted_stacktrace_keeps_newlines_when_asked(self):
        stacktrace = get_formatted_stacktrace(_raised(), replace_newline_character_with_carriage_return=False)

        assert "\n" in stacktrace
        assert "\r" not in stacktrace

    @pytest.mark.parametrize(
        "extra,expected",
        [
            ({"tenant_id": TENANT_ID, "provider_id": PROVIDER_ID}, f"{TENANT_ID}:{PROVIDER_ID}"),
            ({"tenant_id": TENANT_ID}, TENANT_ID),
            ({}, "-"),
        ],
        ids=["pair", "tenant-only", "none"],
    )
    def test_pair_label(self, extra, expected):
        processed = process_log_record({"extra": dict(extra), "exception": None})

        assert processed["pair"] == expected

    def test_credentials_are_redacted(self):
        record = {
            "extra": {"provider_id": PROVIDER_ID, "config": {"bearer_token": "s3cr3t", "base_url": "https://idp.test"}},
            "exception": None,
        }

        processed = process_log_record(record)

        extra = json.loads(processed["extra"])
        assert extra["config"] == {"bearer_token": REDACTED, "base_url": "https://idp.test"}
        assert "s3cr3t" not in processed["extra"]

    def test_request_id_added_while_serving_a_request(self):
        token = request_id_ctx.set("req-42")
        try:
            processed = process_log_record({"extra": {"tenant_id": TENANT_ID}, "exception": None})
        finally:
            request_id_ctx.reset(token)

        assert json.loads(processed["extra"])["request_id"] == "req-42"

    def test_explicit_request_id_wins(self):
        token = request_id_ctx.set("req-42")
        try:
            processed = process_log_record({"extra": {"request_id": "job-7"}, "exception": None})
        finally:
            request_id_ctx.reset(token)

        assert json.loads(processed["extra"])["request_id"] == "job-7"


class TestRequestLogging:
    @patch("scim_sync.monitoring.logger.logger")
    def test_response_headers_are_redacted(self, mock_logger):
        response = Response(status_code=401, headers={"Authorization": "Bearer abc", "X-Request-ID": "req-1"})

        log_response_info(response)

        info = mock_logger.debug.call_args.kwargs["http_response"]
        assert info["status_code"] == 401
        assert info["headers"]["authorization"] == REDACTED
        assert info["headers"]["x-request-id"] == "req-1"

    @pytest.mark.parametrize(
        "headers,expected",
        [({"X-Actor": "ops@acme.test"}, "ops@acme.test"), ({"X-Actor": "  "}, ANONYMOUS_ACTOR), ({}, ANONYMOUS_ACTOR)],
        ids=["present", "blank", "absent"],
    )
    def test_actor_from_headers(self, headers, expected):
        mock_request = MagicMock(spec=Request)
        mock_request.headers = headers

        assert get_actor_from_headers(mock_request) == expected


class TestRequestContextMiddleware:
    """Tests for the request context middleware."""

    def test_request_id_is_echoed(self, client):
        response = client.get(f"{API_BASE}/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_generated(self, client):
        response = client.get(f"{API_BASE}/health")

        assert len(response.headers["X-Request-ID"]) == 36

    @patch("scim_sync.monitoring.request_context.logger")
    def test_request_is_logged_with_actor(self, mock_logger, client):
        client.put(f"{API_BASE}/sync/{TENANT_ID}/{PROVIDER_ID}/direction", json={"direction": "TARGET_TO_SOURCE"})

        assert mock_logger.contextualize.call_args.kwargs["actor"] == ACTOR
        kwargs = mock_logger.info.call_args.kwargs
        assert kwargs["status_code"] == 200
        assert kwargs["request_body"] == {"direction": "TARGET_TO_SOURCE"}

    def test_context_outside_a_request(self):
        assert get_request_context() == {
            "request_id": "",
            "client_ip": "",
            "actor": "",
            "user_agent": "",
            "request_path": "",
        }


class TestAuditSinks:
    """Tests for audit sink implementations."""

    @staticmethod
    def _entry(outcome=AuditOutcome.SUCCESS) -> AuditEntry:
        return AuditEntry(
            tenant_id=TENANT_ID,
            provider_id=PROVIDER_ID,
            actor="ops",
            operation="DriftAutoApplied",
            resource_type="USER",
            resource_id="u1",
            outcome=outcome,
        )

    @pytest.mark.asyncio
    @patch("scim_sync.sync.audit.logger")
    async def test_logging_sink_levels(self, mock_logger):
        sink = LoggingAuditSink()

        await sink.record(self._entry())
        await sink.record(self._entry(AuditOutcome.FAILURE))

        levels = [call.args[0] for call in mock_logger.log.call_args_list]
        assert levels == ["INFO", "WARNING"]
        assert mock_logger.log.call_args.kwargs["audit"] is True

    @pytest.mark.asyncio
    async def test_composite_fans_out(self):
        first, second = InMemoryAuditSink(), InMemoryAuditSink()

        await CompositeAuditSink(first, second).record(self._entry())

        assert len(first.entries) == len(second.entries) == 1

    @pytest.mark.asyncio
    async def test_in_memory_find(self):
        sink = InMemoryAuditSink()
        await sink.record(self._entry())

        assert sink.find(operation="DriftAutoApplied", resource_id="u1")
        assert sink.find(resource_id="u2") == []


class TestAlertLogging:
    """Tests for operator-facing log output."""

    @pytest.mark.asyncio
    async def test_logging_alert_sink_is_critical(self, mock_alert_logger):
        alert = OperationalAlert(
            tenant_id=TENANT_ID, provider_id=PROVIDER_ID, consecutive_failures=3, message="upstream 503"
        )

        await LoggingAlertSink().send(alert)

        mock_alert_logger.critical.assert_called_once()
        assert mock_alert_logger.critical.call_args.kwargs["alert"] is True

    @pytest.mark.asyncio
    async def test_operator_notification(self, mock_alert_logger):
        report = DriftReport(
            tenant_id=TENANT_ID,
            provider_id=PROVIDER_ID,
            drift_type=DriftType.DELETED,
            resource_type=ResourceType.USER,
            resource_id="u1",
            severity=Severity.HIGH,
        )

        await log_operator_notification(report)

        kwargs = mock_alert_logger.warning.call_args.kwargs
        assert kwargs["notification"] is True
        assert kwargs["severity"] == "HIGH"


class TestEngineLogging:
    """Structured log output from the reconciler and polling service."""

    @pytest.mark.asyncio
    async def test_poll_failure_is_logged(self, mock_logger, polling, provider):
        provider.fail_next("list_users", TransientProviderError("timeout"))

        await polling.trigger_poll(TENANT_ID, PROVIDER_ID)

        kwargs = mock_logger["polling"].warning.call_args.kwargs
        assert kwargs["error_code"] == "TRANSIENT_PROVIDER_ERROR"
        assert kwargs["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_batch_summary_is_logged(self, mock_logger, reconciler):
        await reconciler.reconcile_batch(TENANT_ID, PROVIDER_ID, [])

        kwargs = mock_logger["reconciler"].info.call_args.kwargs
        assert kwargs["total"] == 0
        assert kwargs["auto_applied"] == 0
