"""Tests for structured logging module."""

import logging

from salonbilling.core.logging import (
    LoggerMixin,
    add_correlation_id,
    add_service_context,
    add_tenant_id,
    bind_contextvars,
    clear_contextvars,
    clear_correlation_id,
    configure_logging,
    drop_color_message_key,
    get_correlation_id,
    get_logger,
    redact_secrets,
    set_correlation_id,
    tenant_context,
    tenant_id_ctx,
    unbind_contextvars,
)

_LOGGER = logging.getLogger("test")


class TestCorrelationId:
    """Tests for correlation ID management."""

    def setup_method(self) -> None:
        """Clear correlation ID before each test."""
        clear_correlation_id()

    def test_set_and_get_correlation_id(self) -> None:
        """Test setting and getting correlation ID."""
        assert get_correlation_id() is None

        correlation_id = set_correlation_id("test-correlation-123")
        assert correlation_id == "test-correlation-123"
        assert get_correlation_id() == "test-correlation-123"

    def test_auto_generate_correlation_id(self) -> None:
        """Test auto-generation of correlation ID."""
        correlation_id = set_correlation_id()
        assert len(correlation_id) == 36  # UUID format

    def test_processor_adds_correlation_id(self) -> None:
        """Test the processor copies the ID into the event."""
        assert "correlation_id" not in add_correlation_id(_LOGGER, "info", {})
        set_correlation_id("corr-1")
        assert add_correlation_id(_LOGGER, "info", {})["correlation_id"] == "corr-1"


class TestTenantContext:
    """Tests for tenant tagging."""

    def test_tenant_context_sets_and_resets(self) -> None:
        """Test the tenant is only visible inside the block."""
        assert tenant_id_ctx.get() is None
        with tenant_context("salon-1"):
            assert tenant_id_ctx.get() == "salon-1"
            with tenant_context("salon-2"):
                assert tenant_id_ctx.get() == "salon-2"
            assert tenant_id_ctx.get() == "salon-1"
        assert tenant_id_ctx.get() is None

    def test_tenant_context_resets_on_error(self) -> None:
        """Test an exception inside the block does not leak the tenant."""
        try:
            with tenant_context("salon-1"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert tenant_id_ctx.get() is None

    def test_add_tenant_id(self) -> None:
        """Test the processor tags events with the active tenant."""
        assert "tenant_id" not in add_tenant_id(_LOGGER, "info", {"event": "x"})
        with tenant_context("salon-1"):
            assert add_tenant_id(_LOGGER, "info", {"event": "x"})["tenant_id"] == "salon-1"

    def test_explicit_tenant_id_wins(self) -> None:
        """Test a tenant passed at the call site is not overwritten."""
        with tenant_context("salon-1"):
            event = add_tenant_id(_LOGGER, "info", {"tenant_id": "salon-9"})
        assert event["tenant_id"] == "salon-9"


class TestProcessors:
    """Tests for the remaining processors."""

    def test_service_context(self) -> None:
        """Test every event is tagged with the service name."""
        assert add_service_context(_LOGGER, "info", {})["service"] == "salonbilling"

    def test_drop_color_message(self) -> None:
        """Test uvicorn's color_message is removed."""
        event = drop_color_message_key(_LOGGER, "info", {"color_message": "x", "event": "y"})
        assert event == {"event": "y"}

    def test_redact_secrets(self) -> None:
        """Test processor secrets are masked before rendering."""
        event = redact_secrets(_LOGGER, "info", {"client_secret": "pi_secret", "tier": "starter"})
        assert event == {"client_secret": "***", "tier": "starter"}


class TestStructuredLogging:
    """Tests for structured logging configuration."""

    def setup_method(self) -> None:
        """Clear context before each test."""
        clear_contextvars()

    def test_configure_logging_json_mode(self) -> None:
        """Test JSON logging configuration."""
        configure_logging(json_logs=True, log_level="INFO")
        assert logging.getLogger().level == logging.INFO
        assert logging.getLogger("stripe").level == logging.WARNING

    def test_configure_logging_console_mode(self) -> None:
        """Test console logging configuration."""
        configure_logging(json_logs=False, log_level="debug")
        assert logging.getLogger().level == logging.DEBUG
        assert len(logging.getLogger().handlers) == 1

    def test_context_binding(self) -> None:
        """Test binding, unbinding and clearing context variables."""
        bind_contextvars(tenant_id="salon-1", request_id="abc")
        unbind_contextvars("request_id")
        clear_contextvars()

    def test_logger_mixin(self) -> None:
        """Test that LoggerMixin provides a logger property."""

        class BillingJob(LoggerMixin):
            def run(self) -> str:
                with tenant_context("salon-1"):
                    self.logger.info("job_ran", action="testing")
                return "done"

        assert BillingJob().run() == "done"
        assert get_logger("named") is not None
