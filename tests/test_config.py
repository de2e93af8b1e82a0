"""
Tests for configuration, structured logging and the error taxonomy
"""

import json
import logging
import pytest
from decimal import Decimal

from origination.config import OriginationConfig, get_config, reload_config
from origination.logging_config import JSONFormatter, setup_logging, log_action
from origination.exceptions import (
    OriginationError, ValidationFailure, InvalidTransitionError, FieldValidationError,
    MissingRequiredFieldError, InvalidCalculationInputError, ConvergenceFailureError, NotFoundError
)
from origination.status import ApplicationStatus


class TestConfig:
    """Test environment-based settings"""

    def test_defaults(self):
        settings = OriginationConfig()

        assert settings.max_payments == 1000
        assert settings.cat_max_iterations == 100
        assert settings.counter_offer_min_amount == Decimal("1000")
        assert settings.counter_offer_max_term_months == 120
        assert settings.approve_on_counter_offer_acceptance is False
        assert settings.draft_expiry_days == 30

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ORIGINATION_MAX_PAYMENTS", "500")
        monkeypatch.setenv("ORIGINATION_APPROVE_ON_COUNTER_OFFER_ACCEPTANCE", "true")
        monkeypatch.setenv("ORIGINATION_DEFAULT_ANNUAL_RATE", "39.5")

        settings = OriginationConfig()

        assert settings.max_payments == 500
        assert settings.approve_on_counter_offer_acceptance is True
        assert settings.default_annual_rate == Decimal("39.5")

    def test_reload_config(self, monkeypatch):
        monkeypatch.setenv("ORIGINATION_STALE_AFTER_HOURS", "12")
        try:
            assert reload_config().stale_after_hours == 12
            assert get_config().stale_after_hours == 12
        finally:
            monkeypatch.delenv("ORIGINATION_STALE_AFTER_HOURS")
            reload_config()


class TestLogging:
    """Test structured log output"""

    def test_json_formatter_includes_structured_fields(self):
        record = logging.LogRecord("origination.service", logging.INFO, __file__, 1, "moved", None, None)
        record.user_id = "STAFF001"
        record.action = "status_change"
        record.resource = "application:APP001"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "origination.service"
        assert entry["message"] == "moved"
        assert entry["user_id"] == "STAFF001"
        assert entry["resource"] == "application:APP001"
        assert "correlation_id" not in entry

    def test_setup_logging(self):
        logger = setup_logging("debug", "text", logger_name="origination_setup_test")

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

        logger = setup_logging("warning", "json", logger_name="origination_setup_test")
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_log_action(self, caplog):
        logger = logging.getLogger("origination.test_log_action")
        with caplog.at_level(logging.INFO, logger="origination.test_log_action"):
            log_action(logger, "info", "Application APP001 moved", user_id="STAFF001",
                       action="status_change", resource="application:APP001", extra={"version": 2})

        record = caplog.records[-1]
        assert record.getMessage() == "Application APP001 moved"
        assert record.action == "status_change"
        assert record.extra == {"version": 2}


class TestExceptions:
    """Test the error taxonomy"""

    def test_validation_failures_are_value_errors(self):
        error = MissingRequiredFieldError("reason")

        assert isinstance(error, FieldValidationError)
        assert isinstance(error, ValidationFailure)
        assert isinstance(error, ValueError)
        assert error.field == "reason"
        assert error.code == "MISSING_REQUIRED_FIELD"

    def test_invalid_transition_details(self):
        error = InvalidTransitionError(ApplicationStatus.DRAFT, ApplicationStatus.APPROVED)

        assert error.details == {"current_status": "DRAFT", "attempted_status": "APPROVED"}
        assert "DRAFT" in str(error)

    def test_calculation_input_error(self):
        error = InvalidCalculationInputError("amount", "Amount must be greater than zero")
        assert error.code == "INVALID_CALCULATION_INPUT"
        assert error.field == "amount"

    def test_service_faults_are_not_validation_failures(self):
        error = ConvergenceFailureError(100, "0.0375")

        assert isinstance(error, OriginationError)
        assert not isinstance(error, ValidationFailure)
        assert error.details["iterations"] == 100

    def test_not_found(self):
        error = NotFoundError("application", "APP404")
        assert isinstance(error, LookupError)
        assert error.message == "Application APP404 not found"
