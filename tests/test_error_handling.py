"""
Tests for error handling utilities and log formatting.
"""

import json
import logging
from unittest.mock import MagicMock, patch

import pytest

from safe_upgrade.errors import (
    DigestNotFoundError,
    NetworkError,
    RestoreTargetMissingError,
    TrustError,
    UserCancelledError,
)
from safe_upgrade.logging_config import FeatureArea, UpgradeFormatter, UpgradeLogger, get_logger
from safe_upgrade.utils.error_handling import (
    ErrorCategory,
    ErrorSeverity,
    categorize,
    determine_severity,
    handle_error,
    with_error_handling,
)


def operation(side_effect):
    func = MagicMock(side_effect=side_effect)
    func.__name__ = "fetch_provenance"
    return func


@pytest.fixture
def no_sleep():
    with patch('safe_upgrade.utils.error_handling.time.sleep') as mock_sleep:
        yield mock_sleep


class TestUpgradeErrors:
    """Tests for the error hierarchy."""

    def test_describe_includes_context(self):
        error = TrustError("signature invalid", path=".git/hooks/pre-push", phase="fetch_and_verify_new")
        text = error.describe()
        assert "signature invalid" in text
        assert ".git/hooks/pre-push" in text
        assert "fetch_and_verify_new" in text

    def test_restore_target_next_step(self):
        error = RestoreTargetMissingError(".git/hooks/pre-push", "/backups/pre-push.20250101_120000_000000.backup")
        assert error.next_step.startswith("restore manually from backup at")


class TestCategorization:
    """Tests for categorize() and determine_severity()."""

    @pytest.mark.parametrize('error,category', [
        (TrustError("bad"), ErrorCategory.TRUST),
        (NetworkError("down"), ErrorCategory.NETWORK),
        (UserCancelledError("no"), ErrorCategory.USER),
        (PermissionError("denied"), ErrorCategory.FILESYSTEM),
        (RuntimeError("?"), ErrorCategory.UNKNOWN),
    ])
    def test_categorize(self, error, category):
        assert categorize(error) == category

    def test_trust_is_critical(self):
        assert determine_severity(TrustError("bad"), ErrorCategory.TRUST) == ErrorSeverity.CRITICAL

    def test_absent_information_is_warning(self):
        error = DigestNotFoundError("0.7.0", ".git/hooks/pre-push")
        assert determine_severity(error, ErrorCategory.UNKNOWN) == ErrorSeverity.WARNING

    def test_cancel_is_info(self):
        assert determine_severity(UserCancelledError("no"), ErrorCategory.USER) == ErrorSeverity.INFO


class TestHandleError:

    def test_logs_at_severity(self, caplog):
        with caplog.at_level(logging.INFO, logger='safe_upgrade.utils.error_handling'):
            context = handle_error(NetworkError("connection reset"), "fetch_provenance")

        assert context.severity == ErrorSeverity.WARNING
        assert caplog.records[-1].levelno == logging.WARNING
        assert "fetch_provenance failed" in caplog.text

    def test_reraise(self):
        with pytest.raises(TrustError):
            handle_error(TrustError("bad"), "verify", reraise=True)

    def test_context_dict(self):
        context = handle_error(TrustError("bad", path="pre-push"), "verify", additional_context={'version': '0.7.0'})
        data = context.to_dict()
        assert data['error_type'] == 'TrustError'
        assert data['category'] == 'trust'
        assert data['additional_context'] == {'version': '0.7.0'}


class TestWithErrorHandling:
    """Tests for the retry decorator."""

    def test_retries_then_succeeds(self, no_sleep):
        func = operation([NetworkError("blip"), 'ok'])
        wrapped = with_error_handling(retry_count=1, retry_delay=0.5)(func)

        assert wrapped() == 'ok'
        assert func.call_count == 2
        no_sleep.assert_called_once_with(0.5)

    def test_reraise_after_retries(self, no_sleep):
        func = operation(NetworkError("down"))
        wrapped = with_error_handling(retry_count=1, reraise=True)(func)

        with pytest.raises(NetworkError):
            wrapped()
        assert func.call_count == 2

    def test_only_listed_exceptions_retried(self, no_sleep):
        func = operation(TrustError("bad"))
        wrapped = with_error_handling(retry_count=3, reraise=True, retry_exceptions=(NetworkError,))(func)

        with pytest.raises(TrustError):
            wrapped()
        assert func.call_count == 1
        no_sleep.assert_not_called()

    def test_default_return(self, no_sleep):
        func = operation(OSError("gone"))
        wrapped = with_error_handling(default_return='fallback')(func)
        assert wrapped() == 'fallback'


class TestLogging:
    """Tests for the upgrade logger and formatter."""

    def make_record(self, name='safe_upgrade.integrity.registry', msg='Digest resolved', extra=None):
        record = logging.LogRecord(name, logging.INFO, __file__, 1, msg, (), None)
        if extra:
            record.extra_data = extra
        return record

    def test_text_format(self):
        formatter = UpgradeFormatter(use_colors=False)
        text = formatter.format(self.make_record(extra={'version': '0.7.0'}))
        assert text == "[INFO] Digest resolved | version=0.7.0"

    def test_json_format(self):
        formatter = UpgradeFormatter(use_colors=False, json_format=True)
        data = json.loads(formatter.format(self.make_record()))
        assert data['level'] == 'INFO'
        assert data['feature'] == 'registry'
        assert data['message'] == 'Digest resolved'

    def test_feature_detection(self):
        assert get_logger('safe_upgrade.backup').feature == FeatureArea.BACKUP
        assert get_logger('safe_upgrade.integrity.provenance').feature == FeatureArea.PROVENANCE

    def test_security_level_always_logged(self, caplog):
        logger = get_logger('safe_upgrade.tests.security')
        assert isinstance(logger, UpgradeLogger)
        with caplog.at_level(logging.CRITICAL + 1):
            logger.security("Provenance verified")
        assert caplog.records[-1].levelname == 'SECURITY'
