"""Tests for delivery outcome classification."""
import pytest

from config.settings import WhatsAppConfig
from job_queue.classifier import OutcomeClassifier
from models.schemas import DeliveryResult, OutcomeKind


@pytest.fixture
def classifier():
    return OutcomeClassifier.from_config(WhatsAppConfig())


def failed(code=None, message="boom"):
    return DeliveryResult(success=False, error_code=code, error_message=message)


class TestOutcomeClassifier:
    def test_success(self, classifier):
        assert classifier.classify(DeliveryResult(success=True, provider_message_id="wamid.1")) == OutcomeKind.SUCCESS

    def test_success_without_message_id(self, classifier):
        assert classifier.classify(DeliveryResult(success=True)) == OutcomeKind.SUCCESS

    @pytest.mark.parametrize("code", [4, 80007, 130429, 131048, 131056])
    def test_rate_limit_codes(self, classifier, code):
        assert classifier.classify(failed(code)) == OutcomeKind.RATE_LIMITED

    def test_template_param_mismatch_is_permanent(self, classifier):
        assert classifier.classify(failed(132001)) == OutcomeKind.PERMANENT

    def test_no_code_is_transient(self, classifier):
        assert classifier.classify(failed(None, "network error")) == OutcomeKind.TRANSIENT

    @pytest.mark.parametrize("code", [500, 131000, 100])
    def test_unknown_codes_are_transient(self, classifier, code):
        assert classifier.classify(failed(code)) == OutcomeKind.TRANSIENT

    def test_permanent_wins_when_listed_twice(self):
        classifier = OutcomeClassifier(rate_limit_codes=[7], permanent_codes=[7])
        assert classifier.classify(failed(7)) == OutcomeKind.PERMANENT

    def test_tables_are_configurable(self):
        config = WhatsAppConfig(rate_limit_codes=[99], permanent_error_codes=[131026])
        classifier = OutcomeClassifier.from_config(config)
        assert classifier.classify(failed(99)) == OutcomeKind.RATE_LIMITED
        assert classifier.classify(failed(131026)) == OutcomeKind.PERMANENT
        assert classifier.classify(failed(4)) == OutcomeKind.TRANSIENT
