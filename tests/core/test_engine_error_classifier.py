import pytest

from core.error_classifier import EngineErrorClassifier, EngineErrorType, ErrorSeverity
from core.models import EngineResult


class TestEngineErrorClassifier:
    """Tests for engine failure classification."""

    def setup_method(self):
        self.classifier = EngineErrorClassifier()
        self.classifier.initialize()

    def test_spawn_error_is_terminal(self):
        error = self.classifier.classify(EngineResult(success=False, error="No such file: node", error_type="spawn_error"))

        assert error.type is EngineErrorType.SPAWN_ERROR
        assert error.severity is ErrorSeverity.TERMINAL
        assert error.details == "No such file: node"

    def test_invalid_json_keeps_stdout(self):
        result = EngineResult(success=False, stdout="<html>oops", error="Invalid JSON output", error_type="invalid_json")
        error = self.classifier.classify(result)

        assert error.type is EngineErrorType.INVALID_JSON
        assert error.details == "<html>oops"

    @pytest.mark.parametrize("stderr,expected", [
        ("Error: No steps found for type url", EngineErrorType.NO_STEPS),
        ("Selector li.result not found", EngineErrorType.SELECTOR_TIMEOUT),
        ("FetchError: request failed, reason: ECONNREFUSED", EngineErrorType.NETWORK_ERROR),
        ("Request failed with status 403", EngineErrorType.BLOCKED),
        ("SyntaxError: Unexpected token } in JSON", EngineErrorType.RECIPE_SYNTAX),
    ])
    def test_patterns(self, stderr, expected):
        error = self.classifier.classify(EngineResult(success=False, stderr=stderr, exit_code=1, error_type="engine_crash"))
        assert error.type is expected

    def test_blocked_escalates(self):
        error = self.classifier.classify(EngineResult(success=False, stdout="captcha required", exit_code=1))
        assert error.severity is ErrorSeverity.ESCALATE

    def test_crash_without_known_pattern(self):
        result = EngineResult(success=False, error="Engine timeout after 120.0s", error_type="engine_crash")
        error = self.classifier.classify(result)

        assert error.type is EngineErrorType.ENGINE_CRASH
        assert error.message == "Engine timeout after 120.0s"

    def test_complete_tags_win_over_output_patterns(self):
        result = EngineResult(success=False, stdout="HTTP 403 Forbidden", error="bad output", error_type="invalid_json")
        assert self.classifier.classify(result).type is EngineErrorType.INVALID_JSON

    def test_crash_tag_yields_to_a_recognizable_cause(self):
        result = EngineResult(success=False, stderr="Timeout waiting for selector ul.hits", exit_code=1,
                              error="Timeout waiting for selector ul.hits", error_type="engine_crash")
        error = self.classifier.classify(result)

        assert error.type is EngineErrorType.SELECTOR_TIMEOUT
        assert error.severity is ErrorSeverity.RECOVERABLE

    def test_success_without_results(self):
        error = self.classifier.classify(EngineResult(success=True, results=[]))
        assert error.type is EngineErrorType.EMPTY_RESULTS

    def test_unknown(self):
        assert self.classifier.classify(EngineResult(success=False)).type is EngineErrorType.UNKNOWN

    def test_custom_patterns(self):
        classifier = EngineErrorClassifier()
        classifier.initialize({'blocked_patterns': [r'access denied']})
        error = classifier.classify(EngineResult(success=False, stderr="Access Denied by edge"))

        assert error.type is EngineErrorType.BLOCKED
        assert error.to_dict()['severity'] == 'escalate'

    def test_is_http_forbidden(self):
        assert self.classifier.is_http_forbidden(EngineResult(success=False, stdout="HTTP 403"))
        assert self.classifier.is_http_forbidden(EngineResult(success=False, stderr="Forbidden"))
        assert not self.classifier.is_http_forbidden(EngineResult(success=False, stderr="timeout"))
