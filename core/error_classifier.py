import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Tuple

from core.models import EngineResult
from core.service_interface import BaseService

logger = logging.getLogger(__name__)

class EngineErrorType(Enum):
    """Failure categories reported for an execution collaborator run."""
    SPAWN_ERROR = "spawn_error"           # Engine process could not start
    INVALID_JSON = "invalid_json"         # Output was not decodable
    NO_STEPS = "no_steps"                 # Recipe lacks the requested steps
    SELECTOR_TIMEOUT = "selector_timeout" # Locator matched nothing or timed out
    NETWORK_ERROR = "network_error"       # Fetch/connection failures
    BLOCKED = "blocked"                   # Anti-bot or HTTP 403
    RECIPE_SYNTAX = "recipe_syntax"       # Malformed recipe JSON
    EMPTY_RESULTS = "empty_results"       # Ran fine, produced nothing usable
    ENGINE_CRASH = "engine_crash"         # Non-zero exit without a better match
    UNKNOWN = "unknown"

class ValidationIssueKind(Enum):
    """Sub-kinds of a validation failure."""
    UNRESOLVED_VARIABLE = "unresolved_variable"
    BASE_DOMAIN_URL = "base_domain_url"
    DOUBLED_DOMAIN_URL = "doubled_domain_url"
    MISSING_FIELD = "missing_field"
    NO_RESULTS = "no_results"

class ErrorSeverity(Enum):
    """How the repair loop should treat a failure."""
    RECOVERABLE = "recoverable"   # drives the next repair iteration
    ESCALATE = "escalate"         # needs a different strategy (e.g. CAPTCHA bypass)
    TERMINAL = "terminal"

@dataclass
class EngineError:
    type: EngineErrorType
    message: str
    details: str = ""
    severity: ErrorSeverity = ErrorSeverity.RECOVERABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'message': self.message,
            'details': self.details,
            'severity': self.severity.value,
        }

# Explicit tags the execution collaborator may attach to a failure
_TAGGED_ERRORS = {
    EngineErrorType.SPAWN_ERROR.value: (EngineErrorType.SPAWN_ERROR, "Failed to start the engine process"),
    EngineErrorType.INVALID_JSON.value: (EngineErrorType.INVALID_JSON, "Engine output was not valid JSON"),
}

class EngineErrorClassifier(BaseService):
    """Classifies execution collaborator failures by pattern over their output."""

    DETAILS_LIMIT = 1000

    def __init__(self):
        self._initialized = False
        self._config: Dict[str, Any] = {}
        self._rules: List[Tuple[EngineErrorType, str, List[Pattern]]] = []

    def initialize(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Compile the classification rules, optionally overriding patterns."""
        if self._initialized:
            return

        self._config = config or {}
        self._rules = [
            (EngineErrorType.NO_STEPS,
             "No steps found for the specified step type",
             self._compile('no_steps_patterns', [r'no steps found'])),
            (EngineErrorType.SELECTOR_TIMEOUT,
             "A selector failed to find elements or timed out",
             self._compile('selector_patterns', [r'selector.*not found', r'element not found', r'timeout'])),
            (EngineErrorType.NETWORK_ERROR,
             "Network error while fetching the page",
             self._compile('network_patterns', [r'network', r'fetch', r'ECONNREFUSED', r'ETIMEDOUT'])),
            (EngineErrorType.BLOCKED,
             "The site may be blocking automated requests",
             self._compile('blocked_patterns', [r'captcha', r'blocked', r'forbidden', r'403'])),
            (EngineErrorType.RECIPE_SYNTAX,
             "Recipe JSON syntax error",
             self._compile('syntax_patterns', [r'syntax', r'parse', r'unexpected token'])),
        ]

        self._initialized = True
        logger.debug("Engine error classifier initialized")

    def shutdown(self) -> None:
        self._rules = []
        self._initialized = False

    @property
    def name(self) -> str:
        return "engine_error_classifier"

    def _compile(self, key: str, defaults: List[str]) -> List[Pattern]:
        return [re.compile(p, re.IGNORECASE) for p in self._config.get(key, defaults)]

    def classify(self, result: EngineResult) -> EngineError:
        """
        Classify an engine run.

        The ``spawn_error`` and ``invalid_json`` tags describe the failure
        completely and take precedence over pattern matching. ``engine_crash``
        only says the process exited non-zero, so the output patterns run
        first and the crash tag is the fallback when none of them match.

        Args:
            result: Raw result returned by the execution collaborator

        Returns:
            EngineError describing the failure
        """
        self.ensure_initialized()

        if result.success:
            return EngineError(
                EngineErrorType.EMPTY_RESULTS,
                "Engine ran successfully but returned no results",
                details=repr(result.results)[:self.DETAILS_LIMIT],
            )

        tagged = _TAGGED_ERRORS.get(result.error_type or "")
        if tagged:
            error_type, message = tagged
            details = result.error if error_type is EngineErrorType.SPAWN_ERROR else result.stdout
            severity = ErrorSeverity.TERMINAL if error_type is EngineErrorType.SPAWN_ERROR else ErrorSeverity.RECOVERABLE
            return EngineError(error_type, message, (details or "")[:self.DETAILS_LIMIT], severity)

        combined = f"{result.stdout}\n{result.stderr}"
        for error_type, message, patterns in self._rules:
            if any(p.search(combined) for p in patterns):
                severity = ErrorSeverity.ESCALATE if error_type is EngineErrorType.BLOCKED else ErrorSeverity.RECOVERABLE
                return EngineError(error_type, message, combined[:self.DETAILS_LIMIT], severity)

        # Non-zero exit with no recognizable cause in the output
        if result.error_type == EngineErrorType.ENGINE_CRASH.value:
            return EngineError(
                EngineErrorType.ENGINE_CRASH,
                result.error or f"Engine exited with code {result.exit_code}",
                combined[:self.DETAILS_LIMIT],
            )

        return EngineError(
            EngineErrorType.UNKNOWN,
            result.error or "Unknown engine error",
            combined[:self.DETAILS_LIMIT],
        )

    def is_http_forbidden(self, result: EngineResult) -> bool:
        """True when the raw output mentions an HTTP 403."""
        raw = result.stdout or result.stderr or ""
        return "403" in raw or "Forbidden" in raw
