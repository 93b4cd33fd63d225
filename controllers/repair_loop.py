"""
Repair Loop Controller

Drives a recipe's steps through run -> validate -> debug -> fix cycles until
the execution engine produces valid output or the iteration budget runs out.

The loop is strictly sequential. A single fix session is opened per repair
run so the fixer sees its earlier attempts, and it is closed on every exit
path.
"""

import asyncio
import json
import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Sequence

import config
from components.evidence_collector import EvidenceCollector
from components.recipe_builder import RecipeBuilder, RecipeStore, URL_STEPS, get_steps, step_key_for
from components.result_validator import ResultValidator
from core.collaborators import ExecutionCollaborator, FixCollaborator
from core.error_classifier import EngineError, EngineErrorClassifier, EngineErrorType, ErrorSeverity
from core.exceptions import FixerError
from core.models import (
    DebugAnalysis, EngineResult, FixAction, FixResponse, Patch, RepairAttempt, RepairOutcome,
    RepairSession, RepairState, ValidationOutcome
)

logger = logging.getLogger("RepairLoop")

CODE_FENCE = re.compile(r'^```(?:json)?\s*|\s*```$', re.IGNORECASE)

VALIDATION_GUIDANCE = """
If you see "contains unreplaced variable" errors:
- The recipe is trying to combine variables like "$TEAM$i - $SEASON$i" which the engine does not support
- Variables can only be referenced in: store.input (for URL prepending), regex.input, load.url
- Extract TITLE directly from a page element instead of constructing it from other variables
- Use SUBTITLE for secondary info like season/year instead of combining it into TITLE
""".strip()

FORBIDDEN_GUIDANCE = """
HTTP 403 FORBIDDEN DETECTED:
- The site's API is blocking automated requests (anti-bot protection such as DataDome or Cloudflare)
- Do not keep retrying the same API endpoint, it will keep returning 403
- Switch to a DOM-based approach: "load" the search page, then store_text/store_attribute from HTML elements
- Use the site's regular search page URL (e.g. /search?q=$INPUT) instead of internal API endpoints
""".strip()


def parse_fix_response(raw: Any) -> FixResponse:
    """
    Normalize fixer output.

    Accepts a dict or a JSON string, optionally wrapped in a code fence.
    Anything that is not a usable rewrite or patch becomes ``FixAction.NONE``.
    """
    data = raw
    if isinstance(raw, str):
        try:
            data = json.loads(CODE_FENCE.sub('', raw.strip()))
        except ValueError:
            logger.warning("Fixer response is not valid JSON")
            return FixResponse(FixAction.NONE, raw=raw)

    if not isinstance(data, dict):
        return FixResponse(FixAction.NONE, raw=raw)

    action = str(data.get('action', '')).lower()
    if action == FixAction.REWRITE.value:
        steps = data.get('steps')
        if isinstance(steps, list) and steps and all(isinstance(s, dict) for s in steps):
            return FixResponse(FixAction.REWRITE, steps=steps, raw=raw)
    elif action == FixAction.PATCH.value:
        patches = []
        for item in data.get('patches') or []:
            if not isinstance(item, dict) or 'field' not in item:
                continue
            try:
                patches.append(Patch(int(item.get('step_index')), str(item['field']), item.get('new_value')))
            except (TypeError, ValueError):
                logger.debug(f"Skipping malformed patch {item!r}")
        if patches:
            return FixResponse(FixAction.PATCH, patches=patches, raw=raw)

    return FixResponse(FixAction.NONE, raw=raw)


def describe_engine_error(error: EngineError, result: EngineResult, validation: Optional[ValidationOutcome],
                          forbidden: bool) -> str:
    """Plain-text error summary handed to the fixer."""
    lines = [f"Engine Error: {error.message}", f"Error Type: {error.type.value}"]
    if error.details:
        lines.append(f"Details: {error.details[:1000]}")
    if result.stdout:
        lines.append(f"Raw Output: {result.stdout[:500]}")
    if result.stderr:
        lines.append(f"Stderr: {result.stderr[:500]}")
    if forbidden:
        lines.extend(['', FORBIDDEN_GUIDANCE])
    if validation is not None and validation.issues:
        lines.extend(['', 'VALIDATION ERRORS (CRITICAL - These must be fixed):'])
        lines.extend(f"- {message}" for message in validation.messages)
        lines.extend(['', VALIDATION_GUIDANCE])
    return '\n'.join(lines)


class RepairLoopController:
    """
    Bounded repair of one recipe step list.

    Args:
        executor: Execution collaborator
        fixer: Fix-generating collaborator
        debugger: Per-step selector debugger
        validator: Result validator
        store: Recipe persistence
        builder: Applies fixes to recipes
        classifier: Engine error classifier
        max_iterations: Iteration budget
        fixer_timeout: Seconds to wait for one fixer response
    """

    def __init__(self, executor: ExecutionCollaborator, fixer: FixCollaborator, debugger: EvidenceCollector,
                 validator: Optional[ResultValidator] = None,
                 store: Optional[RecipeStore] = None,
                 builder: Optional[RecipeBuilder] = None,
                 classifier: Optional[EngineErrorClassifier] = None,
                 max_iterations: Optional[int] = None,
                 fixer_timeout: Optional[float] = None):
        self.executor = executor
        self.fixer = fixer
        self.debugger = debugger
        self.validator = validator or ResultValidator()
        self.store = store or RecipeStore()
        self.builder = builder or RecipeBuilder()
        self.classifier = classifier or EngineErrorClassifier()
        self.max_iterations = config.MAX_REPAIR_ITERATIONS if max_iterations is None else max_iterations
        self.fixer_timeout = config.FIXER_TIMEOUT_SECONDS if fixer_timeout is None else fixer_timeout
        self.state = RepairState.IDLE

    def _validate(self, result: EngineResult, step_key: str, hostname: str,
                  required_fields: Optional[Sequence[str]]) -> ValidationOutcome:
        if step_key == URL_STEPS:
            return self.validator.validate_detail(result.results if isinstance(result.results, dict) else None,
                                                  required_fields)
        results = result.results if isinstance(result.results, list) else None
        return self.validator.validate_list(results, hostname)

    async def repair(self, recipe: Dict[str, Any], recipe_path: str, step_type: str, user_input: str,
                     hostname: str = '', evidence: Any = None,
                     required_fields: Optional[Sequence[str]] = None) -> RepairOutcome:
        """
        Run the repair loop.

        Args:
            recipe: Recipe document; never mutated, fixes produce new copies
            recipe_path: Where the recipe is persisted for the engine
            step_type: ``autocomplete`` or ``url``
            user_input: Query or detail URL handed to the engine
            hostname: Site hostname, used by validation
            evidence: Search or site evidence passed to the fixer
            required_fields: Expected detail fields (url steps only)

        Returns:
            RepairOutcome with every attempt; ``iterations`` is the index of
            the successful attempt, or the number of attempts made on failure

        Raises:
            MissingStepDefinitionError: The recipe has no steps of this type
        """
        step_key = step_key_for(step_type)
        engine_type = step_key[:-len('_steps')]
        attempts: List[RepairAttempt] = []
        session: Optional[RepairSession] = None
        self.state = RepairState.IDLE

        try:
            for i in range(self.max_iterations):
                self.state = RepairState.RUNNING
                logger.info(f"{step_key} iteration {i + 1}/{self.max_iterations}")
                result = await self.executor.run(recipe_path, engine_type, user_input)
                attempt = RepairAttempt(iteration=i, engine_result=result)
                attempts.append(attempt)

                validation = None
                if result.success:
                    self.state = RepairState.VALIDATING
                    validation = self._validate(result, step_key, hostname, required_fields)
                    attempt.validation = validation
                    if validation.accepted:
                        self.state = RepairState.SUCCESS
                        logger.info(f"Recipe working after {i} iteration(s)")
                        return RepairOutcome(True, self.state, i, attempts, recipe)
                    for message in validation.messages[:5]:
                        logger.warning(f"  - {message}")
                    if len(validation.issues) > 5:
                        logger.warning(f"  ... and {len(validation.issues) - 5} more issues")

                engine_error = self.classifier.classify(result)
                attempt.engine_error = engine_error
                if not result.success:
                    logger.warning(f"Engine failed ({engine_error.type.value}): {engine_error.message}")
                if engine_error.severity is ErrorSeverity.TERMINAL:
                    logger.error(f"Engine cannot run ({engine_error.type.value}), no recipe fix can help. Stopping.")
                    break

                self.state = RepairState.DEBUGGING
                steps = get_steps(recipe, step_key)
                debug = await self.debugger.debug_steps(
                    steps, user_input, url=user_input if step_key == URL_STEPS else None,
                )
                attempt.debug = debug
                logger.info(f"Debug results: {len(debug.working)} working, {len(debug.failing)} failed")

                self.state = RepairState.FIXING
                context = self.build_context(recipe, step_key, result, engine_error, validation, debug, evidence)
                try:
                    if session is None:
                        session = RepairSession(uuid.uuid4().hex, hostname, step_key)
                        raw = await asyncio.wait_for(self.fixer.start_fix(session, context), self.fixer_timeout)
                    else:
                        raw = await asyncio.wait_for(self.fixer.continue_fix(session, context), self.fixer_timeout)
                    session.turns += 1
                except (FixerError, asyncio.TimeoutError) as e:
                    logger.warning(f"Fixer failed: {e or 'timed out'}")
                    recipe, applied = self._apply_suggestions(recipe, step_key, debug)
                    if not applied:
                        break
                    attempt.fix_action = FixAction.PATCH
                    await self.store.save(recipe_path, recipe)
                    continue

                fix = parse_fix_response(raw)
                recipe, applied = self.builder.apply_fix(recipe, step_key, fix)
                if applied:
                    attempt.fix_action = fix.action
                else:
                    logger.warning(f"Fixer returned no actionable fix: {fix.action.value}")
                    recipe, applied = self._apply_suggestions(recipe, step_key, debug)
                    if applied:
                        attempt.fix_action = FixAction.PATCH

                if not applied:
                    logger.error("No fix could be applied. Stopping.")
                    break

                await self.store.save(recipe_path, recipe)
                logger.info("Recipe updated. Retrying...")
            else:
                logger.error(f"Repair loop exhausted after {self.max_iterations} iterations")
        finally:
            if session is not None:
                await self.fixer.close_session(session)

        self.state = RepairState.EXHAUSTED
        return RepairOutcome(False, self.state, len(attempts), attempts, recipe)

    def _apply_suggestions(self, recipe: Dict[str, Any], step_key: str, debug: DebugAnalysis):
        if not debug.suggested_fixes:
            return recipe, False
        logger.info("Applying automatic fixes from debug analysis")
        for suggestion in debug.suggested_fixes:
            logger.info(f"  Step {suggestion.step_index}: \"{suggestion.old_value}\" -> \"{suggestion.new_value}\"")
        recipe, count = self.builder.apply_suggested_fixes(recipe, step_key, debug.suggested_fixes)
        return recipe, count > 0

    def build_context(self, recipe: Dict[str, Any], step_key: str, result: EngineResult, engine_error: EngineError,
                      validation: Optional[ValidationOutcome], debug: DebugAnalysis, evidence: Any) -> Dict[str, Any]:
        """Structured description of the failure for the fixer."""
        forbidden = self.classifier.is_http_forbidden(result) or '403' in (debug.page_error or '')
        return {
            'recipe': recipe,
            'step_type': step_key,
            'engine_error': describe_engine_error(engine_error, result, validation, forbidden),
            'engine_error_type': engine_error.type.value,
            'engine_output': result.results,
            'validation_issues': validation.messages if validation is not None else [],
            'debug': debug.to_dict(),
            'evidence': evidence.to_dict() if hasattr(evidence, 'to_dict') else evidence,
            'blocked': engine_error.type is EngineErrorType.BLOCKED,
        }
