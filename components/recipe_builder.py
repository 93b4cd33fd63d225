"""
Recipe Builder Module

Creates recipe documents, applies fixer output to their step lists, and
persists them as JSON.
"""

import copy
import logging
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple

import config
from components.search.api_classifier import NetworkApiClassifier
from core.exceptions import MissingStepDefinitionError
from core.models import ApiDescriptor, FixAction, FixResponse, Patch, SiteEvidence, SuggestedFix
from utils.file_utils import file_exists, read_json, write_json

logger = logging.getLogger("RecipeBuilder")

AUTOCOMPLETE_STEPS = 'autocomplete_steps'
URL_STEPS = 'url_steps'
STEP_KEYS = (AUTOCOMPLETE_STEPS, URL_STEPS)


def step_key_for(step_type: str) -> str:
    """Map ``autocomplete``/``url`` (or the full key) to the recipe's step list key."""
    key = step_type if step_type in STEP_KEYS else f"{step_type}_steps"
    if key not in STEP_KEYS:
        raise ValueError(f"Unknown step type: {step_type}")
    return key


def site_title(evidence: SiteEvidence) -> str:
    """Landing page title up to the first `` - `` or `` | `` separator."""
    title = (evidence.title or '').split(' - ')[0].split(' | ')[0].strip()
    return title or evidence.hostname


def get_steps(recipe: Dict[str, Any], step_type: str) -> List[Dict[str, Any]]:
    key = step_key_for(step_type)
    steps = recipe.get(key)
    if not steps:
        raise MissingStepDefinitionError(f"No {key} found in recipe")
    return steps


class RecipeBuilder:
    """Builds and patches recipe documents."""

    def __init__(self, classifier: Optional[NetworkApiClassifier] = None):
        self.classifier = classifier or NetworkApiClassifier()

    def build_skeleton(self, hostname: str, list_type: str, shortcut: Optional[str] = None,
                       autocomplete_steps: Optional[List[Dict[str, Any]]] = None,
                       url_steps: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """
        Recipe document with metadata filled in and the given step lists.

        Args:
            hostname: Site hostname without ``www.``
            list_type: Content category (movies, books, ...)
            shortcut: Recipe shortcut; defaults to the hostname
            autocomplete_steps: Search steps, None when not authored yet
            url_steps: Detail steps, None when not authored yet

        Returns:
            Recipe dict
        """
        return {
            'recipe_shortcut': shortcut or hostname,
            'list_type': list_type,
            'engine_version': config.ENGINE_VERSION,
            'title': hostname[:1].upper() + hostname[1:],
            'description': f"Retrieve {list_type} from {hostname}",
            'urls': [
                f"https://{hostname}",
                f"https://www.{hostname}",
            ],
            'headers': dict(config.DEFAULT_HEADERS),
            AUTOCOMPLETE_STEPS: autocomplete_steps,
            URL_STEPS: url_steps,
        }

    def build_api_recipe(self, evidence: SiteEvidence, descriptor: ApiDescriptor, list_type: str,
                         shortcut: Optional[str] = None) -> Dict[str, Any]:
        """Recipe whose autocomplete steps call a discovered JSON API directly."""
        hostname = evidence.hostname
        recipe = self.build_skeleton(hostname, list_type, shortcut,
                                     autocomplete_steps=self.classifier.build_api_steps(descriptor))
        recipe['title'] = site_title(evidence)
        return recipe

    @staticmethod
    def apply_patches(steps: Sequence[Dict[str, Any]], patches: Sequence[Patch]) -> Tuple[List[Dict[str, Any]], int]:
        """
        Field-level patches applied to a copy of ``steps``.

        Patches pointing past the end of the list are skipped.

        Returns:
            (new step list, number of patches applied)
        """
        patched = [dict(step) for step in steps]
        applied = 0
        for patch in patches:
            if 0 <= patch.step_index < len(patched):
                patched[patch.step_index][patch.field] = patch.new_value
                applied += 1
            else:
                logger.warning(f"Ignoring patch for missing step {patch.step_index}")
        return patched, applied

    def apply_fix(self, recipe: Dict[str, Any], step_type: str, fix: FixResponse) -> Tuple[Dict[str, Any], bool]:
        """
        Apply a fixer response to a copy of ``recipe``.

        Returns:
            (recipe, whether anything changed)
        """
        key = step_key_for(step_type)
        if fix.action is FixAction.REWRITE and fix.steps:
            updated = copy.deepcopy(recipe)
            updated[key] = copy.deepcopy(fix.steps)
            logger.info(f"Rewrote {key} with {len(fix.steps)} steps")
            return updated, True

        if fix.action is FixAction.PATCH and fix.patches:
            steps, applied = self.apply_patches(recipe.get(key) or [], fix.patches)
            if not applied:
                return recipe, False
            updated = copy.deepcopy(recipe)
            updated[key] = steps
            logger.info(f"Applied {applied} patches to {key}")
            return updated, True

        return recipe, False

    @staticmethod
    def apply_suggested_fixes(recipe: Dict[str, Any], step_type: str,
                              suggestions: Sequence[SuggestedFix]) -> Tuple[Dict[str, Any], int]:
        """Set each suggested locator on its step; returns the count applied."""
        key = step_key_for(step_type)
        patches = [Patch(s.step_index, s.field, s.new_value) for s in suggestions]
        steps, applied = RecipeBuilder.apply_patches(recipe.get(key) or [], patches)
        if not applied:
            return recipe, 0
        updated = copy.deepcopy(recipe)
        updated[key] = steps
        return updated, applied


class RecipeStore:
    """JSON recipe files under a directory, one file per recipe."""

    def __init__(self, recipes_dir: Optional[str] = None):
        self.recipes_dir = recipes_dir or config.RECIPES_DIR

    def path_for(self, list_type: str, shortcut: str) -> str:
        return os.path.join(self.recipes_dir, list_type, f"{shortcut}.json")

    async def exists(self, path: str) -> bool:
        return await file_exists(path)

    async def load(self, path: str) -> Dict[str, Any]:
        return await read_json(path)

    async def save(self, path: str, recipe: Dict[str, Any]) -> str:
        """
        Write ``recipe`` to ``path``.

        Existing files are only ever overwritten with a newer version, never
        removed, so a failed run leaves the last written state behind.
        """
        await write_json(path, recipe)
        logger.debug(f"Saved recipe to {path}")
        return path
