"""
Components Module

This module contains the probing, validation and recipe-building components
of the recipe autopilot: evidence collection, result validation and recipe
document handling.
"""

# Import component classes for easier access
from .evidence_collector import EvidenceCollector
from .recipe_builder import RecipeBuilder, RecipeStore
from .result_validator import ResultValidator
