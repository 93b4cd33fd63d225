"""
Pattern Analyzer Module

This module provides the DOM analyzers that fingerprint pages, infer result
loop structures and debug recipe selectors against a live page snapshot.
"""

from components.pattern_analyzer.base_analyzer import DomAnalyzer
from components.pattern_analyzer.evidence_extractor import EvidenceExtractor, assess_probe_health
from components.pattern_analyzer.loop_inference import LoopInference
from components.pattern_analyzer.selector_debugger import SelectorDebugger, validate_selector

__all__ = [
    'DomAnalyzer',
    'EvidenceExtractor',
    'assess_probe_health',
    'LoopInference',
    'SelectorDebugger',
    'validate_selector',
]
