"""
Search components for the recipe autopilot.

This package provides modular components for working out how a site serves
search results:
- api_classifier.py: Classification of captured JSON responses and API step synthesis
- result_analyzer.py: Detection of repeating result elements on results pages
- captcha_detection.py: Anti-bot fingerprinting and the interactive bypass
"""

from .api_classifier import NetworkApiClassifier
from .captcha_detection import AntiBotDetector, InteractiveBypass
from .result_analyzer import SearchResultAnalyzer

__all__ = [
    'NetworkApiClassifier',
    'AntiBotDetector',
    'InteractiveBypass',
    'SearchResultAnalyzer',
]
