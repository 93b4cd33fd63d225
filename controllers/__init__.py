"""
Controllers Module for the recipe autopilot

This package contains controllers that coordinate the components for
onboarding a site: the bounded repair loop and the end-to-end pipeline.
"""
