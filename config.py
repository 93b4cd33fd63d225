"""
Configuration settings for the recipe autopilot.
This file contains all configurable parameters and settings.
"""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

def get_env_bool(key: str, default: bool = False) -> bool:
    """Convert environment variable to boolean."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on')

def get_env_int(key: str, default: int) -> int:
    """Convert environment variable to integer."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default

def get_env_float(key: str, default: float) -> float:
    """Convert environment variable to float."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default

# Environment Configuration
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
DEBUG = get_env_bool("DEBUG", ENVIRONMENT == "development")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "console")

# Repair loop budget and acceptance thresholds
MAX_REPAIR_ITERATIONS = get_env_int("MAX_REPAIR_ITERATIONS", 5)
MIN_VALID_RESULTS = get_env_int("MIN_VALID_RESULTS", 3)
MIN_VALID_FRACTION = get_env_float("MIN_VALID_FRACTION", 0.3)
STATIC_CONTENT_OVERLAP = get_env_float("STATIC_CONTENT_OVERLAP", 0.7)
API_OVERLAP_THRESHOLD = get_env_float("API_OVERLAP_THRESHOLD", 0.5)
SEMANTIC_MATCH_RATIO = get_env_float("SEMANTIC_MATCH_RATIO", 0.3)
PROBE_HEALTH_THRESHOLD = get_env_int("PROBE_HEALTH_THRESHOLD", 40)

# Browser settings
HEADLESS = get_env_bool("HEADLESS", True)
USE_STEALTH = get_env_bool("USE_STEALTH", True)
NAVIGATION_TIMEOUT_MS = get_env_int("NAVIGATION_TIMEOUT_MS", 30000)
SELECTOR_TIMEOUT_MS = get_env_int("SELECTOR_TIMEOUT_MS", 5000)
NETWORK_SETTLE_MS = get_env_int("NETWORK_SETTLE_MS", 3000)
TYPING_DELAY_MS = get_env_int("TYPING_DELAY_MS", 150)
VIEWPORT_WIDTH = get_env_int("VIEWPORT_WIDTH", 1920)
VIEWPORT_HEIGHT = get_env_int("VIEWPORT_HEIGHT", 1080)

# Interactive CAPTCHA bypass
CAPTCHA_MAX_WAIT_SECONDS = get_env_int("CAPTCHA_MAX_WAIT_SECONDS", 120)
CAPTCHA_POLL_SECONDS = get_env_float("CAPTCHA_POLL_SECONDS", 2.0)
INTERACTIVE_CAPTCHA_ENABLED = get_env_bool("INTERACTIVE_CAPTCHA_ENABLED", False)

# Execution and fix collaborators
ENGINE_COMMAND = os.getenv("ENGINE_COMMAND", "node engine.js")
ENGINE_TIMEOUT_SECONDS = get_env_float("ENGINE_TIMEOUT_SECONDS", 120.0)
FIXER_TIMEOUT_SECONDS = get_env_float("FIXER_TIMEOUT_SECONDS", 180.0)
ENGINE_VERSION = get_env_int("ENGINE_VERSION", 20)

# Recipe defaults
DEFAULT_USER_AGENT = os.getenv(
    "DEFAULT_USER_AGENT",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_2) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/81.0.4044.113 Safari/537.36",
)
DEFAULT_HEADERS = {
    "Accept-Language": os.getenv("DEFAULT_ACCEPT_LANGUAGE", "en-UK,en"),
    "User-Agent": DEFAULT_USER_AGENT,
}
RECIPES_DIR = os.getenv("RECIPES_DIR", "recipes")

# Default probe queries used when none is provided
DEFAULT_TEST_QUERY = os.getenv("DEFAULT_TEST_QUERY", "test")
DEFAULT_CROSS_QUERY = os.getenv("DEFAULT_CROSS_QUERY", "example")
