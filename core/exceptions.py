"""Exception hierarchy for the recipe autopilot."""

from typing import Optional


class RecipeAutopilotError(Exception):
    """Base class for all errors raised by the pipeline."""


class BrowserError(RecipeAutopilotError):
    """The browser adapter failed in a way that is not expected absence."""


class NavigationError(BrowserError):
    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        self.url = url
        self.reason = reason
        self.status = status
        super().__init__(f"Navigation to {url} failed: {reason}")


class AntiBotBlockError(RecipeAutopilotError):
    def __init__(self, url: str, provider: str, detail: Optional[str] = None):
        self.url = url
        self.provider = provider
        self.detail = detail
        message = f"{url} is blocked by {provider} anti-bot protection"
        super().__init__(f"{message}: {detail}" if detail else message)


class MissingStepDefinitionError(RecipeAutopilotError):
    """A recipe has no steps for the requested step type."""


class FixerError(RecipeAutopilotError):
    """The fix-generating collaborator failed or timed out."""
