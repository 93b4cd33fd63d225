from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class BaseService(ABC):
    """
    Lifecycle contract for stateless pipeline helpers (analyzers, classifiers).

    Subclasses set ``self._initialized`` in ``initialize`` and reset it in
    ``shutdown``. Callers may skip ``initialize``: public entry points call
    ``ensure_initialized`` which applies the default configuration.
    """

    @abstractmethod
    def initialize(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Apply configuration; repeated calls are no-ops."""

    @abstractmethod
    def shutdown(self) -> None:
        """Drop compiled state."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier used in log lines."""

    @property
    def is_initialized(self) -> bool:
        return getattr(self, '_initialized', False)

    def ensure_initialized(self) -> None:
        if not self.is_initialized:
            self.initialize()

    def __repr__(self) -> str:
        state = "ready" if self.is_initialized else "idle"
        return f"<{type(self).__name__} {self.name} ({state})>"


class AsyncService(ABC):
    """
    Lifecycle contract for services owning async resources such as a browser.

    ``async with service:`` starts it on entry and always shuts it down on
    exit, including when the body raises.
    """

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def shutdown(self) -> None: ...

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    def is_initialized(self) -> bool:
        return getattr(self, '_initialized', False)

    async def ensure_started(self) -> None:
        if not self.is_initialized:
            await self.initialize()

    async def __aenter__(self):
        await self.ensure_started()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False
