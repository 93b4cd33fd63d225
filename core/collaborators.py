"""
Interfaces of the external collaborators the pipeline drives.

The step-execution engine, the step author and the fixer are opaque
services; only the shapes of their inputs and outputs are fixed here.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from core.models import EngineResult, RepairSession


class ExecutionCollaborator(ABC):
    """Runs a recipe's steps and returns their output."""

    @abstractmethod
    async def run(self, recipe_path: str, step_type: str, user_input: str) -> EngineResult:
        pass


@dataclass
class AuthoringRequest:
    """
    Everything the author gets to write one step list.

    ``search`` is SearchEvidence for autocomplete steps and DetailEvidence
    for url steps.
    """
    step_type: str
    site: Any
    search: Any = None
    query: Optional[str] = None
    required_fields: List[str] = field(default_factory=list)
    expected: Dict[str, Any] = field(default_factory=dict)


class AuthoringCollaborator(ABC):
    """Writes step lists from structural evidence."""

    @abstractmethod
    async def author_steps(self, request: AuthoringRequest) -> List[Dict[str, Any]]:
        pass

    async def suggest_queries(self, site: Any) -> Sequence[str]:
        """Test queries likely to return results on this site, best first."""
        return ()


class FixCollaborator(ABC):
    """
    Generates fixes for broken steps inside a stateful session.

    Implementations raise FixerError when they cannot produce a response.
    """

    @abstractmethod
    async def start_fix(self, session: RepairSession, context: Dict[str, Any]) -> Any:
        pass

    @abstractmethod
    async def continue_fix(self, session: RepairSession, context: Dict[str, Any]) -> Any:
        pass

    async def close_session(self, session: RepairSession) -> None:
        session.open = False
