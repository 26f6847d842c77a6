"""
Base classes for action handlers.

An ActionHandler implements one action kind. Handlers receive parameters
that the executor has already resolved against a fresh template context,
plus the ActionRuntime shared by every action in the current turn.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from src.domain.models.actions import Action
from src.domain.models.session import Session
from src.domain.models.tenant import TenantConfig
from src.services.thread_store import ThreadStore


@dataclass
class ActionRuntime:
    """Mutable per-turn state shared by the actions of one turn.

    ``extra`` is the one-shot layer of the template context: results of
    external calls (``results.<key>``, ``last_result``), the current tool
    call (``tool``) and the current form submission (``form``). It lives
    for one turn and is never persisted.
    """

    session: Session
    thread: ThreadStore
    tenant: TenantConfig
    build_context: Callable[[Session, Optional[Dict[str, Any]]], Dict[str, Any]]
    extra: Dict[str, Any] = field(default_factory=lambda: {"results": {}})
    next_turn_requested: bool = False

    def context(self) -> Dict[str, Any]:
        return self.build_context(self.session, self.extra)

    def store_result(self, key: Optional[str], value: Any) -> None:
        if key:
            self.extra.setdefault("results", {})[key] = value
        self.extra["last_result"] = value


class ActionHandler(ABC):
    """
    Abstract base class for action kinds.

    Subclasses set ``kind`` and implement ``run``. A handler signals
    failure by raising; the executor decides whether the failure halts the
    sequence.
    """

    kind: str = ""

    @abstractmethod
    async def run(
        self, action: Action, params: Dict[str, Any], runtime: ActionRuntime
    ) -> Any:
        """
        Execute the action.

        Args:
            action: Action configuration (for name, gating, result_key)
            params: Parameters resolved against the current template context
            runtime: Turn state; handlers mutate runtime.session through it

        Returns:
            Optional result, stored under results.<result_key> when set
        """
        pass

    @property
    def handler_name(self) -> str:
        return self.__class__.__name__
