"""
Collaborator interfaces consumed around the core.

- ExampleRetriever: nearest-neighbour lookup of labelled examples
- SessionStore: conversation state persistence keyed by session id

Only in-memory implementations are provided; embedding computation and
durable storage are left to the host application.
"""

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Example:
    """A labelled utterance used as a few-shot example."""

    text: str
    intent: str
    entities: Dict[str, Any] = field(default_factory=dict)
    similarity: float = 0.0


class ExampleRetriever(ABC):
    """Retrieves labelled examples similar to an utterance."""

    @abstractmethod
    def retrieve_similar(self, text: str, k: int) -> List[Example]:
        """
        Return up to ``k`` examples ordered by decreasing similarity.

        Args:
            text: Utterance to match
            k: Maximum number of examples

        Returns:
            List of examples
        """
        pass


class NullExampleRetriever(ExampleRetriever):
    """Retriever that never returns examples."""

    def retrieve_similar(self, text: str, k: int) -> List[Example]:
        return []


@dataclass
class ConversationState:
    """Persisted view of one conversation."""

    session_id: str
    voting_round_ids: List[str] = field(default_factory=list)
    execution_ids: List[str] = field(default_factory=list)
    last_intent: Optional[str] = None
    history: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=datetime.now)


class SessionStore(ABC):
    """Conversation state persistence."""

    @abstractmethod
    def get(self, session_id: str) -> Optional[ConversationState]:
        pass

    @abstractmethod
    def put(self, state: ConversationState) -> None:
        pass


class InMemorySessionStore(SessionStore):
    """Thread-safe dictionary-backed session store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: Dict[str, ConversationState] = {}

    def get(self, session_id: str) -> Optional[ConversationState]:
        with self._lock:
            state = self._states.get(session_id)
            return copy.deepcopy(state) if state is not None else None

    def put(self, state: ConversationState) -> None:
        state.updated_at = datetime.now()
        with self._lock:
            self._states[state.session_id] = copy.deepcopy(state)
