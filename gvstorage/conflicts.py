"""
Slug conflicts during import.

When an incoming asset's slug already exists in the target library the importer
asks a resolver what to do. A resolver is any callable

    resolver(slug, title, existing_summary, incoming_summary) -> ConflictResolution

Callers that answer from another thread (an HTTP client, say) use ConflictBroker,
which waits for an answer for a bounded time and then falls back to a default
decision so an abandoned import can never hang forever.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from .utils import is_valid_slug

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_TIMEOUT = 300.0


class ConflictAction(str, Enum):
    SKIP = "skip"
    OVERWRITE = "overwrite"
    RENAME = "rename"


class ConflictResolution(BaseModel):
    action: ConflictAction
    new_slug: Optional[str] = None

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    @model_validator(mode="after")
    def _rename_needs_slug(self):
        if self.action == ConflictAction.RENAME and not is_valid_slug(self.new_slug):
            raise ValueError(f"Rename requires a valid new slug, got {self.new_slug!r}")
        return self

    @classmethod
    def skip(cls) -> "ConflictResolution":
        return cls(action=ConflictAction.SKIP)

    @classmethod
    def overwrite(cls) -> "ConflictResolution":
        return cls(action=ConflictAction.OVERWRITE)

    @classmethod
    def rename(cls, new_slug: str) -> "ConflictResolution":
        return cls(action=ConflictAction.RENAME, new_slug=new_slug)


ConflictResolver = Callable[[str, str, Dict[str, Any], Dict[str, Any]], ConflictResolution]


def next_free_slug(slug: str, slug_exists: Callable[[str], bool]) -> str:
    """First of slug-2, slug-3, ... that is not taken."""
    n = 2
    while slug_exists(f"{slug}-{n}"):
        n += 1
    return f"{slug}-{n}"


def fixed_policy(action: ConflictAction, slug_exists: Optional[Callable[[str], bool]] = None) -> ConflictResolver:
    """
    A resolver that answers every conflict the same way. For RENAME, the new
    slug is the first free `<slug>-N`, checked with `slug_exists`.
    """
    action = ConflictAction(action)
    if action == ConflictAction.RENAME and slug_exists is None:
        raise ValueError("A rename policy needs a slug_exists predicate")

    def resolve(slug, title, existing, incoming):
        if action == ConflictAction.RENAME:
            return ConflictResolution.rename(next_free_slug(slug, slug_exists))
        return ConflictResolution(action=action)

    return resolve


class PendingConflict(BaseModel):
    slug: str
    title: str
    existing: Dict[str, Any]
    incoming: Dict[str, Any]


class ConflictBroker:
    """
    Request/response rendezvous between an import running on a worker thread and
    a caller on another thread. The importer calls the broker like any resolver
    and blocks; the caller reads `pending` and answers with `resolve()`.
    """

    def __init__(self, timeout: float = DEFAULT_CONFLICT_TIMEOUT, default: Optional[ConflictResolution] = None):
        self.timeout = timeout
        self.default = default or ConflictResolution.skip()
        self._lock = threading.Lock()
        self._pending: Optional[PendingConflict] = None
        self._answer: Optional[ConflictResolution] = None
        self._answered = threading.Event()
        self._abandoned = False

    @property
    def pending(self) -> Optional[PendingConflict]:
        with self._lock:
            return self._pending

    def __call__(self, slug, title, existing, incoming) -> ConflictResolution:
        with self._lock:
            if self._abandoned:
                logger.info("Conflict for '%s' after cancel; applying default '%s'.",
                            slug, self.default.action.value)
                return self.default
            self._pending = PendingConflict(slug=slug, title=title, existing=existing, incoming=incoming)
            self._answer = None
            self._answered.clear()
        try:
            if not self._answered.wait(self.timeout):
                logger.warning(
                    "No conflict decision for '%s' within %.0fs; applying default '%s'.",
                    slug, self.timeout, self.default.action.value,
                )
                return self.default
            with self._lock:
                return self._answer or self.default
        finally:
            with self._lock:
                self._pending = None

    def resolve(self, resolution: ConflictResolution) -> bool:
        """Answers the open conflict. Returns False if nothing is waiting."""
        with self._lock:
            if self._pending is None:
                return False
            self._answer = resolution
            self._answered.set()
            return True

    def abandon(self) -> None:
        """
        Releases a waiting import with the default decision, and answers every
        later conflict the same way without waiting (used on cancel).
        """
        with self._lock:
            self._abandoned = True
            if self._pending is not None:
                self._answer = self.default
                self._answered.set()
