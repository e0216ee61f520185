"""Identity context consumed by the sync layer.

Authentication itself happens elsewhere; this module only holds the
current subject and tells interested parties when it changes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, field_validator

_logger = logging.getLogger(__name__)

IdentityListener = Callable[["Identity | None"], None]


class Identity(BaseModel):
    """An authenticated (or not) subject."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    subject: str
    authenticated: bool = True

    @field_validator("subject")
    @classmethod
    def _non_empty_subject(cls, value: str) -> str:
        if not value:
            raise ValueError("subject must be non-empty")
        return value

    @property
    def usable(self) -> bool:
        """Whether keyed operations may be performed on behalf of this identity."""
        return self.authenticated


class IdentityContext:
    """Observable holder of the current :class:`Identity`."""

    def __init__(self, identity: Identity | None = None) -> None:
        self._identity = identity
        self._listeners: list[IdentityListener] = []

    @property
    def current(self) -> Identity | None:
        """The current identity if it is usable, else ``None``."""
        identity = self._identity
        if identity is None or not identity.usable:
            return None
        return identity

    def set(self, identity: Identity | None) -> None:
        previous = self.current
        self._identity = identity
        current = self.current
        if previous == current:
            return
        _logger.debug(
            "Identity changed from %s to %s",
            previous.subject if previous else None,
            current.subject if current else None,
        )
        for listener in list(self._listeners):
            try:
                listener(current)
            except Exception:
                _logger.warning("Identity listener failed", exc_info=True)

    def clear(self) -> None:
        self.set(None)

    def add_listener(self, listener: IdentityListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove
