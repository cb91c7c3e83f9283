"""Error taxonomy shared by the core and its adapters."""

from __future__ import annotations

from typing import Optional


class HeraldError(Exception):
    """Base class for all herald errors."""


class RuleSetValidationError(HeraldError, ValueError):
    """A campaign rule-set document has an unsupported shape."""


class StoreError(HeraldError):
    """The persistent store could not be reached or queried."""


class ConversationConflictError(HeraldError):
    """The sender already has an active conversation."""


class InvalidTransitionError(HeraldError, ValueError):
    """A conversation status change is not allowed by the state machine."""


class MediaFetchError(HeraldError):
    """A media file could not be retrieved."""


class TransportError(HeraldError):
    """A single send failed but the channel is still usable."""


class TransportFatalError(TransportError):
    """The underlying channel or session is gone."""


class DispatchCancelledError(HeraldError):
    """A stop request interrupted a dispatch between plan items."""

    def __init__(self, message: str, result: Optional[object] = None) -> None:
        super().__init__(message)
        self.result = result
