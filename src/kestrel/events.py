# =============================================================================
# Outbound Events
# =============================================================================
# The engine announces cache changes to whoever is listening (normally the
# UI). Delivery is fire-and-forget: an event carries only an identifier and
# the listener is expected to re-read CacheStore for the data itself.
#
# Events are only emitted after the corresponding write has committed.
# =============================================================================

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailboxesUpdated:
    """The cached mailbox list for an account was replaced."""
    account_id: int


@dataclass(frozen=True)
class MessagesUpdated:
    """New messages were cached for one mailbox."""
    mailbox_name: str
    account_id: int


@dataclass(frozen=True)
class UserLoggedOut:
    """An account's credentials were cleared."""
    account_id: int


@dataclass(frozen=True)
class OAuthSuccess:
    """An OAuth login attempt finished and the account is logged in."""
    account_id: int


@dataclass(frozen=True)
class OAuthFailure:
    """An OAuth login attempt failed (bad state, denied consent, timeout, ...)."""
    reason: str


Event = MailboxesUpdated | MessagesUpdated | UserLoggedOut | OAuthSuccess | OAuthFailure

EventCallback = Callable[[Event], None]


class EventNotifier(Protocol):
    """Anything the engine can announce events to."""

    def emit(self, event: Event) -> None:
        ...


class CallbackNotifier:
    """
    EventNotifier that fans events out to registered callbacks.

    A callback that raises is logged and skipped; it never breaks the
    sync that emitted the event.

    Usage:
        >>> notifier = CallbackNotifier()
        >>> unsubscribe = notifier.subscribe(lambda e: print(e))
        >>> notifier.emit(MailboxesUpdated(account_id=1))
        MailboxesUpdated(account_id=1)
    """

    def __init__(self) -> None:
        self._callbacks: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unregisters it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, event: Event) -> None:
        logger.debug(f"Event: {event}")
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event callback failed for {event}")

