"""Notifications emitted by the listener, and the observer interface to receive them."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable, Mapping

from .helpers import slots_dataclass


if TYPE_CHECKING:
    from .structures import CertificateMaterial


__all__ = [
    "DoorbellEvent",
    "MessageEvent",
    "ErrorEvent",
    "ListenerObserver",
    "EventDispatcher",
]


_logger = logging.getLogger(__name__)


@slots_dataclass(frozen=True)
class DoorbellEvent:
    """Someone rang the doorbell: an INVITE was received."""

    from_header: str | None
    to_header: str | None
    call_id: str | None
    timestamp: datetime
    body: str
    headers: Mapping[str, str]


@slots_dataclass(frozen=True)
class MessageEvent:
    """A MESSAGE request was received."""

    from_header: str | None
    body: str
    timestamp: datetime
    headers: Mapping[str, str]


@slots_dataclass(frozen=True)
class ErrorEvent:
    """An error that was not otherwise reported to a caller."""

    message: str
    code: int | str | None = None
    exception: BaseException | None = None


class ListenerObserver:
    """
    Base class for listener observers.

    Override the hooks of interest, the default implementations do nothing.
    Hooks are called synchronously from the listener's event loop and must not block.
    """

    def on_connected(self) -> None:
        """The TLS handshake completed."""

    def on_disconnected(self) -> None:
        """The connection closed, for any reason."""

    def on_registered(self) -> None:
        """A REGISTER was confirmed with 200."""

    def on_doorbell(self, event: DoorbellEvent) -> None:
        """An INVITE was received."""

    def on_message(self, event: MessageEvent) -> None:
        """A MESSAGE was received."""

    def on_certificates_updated(self, certificates: CertificateMaterial) -> None:
        """A certificate rotation completed."""

    def on_certificate_update_error(self, error: BaseException) -> None:
        """A certificate rotation failed."""

    def on_error(self, event: ErrorEvent) -> None:
        """An error happened that no caller was waiting for."""


class EventDispatcher(ListenerObserver):
    """Fans out notifications to the subscribed observers, isolating their failures."""

    def __init__(self, observers: Iterable[ListenerObserver] = ()):
        self._observers: list[ListenerObserver] = list(observers)

    def subscribe(self, observer: ListenerObserver) -> Callable[[], None]:
        """
        Subscribe an observer.

        :param observer: the observer to add.
        :return: a callable that unsubscribes the observer.
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _dispatch(self, hook: str, notify: Callable[[ListenerObserver], None]) -> None:
        for observer in list(self._observers):
            try:
                notify(observer)
            except Exception:
                _logger.exception(f"Observer {observer!r} failed handling {hook}")

    def on_connected(self) -> None:  # noqa: D102
        self._dispatch("on_connected", lambda o: o.on_connected())

    def on_disconnected(self) -> None:  # noqa: D102
        self._dispatch("on_disconnected", lambda o: o.on_disconnected())

    def on_registered(self) -> None:  # noqa: D102
        self._dispatch("on_registered", lambda o: o.on_registered())

    def on_doorbell(self, event: DoorbellEvent) -> None:  # noqa: D102
        self._dispatch("on_doorbell", lambda o: o.on_doorbell(event))

    def on_message(self, event: MessageEvent) -> None:  # noqa: D102
        self._dispatch("on_message", lambda o: o.on_message(event))

    def on_certificates_updated(self, certificates: CertificateMaterial) -> None:  # noqa: D102
        self._dispatch(
            "on_certificates_updated", lambda o: o.on_certificates_updated(certificates)
        )

    def on_certificate_update_error(self, error: BaseException) -> None:  # noqa: D102
        self._dispatch(
            "on_certificate_update_error", lambda o: o.on_certificate_update_error(error)
        )

    def on_error(self, event: ErrorEvent) -> None:  # noqa: D102
        self._dispatch("on_error", lambda o: o.on_error(event))
