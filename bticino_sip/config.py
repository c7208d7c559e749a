"""Listener configuration."""

from __future__ import annotations

import dataclasses
from typing import Any, Callable, Mapping

from typing_extensions import Self

from .constants import (
    DEFAULT_CLOSE_TIMEOUT,
    DEFAULT_KEEP_ALIVE_INTERVAL,
    DEFAULT_MAX_AUTH_RETRIES,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_REGISTER_EXPIRES,
    DEFAULT_REGISTER_TIMEOUT,
    DEFAULT_RING_DELAY,
    DEFAULT_SETTLE_DELAY,
    DEFAULT_USER_AGENT,
)
from .exceptions import ValidationError
from .helpers import slots_dataclass


__all__ = ["ListenerConfig"]


def _ms(value: Any) -> float:
    return float(value) / 1000.0


def _flag(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"expected true or false, got {value!r}")
    return value


# option name -> (field name, converter)
OPTION_ALIASES: Mapping[str, tuple[str, Callable[[Any], Any]]] = {
    "keepAlive": ("keep_alive", _flag),
    "autoReconnect": ("auto_reconnect", _flag),
    "keepAliveIntervalMs": ("keep_alive_interval", _ms),
    "reconnectDelayMs": ("reconnect_delay", _ms),
    "registerExpiresSeconds": ("register_expires", int),
    "userAgent": ("user_agent", str),
    "debug": ("debug", _flag),
}


@slots_dataclass(frozen=True)
class ListenerConfig:
    """
    Immutable configuration for a :class:`~bticino_sip.sip.listener.SIPListener`.

    All durations are in seconds.
    """

    keep_alive: bool = True
    auto_reconnect: bool = True
    keep_alive_interval: float = DEFAULT_KEEP_ALIVE_INTERVAL
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    register_expires: int = DEFAULT_REGISTER_EXPIRES
    register_timeout: float | None = DEFAULT_REGISTER_TIMEOUT
    max_auth_retries: int = DEFAULT_MAX_AUTH_RETRIES
    ring_delay: float = DEFAULT_RING_DELAY
    settle_delay: float = DEFAULT_SETTLE_DELAY
    close_timeout: float = DEFAULT_CLOSE_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT
    debug: bool = False

    def __post_init__(self) -> None:
        for name in ("keep_alive", "auto_reconnect", "debug"):
            if not isinstance(getattr(self, name), bool):
                raise ValidationError(f"{name} must be a bool")
        if self.keep_alive_interval <= 0:
            raise ValidationError("keep_alive_interval must be positive")
        if self.reconnect_delay < 0:
            raise ValidationError("reconnect_delay must not be negative")
        if self.register_expires <= 0:
            raise ValidationError("register_expires must be positive")
        if self.max_auth_retries < 0:
            raise ValidationError("max_auth_retries must not be negative")
        if self.keep_alive_interval >= self.register_expires:
            raise ValidationError(
                "keep_alive_interval must stay below register_expires, "
                "or the binding lapses between refreshes"
            )

    @classmethod
    def from_options(cls, options: Mapping[str, Any] | None = None, **kwargs: Any) -> Self:
        """
        Build a config from camelCase listener options.

        Accepts ``keepAlive``, ``autoReconnect``, ``keepAliveIntervalMs``,
        ``reconnectDelayMs``, ``registerExpiresSeconds``, ``userAgent`` and ``debug``,
        as well as the native field names.
        """
        merged: dict[str, Any] = {**(options or {}), **kwargs}
        field_names = {f.name for f in dataclasses.fields(cls)}
        values: dict[str, Any] = {}
        for name, value in merged.items():
            if name in OPTION_ALIASES:
                field_name, convert = OPTION_ALIASES[name]
                try:
                    values[field_name] = convert(value)
                except (TypeError, ValueError) as e:
                    raise ValidationError(
                        f"Invalid value for listener option {name!r}: {e}"
                    ) from e
            elif name in field_names:
                values[name] = value
            else:
                raise ValidationError(f"Unknown listener option: {name!r}")
        return cls(**values)

    def replace(self, **changes: Any) -> Self:
        """Return a copy of this config with some fields overridden."""
        return dataclasses.replace(self, **changes)
