"""Helpers, utilities, and other miscellaneous functions and classes."""

from __future__ import annotations

import asyncio
import base64
import functools
import logging
import secrets
import socket
import sys
import uuid
from dataclasses import dataclass as _dtcls
from typing import Any, Callable, TypeVar, cast

from typing_extensions import dataclass_transform


_logger = logging.getLogger(__name__)


_dT = TypeVar("_dT")


@functools.wraps(_dtcls)
@dataclass_transform()
def slots_dataclass(*args: Any, **kwargs: Any) -> Callable[[_dT], _dT]:
    """Wrapper for dataclass decorator that adds slots if supported (py3.10+)."""
    if sys.version_info < (3, 10):
        kwargs.pop("slots", None)
    else:
        kwargs.setdefault("slots", True)
    return cast(Callable[[_dT], _dT], _dtcls(*args, **kwargs))


def generate_via_branch() -> str:
    """Generate a unique branch identifier for Via headers, with the RFC 3261 magic cookie."""
    branch: str = base64.b64encode(uuid.uuid4().bytes, altchars=b"00").decode()[:22]
    return f"z9hG4bK.{branch}"


def generate_tag() -> str:
    """Generate a tag for From/To headers."""
    return secrets.token_hex(8)


def generate_call_id() -> str:
    """Generate a unique Call-ID value."""
    return secrets.token_hex(8)


def generate_cnonce() -> str:
    """Generate a client nonce for digest authentication."""
    return secrets.token_hex(8)


def get_local_ip_for_dest(host: str) -> str:
    """Get the IP address of the current machine relative to the given host."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect((host, 1))
            return cast(str, s.getsockname()[0])
    except OSError as e:
        _logger.debug(f"Could not determine local address towards {host!r}: {e}")
        return "127.0.0.1"


async def cancel_task_silent(task: asyncio.Task) -> None:
    """Cancel a task, awaiting it, and ignore the raised :class:`asyncio.CancelledError`."""
    if task.done():
        return
    try:
        task.cancel()
        await task
    except asyncio.CancelledError:
        pass
