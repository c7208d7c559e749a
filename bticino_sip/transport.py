"""Mutually-authenticated TLS transport towards the SIP server."""

from __future__ import annotations

import asyncio
import logging
import os
import ssl
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Protocol, runtime_checkable

from .constants import READ_CHUNK_SIZE
from .exceptions import SIPTransportError
from .structures import CertificateMaterial


__all__ = [
    "SIPConnection",
    "Connector",
    "TLSConnection",
    "create_client_ssl_context",
    "open_tls_connection",
]


_logger = logging.getLogger(__name__)


@runtime_checkable
class SIPConnection(Protocol):
    """A stream connection carrying SIP frames."""

    @property
    def local_address(self) -> tuple[str, int] | None:
        """The local (host, port) of the connection, if known."""

    @property
    def is_closing(self) -> bool:
        """Whether the connection is closed or closing."""

    async def read(self) -> bytes:
        """Read the next chunk of data, or ``b""`` once the connection is closed."""

    def write(self, data: bytes) -> None:
        """Queue data to be sent."""

    def close(self) -> None:
        """Gracefully close the connection. Reads end with ``b""`` once closed."""

    def abort(self) -> None:
        """Close the connection immediately, discarding buffered data."""


Connector = Callable[[str, int, CertificateMaterial], Awaitable[SIPConnection]]
"""Opens a connection to (host, port) using the given client certificate."""


def create_client_ssl_context(certificates: CertificateMaterial) -> ssl.SSLContext:
    """
    Create a client TLS context presenting the given certificate.

    The server certificate is not verified: the gateway uses an infrastructure
    certificate that does not chain to public roots, and the trust boundary is the
    client certificate.

    :param certificates: the client certificate and private key.
    :return: the SSL context.
    :raises SIPTransportError: if the certificate or key cannot be loaded.
    """
    if not certificates.looks_like_pem:
        _logger.warning("Client certificate material has no PEM markers")
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    # ssl can only load a chain from files
    with tempfile.TemporaryDirectory(prefix="bticino-sip-") as tmp_dir:
        cert_path = Path(tmp_dir, "client.crt")
        key_path = Path(tmp_dir, "client.key")
        cert_path.write_text(certificates.certificate_pem)
        key_fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(key_fd, "w") as fp:
            fp.write(certificates.private_key_pem)
        try:
            context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
        except ssl.SSLError as e:
            raise SIPTransportError(f"Could not load client certificate: {e}") from e
    return context


class TLSConnection:
    """A :class:`SIPConnection` over asyncio TLS streams."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader: asyncio.StreamReader = reader
        self._writer: asyncio.StreamWriter = writer

    @property
    def local_address(self) -> tuple[str, int] | None:  # noqa: D102
        sockname = self._writer.get_extra_info("sockname")
        if not sockname:
            return None
        return str(sockname[0]), int(sockname[1])

    @property
    def is_closing(self) -> bool:  # noqa: D102
        return self._writer.is_closing()

    async def read(self) -> bytes:  # noqa: D102
        return await self._reader.read(READ_CHUNK_SIZE)

    def write(self, data: bytes) -> None:  # noqa: D102
        self._writer.write(data)

    def close(self) -> None:  # noqa: D102
        if not self._writer.is_closing():
            self._writer.close()

    def abort(self) -> None:  # noqa: D102
        self._writer.transport.abort()


async def open_tls_connection(
    host: str,
    port: int,
    certificates: CertificateMaterial,
    *,
    timeout: float | None = None,
) -> TLSConnection:
    """
    Open a mutually-authenticated TLS connection.

    :param host: the server host name.
    :param port: the server port.
    :param certificates: the client certificate and private key.
    :param timeout: an optional timeout for the TCP connection and TLS handshake.
    :return: the open connection.
    :raises SIPTransportError: if the connection or handshake fails.
    """
    context: ssl.SSLContext = create_client_ssl_context(certificates)
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=context, server_hostname=host),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise SIPTransportError(f"Timed out connecting to {host}:{port}") from e
    except OSError as e:
        raise SIPTransportError(f"Could not connect to {host}:{port}: {e}") from e
    _logger.debug(f"TLS connection established to {host}:{port}")
    return TLSConnection(reader, writer)
