"""Outbound control path: gate-open commands sent as SIP MESSAGE requests."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import random
from email.utils import formatdate
from types import TracebackType
from typing import Any, Mapping

from typing_extensions import Self

from bticino_sip.constants import (
    DEFAULT_CONTROL_RESPONSE_TIMEOUT,
    DEFAULT_CONTROL_USER_AGENT,
    DEFAULT_LOCAL_SIP_PORT,
    DEFAULT_MAX_AUTH_RETRIES,
    GATE_CONTROL_INITIAL_CSEQ,
)
from bticino_sip.exceptions import (
    SIPAuthenticationError,
    SIPException,
    SIPNotConnected,
    SIPRequestFailed,
    SIPTimeout,
    SIPTransportError,
)
from bticino_sip.helpers import (
    cancel_task_silent,
    generate_call_id,
    generate_tag,
    generate_via_branch,
    get_local_ip_for_dest,
)
from bticino_sip.structures import SIPURI, CertificateMaterial, SipAccount
from bticino_sip.transport import Connector, SIPConnection, open_tls_connection

from . import headers as hdr
from .auth import build_proxy_authorization, parse_challenge
from .messages import (
    FrameBuffer,
    MessageParams,
    SIPMethod,
    SIPResponse,
    control_uri,
    decode,
    encode_message,
)


__all__ = ["build_gate_open_payload", "SIPControlClient", "open_gate"]


_logger = logging.getLogger(__name__)


def build_gate_open_payload(gate_id: str | None, *, request_id: str | None = None) -> str:
    """
    Build the JSON-RPC 2.0 ``lock.setStatus`` payload that opens a gate.

    :param gate_id: the id of the gate (lock) to open.
    :param request_id: the JSON-RPC request id, random if omitted.
    :return: the compact JSON payload.
    """
    payload: dict[str, Any] = {
        "id": request_id if request_id is not None else str(random.randrange(100_000_000)),
        "jsonrpc": "2.0",
        "method": "lock.setStatus",
        "params": [
            {
                "receiver": {"plant": {"coal": {"id": gate_id or None}, "id": None}},
                "status": "open",
            }
        ],
    }
    return json.dumps(payload, separators=(",", ":"))


class _PendingRequest:
    __slots__ = ("params", "future", "challenges")

    def __init__(self, params: MessageParams, future: asyncio.Future[SIPResponse]):
        self.params: MessageParams = params
        self.future: asyncio.Future[SIPResponse] = future
        self.challenges: int = 0


class SIPControlClient:
    """
    Short-lived SIP client sending MESSAGE requests to the gateway.

    Only one request can be in flight at a time.
    """

    def __init__(
        self,
        account: SipAccount,
        certificates: CertificateMaterial | Mapping[str, Any],
        *,
        connector: Connector | None = None,
        response_timeout: float = DEFAULT_CONTROL_RESPONSE_TIMEOUT,
        max_auth_retries: int = DEFAULT_MAX_AUTH_RETRIES,
        user_agent: str = DEFAULT_CONTROL_USER_AGENT,
        debug: bool = False,
    ):
        self._account: SipAccount = account
        self._certificates: CertificateMaterial = CertificateMaterial.from_mapping(
            certificates
        )
        self._connector: Connector = connector or open_tls_connection
        self._response_timeout: float = response_timeout
        self._max_auth_retries: int = max_auth_retries
        self._user_agent: str = user_agent
        self._debug: bool = debug

        self._connection: SIPConnection | None = None
        self._local_address: tuple[str, int] | None = None
        self._reader_task: asyncio.Task | None = None
        self._pending: _PendingRequest | None = None

    @property
    def connected(self) -> bool:
        """Whether the connection is open."""
        return self._connection is not None and not self._connection.is_closing

    async def connect(self) -> None:
        """
        Open the TLS connection to the account's SIP server.

        :raises SIPTransportError: if the connection fails.
        """
        if self.connected:
            return
        server, port = self._account.server, self._account.port
        try:
            connection = await self._connector(server, port, self._certificates)
        except SIPTransportError:
            raise
        except OSError as e:
            raise SIPTransportError(f"Could not connect to {server}:{port}: {e}") from e
        self._connection = connection
        self._local_address = connection.local_address or (
            get_local_ip_for_dest(server),
            DEFAULT_LOCAL_SIP_PORT,
        )
        self._reader_task = asyncio.get_running_loop().create_task(
            self._read_loop(connection), name="SIPControlClient._read_loop"
        )
        _logger.debug(f"Control connection open to {server}:{port}")

    async def disconnect(self) -> None:
        """Close the connection, if open."""
        connection, self._connection = self._connection, None
        if connection is not None:
            connection.close()
        task, self._reader_task = self._reader_task, None
        if task is not None:
            await cancel_task_silent(task)

    async def send_message(
        self,
        body: str,
        *,
        content_type: str = "text/plain",
        to_uri: SIPURI | None = None,
    ) -> SIPResponse:
        """
        Send a MESSAGE and wait for its final response, answering digest challenges.

        :param body: the message body.
        :param content_type: the body content type.
        :param to_uri: the destination, the gateway control endpoint by default.
        :return: the final 2xx response.
        :raises SIPNotConnected: if not connected.
        :raises SIPRequestFailed: on a final non-2xx response.
        :raises SIPAuthenticationError: if the challenges could not be answered.
        :raises SIPTimeout: if no final response arrives in time.
        """
        if not self.connected:
            raise SIPNotConnected("Cannot send a MESSAGE without an open connection")
        if self._pending is not None:
            raise SIPException("Another request is already in progress")
        assert self._local_address is not None
        local_host, local_port = self._local_address
        params = MessageParams(
            call_id=generate_call_id(),
            tag=generate_tag(),
            cseq=GATE_CONTROL_INITIAL_CSEQ,
            branch=generate_via_branch(),
            local_host=local_host,
            local_port=local_port,
            body=body,
            content_type=content_type,
            to_uri=to_uri or control_uri(self._account),
            date=formatdate(usegmt=True),
            user_agent=self._user_agent,
        )
        pending = _PendingRequest(params, asyncio.get_running_loop().create_future())
        self._pending = pending
        try:
            self._send(encode_message(self._account, params))
            return await asyncio.wait_for(pending.future, timeout=self._response_timeout)
        except asyncio.TimeoutError as e:
            raise SIPTimeout(
                f"No final response to MESSAGE after {self._response_timeout}s"
            ) from e
        finally:
            self._pending = None

    async def open_gate(self, gate_id: str) -> SIPResponse:
        """Send the gate-open command for the given gate."""
        _logger.info(f"Opening gate {gate_id}")
        return await self.send_message(build_gate_open_payload(gate_id))

    def _send(self, frame: str) -> None:
        if self._connection is None:
            raise SIPNotConnected("Connection closed")
        if self._debug:
            start_line = frame.partition("\r\n")[0]
            _logger.debug(f"--> {start_line}")
        self._connection.write(frame.encode("utf-8"))

    async def _read_loop(self, connection: SIPConnection) -> None:
        framer = FrameBuffer()
        try:
            while True:
                data = await connection.read()
                if not data:
                    break
                for raw in framer.feed(data):
                    frame = decode(raw)
                    if self._debug:
                        _logger.debug(f"<-- {frame.start_line}")
                    if isinstance(frame, SIPResponse):
                        self._handle_response(frame)
        except OSError as e:
            _logger.warning(f"Control connection error: {e}")
        finally:
            if self._pending is not None and not self._pending.future.done():
                self._pending.future.set_exception(
                    SIPTransportError("Connection closed before a final response")
                )

    def _handle_response(self, response: SIPResponse) -> None:
        pending = self._pending
        if pending is None or pending.future.done():
            return
        if not response.is_for(SIPMethod.MESSAGE):
            return
        if response.call_id is not None and response.call_id != pending.params.call_id:
            return
        if response.is_provisional:
            return
        if response.is_auth_challenge:
            self._answer_challenge(pending, response)
        elif 200 <= response.status_code < 300:
            pending.future.set_result(response)
        else:
            pending.future.set_exception(
                SIPRequestFailed(
                    f"SIP request failed with status "
                    f"{response.status_code} {response.status_text}",
                    status_code=response.status_code,
                    response=response,
                )
            )

    def _answer_challenge(self, pending: _PendingRequest, response: SIPResponse) -> None:
        challenge_header: str | None = response.headers.get(
            "proxy-authenticate"
        ) or response.headers.get("www-authenticate")
        if not challenge_header or pending.challenges >= self._max_auth_retries:
            pending.future.set_exception(
                SIPAuthenticationError(
                    f"MESSAGE rejected with {response.status_code} "
                    f"after {pending.challenges} authenticated attempts"
                )
            )
            return
        pending.challenges += 1
        params = pending.params
        assert params.to_uri is not None
        try:
            authorization: hdr.AuthorizationHeader = build_proxy_authorization(
                parse_challenge(challenge_header),
                username=self._account.username,
                password=self._account.password,
                method=SIPMethod.MESSAGE.value,
                uri=params.to_uri.serialize(force_brackets=False),
                realm=self._account.realm or self._account.domain,
            )
        except SIPAuthenticationError as e:
            pending.future.set_exception(e)
            return
        pending.params = dataclasses.replace(
            params,
            cseq=params.cseq + 1,
            branch=generate_via_branch(),
            date=formatdate(usegmt=True),
            proxy_authorization=authorization,
        )
        self._send(encode_message(self._account, pending.params))

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exctype: type[BaseException] | None,
        excinst: BaseException | None,
        exctb: TracebackType | None,
    ) -> None:
        await self.disconnect()


async def open_gate(
    gate_id: str,
    account: SipAccount,
    certificates: CertificateMaterial | Mapping[str, Any],
    **kwargs: Any,
) -> SIPResponse:
    """
    Connect to the gateway, open the given gate, and disconnect.

    :param gate_id: the id of the gate to open.
    :param account: the SIP account sending the command.
    :param certificates: the client certificate material.
    :param kwargs: further :class:`SIPControlClient` options.
    :return: the final 2xx response to the command.
    """
    async with SIPControlClient(account, certificates, **kwargs) as client:
        return await client.open_gate(gate_id)
