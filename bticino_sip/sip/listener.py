"""Persistent SIP listener: registration, keep-alive, reconnection and certificate rotation."""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime, timezone
from types import TracebackType
from typing import Any, Callable, Coroutine, Iterable, Mapping

from typing_extensions import Self

from bticino_sip.config import ListenerConfig
from bticino_sip.constants import DEFAULT_LOCAL_SIP_PORT
from bticino_sip.events import (
    DoorbellEvent,
    ErrorEvent,
    EventDispatcher,
    ListenerObserver,
    MessageEvent,
)
from bticino_sip.exceptions import (
    BticinoSIPException,
    CertificateUpdateError,
    CertificateValidationError,
    SIPAuthenticationError,
    SIPException,
    SIPListenerClosing,
    SIPNotConnected,
    SIPRegistrationError,
    SIPTimeout,
    SIPTransportError,
)
from bticino_sip.helpers import (
    generate_call_id,
    generate_tag,
    generate_via_branch,
    get_local_ip_for_dest,
)
from bticino_sip.scheduling import AsyncioScheduler, Scheduler, TimerHandle
from bticino_sip.structures import CertificateMaterial, SipAccount
from bticino_sip.transport import Connector, SIPConnection, open_tls_connection

from . import headers as hdr
from .auth import DigestChallenge, build_proxy_authorization, parse_challenge
from .messages import (
    FrameBuffer,
    RegisterParams,
    SIPFrame,
    SIPMethod,
    SIPRequest,
    SIPResponse,
    SIPStatus,
    decode,
    encode_register,
    encode_response,
)


__all__ = ["ListenerState", "ConnectionSession", "SIPListener"]


_logger = logging.getLogger(__name__)


def _resolve(future: asyncio.Future, result: Any = None) -> None:
    if not future.done():
        future.set_result(result)


def _reject(future: asyncio.Future, error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)
        # the error is also reported elsewhere, don't warn if nobody awaits it
        future.add_done_callback(lambda f: f.cancelled() or f.exception())


class ListenerState(enum.Enum):
    """Lifecycle states of a :class:`SIPListener`."""

    DISCONNECTED = enum.auto()
    """No connection, and none scheduled."""
    CONNECTING = enum.auto()
    """TLS connection and handshake in progress."""
    CONNECTED = enum.auto()
    """Connected, not registered."""
    REGISTERING = enum.auto()
    """A REGISTER transaction is in progress."""
    REGISTERED = enum.auto()
    """Registered, inbound requests are being delivered."""
    RECONNECTING = enum.auto()
    """Disconnected, with a reconnection scheduled."""


class _Registration:
    """One REGISTER cycle: the initial request and its authenticated retries."""

    __slots__ = ("call_id", "tag", "future", "challenges", "timeout_handle")

    def __init__(self, call_id: str, tag: str, future: asyncio.Future[None]):
        self.call_id: str = call_id
        self.tag: str = tag
        self.future: asyncio.Future[None] = future
        self.challenges: int = 0
        self.timeout_handle: TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return not self.future.done()


class ConnectionSession:
    """
    State bound to a single TLS connection.

    A new session is created for every connection, and never reused after it closes.
    """

    def __init__(self, connection: SIPConnection, local_address: tuple[str, int]):
        self.connection: SIPConnection = connection
        self.local_address: tuple[str, int] = local_address
        self.framer: FrameBuffer = FrameBuffer()
        self.local_tag: str = generate_tag()
        self.registration: _Registration | None = None
        self.challenge: DigestChallenge | None = None
        self.registered: bool = False
        self.lost: bool = False
        self.closed: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self.reader_task: asyncio.Task | None = None
        self._cseq: int = 0

    @property
    def cseq(self) -> int:
        """The CSeq of the last request sent in this session."""
        return self._cseq

    def next_cseq(self) -> int:
        """Increment and return the CSeq counter."""
        self._cseq += 1
        return self._cseq


class SIPListener:
    """
    Keeps a SIP account registered on the gateway over mutual TLS, and delivers
    doorbell rings and messages to observers.

    The listener re-registers periodically while registered, reconnects after the
    connection drops, and can swap its client certificate on a live connection with
    :meth:`update_certificates`.
    """

    def __init__(
        self,
        account: SipAccount,
        certificates: CertificateMaterial | Mapping[str, Any] | None = None,
        config: ListenerConfig | None = None,
        *,
        connector: Connector | None = None,
        scheduler: Scheduler | None = None,
        observers: Iterable[ListenerObserver] = (),
    ):
        """
        Initialize the listener. Nothing is connected until :meth:`connect`.

        :param account: the SIP account to register.
        :param certificates: the client certificate material, as an instance or a
            mapping with ``cert`` and ``key``.
        :param config: the listener configuration, defaults if omitted.
        :param connector: opens the TLS connection, :func:`open_tls_connection` by default.
        :param scheduler: schedules the timers, the asyncio loop by default.
        :param observers: initial observers for the notifications.
        """
        self._account: SipAccount = account
        self._certificates: CertificateMaterial | None = (
            CertificateMaterial.from_mapping(certificates)
            if certificates is not None
            else None
        )
        self._config: ListenerConfig = config or ListenerConfig()
        self._connector: Connector = connector or open_tls_connection
        self._scheduler: Scheduler = scheduler or AsyncioScheduler()
        self._events: EventDispatcher = EventDispatcher(observers)

        self._session: ConnectionSession | None = None
        self._closing: bool = False
        self._connect_attempt: asyncio.Future[None] | None = None
        self._auto_reconnect: bool = self._config.auto_reconnect
        self._keep_alive_handle: TimerHandle | None = None
        self._reconnect_handle: TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

        self._rotation_lock: asyncio.Lock = asyncio.Lock()
        self._rotating: bool = False
        self._rotation_cancelled: bool = False

    @property
    def account(self) -> SipAccount:
        """The registered SIP account."""
        return self._account

    @property
    def config(self) -> ListenerConfig:
        """The listener configuration."""
        return self._config

    @property
    def current_certificates(self) -> CertificateMaterial | None:
        """The active client certificate material."""
        return self._certificates

    @property
    def session(self) -> ConnectionSession | None:
        """The current connection session, if connected."""
        return self._session

    @property
    def connected(self) -> bool:
        """Whether a connection is open."""
        return self._session is not None and not self._session.connection.is_closing

    @property
    def registered(self) -> bool:
        """Whether the current session is registered."""
        return self._session is not None and self._session.registered

    @property
    def closing(self) -> bool:
        """Whether :meth:`disconnect` was called."""
        return self._closing

    @property
    def keep_alive_armed(self) -> bool:
        """Whether the keep-alive timer is scheduled."""
        return self._keep_alive_handle is not None

    @property
    def reconnect_pending(self) -> bool:
        """Whether a reconnection is scheduled."""
        return self._reconnect_handle is not None

    @property
    def state(self) -> ListenerState:
        """The current lifecycle state."""
        session = self._session
        if session is None:
            if self._connect_attempt is not None:
                return ListenerState.CONNECTING
            if self._reconnect_handle is not None:
                return ListenerState.RECONNECTING
            return ListenerState.DISCONNECTED
        if session.registered:
            return ListenerState.REGISTERED
        if session.registration is not None and session.registration.pending:
            return ListenerState.REGISTERING
        return ListenerState.CONNECTED

    def subscribe(self, observer: ListenerObserver) -> Callable[[], None]:
        """
        Subscribe an observer to the listener notifications.

        :return: a callable that unsubscribes it.
        """
        return self._events.subscribe(observer)

    async def connect(self) -> None:
        """
        Open the TLS connection with the active certificate material.

        Fails immediately, without retrying, if there is no certificate material or
        the connection cannot be established.

        :raises SIPListenerClosing: if the listener was disconnected.
        :raises CertificateValidationError: if there is no certificate material.
        :raises SIPTransportError: if the connection fails.
        """
        if self._closing:
            raise SIPListenerClosing("Listener is closing, cannot connect")
        if self._certificates is None:
            raise CertificateValidationError("No certificate material to connect with")
        if self.connected:
            _logger.debug("Already connected")
            return

        attempt: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._connect_attempt = attempt
        try:
            await self._open_session()
        finally:
            if self._connect_attempt is attempt:
                self._connect_attempt = None
            _resolve(attempt)

    async def _open_session(self) -> None:
        server, port = self._account.server, self._account.port
        try:
            connection: SIPConnection = await self._connector(
                server, port, self._certificates
            )
        except (SIPTransportError, OSError) as e:
            error = (
                e
                if isinstance(e, SIPTransportError)
                else SIPTransportError(f"Could not connect to {server}:{port}: {e}")
            )
            self._report_error(str(error), exception=error)
            if error is not e:
                raise error from e
            raise

        if self._closing:
            connection.abort()
            raise SIPListenerClosing("Listener was disconnected while connecting")

        local_address = connection.local_address or (
            get_local_ip_for_dest(server),
            DEFAULT_LOCAL_SIP_PORT,
        )
        session = ConnectionSession(connection, local_address)
        self._session = session
        session.reader_task = self._spawn(
            self._read_loop(session), name=f"SIPListener._read_loop[{server}:{port}]"
        )
        _logger.info(f"Connected to {server}:{port}")
        self._events.on_connected()

    async def register(self) -> None:
        """
        Register the account, answering digest challenges.

        :raises SIPNotConnected: if there is no open connection.
        :raises SIPAuthenticationError: if the challenges could not be answered.
        :raises SIPRegistrationError: if the server rejected the registration.
        :raises SIPTimeout: if the server did not answer in time.
        :raises SIPTransportError: if the connection closed meanwhile.
        """
        session = self._session
        if session is None or session.connection.is_closing:
            raise SIPNotConnected("Cannot register without an open connection")
        registration = self._start_registration(session)
        await registration.future

    async def disconnect(self) -> None:
        """
        Close the connection and stop keep-alive and reconnection.

        Calling it again while already closing does nothing. Returns once the
        connection closed, or after ``close_timeout`` seconds at most.
        """
        if self._closing:
            if self._rotating:
                self._rotation_cancelled = True
            return
        self._closing = True
        self._stop_keep_alive()
        self._cancel_reconnect()
        session = self._session
        if session is not None:
            await self._close_session(session)

    async def update_certificates(
        self, certificates: CertificateMaterial | Mapping[str, Any]
    ) -> None:
        """
        Replace the client certificate material.

        If connected, the connection is closed and reopened with the new material,
        and the account registered again if it was registered or registering.
        A connection attempt in progress is awaited first, and the connection it
        opened with the old material is rotated the same way.
        Validation happens before anything else, and a validation error leaves the
        listener untouched.

        :param certificates: the new material, as an instance or a mapping with
            ``cert`` and ``key``.
        :raises CertificateValidationError: if the material is invalid.
        :raises CertificateUpdateError: if reconnecting with the new material failed.
        """
        new_certificates = CertificateMaterial.from_mapping(certificates)
        async with self._rotation_lock:
            attempt = self._connect_attempt
            if attempt is not None:
                _logger.debug("Waiting for the connection attempt before rotating")
                await asyncio.wait({attempt})
            if self._session is None:
                self._certificates = new_certificates
                _logger.info("Certificates updated, they will be used on next connect")
                self._events.on_certificates_updated(new_certificates)
                return
            await self._rotate(new_certificates)

    async def _rotate(self, new_certificates: CertificateMaterial) -> None:
        session = self._session
        was_registered: bool = session is not None and (
            session.registered
            or (session.registration is not None and session.registration.pending)
        )
        auto_reconnect: bool = self._auto_reconnect
        # no reconnection with the old certificate while rotating
        self._auto_reconnect = False
        self._rotating = True
        self._rotation_cancelled = False
        _logger.info("Rotating certificates on the live connection")
        try:
            await self.disconnect()
            await self._scheduler.sleep(self._config.settle_delay)
            cancelled: bool = self._rotation_cancelled
            if not cancelled:
                self._closing = False
            self._auto_reconnect = auto_reconnect
            self._certificates = new_certificates
            if cancelled:
                _logger.info("Disconnected during certificate rotation, not reconnecting")
            else:
                await self.connect()
                if was_registered:
                    await self.register()
        except BticinoSIPException as e:
            error = CertificateUpdateError(f"Certificate rotation failed: {e}")
            _logger.error(str(error))
            await self._abandon_session()
            self._events.on_certificate_update_error(error)
            raise error from e
        finally:
            self._rotating = False
            self._auto_reconnect = auto_reconnect
        _logger.info("Certificates rotated")
        self._events.on_certificates_updated(new_certificates)

    async def _abandon_session(self) -> None:
        session = self._session
        if session is None:
            return
        auto_reconnect = self._auto_reconnect
        self._auto_reconnect = False
        try:
            await self._close_session(session)
        finally:
            self._auto_reconnect = auto_reconnect

    async def _close_session(self, session: ConnectionSession) -> None:
        session.connection.close()
        timeout: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        timer = self._scheduler.call_later(
            self._config.close_timeout, lambda: _resolve(timeout)
        )
        try:
            await asyncio.wait(
                {session.closed, timeout}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            timer.cancel()
            timeout.cancel()
        if not session.closed.done():
            _logger.warning(
                f"Connection not closed after {self._config.close_timeout}s, aborting"
            )
            session.connection.abort()
            if session.reader_task is not None:
                session.reader_task.cancel()
            self._handle_connection_lost(session, None)

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and (exc := task.exception()) is not None:
            _logger.error(f"Task {task.get_name()} failed: {exc!r}", exc_info=exc)

    def _report_error(
        self,
        message: str,
        *,
        code: int | str | None = None,
        exception: BaseException | None = None,
    ) -> None:
        _logger.error(message)
        self._events.on_error(ErrorEvent(message=message, code=code, exception=exception))

    def _send(self, session: ConnectionSession, frame: str) -> None:
        if self._config.debug:
            start_line = frame.partition("\r\n")[0]
            _logger.debug(f"--> {start_line}")
        session.connection.write(frame.encode("utf-8"))

    async def _read_loop(self, session: ConnectionSession) -> None:
        error: BaseException | None = None
        try:
            while True:
                data: bytes = await session.connection.read()
                if not data:
                    break
                for raw in session.framer.feed(data):
                    self._handle_frame(session, decode(raw))
        except OSError as e:
            error = e
        finally:
            self._handle_connection_lost(session, error)

    def _handle_connection_lost(
        self, session: ConnectionSession, error: BaseException | None
    ) -> None:
        if session.lost:
            return
        session.lost = True
        session.registered = False
        session.connection.close()
        if session.registration is not None:
            self._fail_registration(
                session.registration,
                SIPTransportError("Connection closed before REGISTER completed"),
                report=False,
            )
        _resolve(session.closed)
        if self._session is not session:
            return
        self._session = None
        self._stop_keep_alive()
        if error is not None:
            self._report_error(f"Connection error: {error}", exception=error)
        _logger.info("Disconnected")
        self._events.on_disconnected()
        if self._auto_reconnect and not self._closing:
            self._schedule_reconnect()

    def _handle_frame(self, session: ConnectionSession, frame: SIPFrame) -> None:
        if self._config.debug:
            _logger.debug(f"<-- {frame.start_line}")
        try:
            if isinstance(frame, SIPResponse):
                self._handle_response(session, frame)
            elif isinstance(frame, SIPRequest):
                self._handle_request(session, frame)
            else:
                _logger.debug("Ignoring unrecognized frame")
        except Exception as e:
            _logger.exception(f"Error handling frame {frame.start_line!r}")
            self._report_error(f"Error handling frame: {e}", exception=e)

    # Registration

    def _start_registration(self, session: ConnectionSession) -> _Registration:
        previous = session.registration
        if previous is not None and previous.pending:
            self._fail_registration(
                previous,
                SIPRegistrationError("Superseded by a newer REGISTER"),
                report=False,
            )
        registration = _Registration(
            call_id=generate_call_id(),
            tag=generate_tag(),
            future=asyncio.get_running_loop().create_future(),
        )
        session.registration = registration
        if self._config.register_timeout is not None:
            registration.timeout_handle = self._scheduler.call_later(
                self._config.register_timeout,
                lambda: self._registration_timed_out(registration),
            )
        self._send_register(session, registration)
        return registration

    def _send_register(
        self,
        session: ConnectionSession,
        registration: _Registration,
        authorization: hdr.AuthorizationHeader | None = None,
    ) -> None:
        local_host, local_port = session.local_address
        params = RegisterParams(
            call_id=registration.call_id,
            tag=registration.tag,
            cseq=session.next_cseq(),
            branch=generate_via_branch(),
            local_host=local_host,
            local_port=local_port,
            expires=self._config.register_expires,
            user_agent=self._config.user_agent,
            proxy_authorization=authorization,
        )
        self._send(session, encode_register(self._account, params))

    def _registration_timed_out(self, registration: _Registration) -> None:
        registration.timeout_handle = None
        if registration.pending:
            self._fail_registration(
                registration,
                SIPTimeout(
                    f"No answer to REGISTER after {self._config.register_timeout}s"
                ),
            )

    def _fail_registration(
        self, registration: _Registration, error: SIPException, *, report: bool = True
    ) -> None:
        if registration.timeout_handle is not None:
            registration.timeout_handle.cancel()
            registration.timeout_handle = None
        if not registration.pending:
            return
        _reject(registration.future, error)
        if report:
            self._report_error(
                str(error), code=getattr(error, "status_code", None), exception=error
            )

    def _handle_response(self, session: ConnectionSession, response: SIPResponse) -> None:
        if not response.is_for(SIPMethod.REGISTER):
            _logger.debug(f"Ignoring response {response.start_line!r}: not for REGISTER")
            return
        registration = session.registration
        if registration is None:
            _logger.debug("Ignoring REGISTER response: no registration in progress")
            return
        if response.call_id is not None and response.call_id != registration.call_id:
            _logger.debug(f"Ignoring REGISTER response for stale Call-ID {response.call_id}")
            return
        if response.is_provisional:
            return
        if response.is_auth_challenge:
            self._answer_challenge(session, registration, response)
        elif response.status_code == SIPStatus.OK.code:
            self._registration_succeeded(session, registration)
        elif response.status_code >= 300:
            session.registered = False
            self._fail_registration(
                registration,
                SIPRegistrationError(
                    f"REGISTER rejected: {response.status_code} {response.status_text}",
                    status_code=response.status_code,
                    response=response,
                ),
            )

    def _answer_challenge(
        self,
        session: ConnectionSession,
        registration: _Registration,
        response: SIPResponse,
    ) -> None:
        challenge_header: str | None = response.headers.get(
            "proxy-authenticate"
        ) or response.headers.get("www-authenticate")
        if not challenge_header:
            self._fail_registration(
                registration,
                SIPAuthenticationError(
                    f"{response.status_code} challenge without an authenticate header"
                ),
            )
            return
        if registration.challenges >= self._config.max_auth_retries:
            self._fail_registration(
                registration,
                SIPAuthenticationError(
                    f"REGISTER still challenged after {registration.challenges} "
                    "authenticated attempts, check the account credentials"
                ),
            )
            return
        registration.challenges += 1
        session.challenge = parse_challenge(challenge_header)
        try:
            authorization = build_proxy_authorization(
                session.challenge,
                username=self._account.username,
                password=self._account.password,
                method=SIPMethod.REGISTER.value,
                uri=str(self._account.registrar_uri),
                realm=self._account.realm,
            )
        except SIPAuthenticationError as e:
            self._fail_registration(registration, e)
            return
        self._send_register(session, registration, authorization)

    def _registration_succeeded(
        self, session: ConnectionSession, registration: _Registration
    ) -> None:
        if registration.timeout_handle is not None:
            registration.timeout_handle.cancel()
            registration.timeout_handle = None
        session.registered = True
        _resolve(registration.future)
        _logger.info(f"Registered as {self._account.aor}")
        self._events.on_registered()
        if self._config.keep_alive and self._keep_alive_handle is None:
            self._arm_keep_alive()

    # Keep-alive and reconnection

    def _arm_keep_alive(self) -> None:
        self._keep_alive_handle = self._scheduler.call_later(
            self._config.keep_alive_interval, self._keep_alive_tick
        )

    def _stop_keep_alive(self) -> None:
        if self._keep_alive_handle is not None:
            self._keep_alive_handle.cancel()
            self._keep_alive_handle = None

    def _keep_alive_tick(self) -> None:
        self._keep_alive_handle = None
        session = self._session
        if self._closing or session is None:
            return
        if session.registered and not session.connection.is_closing:
            self._spawn(
                self._refresh_registration(session),
                name="SIPListener._refresh_registration",
            )
        self._arm_keep_alive()

    async def _refresh_registration(self, session: ConnectionSession) -> None:
        if session is not self._session or session.lost:
            return
        _logger.debug("Refreshing registration")
        registration = self._start_registration(session)
        try:
            await registration.future
        except SIPException as e:
            _logger.warning(f"Registration refresh failed: {e}")

    def _schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None or self._closing:
            return
        _logger.info(f"Reconnecting in {self._config.reconnect_delay}s")
        self._reconnect_handle = self._scheduler.call_later(
            self._config.reconnect_delay, self._reconnect_due
        )

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _reconnect_due(self) -> None:
        self._reconnect_handle = None
        if self._closing or not self._auto_reconnect:
            return
        self._spawn(self._reconnect(), name="SIPListener._reconnect")

    async def _reconnect(self) -> None:
        try:
            await self.connect()
            await self.register()
        except SIPListenerClosing:
            return
        except BticinoSIPException as e:
            _logger.warning(f"Reconnection failed: {e}")
            if self._closing:
                return
            session = self._session
            if session is not None:
                # the close path schedules the next attempt
                session.connection.close()
            else:
                self._schedule_reconnect()

    # Inbound requests

    def _handle_request(self, session: ConnectionSession, request: SIPRequest) -> None:
        method = request.sip_method
        if method is SIPMethod.INVITE:
            event = DoorbellEvent(
                from_header=request.headers.get("from"),
                to_header=request.headers.get("to"),
                call_id=request.call_id,
                timestamp=datetime.now(timezone.utc),
                body=request.body,
                headers=request.headers,
            )
            _logger.info(f"Doorbell ring from {event.from_header}")
            self._events.on_doorbell(event)
            self._reply(session, request, SIPStatus.RINGING)
            self._scheduler.call_later(
                self._config.ring_delay, lambda: self._decline_invite(session, request)
            )
        elif method is SIPMethod.MESSAGE:
            self._events.on_message(
                MessageEvent(
                    from_header=request.headers.get("from"),
                    body=request.body,
                    timestamp=datetime.now(timezone.utc),
                    headers=request.headers,
                )
            )
            self._reply(session, request, SIPStatus.OK)
        elif method in {SIPMethod.BYE, SIPMethod.CANCEL, SIPMethod.OPTIONS}:
            self._reply(session, request, SIPStatus.OK)
        elif method is SIPMethod.ACK:
            pass
        else:
            _logger.debug(f"Unhandled SIP request {request.method}")

    def _decline_invite(self, session: ConnectionSession, request: SIPRequest) -> None:
        if session.lost or session.connection.is_closing:
            _logger.debug(f"Connection gone, not declining call {request.call_id}")
            return
        self._reply(session, request, SIPStatus.BUSY_HERE)

    def _reply(
        self, session: ConnectionSession, request: SIPRequest, status: SIPStatus
    ) -> None:
        self._send(
            session,
            encode_response(status.code, status.reason, request, tag=session.local_tag),
        )

    async def __aenter__(self) -> Self:
        await self.connect()
        await self.register()
        return self

    async def __aexit__(
        self,
        exctype: type[BaseException] | None,
        excinst: BaseException | None,
        exctb: TracebackType | None,
    ) -> None:
        await self.disconnect()
