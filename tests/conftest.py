from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import logging
from pathlib import Path
from typing import Any, Callable

import pytest

from bticino_sip.config import ListenerConfig
from bticino_sip.events import ListenerObserver
from bticino_sip.scheduling import Scheduler
from bticino_sip.sip.listener import SIPListener
from bticino_sip.sip.messages import SIPRequest, decode, encode_response
from bticino_sip.structures import CertificateMaterial, SipAccount


_logger = logging.getLogger(__name__)


def pytest_addoption(parser):
    parser.addoption(
        "--test-sip-account",
        help="Path to a JSON SIP account descriptor (sipUri, sipPassword, ...)",
    )
    parser.addoption("--test-cert", help="Path to the client certificate PEM")
    parser.addoption("--test-key", help="Path to the client private key PEM")


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "needs_test_server: mark test as needing the real gateway"
    )


def get_test_server_options(config):
    options = dict(
        account=config.getoption("--test-sip-account"),
        cert=config.getoption("--test-cert"),
        key=config.getoption("--test-key"),
    )
    if not any(options.values()):
        raise ValueError("need --test-sip-account/--test-cert/--test-key to run")
    if not all(options.values()):
        raise ValueError(
            "need ALL these command line options to run with the real gateway: "
            "--test-sip-account, --test-cert, --test-key"
        )
    return options


def pytest_collection_modifyitems(config, items):
    enable_real_server_tests = False
    skip_reason = "need --test-sip-account/--test-cert/--test-key to run"
    try:
        get_test_server_options(config)
        enable_real_server_tests = True
    except ValueError as e:
        skip_reason = str(e)

    skip_needs_test_server = pytest.mark.skip(reason=skip_reason)
    for item in items:
        if "needs_test_server" in item.keywords and not enable_real_server_tests:
            item.add_marker(skip_needs_test_server)


@pytest.fixture(scope="session")
def real_gateway(pytestconfig):
    """The account and certificates of the real gateway given on the command line."""
    options = get_test_server_options(pytestconfig)
    descriptor = json.loads(Path(options["account"]).read_text())
    account = SipAccount.from_descriptor(descriptor)
    certificates = CertificateMaterial(
        certificate_pem=Path(options["cert"]).read_text(),
        private_key_pem=Path(options["key"]).read_text(),
    )
    return account, certificates


class FakeTimer:
    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler(Scheduler):
    """Virtual clock: callbacks only run when the test advances time."""

    def __init__(self):
        self._now = 0.0
        self._counter = itertools.count()
        self._timers: list[tuple[float, int, FakeTimer]] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self._now + delay, callback)
        heapq.heappush(self._timers, (timer.when, next(self._counter), timer))
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        """The scheduled and not cancelled timers, in firing order."""
        return [t for _, _, t in sorted(self._timers) if not t.cancelled]

    @staticmethod
    async def _drain(rounds: int = 50) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float = 0.0) -> None:
        """
        Move the clock forward, running the timers that become due in order.

        The ready tasks and callbacks of the loop run before and after each timer,
        so ``advance()`` alone lets pending I/O handling complete.
        """
        target = self._now + seconds
        await self._drain()
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = when
            timer.callback()
            await self._drain()
        self._now = target
        await self._drain()


class StubConnection:
    """In-memory connection. Data written is recorded, and passed to the stub server."""

    def __init__(self, server: StubServer | None = None, *, hang_on_close: bool = False):
        self.server = server
        self.hang_on_close = hang_on_close
        self.sent: list[str] = []
        self.aborted = False
        self._closing = False
        self._incoming: asyncio.Queue[bytes | BaseException] = asyncio.Queue()

    @property
    def local_address(self) -> tuple[str, int]:
        return "10.0.0.2", 50600

    @property
    def is_closing(self) -> bool:
        return self._closing

    @property
    def frames(self) -> list:
        return [decode(data) for data in self.sent]

    def start_lines(self) -> list[str]:
        return [data.split("\r\n", 1)[0] for data in self.sent]

    async def read(self) -> bytes:
        data = await self._incoming.get()
        if isinstance(data, BaseException):
            raise data
        return data

    def write(self, data: bytes) -> None:
        text = data.decode()
        self.sent.append(text)
        if self.server is not None:
            self.server.handle(self, text)

    def feed(self, data: bytes | str) -> None:
        """Deliver data from the peer."""
        if isinstance(data, str):
            data = data.encode()
        self._incoming.put_nowait(data)

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if not self.hang_on_close:
            self._incoming.put_nowait(b"")

    def fail(self, error: BaseException) -> None:
        """Make the next read raise the given error."""
        self._incoming.put_nowait(error)

    def close_remote(self) -> None:
        """Simulate the peer closing the connection."""
        self._incoming.put_nowait(b"")

    def abort(self) -> None:
        self.aborted = True
        self._closing = True
        self._incoming.put_nowait(b"")


def add_header(frame: str, header: str) -> str:
    """Insert a header line before Content-Length."""
    return frame.replace("Content-Length:", f"{header}\r\nContent-Length:", 1)


class StubServer:
    """
    Answers REGISTER and MESSAGE requests.

    Unauthenticated requests are challenged if ``challenge`` is set, then answered
    with ``final_status``.
    """

    def __init__(
        self,
        *,
        challenge: bool = True,
        challenge_status: int = 401,
        always_challenge: bool = False,
        final_status: tuple[int, str] = (200, "OK"),
        answer: bool = True,
        realm: str = "d",
        nonce: str = "n0nce",
        qop: str | None = "auth",
    ):
        self.challenge = challenge
        self.challenge_status = challenge_status
        self.always_challenge = always_challenge
        self.final_status = final_status
        self.answer = answer
        self.realm = realm
        self.nonce = nonce
        self.qop = qop
        self.requests: list[SIPRequest] = []

    @property
    def registers(self) -> list[SIPRequest]:
        return [r for r in self.requests if r.method == "REGISTER"]

    def challenge_header(self) -> str:
        name = "WWW-Authenticate" if self.challenge_status == 401 else "Proxy-Authenticate"
        qop = f', qop="{self.qop}"' if self.qop else ""
        return (
            f'{name}: Digest realm="{self.realm}", nonce="{self.nonce}", '
            f'opaque="0paque", algorithm=MD5{qop}'
        )

    def challenge_for(self, request: SIPRequest) -> str:
        reason = (
            "Unauthorized"
            if self.challenge_status == 401
            else "Proxy Authentication Required"
        )
        response = encode_response(self.challenge_status, reason, request, tag="srv")
        return add_header(response, self.challenge_header())

    def final_for(self, request: SIPRequest) -> str:
        code, reason = self.final_status
        return encode_response(code, reason, request, tag="srv")

    def handle(self, connection: StubConnection, text: str) -> None:
        frame = decode(text)
        if not isinstance(frame, SIPRequest) or frame.method not in {"REGISTER", "MESSAGE"}:
            return
        self.requests.append(frame)
        if not self.answer:
            return
        authenticated = "proxy-authorization" in frame.headers
        if self.always_challenge or (self.challenge and not authenticated):
            connection.feed(self.challenge_for(frame))
        else:
            connection.feed(self.final_for(frame))


class StubConnector:
    """
    Connector handing out stub connections, optionally failing first.

    When a ``gate`` event is given, connection attempts wait until it is set.
    """

    def __init__(self, server: StubServer | None = None, **connection_kwargs: Any):
        self.server = server
        self.connection_kwargs = connection_kwargs
        self.calls: list[tuple[str, int, CertificateMaterial]] = []
        self.connections: list[StubConnection] = []
        self.failures: list[BaseException] = []
        self.gate: asyncio.Event | None = None

    @property
    def last(self) -> StubConnection:
        return self.connections[-1]

    async def __call__(
        self, host: str, port: int, certificates: CertificateMaterial
    ) -> StubConnection:
        self.calls.append((host, port, certificates))
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        connection = StubConnection(self.server, **self.connection_kwargs)
        self.connections.append(connection)
        return connection


class RecordingObserver(ListenerObserver):
    """Records the notifications in order, as (name, payload) pairs."""

    def __init__(self):
        self.events: list[tuple[str, Any]] = []

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payloads(self, name: str) -> list[Any]:
        return [payload for n, payload in self.events if n == name]

    def on_connected(self):
        self.events.append(("connected", None))

    def on_disconnected(self):
        self.events.append(("disconnected", None))

    def on_registered(self):
        self.events.append(("registered", None))

    def on_doorbell(self, event):
        self.events.append(("doorbell", event))

    def on_message(self, event):
        self.events.append(("message", event))

    def on_certificates_updated(self, certificates):
        self.events.append(("certificates_updated", certificates))

    def on_certificate_update_error(self, error):
        self.events.append(("certificate_update_error", error))

    def on_error(self, event):
        self.events.append(("error", event))


@pytest.fixture()
def account():
    return SipAccount(server="s", port=1, domain="d", username="u", password="p")


@pytest.fixture()
def certificates():
    return CertificateMaterial(certificate_pem="C1", private_key_pem="K1")


@pytest.fixture()
def scheduler():
    return FakeScheduler()


@pytest.fixture()
def server():
    return StubServer()


@pytest.fixture()
def connector(server):
    return StubConnector(server)


@pytest.fixture()
def observer():
    return RecordingObserver()


@pytest.fixture()
def make_listener(account, certificates, connector, scheduler, observer):
    """Factory of listeners wired to the stub connector, fake scheduler and recorder."""

    def factory(**config_fields: Any) -> SIPListener:
        return SIPListener(
            account,
            certificates,
            ListenerConfig(**config_fields),
            connector=connector,
            scheduler=scheduler,
            observers=[observer],
        )

    return factory
