"""SIP frames: decoding of inbound text frames and encoding of outbound ones."""

from __future__ import annotations

import enum
import logging
import re
from typing import Mapping, Union

from frozendict import frozendict

from bticino_sip.constants import (
    DEFAULT_CONTROL_USER_AGENT,
    DEFAULT_REGISTER_EXPIRES,
    DEFAULT_USER_AGENT,
    GATE_CONTROL_USER,
    MAX_FORWARDS,
    MAX_FRAME_SIZE,
    SIP_VERSION,
    SUPPORTED_EXTENSIONS,
)
from bticino_sip.helpers import slots_dataclass
from bticino_sip.structures import SIPURI, SipAccount

from . import headers as hdr


__all__ = [
    "SIPMethod",
    "SIPStatus",
    "SIPRequest",
    "SIPResponse",
    "UnrecognizedFrame",
    "SIPFrame",
    "RegisterParams",
    "MessageParams",
    "decode",
    "encode_register",
    "encode_message",
    "encode_response",
    "FrameBuffer",
]


_logger = logging.getLogger(__name__)


class SIPMethod(enum.Enum):
    """SIP methods understood by the gateway dialect."""

    REGISTER = "REGISTER"
    INVITE = "INVITE"
    ACK = "ACK"
    BYE = "BYE"
    CANCEL = "CANCEL"
    OPTIONS = "OPTIONS"
    MESSAGE = "MESSAGE"

    def __str__(self) -> str:
        return self.value


class SIPStatus(enum.Enum):
    """SIP status codes sent or recognized by this library."""

    TRYING = (100, "Trying")
    RINGING = (180, "Ringing")
    OK = (200, "OK")
    UNAUTHORIZED = (401, "Unauthorized")
    FORBIDDEN = (403, "Forbidden")
    PROXY_AUTHENTICATION_REQUIRED = (407, "Proxy Authentication Required")
    BUSY_HERE = (486, "Busy Here")

    def __init__(self, code: int, reason: str):
        self.code: int = code
        self.reason: str = reason

    @classmethod
    def _missing_(cls, value: object) -> SIPStatus | None:
        if isinstance(value, int):
            for member in cls:
                if member.code == value:
                    return member
        return None

    def __int__(self) -> int:
        return self.code

    def __str__(self) -> str:
        return f"{self.code} {self.reason}"


AUTH_CHALLENGE_CODES: frozenset[int] = frozenset(
    {SIPStatus.UNAUTHORIZED.code, SIPStatus.PROXY_AUTHENTICATION_REQUIRED.code}
)


@slots_dataclass(frozen=True)
class SIPRequest:
    """A decoded SIP request. Header names are lowercase."""

    method: str
    uri: str
    headers: Mapping[str, str]
    body: str = ""

    @property
    def sip_method(self) -> SIPMethod | None:
        """The method as a :class:`SIPMethod`, or None if not one we know."""
        try:
            return SIPMethod(self.method.upper())
        except ValueError:
            return None

    @property
    def call_id(self) -> str | None:
        """The Call-ID header value, if any."""
        return self.headers.get("call-id")

    @property
    def cseq(self) -> str | None:
        """The raw CSeq header value, if any."""
        return self.headers.get("cseq")

    @property
    def start_line(self) -> str:
        """The request line."""
        return f"{self.method} {self.uri} {SIP_VERSION}"


@slots_dataclass(frozen=True)
class SIPResponse:
    """A decoded SIP response. Header names are lowercase."""

    status_code: int
    status_text: str
    headers: Mapping[str, str]
    body: str = ""

    @property
    def status(self) -> SIPStatus | None:
        """The status as a :class:`SIPStatus`, or None if not one we know."""
        try:
            return SIPStatus(self.status_code)
        except ValueError:
            return None

    @property
    def call_id(self) -> str | None:
        """The Call-ID header value, if any."""
        return self.headers.get("call-id")

    @property
    def cseq(self) -> str | None:
        """The raw CSeq header value, if any."""
        return self.headers.get("cseq")

    @property
    def is_provisional(self) -> bool:
        """Whether this is a 1xx response."""
        return 100 <= self.status_code < 200

    @property
    def is_auth_challenge(self) -> bool:
        """Whether this is a 401 or 407 digest challenge."""
        return self.status_code in AUTH_CHALLENGE_CODES

    def is_for(self, method: SIPMethod) -> bool:
        """Whether the CSeq header names the given method (substring match)."""
        return method.value in (self.cseq or "")

    @property
    def start_line(self) -> str:
        """The status line."""
        return f"{SIP_VERSION} {self.status_code} {self.status_text}"


@slots_dataclass(frozen=True)
class UnrecognizedFrame:
    """A frame whose first line is neither a request line nor a status line."""

    raw: str

    @property
    def start_line(self) -> str:
        """The first line of the raw text."""
        return self.raw.split("\r\n", 1)[0]


SIPFrame = Union[SIPRequest, SIPResponse, UnrecognizedFrame]


STATUS_LINE_PAT: re.Pattern = re.compile(r"^SIP/2\.0 (?P<code>\d+) (?P<reason>.+)$")
REQUEST_LINE_PAT: re.Pattern = re.compile(r"^(?P<method>\w+) (?P<uri>.+) SIP/2\.0$")


def _parse_header_lines(lines: list[str]) -> frozendict[str, str]:
    headers: dict[str, str] = {}
    last_name: str | None = None
    for line in lines:
        if line[:1] in {" ", "\t"} and last_name is not None:
            # folded continuation line
            headers[last_name] = f"{headers[last_name]} {line.strip()}"
            continue
        name, sep, value = line.partition(":")
        name = name.strip().lower()
        if not sep or not name:
            continue
        value = value.strip()
        if name in headers:
            headers[name] = f"{headers[name]}, {value}"
        else:
            headers[name] = value
        last_name = name
    return frozendict(headers)


def decode(data: bytes | str) -> SIPFrame:
    """
    Decode a single SIP frame.

    Header parsing stops at the first blank line; everything after it is the body,
    verbatim. Repeated headers are joined with commas.
    Frames whose first line is neither a request line nor a status line are
    returned as :class:`UnrecognizedFrame`, never raised.

    :param data: the raw frame.
    :return: the decoded frame.
    """
    text: str = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    head, _, body = text.partition("\r\n\r\n")
    lines: list[str] = head.split("\r\n")
    start_line: str = lines[0]

    if match := STATUS_LINE_PAT.match(start_line):
        return SIPResponse(
            status_code=int(match.group("code")),
            status_text=match.group("reason"),
            headers=_parse_header_lines(lines[1:]),
            body=body,
        )
    if match := REQUEST_LINE_PAT.match(start_line):
        return SIPRequest(
            method=match.group("method"),
            uri=match.group("uri"),
            headers=_parse_header_lines(lines[1:]),
            body=body,
        )
    return UnrecognizedFrame(raw=text)


@slots_dataclass(frozen=True)
class RegisterParams:
    """
    Per-request values of a REGISTER.

    All the random identifiers are supplied by the caller, so that encoding is
    deterministic.
    """

    call_id: str
    tag: str
    cseq: int
    branch: str
    local_host: str
    local_port: int
    expires: int = DEFAULT_REGISTER_EXPIRES
    user_agent: str = DEFAULT_USER_AGENT
    proxy_authorization: hdr.AuthorizationHeader | None = None


def _serialize(start_line: str, headers: hdr.Headers, body: str = "") -> str:
    return f"{start_line}\r\n{headers.serialize()}\r\n{body}"


def encode_register(account: SipAccount, params: RegisterParams) -> str:
    """
    Encode a REGISTER request for the given account.

    :param account: the SIP account to register.
    :param params: the per-request values (identifiers, CSeq, credentials).
    :return: the text frame, CRLF-terminated.
    """
    aor: SIPURI = SIPURI(host=account.domain, user=account.username, brackets=True)
    contact: SIPURI = SIPURI(
        host=params.local_host,
        port=params.local_port,
        user=account.username,
        params=frozendict(transport="tls"),
    )
    headers = hdr.Headers(
        [
            hdr.ViaHeader(
                host=params.local_host, port=params.local_port, branch=params.branch
            ),
            hdr.FromHeader(uri=aor, tag=params.tag),
            hdr.ToHeader(uri=aor),
            hdr.CallIDHeader(params.call_id),
            hdr.CSeqHeader(sequence=params.cseq, method=SIPMethod.REGISTER),
            hdr.ContactHeader(uri=contact, expires=params.expires),
            hdr.MaxForwardsHeader(MAX_FORWARDS),
            hdr.UserAgentHeader(params.user_agent),
            hdr.SupportedHeader(list(SUPPORTED_EXTENSIONS)),
            params.proxy_authorization,
            hdr.ContentLengthHeader(0),
        ]
    )
    request_line: str = f"{SIPMethod.REGISTER} {account.registrar_uri} {SIP_VERSION}"
    return _serialize(request_line, headers)


@slots_dataclass(frozen=True)
class MessageParams:
    """Per-request values of an outbound MESSAGE."""

    call_id: str
    tag: str
    cseq: int
    branch: str
    local_host: str
    local_port: int
    body: str = ""
    content_type: str = "text/plain"
    to_uri: SIPURI | None = None
    route: SIPURI | None = None
    date: str | None = None
    user_agent: str = DEFAULT_CONTROL_USER_AGENT
    proxy_authorization: hdr.AuthorizationHeader | None = None


def control_uri(account: SipAccount) -> SIPURI:
    """The gate control endpoint of the account's gateway, ``sip:diy@<domain>``."""
    return SIPURI(host=account.domain, user=GATE_CONTROL_USER)


def gateway_route(account: SipAccount) -> SIPURI:
    """The loose route through the account's SIP server over TLS."""
    return SIPURI(
        host=account.server, params=frozendict(transport="tls", lr=None), brackets=True
    )


def encode_message(account: SipAccount, params: MessageParams) -> str:
    """
    Encode a MESSAGE request, by default towards the gateway's control endpoint.

    :param account: the sending SIP account.
    :param params: the per-request values and the body.
    :return: the text frame, CRLF-terminated, with the body appended.
    """
    to_uri: SIPURI = params.to_uri or control_uri(account)
    route: SIPURI = params.route or gateway_route(account)
    body_length: int = len(params.body.encode("utf-8"))
    content_headers: list[hdr.Header] = [hdr.ContentLengthHeader(body_length)]
    if body_length:
        content_headers.insert(0, hdr.ContentTypeHeader(params.content_type))
    headers = hdr.Headers(
        [
            hdr.ViaHeader(
                host=params.local_host, port=params.local_port, branch=params.branch
            ),
            hdr.FromHeader(
                uri=SIPURI(host=account.domain, user=account.username, brackets=True),
                tag=params.tag,
            ),
            hdr.ToHeader(uri=to_uri),
            hdr.CSeqHeader(sequence=params.cseq, method=SIPMethod.MESSAGE),
            hdr.CallIDHeader(params.call_id),
            hdr.MaxForwardsHeader(MAX_FORWARDS),
            hdr.RouteHeader(route),
            hdr.SupportedHeader(list(SUPPORTED_EXTENSIONS)),
            hdr.DateHeader(params.date) if params.date else None,
            *content_headers,
            hdr.UserAgentHeader(params.user_agent),
            params.proxy_authorization,
        ]
    )
    request_uri: str = to_uri.serialize(force_brackets=False)
    request_line: str = f"{SIPMethod.MESSAGE} {request_uri} {SIP_VERSION}"
    return _serialize(request_line, headers, params.body)


def encode_response(
    status_code: int, status_text: str, request: SIPRequest, *, tag: str
) -> str:
    """
    Encode a body-less response to a received request.

    Via, From, Call-ID and CSeq are copied verbatim. To is copied too, with
    ``;tag=<tag>`` appended unless it already carries a tag.

    :param status_code: the response status code.
    :param status_text: the response reason phrase.
    :param request: the request being answered.
    :param tag: the local To tag.
    :return: the text frame, CRLF-terminated.
    """
    headers = hdr.Headers()
    for name, header_name in (
        ("via", "Via"),
        ("from", "From"),
        ("to", "To"),
        ("call-id", "Call-ID"),
        ("cseq", "CSeq"),
    ):
        value: str | None = request.headers.get(name)
        if value is None:
            continue
        if name == "to" and "tag=" not in value.lower():
            value = f"{value};tag={tag}"
        headers.append(hdr.RawHeader(header_name, value))
    headers.append(hdr.ContentLengthHeader(0))
    return _serialize(f"{SIP_VERSION} {status_code} {status_text}", headers)


CONTENT_LENGTH_PAT: re.Pattern = re.compile(
    rb"^(?:content-length|l)[ \t]*:[ \t]*(\d+)[ \t]*\r?$", re.IGNORECASE | re.MULTILINE
)
START_LINE_PAT: re.Pattern = re.compile(
    rb"^(?:SIP/2\.0 \d{3} |[A-Z]+ [^ \r\n]+ SIP/2\.0\r?$)", re.MULTILINE
)


class FrameBuffer:
    """
    Splits a stream of bytes into SIP frames.

    A frame ends after its blank line plus ``Content-Length`` bytes of body.
    Frames without a ``Content-Length`` take all the data buffered so far.
    Bare CRLFs between frames (keep-alive pings) are discarded.

    A frame larger than ``max_frame_size`` is dropped, and the data that follows is
    skipped up to the next line that looks like a SIP start line.
    """

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE) -> None:
        self.max_frame_size: int = max_frame_size
        self._buffer: bytearray = bytearray()
        self._resyncing: bool = False

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet returned as a frame."""
        return len(self._buffer)

    @property
    def resyncing(self) -> bool:
        """Whether data is being skipped after an oversized frame."""
        return self._resyncing

    def clear(self) -> None:
        """Discard any buffered data."""
        self._buffer.clear()
        self._resyncing = False

    def feed(self, data: bytes) -> list[bytes]:
        """
        Add received data to the buffer.

        :param data: the newly received bytes.
        :return: the frames completed by this data, in order.
        """
        self._buffer += data
        frames: list[bytes] = []
        while True:
            if self._resyncing and not self._resync():
                break
            while self._buffer.startswith(b"\r\n"):
                del self._buffer[:2]
            headers_end: int = self._buffer.find(b"\r\n\r\n")
            if headers_end < 0:
                if len(self._buffer) > self.max_frame_size:
                    self._discard(
                        f"SIP headers exceed {self.max_frame_size} bytes without ending"
                    )
                    continue
                break
            body_start: int = headers_end + 4
            match = CONTENT_LENGTH_PAT.search(bytes(self._buffer[:headers_end]))
            if match is None:
                frames.append(bytes(self._buffer))
                self._buffer.clear()
                break
            frame_end: int = body_start + int(match.group(1))
            if frame_end > self.max_frame_size:
                self._discard(
                    f"SIP frame of {frame_end} bytes exceeds {self.max_frame_size} bytes"
                )
                continue
            if len(self._buffer) < frame_end:
                break
            frames.append(bytes(self._buffer[:frame_end]))
            del self._buffer[:frame_end]
        return frames

    def _discard(self, reason: str) -> None:
        _logger.warning(f"{reason}, dropping buffered data")
        first_line_end: int = self._buffer.find(b"\n")
        if first_line_end < 0:
            self._buffer.clear()
        else:
            del self._buffer[: first_line_end + 1]
        self._resyncing = True

    def _resync(self) -> bool:
        match = START_LINE_PAT.search(bytes(self._buffer))
        if match is not None:
            del self._buffer[: match.start()]
            self._resyncing = False
            _logger.debug("Resynchronized on the next SIP start line")
            return True
        # keep the last incomplete line, it may be the start of a frame
        last_line_end: int = self._buffer.rfind(b"\n")
        del self._buffer[: last_line_end + 1]
        if len(self._buffer) > self.max_frame_size:
            self._buffer.clear()
        return False
