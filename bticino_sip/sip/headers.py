"""SIP header classes used to build outbound frames."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import fields as dataclass_fields
from typing import TYPE_CHECKING, ClassVar, Iterable, Iterator

from bticino_sip.constants import SIP_VERSION
from bticino_sip.helpers import slots_dataclass
from bticino_sip.structures import SIPURI


if TYPE_CHECKING:
    from .messages import SIPMethod


__all__ = [
    "Header",
    "RawHeader",
    "StrHeader",
    "IntHeader",
    "ListHeader",
    "ViaHeader",
    "FromToHeader",
    "FromHeader",
    "ToHeader",
    "ContactHeader",
    "RouteHeader",
    "CallIDHeader",
    "CSeqHeader",
    "SupportedHeader",
    "DateHeader",
    "ContentTypeHeader",
    "ContentLengthHeader",
    "MaxForwardsHeader",
    "UserAgentHeader",
    "AuthorizationHeader",
    "ProxyAuthorizationHeader",
    "Headers",
]


class Header(ABC):
    """Abstract base dataclass for SIP headers."""

    __slots__ = ()

    _name: ClassVar[str]

    @property
    def name(self) -> str:
        """The name of the header."""
        return self._name

    @abstractmethod
    def serialize(self) -> str:
        """Serialize the header value to a string."""

    def __str__(self) -> str:
        return f"{self.name}: {self.serialize()}"


@slots_dataclass
class RawHeader(Header):
    """A header carried verbatim, e.g. copied from a received request."""

    header_name: str
    value: str

    @property
    def name(self) -> str:  # noqa: D102
        return self.header_name

    def serialize(self) -> str:  # noqa: D102
        return self.value


@slots_dataclass
class StrHeader(Header, ABC):
    """Abstract base dataclass for headers with a single string value."""

    value: str

    def serialize(self) -> str:  # noqa: D102
        return self.value


@slots_dataclass
class IntHeader(Header, ABC):
    """Abstract base dataclass for headers with a single integer value."""

    value: int

    def serialize(self) -> str:  # noqa: D102
        return str(self.value)

    def __int__(self) -> int:
        return self.value


@slots_dataclass
class ListHeader(Header, ABC):
    """Abstract base dataclass for headers with a comma-separated list of values."""

    values: list[str]

    def serialize(self) -> str:  # noqa: D102
        return ", ".join(self.values)


@slots_dataclass
class ViaHeader(Header):
    """Via header, as described in :rfc:`3261#section-20.42`, for a single hop."""

    _name = "Via"

    host: str
    port: int
    branch: str
    transport: str = "TLS"
    rport: bool = True

    def serialize(self) -> str:  # noqa: D102
        rport: str = ";rport" if self.rport else ""
        return (
            f"{SIP_VERSION}/{self.transport} {self.host}:{self.port}"
            f";branch={self.branch}{rport}"
        )


@slots_dataclass
class FromToHeader(Header, ABC):
    """Abstract base dataclass for From and To headers."""

    uri: SIPURI
    tag: str | None = None

    def serialize(self) -> str:  # noqa: D102
        tag: str = f";tag={self.tag}" if self.tag else ""
        return f"{self.uri}{tag}"


@slots_dataclass
class FromHeader(FromToHeader):
    """From header, as described in :rfc:`3261#section-20.20`."""

    _name = "From"


@slots_dataclass
class ToHeader(FromToHeader):
    """To header, as described in :rfc:`3261#section-20.39`."""

    _name = "To"


@slots_dataclass
class ContactHeader(Header):
    """Contact header, as described in :rfc:`3261#section-20.10`, with a single contact."""

    _name = "Contact"

    uri: SIPURI
    expires: int | None = None

    def serialize(self) -> str:  # noqa: D102
        expires: str = f";expires={self.expires}" if self.expires is not None else ""
        return f"{self.uri.serialize(force_brackets=True)}{expires}"


@slots_dataclass
class RouteHeader(Header):
    """Route header, as described in :rfc:`3261#section-20.34`, with a single route."""

    _name = "Route"

    uri: SIPURI

    def serialize(self) -> str:  # noqa: D102
        return self.uri.serialize(force_brackets=True)


@slots_dataclass
class CallIDHeader(StrHeader):
    """Call-ID header, as described in :rfc:`3261#section-20.8`."""

    _name = "Call-ID"


@slots_dataclass
class CSeqHeader(Header):
    """CSeq header, as described in :rfc:`3261#section-20.16`."""

    _name = "CSeq"

    sequence: int
    method: SIPMethod | str

    def serialize(self) -> str:  # noqa: D102
        return f"{self.sequence} {self.method}"


@slots_dataclass
class SupportedHeader(ListHeader):
    """Supported header, as described in :rfc:`3261#section-20.37`."""

    _name = "Supported"


@slots_dataclass
class DateHeader(StrHeader):
    """Date header, as described in :rfc:`3261#section-20.17`."""

    _name = "Date"


@slots_dataclass
class ContentTypeHeader(StrHeader):
    """Content-Type header, as described in :rfc:`3261#section-20.15`."""

    _name = "Content-Type"


@slots_dataclass
class ContentLengthHeader(IntHeader):
    """Content-Length header, as described in :rfc:`3261#section-20.14`."""

    _name = "Content-Length"


@slots_dataclass
class MaxForwardsHeader(IntHeader):
    """Max-Forwards header, as described in :rfc:`3261#section-20.22`."""

    _name = "Max-Forwards"


@slots_dataclass
class UserAgentHeader(StrHeader):
    """User-Agent header, as described in :rfc:`3261#section-20.41`."""

    _name = "User-Agent"


@slots_dataclass
class AuthorizationHeader(Header):
    """
    Authorization header, as described in :rfc:`3261#section-20.7`.

    Parameters are emitted in field order, skipping unset ones.
    """

    _name = "Authorization"

    realm: str | None = None
    nonce: str | None = None
    algorithm: str | None = None
    opaque: str | None = None
    username: str | None = None
    uri: str | None = None
    response: str | None = None
    cnonce: str | None = None
    nc: str | None = None
    qop: str | None = None

    _no_quote_params: ClassVar[frozenset[str]] = frozenset({"algorithm", "nc", "qop"})

    def serialize(self) -> str:  # noqa: D102
        params: list[str] = []
        for field in dataclass_fields(self):
            value = getattr(self, field.name)
            if value is None:
                continue
            if field.name in self._no_quote_params:
                params.append(f"{field.name}={value}")
            else:
                params.append(f'{field.name}="{value}"')
        return f"Digest {', '.join(params)}"


@slots_dataclass
class ProxyAuthorizationHeader(AuthorizationHeader):
    """Proxy-Authorization header, as described in :rfc:`3261#section-20.28`."""

    _name = "Proxy-Authorization"


class Headers:
    """An ordered collection of headers. Order is preserved on the wire."""

    def __init__(self, headers: Iterable[Header | None] = ()):
        self._headers: list[Header] = [h for h in headers if h is not None]

    def append(self, header: Header) -> None:
        """Append a header at the end."""
        self._headers.append(header)

    def get(self, name: str) -> Header | None:
        """Get the first header with the given name, case-insensitively."""
        name = name.lower()
        for header in self._headers:
            if header.name.lower() == name:
                return header
        return None

    def __iter__(self) -> Iterator[Header]:
        return iter(self._headers)

    def __len__(self) -> int:
        return len(self._headers)

    def serialize(self) -> str:
        """Serialize the headers, one per CRLF-terminated line."""
        return "".join(f"{header}\r\n" for header in self._headers)

    def __str__(self) -> str:
        return self.serialize()
