"""Common SIP structures, account and certificate data."""

from __future__ import annotations

import re
from dataclasses import field as dataclass_field
from typing import Any, ClassVar, Mapping, Match

from frozendict import frozendict
from typing_extensions import Self

from .constants import DEFAULT_SIP_DOMAIN, DEFAULT_SIP_PORT, DEFAULT_SIP_SERVER
from .exceptions import AccountValidationError, CertificateValidationError, SIPParseError
from .helpers import slots_dataclass


DEFAULT_SCHEME: str = "sip"

UNRESERVED_C: str = r"_.!~*'()%\-"
USER_C: str = rf"[\w{UNRESERVED_C}+\-&$,;?/]"
PWD_C: str = rf"[\w{UNRESERVED_C}+\-&$,]"
PARAM_C: str = rf"[\w{UNRESERVED_C}\[\]/:&+$]"

CONTACT_PAT: str = rf"(?P<user>{USER_C}+?)(?::(?P<password>{PWD_C}+))?(?=@)"
IPv4_D_PAT: str = r"(?:1?\d{1,2}|2[0-4]\d|25[0-5])"
IPv4_PAT: str = rf"(?:(?:{IPv4_D_PAT}\.){{3}}{IPv4_D_PAT})"
DNS_LABEL_PAT: str = r"(?i:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)"
FQDN_PAT: str = rf"(?:(?:{DNS_LABEL_PAT}\.)*{DNS_LABEL_PAT}\.?)"
HOST_PAT: str = rf"(?P<host>{IPv4_PAT}|{FQDN_PAT})(?::(?P<port>\d+))?"
SCHEME_PAT: str = r"(?P<scheme>sips?)(?=:)"
PARAMS_PAT: str = rf"(?P<params>(?:;{PARAM_C}+(?:={PARAM_C}+)?)+)"
URI_PART_PAT: str = (
    rf"(?:{SCHEME_PAT}:)?(?:{CONTACT_PAT}@)?{HOST_PAT}(?:{PARAMS_PAT})?"
)
URI_PATS: tuple[str, ...] = (URI_PART_PAT, rf"<{URI_PART_PAT}>")


@slots_dataclass(frozen=True)
class SIPURI:
    """A SIP URI, limited to the parts used by the gateway dialect."""

    host: str
    port: int | None = None
    user: str | None = None
    password: str | None = None
    scheme: str = DEFAULT_SCHEME
    params: Mapping[str, str | None] = dataclass_field(default_factory=frozendict)

    brackets: bool = False

    @classmethod
    def parse(cls, value: str, *, force_brackets: bool | None = None) -> SIPURI:
        """Parse a SIP URI, with or without the ``sip:`` scheme and angle brackets."""
        match: Match | None = None
        for uri_pat in URI_PATS:
            if match := re.fullmatch(uri_pat, value.strip()):
                break
        if match is None:
            raise SIPParseError(f"Invalid SIP URI: {value}")
        if force_brackets is None:
            brackets = value.strip().startswith("<") and value.strip().endswith(">")
        else:
            brackets = force_brackets
        params: dict[str, str | None] = {}
        if params_raw := match.group("params"):
            for param in params_raw.split(";"):
                if not param:
                    continue
                name, sep, param_value = param.partition("=")
                params[name] = param_value if sep else None
        port_raw: str | None = match.group("port")
        return cls(
            host=match.group("host"),
            port=int(port_raw) if port_raw else None,
            user=match.group("user"),
            password=match.group("password"),
            scheme=match.group("scheme") or DEFAULT_SCHEME,
            params=frozendict(params),
            brackets=brackets,
        )

    def serialize(self, *, force_brackets: bool | None = None) -> str:
        """Serialize the SIP URI to a string."""
        password: str = f":{self.password}" if self.password else ""
        login: str = f"{self.user}{password}@" if self.user else ""
        hostname: str = f"{self.host}:{self.port}" if self.port else self.host
        params: str = "".join(
            f";{name}={value}" if value is not None else f";{name}"
            for name, value in self.params.items()
        )
        brackets: bool = self.brackets if force_brackets is None else force_brackets
        uri: str = f"{self.scheme}:" + login + hostname + params
        if brackets:
            uri = f"<{uri}>"
        return uri

    def __str__(self) -> str:
        return self.serialize()


def _first_str(mapping: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in mapping and mapping[key] is not None:
            return mapping[key]
    return None


@slots_dataclass(frozen=True)
class CertificateMaterial:
    """
    A TLS client identity: a certificate PEM and its private key PEM.

    Instances are immutable, so a reader always sees a complete pair.
    """

    certificate_pem: str
    private_key_pem: str = dataclass_field(repr=False)

    CERTIFICATE_KEYS: ClassVar[tuple[str, ...]] = (
        "certificate_pem",
        "cert",
        "certPEM",
        "certificatePEM",
    )
    PRIVATE_KEY_KEYS: ClassVar[tuple[str, ...]] = (
        "private_key_pem",
        "key",
        "privateKeyPem",
        "privateKeyPEM",
    )

    def __post_init__(self) -> None:
        if not isinstance(self.certificate_pem, str) or not self.certificate_pem.strip():
            raise CertificateValidationError(
                "Invalid certificate material: missing or invalid certificate"
            )
        if not isinstance(self.private_key_pem, str) or not self.private_key_pem.strip():
            raise CertificateValidationError(
                "Invalid certificate material: missing or invalid private key"
            )

    @classmethod
    def from_mapping(cls, value: Any) -> Self:
        """
        Build certificate material from a mapping, accepting the common key aliases.

        :param value: a mapping with a certificate (``cert``, ``certPEM``, ...) and a
            private key (``key``, ``privateKeyPem``, ...), or an existing instance.
        :return: the validated certificate material.
        :raises CertificateValidationError: if the value is not a mapping, or
            either field is missing or empty.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, Mapping):
            raise CertificateValidationError(
                "Invalid certificate material: must be a mapping or CertificateMaterial"
            )
        return cls(
            certificate_pem=_first_str(value, cls.CERTIFICATE_KEYS),
            private_key_pem=_first_str(value, cls.PRIVATE_KEY_KEYS),
        )

    @property
    def looks_like_pem(self) -> bool:
        """Whether both fields carry PEM armour markers."""
        return (
            "-----BEGIN" in self.certificate_pem and "-----BEGIN" in self.private_key_pem
        )


@slots_dataclass(frozen=True)
class SipAccount:
    """The SIP identity registered on the vendor gateway."""

    username: str
    password: str = dataclass_field(repr=False)
    domain: str = DEFAULT_SIP_DOMAIN
    server: str = DEFAULT_SIP_SERVER
    port: int = DEFAULT_SIP_PORT
    realm: str | None = None
    plant_id: str | None = None
    gateway_id: str | None = None

    def __post_init__(self) -> None:
        for name in ("username", "password", "domain", "server"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise AccountValidationError(f"Invalid SIP account: missing {name}")
        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise AccountValidationError(f"Invalid SIP account: bad port {self.port!r}")

    @property
    def aor(self) -> SIPURI:
        """The address-of-record, ``sip:<username>@<domain>``."""
        return SIPURI(host=self.domain, user=self.username)

    @property
    def registrar_uri(self) -> SIPURI:
        """The REGISTER request URI, ``sip:<domain>``."""
        return SIPURI(host=self.domain)

    @classmethod
    def from_descriptor(cls, descriptor: Any, **overrides: Any) -> Self:
        """
        Build an account from the vendor's SIP account descriptor.

        The descriptor carries ``sipUri`` (``user@domain``) and ``sipPassword``,
        optionally ``plantId``, ``gatewayId``, ``userOid`` and ``clientId``.
        When ``userOid`` is present the username is ``<userOid>_<clientId>``.
        The gateway id, when absent, is derived from the domain
        (``<gateway>.bs.iotleg.com``).

        :param descriptor: the descriptor mapping.
        :param overrides: keyword arguments overriding the derived fields,
            e.g. ``server`` or ``port``.
        :return: the new account.
        :raises AccountValidationError: if required fields are missing.
        """
        if not isinstance(descriptor, Mapping):
            raise AccountValidationError("Invalid SIP account: must be a mapping")

        sip_uri_raw: str = (descriptor.get("sipUri") or "").strip()
        uri: SIPURI | None = None
        if sip_uri_raw:
            try:
                uri = SIPURI.parse(sip_uri_raw)
            except SIPParseError as e:
                raise AccountValidationError(
                    f"Invalid SIP account: bad sipUri {sip_uri_raw!r}"
                ) from e

        domain: str | None = (uri.host if uri else None) or descriptor.get("domain")
        if not domain:
            raise AccountValidationError("Invalid SIP account: missing sipUri domain")

        if descriptor.get("userOid"):
            username = f"{descriptor['userOid']}_{descriptor.get('clientId')}"
        else:
            username = (
                descriptor.get("username")
                or descriptor.get("user")
                or (uri.user if uri else None)
            )
        if not username:
            raise AccountValidationError("Invalid SIP account: missing sipUri user")

        password = descriptor.get("sipPassword") or descriptor.get("password")
        if not password:
            raise AccountValidationError("Invalid SIP account: missing sipPassword")

        gateway_id = descriptor.get("gatewayId")
        if not gateway_id and ".bs." in domain:
            gateway_id = domain.split(".bs.")[0]

        fields: dict[str, Any] = dict(
            username=username,
            password=password,
            domain=domain,
            realm=descriptor.get("realm"),
            plant_id=descriptor.get("plantId"),
            gateway_id=gateway_id or None,
        )
        fields.update(overrides)
        return cls(**fields)
