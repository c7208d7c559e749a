"""
Digest authentication, as described in :rfc:`2617` and :rfc:`3261#section-22.4`.

Only the MD5 algorithm is supported, as it is the only one the gateway accepts.
"""

from __future__ import annotations

import hashlib
import logging
import re

from typing_extensions import Self

from bticino_sip.constants import DIGEST_NONCE_COUNT
from bticino_sip.exceptions import SIPAuthenticationError
from bticino_sip.helpers import generate_cnonce, slots_dataclass

from .headers import ProxyAuthorizationHeader


__all__ = [
    "compute_ha1",
    "compute_digest_response",
    "DigestChallenge",
    "parse_challenge",
    "build_proxy_authorization",
]


_logger = logging.getLogger(__name__)


def _md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()  # noqa: S324


def compute_ha1(username: str | None, realm: str | None, password: str | None) -> str | None:
    """
    Compute HA1, i.e. ``MD5(username:realm:password)``.

    :return: the hex digest, or None if any of the inputs is missing or empty.
    """
    if not username or not realm or not password:
        return None
    return _md5(f"{username}:{realm}:{password}")


def compute_digest_response(
    ha1: str,
    method: str,
    uri: str,
    nonce: str,
    nonce_count: str | None = None,
    cnonce: str | None = None,
    qop: str | None = None,
) -> str:
    """
    Compute the digest response hash.

    :param ha1: the precomputed HA1, see :func:`compute_ha1`.
    :param method: the SIP method of the request being authorized.
    :param uri: the digest URI.
    :param nonce: the server nonce.
    :param nonce_count: the nonce count, only used with ``qop``.
    :param cnonce: the client nonce, only used with ``qop``.
    :param qop: the quality of protection, if the server asked for one.
    :return: the hex digest.
    """
    ha2: str = _md5(f"{method}:{uri}")
    if qop:
        return _md5(f"{ha1}:{nonce}:{nonce_count}:{cnonce}:{qop}:{ha2}")
    return _md5(f"{ha1}:{nonce}:{ha2}")


_QUOTED_PARAM_PATS: dict[str, re.Pattern] = {
    name: re.compile(rf'\b{name}="([^"]*)"', re.IGNORECASE)
    for name in ("realm", "nonce", "opaque")
}
_ALGORITHM_PAT: re.Pattern = re.compile(r"\balgorithm=\"?(\w[\w-]*)", re.IGNORECASE)
_QOP_PAT: re.Pattern = re.compile(r'\bqop=(?:"([^"]*)"|([\w-]+))', re.IGNORECASE)


@slots_dataclass(frozen=True)
class DigestChallenge:
    """A digest challenge received in a WWW-Authenticate or Proxy-Authenticate header."""

    realm: str | None = None
    nonce: str | None = None
    opaque: str | None = None
    algorithm: str = "MD5"
    qop: str | None = None

    @classmethod
    def parse(cls, header_value: str) -> Self:
        """Parse a challenge header value. Missing fields are left unset."""
        values: dict[str, str | None] = {}
        for name, pattern in _QUOTED_PARAM_PATS.items():
            match = pattern.search(header_value)
            values[name] = match.group(1) if match else None
        algorithm_match = _ALGORITHM_PAT.search(header_value)
        qop_match = _QOP_PAT.search(header_value)
        return cls(
            realm=values["realm"],
            nonce=values["nonce"],
            opaque=values["opaque"],
            algorithm=algorithm_match.group(1) if algorithm_match else "MD5",
            qop=(qop_match.group(1) or qop_match.group(2)) if qop_match else None,
        )

    @property
    def selected_qop(self) -> str | None:
        """The qop to answer with: ``auth`` if offered, else the first option."""
        if not self.qop:
            return None
        options: list[str] = [o.strip() for o in self.qop.split(",") if o.strip()]
        if "auth" in options:
            return "auth"
        return options[0] if options else None


def parse_challenge(header_value: str) -> DigestChallenge:
    """Parse a WWW-Authenticate or Proxy-Authenticate header value."""
    return DigestChallenge.parse(header_value)


def build_proxy_authorization(
    challenge: DigestChallenge,
    *,
    username: str,
    password: str,
    method: str,
    uri: str,
    realm: str | None = None,
    cnonce: str | None = None,
    nonce_count: str = DIGEST_NONCE_COUNT,
) -> ProxyAuthorizationHeader:
    """
    Answer a digest challenge with a Proxy-Authorization header.

    :param challenge: the challenge received from the server.
    :param username: the account username.
    :param password: the account password.
    :param method: the method of the request being retried.
    :param uri: the digest URI.
    :param realm: a realm overriding the challenge's one for the HA1 computation.
    :param cnonce: the client nonce, generated if not given.
    :param nonce_count: the nonce count.
    :return: the header to add to the retried request.
    :raises SIPAuthenticationError: if HA1 cannot be computed, e.g. without a realm.
    """
    digest_realm: str | None = realm or challenge.realm
    ha1: str | None = compute_ha1(username, digest_realm, password)
    if ha1 is None:
        raise SIPAuthenticationError(
            "Cannot compute digest: username, realm and password are all required"
        )
    if challenge.algorithm.upper() != "MD5":
        _logger.warning(
            f"Server asked for digest algorithm {challenge.algorithm}, answering with MD5"
        )
    qop: str | None = challenge.selected_qop
    if qop is None:
        cnonce = None
    elif cnonce is None:
        cnonce = generate_cnonce()
    response: str = compute_digest_response(
        ha1,
        method,
        uri,
        challenge.nonce or "",
        nonce_count if qop else None,
        cnonce,
        qop,
    )
    return ProxyAuthorizationHeader(
        realm=challenge.realm or digest_realm,
        nonce=challenge.nonce or "",
        algorithm="MD5",
        opaque=challenge.opaque,
        username=username,
        uri=uri,
        response=response,
        cnonce=cnonce,
        nc=nonce_count if qop else None,
        qop=qop,
    )
