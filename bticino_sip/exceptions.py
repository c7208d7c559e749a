"""Exception classes for the bticino_sip library."""

from __future__ import annotations

from typing import Any


class BticinoSIPException(Exception):
    """Base class for all custom library exceptions."""


class ParseError(BticinoSIPException, ValueError):
    """Raised when a frame or value cannot be parsed."""


class ValidationError(BticinoSIPException, ValueError):
    """Raised when caller-supplied input is rejected before any side effect."""


class CertificateValidationError(ValidationError):
    """The supplied certificate material is missing or malformed."""


class AccountValidationError(ValidationError):
    """The supplied SIP account descriptor is missing or malformed."""


class SIPException(BticinoSIPException):
    """Base class for all exceptions raised by the SIP module."""


class SIPMessageException(SIPException, IOError):
    """Exceptions related to SIP messages."""

    def __init__(self, *args: Any, **kwargs: Any):
        """Initialize SIPMessageException with optional `request` and `response` objects."""
        self.response = kwargs.pop("response", None)
        self.request = kwargs.pop("request", None)
        super().__init__(*args, **kwargs)


class SIPParseError(SIPException, ParseError):
    """Exceptions related to SIP messages / data parsing."""


class SIPTimeout(SIPException, TimeoutError):
    """Raised when a SIP transaction times out."""


class SIPAuthenticationError(SIPException):
    """Raised when digest authentication cannot be completed."""


class SIPRegistrationError(SIPMessageException):
    """Raised when the server rejects a REGISTER with a final non-2xx response."""

    def __init__(self, *args: Any, status_code: int | None = None, **kwargs: Any):
        """Initialize SIPRegistrationError, recording the final status code."""
        self.status_code = status_code
        super().__init__(*args, **kwargs)


class SIPRequestFailed(SIPMessageException):
    """Raised when an outbound request receives a final non-2xx response."""

    def __init__(self, *args: Any, status_code: int | None = None, **kwargs: Any):
        """Initialize SIPRequestFailed, recording the final status code."""
        self.status_code = status_code
        super().__init__(*args, **kwargs)


class SIPTransportError(SIPException, ConnectionError):
    """Raised when the TLS connection cannot be opened or is lost."""


class SIPNotConnected(SIPTransportError):
    """Raised when an operation needs an open connection and there is none."""


class SIPListenerClosing(SIPException):
    """Raised when connecting a listener that has been explicitly disconnected."""


class CertificateUpdateError(BticinoSIPException):
    """Raised when a certificate rotation fails after validation."""
