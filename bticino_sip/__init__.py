"""SIP over TLS client for BTicino door entry gateways: doorbell listener and gate control."""

from ._package_metadata import get_metadata as _metadata


__title__ = _metadata("Name", ["project", "name"])
__description__ = _metadata("Summary", ["project", "description"])
__author__ = _metadata("Author", ["project", "authors", 0, "name"])
__version__ = _metadata("Version", ["project", "version"])
__license__ = _metadata("License", ["project", "license", "text"])


from .config import *
from .events import *
from .exceptions import *
from .structures import CertificateMaterial, SipAccount, SIPURI
from .sip import *
