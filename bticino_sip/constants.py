"""Various constants used by the bticino_sip library."""

from __future__ import annotations


SUPPORTED_SIP_VERSIONS: list[str] = ["SIP/2.0"]
SIP_VERSION: str = SUPPORTED_SIP_VERSIONS[0]

DEFAULT_SIP_SERVER: str = "vdesip.bs.iotleg.com"
DEFAULT_SIP_PORT: int = 5228
DEFAULT_SIP_DOMAIN: str = "gateway.bs.iotleg.com"
DEFAULT_LOCAL_SIP_PORT: int = 5060

DEFAULT_USER_AGENT: str = "BticinoSipListener/1.0"
DEFAULT_CONTROL_USER_AGENT: str = "bticino-client/1.0"

MAX_FORWARDS: int = 70
SUPPORTED_EXTENSIONS: list[str] = ["replaces", "outbound", "gruu", "path"]

DEFAULT_KEEP_ALIVE_INTERVAL: float = 120.0
DEFAULT_RECONNECT_DELAY: float = 10.0
DEFAULT_REGISTER_EXPIRES: int = 600
DEFAULT_REGISTER_TIMEOUT: float = 30.0
DEFAULT_MAX_AUTH_RETRIES: int = 2
DEFAULT_RING_DELAY: float = 2.0
DEFAULT_SETTLE_DELAY: float = 1.0
DEFAULT_CLOSE_TIMEOUT: float = 3.0

GATE_CONTROL_USER: str = "diy"
GATE_CONTROL_INITIAL_CSEQ: int = 20
DEFAULT_CONTROL_RESPONSE_TIMEOUT: float = 20.0

DIGEST_NONCE_COUNT: str = "00000001"

READ_CHUNK_SIZE: int = 65536
MAX_FRAME_SIZE: int = 65536
