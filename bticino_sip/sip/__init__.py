"""SIP codec, digest authentication, listener and control client."""

from .auth import *
from .control import *
from .headers import *
from .listener import *
from .messages import *
