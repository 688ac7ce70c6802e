from .common import *  # noqa
from .auth import *  # noqa
from .site import *  # noqa
from .security_audit import *  # noqa
