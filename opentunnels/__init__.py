# flake8: noqa
from ._version import __version_info__, __version__
from .auth import AuthResolver, Credentials
from .config import Config
from .manager import GroupResult, TunnelManager
from .plan import read_plan
from .session import TunnelSession
from .spec import TunnelSpec
from .tunnels import ForwardedConnection, ForwardingEngine
