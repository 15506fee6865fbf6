import getpass
import logging

log = logging.getLogger("opentunnels")
for x in ("debug",):
    globals()[x] = getattr(log, x)

LOG_FORMAT = "%(asctime)s %(levelname)s %(threadName)s: %(message)s"


def enable_logging(level=logging.INFO):
    """
    Attach a basic stderr handler so our logger's output becomes visible.
    """
    logging.basicConfig(level=level, format=LOG_FORMAT)
    log.setLevel(level)


def get_local_user():
    """
    Return the local executing username, or ``None`` if one can't be found.
    """
    # getpass.getuser consults LOGNAME, USER, LNAME and USERNAME before
    # falling back to the password database.
    try:
        return getpass.getuser()
    except (KeyError, OSError, ImportError):
        debug("Unable to determine local username")
        return None


def parse_address(value, allow_any_port=False):
    """
    Split an ``address:port`` string into a ``(host, port)`` tuple.

    IPv6 literals must be bracketed, e.g. ``[::1]:2222``.

    :param bool allow_any_port:
        Whether port ``0`` (ie "let the OS pick") is acceptable. Only makes
        sense for addresses we bind to ourselves.

    :raises ValueError: if ``value`` isn't a well formed endpoint.
    """
    if not isinstance(value, str) or not value:
        raise ValueError("Empty address")
    host, sep, port = value.rpartition(":")
    if not sep or not host:
        raise ValueError("{!r} is not of the form address:port".format(value))
    if host.startswith("["):
        if not host.endswith("]"):
            raise ValueError("Unbalanced brackets in {!r}".format(value))
        host = host[1:-1]
    elif ":" in host:
        raise ValueError("IPv6 address in {!r} must be bracketed".format(value))
    if not host:
        raise ValueError("{!r} has an empty host part".format(value))
    try:
        port = int(port)
    except ValueError:
        raise ValueError("{!r} has a non-numeric port".format(value))
    lowest = 0 if allow_any_port else 1
    if not lowest <= port <= 65535:
        raise ValueError("{!r} has an out of range port".format(value))
    return host, port


def format_address(address):
    """
    Inverse of `parse_address`, for log output.
    """
    host, port = address[:2]
    if ":" in host:
        host = "[{}]".format(host)
    return "{}:{}".format(host, port)


def parse_bool(value):
    """
    Interpret a plan attribute as a boolean.

    Accepts real booleans plus the spellings Terraform state files use. Any
    other string is treated as false.
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value) in ("1", "t", "T", "TRUE", "true", "True")
