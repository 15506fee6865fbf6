"""
Declarative description of a single tunnel.
"""
from collections import namedtuple

from .exceptions import ConfigurationError
from .util import format_address, get_local_user, parse_address, parse_bool

_fields = "identifier user host local_address remote_address use_agent"


class TunnelSpec(namedtuple("TunnelSpec", _fields)):
    """
    Immutable record describing one local -> remote forwarding via SSH.

    :param identifier:
        Opaque label used in log output, typically a resource address.
    :param str user:
        Remote login. Empty or ``None`` means the local executing user.
    :param str host: ``address:port`` of the SSH server.
    :param str local_address: ``address:port`` to listen on locally.
    :param str remote_address:
        ``address:port`` the SSH server connects to for each forwarded
        connection.
    :param use_agent:
        Whether to try a running SSH agent. Strings such as ``"true"`` are
        accepted, as found in Terraform state files.

    :raises ConfigurationError:
        if an address is malformed, or no username can be determined.
    """

    __slots__ = ()

    def __new__(
        cls,
        identifier,
        user,
        host,
        local_address,
        remote_address,
        use_agent=False,
    ):
        if not user:
            user = get_local_user()
            if not user:
                raise ConfigurationError(
                    "{}: no user given and the local user is unknown".format(
                        identifier
                    )
                )
        for name, value in (
            ("host", host),
            ("local_address", local_address),
            ("remote_address", remote_address),
        ):
            try:
                parse_address(value, allow_any_port=name == "local_address")
            except ValueError as e:
                raise ConfigurationError(
                    "{}: invalid {}: {}".format(identifier, name, e)
                )
        return super().__new__(
            cls,
            identifier,
            user,
            host,
            local_address,
            remote_address,
            parse_bool(use_agent),
        )

    @classmethod
    def from_attributes(cls, identifier, attributes):
        """
        Build from a plan record's attribute mapping.

        Recognizes the ``user``, ``host``, ``local_address``,
        ``remote_address`` and ``ssh_agent`` attributes; anything else is
        ignored.
        """
        return cls(
            identifier=identifier,
            user=attributes.get("user") or None,
            host=attributes.get("host"),
            local_address=attributes.get("local_address"),
            remote_address=attributes.get("remote_address"),
            use_agent=attributes.get("ssh_agent", False),
        )

    @property
    def host_endpoint(self):
        return parse_address(self.host)

    @property
    def local_endpoint(self):
        return parse_address(self.local_address, allow_any_port=True)

    @property
    def remote_endpoint(self):
        return parse_address(self.remote_address)

    def __str__(self):
        return "{} Forwarding {} to {} via {}.".format(
            self.identifier,
            format_address(self.local_endpoint),
            format_address(self.remote_endpoint),
            self.host,
        )
