"""
SSH client sessions able to open forwarded channels.
"""
from decorator import decorator
from paramiko import SSHException
from paramiko.client import SSHClient

from .exceptions import ChannelOpenError, DialError, TransportError
from .util import debug, format_address, parse_address


@decorator
def connected(method, self, *args, **kwargs):
    """
    Refuse to run ``method`` unless the session's transport is up.
    """
    if not self.is_connected:
        raise TransportError("Session to {} is not connected".format(self.host))
    return method(self, *args, **kwargs)


class TunnelSession:
    """
    One SSH connection to one server, shared by all of a tunnel's traffic.

    Wraps a Paramiko `~paramiko.client.SSHClient`. Any number of threads may
    call `open_channel` concurrently; Paramiko's
    `~paramiko.transport.Transport` serializes channel creation internally and
    multiplexes the resulting channels over the single connection.

    :param str host: ``address:port`` of the SSH server.
    :param config: the `.Config` providing timeouts.
    """

    client = None
    transport = None

    def __init__(self, host, config):
        self.host = host
        self.hostname, self.port = parse_address(host)
        self.config = config

    def __repr__(self):
        state = "connected" if self.is_connected else "disconnected"
        return "<{} {} {}>".format(self.__class__.__name__, self.host, state)

    @property
    def is_connected(self):
        """
        Whether or not the underlying transport is actually open.
        """
        return self.transport.is_active() if self.transport else False

    def connect(self, credentials):
        """
        Dial the server and authenticate, trying methods in order.

        The server's host key is handed to ``credentials.host_key_policy``;
        no keys are preloaded into the client, so the policy sees every
        connection.

        ``credentials`` are closed afterwards whether or not the attempt
        succeeded; they are not reusable.

        :raises DialError:
            on TCP, handshake, host key or authentication failure.
        """
        client = SSHClient()
        client.set_missing_host_key_policy(credentials.host_key_policy)
        timeouts = self.config.timeouts
        try:
            client.connect(
                self.hostname,
                port=self.port,
                username=credentials.username,
                timeout=timeouts.connect,
                allow_agent=False,
                look_for_keys=False,
                auth_strategy=credentials,
            )
        except (SSHException, OSError) as e:
            client.close()
            raise DialError(
                "unable to connect to {} as {}: {}".format(
                    self.host, credentials.username, e
                )
            ) from e
        finally:
            credentials.close()
        self.client = client
        self.transport = client.get_transport()
        if timeouts.keepalive:
            self.transport.set_keepalive(timeouts.keepalive)
        debug("Connected to {} as {}".format(self.host, credentials.username))
        return self.transport

    @connected
    def open_channel(self, remote_address, origin=None):
        """
        Ask the server to connect to ``remote_address`` on our behalf.

        :param remote_address:
            ``(host, port)`` tuple, or ``address:port`` string, interpreted
            from the server's side.
        :param origin:
            ``(host, port)`` of the local peer being forwarded, reported to
            the server. Default: ``("127.0.0.1", 0)``.

        :returns: a ``direct-tcpip`` `paramiko.channel.Channel`.

        :raises ChannelOpenError:
            if the server refuses or fails to connect. The session itself
            stays usable.
        """
        if isinstance(remote_address, str):
            remote_address = parse_address(remote_address)
        if origin is None:
            origin = ("127.0.0.1", 0)
        try:
            return self.transport.open_channel(
                "direct-tcpip",
                dest_addr=tuple(remote_address),
                src_addr=tuple(origin[:2]),
                timeout=self.config.timeouts.channel,
            )
        except (SSHException, OSError) as e:
            raise ChannelOpenError(
                "error opening connection to {}: {}".format(
                    format_address(remote_address), e
                )
            ) from e

    def close(self):
        """
        Terminate the connection, if open. Safe to call repeatedly.
        """
        if self.client is not None:
            self.client.close()
            debug("Closed session to {}".format(self.host))
        self.client = None
        self.transport = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
