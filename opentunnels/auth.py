"""
Authentication method selection and host key policies for tunnels.
"""
import socket

from paramiko import BadHostKeyException, MissingHostKeyPolicy, PKey, SSHException
from paramiko.agent import AgentSSH
from paramiko.auth_strategy import AuthStrategy, InMemoryPrivateKey
from paramiko.pkey import UnknownKeyType

from .exceptions import CredentialError, NoAuthenticationMethods
from .util import debug, log


class LazyAgent(AgentSSH):
    """
    SSH agent client over an already-connected socket.

    Unlike `paramiko.agent.Agent`, no identities are requested from the agent
    until `get_keys` is first called (ie during the SSH handshake).
    """

    def __init__(self, conn):
        super().__init__()
        self._pending = conn

    def get_keys(self):
        if self._pending is not None:
            conn, self._pending = self._pending, None
            self._connect(conn)
        return self._keys

    def close(self):
        if self._pending is not None:
            self._pending.close()
            self._pending = None
        self._close()


class PrivateKeyMethod:
    """
    Public key authentication with a key loaded from disk.
    """

    def __init__(self, pkey, path):
        self.pkey = pkey
        self.path = path

    def __repr__(self):
        return "<{} {}>".format(self.__class__.__name__, self.path)

    def sources(self, username):
        yield InMemoryPrivateKey(username=username, pkey=self.pkey)

    def close(self):
        pass


class AgentMethod:
    """
    Public key authentication with whatever keys an SSH agent holds.

    The agent is only asked for its keys once the handshake actually gets to
    this method.
    """

    def __init__(self, agent, socket_path):
        self.agent = agent
        self.socket_path = socket_path

    def __repr__(self):
        return "<{} {}>".format(self.__class__.__name__, self.socket_path)

    def sources(self, username):
        for key in self.agent.get_keys():
            yield InMemoryPrivateKey(username=username, pkey=key)

    def close(self):
        self.agent.close()


class Credentials(AuthStrategy):
    """
    Ordered authentication methods plus host key policy for one tunnel.

    Handed to `paramiko.client.SSHClient.connect` as its ``auth_strategy``;
    sources are tried in the order of ``methods``.
    """

    def __init__(self, username, methods, host_key_policy):
        super().__init__(ssh_config=None)
        self.username = username
        self.methods = list(methods)
        self.host_key_policy = host_key_policy

    def __repr__(self):
        return "<{} user={} methods={!r} policy={}>".format(
            self.__class__.__name__,
            self.username,
            self.methods,
            self.host_key_policy.__class__.__name__,
        )

    def get_sources(self):
        for method in self.methods:
            yield from method.sources(self.username)

    def close(self):
        """
        Shut down any resources we ourselves opened up.
        """
        for method in self.methods:
            method.close()


class KnownHostsPolicy(MissingHostKeyPolicy):
    """
    Only accept server keys recorded in a `paramiko.hostkeys.HostKeys` store.
    """

    def __init__(self, host_keys):
        self.host_keys = host_keys

    def missing_host_key(self, client, hostname, key):
        if self.host_keys.check(hostname, key):
            debug("Host key for {} matches known_hosts".format(hostname))
            return
        known = self.host_keys.lookup(hostname) or {}
        expected = known.get(key.get_name())
        if expected is not None:
            raise BadHostKeyException(hostname, key, expected)
        raise SSHException(
            "No {} host key for {!r} in known_hosts".format(key.get_name(), hostname)
        )


class AcceptAnyPolicy(MissingHostKeyPolicy):
    """
    Accept every server key without verification.

    Used when no private key is configured. Each acceptance is logged.
    """

    def missing_host_key(self, client, hostname, key):
        log.warning(
            "Accepting unverified {} host key {} for {}".format(
                key.get_name(), key.fingerprint, hostname
            )
        )


class AuthResolver:
    """
    Turns a `.TunnelSpec` plus environment into `.Credentials`.

    :param config:
        The `.Config` supplying environment lookups and the shared
        known_hosts store.
    """

    def __init__(self, config):
        self.config = config

    def resolve(self, spec):
        """
        Build the credentials used to establish ``spec``'s SSH session.

        :raises CredentialError:
            if a configured key can't be read or parsed, or the agent socket
            can't be reached.
        :raises NoAuthenticationMethods:
            if neither a private key nor an agent is available.
        """
        methods = []
        verify = self.config.authentication.strict_host_keys
        path = self.config.private_key_path()
        if path:
            methods.append(self.load_private_key(spec, path))
            verify = True
        if spec.use_agent:
            socket_path = self.config.agent_socket_path()
            if socket_path:
                try:
                    methods.append(self.connect_agent(spec, socket_path))
                except CredentialError:
                    for method in methods:
                        method.close()
                    raise
            else:
                debug("{}: agent requested but no socket".format(spec.identifier))
        if not methods:
            raise NoAuthenticationMethods(
                "No authentication method configured; set {} or enable the"
                " SSH agent".format(self.config.authentication.private_key_env),
                spec=spec,
            )
        if verify:
            policy = KnownHostsPolicy(self.config.host_keys)
        else:
            policy = AcceptAnyPolicy()
        return Credentials(spec.user, methods, policy)

    def load_private_key(self, spec, path):
        try:
            pkey = PKey.from_path(path)
        except (OSError, SSHException, TypeError, ValueError, UnknownKeyType) as e:
            raise CredentialError(
                "unable to load private key {!r}: {}".format(path, e), spec=spec
            ) from e
        debug("{}: loaded {} key from {}".format(spec.identifier, pkey.get_name(), path))
        return PrivateKeyMethod(pkey, path)

    def connect_agent(self, spec, socket_path):
        conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            conn.connect(socket_path)
        except OSError as e:
            conn.close()
            raise CredentialError(
                "unable to reach SSH agent at {!r}: {}".format(socket_path, e),
                spec=spec,
            ) from e
        return AgentMethod(LazyAgent(conn), socket_path)
