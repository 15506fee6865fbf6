import os
import threading

from invoke.config import Config as InvokeConfig, merge_dicts
from paramiko.hostkeys import HostKeys

from .util import debug


class Config(InvokeConfig):
    """
    An `invoke.config.Config` subclass with extra tunnel-related behavior.

    This class behaves like `invoke.config.Config` in every way, with the
    following exceptions:

    - its `global_defaults` staticmethod has been extended to add settings
      for authentication, timeouts and forwarding (see its documentation,
      below, for details);
    - it triggers loading of OpenTunnels-specific env vars (e.g.
      ``OPENTUNNELS_TIMEOUTS_CONNECT=5``) and filenames (e.g.
      ``/etc/opentunnels.yaml``);
    - it holds the process environment used for credential lookups as an
      explicit attribute, rather than having callers consult `os.environ`;
    - it owns the single known_hosts store shared by every tunnel, exposed
      as `host_keys`.
    """

    prefix = "opentunnels"

    def __init__(self, *args, **kwargs):
        """
        Creates a new tunnel-specific config object.

        For most API details, see `invoke.config.Config.__init__`. Parameters
        new to this subclass are listed below.

        :param environ:
            Mapping to read credential-related environment variables from.
            Default: `os.environ`.

        :param host_keys:
            Explicit `paramiko.hostkeys.HostKeys` object. If given, prevents
            loading of the ``known_hosts`` file. Default: ``None``.
        """
        environ = kwargs.pop("environ", None)
        self._set(_environ=os.environ if environ is None else environ)
        self._set(_host_keys=kwargs.pop("host_keys", None))
        self._set(_host_keys_lock=threading.Lock())
        super().__init__(*args, **kwargs)

    def _clone_init_kwargs(self, *args, **kw):
        kwargs = super()._clone_init_kwargs(*args, **kw)
        return dict(kwargs, environ=self._environ, host_keys=self._host_keys)

    @property
    def environ(self):
        return self._environ

    def getenv(self, name):
        """
        Return environment variable ``name``, treating empty as unset.
        """
        if not name:
            return None
        return self.environ.get(name) or None

    def private_key_path(self):
        """
        Path of the private key file named by the environment, if any.
        """
        return self.getenv(self.authentication.private_key_env)

    def agent_socket_path(self):
        """
        Path of the SSH agent's socket named by the environment, if any.
        """
        return self.getenv(self.authentication.agent_socket_env)

    @property
    def host_keys(self):
        """
        The known_hosts store, loaded from disk on first access.

        Every tunnel shares the same `paramiko.hostkeys.HostKeys` instance;
        it is only ever read after loading.
        """
        with self._host_keys_lock:
            if self._host_keys is None:
                self._set(_host_keys=self.load_known_hosts())
        return self._host_keys

    def load_known_hosts(self):
        """
        Parse the configured ``known_hosts`` file.

        A missing file yields an empty store, which rejects every server.

        :returns: `paramiko.hostkeys.HostKeys`
        """
        keys = HostKeys()
        path = self.known_hosts
        if not path:
            return keys
        path = os.path.expanduser(path)
        try:
            keys.load(path)
        except FileNotFoundError:
            debug("No known_hosts file at {!r}".format(path))
        else:
            debug("Loaded {} host(s) from {!r}".format(len(keys), path))
        return keys

    @staticmethod
    def global_defaults():
        """
        Default configuration values and behavior toggles.

        We only extend Invoke's `~invoke.config.Config.global_defaults` here,
        adding:

        - ``known_hosts``: path of the known_hosts file consulted whenever
          host keys are verified. Default: ``~/.ssh/known_hosts``.
        - ``authentication.private_key_env``: name of the environment
          variable holding a private key path. Default: ``QA_PRIVATE_KEY``.
        - ``authentication.agent_socket_env``: name of the environment
          variable holding the agent socket path. Default:
          ``SSH_AUTH_SOCK``.
        - ``authentication.strict_host_keys``: verify host keys against
          ``known_hosts`` even when authenticating via the agent alone.
          Default: ``False``, which accepts any host key in that case.
        - ``timeouts.connect``: TCP connect timeout for SSH dials, in
          seconds. Default: ``None`` (wait forever).
        - ``timeouts.ready``: how long the manager waits for each tunnel to
          come up before moving on to the next one. Default: ``30``.
        - ``timeouts.keepalive``: interval between SSH keepalive packets.
          Default: ``None`` (disabled).
        - ``timeouts.channel``: how long to wait for the server to answer a
          channel open request. Default: ``None`` (paramiko's default).
        - ``forwarding.backlog``: listen backlog for local sockets.
        - ``forwarding.chunk_size``: bytes moved per read when relaying.
        - ``forwarding.poll_interval``: sleep between accept attempts on an
          idle listener.
        - ``forwarding.select_timeout``: how often relay threads wake up to
          check for stop requests.
        """
        defaults = InvokeConfig.global_defaults()
        ours = {
            "known_hosts": "~/.ssh/known_hosts",
            "authentication": {
                "private_key_env": "QA_PRIVATE_KEY",
                "agent_socket_env": "SSH_AUTH_SOCK",
                "strict_host_keys": False,
            },
            "timeouts": {
                "connect": None,
                "ready": 30,
                "keepalive": None,
                "channel": None,
            },
            "forwarding": {
                "backlog": 128,
                "chunk_size": 32768,
                "poll_interval": 0.01,
                "select_timeout": 1,
            },
        }
        merge_dicts(defaults, ours)
        return defaults
