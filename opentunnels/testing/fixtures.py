"""
`pytest <https://pytest.org>`_ fixtures for easy use of tunnel test helpers.

To get tunnel's pytest fixtures, import the ones you need into your
``conftest.py``::

    from opentunnels.testing.fixtures import ssh_server, echo_server  # noqa
"""
import pytest
from invoke.config import merge_dicts
from paramiko import HostKeys, RSAKey

from ..config import Config
from .base import EchoServer, SSHServer


@pytest.fixture(scope="session")
def host_key():
    """
    RSA key identifying `ssh_server`. Generated once per test session.
    """
    return RSAKey.generate(2048)


@pytest.fixture(scope="session")
def client_key():
    """
    RSA key `ssh_server` accepts for login.
    """
    return RSAKey.generate(2048)


@pytest.fixture
def client_key_file(client_key, tmp_path):
    path = tmp_path / "id_rsa"
    client_key.write_private_key_file(str(path))
    return path


@pytest.fixture
def ssh_server(host_key, client_key):
    """
    A running `.SSHServer` accepting ``client_key``.
    """
    server = SSHServer(host_key, [client_key])
    server.start()
    yield server
    server.stop()


@pytest.fixture
def echo_server():
    server = EchoServer().start()
    yield server
    server.stop()


@pytest.fixture
def known_hosts(ssh_server, host_key, tmp_path):
    """
    Path to a known_hosts file vouching for `ssh_server`.
    """
    keys = HostKeys()
    keys.add(ssh_server.known_hosts_name, host_key.get_name(), host_key)
    path = tmp_path / "known_hosts"
    keys.save(str(path))
    return path


@pytest.fixture
def make_config(tmp_path):
    """
    Factory for `.Config` objects with a fake environment and snappy timings.

    Keyword arguments become the environment; ``overrides`` is merged over
    the test defaults.
    """

    def make(overrides=None, **environ):
        settings = {
            "known_hosts": str(tmp_path / "no_known_hosts"),
            "timeouts": {"connect": 5, "ready": 10},
            "forwarding": {"select_timeout": 0.1, "poll_interval": 0.005},
        }
        if overrides:
            merge_dicts(settings, overrides)
        return Config(lazy=True, overrides=settings, environ=environ)

    return make
