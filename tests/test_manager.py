import os
import shutil
import socket
import subprocess
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest
from invoke.util import ExceptionHandlingThread

from opentunnels import ForwardingEngine, GroupResult, TunnelManager, TunnelSpec
from opentunnels.exceptions import (
    BindError,
    DialError,
    GroupException,
    NoAuthenticationMethods,
    NothingToDo,
)
from opentunnels.testing.base import exchange


def closed_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def tunnel(identifier, host, remote, local="127.0.0.1:0", user="tester"):
    return TunnelSpec(identifier, user, host, local, remote)


@pytest.fixture
def config(make_config, client_key_file, known_hosts):
    return make_config(
        overrides={"known_hosts": str(known_hosts)},
        QA_PRIVATE_KEY=str(client_key_file),
    )


@pytest.fixture
def ssh_agent(client_key_file):
    """
    A private OpenSSH agent holding ``client_key``; yields its socket path.
    """
    if not (shutil.which("ssh-agent") and shutil.which("ssh-add")):
        pytest.skip("OpenSSH agent tools not installed")
    # AF_UNIX paths are short; pytest's tmp_path can be too long.
    where = tempfile.mkdtemp(prefix="ot")
    path = os.path.join(where, "agent")
    agent = subprocess.Popen(
        ["ssh-agent", "-D", "-a", path],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    try:
        deadline = time.time() + 10
        while not os.path.exists(path) and time.time() < deadline:
            time.sleep(0.01)
        subprocess.run(
            ["ssh-add", str(client_key_file)],
            env=dict(os.environ, SSH_AUTH_SOCK=path),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        yield path
    finally:
        agent.terminate()
        agent.wait(10)
        shutil.rmtree(where)


@pytest.fixture
def echo_tunnel(ssh_server, echo_server):
    return tunnel("ssh_tunnel.echo", ssh_server.host, echo_server.endpoint)


class TestGroupResult:
    def test_splits_successes_from_failures(self):
        good, bad = object(), DialError("nope")
        result = GroupResult({"a": good, "b": bad})
        assert result.succeeded == {"a": good}
        assert result.failed == {"b": bad}

    def test_group_exception_summarizes(self):
        result = GroupResult({"a": object(), "b": DialError("nope")})
        assert str(GroupException(result)) == "1 of 2 tunnel(s) failed"


class TestStart:
    def test_requires_tunnels(self, make_config):
        with pytest.raises(NothingToDo):
            TunnelManager([], make_config()).start()

    def test_no_authentication_fails_every_tunnel_before_binding(
        self, make_config, monkeypatch
    ):
        bind = Mock()
        monkeypatch.setattr(ForwardingEngine, "bind", bind)
        specs = [
            tunnel("ssh_tunnel.{}".format(x), "ssh.example:22", "10.0.0.5:80")
            for x in range(3)
        ]
        manager = TunnelManager(specs, make_config())
        assert manager.start() == []
        assert not bind.called
        assert manager.engines == {}
        assert set(manager.failures) == set(specs)
        for error in manager.failures.values():
            assert isinstance(error, NoAuthenticationMethods)
        with pytest.raises(GroupException) as info:
            manager.wait()
        assert len(info.value.result.failed) == 3

    def test_unreachable_server_releases_listener(self, config):
        spec = tunnel(
            "ssh_tunnel.down", "127.0.0.1:{}".format(closed_port()), "10.0.0.5:80"
        )
        manager = TunnelManager([spec], config)
        assert manager.start() == []
        error = manager.failures[spec]
        assert isinstance(error, DialError)
        assert error.spec == spec
        engine = manager.engines[spec]
        engine.join(5)
        assert engine.listener.fileno() == -1
        with pytest.raises(ConnectionRefusedError):
            socket.create_connection(engine.bound_address, timeout=5)

    def test_unknown_host_key_fails_when_verifying(
        self, make_config, client_key_file, echo_tunnel
    ):
        # Private key auth implies host key verification; this known_hosts
        # file doesn't exist, so nothing vouches for the server.
        config = make_config(QA_PRIVATE_KEY=str(client_key_file))
        manager = TunnelManager([echo_tunnel], config)
        manager.start()
        assert isinstance(manager.failures[echo_tunnel], DialError)

    def test_bind_conflict_only_affects_its_tunnel(
        self, config, ssh_server, echo_server, echo_tunnel
    ):
        squatter = socket.socket()
        squatter.bind(("127.0.0.1", 0))
        squatter.listen(1)
        taken = "127.0.0.1:{}".format(squatter.getsockname()[1])
        clash = tunnel("ssh_tunnel.clash", ssh_server.host, echo_server.endpoint, taken)
        manager = TunnelManager([clash, echo_tunnel], config)
        with manager:
            assert isinstance(manager.failures[clash], BindError)
            assert clash not in manager.engines
            address = manager.engines[echo_tunnel].bound_address
            assert exchange(address, b"still here") == b"still here"
        squatter.close()
        with pytest.raises(GroupException) as info:
            manager.wait()
        result = info.value.result
        assert list(result.failed) == [clash]
        assert list(result.succeeded) == [echo_tunnel]


class TestForwarding:
    @pytest.mark.parametrize(
        "payload", [b"", b"hello", os.urandom(1024 * 1024)], ids=["empty", "small", "1MB"]
    )
    def test_round_trip(self, config, echo_tunnel, payload):
        with TunnelManager([echo_tunnel], config) as manager:
            address = manager.engines[echo_tunnel].bound_address
            assert exchange(address, payload) == payload

    def test_concurrent_connections(self, config, ssh_server, echo_tunnel):
        payloads = [os.urandom(4096) for _ in range(100)]
        with TunnelManager([echo_tunnel], config) as manager:
            address = manager.engines[echo_tunnel].bound_address
            with ThreadPoolExecutor(max_workers=20) as pool:
                results = list(pool.map(lambda x: exchange(address, x), payloads))
        assert results == payloads
        assert len(ssh_server.requests) == 100

    def test_channel_origin_is_the_local_client(self, config, ssh_server, echo_tunnel):
        with TunnelManager([echo_tunnel], config) as manager:
            address = manager.engines[echo_tunnel].bound_address
            exchange(address, b"x")
        [(origin, destination)] = ssh_server.requests
        assert origin[0] == "127.0.0.1"
        assert destination[1] == int(echo_tunnel.remote_address.rsplit(":", 1)[1])

    def test_remote_failure_does_not_end_tunnel(self, config, ssh_server):
        spec = tunnel(
            "ssh_tunnel.nowhere",
            ssh_server.host,
            "127.0.0.1:{}".format(closed_port()),
        )
        with TunnelManager([spec], config) as manager:
            engine = manager.engines[spec]
            for _ in range(2):
                client = socket.create_connection(engine.bound_address, timeout=5)
                assert client.recv(1024) == b""
                client.close()
            assert engine.failed_channels == 2
            assert engine.is_alive()

    def test_dropped_session_keeps_listener_open(self, config, ssh_server, echo_tunnel):
        with TunnelManager([echo_tunnel], config) as manager:
            engine = manager.engines[echo_tunnel]
            assert exchange(engine.bound_address, b"before") == b"before"
            ssh_server.drop_clients()
            deadline = time.time() + 10
            while engine.session.is_connected and time.time() < deadline:
                time.sleep(0.01)
            assert not engine.session.is_connected
            client = socket.create_connection(engine.bound_address, timeout=5)
            assert client.recv(1024) == b""
            client.close()
            assert engine.failed_channels == 1
            assert engine.is_alive()
            assert engine.exception() is None


class TestRun:
    def test_stop_from_another_thread_ends_run(self, config, echo_tunnel):
        manager = TunnelManager([echo_tunnel], config)
        results = []
        runner = ExceptionHandlingThread(target=lambda: results.append(manager.run()))
        runner.start()
        while echo_tunnel not in manager.engines and runner.is_alive():
            runner.join(0.01)
        assert manager.engines[echo_tunnel].ready.wait(10)
        manager.stop()
        runner.join(10)
        assert not runner.is_alive()
        assert runner.exception() is None
        [result] = results
        assert list(result.succeeded) == [echo_tunnel]
        assert manager.running == []

    def test_interrupt_stops_and_reports(self, make_config):
        manager = TunnelManager([tunnel("t", "ssh.example:22", "10.0.0.5:80")], make_config())
        manager.start = Mock(side_effect=KeyboardInterrupt)
        manager.wait = Mock(return_value="result")
        assert manager.run() == "result"
        assert manager.finished.is_set()


class TestAgentLogin:
    def test_agent_keys_authenticate(self, make_config, ssh_agent, ssh_server, echo_server):
        spec = TunnelSpec(
            "ssh_tunnel.agent",
            "",
            ssh_server.host,
            "127.0.0.1:0",
            echo_server.endpoint,
            "true",
        )
        # No private key: agent keys only, host key accepted unverified.
        config = make_config(SSH_AUTH_SOCK=ssh_agent)
        with TunnelManager([spec], config) as manager:
            assert manager.failures == {}
            address = manager.engines[spec].bound_address
            assert exchange(address, b"via agent") == b"via agent"
        assert spec.user in ssh_server.logins

    def test_agent_unused_unless_requested(self, make_config, ssh_agent, echo_tunnel):
        manager = TunnelManager([echo_tunnel], make_config(SSH_AUTH_SOCK=ssh_agent))
        manager.start()
        assert isinstance(manager.failures[echo_tunnel], NoAuthenticationMethods)
        assert manager.engines == {}
