"""
Tunnel and connection forwarding internals.

If you're looking for simple, end-user-focused tunnel setup, please see
`.TunnelManager`.
"""
import select
import socket
import time
from threading import Event, Lock

from invoke.util import ExceptionHandlingThread

from .exceptions import BindError, ChannelOpenError, TransportError, TunnelError
from .session import TunnelSession
from .util import debug, format_address, log


class ForwardingEngine(ExceptionHandlingThread):
    """
    Thread subclass accepting local connections and tunnelling them over SSH.

    One instance of this class is sufficient to sit around forwarding any
    number of individual connections made to its local address. If you need
    to forward more than one local address, you'll end up instantiating
    multiple engines (which is what `.TunnelManager` does).

    Lifecycle:

    - `bind` sets up the local listener. It's normally called by the owner
      before `start`, so bind failures surface synchronously; `start` will
      bind by itself otherwise.
    - The thread dials the SSH server, sets `ready`, then accepts
      connections until ``finished`` is set.
    - If dialing fails, the failure is stored as `error`, `ready` is still
      set, the listener is closed and the exception ends the thread (where
      `invoke.util.ExceptionHandlingThread` captures it).

    :param spec: the `.TunnelSpec` being served.
    :param credentials: `.Credentials` used for the single dial attempt.
    :param config: the shared `.Config`.
    :param finished:
        `threading.Event` which, once set, stops the engine. Default: a
        private event, see `stop`.
    :param session:
        Object with ``connect``, ``open_channel`` and ``close`` methods.
        Default: a new `.TunnelSession` to ``spec.host``.
    """

    def __init__(self, spec, credentials, config, finished=None, session=None):
        super().__init__(name="tunnel {}".format(spec.identifier))
        self.spec = spec
        self.credentials = credentials
        self.config = config
        self.finished = Event() if finished is None else finished
        if session is None:
            session = TunnelSession(spec.host, config)
        self.session = session
        self.ready = Event()
        self.error = None
        self.listener = None
        self.bound_address = None
        self.connections = []
        self.accepted = 0
        self.failed_channels = 0

    def __repr__(self):
        return "<{} {}>".format(self.__class__.__name__, self.spec.identifier)

    @property
    def established(self):
        return self.ready.is_set() and self.error is None

    def bind(self):
        """
        Set up the OS-level listener socket on ``spec.local_address``.

        :returns: the bound ``(host, port)``.
        :raises BindError: if the address can't be resolved or bound.
        """
        host, port = self.spec.local_endpoint
        try:
            family, kind, proto, _, address = socket.getaddrinfo(
                host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
            )[0]
            sock = socket.socket(family, kind, proto)
        except OSError as e:
            raise BindError(
                "unable to listen on {}: {}".format(self.spec.local_address, e),
                spec=self.spec,
            ) from e
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            # NOTE: nonblocking accept plus a short sleep lets the loop notice
            # `finished` without anyone having to close the socket under it.
            sock.setblocking(False)
            sock.bind(address)
            sock.listen(self.config.forwarding.backlog)
        except OSError as e:
            sock.close()
            raise BindError(
                "unable to listen on {}: {}".format(self.spec.local_address, e),
                spec=self.spec,
            ) from e
        self.listener = sock
        self.bound_address = sock.getsockname()[:2]
        debug("{}: listening on {}".format(self.spec.identifier, self.bound_address))
        return self.bound_address

    def stop(self):
        self.finished.set()

    def _run(self):
        try:
            if self.listener is None:
                self.bind()
            self.session.connect(self.credentials)
        except Exception as e:
            if isinstance(e, TunnelError) and e.spec is None:
                e.spec = self.spec
            self.error = e
            self.close_listener()
            raise
        finally:
            self.ready.set()
        try:
            self.serve()
        finally:
            self.shutdown()

    def serve(self):
        """
        The accept loop. Runs until ``finished`` is set.
        """
        interval = self.config.forwarding.poll_interval
        while not self.finished.is_set():
            # NOTE: BlockingIOError means "you're nonblocking and nobody
            # happened to connect at this point in time"
            try:
                sock, origin = self.listener.accept()
            except BlockingIOError:
                time.sleep(interval)
                continue
            except OSError as e:
                if self.listener.fileno() == -1:
                    debug("{}: listener closed".format(self.spec.identifier))
                    break
                log.warning(
                    "{}: error accepting connection: {}".format(
                        self.spec.identifier, e
                    )
                )
                time.sleep(interval)
                continue
            self.accepted += 1
            sock.setblocking(True)
            # Match OpenSSH's forwarding socket behavior
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            self.forward(sock, origin)
            self.reap()

    def forward(self, sock, origin):
        """
        Pair accepted ``sock`` with a fresh channel and start relaying.

        :returns:
            The running `.ForwardedConnection`, or ``None`` if the server
            refused the channel or the session is gone (in which case
            ``sock`` has been closed).
        """
        try:
            channel = self.session.open_channel(self.spec.remote_endpoint, origin)
        except (ChannelOpenError, TransportError) as e:
            # A lost session only costs this one connection.
            self.failed_channels += 1
            log.warning("{}: {}".format(self.spec.identifier, e))
            sock.close()
            return None
        except Exception:
            sock.close()
            raise
        connection = ForwardedConnection(
            sock,
            channel,
            origin,
            self.config,
            name="{} {}".format(self.spec.identifier, format_address(origin)),
        )
        connection.start()
        self.connections.append(connection)
        return connection

    def reap(self):
        self.connections = [x for x in self.connections if not x.closed]

    def close_listener(self):
        if self.listener is not None:
            self.listener.close()

    def shutdown(self):
        """
        Stop live connections, then release the listener and session.
        """
        connections, self.connections = self.connections, []
        for connection in connections:
            connection.stop()
        for connection in connections:
            connection.join()
        self.close_listener()
        self.session.close()
        log.info(
            "{}: stopped after {} connection(s)".format(
                self.spec.identifier, self.accepted
            )
        )


class ForwardedConnection:
    """
    One accepted local socket paired with one SSH channel.

    Data flows through two `Relay` threads, one per direction. End of stream
    in one direction is propagated as a half-close (``shutdown(SHUT_WR)``) on
    the other end, leaving the opposite direction running. An error in
    either direction, or a `stop`, tears down both ends. Once both relays
    have finished, both ends are closed.

    Either end may be any object with ``recv``, ``sendall``, ``shutdown``,
    ``close`` and ``fileno``: sockets and Paramiko channels both qualify.
    """

    def __init__(self, sock, channel, origin, config, name=None):
        self.sock = sock
        self.channel = channel
        self.origin = origin
        self.config = config
        self.name = name or format_address(origin)
        self.finished = Event()
        self.closed = False
        self._lock = Lock()
        self._done = []
        self.relays = (
            Relay(self, sock, channel, "local -> remote"),
            Relay(self, channel, sock, "remote -> local"),
        )

    def __repr__(self):
        return "<{} {}>".format(self.__class__.__name__, self.name)

    def start(self):
        for relay in self.relays:
            relay.start()

    def stop(self):
        self.abort()

    def join(self, timeout=None):
        for relay in self.relays:
            relay.join(timeout)

    def abort(self):
        """
        Force both ends down, waking any relay blocked on them.
        """
        self.finished.set()
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            debug("{}: shutdown of local end failed: {}".format(self.name, e))
        self.channel.close()

    def relay_finished(self, relay, error):
        if error is None:
            debug(
                "{}: {} finished after {} bytes".format(
                    self.name, relay.direction, relay.transferred
                )
            )
        else:
            log.warning(
                "{}: error copying data {}: {}".format(self.name, relay.direction, error)
            )
            self.abort()
        with self._lock:
            self._done.append(relay)
            last = len(self._done) == len(self.relays)
        if last:
            self.close()

    def close(self):
        with self._lock:
            if self.closed:
                return
            self.closed = True
        self.finished.set()
        self.channel.close()
        self.sock.close()


class Relay(ExceptionHandlingThread):
    """
    Copy data from ``reader`` to ``writer`` until end of stream.
    """

    def __init__(self, connection, reader, writer, direction):
        super().__init__(name="{} {}".format(connection.name, direction))
        self.connection = connection
        self.reader = reader
        self.writer = writer
        self.direction = direction
        self.transferred = 0
        self.eof = False

    def read_and_write(self, chunk_size):
        """
        Read ``chunk_size`` from ``reader``, writing result to ``writer``.

        Returns ``None`` if successful, or ``True`` if the read was empty.
        """
        data = self.reader.recv(chunk_size)
        if len(data) == 0:
            return True
        self.writer.sendall(data)
        self.transferred += len(data)

    def _run(self):
        error = None
        try:
            self.pump()
        except Exception as e:
            # Errors caused by the other side tearing things down are
            # expected, not failures.
            if not self.connection.finished.is_set():
                error = e
                raise
            debug("{}: {} interrupted: {!r}".format(self.connection.name, self.direction, e))
        finally:
            self.connection.relay_finished(self, error)

    def pump(self):
        settings = self.connection.config.forwarding
        finished = self.connection.finished
        while not finished.is_set():
            r, w, x = select.select([self.reader], [], [], settings.select_timeout)
            if self.reader in r and self.read_and_write(settings.chunk_size):
                self.eof = True
                self.half_close()
                break

    def half_close(self):
        try:
            self.writer.shutdown(socket.SHUT_WR)
        except OSError as e:
            debug("{}: half-close failed: {}".format(self.connection.name, e))
