"""
Supervision of many concurrently running tunnels.
"""
from threading import Event

from .auth import AuthResolver
from .config import Config
from .exceptions import GroupException, NothingToDo, TunnelError
from .tunnels import ForwardingEngine
from .util import debug, log


class GroupResult(dict):
    """
    Collection of per-tunnel outcomes keyed by `.TunnelSpec`.

    Values are either the tunnel's `.ForwardingEngine` (for tunnels which ran
    until asked to stop) or the exception which ended the tunnel.

    This class is a `dict` subclass, with two extra attributes:
    ``succeeded`` and ``failed``, each a dict of the same shape holding the
    respective subset.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._successes = {}
        self._failures = {}

    def _bifurcate(self):
        if self._successes or self._failures:
            return
        for key, value in self.items():
            if isinstance(value, BaseException):
                self._failures[key] = value
            else:
                self._successes[key] = value

    @property
    def succeeded(self):
        """
        A sub-dict containing only tunnels which did not fail.
        """
        self._bifurcate()
        return self._successes

    @property
    def failed(self):
        """
        A sub-dict containing only tunnels which failed.
        """
        self._bifurcate()
        return self._failures


class TunnelManager:
    """
    Starts and supervises one `.ForwardingEngine` per `.TunnelSpec`.

    Failures are isolated: a tunnel which can't resolve credentials, bind
    its local address or reach its SSH server is recorded and reported, and
    the remaining tunnels are started regardless.

    Typical use::

        manager = TunnelManager(specs, config=Config())
        try:
            result = manager.run()
        except GroupException as e:
            for spec, exc in e.result.failed.items():
                ...

    Or as a context manager, which stops every tunnel on exit::

        with TunnelManager(specs) as manager:
            ...

    :param specs: iterable of `.TunnelSpec`, started in order.
    :param config: `.Config` shared by every tunnel. Default: a new one.
    """

    def __init__(self, specs, config=None):
        self.specs = list(specs)
        self.config = Config() if config is None else config
        self.resolver = AuthResolver(self.config)
        self.finished = Event()
        self.engines = {}
        self.failures = {}

    def __repr__(self):
        return "<{} tunnels={} running={}>".format(
            self.__class__.__name__, len(self.specs), len(self.running)
        )

    @property
    def running(self):
        return [x for x in self.engines.values() if x.is_alive()]

    def start(self):
        """
        Launch every tunnel, one after another.

        Each tunnel gets its credentials resolved and local address bound
        here, synchronously; dialing and forwarding then happen on the
        tunnel's own thread. We wait for each tunnel to report readiness (up
        to ``timeouts.ready`` seconds) before moving on to the next.

        :returns: the list of engines which came up.
        :raises NothingToDo: if there are no tunnels at all.
        """
        if not self.specs:
            raise NothingToDo("No tunnels to start")
        for spec in self.specs:
            if self.finished.is_set():
                break
            self.launch(spec)
        return [x for x in self.engines.values() if x.established]

    def launch(self, spec):
        """
        Start a single tunnel, recording rather than raising its failure.

        :returns: the `.ForwardingEngine`, or ``None`` on failure.
        """
        try:
            credentials = self.resolver.resolve(spec)
        except TunnelError as e:
            return self._failed(spec, e)
        engine = ForwardingEngine(spec, credentials, self.config, finished=self.finished)
        try:
            engine.bind()
        except TunnelError as e:
            credentials.close()
            return self._failed(spec, e)
        log.info(str(spec))
        engine.start()
        self.engines[spec] = engine
        if not engine.ready.wait(self.config.timeouts.ready):
            log.warning(
                "{}: still connecting to {}, moving on".format(spec.identifier, spec.host)
            )
        elif engine.error is not None:
            return self._failed(spec, engine.error)
        else:
            debug("{}: ready".format(spec.identifier))
        return engine

    def _failed(self, spec, exception):
        log.error(str(exception))
        self.failures[spec] = exception
        return None

    def stop(self):
        """
        Ask every tunnel to shut down. Returns immediately; see `wait`.
        """
        self.finished.set()

    def join(self, interval=0.5):
        # Joining in slices keeps the main thread able to see signals.
        for engine in list(self.engines.values()):
            while engine.is_alive():
                engine.join(interval)

    def wait(self):
        """
        Block until every tunnel has stopped, then report.

        Since tunnels run until `stop` is called, this normally returns only
        after somebody (eg another thread or a signal handler) has done so,
        or every tunnel has failed.

        :returns: a `GroupResult`.
        :raises GroupException: if any tunnel failed.
        """
        self.join()
        result = GroupResult()
        for spec in self.specs:
            if spec in self.failures:
                result[spec] = self.failures[spec]
                continue
            engine = self.engines.get(spec)
            if engine is None:
                continue
            wrapper = engine.exception()
            result[spec] = engine if wrapper is None else wrapper.value
        if result.failed:
            raise GroupException(result)
        return result

    def run(self):
        """
        `start` every tunnel then `wait` for them, stopping on Ctrl-C.
        """
        try:
            self.start()
            return self.wait()
        except KeyboardInterrupt:
            log.info("Interrupted, stopping tunnels")
            self.stop()
            return self.wait()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()
        self.join()
