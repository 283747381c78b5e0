"""The engine that wires a coordinator, a worker, or both, together."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

DATASTORE_POSTGRES = "postgres"

DatastoreProvider = Callable[[], Any]
BrokerProvider = Callable[[], Any]


class EngineError(RuntimeError):
    """Raised when the engine is misused or cannot start."""


class Mode(str, enum.Enum):
    """What the engine runs."""

    COORDINATOR = "coordinator"
    WORKER = "worker"
    STANDALONE = "standalone"


class State(str, enum.Enum):
    """Lifecycle state of an engine."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    TERMINATING = "TERMINATING"
    TERMINATED = "TERMINATED"


@dataclass
class Middleware:
    """Middleware registered with the engine, by kind."""

    web: list[Callable[..., Any]] = field(default_factory=list)
    task: list[Callable[..., Any]] = field(default_factory=list)
    job: list[Callable[..., Any]] = field(default_factory=list)
    node: list[Callable[..., Any]] = field(default_factory=list)


class DatastoreProxy:
    """Stands in for the datastore until the engine has created it.

    Any attribute access before :meth:`attach` raises :class:`EngineError`;
    afterwards it is forwarded to the real datastore.
    """

    def __init__(self) -> None:
        self._target: Any = None

    def attach(self, datastore: Any) -> None:
        """Point the proxy at a real datastore."""
        self._target = datastore

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        target = self._target
        if target is None:
            raise EngineError(
                "Datastore not initialized. You must call engine.start() first"
            )
        return getattr(target, name)


def _parse_mode(mode: Any) -> Mode:
    try:
        return Mode(mode)
    except ValueError:
        raise EngineError(f"Unknown mode: {mode}") from None


class Engine:
    """Runs in coordinator, worker or standalone mode and manages its lifecycle."""

    def __init__(self, mode: Mode | str | None = None) -> None:
        self._mode = mode
        self._state = State.IDLE
        self._lock = threading.Lock()
        self._terminate_requested = threading.Event()
        self._terminated = threading.Event()
        self._middleware = Middleware()
        self._endpoints: dict[str, Callable[..., Any]] = {}
        self._runtime: Any = None
        self._ds_providers: dict[str, DatastoreProvider] = {}
        self._mq_providers: dict[str, BrokerProvider] = {}
        self._datastore_ref = DatastoreProxy()
        self.datastore_type = DATASTORE_POSTGRES

    # ------------------------------------------------------------ inspection

    @property
    def state(self) -> State:
        """The current lifecycle state."""
        with self._lock:
            return self._state

    @property
    def mode(self) -> Mode | str | None:
        return self._mode

    @property
    def middleware(self) -> Middleware:
        """A copy of the registered middleware."""
        with self._lock:
            m = self._middleware
            return Middleware(list(m.web), list(m.task), list(m.job), list(m.node))

    @property
    def endpoints(self) -> dict[str, Callable[..., Any]]:
        """A copy of the registered endpoints, keyed by ``"METHOD /path"``."""
        with self._lock:
            return dict(self._endpoints)

    @property
    def runtime(self) -> Any:
        return self._runtime

    @property
    def datastore(self) -> DatastoreProxy:
        """The engine's datastore; usable only once the engine has started."""
        return self._datastore_ref

    # ---------------------------------------------------------- registration

    def _must_state(self, state: State) -> None:
        if self._state != state:
            raise EngineError(f"engine is not {state.value}")

    def set_mode(self, mode: Mode | str) -> None:
        """Change the mode; only while idle."""
        with self._lock:
            self._must_state(State.IDLE)
            self._mode = mode

    def register_web_middleware(self, mw: Callable[..., Any]) -> None:
        with self._lock:
            self._must_state(State.IDLE)
            self._middleware.web.append(mw)

    def register_task_middleware(self, mw: Callable[..., Any]) -> None:
        with self._lock:
            self._must_state(State.IDLE)
            self._middleware.task.append(mw)

    def register_job_middleware(self, mw: Callable[..., Any]) -> None:
        with self._lock:
            self._must_state(State.IDLE)
            self._middleware.job.append(mw)

    def register_node_middleware(self, mw: Callable[..., Any]) -> None:
        with self._lock:
            self._must_state(State.IDLE)
            self._middleware.node.append(mw)

    def register_endpoint(self, method: str, path: str, handler: Callable[..., Any]) -> None:
        with self._lock:
            self._must_state(State.IDLE)
            self._endpoints[f"{method} {path}"] = handler

    def register_runtime(self, runtime: Any) -> None:
        """Use ``runtime`` instead of a configured one; may be called once."""
        with self._lock:
            self._must_state(State.IDLE)
            if self._runtime is not None:
                raise EngineError("engine: RegisterRuntime called twice")
            self._runtime = runtime

    def register_datastore_provider(self, name: str, provider: DatastoreProvider) -> None:
        with self._lock:
            self._must_state(State.IDLE)
            if name in self._ds_providers:
                raise EngineError(
                    f"engine: RegisterDatastoreProvider called twice for driver {name}"
                )
            self._ds_providers[name] = provider

    def register_broker_provider(self, name: str, provider: BrokerProvider) -> None:
        with self._lock:
            self._must_state(State.IDLE)
            if name in self._mq_providers:
                raise EngineError(
                    f"engine: RegisterBrokerProvider called twice for driver {name}"
                )
            self._mq_providers[name] = provider

    # -------------------------------------------------------------- datastore

    def create_datastore(self, dstype: str) -> Any:
        """Create a datastore of the given type from a registered provider."""
        provider = self._ds_providers.get(dstype)
        if provider is not None:
            return provider()
        if dstype == DATASTORE_POSTGRES:
            raise EngineError(
                f"no provider registered for datastore type: {dstype}"
            )
        raise EngineError(f"unknown datastore type: {dstype}")

    def _init_datastore(self) -> None:
        self._datastore_ref.attach(self.create_datastore(self.datastore_type))

    # -------------------------------------------------------------- lifecycle

    def start(self) -> None:
        """Start the engine in its mode; raise EngineError if it cannot."""
        with self._lock:
            self._must_state(State.IDLE)
            mode = _parse_mode(self._mode)
            if mode in (Mode.COORDINATOR, Mode.STANDALONE):
                self._init_datastore()
            threading.Thread(
                target=self._await_termination, name="engine-shutdown", daemon=True
            ).start()
            self._state = State.RUNNING

    def _await_termination(self) -> None:
        self._terminate_requested.wait()
        logger.debug("shutting down")
        self._terminated.set()

    def terminate(self) -> None:
        """Stop a running engine and wait for it to shut down."""
        with self._lock:
            self._must_state(State.RUNNING)
            self._state = State.TERMINATING
            logger.debug("Terminating engine")
            self._terminate_requested.set()
            self._terminated.wait()
            self._state = State.TERMINATED

    def run(self) -> None:
        """Start the engine and block until it terminates or is interrupted."""
        self.start()
        try:
            while not self._terminated.wait(0.2):
                pass
        except KeyboardInterrupt:
            self._terminate_requested.set()
            self._terminated.wait()


_DEFAULT_ENGINE = Engine()


def default_engine() -> Engine:
    """The process-wide engine."""
    return _DEFAULT_ENGINE