"""Simulation driver with batteries included.

A :class:`SimEnvironment` is the single context object of one simulation run:
configuration, seeded random number generator, event scheduler (and clock),
record sink, and tracers. A :class:`Simulation` executes compiled models in
that environment one event at a time. :func:`simulate()` wraps the whole
lifecycle: workspace, tracing, running, and result/config file dumps.

"""
from contextlib import closing
from pprint import pprint
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Type,
)
import json
import math
import os
import random
import shutil
import timeit

import simpy
import yaml

from .compiler import CONFLUENT_POLICIES, AtomicModel, TransitionKind
from .config import ConfigError
from .router import ConnectError, ConnectorData, Message, RoutedMessage, Router
from .scheduler import EventScheduler, ScheduledEvent, SchedulingError
from .tracer import TraceManager

ResultDict = Dict[str, Any]


class ModelNotFound(Exception):
    """No model with the requested id takes part in the simulation."""


class Record(NamedTuple):
    """Immutable telemetry tuple describing an observed transition."""

    time: float
    action: str
    subject: Any
    model_id: str = ''


class RecordSink:
    """Append-only record sequence with per-step staging.

    Records produced during a step are staged and only become visible when
    the step commits; a failed step rolls them back.

    """

    def __init__(self, env: 'SimEnvironment') -> None:
        self._records: List[Record] = []
        self._staged: List[Record] = []
        self._trace = env.tracemgr.get_trace_function(
            'sim.records', log={'level': 'RECORD'}
        )
        self._persist = env.tracemgr.get_trace_function(
            'sim.records', db={'record': True}
        )

    def stage(self, time: float, action: str, subject: Any, model_id: str = '') -> Record:
        record = Record(time, action, subject, model_id)
        self._staged.append(record)
        return record

    def commit(self) -> None:
        for record in self._staged:
            self._trace(record.model_id, record.action, record.subject)
            self._persist(record)
        self._records.extend(self._staged)
        self._staged.clear()

    def rollback(self) -> None:
        self._staged.clear()

    def for_model(self, model_id: str) -> List[Record]:
        return [record for record in self._records if record.model_id == model_id]

    def __iter__(self) -> Iterator[Record]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index):
        return self._records[index]


class SimEnvironment(simpy.Environment):
    """Simulation Environment.

    The :class:`SimEnvironment` class is a :class:`simpy.Environment` subclass
    that adds:

     - Access to the configuration dictionary (`config`).
     - Access to a seeded pseudo-random number generator (`rand`).
     - The event scheduler that owns the clock (`scheduler`).
     - The record sink (`records`).
     - Access to the simulation duration (`duration`).

    SimEnvironment may be subclassed to share additional state with all
    models of a simulation.

    :param dict config: A fully-initialized configuration dictionary.

    """

    def __init__(self, config: Dict[str, Any]) -> None:
        super().__init__()
        #: The configuration dictionary.
        self.config = config

        #: The pseudo-random number generator; an instance of
        #: :class:`random.Random`.
        self.rand = random.Random()
        seed = config.setdefault('sim.seed', None)
        self.rand.seed(seed, version=1)

        #: The intended simulation duration; models run until the last event
        #: at or before this time.
        self.duration = float(config.setdefault('sim.duration', 0))

        #: How confluent transitions are resolved for models without an
        #: explicit confluent routine.
        self.confluent_policy: str = config.setdefault(
            'sim.confluent.policy', 'external_first'
        )
        if self.confluent_policy not in CONFLUENT_POLICIES:
            raise ConfigError(
                f'sim.confluent.policy must be one of {", ".join(CONFLUENT_POLICIES)}; '
                f'got "{self.confluent_policy}"'
            )

        #: :class:`TraceManager` instance.
        self.tracemgr = TraceManager(self)

        #: :class:`EventScheduler` holding every pending event.
        self.scheduler = EventScheduler(self)

        #: :class:`RecordSink` of committed records.
        self.records = RecordSink(self)


class Simulation:
    """Step-wise execution of models connected by a static connector graph.

    Building a simulation validates the connectors and schedules every
    model's first internal event.

    :param SimEnvironment env: Environment shared by all `models`.
    :param models: Model instances; ids must be unique.
    :param connectors: :class:`~rulesim.router.Connector` records.
    :raises ValueError: For duplicate model ids or a foreign environment.
    :raises ConnectError: For invalid connectors.

    """

    def __init__(
        self,
        env: SimEnvironment,
        models: Iterable[AtomicModel],
        connectors: Iterable[ConnectorData] = (),
    ) -> None:
        self.env = env
        self.models: Dict[str, AtomicModel] = {}
        for model in models:
            if model.model_id in self.models:
                raise ValueError(f'Duplicate model id "{model.model_id}"')
            if model.env is not env:
                raise ValueError(f'Model "{model.model_id}" belongs to another env')
            self.models[model.model_id] = model
        self.router = Router(connectors, self.models)

        #: Messages delivered by the last step.
        self.messages: List[RoutedMessage] = []

        #: Number of completed steps.
        self.steps = 0

        self.info = env.tracemgr.get_trace_function('sim', log={'level': 'INFO'})
        self.debug = env.tracemgr.get_trace_function('sim', log={'level': 'DEBUG'})
        self._undelivered: bool = env.config.setdefault('sim.records.undelivered', False)

        for model in self.models.values():
            model.initialize()
        self.info(f'{len(self.models)} models, {len(self.router.connectors)} connectors')

    @property
    def current_time(self) -> float:
        return self.env.now

    @property
    def records(self):
        return self.env.records

    def model(self, model_id: str) -> AtomicModel:
        try:
            return self.models[model_id]
        except KeyError:
            raise ModelNotFound(f'No model "{model_id}"') from None

    def status(self, model_id: str) -> str:
        return self.model(model_id).status()

    def model_records(self, model_id: str) -> List[Record]:
        self.model(model_id)
        return self.env.records.for_model(model_id)

    def step(self) -> Optional[ScheduledEvent]:
        """Process the next pending event.

        :returns: The processed event, or None when no events remain.

        """
        event = self.env.scheduler.pop_next()
        if event is None:
            self.messages = []
            return None
        try:
            model = self.model(event.model_id)
            emitted = self._transition(model, event)
            delivered = self._route(model, emitted)
        except BaseException:
            self.env.records.rollback()
            raise
        self.env.records.commit()
        self.messages = delivered
        self.steps += 1
        return event

    def step_n(self, n: int) -> List[ScheduledEvent]:
        """Process up to `n` events; fewer if events run out."""
        events = []
        for _ in range(n):
            event = self.step()
            if event is None:
                break
            events.append(event)
        return events

    def step_until(self, t: float) -> List[ScheduledEvent]:
        """Process events while the next pending event is due at or before `t`."""
        events = []
        while self.env.scheduler.peek_time() <= t:
            event = self.step()
            if event is None:
                break
            events.append(event)
        return events

    def inject_input(
        self, model_id: str, port: str, payload: Any, at_time: Optional[float] = None
    ) -> ScheduledEvent:
        """Deliver exogenous input to a model's input port.

        The message is delivered at `at_time` (default: now) as if it had been
        routed, and obeys the usual event ordering.

        :raises ModelNotFound: For an unknown `model_id`.
        :raises ConnectError: For a port the model does not declare.
        :raises SchedulingError:
            If `at_time` is in the past or is not a finite time.

        """
        model = self.model(model_id)
        in_ports = model.spec.in_ports
        if in_ports is not None and port not in in_ports:
            raise ConnectError(f'{model_id} has no input port "{port}"')
        message = Message(port, payload)
        time = self.env.now if at_time is None else at_time
        if not math.isfinite(time):
            raise SchedulingError(f'Cannot inject input for {model_id} at time {time}')
        event = self.env.scheduler.schedule_at(
            time, model_id, model.external_expression, (message,), message
        )
        assert event is not None
        return event

    def _transition(self, model: AtomicModel, event: ScheduledEvent) -> List[Message]:
        scheduler = self.env.scheduler
        complement = None
        if event.message is not None:
            kind = TransitionKind.EXTERNAL
            candidates = scheduler.pending(model.model_id, model.internal_expression)
        elif event.expression == model.internal_expression:
            kind = TransitionKind.INTERNAL
            candidates = [
                e for e in scheduler.pending(model.model_id) if e.message is not None
            ]
        else:
            kind = TransitionKind.INTERNAL
            candidates = []
        for candidate in candidates:
            if candidate.scheduled_time == event.scheduled_time:
                complement = candidate
                break

        if complement is not None:
            scheduler.discard(complement)
            kind = TransitionKind.CONFLUENT
            message = event.message if event.message is not None else complement.message
            self.debug(kind.value, model.model_id, message)
            emitted = model.output()
            model.confluent_transition(message, self.env.confluent_policy)
        elif kind is TransitionKind.EXTERNAL:
            self.debug(kind.value, model.model_id, event.message)
            emitted = []
            model.external_transition(event.message)
        else:
            self.debug(kind.value, model.model_id, event.expression)
            emitted = model.output(event.expression, event.parameters)
            model.internal_transition(event.expression, event.parameters)
        return emitted

    def _route(self, model: AtomicModel, emitted: Sequence[Message]) -> List[RoutedMessage]:
        delivered = []
        for message in emitted:
            routed = self.router.route(model.model_id, message, self.env.now)
            if not routed and self._undelivered:
                self.env.records.stage(
                    self.env.now, 'undelivered', message.port, model.model_id
                )
            for routed_message in routed:
                target = self.model(routed_message.target_id)
                target_message = Message(routed_message.target_port, routed_message.payload)
                self.env.scheduler.schedule(
                    target.model_id,
                    target.external_expression,
                    (target_message,),
                    0,
                    target_message,
                )
                delivered.append(routed_message)
        return delivered


class _Workspace:
    """Context manager for workspace directory management."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.workspace: str = config.setdefault('sim.workspace', os.curdir)
        self.overwrite: bool = config.setdefault('sim.workspace.overwrite', False)
        self.prev_dir = os.getcwd()

    def __enter__(self) -> None:
        if os.path.relpath(self.workspace) != os.curdir:
            workspace_exists = os.path.isdir(self.workspace)
            if self.overwrite and workspace_exists:
                shutil.rmtree(self.workspace)
            if self.overwrite or not workspace_exists:
                os.makedirs(self.workspace)
            os.chdir(self.workspace)

    def __exit__(self, *exc) -> None:
        os.chdir(self.prev_dir)


BuildFunction = Callable[[SimEnvironment], Iterable[AtomicModel]]


def simulate(
    config: Dict[str, Any],
    build: BuildFunction,
    connectors: Iterable[ConnectorData] = (),
    env_type: Type[SimEnvironment] = SimEnvironment,
    reraise: bool = True,
) -> ResultDict:
    """Initialize, build, and run a simulation.

    All exceptions are caught by `simulate()` so they can be logged and
    captured in the result file. By default, any unhandled exception caught by
    `simulate()` will be re-raised. Setting `reraise` to False prevents
    exceptions from propagating to the caller. Instead, the returned result
    dict will indicate if an exception occurred via the 'sim.exception' item.

    :param dict config: Configuration dictionary for the simulation.
    :param build:
        Function called with the environment; returns the model instances.
    :param connectors: Static connector graph.
    :param env_type: :class:`SimEnvironment` subclass.
    :param bool reraise: Should unhandled exceptions propagate to the caller.
    :returns: Dictionary containing the results of the simulation.

    """
    t0 = timeit.default_timer()
    result: ResultDict = {}
    result_file = config.setdefault('sim.result.file')
    config_file = config.setdefault('sim.config.file')
    try:
        with _Workspace(config):
            env = env_type(config)
            sim: Optional[Simulation] = None
            with closing(env.tracemgr):
                try:
                    sim = Simulation(env, build(env), connectors)
                    env.tracemgr.flush()
                    sim.step_until(env.duration)
                    env.tracemgr.flush()
                    result['sim.status'] = {
                        model_id: model.status() for model_id, model in sim.models.items()
                    }
                except BaseException as e:
                    env.tracemgr.trace_exception()
                    result['sim.exception'] = repr(e)
                    raise
                else:
                    result['sim.exception'] = None
                finally:
                    env.tracemgr.flush()
                    result['config'] = config
                    result['sim.now'] = env.now
                    result['sim.steps'] = 0 if sim is None else sim.steps
                    result['sim.records'] = [
                        dict(record._asdict()) for record in env.records
                    ]
                    result['sim.runtime'] = timeit.default_timer() - t0
                    _dump_dict(config_file, config)
                    _dump_dict(result_file, result)
    except BaseException as e:
        if reraise:
            raise
        result.setdefault('config', config)
        result.setdefault('sim.runtime', timeit.default_timer() - t0)
        if result.get('sim.exception') is None:
            result['sim.exception'] = repr(e)
    return result


def _dump_dict(filename: Optional[str], dump_dict: Dict[str, Any]) -> None:
    if filename is not None:
        _, ext = os.path.splitext(filename)
        if ext not in ['.yaml', '.yml', '.json', '.py']:
            raise ValueError(f'Invalid extension: {ext}')
        with open(filename, 'w') as dump_file:
            if ext in ['.yaml', '.yml']:
                yaml.safe_dump(dump_dict, stream=dump_file)
            elif ext == '.json':
                json.dump(dump_dict, dump_file, sort_keys=True, indent=2)
            else:
                assert ext == '.py'
                pprint(dump_dict, stream=dump_file)
