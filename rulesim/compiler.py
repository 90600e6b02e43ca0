"""Compile rule specifications into DEVS atomic models.

:func:`compile_model()` turns a :class:`~rulesim.rules.ModelSpec` into an
:class:`AtomicModel` subclass. All expression texts are parsed, compiled, and
name-checked once, here; model instances only call the compiled closures.

Each event expression becomes a routine that, when its event fires:

 1. applies its state transitions in order, each seeing the previous ones
    and each skipped when its condition is false;
 2. evaluates the conditions, delays, and parameters of its scheduling
    entries and the conditions of its cancelling entries against the updated
    state;
 3. cancels the matching events that were pending before the routine ran;
 4. schedules the new events at ``now + delay``.

The DEVS entry points map onto routines: :meth:`AtomicModel.output` is the
output function (λ) of a routine, :meth:`AtomicModel.internal_transition`
(δint) runs a routine without a message, and
:meth:`AtomicModel.external_transition` (δext) runs the external routine with
the arriving message. :meth:`AtomicModel.confluent_transition` (δcon) runs the
model's explicit confluent routine if it has one, otherwise δext then δint
(``external_first``) or δint then δext (``internal_first``).

"""
from enum import Enum
from types import SimpleNamespace
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Set,
    Tuple,
    Type,
    Union,
)
import copy
import math

from .expression import (
    Assignment,
    CompiledExpression,
    EnumVariant,
    EvalContext,
    FieldRef,
    MalformedExpression,
    compile_assignment,
    compile_expression,
    walk,
)
from .router import Message
from .rules import EventEdge, EventRule, ModelSpec, RuleSpecError

if TYPE_CHECKING:
    from .simulation import SimEnvironment

CONFLUENT_POLICIES = ('external_first', 'internal_first')


class UnknownEventTarget(Exception):
    """A scheduling or cancelling entry names an undefined event expression."""

    def __init__(self, model_kind: str, target: str) -> None:
        self.model_kind = model_kind
        self.target = target
        super().__init__(f'{model_kind}: unknown event expression "{target}"')


class InvalidDelay(Exception):
    """A delay or time advance evaluated to a negative or non-numeric value."""

    def __init__(self, model_id: str, target: str, delay: Any) -> None:
        self.model_id = model_id
        self.target = target
        self.delay = delay
        super().__init__(f'{model_id}: invalid delay {delay!r} for "{target}"')


class TransitionKind(Enum):
    INTERNAL = 'internal'
    EXTERNAL = 'external'
    CONFLUENT = 'confluent'


class ModelState(SimpleNamespace):
    """Attribute bag holding one model instance's state fields."""

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(vars(self))


class CompiledEdge(NamedTuple):
    target: str
    parameters: Tuple[CompiledExpression, ...]
    condition: Optional[CompiledExpression]
    delay: Optional[CompiledExpression]


class CompiledOutput(NamedTuple):
    port: str
    payload: CompiledExpression
    condition: Optional[CompiledExpression]
    each: bool


class CompiledRecord(NamedTuple):
    action: str
    subject: Optional[CompiledExpression]
    condition: Optional[CompiledExpression]


class CompiledTransition(NamedTuple):
    assignment: Assignment
    condition: Optional[CompiledExpression]


class CompiledRoutine(NamedTuple):
    expression: str
    parameters: Tuple[str, ...]
    transitions: Tuple[CompiledTransition, ...]
    scheduling: Tuple[CompiledEdge, ...]
    cancelling: Tuple[CompiledEdge, ...]
    outputs: Tuple[CompiledOutput, ...]
    records: Optional[Tuple[CompiledRecord, ...]]


class _NameChecker:
    """Reject references to names a model kind does not define."""

    def __init__(self, spec: ModelSpec, enums: Mapping[str, Type[Enum]]) -> None:
        self.spec = spec
        self.enums = enums
        self.state_fields = {name for name, _ in spec.state}
        self.parameters = {name for name, _ in spec.parameters}

    def check(
        self,
        compiled: CompiledExpression,
        bindings: Sequence[str],
        where: str,
        state_fields: Optional[Set[str]] = None,
    ) -> CompiledExpression:
        if state_fields is None:
            state_fields = self.state_fields
        for node in walk(compiled.node):
            if isinstance(node, EnumVariant):
                enum_type = self.enums.get(node.enum)
                if enum_type is None or node.variant not in enum_type.__members__:
                    raise MalformedExpression(
                        compiled.text,
                        f'{where}: unknown enum variant {node.enum}::{node.variant}',
                    )
            elif isinstance(node, FieldRef):
                self._check_field(compiled, node.path, bindings, where, state_fields)
        return compiled

    def _check_field(self, compiled, path, bindings, where, state_fields) -> None:
        root = path[0]
        if root == 'now':
            return
        if root == 'self':
            if path[1] == 'state':
                if len(path) < 3:
                    reason = '"self.state" must be followed by a field name'
                elif path[2] not in state_fields:
                    reason = f'unknown state field "{path[2]}"'
                else:
                    return
            elif path[1] not in self.parameters:
                reason = f'unknown parameter "self.{path[1]}"'
            else:
                return
        elif root in bindings:
            return
        else:
            reason = f'unknown name "{root}"'
        raise MalformedExpression(compiled.text, f'{where}: {reason}')


def _optional(
    text: Optional[str],
    checker: _NameChecker,
    bindings: Sequence[str],
    where: str,
) -> Optional[CompiledExpression]:
    if text is None:
        return None
    return checker.check(compile_expression(text), bindings, where)


def _compile_edge(
    edge: EventEdge,
    rules: Mapping[str, EventRule],
    spec: ModelSpec,
    checker: _NameChecker,
    bindings: Sequence[str],
    where: str,
    cancelling: bool,
) -> CompiledEdge:
    target_rule = rules.get(edge.target)
    if target_rule is None:
        raise UnknownEventTarget(spec.name, edge.target)
    if cancelling:
        parameters: Tuple[CompiledExpression, ...] = ()
    else:
        if len(edge.parameters) != len(target_rule.parameters):
            raise RuleSpecError(
                f'{where}: "{edge.target}" takes {len(target_rule.parameters)} '
                f'parameter(s), {len(edge.parameters)} given'
            )
        parameters = tuple(
            checker.check(compile_expression(p), bindings, where)
            for p in edge.parameters
        )
    return CompiledEdge(
        target=edge.target,
        parameters=parameters,
        condition=_optional(edge.condition, checker, bindings, where),
        delay=None if cancelling else _optional(edge.delay, checker, bindings, where),
    )


def _compile_routine(
    rule: EventRule,
    rules: Mapping[str, EventRule],
    spec: ModelSpec,
    checker: _NameChecker,
) -> CompiledRoutine:
    where = f'{spec.name}.{rule.expression}'
    bindings = rule.parameters
    routine = rule.routine

    transitions = []
    for transition in routine.state_transitions:
        assignment = compile_assignment(transition.target, transition.value)
        if assignment.path[2] not in checker.state_fields:
            raise MalformedExpression(
                transition.target,
                f'{where}: unknown state field "{assignment.path[2]}"',
            )
        checker.check(assignment.value, bindings, where)
        transitions.append(
            CompiledTransition(
                assignment, _optional(transition.condition, checker, bindings, where)
            )
        )

    outputs = []
    for output in routine.outputs:
        if spec.out_ports is not None and output.port not in spec.out_ports:
            raise RuleSpecError(f'{where}: undeclared output port "{output.port}"')
        outputs.append(
            CompiledOutput(
                port=output.port,
                payload=checker.check(
                    compile_expression(output.payload), bindings, where
                ),
                condition=_optional(output.condition, checker, bindings, where),
                each=output.each,
            )
        )

    records = None
    if routine.records is not None:
        records = tuple(
            CompiledRecord(
                action=record.action,
                subject=_optional(record.subject, checker, bindings, where),
                condition=_optional(record.condition, checker, bindings, where),
            )
            for record in routine.records
        )

    return CompiledRoutine(
        expression=rule.expression,
        parameters=rule.parameters,
        transitions=tuple(transitions),
        scheduling=tuple(
            _compile_edge(edge, rules, spec, checker, bindings, where, False)
            for edge in routine.scheduling
        ),
        cancelling=tuple(
            _compile_edge(edge, rules, spec, checker, bindings, where, True)
            for edge in routine.cancelling
        ),
        outputs=tuple(outputs),
        records=records,
    )


def compile_model(spec: Union[ModelSpec, Mapping[str, Any]]) -> Type['AtomicModel']:
    """Compile a model kind's rule specification.

    The returned :class:`AtomicModel` subclass is named after the model kind
    and is instantiated as ``Kind(env, model_id, **parameters)``.

    :param spec: A :class:`ModelSpec` or its wire (dict) representation.
    :raises RuleSpecError: For structural problems in the specification.
    :raises UnknownEventTarget:
        If a scheduling or cancelling entry names an undefined event
        expression.
    :raises MalformedExpression:
        If any expression does not parse or names an unknown field,
        parameter, or enum variant.

    """
    if not isinstance(spec, ModelSpec):
        spec = ModelSpec.from_dict(spec)

    enums: Dict[str, Type[Enum]] = {
        name: Enum(name, list(variants)) for name, variants in spec.enums  # type: ignore
    }
    checker = _NameChecker(spec, enums)

    rules: Dict[str, EventRule] = {}
    for rule in spec.rules:
        if rule.expression in rules:
            raise RuleSpecError(f'{spec.name}: duplicate rule "{rule.expression}"')
        rules[rule.expression] = rule

    for name in [spec.internal, spec.external]:
        if name not in rules:
            raise RuleSpecError(f'{spec.name}: missing rule "{name}"')
    if rules[spec.internal].parameters:
        raise RuleSpecError(f'{spec.name}: "{spec.internal}" takes no parameters')
    for name in [spec.external, spec.confluent]:
        if name in rules:
            if len(rules[name].parameters) != 1:
                raise RuleSpecError(
                    f'{spec.name}: "{name}" takes exactly one (message) parameter'
                )
            if rules[name].routine.outputs:
                raise RuleSpecError(f'{spec.name}: "{name}" cannot produce output')
    for field in spec.timing_fields:
        if field not in checker.state_fields:
            raise RuleSpecError(f'{spec.name}: unknown timing field "{field}"')

    routines = {
        name: _compile_routine(rule, rules, spec, checker) for name, rule in rules.items()
    }

    state_init: List[Tuple[str, Any]] = []
    defined: Set[str] = set()
    for name, value in spec.state:
        if isinstance(value, str):
            value = checker.check(
                compile_expression(value), (), f'{spec.name} state "{name}"', defined
            )
        state_init.append((name, value))
        defined.add(name)

    time_advance = checker.check(
        compile_expression(spec.time_advance), (), f'{spec.name} time_advance'
    )

    namespace = {
        '__doc__': f'Atomic model compiled from the "{spec.name}" rules.',
        'spec': spec,
        'enums': enums,
        'routines': routines,
        '_state_init': tuple(state_init),
        '_time_advance': time_advance,
        '_status': dict(spec.status),
    }
    return type(spec.name, (AtomicModel,), namespace)


def _is_delay(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and not math.isnan(value)
        and value >= 0
    )


class AtomicModel:
    """A DEVS atomic model executing compiled event routines.

    Subclasses are produced by :func:`compile_model()`; this class is not
    meant to be instantiated directly.

    :param SimEnvironment env: Simulation environment.
    :param str model_id: Unique id of the model instance.
    :param parameters: Instance parameters overriding the kind's defaults.

    """

    spec: ModelSpec
    enums: Dict[str, Type[Enum]] = {}
    routines: Dict[str, CompiledRoutine] = {}
    _state_init: Tuple[Tuple[str, Any], ...] = ()
    _time_advance: CompiledExpression
    _status: Dict[str, str] = {}

    def __init__(self, env: 'SimEnvironment', model_id: str, **parameters: Any) -> None:
        self.env = env
        self.model_id = model_id
        #: Trace scope of the model.
        self.scope = model_id

        known = [name for name, _ in self.spec.parameters]
        unknown = sorted(set(parameters) - set(known))
        if unknown:
            raise TypeError(
                f'{self.spec.name}() got unexpected parameter(s): {", ".join(unknown)}'
            )
        #: Instance parameters, readable in expressions as ``self.<name>``.
        self.parameters: Dict[str, Any] = {
            name: parameters.get(name, default) for name, default in self.spec.parameters
        }

        #: The model's :class:`ModelState`.
        self.state = ModelState()
        ctx = self._context()
        for name, value in self._state_init:
            if isinstance(value, CompiledExpression):
                value = value(ctx)
            else:
                value = copy.deepcopy(value)
            setattr(self.state, name, value)

        #: Simulation time of the model's last transition.
        self.last_transition_time: float = env.now

        tracemgr = env.tracemgr
        #: Log an error message.
        self.error = tracemgr.get_trace_function(model_id, log={'level': 'ERROR'})
        #: Log a warning message.
        self.warn = tracemgr.get_trace_function(model_id, log={'level': 'WARNING'})
        #: Log an informative message.
        self.info = tracemgr.get_trace_function(model_id, log={'level': 'INFO'})
        #: Log a debug message.
        self.debug = tracemgr.get_trace_function(model_id, log={'level': 'DEBUG'})
        self._trace_phase = tracemgr.get_trace_function(
            f'{model_id}.phase',
            vcd={'var_type': 'string', 'init': self.phase_name},
            db={},
        )
        self._trace_sigma = tracemgr.get_trace_function(
            f'{model_id}.sigma',
            vcd={'var_type': 'real', 'init': float(self.time_advance())},
            db={},
        )

    def __repr__(self) -> str:
        return f'<{self.spec.name} {self.model_id}>'

    @property
    def internal_expression(self) -> str:
        return self.spec.internal

    @property
    def external_expression(self) -> str:
        return self.spec.external

    @property
    def phase_name(self) -> str:
        phase = getattr(self.state, 'phase', None)
        return phase.name if isinstance(phase, Enum) else str(phase)

    def _context(self, bindings: Optional[Mapping[str, Any]] = None) -> EvalContext:
        return EvalContext(
            self.state,
            attributes=self.parameters,
            bindings=bindings,
            now=self.env.now,
            sigma=self.time_advance,
            enums=self.enums,
            rand=self.env.rand,
        )

    def time_advance(self) -> float:
        """Delay until the next autonomous internal event (ta)."""
        ctx = EvalContext(
            self.state,
            attributes=self.parameters,
            now=self.env.now,
            enums=self.enums,
            rand=self.env.rand,
        )
        sigma = self._time_advance(ctx)
        if not _is_delay(sigma):
            raise InvalidDelay(self.model_id, 'time_advance', sigma)
        return sigma

    def status(self) -> str:
        """Human-readable status derived from the current phase."""
        name = self.phase_name
        return self._status.get(name, name)

    def initialize(self) -> None:
        """Schedule the first internal event at ``now + ta()``."""
        self.env.scheduler.schedule(
            self.model_id, self.spec.internal, (), self.time_advance()
        )

    def output(
        self, expression: Optional[str] = None, parameters: Sequence[Any] = ()
    ) -> List[Message]:
        """Output function (λ) of routine `expression`.

        Evaluated against the current state, i.e. before the routine's state
        transitions. Defaults to the internal event expression.

        """
        routine = self._routine(expression or self.spec.internal, parameters)
        ctx = self._context(dict(zip(routine.parameters, parameters)))
        messages = []
        for output in routine.outputs:
            if output.condition is None or output.condition(ctx):
                payload = output.payload(ctx)
                if output.each:
                    messages.extend(Message(output.port, item) for item in payload)
                else:
                    messages.append(Message(output.port, payload))
        return messages

    def internal_transition(
        self, expression: Optional[str] = None, parameters: Sequence[Any] = ()
    ) -> None:
        """Internal transition (δint): run routine `expression` without a message."""
        self._execute(expression or self.spec.internal, parameters)

    def external_transition(self, message: Message, elapsed: Optional[float] = None) -> None:
        """External transition (δext) for an arriving `message`.

        `elapsed` defaults to the time since the model's last transition.

        """
        if elapsed is not None:
            self.last_transition_time = self.env.now - elapsed
        self._execute(self.spec.external, (message,))

    def confluent_transition(self, message: Message, policy: str = 'external_first') -> None:
        """Confluent transition (δcon) for a message arriving as ta elapses."""
        if self.spec.confluent in self.routines:
            self._execute(self.spec.confluent, (message,))
        elif policy == 'external_first':
            self._execute(self.spec.external, (message,))
            self._execute(self.spec.internal, ())
        elif policy == 'internal_first':
            self._execute(self.spec.internal, ())
            self._execute(self.spec.external, (message,))
        else:
            raise ValueError(f'Unknown confluent policy "{policy}"')

    def _routine(self, expression: str, parameters: Sequence[Any]) -> CompiledRoutine:
        try:
            routine = self.routines[expression]
        except KeyError:
            raise UnknownEventTarget(self.spec.name, expression) from None
        if len(parameters) != len(routine.parameters):
            raise TypeError(
                f'{self.model_id}.{expression} takes {len(routine.parameters)} '
                f'parameter(s), {len(parameters)} given'
            )
        return routine

    def _advance_timing(self) -> None:
        elapsed = self.env.now - self.last_transition_time
        self.last_transition_time = self.env.now
        if not elapsed:
            return
        for field in self.spec.timing_fields:
            value = getattr(self.state, field)
            if math.isclose(value, elapsed, rel_tol=1e-9, abs_tol=1e-12):
                value = 0.0
            else:
                value -= elapsed
            setattr(self.state, field, value)

    def _execute(self, expression: str, parameters: Sequence[Any]) -> None:
        routine = self._routine(expression, parameters)
        self._advance_timing()
        ctx = self._context(dict(zip(routine.parameters, parameters)))

        for transition in routine.transitions:
            if transition.condition is None or transition.condition(ctx):
                transition.assignment.apply(ctx, self.state)

        new_events = []
        for edge in routine.scheduling:
            if edge.condition is None or edge.condition(ctx):
                delay = ctx.sigma() if edge.delay is None else edge.delay(ctx)
                if not _is_delay(delay):
                    raise InvalidDelay(self.model_id, edge.target, delay)
                args = tuple(parameter(ctx) for parameter in edge.parameters)
                new_events.append((edge.target, args, delay))
        cancels = [
            edge.target
            for edge in routine.cancelling
            if edge.condition is None or edge.condition(ctx)
        ]
        if routine.records is None:
            records = [(expression, self.model_id)]
        else:
            records = [
                (
                    record.action,
                    self.model_id if record.subject is None else record.subject(ctx),
                )
                for record in routine.records
                if record.condition is None or record.condition(ctx)
            ]

        scheduler = self.env.scheduler
        for target in cancels:
            scheduler.cancel(self.model_id, target)
        for target, args, delay in new_events:
            scheduler.schedule(self.model_id, target, args, delay)
        for action, subject in records:
            self.env.records.stage(self.env.now, action, subject, self.model_id)

        self.debug(expression, self.phase_name)
        self._trace_phase(self.phase_name)
        self._trace_sigma(float(self.time_advance()))
