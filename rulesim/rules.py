"""Declarative rule specifications for model kinds.

A model kind is described by a table of event rules. Each rule names an
*event expression* (a transition routine), the parameters it takes, and its
routine: state transitions applied in order, events it schedules, and events
it cancels. The wire format of a single rule is::

    {
      "event_expression": "release_job",
      "event_parameters": [],
      "event_routine": {
        "state_transitions": [
          ["self.state.phase", "Phase::Generating"],
          ["self.state.jobs", "[]", "self.state.phase == Phase::Passive"]
        ],
        "scheduling": [
          {"event_expression_target": "events_int",
           "parameters": [],
           "condition": null,
           "delay": null}
        ],
        "cancelling": [],
        "outputs": [{"port": "job", "payload": "first(self.state.jobs)"}],
        "records": [{"action": "release", "subject": "self.state.last_job"}]
      }
    }

The ``outputs`` and ``records`` routine keys are optional. A state
transition may carry a third element, a condition checked just before the
assignment is applied (it sees the transitions applied before it).

A :class:`ModelSpec` wraps the rules of a model kind together with its
phases, initial state, instance parameters, time advance, and ports.

The classes in this module only describe and validate structure. Expression
texts are compiled by :mod:`rulesim.compiler`.

"""
from typing import Any, Dict, IO, Mapping, NamedTuple, Optional, Sequence, Tuple, Union
import json
import os

import yaml


class RuleSpecError(Exception):
    """Rule specification data is structurally invalid."""


def _expression_text(value: Any, where: str, optional: bool = False) -> Optional[str]:
    if value is None:
        if optional:
            return None
        raise RuleSpecError(f'{where}: expression is required')
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return value
    raise RuleSpecError(f'{where}: expected expression text, got {value!r}')


def _sequence(value: Any, where: str) -> Sequence[Any]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise RuleSpecError(f'{where}: expected a list, got {value!r}')
    return value


def _mapping(value: Any, where: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise RuleSpecError(f'{where}: expected a mapping, got {value!r}')
    return value


def _name(value: Any, where: str) -> str:
    if not isinstance(value, str) or not value:
        raise RuleSpecError(f'{where}: expected a name, got {value!r}')
    return value


class EventEdge(NamedTuple):
    """A scheduling or cancelling entry of an event routine."""

    target: str
    parameters: Tuple[str, ...] = ()
    condition: Optional[str] = None
    delay: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], where: str = 'edge') -> 'EventEdge':
        data = _mapping(data, where)
        if 'event_expression_target' not in data:
            raise RuleSpecError(f'{where}: missing "event_expression_target"')
        return cls(
            target=_name(data['event_expression_target'], where),
            parameters=tuple(
                _expression_text(p, f'{where} parameter')
                for p in _sequence(data.get('parameters'), f'{where} parameters')
            ),
            condition=_expression_text(data.get('condition'), where, optional=True),
            delay=_expression_text(data.get('delay'), where, optional=True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_expression_target': self.target,
            'parameters': list(self.parameters),
            'condition': self.condition,
            'delay': self.delay,
        }


class EventOutput(NamedTuple):
    """A message produced by a routine's output function."""

    port: str
    payload: str
    condition: Optional[str] = None
    each: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], where: str = 'output') -> 'EventOutput':
        data = _mapping(data, where)
        return cls(
            port=_name(data.get('port'), f'{where} port'),
            payload=_expression_text(data.get('payload'), f'{where} payload'),
            condition=_expression_text(data.get('condition'), where, optional=True),
            each=bool(data.get('each', False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'port': self.port,
            'payload': self.payload,
            'condition': self.condition,
            'each': self.each,
        }


class StateTransition(NamedTuple):
    """A state field assignment, applied only when `condition` holds.

    On the wire a transition is ``[target, value]`` or
    ``[target, value, condition]``.

    """

    target: str
    value: str
    condition: Optional[str] = None

    @classmethod
    def from_wire(cls, data: Any, where: str = 'state_transition') -> 'StateTransition':
        data = _sequence(data, where)
        if len(data) not in (2, 3):
            raise RuleSpecError(
                f'{where}: expected [target, value] or [target, value, condition]'
            )
        return cls(
            target=_name(data[0], where),
            value=_expression_text(data[1], where),
            condition=_expression_text(data[2], where, optional=True)
            if len(data) == 3
            else None,
        )

    def to_wire(self) -> list:
        if self.condition is None:
            return [self.target, self.value]
        return [self.target, self.value, self.condition]


class EventRecord(NamedTuple):
    """An explicit record emitted by a routine."""

    action: str
    subject: Optional[str] = None
    condition: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], where: str = 'record') -> 'EventRecord':
        data = _mapping(data, where)
        return cls(
            action=_name(data.get('action'), f'{where} action'),
            subject=_expression_text(data.get('subject'), where, optional=True),
            condition=_expression_text(data.get('condition'), where, optional=True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action,
            'subject': self.subject,
            'condition': self.condition,
        }


class EventRoutine(NamedTuple):
    state_transitions: Tuple[StateTransition, ...] = ()
    scheduling: Tuple[EventEdge, ...] = ()
    cancelling: Tuple[EventEdge, ...] = ()
    outputs: Tuple[EventOutput, ...] = ()
    #: None means "emit the default record".
    records: Optional[Tuple[EventRecord, ...]] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], where: str = 'routine') -> 'EventRoutine':
        data = _mapping(data, where)
        records = data.get('records')
        return cls(
            state_transitions=tuple(
                StateTransition.from_wire(transition, f'{where} state_transitions[{i}]')
                for i, transition in enumerate(
                    _sequence(data.get('state_transitions'), where)
                )
            ),
            scheduling=tuple(
                EventEdge.from_dict(edge, f'{where} scheduling[{i}]')
                for i, edge in enumerate(_sequence(data.get('scheduling'), where))
            ),
            cancelling=tuple(
                EventEdge.from_dict(edge, f'{where} cancelling[{i}]')
                for i, edge in enumerate(_sequence(data.get('cancelling'), where))
            ),
            outputs=tuple(
                EventOutput.from_dict(output, f'{where} outputs[{i}]')
                for i, output in enumerate(_sequence(data.get('outputs'), where))
            ),
            records=None
            if records is None
            else tuple(
                EventRecord.from_dict(record, f'{where} records[{i}]')
                for i, record in enumerate(_sequence(records, where))
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'state_transitions': [
                transition.to_wire() for transition in self.state_transitions
            ],
            'scheduling': [edge.to_dict() for edge in self.scheduling],
            'cancelling': [edge.to_dict() for edge in self.cancelling],
        }
        if self.outputs:
            data['outputs'] = [output.to_dict() for output in self.outputs]
        if self.records is not None:
            data['records'] = [record.to_dict() for record in self.records]
        return data


class EventRule(NamedTuple):
    """One event expression: its name, parameters, and routine."""

    expression: str
    parameters: Tuple[str, ...] = ()
    routine: EventRoutine = EventRoutine()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'EventRule':
        data = _mapping(data, 'rule')
        if 'event_expression' not in data:
            raise RuleSpecError(f'rule: missing "event_expression" in {data!r}')
        expression = _name(data['event_expression'], 'rule')
        where = f'rule "{expression}"'
        parameters = tuple(
            _name(p, f'{where} event_parameters')
            for p in _sequence(data.get('event_parameters'), where)
        )
        if len(set(parameters)) != len(parameters):
            raise RuleSpecError(f'{where}: duplicate event parameter')
        routine = data.get('event_routine')
        return cls(
            expression=expression,
            parameters=parameters,
            routine=EventRoutine()
            if routine is None
            else EventRoutine.from_dict(routine, where),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_expression': self.expression,
            'event_parameters': list(self.parameters),
            'event_routine': self.routine.to_dict(),
        }


class ModelSpec(NamedTuple):
    """Everything needed to compile one model kind.

    `state` and `parameters` are ordered ``(name, value)`` pairs. String
    state values are expression texts evaluated when a model instance is
    created; other values are copied as-is. `in_ports`/`out_ports` of None
    mean the model does not declare its ports and any port name is accepted.

    """

    name: str
    rules: Tuple[EventRule, ...]
    enums: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    state: Tuple[Tuple[str, Any], ...] = ()
    parameters: Tuple[Tuple[str, Any], ...] = ()
    time_advance: str = 'self.state.until_next_event'
    timing_fields: Tuple[str, ...] = ()
    in_ports: Optional[Tuple[str, ...]] = None
    out_ports: Optional[Tuple[str, ...]] = None
    internal: str = 'events_int'
    external: str = 'events_ext'
    confluent: str = 'events_con'
    status: Tuple[Tuple[str, str], ...] = ()

    def rule(self, expression: str) -> Optional[EventRule]:
        for rule in self.rules:
            if rule.expression == expression:
                return rule
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ModelSpec':
        """Build a :class:`ModelSpec` from its wire representation.

        The ``phases`` key is either a list of variant names (an enum named
        ``Phase``) or a mapping of enum names to variant lists.

        """
        data = _mapping(data, 'model')
        name = _name(data.get('name'), 'model name')
        where = f'model "{name}"'
        phases = data.get('phases', ())
        if isinstance(phases, Mapping):
            enums = tuple(
                (
                    _name(enum_name, where),
                    tuple(_name(v, where) for v in _sequence(variants, where)),
                )
                for enum_name, variants in phases.items()
            )
        else:
            variants = tuple(_name(v, where) for v in _sequence(phases, where))
            enums = (('Phase', variants),) if variants else ()
        ports = _mapping(data.get('ports', {}), f'{where} ports')
        in_ports = ports.get('in')
        out_ports = ports.get('out')
        kwargs: Dict[str, Any] = {}
        for key in ['internal', 'external', 'confluent']:
            if key in data:
                kwargs[key] = _name(data[key], f'{where} {key}')
        if 'time_advance' in data:
            kwargs['time_advance'] = _expression_text(data['time_advance'], where)
        return cls(
            name=name,
            rules=tuple(
                EventRule.from_dict(rule) for rule in _sequence(data.get('rules'), where)
            ),
            enums=enums,
            state=tuple(_mapping(data.get('state', {}), f'{where} state').items()),
            parameters=tuple(
                _mapping(data.get('parameters', {}), f'{where} parameters').items()
            ),
            timing_fields=tuple(
                _name(f, where) for f in _sequence(data.get('timing_fields'), where)
            ),
            in_ports=None
            if in_ports is None
            else tuple(_name(p, where) for p in _sequence(in_ports, where)),
            out_ports=None
            if out_ports is None
            else tuple(_name(p, where) for p in _sequence(out_ports, where)),
            status=tuple(_mapping(data.get('status', {}), f'{where} status').items()),
            **kwargs,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'name': self.name,
            'phases': {name: list(variants) for name, variants in self.enums},
            'state': dict(self.state),
            'parameters': dict(self.parameters),
            'time_advance': self.time_advance,
            'timing_fields': list(self.timing_fields),
            'internal': self.internal,
            'external': self.external,
            'confluent': self.confluent,
            'rules': [rule.to_dict() for rule in self.rules],
        }
        ports = {}
        if self.in_ports is not None:
            ports['in'] = list(self.in_ports)
        if self.out_ports is not None:
            ports['out'] = list(self.out_ports)
        if ports:
            data['ports'] = ports
        if self.status:
            data['status'] = dict(self.status)
        return data


RuleData = Union[ModelSpec, Sequence[EventRule]]


def _read(filename: str) -> Any:
    _, ext = os.path.splitext(filename)
    with open(filename) as rule_file:
        if ext in ['.yaml', '.yml']:
            return yaml.safe_load(rule_file)
        elif ext == '.json':
            return json.load(rule_file)
    raise ValueError(f'Invalid extension: {ext}')


def load_rules(filename: str) -> Tuple[EventRule, ...]:
    """Load a list of event rules from a JSON or YAML file.

    The file holds either a list of rules or a model specification, in which
    case its ``rules`` are returned.

    """
    data = _read(filename)
    if isinstance(data, Mapping):
        data = data.get('rules')
    return tuple(EventRule.from_dict(rule) for rule in _sequence(data, filename))


def load_model_spec(filename: str) -> ModelSpec:
    """Load a :class:`ModelSpec` from a JSON or YAML file."""
    return ModelSpec.from_dict(_read(filename))


def dump_rules(rules: RuleData, dump_file: Union[str, IO[str]], fmt: str = 'json') -> None:
    """Write a model specification or list of rules as JSON or YAML.

    :param rules: A :class:`ModelSpec` or sequence of :class:`EventRule`.
    :param dump_file:
        Filename (the format follows its extension) or a writable stream.
    :param str fmt: Format used for streams; 'json' or 'yaml'.

    """
    if isinstance(rules, ModelSpec):
        data: Any = rules.to_dict()
    else:
        data = [rule.to_dict() for rule in rules]
    if isinstance(dump_file, str):
        _, ext = os.path.splitext(dump_file)
        if ext not in ['.yaml', '.yml', '.json']:
            raise ValueError(f'Invalid extension: {ext}')
        with open(dump_file, 'w') as stream:
            _write(data, stream, 'json' if ext == '.json' else 'yaml')
    else:
        _write(data, dump_file, fmt)


def _write(data: Any, stream: IO[str], fmt: str) -> None:
    if fmt == 'yaml':
        yaml.safe_dump(data, stream=stream, sort_keys=False)
    elif fmt == 'json':
        json.dump(data, stream, indent=2)
    else:
        raise ValueError(f'Invalid format: {fmt}')

