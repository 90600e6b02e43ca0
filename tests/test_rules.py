import io
import json

import pytest
import yaml

from rulesim.catalog import BATCHER, PROCESSOR
from rulesim.rules import (
    EventEdge,
    EventRecord,
    EventRule,
    ModelSpec,
    RuleSpecError,
    StateTransition,
    dump_rules,
    load_model_spec,
    load_rules,
)


@pytest.fixture
def release_job():
    return {
        'event_expression': 'release_job',
        'event_parameters': [],
        'event_routine': {
            'state_transitions': [['self.state.phase', 'Phase::Generating']],
            'scheduling': [
                {
                    'event_expression_target': 'events_int',
                    'parameters': [],
                    'condition': None,
                    'delay': None,
                }
            ],
            'cancelling': [],
        },
    }


def test_rule_from_dict(release_job):
    rule = EventRule.from_dict(release_job)
    assert rule.expression == 'release_job'
    assert rule.parameters == ()
    assert rule.routine.state_transitions == (
        StateTransition('self.state.phase', 'Phase::Generating'),
    )
    assert rule.routine.scheduling == (EventEdge('events_int'),)
    assert rule.routine.cancelling == ()
    assert rule.routine.outputs == ()
    assert rule.routine.records is None


def test_rule_to_dict(release_job):
    assert EventRule.from_dict(release_job).to_dict() == release_job


def test_conditional_state_transition(release_job):
    release_job['event_routine']['state_transitions'].append(
        ['self.state.jobs', '[]', 'self.state.phase == Phase::Passive']
    )
    rule = EventRule.from_dict(release_job)
    assert rule.routine.state_transitions[1] == StateTransition(
        'self.state.jobs', '[]', 'self.state.phase == Phase::Passive'
    )
    assert rule.routine.state_transitions[0].condition is None
    assert rule.to_dict() == release_job


def test_conditional_state_transition_scalar():
    transition = StateTransition.from_wire(['self.state.n', 1, True])
    assert transition == StateTransition('self.state.n', '1', 'true')
    assert StateTransition.from_wire(['self.state.n', 1, None]).to_wire() == [
        'self.state.n',
        '1',
    ]


def test_rule_defaults():
    rule = EventRule.from_dict({'event_expression': 'passivate'})
    assert rule.routine.scheduling == ()
    assert rule.routine.records is None


def test_scalar_expressions_become_text():
    edge = EventEdge.from_dict(
        {'event_expression_target': 'tick', 'condition': True, 'delay': 0.5}
    )
    assert edge.condition == 'true'
    assert edge.delay == '0.5'
    edge = EventEdge.from_dict({'event_expression_target': 'tick', 'delay': 3})
    assert edge.delay == '3'


def test_explicit_records():
    rule = EventRule.from_dict({
        'event_expression': 'release',
        'event_routine': {
            'records': [{'action': 'departure', 'subject': 'self.state.n'}],
        },
    })
    assert rule.routine.records == (EventRecord('departure', 'self.state.n'),)

    rule = EventRule.from_dict({'event_expression': 'quiet', 'event_routine': {'records': []}})
    assert rule.routine.records == ()


@pytest.mark.parametrize('data', [
    {},
    {'event_expression': ''},
    {'event_expression': 3},
    {'event_expression': 'x', 'event_parameters': 'msg'},
    {'event_expression': 'x', 'event_parameters': ['m', 'm']},
    {'event_expression': 'x', 'event_routine': []},
    {'event_expression': 'x', 'event_routine': {'state_transitions': [['a']]}},
    {'event_expression': 'x',
     'event_routine': {'state_transitions': [['self.state.a', None]]}},
    {'event_expression': 'x',
     'event_routine': {'state_transitions': [['self.state.a', '1', 'true', 'extra']]}},
    {'event_expression': 'x',
     'event_routine': {'state_transitions': [['self.state.a', '1', ['true']]]}},
    {'event_expression': 'x', 'event_routine': {'scheduling': [{'delay': '1'}]}},
    {'event_expression': 'x',
     'event_routine': {'scheduling': [{'event_expression_target': 'y', 'delay': [1]}]}},
    {'event_expression': 'x', 'event_routine': {'outputs': [{'payload': '1'}]}},
    {'event_expression': 'x', 'event_routine': {'records': [{'subject': '1'}]}},
])
def test_invalid_rules(data):
    with pytest.raises(RuleSpecError):
        EventRule.from_dict(data)


def test_model_spec_from_dict():
    spec = ModelSpec.from_dict(BATCHER)
    assert spec.name == 'Batcher'
    assert spec.enums == (('Phase', ('Passive', 'Batching', 'Release')),)
    assert spec.in_ports == ('job',)
    assert spec.out_ports == ('job',)
    assert dict(spec.parameters) == {'max_batch_time': 1.0, 'max_batch_size': 10}
    assert spec.timing_fields == ('until_next_event',)
    assert spec.time_advance == 'self.state.until_next_event'
    assert spec.rule('events_con').parameters == ('incoming_message',)
    assert spec.rule('no_such_rule') is None
    assert dict(spec.status)['Batching'] == 'Creating batch'


def test_model_spec_enum_mapping():
    spec = ModelSpec.from_dict({
        'name': 'Light',
        'phases': {'Phase': ['Off', 'On'], 'Color': ['Red', 'Green']},
        'rules': [],
    })
    assert spec.enums == (('Phase', ('Off', 'On')), ('Color', ('Red', 'Green')))
    assert spec.in_ports is None
    assert spec.out_ports is None


def test_model_spec_to_dict():
    spec = ModelSpec.from_dict(BATCHER)
    assert ModelSpec.from_dict(spec.to_dict()) == spec


@pytest.mark.parametrize('data', [
    {'rules': []},
    {'name': 'X', 'rules': 'events_int'},
    {'name': 'X', 'rules': [], 'state': ['phase']},
    {'name': 'X', 'rules': [], 'ports': {'in': 'job'}},
    {'name': 'X', 'rules': [], 'time_advance': None},
])
def test_invalid_model_spec(data):
    with pytest.raises(RuleSpecError):
        ModelSpec.from_dict(data)


@pytest.mark.parametrize('filename', ['processor.json', 'processor.yaml', 'processor.yml'])
def test_dump_load_model_spec(cleandir, filename):
    spec = ModelSpec.from_dict(PROCESSOR)
    dump_rules(spec, filename)
    assert load_model_spec(filename) == spec
    assert load_rules(filename) == spec.rules


def test_dump_rules_list(cleandir):
    spec = ModelSpec.from_dict(BATCHER)
    dump_rules(spec.rules, 'rules.json')
    with open('rules.json') as f:
        data = json.load(f)
    assert isinstance(data, list)
    assert data[0]['event_expression'] == 'events_ext'
    assert load_rules('rules.json') == spec.rules


def test_dump_rules_stream():
    spec = ModelSpec.from_dict(BATCHER)
    stream = io.StringIO()
    dump_rules(spec.rules[:2], stream, fmt='yaml')
    data = yaml.safe_load(stream.getvalue())
    assert [rule['event_expression'] for rule in data] == ['events_ext', 'events_int']
    with pytest.raises(ValueError):
        dump_rules(spec.rules, io.StringIO(), fmt='xml')


def test_invalid_extension(cleandir):
    with pytest.raises(ValueError):
        dump_rules(ModelSpec.from_dict(BATCHER), 'batcher.txt')
    with open('batcher.txt', 'w') as f:
        f.write('[]')
    with pytest.raises(ValueError):
        load_rules('batcher.txt')
