import copy

import pytest

from rulesim.compiler import (
    AtomicModel,
    InvalidDelay,
    UnknownEventTarget,
    compile_model,
)
from rulesim.expression import MalformedExpression
from rulesim.router import Message
from rulesim.rules import ModelSpec, RuleSpecError
from rulesim.simulation import Record

TICKER = {
    'name': 'Ticker',
    'phases': ['Idle', 'Ticking'],
    'status': {'Ticking': 'Running'},
    'ports': {'in': ['control'], 'out': ['tick']},
    'parameters': {'period': 1.0, 'limit': 3},
    'state': {
        'phase': 'Phase::Ticking',
        'until_next_event': 'self.period',
        'ticks': 0,
        'history': [],
    },
    'timing_fields': ['until_next_event'],
    'rules': [
        {
            'event_expression': 'events_int',
            'event_routine': {
                'outputs': [{'port': 'tick', 'payload': 'self.state.ticks + 1'}],
                'state_transitions': [
                    ['self.state.ticks', 'self.state.ticks + 1'],
                    ['self.state.until_next_event', 'self.period'],
                    ['self.state.history', 'self.state.history + [now]'],
                ],
                'scheduling': [
                    {
                        'event_expression_target': 'events_int',
                        'condition': 'self.state.ticks < self.limit',
                    }
                ],
            },
        },
        {
            'event_expression': 'events_ext',
            'event_parameters': ['msg'],
            'event_routine': {
                'scheduling': [
                    {
                        'event_expression_target': 'stop',
                        'condition': 'msg.payload == "stop"',
                        'delay': '0',
                    }
                ],
                'records': [{'action': 'control', 'subject': 'msg.payload'}],
            },
        },
        {
            'event_expression': 'stop',
            'event_routine': {
                'state_transitions': [
                    ['self.state.phase', 'Phase::Idle'],
                    ['self.state.until_next_event', 'inf'],
                ],
                'cancelling': [{'event_expression_target': 'events_int'}],
            },
        },
    ],
}

Ticker = compile_model(TICKER)

ORDER = {
    'name': 'Order',
    'state': {'until_next_event': 'inf', 'log': []},
    'rules': [
        {
            'event_expression': 'events_int',
            'event_routine': {
                'state_transitions': [['self.state.log', 'self.state.log + ["int"]']],
            },
        },
        {
            'event_expression': 'events_ext',
            'event_parameters': ['m'],
            'event_routine': {
                'state_transitions': [
                    ['self.state.log', 'self.state.log + ["ext:" + m.payload]']
                ],
            },
        },
    ],
}


def modified(mutate, spec=TICKER):
    spec = copy.deepcopy(spec)
    mutate(spec)
    return spec


def rule(spec, expression):
    return next(r for r in spec['rules'] if r['event_expression'] == expression)


def test_compile_model():
    assert issubclass(Ticker, AtomicModel)
    assert Ticker.__name__ == 'Ticker'
    assert Ticker.spec.name == 'Ticker'
    assert set(Ticker.routines) == {'events_int', 'events_ext', 'stop'}
    assert [v.name for v in Ticker.enums['Phase']] == ['Idle', 'Ticking']


def test_compile_model_spec_instance():
    spec = ModelSpec.from_dict(TICKER)
    assert compile_model(spec).spec is spec


def test_instance(env):
    ticker = Ticker(env, 'tick', period=2.0)
    assert ticker.parameters == {'period': 2.0, 'limit': 3}
    assert ticker.state.phase is Ticker.enums['Phase'].Ticking
    assert ticker.state.until_next_event == 2.0
    assert ticker.state.ticks == 0
    assert ticker.phase_name == 'Ticking'
    assert ticker.status() == 'Running'
    assert ticker.time_advance() == 2.0
    assert ticker.internal_expression == 'events_int'
    assert ticker.external_expression == 'events_ext'
    assert repr(ticker) == '<Ticker tick>'
    assert ticker.state.as_dict()['history'] == []


def test_state_is_per_instance(env):
    a = Ticker(env, 'a')
    b = Ticker(env, 'b')
    assert a.state.history is not b.state.history


def test_unknown_parameter(env):
    with pytest.raises(TypeError):
        Ticker(env, 'tick', frequency=2)


def test_initialize(env):
    ticker = Ticker(env, 'tick', period=2.0)
    ticker.initialize()
    [event] = env.scheduler.pending()
    assert (event.model_id, event.expression, event.scheduled_time) == (
        'tick',
        'events_int',
        2.0,
    )


def test_output_is_pure(env):
    ticker = Ticker(env, 'tick')
    assert ticker.output() == [Message('tick', 1)]
    assert ticker.output('events_int') == [Message('tick', 1)]
    assert ticker.state.ticks == 0
    assert ticker.output('stop') == []


def test_internal_transition(env):
    ticker = Ticker(env, 'tick', period=2.0)
    ticker.initialize()
    env.scheduler.pop_next()
    ticker.internal_transition()
    assert ticker.state.ticks == 1
    assert ticker.state.history == [2.0]
    assert ticker.state.until_next_event == 2.0
    assert ticker.last_transition_time == 2.0
    [event] = env.scheduler.pending()
    assert event.scheduled_time == 4.0
    env.records.commit()
    assert list(env.records) == [Record(2.0, 'events_int', 'tick', 'tick')]


def test_condition_false_schedules_nothing(env):
    ticker = Ticker(env, 'tick', limit=1)
    ticker.internal_transition()
    assert ticker.state.ticks == 1
    assert env.scheduler.pending() == []


def test_external_transition_cancels(env):
    ticker = Ticker(env, 'tick', period=2.0)
    ticker.initialize()
    ticker.external_transition(Message('control', 'stop'))
    assert [e.expression for e in env.scheduler.pending()] == ['stop', 'events_int']

    event = env.scheduler.pop_next()
    assert event.expression == 'stop'
    ticker.internal_transition(event.expression, event.parameters)
    assert env.scheduler.pending() == []
    assert ticker.phase_name == 'Idle'
    assert ticker.status() == 'Idle'

    env.records.commit()
    assert [(r.action, r.subject) for r in env.records] == [
        ('control', 'stop'),
        ('stop', 'tick'),
    ]


def test_external_transition_ignored_message(env):
    ticker = Ticker(env, 'tick')
    ticker.initialize()
    ticker.external_transition(Message('control', 'go'))
    assert [e.expression for e in env.scheduler.pending()] == ['events_int']


def test_conditional_state_transitions(env):
    def mutate(spec):
        rule(spec, 'events_ext')['event_routine']['state_transitions'] = [
            ['self.state.history', 'self.state.history + [msg.payload]',
             'msg.payload != "stop"'],
            ['self.state.phase', 'Phase::Idle', 'msg.payload == "pause"'],
            ['self.state.history', 'self.state.history + ["paused"]',
             'self.state.phase == Phase::Idle'],
        ]

    ticker = compile_model(modified(mutate))(env, 'tick')
    ticker.external_transition(Message('control', 'go'))
    assert ticker.state.history == ['go']
    assert ticker.phase_name == 'Ticking'
    ticker.external_transition(Message('control', 'pause'))
    assert ticker.state.history == ['go', 'pause', 'paused']
    assert ticker.phase_name == 'Idle'


def test_timing_fields(env):
    ticker = Ticker(env, 'tick', period=2.0)
    env.scheduler.schedule('other', 'x', delay=1.5)
    env.scheduler.pop_next()
    ticker.external_transition(Message('control', 'go'))
    assert ticker.state.until_next_event == 0.5
    assert ticker.last_transition_time == 1.5


def test_timing_fields_elapsed(env):
    env.scheduler.schedule('other', 'x', delay=1.5)
    env.scheduler.pop_next()
    ticker = Ticker(env, 'tick', period=2.0)
    ticker.external_transition(Message('control', 'go'), elapsed=0.5)
    assert ticker.state.until_next_event == 1.5


def test_cancel_only_preexisting_events(env):
    Rearm = compile_model({
        'name': 'Rearm',
        'state': {'until_next_event': 1.0},
        'rules': [
            {
                'event_expression': 'events_int',
                'event_routine': {
                    'scheduling': [{'event_expression_target': 'events_int', 'delay': '1'}],
                    'cancelling': [{'event_expression_target': 'events_int'}],
                },
            },
            {'event_expression': 'events_ext', 'event_parameters': ['m']},
        ],
    })
    model = Rearm(env, 'rearm')
    model.initialize()
    [first] = env.scheduler.pending()
    model.internal_transition()
    [second] = env.scheduler.pending()
    assert second.scheduled_time == 1.0
    assert second.insertion_sequence > first.insertion_sequence


@pytest.mark.parametrize('policy, expected', [
    ('external_first', ['ext:x', 'int']),
    ('internal_first', ['int', 'ext:x']),
])
def test_confluent_policy(env, policy, expected):
    model = compile_model(ORDER)(env, 'order')
    model.confluent_transition(Message('in', 'x'), policy)
    assert model.state.log == expected


def test_confluent_routine(env):
    def add_confluent(spec):
        spec['rules'].append({
            'event_expression': 'events_con',
            'event_parameters': ['m'],
            'event_routine': {
                'state_transitions': [['self.state.log', 'self.state.log + ["con"]']],
            },
        })

    model = compile_model(modified(add_confluent, ORDER))(env, 'order')
    model.confluent_transition(Message('in', 'x'), 'internal_first')
    assert model.state.log == ['con']


def test_confluent_policy_invalid(env):
    model = compile_model(ORDER)(env, 'order')
    with pytest.raises(ValueError):
        model.confluent_transition(Message('in', 'x'), 'random')


@pytest.mark.parametrize('mutate, exception', [
    (lambda s: rule(s, 'events_int')['event_routine']['scheduling'].append(
        {'event_expression_target': 'nope'}), UnknownEventTarget),
    (lambda s: rule(s, 'stop')['event_routine']['cancelling'].append(
        {'event_expression_target': 'nope'}), UnknownEventTarget),
    (lambda s: s['rules'].pop(1), RuleSpecError),
    (lambda s: s['rules'].pop(0), RuleSpecError),
    (lambda s: s['rules'].append(copy.deepcopy(s['rules'][2])), RuleSpecError),
    (lambda s: rule(s, 'events_ext')['event_routine']['scheduling'][0].update(
        parameters=['1']), RuleSpecError),
    (lambda s: rule(s, 'events_ext').update(event_parameters=['a', 'b']), RuleSpecError),
    (lambda s: rule(s, 'events_int').update(event_parameters=['a']), RuleSpecError),
    (lambda s: rule(s, 'events_ext')['event_routine'].update(
        outputs=[{'port': 'tick', 'payload': '1'}]), RuleSpecError),
    (lambda s: rule(s, 'events_int')['event_routine']['outputs'][0].update(
        port='tock'), RuleSpecError),
    (lambda s: s.update(timing_fields=['nope']), RuleSpecError),
    (lambda s: rule(s, 'events_int')['event_routine']['scheduling'][0].update(
        condition='self.state.nope > 1'), MalformedExpression),
    (lambda s: rule(s, 'stop')['event_routine']['state_transitions'].append(
        ['self.state.nope', '1']), MalformedExpression),
    (lambda s: rule(s, 'stop')['event_routine']['state_transitions'].append(
        ['self.state.ticks', '1', 'self.state.nope']), MalformedExpression),
    (lambda s: rule(s, 'stop')['event_routine']['state_transitions'].append(
        ['self.state.ticks', '1', 'self.state.ticks >']), MalformedExpression),
    (lambda s: rule(s, 'stop')['event_routine']['state_transitions'].append(
        ['self.period', '1']), MalformedExpression),
    (lambda s: rule(s, 'events_int')['event_routine']['scheduling'][0].update(
        condition='self.nope'), MalformedExpression),
    (lambda s: rule(s, 'stop')['event_routine']['state_transitions'].append(
        ['self.state.phase', 'Phase::Nope']), MalformedExpression),
    (lambda s: rule(s, 'stop')['event_routine']['state_transitions'].append(
        ['self.state.phase', 'Color::Red']), MalformedExpression),
    (lambda s: rule(s, 'stop')['event_routine']['cancelling'][0].update(
        condition='msg.payload'), MalformedExpression),
    (lambda s: rule(s, 'events_ext')['event_routine']['scheduling'][0].update(
        delay='1 +'), MalformedExpression),
    (lambda s: s['state'].update(until_next_event='self.state.ticks'),
     MalformedExpression),
    (lambda s: s.update(time_advance='self.state.nope'), MalformedExpression),
])
def test_invalid_specs(mutate, exception):
    with pytest.raises(exception):
        compile_model(modified(mutate))


def test_unknown_event_target_attributes():
    def mutate(spec):
        rule(spec, 'events_int')['event_routine']['scheduling'].append(
            {'event_expression_target': 'nope'}
        )

    with pytest.raises(UnknownEventTarget) as excinfo:
        compile_model(modified(mutate))
    assert excinfo.value.model_kind == 'Ticker'
    assert excinfo.value.target == 'nope'


@pytest.mark.parametrize('delay, value', [('-1', -1), ('"soon"', 'soon')])
def test_invalid_delay(env, delay, value):
    def mutate(spec):
        rule(spec, 'events_ext')['event_routine']['scheduling'][0]['delay'] = delay

    model = compile_model(modified(mutate))(env, 'tick')
    with pytest.raises(InvalidDelay) as excinfo:
        model.external_transition(Message('control', 'stop'))
    assert excinfo.value.delay == value
    assert excinfo.value.target == 'stop'
    assert env.scheduler.pending() == []
    env.records.commit()
    assert len(env.records) == 0


def test_invalid_time_advance(env):
    with pytest.raises(InvalidDelay):
        Ticker(env, 'tick', period=-1.0)
