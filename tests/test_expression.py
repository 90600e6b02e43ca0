from enum import Enum
from types import SimpleNamespace
import math
import random

import pytest

from rulesim.expression import (
    BoolOp,
    Call,
    EnumVariant,
    EvalContext,
    EvaluationError,
    FieldRef,
    Literal,
    MalformedExpression,
    Sigma,
    TupleMatch,
    UnaryOp,
    Wildcard,
    compile_assignment,
    compile_expression,
    evaluate,
    parse,
)

Phase = Enum('Phase', ['Passive', 'Batching', 'Release'])
ENUMS = {'Phase': Phase}


def ev(text, state=None, parameters=None, **kwargs):
    kwargs.setdefault('enums', ENUMS)
    return evaluate(
        compile_expression(text), {} if state is None else state, parameters, **kwargs
    )


@pytest.mark.parametrize('text, value', [
    ('1 + 2 * 3', 7),
    ('(1 + 2) * 3', 9),
    ('7 % 4', 3),
    ('10 / 4', 2.5),
    ('-3 + 1', -2),
    ('2 - -1', 3),
    ('"job " + str(3)', 'job 3'),
    ("'a' + 'b'", 'ab'),
    ('1 < 2', True),
    ('2 <= 1', False),
    ('1 = 1', True),
    ('1 == 2', False),
    ('1 != 1', False),
    ('true && false', False),
    ('true || false', True),
    ('not true', False),
    ('!false', True),
    ('1 < 2 and 2 < 3', True),
    ('inf', math.inf),
    ('INFINITY > 1e308', True),
    ('[1, 2] + [3]', [1, 2, 3]),
    ('(1, 2)', (1, 2)),
    ('()', ()),
    ('min(3, 1, 2)', 1),
    ('max(3, 1, 2)', 3),
    ('abs(-2.5)', 2.5),
    ('int(2.7)', 2),
    ('float(2)', 2.0),
    ('first([4, 5])', 4),
    ('take([1, 2, 3], 2)', [1, 2]),
    ('drop([1, 2, 3], 2)', [3]),
    ('len([1, 2, 3])', 3),
    ('[1, 2].len()', 2),
])
def test_constant_expressions(text, value):
    assert ev(text) == value


def test_parse_nodes():
    assert parse('self.state.phase') == FieldRef(('self', 'state', 'phase'))
    assert parse('Phase::Passive') == EnumVariant('Phase', 'Passive')
    assert parse('Phase :: Passive') == EnumVariant('Phase', 'Passive')
    assert parse('σ') == Sigma('σ')
    assert parse('a.len()') == Call('len', (FieldRef(('a',)),))
    assert parse('not a') == UnaryOp('not', FieldRef(('a',)))
    assert parse('a && b || c') == BoolOp(
        'or', (BoolOp('and', (FieldRef(('a',)), FieldRef(('b',)))), FieldRef(('c',)))
    )
    node = parse('(a, b) = (1, _)')
    assert isinstance(node, TupleMatch)
    assert node.patterns == (Literal(1), Wildcard('_'))


def test_state_parameter_and_binding_names():
    state = {'phase': Phase.Batching, 'jobs': ['a', 'b']}
    assert ev('self.state.phase == Phase::Batching', state) is True
    assert ev('Phase::Release', state) is Phase.Release
    assert ev(
        'len(self.state.jobs) + 1 < self.max_batch_size',
        state,
        attributes={'max_batch_size': 4},
    ) is True
    message = SimpleNamespace(port='job', payload='x')
    assert ev('incoming_message.payload', state, {'incoming_message': message}) == 'x'
    assert ev('now + 1', now=2.5) == 3.5


def test_object_state():
    state = SimpleNamespace(stats={'count': 3}, jobs=[])
    assert ev('self.state.stats.count * 2', state) == 6
    assert ev('len(self.state.jobs)', state) == 0


@pytest.mark.parametrize('phase, jobs, expected', [
    (Phase.Batching, [], True),
    (Phase.Batching, [1, 2, 3], False),
    (Phase.Passive, [], False),
])
def test_tuple_match(phase, jobs, expected):
    text = (
        '(self.state.phase, len(self.state.jobs) + 1 < self.max_batch_size) '
        '= (Phase::Batching, true)'
    )
    state = {'phase': phase, 'jobs': jobs}
    assert ev(text, state, attributes={'max_batch_size': 3}) is expected


def test_tuple_match_wildcard():
    text = '(self.state.phase, len(self.state.jobs)) = (_, 2)'
    assert ev(text, {'phase': Phase.Passive, 'jobs': [1, 2]}) is True
    assert ev(text, {'phase': Phase.Release, 'jobs': [1, 2]}) is True
    assert ev(text, {'phase': Phase.Release, 'jobs': [1]}) is False


def test_tuple_mismatch():
    text = '(self.state.phase, 1) != (Phase::Passive, 1)'
    assert ev(text, {'phase': Phase.Passive}) is False
    assert ev(text, {'phase': Phase.Batching}) is True


@pytest.mark.parametrize('text', ['σ', '\\sigma', 'sigma'])
def test_sigma_symbols(text):
    assert ev(text, sigma=2.0) == 2.0
    assert ev(text + ' + 1', sigma=lambda: 1.5) == 2.5


def test_sigma_without_time_advance():
    with pytest.raises(EvaluationError):
        ev('σ')


@pytest.mark.parametrize('text', [
    '',
    '1 +',
    '(1, 2',
    '[1, 2',
    'foo(1)',
    'len(1, 2)',
    'take([1])',
    'self',
    'Phase::',
    '"unterminated',
    'a b',
    'and',
    '1 < 2 < 3',
    '(1, 2) = (1, 2, 3)',
    '(1, 2) = 3',
    '_',
    '_ + 1',
    'now.x',
    '(1).x',
])
def test_malformed(text):
    with pytest.raises(MalformedExpression):
        compile_expression(text)


def test_malformed_position():
    with pytest.raises(MalformedExpression) as excinfo:
        compile_expression('1 ? 2')
    assert excinfo.value.position == 2
    assert '1 ? 2' in str(excinfo.value)


def test_malformed_non_string():
    with pytest.raises(MalformedExpression):
        compile_expression(3)


@pytest.mark.parametrize('text, state', [
    ('self.state.missing', {}),
    ('self.state.jobs.size', {'jobs': []}),
    ('1 / 0', {}),
    ('"a" + 1', {}),
    ('first([])', {}),
    ('int("x")', {}),
    ('Phase::Nope', {}),
    ('-"a"', {}),
    ('message.payload', {}),
])
def test_evaluation_errors(text, state):
    with pytest.raises(EvaluationError):
        ev(text, state)


def test_sample():
    compiled = compile_expression('sample(self.interval)')
    attributes = {'interval': lambda rand: rand.uniform(1, 2)}
    a = evaluate(compiled, {}, attributes=attributes, rand=random.Random(7))
    b = evaluate(compiled, {}, attributes=attributes, rand=random.Random(7))
    assert a == b
    assert 1 <= a <= 2

    with pytest.raises(EvaluationError):
        evaluate(compiled, {}, attributes=attributes)
    with pytest.raises(EvaluationError):
        evaluate(compiled, {}, attributes={'interval': 2.0}, rand=random.Random())


def test_evaluate_does_not_mutate_state():
    state = {'jobs': [1, 2]}
    assert ev('self.state.jobs + [3]', state) == [1, 2, 3]
    assert ev('drop(self.state.jobs, 1)', state) == [2]
    assert state == {'jobs': [1, 2]}


def test_compiled_expression_is_reusable():
    compiled = compile_expression('self.state.n * 2')
    assert compiled.text == 'self.state.n * 2'
    assert [evaluate(compiled, {'n': n}) for n in range(3)] == [0, 2, 4]


def test_assignment():
    state = SimpleNamespace(count=1, stats={'n': 0})
    ctx = EvalContext(state)
    compile_assignment('self.state.count', 'self.state.count + 1').apply(ctx, state)
    assert state.count == 2
    compile_assignment('self.state.stats.n', '5').apply(ctx, state)
    assert state.stats == {'n': 5}


@pytest.mark.parametrize('target', ['self.x', 'count', 'self.state', '1'])
def test_assignment_target_must_be_state_field(target):
    with pytest.raises(MalformedExpression):
        compile_assignment(target, '1')
