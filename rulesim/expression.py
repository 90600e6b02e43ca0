"""Typed expressions for event rule guards, assignments, and delays.

Event rules carry small expression texts: guard conditions such as
``self.state.phase == Phase::Generating``, tuple patterns such as
``(self.state.phase, len(self.state.jobs) + 1 < self.max_batch_size) =
(Phase::Batching, true)``, assignment values, and delays that may use the
time-advance symbol ``σ``.

Each text is parsed once, ahead of simulation, into a small abstract syntax
tree (:class:`Literal`, :class:`FieldRef`, :class:`EnumVariant`,
:class:`TupleMatch`, :class:`BinaryOp`, ...) and then compiled into a tree of
closures. Nothing is parsed or ``eval()``-ed while the simulation runs; a
:class:`CompiledExpression` is simply called with an :class:`EvalContext`.

Name resolution
---------------

``self.state.<field>``
    A field of the model's state.
``self.<name>``
    An instance parameter of the model (e.g. ``self.max_batch_size``).
``<parameter>``
    A bound event parameter (e.g. ``incoming_message.payload``).
``now``
    The current simulation time.
``σ``, ``\\sigma``, ``sigma``
    The model's current time-advance value.

Only a closed set of functions may be called: see :data:`FUNCTIONS`.
``x.len()`` is accepted as an alias of ``len(x)``.

"""
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Tuple,
    Union,
)
import math
import operator
import random
import re


class MalformedExpression(Exception):
    """Expression text does not parse into a supported expression."""

    def __init__(self, text: str, reason: str, position: Optional[int] = None) -> None:
        self.text = text
        self.reason = reason
        self.position = position
        where = '' if position is None else f' at position {position}'
        super().__init__(f'{reason}{where} in expression "{text}"')


class EvaluationError(Exception):
    """A compiled expression could not be evaluated against a model state."""


class Literal(NamedTuple):
    value: Any


class FieldRef(NamedTuple):
    path: Tuple[str, ...]


class EnumVariant(NamedTuple):
    enum: str
    variant: str


class Sigma(NamedTuple):
    symbol: str


class Wildcard(NamedTuple):
    symbol: str


class TupleLiteral(NamedTuple):
    items: Tuple[Any, ...]


class ListLiteral(NamedTuple):
    items: Tuple[Any, ...]


class TupleMatch(NamedTuple):
    items: Tuple[Any, ...]
    patterns: Tuple[Any, ...]


class BinaryOp(NamedTuple):
    op: str
    left: Any
    right: Any


class BoolOp(NamedTuple):
    op: str
    operands: Tuple[Any, ...]


class UnaryOp(NamedTuple):
    op: str
    operand: Any


class Call(NamedTuple):
    name: str
    args: Tuple[Any, ...]


Node = Union[
    Literal,
    FieldRef,
    EnumVariant,
    Sigma,
    Wildcard,
    TupleLiteral,
    ListLiteral,
    TupleMatch,
    BinaryOp,
    BoolOp,
    UnaryOp,
    Call,
]


class EvalContext:
    """Everything an expression may read while it is evaluated.

    :param state: Model state; an object or a mapping.
    :param attributes: Instance parameters reachable as ``self.<name>``.
    :param bindings: Event parameter bindings.
    :param now: Current simulation time.
    :param sigma: Time-advance value, or a callable producing it.
    :param enums: Mapping of enum name to :class:`enum.Enum` type.
    :param rand: Random number generator used by ``sample()``.

    """

    __slots__ = ('state', 'attributes', 'bindings', 'now', 'enums', 'rand', '_sigma')

    def __init__(
        self,
        state: Any,
        attributes: Optional[Mapping[str, Any]] = None,
        bindings: Optional[Mapping[str, Any]] = None,
        now: float = 0.0,
        sigma: Union[None, float, Callable[[], float]] = None,
        enums: Optional[Mapping[str, Any]] = None,
        rand: Optional[random.Random] = None,
    ) -> None:
        self.state = state
        self.attributes = {} if attributes is None else attributes
        self.bindings = {} if bindings is None else bindings
        self.now = now
        self.enums = {} if enums is None else enums
        self.rand = rand
        self._sigma = sigma

    def sigma(self) -> float:
        if self._sigma is None:
            raise EvaluationError('time-advance symbol used without a time advance')
        if callable(self._sigma):
            return self._sigma()
        return self._sigma


Evaluator = Callable[[EvalContext], Any]


class CompiledExpression(NamedTuple):
    """Parsed and compiled expression; call it with an :class:`EvalContext`."""

    text: str
    node: Node
    fn: Evaluator

    def __call__(self, ctx: EvalContext) -> Any:
        return self.fn(ctx)


class Assignment(NamedTuple):
    """A state field path paired with a compiled value expression."""

    target: str
    path: Tuple[str, ...]
    value: CompiledExpression

    def apply(self, ctx: EvalContext, state: Any) -> None:
        new_value = self.value(ctx)
        obj = state
        for name in self.path[2:-1]:
            obj = _lookup(obj, name, self.path)
        if isinstance(obj, dict):
            obj[self.path[-1]] = new_value
        else:
            setattr(obj, self.path[-1], new_value)


_token_re = re.compile(
    r'''
    (?P<ws> \s+ )
    | (?P<number> (?: \d+\.\d* | \.\d+ | \d+ ) (?: [eE] [-+]? \d+ )? )
    | (?P<string> "(?:[^"\\]|\\.)*" | '(?:[^'\\]|\\.)*' )
    | (?P<sigma> σ | \\sigma\b )
    | (?P<name> [A-Za-z_][A-Za-z0-9_]* )
    | (?P<op> :: | == | != | <= | >= | && | \|\| | [-+*/%<>=!(),.\[\]] )
    ''',
    re.VERBOSE,
)


class _Token(NamedTuple):
    kind: str
    text: str
    pos: int


def _tokenize(text: str) -> List[_Token]:
    tokens = []
    pos = 0
    while pos < len(text):
        match = _token_re.match(text, pos)
        if not match:
            raise MalformedExpression(text, f'unexpected character {text[pos]!r}', pos)
        kind = match.lastgroup
        assert kind is not None
        if kind != 'ws':
            tokens.append(_Token(kind, match.group(), pos))
        pos = match.end()
    tokens.append(_Token('end', '', len(text)))
    return tokens


_INFINITY_NAMES = {'inf', 'infinity', 'INFINITY'}
_KEYWORDS = {'and', 'or', 'not'}
_COMPARISONS = {'=', '==', '!=', '<', '<=', '>', '>='}


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.index = 0

    def error(self, reason: str, token: Optional[_Token] = None) -> MalformedExpression:
        token = self.peek() if token is None else token
        return MalformedExpression(self.text, reason, token.pos)

    def peek(self) -> _Token:
        return self.tokens[self.index]

    def advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def accept(self, *texts: str) -> Optional[_Token]:
        token = self.peek()
        if token.kind in ('op', 'name') and token.text in texts:
            return self.advance()
        return None

    def expect(self, text: str) -> _Token:
        token = self.accept(text)
        if token is None:
            found = self.peek().text or 'end of expression'
            raise self.error(f'expected {text!r}, found {found!r}')
        return token

    def parse(self) -> Node:
        if self.peek().kind == 'end':
            raise self.error('empty expression')
        node = self.disjunction()
        if self.peek().kind != 'end':
            raise self.error(f'unexpected {self.peek().text!r}')
        return node

    def disjunction(self) -> Node:
        operands = [self.conjunction()]
        while self.accept('||', 'or'):
            operands.append(self.conjunction())
        return operands[0] if len(operands) == 1 else BoolOp('or', tuple(operands))

    def conjunction(self) -> Node:
        operands = [self.negation()]
        while self.accept('&&', 'and'):
            operands.append(self.negation())
        return operands[0] if len(operands) == 1 else BoolOp('and', tuple(operands))

    def negation(self) -> Node:
        if self.accept('!', 'not'):
            return UnaryOp('not', self.negation())
        return self.comparison()

    def comparison(self) -> Node:
        left = self.additive()
        token = self.peek()
        if token.kind != 'op' or token.text not in _COMPARISONS:
            return left
        self.advance()
        right = self.additive()
        op = '==' if token.text == '=' else token.text
        if op in ('==', '!=') and isinstance(left, TupleLiteral):
            if not isinstance(right, TupleLiteral):
                raise self.error('tuple must be matched against a tuple pattern', token)
            if len(left.items) != len(right.items):
                raise self.error(
                    f'tuple of {len(left.items)} matched against pattern of '
                    f'{len(right.items)}',
                    token,
                )
            match = TupleMatch(left.items, right.items)
            return match if op == '==' else UnaryOp('not', match)
        return BinaryOp(op, left, right)

    def additive(self) -> Node:
        node = self.term()
        while True:
            token = self.accept('+', '-')
            if token is None:
                return node
            node = BinaryOp(token.text, node, self.term())

    def term(self) -> Node:
        node = self.unary()
        while True:
            token = self.accept('*', '/', '%')
            if token is None:
                return node
            node = BinaryOp(token.text, node, self.unary())

    def unary(self) -> Node:
        if self.accept('-'):
            operand = self.unary()
            if isinstance(operand, Literal) and isinstance(operand.value, (int, float)):
                return Literal(-operand.value)
            return UnaryOp('-', operand)
        return self.postfix()

    def postfix(self) -> Node:
        node = self.primary()
        while self.accept('.'):
            token = self.advance()
            if token.kind != 'name':
                raise self.error('expected a field name after "."', token)
            if self.peek().text == '(':
                args = self.call_args()
                node = self.make_call(token, (node,) + args)
            elif isinstance(node, FieldRef):
                node = FieldRef(node.path + (token.text,))
            else:
                raise self.error('field access is only valid on field references', token)
        return node

    def call_args(self) -> Tuple[Node, ...]:
        self.expect('(')
        args = []
        if not self.accept(')'):
            args.append(self.disjunction())
            while self.accept(','):
                args.append(self.disjunction())
            self.expect(')')
        return tuple(args)

    def make_call(self, token: _Token, args: Tuple[Node, ...]) -> Call:
        if token.text not in FUNCTIONS:
            raise self.error(f'unknown function {token.text!r}', token)
        min_args, max_args, _ = FUNCTIONS[token.text]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            raise self.error(f'wrong number of arguments to {token.text}()', token)
        return Call(token.text, args)

    def primary(self) -> Node:
        token = self.advance()
        if token.kind == 'number':
            if any(c in token.text for c in '.eE'):
                return Literal(float(token.text))
            return Literal(int(token.text))
        if token.kind == 'string':
            return Literal(_unquote(token.text))
        if token.kind == 'sigma':
            return Sigma(token.text)
        if token.kind == 'name':
            return self.name(token)
        if token.text == '(':
            if self.accept(')'):
                return TupleLiteral(())
            first = self.disjunction()
            if not self.accept(','):
                self.expect(')')
                return first
            items = [first]
            while not self.accept(')'):
                items.append(self.disjunction())
                if not self.accept(','):
                    self.expect(')')
                    break
            return TupleLiteral(tuple(items))
        if token.text == '[':
            items = []
            if not self.accept(']'):
                items.append(self.disjunction())
                while self.accept(','):
                    items.append(self.disjunction())
                self.expect(']')
            return ListLiteral(tuple(items))
        if token.kind == 'end':
            raise self.error('unexpected end of expression', token)
        raise self.error(f'unexpected {token.text!r}', token)

    def name(self, token: _Token) -> Node:
        text = token.text
        if text in _KEYWORDS:
            raise self.error(f'unexpected {text!r}', token)
        if text == 'true':
            return Literal(True)
        if text == 'false':
            return Literal(False)
        if text in _INFINITY_NAMES:
            return Literal(math.inf)
        if text == 'sigma':
            return Sigma(text)
        if text == '_':
            return Wildcard(text)
        if self.accept('::'):
            variant = self.advance()
            if variant.kind != 'name':
                raise self.error('expected a variant name after "::"', variant)
            return EnumVariant(text, variant.text)
        if self.peek().text == '(':
            return self.make_call(token, self.call_args())
        return FieldRef((text,))


def _unquote(text: str) -> str:
    quote = text[0]
    return text[1:-1].replace('\\' + quote, quote).replace('\\\\', '\\')


def parse(text: str) -> Node:
    """Parse expression text into an abstract syntax tree.

    :raises MalformedExpression: If the text is not a supported expression.

    """
    return _Parser(text).parse()


def walk(node: Node) -> Iterator[Node]:
    """Yield `node` and all of its descendant nodes, depth first."""
    yield node
    if isinstance(node, (TupleLiteral, ListLiteral)):
        children: Tuple[Node, ...] = node.items
    elif isinstance(node, TupleMatch):
        children = node.items + node.patterns
    elif isinstance(node, BinaryOp):
        children = (node.left, node.right)
    elif isinstance(node, BoolOp):
        children = node.operands
    elif isinstance(node, UnaryOp):
        children = (node.operand,)
    elif isinstance(node, Call):
        children = node.args
    else:
        children = ()
    for child in children:
        yield from walk(child)


def _lookup(obj: Any, name: str, path: Tuple[str, ...]) -> Any:
    try:
        if isinstance(obj, Mapping):
            return obj[name]
        return getattr(obj, name)
    except (KeyError, AttributeError):
        raise EvaluationError(f'cannot resolve "{".".join(path)}"') from None


def _first(seq):
    try:
        return seq[0]
    except (IndexError, TypeError):
        raise EvaluationError('first() of an empty or non-sequence value') from None


#: Callable functions: name -> (min args, max args or None, implementation).
#: ``sample`` is handled by the compiler since it needs the context's RNG.
FUNCTIONS: Dict[str, Tuple[int, Optional[int], Optional[Callable[..., Any]]]] = {
    'len': (1, 1, len),
    'min': (1, None, min),
    'max': (1, None, max),
    'abs': (1, 1, abs),
    'str': (1, 1, str),
    'int': (1, 1, int),
    'float': (1, 1, float),
    'first': (1, 1, _first),
    'take': (2, 2, lambda seq, n: list(seq[:n])),
    'drop': (2, 2, lambda seq, n: list(seq[n:])),
    'sample': (1, 1, None),
}

_BINARY_OPS: Dict[str, Callable[[Any, Any], Any]] = {
    '+': operator.add,
    '-': operator.sub,
    '*': operator.mul,
    '/': operator.truediv,
    '%': operator.mod,
    '==': operator.eq,
    '!=': operator.ne,
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
}


def _compile_node(node: Node, text: str) -> Evaluator:
    if isinstance(node, Literal):
        value = node.value
        return lambda ctx: value

    if isinstance(node, FieldRef):
        return _compile_field_ref(node, text)

    if isinstance(node, EnumVariant):
        enum_name, variant = node.enum, node.variant

        def enum_variant(ctx: EvalContext) -> Any:
            try:
                return ctx.enums[enum_name][variant]
            except KeyError:
                raise EvaluationError(f'unknown enum variant {enum_name}::{variant}') from None

        return enum_variant

    if isinstance(node, Sigma):
        return lambda ctx: ctx.sigma()

    if isinstance(node, Wildcard):
        raise MalformedExpression(text, "wildcard '_' is only valid inside a tuple pattern")

    if isinstance(node, TupleLiteral):
        item_fns = [_compile_node(item, text) for item in node.items]
        return lambda ctx: tuple(fn(ctx) for fn in item_fns)

    if isinstance(node, ListLiteral):
        item_fns = [_compile_node(item, text) for item in node.items]
        return lambda ctx: [fn(ctx) for fn in item_fns]

    if isinstance(node, TupleMatch):
        pairs = [
            (_compile_node(item, text), _compile_node(pattern, text))
            for item, pattern in zip(node.items, node.patterns)
            if not isinstance(pattern, Wildcard)
        ]
        return lambda ctx: all(item(ctx) == pattern(ctx) for item, pattern in pairs)

    if isinstance(node, BinaryOp):
        return _compile_binary(node, text)

    if isinstance(node, BoolOp):
        operand_fns = [_compile_node(operand, text) for operand in node.operands]
        if node.op == 'and':
            return lambda ctx: all(fn(ctx) for fn in operand_fns)
        return lambda ctx: any(fn(ctx) for fn in operand_fns)

    if isinstance(node, UnaryOp):
        operand_fn = _compile_node(node.operand, text)
        if node.op == 'not':
            return lambda ctx: not operand_fn(ctx)

        def negate(ctx: EvalContext) -> Any:
            try:
                return -operand_fn(ctx)
            except TypeError as e:
                raise EvaluationError(f'{e} in "{text}"') from None

        return negate

    if isinstance(node, Call):
        return _compile_call(node, text)

    raise MalformedExpression(text, f'unsupported node {type(node).__name__}')


def _compile_field_ref(node: FieldRef, text: str) -> Evaluator:
    path = node.path
    root, rest = path[0], path[1:]
    if root == 'now':
        if rest:
            raise MalformedExpression(text, '"now" has no fields')
        return lambda ctx: ctx.now
    if root == 'self':
        if not rest:
            raise MalformedExpression(text, '"self" must be followed by a field name')
        if rest[0] == 'state':
            start: Callable[[EvalContext], Any] = lambda ctx: ctx.state
            rest = rest[1:]
        else:
            start = lambda ctx: ctx.attributes
    else:
        start = lambda ctx: _lookup(ctx.bindings, root, path)

    def field_ref(ctx: EvalContext) -> Any:
        obj = start(ctx)
        for name in rest:
            obj = _lookup(obj, name, path)
        return obj

    return field_ref


def _compile_binary(node: BinaryOp, text: str) -> Evaluator:
    op_fn = _BINARY_OPS[node.op]
    left_fn = _compile_node(node.left, text)
    right_fn = _compile_node(node.right, text)

    def binary_op(ctx: EvalContext) -> Any:
        try:
            return op_fn(left_fn(ctx), right_fn(ctx))
        except (TypeError, ZeroDivisionError) as e:
            raise EvaluationError(f'{e} in "{text}"') from None

    return binary_op


def _compile_call(node: Call, text: str) -> Evaluator:
    arg_fns = [_compile_node(arg, text) for arg in node.args]
    name = node.name
    if name == 'sample':
        dist_fn = arg_fns[0]

        def sample(ctx: EvalContext) -> Any:
            if ctx.rand is None:
                raise EvaluationError('sample() requires a random number generator')
            distribution = dist_fn(ctx)
            if not callable(distribution):
                raise EvaluationError(f'sample() of non-distribution in "{text}"')
            return distribution(ctx.rand)

        return sample

    impl = FUNCTIONS[name][2]
    assert impl is not None

    def call(ctx: EvalContext) -> Any:
        try:
            return impl(*(fn(ctx) for fn in arg_fns))
        except (TypeError, ValueError) as e:
            raise EvaluationError(f'{name}(): {e} in "{text}"') from None

    return call


def compile_expression(text: str) -> CompiledExpression:
    """Parse and compile guard, value, or delay text.

    :param str text: Expression text.
    :returns: :class:`CompiledExpression` ready to be called.
    :raises MalformedExpression: For any unsupported or invalid text.

    """
    if not isinstance(text, str):
        raise MalformedExpression(repr(text), 'expression must be a string')
    node = parse(text)
    return CompiledExpression(text, node, _compile_node(node, text))


def compile_assignment(target: str, value: str) -> Assignment:
    """Compile a ``(state.field.path, value expression)`` state transition.

    The target must name a state field, i.e. start with ``self.state.``.

    """
    target_node = parse(target)
    if (
        not isinstance(target_node, FieldRef)
        or len(target_node.path) < 3
        or target_node.path[:2] != ('self', 'state')
    ):
        raise MalformedExpression(target, 'assignment target must be a self.state field')
    return Assignment(target, target_node.path, compile_expression(value))


def evaluate(
    expression: CompiledExpression,
    state: Any,
    parameters: Optional[Mapping[str, Any]] = None,
    *,
    attributes: Optional[Mapping[str, Any]] = None,
    sigma: Union[None, float, Callable[[], float]] = None,
    now: float = 0.0,
    enums: Optional[Mapping[str, Any]] = None,
    rand: Optional[random.Random] = None,
) -> Any:
    """Evaluate a compiled expression against a state snapshot.

    Evaluation never modifies `state`.

    :param expression: Result of :func:`compile_expression()`.
    :param state: Model state (object or mapping), read as ``self.state``.
    :param parameters: Event parameter bindings.
    :returns: The expression's value.
    :raises EvaluationError: If a name cannot be resolved or an operation fails.

    """
    ctx = EvalContext(
        state,
        attributes=attributes,
        bindings=parameters,
        now=now,
        sigma=sigma,
        enums=enums,
        rand=rand,
    )
    return expression(ctx)
