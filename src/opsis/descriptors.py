"""
Descriptor algebra.

A descriptor is a symbolic feature built from primitive variables, e.g.

    x1                      primitive
    (x1*x2)                 binary combination
    (x2+CONST)              primitive shifted by an unresolved constant
    log((x2+CONST))         placeholder template, refined later
    log((x2+1.5))           the same template after refinement

Descriptors are held as a small immutable AST (Leaf, Number, Unary, Binary,
Shifted). The printer below produces the descriptor names used everywhere in
the package, and the recursive-descent parser reads them back, so names stay
the interchange format while the code works on trees.

Example:
    >>> node = parse("log((x2+CONST))")
    >>> parse_descriptor(node)
    DescriptorTemplate(kind='log', feature='x2', has_placeholder=True)
    >>> build_design_matrix([node, "x1"], X, constants=[1.5, 0.0])
"""
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import NamedTuple, Optional

import numpy as np
import pandas as pd
import sympy

from .constants import (
    PLACEHOLDER, SURROGATE_CONSTANT, PI_SYMBOL, CONSTANT_NAME_FORMAT
)
from .exceptions import ParseError, EvalError, ConfigurationError


# ------------------------------------------------------------------------
# AST
# ------------------------------------------------------------------------

@dataclass(frozen=True)
class Leaf:
    name: str


@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Unary:
    op: str
    child: object


@dataclass(frozen=True)
class Binary:
    op: str
    left: object
    right: object


@dataclass(frozen=True)
class Shifted:
    """`child + C`; `constant is None` while C is still the placeholder."""
    child: object
    constant: Optional[float] = None


UNARY_FUNCS = {
    'log': np.log, 'sqrt': np.sqrt, 'abs': np.abs, 'exp': np.exp,
    'sin': np.sin, 'cos': np.cos, 'neg': np.negative,
}
BINARY_FUNCS = {
    '+': np.add, '-': np.subtract, '*': np.multiply, '/': np.divide,
    '^': np.power,
}
FUNCTION_NAMES = frozenset(op for op in UNARY_FUNCS if op != 'neg')
RESERVED_NAMES = FUNCTION_NAMES | {PLACEHOLDER, PI_SYMBOL}

# Closed set of placeholder templates op((feature+C)).
TEMPLATE_FUNCS = {
    'shift': lambda v: v,
    'log': np.log,
    'log_abs': lambda v: np.log(np.abs(v)),
    'sqrt': np.sqrt,
    'abs': np.abs,
    'sin': np.sin,
    'exp': np.exp,
}
LOG_FAMILY = ('log', 'log_abs')

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


class DescriptorTemplate(NamedTuple):
    kind: str
    feature: str
    has_placeholder: bool


def is_valid_feature_name(name):
    """True if *name* can be used as a primitive feature in descriptors."""
    return isinstance(name, str) and bool(_NAME_RE.match(name)) and name not in RESERVED_NAMES


# ------------------------------------------------------------------------
# Printer
# ------------------------------------------------------------------------

def _format_number(value):
    value = float(value)
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def to_string(node):
    """Canonical descriptor name of *node*."""
    if isinstance(node, Leaf):
        return node.name
    if isinstance(node, Number):
        return _format_number(node.value)
    if isinstance(node, Shifted):
        const = PLACEHOLDER if node.constant is None else CONSTANT_NAME_FORMAT % node.constant
        return f"({to_string(node.child)}+{const})"
    if isinstance(node, Unary):
        if node.op == 'neg':
            return f"(-{to_string(node.child)})"
        return f"{node.op}({to_string(node.child)})"
    if isinstance(node, Binary):
        if node.op == '^':
            return f"({to_string(node.left)})^{to_string(node.right)}"
        return f"({to_string(node.left)}{node.op}{to_string(node.right)})"
    raise TypeError(f"Not a descriptor node: {node!r}")


# ------------------------------------------------------------------------
# Parser
# ------------------------------------------------------------------------

_TOKEN_RE = re.compile(r"""\s*(?:
      (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)
    | (?P<name>[A-Za-z_][A-Za-z0-9_.]*)
    | (?P<op>[-+*/^()])
)""", re.VERBOSE)


def _tokenize(text):
    tokens, pos = [], 0
    text = text.strip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            raise ParseError(f"Unexpected character {text[pos]!r} at position {pos} in {text!r}")
        tokens.append((m.lastgroup, m.group(m.lastgroup)))
        pos = m.end()
    return tokens


def _combine_add(left, right):
    if right == Leaf(PLACEHOLDER):
        return Shifted(left)
    if (isinstance(left, Leaf) and isinstance(right, Number)
            and left.name not in RESERVED_NAMES):
        return Shifted(left, right.value)
    return Binary('+', left, right)


class _Parser:
    """expr := term (+|- term)* ; term := signed (*|/ signed)* ;
    signed := '-' signed | factor ; factor := atom ('^' signed)?"""

    def __init__(self, text):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def parse(self):
        if not self.tokens:
            raise ParseError("Empty descriptor.")
        node = self._expr()
        if self.pos != len(self.tokens):
            raise ParseError(f"Unexpected token {self.tokens[self.pos][1]!r} in {self.text!r}")
        return node

    def _peek(self):
        return self.tokens[self.pos][1] if self.pos < len(self.tokens) else None

    def _next(self):
        if self.pos >= len(self.tokens):
            raise ParseError(f"Unexpected end of descriptor {self.text!r}")
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def _expect(self, value):
        _, tok = self._next()
        if tok != value:
            raise ParseError(f"Expected {value!r} but found {tok!r} in {self.text!r}")

    def _expr(self):
        node = self._term()
        while self._peek() in ('+', '-'):
            op = self._next()[1]
            right = self._term()
            node = _combine_add(node, right) if op == '+' else Binary('-', node, right)
        return node

    def _term(self):
        node = self._signed()
        while self._peek() in ('*', '/'):
            op = self._next()[1]
            node = Binary(op, node, self._signed())
        return node

    def _signed(self):
        if self._peek() == '-':
            self._next()
            operand = self._signed()
            if isinstance(operand, Number):
                return Number(-operand.value)
            return Unary('neg', operand)
        return self._factor()

    def _factor(self):
        base = self._atom()
        if self._peek() == '^':
            self._next()
            return Binary('^', base, self._signed())
        return base

    def _atom(self):
        kind, tok = self._next()
        if kind == 'number':
            return Number(float(tok))
        if kind == 'name':
            if self._peek() == '(':
                if tok not in FUNCTION_NAMES:
                    raise ParseError(f"Unknown operator {tok!r} in {self.text!r}")
                self._next()
                arg = self._expr()
                self._expect(')')
                return Unary(tok, arg)
            return Leaf(tok)
        if tok == '(':
            node = self._expr()
            self._expect(')')
            return node
        raise ParseError(f"Unexpected token {tok!r} in {self.text!r}")


@lru_cache(maxsize=8192)
def parse(text):
    """Parses a descriptor name into its AST."""
    return _Parser(text).parse()


def as_descriptor(descriptor):
    if isinstance(descriptor, str):
        return parse(descriptor)
    if isinstance(descriptor, (Leaf, Number, Unary, Binary, Shifted)):
        return descriptor
    raise TypeError(f"Expected a descriptor string or node, got {type(descriptor).__name__}")


# ------------------------------------------------------------------------
# Structural queries
# ------------------------------------------------------------------------

def _children(node):
    if isinstance(node, (Unary, Shifted)):
        return (node.child,)
    if isinstance(node, Binary):
        return (node.left, node.right)
    return ()


def has_placeholder(descriptor):
    """True if the descriptor still contains an unresolved constant."""
    node = as_descriptor(descriptor)
    if isinstance(node, Shifted) and node.constant is None:
        return True
    return any(has_placeholder(c) for c in _children(node))


def base_features(descriptor):
    """Primitive feature names a descriptor depends on."""
    node = as_descriptor(descriptor)
    if isinstance(node, Leaf):
        return frozenset() if node.name in RESERVED_NAMES else frozenset([node.name])
    out = frozenset()
    for child in _children(node):
        out |= base_features(child)
    return out


def _is_leaf_shift(node):
    return (isinstance(node, Shifted) and isinstance(node.child, Leaf)
            and node.child.name not in RESERVED_NAMES)


def _match_template(node):
    if _is_leaf_shift(node):
        return 'shift', node
    if isinstance(node, Unary):
        child = node.child
        if (node.op == 'log' and isinstance(child, Unary) and child.op == 'abs'
                and _is_leaf_shift(child.child)):
            return 'log_abs', child.child
        if node.op in TEMPLATE_FUNCS and _is_leaf_shift(child):
            return node.op, child
    return None, None


def parse_descriptor(descriptor):
    """Recognises op((feature+C)) templates.

    Raises ParseError for anything outside the template set. Resolved
    templates (a literal in place of CONST) are recognised as well and report
    `has_placeholder=False`.
    """
    node = as_descriptor(descriptor)
    kind, shifted = _match_template(node)
    if kind is None:
        raise ParseError(f"Unknown descriptor pattern: {to_string(node)}")
    return DescriptorTemplate(kind, shifted.child.name, shifted.constant is None)


def is_template(descriptor):
    return _match_template(as_descriptor(descriptor))[0] is not None


def is_log_family(descriptor):
    """log((x+C)) or log(abs((x+C))), resolved or not."""
    return _match_template(as_descriptor(descriptor))[0] in LOG_FAMILY


def template_constant(descriptor):
    """Resolved constant of a template descriptor; 0.0 when it has none."""
    kind, shifted = _match_template(as_descriptor(descriptor))
    if kind is None or shifted.constant is None:
        return 0.0
    return float(shifted.constant)


def _map_shifts(node, fn):
    if isinstance(node, Shifted):
        return fn(Shifted(_map_shifts(node.child, fn), node.constant))
    if isinstance(node, Unary):
        return Unary(node.op, _map_shifts(node.child, fn))
    if isinstance(node, Binary):
        return Binary(node.op, _map_shifts(node.left, fn), _map_shifts(node.right, fn))
    return node


def resolve_constant(descriptor, constant):
    """Binds every unresolved placeholder of the descriptor to *constant*."""
    constant = float(constant)
    return _map_shifts(as_descriptor(descriptor),
                       lambda s: Shifted(s.child, constant) if s.constant is None else s)


def freeze_placeholders(descriptor):
    """Binds unresolved placeholders to the surrogate value they were computed with."""
    return resolve_constant(descriptor, SURROGATE_CONSTANT)


# ------------------------------------------------------------------------
# Evaluation
# ------------------------------------------------------------------------

def _lookup(primitives, name):
    if name == PI_SYMBOL:
        return np.pi
    if name in primitives:
        return np.asarray(primitives[name], dtype=float)
    if name == PLACEHOLDER:
        return SURROGATE_CONSTANT
    raise EvalError(f"Unknown variable '{name}'.")


def _eval_node(node, primitives):
    if isinstance(node, Leaf):
        return _lookup(primitives, node.name)
    if isinstance(node, Number):
        return node.value
    if isinstance(node, Shifted):
        const = SURROGATE_CONSTANT if node.constant is None else node.constant
        return _eval_node(node.child, primitives) + const
    if isinstance(node, Unary):
        return UNARY_FUNCS[node.op](_eval_node(node.child, primitives))
    if isinstance(node, Binary):
        return BINARY_FUNCS[node.op](_eval_node(node.left, primitives),
                                     _eval_node(node.right, primitives))
    raise TypeError(f"Not a descriptor node: {node!r}")


def _n_rows(primitives):
    if isinstance(primitives, pd.DataFrame):
        return len(primitives)
    return len(next(iter(primitives.values())))


def evaluate_descriptor(descriptor, primitives, constant=None):
    """
    Evaluates one descriptor on a primitive DataFrame.

    If the descriptor carries a placeholder it must be a template, and
    `op(base + constant)` is returned (constant None falls back to the
    surrogate). Otherwise the expression is evaluated generically. Domain
    violations come back as NaN.
    """
    node = as_descriptor(descriptor)
    with np.errstate(all='ignore'):
        if has_placeholder(node):
            template = parse_descriptor(node)
            base = _lookup(primitives, template.feature)
            if constant is None or np.isnan(constant):
                constant = SURROGATE_CONSTANT
            values = TEMPLATE_FUNCS[template.kind](base + float(constant))
        else:
            values = _eval_node(node, primitives)
    values = np.array(np.broadcast_to(values, (_n_rows(primitives),)), dtype=float)
    values[~np.isfinite(values)] = np.nan
    return values


def build_design_matrix(descriptors, primitives, constants=None):
    """
    Evaluates every descriptor in order into an n×k matrix.

    `constants` is parallel to `descriptors`; entries for descriptors without
    a placeholder are ignored. This is the only place columns are
    rematerialised when constants change.
    """
    nodes = [as_descriptor(d) for d in descriptors]
    if constants is None:
        constants = [None] * len(nodes)
    elif len(constants) != len(nodes):
        raise ConfigurationError(
            f"Got {len(constants)} constants for {len(nodes)} descriptors.")
    phi = np.empty((_n_rows(primitives), len(nodes)), dtype=float)
    for j, (node, const) in enumerate(zip(nodes, constants)):
        phi[:, j] = evaluate_descriptor(node, primitives, const)
    return phi


# ------------------------------------------------------------------------
# SymPy export
# ------------------------------------------------------------------------

_SYMPY_UNARY = {
    'log': sympy.log, 'sqrt': sympy.sqrt, 'abs': sympy.Abs, 'exp': sympy.exp,
    'sin': sympy.sin, 'cos': sympy.cos, 'neg': lambda a: -a,
}
_SYMPY_BINARY = {
    '+': lambda a, b: a + b, '-': lambda a, b: a - b, '*': lambda a, b: a * b,
    '/': lambda a, b: a / b, '^': lambda a, b: a ** b,
}


def to_sympy(descriptor, symbols=None):
    """Converts a descriptor into a SymPy expression for pretty printing."""
    node = as_descriptor(descriptor)
    symbols = {} if symbols is None else symbols
    if isinstance(node, Leaf):
        if node.name == PI_SYMBOL:
            return sympy.pi
        return symbols.setdefault(node.name, sympy.Symbol(node.name, real=True))
    if isinstance(node, Number):
        return sympy.Integer(int(node.value)) if float(node.value).is_integer() else sympy.Float(node.value)
    if isinstance(node, Shifted):
        const = (symbols.setdefault(PLACEHOLDER, sympy.Symbol(PLACEHOLDER, real=True))
                 if node.constant is None else sympy.Float(node.constant, 6))
        return to_sympy(node.child, symbols) + const
    if isinstance(node, Unary):
        return _SYMPY_UNARY[node.op](to_sympy(node.child, symbols))
    if isinstance(node, Binary):
        return _SYMPY_BINARY[node.op](to_sympy(node.left, symbols), to_sympy(node.right, symbols))
    raise TypeError(f"Not a descriptor node: {node!r}")
