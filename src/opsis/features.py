"""
Descriptor-space construction.

Takes the current working set of descriptors and, using one operator stage
(binary, unary or their union), generates the next generation of candidate
descriptors examined by the screening steps.

Example:
    Working set       :  x1, x2, CONST
    binary stage      :  (x1+x2), (x1-x2), (x1*x2), (x1/x2), (x2/x1),
                         abs((x1-x2)), (x1+CONST), (x2+CONST)
    unary stage       :  log((x1+CONST)), sqrt((x1+CONST)), abs((x1+CONST)), ...

Pairing a primitive with the bias column CONST yields the shifted term
`(x+CONST)`: an additive constant that is refined later. Every stage returns a
new DescriptorState; states are never modified in place.
"""
import warnings
from dataclasses import dataclass, replace
from typing import Optional

import numpy as np
import pandas as pd

from .constants import (
    BIAS_COLUMN, SURROGATE_CONSTANT, PI_SYMBOL, UNARY, BINARY, ALL,
    STAGE_ALIASES, VALID_STAGES, MAX_ABS_FEAT_VAL, DUPLICATE_TOL
)
from .descriptors import (
    Leaf, Number, Unary, Binary, Shifted, RESERVED_NAMES, to_string,
    evaluate_descriptor, has_placeholder, is_template, freeze_placeholders,
    as_descriptor
)
from .exceptions import ParseError, EvalError, ConfigurationError


# ------------------------------------------------------------------------
# Dataset state
# ------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class DescriptorState:
    """Immutable working set threaded through the search loop.

    `X[:, j]` is the materialised column of `descriptors[j]`. The bias column
    CONST lives in `X` like any other descriptor. `primitives` holds the raw
    primary features (plus the bias) that descriptors are evaluated against.
    """
    y: np.ndarray
    X: np.ndarray
    descriptors: tuple
    primitives: pd.DataFrame
    units: Optional[tuple] = None
    gen_size: tuple = ()
    sel_size: tuple = ()
    train_idx: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.X.ndim != 2 or self.X.shape[1] != len(self.descriptors):
            raise ConfigurationError(
                f"State has {len(self.descriptors)} descriptors but "
                f"{self.X.shape[1] if self.X.ndim == 2 else '?'} columns.")
        if self.X.shape[0] != len(self.y):
            raise ConfigurationError(
                f"State has {self.X.shape[0]} rows but {len(self.y)} responses.")
        if self.units is not None and len(self.units) != len(self.descriptors):
            raise ConfigurationError(
                f"State has {len(self.units)} units for {len(self.descriptors)} descriptors.")

    @classmethod
    def from_primitives(cls, primitives, y, train_idx=None, dimension_filter=None):
        nodes = tuple(Leaf(str(c)) for c in primitives.columns)
        return cls(y=np.asarray(y, dtype=float),
                   X=primitives.to_numpy(dtype=float, copy=True),
                   descriptors=nodes,
                   primitives=primitives,
                   units=_units_for(nodes, dimension_filter),
                   train_idx=train_idx)

    @property
    def names(self):
        return [to_string(d) for d in self.descriptors]

    @property
    def n_columns(self):
        return self.X.shape[1]

    @property
    def bias_index(self):
        try:
            return self.descriptors.index(Leaf(BIAS_COLUMN))
        except ValueError:
            return None

    def select(self, indices):
        """Keeps the columns at *indices* (in the given order)."""
        indices = list(indices)
        return replace(self, X=self.X[:, indices],
                       descriptors=tuple(self.descriptors[i] for i in indices),
                       units=None if self.units is None else tuple(self.units[i] for i in indices))

    def append(self, columns, descriptors, units=None):
        columns = np.asarray(columns, dtype=float).reshape(self.X.shape[0], -1)
        new_units = None
        if self.units is not None:
            new_units = self.units + tuple(units if units is not None else [None] * len(descriptors))
        return replace(self, X=np.hstack([self.X, columns]),
                       descriptors=self.descriptors + tuple(descriptors),
                       units=new_units)

    def replace_columns(self, indices, columns, descriptors):
        """Overwrites columns (and their descriptors) at *indices*."""
        X = self.X.copy()
        nodes = list(self.descriptors)
        for k, j in enumerate(indices):
            X[:, j] = columns[:, k]
            nodes[j] = descriptors[k]
        return replace(self, X=X, descriptors=tuple(nodes))

    def record_generation(self):
        return replace(self, gen_size=self.gen_size + (self.n_columns,))

    def record_selection(self, size):
        """`size=None` marks an iteration whose screening was skipped."""
        return replace(self, sel_size=self.sel_size + (size,))


def _units_for(nodes, dimension_filter):
    if dimension_filter is None or not dimension_filter.active:
        return None
    out = []
    for node in nodes:
        unit = dimension_filter.unit_of(node)
        out.append(unit if unit is not None else dimension_filter.ureg.dimensionless)
    return tuple(out)


# ------------------------------------------------------------------------
# Feature: a descriptor node with its column
# ------------------------------------------------------------------------

class Feature:
    def __init__(self, node, values):
        self.node = node
        self.values = np.asarray(values, dtype=float)
        self.has_negative = bool(np.any(self.values < 0))

    @property
    def name(self):
        return to_string(self.node)

    @property
    def is_bias(self):
        return self.node == Leaf(BIAS_COLUMN)

    @property
    def is_primitive(self):
        return isinstance(self.node, Leaf) and self.node.name not in RESERVED_NAMES

    def _apply_binary_op(self, other, op_func, node):
        with np.errstate(all='ignore'):
            return Feature(node, op_func(self.values, other.values))

    def __add__(self, other):
        return self._apply_binary_op(other, np.add, Binary('+', self.node, other.node))

    def __sub__(self, other):
        return self._apply_binary_op(other, np.subtract, Binary('-', self.node, other.node))

    def __mul__(self, other):
        return self._apply_binary_op(other, np.multiply, Binary('*', self.node, other.node))

    def __truediv__(self, other):
        return self._apply_binary_op(other, np.divide, Binary('/', self.node, other.node))

    def abs_diff(self, other):
        return self._apply_binary_op(other, lambda a, b: np.abs(a - b),
                                     Unary('abs', Binary('-', self.node, other.node)))

    def shift(self):
        """`(x+CONST)`, materialised with the surrogate constant."""
        return Feature(Shifted(self.node), self.values + SURROGATE_CONSTANT)

    def _apply_unary_op(self, val_op, node):
        with np.errstate(all='ignore'):
            return Feature(node, val_op(self.values))

    def log(self):
        return self._apply_unary_op(np.log, Unary('log', self.node))

    def log_abs(self):
        return self._apply_unary_op(lambda a: np.log(np.abs(a)),
                                    Unary('log', Unary('abs', self.node)))

    def sqrt(self):
        return self._apply_unary_op(np.sqrt, Unary('sqrt', self.node))

    def sqrt_abs(self):
        return self._apply_unary_op(lambda a: np.sqrt(np.abs(a)),
                                    Unary('sqrt', Unary('abs', self.node)))

    def abs(self):
        return self._apply_unary_op(np.abs, Unary('abs', self.node))

    def exp(self):
        return self._apply_unary_op(np.exp, Unary('exp', self.node))

    def exp_neg(self):
        return self._apply_unary_op(lambda a: np.exp(np.negative(a)),
                                    Unary('exp', Unary('neg', self.node)))

    def power(self, p):
        return self._apply_unary_op(lambda a: np.power(a, float(p)),
                                    Binary('^', self.node, Number(float(p))))

    def sin_pi(self):
        return self._apply_unary_op(lambda a: np.sin(np.multiply(np.pi, a)),
                                    Unary('sin', Binary('*', Leaf(PI_SYMBOL), self.node)))

    def cos_pi(self):
        return self._apply_unary_op(lambda a: np.cos(np.multiply(np.pi, a)),
                                    Unary('cos', Binary('*', Leaf(PI_SYMBOL), self.node)))

    def unary_candidates(self, sin_cos=False, apply_pos_opt_on_neg_x=True):
        """Unary operator set of the union stage."""
        out = [self.exp(), self.exp_neg()]
        if not self.has_negative:
            out += [self.log(), self.sqrt()]
        elif apply_pos_opt_on_neg_x:
            out += [self.log_abs(), self.sqrt_abs()]
        out += [self.power(-1), self.power(2), self.power(3)]
        if sin_cos:
            out += [self.sin_pi(), self.cos_pi()]
        return out

    def binary_candidates(self, other):
        return [self + other, self - other, self * other, self / other,
                other / self, self.abs_diff(other)]


def _settle_placeholders(feature):
    # Only template descriptors keep a refinable constant.
    if has_placeholder(feature.node) and not is_template(feature.node):
        feature.node = freeze_placeholders(feature.node)
    return feature


# ------------------------------------------------------------------------
# Stages
# ------------------------------------------------------------------------

def _binary_stage(features, dimension_filter):
    pool = [f for f in features if not f.is_bias]
    has_bias = any(f.is_bias for f in features)
    new = []
    if has_bias:
        new += [f.shift() for f in pool if f.is_primitive]
    for i in range(len(pool)):
        for j in range(i + 1, len(pool)):
            for cand in pool[i].binary_candidates(pool[j]):
                if dimension_filter is None or dimension_filter(cand.node):
                    new.append(_settle_placeholders(cand))
    return new


def _unary_stage(features, sin_cos, apply_pos_opt_on_neg_x, dimension_filter):
    new = []
    for f in features:
        if f.is_bias:
            continue
        for cand in f.unary_candidates(sin_cos, apply_pos_opt_on_neg_x):
            if dimension_filter is None or dimension_filter(cand.node):
                new.append(_settle_placeholders(cand))
    return new


def _placeholder_unary_stage(features):
    new = []
    for f in features:
        node = f.node
        if not (isinstance(node, Shifted) and node.constant is None and isinstance(node.child, Leaf)):
            continue
        new += [f.log(), f.sqrt(), f.abs()]
    return new


def _signature(values):
    # asinh of the L1 mass of the leading values; near-equal columns land in
    # the same or an adjacent bucket
    return int(np.floor(np.arcsinh(np.sum(np.abs(values[:8]))) * 1e6))


def postprocess_features(features, max_abs_feat_val=MAX_ABS_FEAT_VAL, n_existing=0):
    """Drops non-finite, oversize, constant and duplicate columns (first kept).

    The first `n_existing` features are the stage input and are always kept,
    so a generating stage never shrinks the descriptor space.
    """
    kept, buckets = [], {}
    for i, f in enumerate(features):
        v = f.values
        if f.is_bias:
            kept.append(f)
            continue
        if i < n_existing:
            kept.append(f)
            if np.all(np.isfinite(v)):
                buckets.setdefault(_signature(v), []).append(f)
            continue
        if not np.all(np.isfinite(v)) or np.max(np.abs(v), initial=0.0) > max_abs_feat_val:
            continue
        if v.size == 0 or np.ptp(v) < 1e-9 * max(1.0, float(np.max(np.abs(v)))):
            continue
        key = _signature(v)
        neighbours = (other for k in (key - 1, key, key + 1) for other in buckets.get(k, ()))
        if any(np.allclose(v, other.values, rtol=DUPLICATE_TOL, atol=DUPLICATE_TOL) for other in neighbours):
            continue
        buckets.setdefault(key, []).append(f)
        kept.append(f)
    return kept


def apply_operator_stage(state, stage, sin_cos=False, apply_pos_opt_on_neg_x=True,
                         dimension_filter=None, max_abs_feat_val=MAX_ABS_FEAT_VAL,
                         verbose=False):
    """Applies one operator stage and returns the next DescriptorState."""
    stage = STAGE_ALIASES.get(stage, stage)
    if stage not in VALID_STAGES:
        raise ConfigurationError(f"Unknown operator stage '{stage}'. Must be one of {VALID_STAGES}.")

    features = [Feature(node, state.X[:, j]) for j, node in enumerate(state.descriptors)]
    n_before = len(features)

    if stage == BINARY:
        if verbose: print("  Constructing descriptors using binary operators...")
        out = postprocess_features(features + _binary_stage(features, dimension_filter),
                                   max_abs_feat_val, n_existing=n_before)
    elif stage == UNARY:
        if verbose: print("  Constructing descriptors using unary operators...")
        # no pruning here, so freshly tagged placeholder terms reach refinement
        out = features + _placeholder_unary_stage(features)
    else:
        if verbose: print("  Constructing descriptors using all operators...")
        unary_new = _unary_stage(features, sin_cos, apply_pos_opt_on_neg_x, dimension_filter)
        binary_new = _binary_stage(features, dimension_filter)
        out = postprocess_features(features + unary_new + binary_new, max_abs_feat_val,
                                   n_existing=n_before)

    if verbose:
        print(f"    Initial p = {n_before}; New p = {len(out)}")

    nodes = tuple(f.node for f in out)
    X = np.column_stack([f.values for f in out]) if out else np.empty((len(state.y), 0))
    return replace(state, X=X, descriptors=nodes, units=_units_for(nodes, dimension_filter))


def materialize_descriptors(descriptors, primitives, constants=None):
    """
    Evaluates descriptors one by one, dropping (with a warning) any that fail
    to parse or reference an unknown variable.

    Returns the kept descriptor nodes, their n×k matrix and their positions
    in *descriptors*.
    """
    if constants is None:
        constants = [None] * len(descriptors)
    nodes, cols, kept = [], [], []
    for i, (descriptor, const) in enumerate(zip(descriptors, constants)):
        try:
            node = as_descriptor(descriptor)
            cols.append(evaluate_descriptor(node, primitives, const))
            nodes.append(node)
            kept.append(i)
        except (ParseError, EvalError) as e:
            warnings.warn(f"Dropping descriptor {descriptor!r}: {e}")
    X = np.column_stack(cols) if cols else np.empty((len(primitives), 0))
    return nodes, X, kept
