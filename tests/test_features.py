import numpy as np
import pandas as pd
import pytest

from opsis.constants import BIAS_COLUMN
from opsis.descriptors import Leaf, build_design_matrix, has_placeholder, is_template
from opsis.exceptions import ConfigurationError
from opsis.features import (
    DescriptorState, Feature, apply_operator_stage, postprocess_features,
    materialize_descriptors
)


@pytest.fixture
def state():
    rng = np.random.default_rng(7)
    prims = pd.DataFrame({'x1': rng.uniform(0.1, 5, 40),
                          'x2': rng.uniform(0.1, 5, 40),
                          'x3': rng.uniform(0.1, 5, 40)})
    prims[BIAS_COLUMN] = 1.0
    y = prims['x1'] * prims['x2']
    return DescriptorState.from_primitives(prims, y).record_generation()


def _assert_consistent(state):
    assert state.X.shape == (len(state.y), len(state.descriptors))
    np.testing.assert_allclose(build_design_matrix(state.descriptors, state.primitives),
                               state.X, equal_nan=True)


def test_initial_state(state):
    assert state.names == ['x1', 'x2', 'x3', 'CONST']
    assert state.bias_index == 3
    assert state.gen_size == (4,)
    assert state.sel_size == ()


def test_binary_stage_adds_shifts_and_pairs(state):
    new = apply_operator_stage(state, 'binary')
    names = new.names
    assert names[:4] == ['x1', 'x2', 'x3', 'CONST']
    for x in ('x1', 'x2', 'x3'):
        assert f"({x}+CONST)" in names
    assert "(x1*x2)" in names
    assert "(x2/x1)" in names
    assert "abs((x1-x2))" in names
    # bias never pairs with anything
    assert {n for n in names if 'CONST' in n} == {'CONST', '(x1+CONST)', '(x2+CONST)', '(x3+CONST)'}
    _assert_consistent(new)
    # state is never modified in place
    assert state.n_columns == 4


def test_unary_stage_on_bare_shifts(state):
    binary = apply_operator_stage(state, 'binary')
    n_shifts = sum(1 for n in binary.names if n.endswith('+CONST)') and n.count('(') == 1)
    unary = apply_operator_stage(binary, 'unary')
    assert unary.n_columns == binary.n_columns + 3 * n_shifts
    assert unary.names[:binary.n_columns] == binary.names
    assert "log((x1+CONST))" in unary.names
    assert "sqrt((x2+CONST))" in unary.names
    assert "abs((x3+CONST))" in unary.names
    _assert_consistent(unary)


def test_unary_stage_without_shifts_keeps_state(state):
    unary = apply_operator_stage(state, 'unary')
    assert unary.names == state.names


def test_union_stage_has_unary_and_binary(state):
    union = apply_operator_stage(state, 'union')
    names = union.names
    assert "log(x1)" in names
    assert "(x2)^2" in names
    assert "exp((-x3))" in names
    assert "(x1*x3)" in names
    assert "sin((pi*x1))" not in names
    _assert_consistent(union)


def test_union_stage_with_sin_cos(state):
    union = apply_operator_stage(state, 'all', sin_cos=True)
    assert "sin((pi*x1))" in union.names
    assert "cos((pi*x2))" in union.names


def test_invalid_stage(state):
    with pytest.raises(ConfigurationError):
        apply_operator_stage(state, 'ternary')


def test_placeholders_only_survive_in_templates(state):
    grown = apply_operator_stage(apply_operator_stage(state, 'binary'), 'binary')
    for node in grown.descriptors:
        if has_placeholder(node):
            assert is_template(node)


def test_postprocess_drops_degenerate_columns():
    n = 20
    base = np.linspace(1, 2, n)
    feats = [
        Feature(Leaf(BIAS_COLUMN), np.ones(n)),
        Feature(Leaf('a'), base),
        Feature(Leaf('b'), base.copy()),
        Feature(Leaf('c'), np.full(n, 3.0)),
        Feature(Leaf('d'), np.r_[base[:-1], np.inf]),
        Feature(Leaf('e'), base * 1e40),
        Feature(Leaf('f'), base ** 2),
    ]
    kept = [f.name for f in postprocess_features(feats)]
    assert kept == ['CONST', 'a', 'f']


def test_postprocess_drops_near_duplicates_across_rounding_boundary():
    a = np.r_[1.23456499999999, np.linspace(2, 3, 19)]
    b = a.copy()
    b[0] += 2e-14
    feats = [Feature(Leaf(BIAS_COLUMN), np.ones(20)), Feature(Leaf('a'), a), Feature(Leaf('b'), b)]
    assert [f.name for f in postprocess_features(feats)] == ['CONST', 'a']


def test_postprocess_checks_neighbouring_buckets(monkeypatch):
    monkeypatch.setattr("opsis.features._signature", lambda values: int(values[0] >= 1.5))
    a = np.r_[1.5 - 1e-14, np.linspace(2, 3, 9)]
    b = np.r_[1.5, a[1:]]
    feats = [Feature(Leaf('a'), a), Feature(Leaf('b'), b), Feature(Leaf('c'), a ** 2)]
    assert [f.name for f in postprocess_features(feats)] == ['a', 'c']


def test_postprocess_keeps_stage_input():
    base = np.linspace(1, 2, 20)
    feats = [Feature(Leaf('a'), base), Feature(Leaf('b'), base.copy()),
             Feature(Leaf('c'), base.copy()), Feature(Leaf('d'), base ** 2)]
    kept = [f.name for f in postprocess_features(feats, n_existing=2)]
    assert kept == ['a', 'b', 'd']


def test_binary_stage_never_shrinks(state):
    state = state.append(state.X[:, [0]], [Leaf('x1_copy')])
    out = apply_operator_stage(state, 'binary')
    assert out.descriptors[:state.n_columns] == state.descriptors
    assert out.n_columns > state.n_columns


def test_state_helpers(state):
    sub = state.select([0, 3])
    assert sub.names == ['x1', 'CONST']
    assert sub.bias_index == 1
    rec = sub.record_selection(2).record_selection(None)
    assert rec.sel_size == (2, None)

    cols = np.column_stack([state.X[:, 1] * 2])
    replaced = state.replace_columns([1], cols, [Leaf('x2')])
    np.testing.assert_allclose(replaced.X[:, 1], 2 * state.X[:, 1])
    np.testing.assert_allclose(state.X[:, 1], state.primitives['x2'])

    with pytest.raises(ConfigurationError):
        DescriptorState(y=state.y, X=state.X, descriptors=state.descriptors[:2],
                        primitives=state.primitives)


def test_materialize_drops_bad_descriptors(state):
    with pytest.warns(UserWarning):
        nodes, X, kept = materialize_descriptors(["x1", "(x1*x9)", "log((", "log((x2+CONST))"],
                                                 state.primitives, [None, None, None, 0.5])
    assert len(nodes) == 2
    assert kept == [0, 3]
    np.testing.assert_allclose(X[:, 1], np.log(state.primitives['x2'] + 0.5))


def test_dimension_filter_rejects_inconsistent_sums():
    pytest.importorskip("pint")
    from opsis.units import DimensionFilter

    prims = pd.DataFrame({'a': np.linspace(1, 2, 10), 't': np.linspace(2, 5, 10)})
    prims[BIAS_COLUMN] = 1.0
    dim_filter = DimensionFilter({'a': 'm', 't': 's'}, ['a', 't'])
    assert dim_filter("(a/t)")
    assert not dim_filter("(a+t)")
    assert not dim_filter("log((a+CONST))")

    st = DescriptorState.from_primitives(prims, np.arange(10.0), dimension_filter=dim_filter)
    new = apply_operator_stage(st, 'binary', dimension_filter=dim_filter)
    assert "(a*t)" in new.names
    assert "(a+t)" not in new.names
    assert "abs((a-t))" not in new.names
    assert len(new.units) == new.n_columns
