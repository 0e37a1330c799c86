import os

import numpy as np
import pandas as pd
import pytest

import opsis.models
from opsis import OpsisRegressor
from opsis.descriptors import (
    Leaf, Shifted, Unary, base_features, has_placeholder, is_log_family, template_constant
)
from opsis.exceptions import ConfigurationError, SelectionExhaustionError
from opsis.features import DescriptorState


def keep_all(X, y, **kwargs):
    return np.arange(X.shape[1])


def fail_if_called(X, y, **kwargs):
    raise AssertionError("descriptor screening should have been skipped")


@pytest.fixture
def log_data():
    """y = 5 log(x2 + 1.5) + 2 log(x4 + 0.3) on five primary features."""
    rng = np.random.default_rng(2024)
    X = pd.DataFrame({f"x{i + 1}": rng.uniform(0.1, 5, 2000) for i in range(5)})
    y = 5.0 * np.log(X['x2'] + 1.5) + 2.0 * np.log(X['x4'] + 0.3)
    return X, y.to_numpy()


@pytest.fixture
def small_data():
    rng = np.random.default_rng(42)
    X = pd.DataFrame({f"x{i + 1}": rng.uniform(0.5, 3, 200) for i in range(6)})
    y = X['x1'] * X['x2'] + 0.01 * rng.normal(size=200)
    return X, y.to_numpy()


def test_exact_recovery(log_data, monkeypatch):
    monkeypatch.setattr("opsis.models.tree_importance_screen", fail_if_called)
    X, y = log_data
    config = {"opt": ["binary", "unary"], "hold": 2, "K": 2, "random_state": 0, "verbose": False}
    model = OpsisRegressor(**config).fit(X, y)
    res = model.result_

    assert res.exact_recovery
    assert res.sel_size == [None, None]
    assert len(res.gen_size) == 3
    assert res.coefficients[0] == 0.0

    by_feature = {next(iter(base_features(d))): (template_constant(d), w)
                  for d, w in zip(res.descriptors, res.coefficients[1:])}
    assert set(by_feature) == {'x2', 'x4'}
    assert by_feature['x2'][0] == pytest.approx(1.5, abs=1e-3)
    assert by_feature['x4'][0] == pytest.approx(0.3, abs=1e-3)
    assert by_feature['x2'][1] == pytest.approx(5.0, abs=1e-3)
    assert by_feature['x4'][1] == pytest.approx(2.0, abs=1e-3)
    assert res.in_sample_rmse < 1e-12

    np.testing.assert_allclose(model.predict(X), y, atol=1e-4)


def test_full_pipeline_recovers_log_terms(log_data, monkeypatch):
    monkeypatch.setattr("opsis.models.tree_importance_screen", keep_all)
    X, y = log_data
    X, y = X.iloc[:400, :4].copy(), y[:400] + 1.0
    config = {"opt": ["binary", "unary"], "K": 2, "n_sweeps": 3, "nfolds": 5,
              "random_state": 1, "verbose": False}
    model = OpsisRegressor(**config).fit(X, y)
    res = model.result_

    assert not res.exact_recovery
    assert len(res.gen_size) == 3
    assert len(res.sel_size) == 3
    assert all(s is not None for s in res.sel_size)
    assert set().union(*(base_features(d) for d in res.descriptors)) == {'x2', 'x4'}
    assert res.in_sample_rmse < 0.05 * np.std(y)
    assert res.lzero_best_k == 2
    assert len(model.predict(X)) == len(y)


def test_held_iterations_are_recorded(log_data, monkeypatch):
    calls = []

    def counting_screen(X, y, **kwargs):
        calls.append(X.shape[1])
        return np.arange(X.shape[1])

    monkeypatch.setattr("opsis.models.tree_importance_screen", counting_screen)
    X, y = log_data
    model = OpsisRegressor(opt=["binary", "unary", "binary"], hold=1, K=1,
                           nfolds=3, verbose=False)
    model.fit(X.iloc[:150, :3], y[:150])
    assert len(calls) == 2
    assert model.result_.sel_size[0] is None
    assert all(s is not None for s in model.result_.sel_size[1:])


def test_size_history_is_monotonic(log_data, monkeypatch):
    monkeypatch.setattr("opsis.models.tree_importance_screen", keep_all)
    X, y = log_data
    model = OpsisRegressor(opt=["binary", "unary", "binary"], hold=1, K=1,
                           nfolds=3, verbose=False)
    res = model.fit(X.iloc[:150, :3], y[:150]).result_
    gen, sel = res.gen_size, res.sel_size
    assert len(gen) == 4
    for i, s in enumerate(sel):
        if s is not None:
            assert s <= gen[i]
        assert gen[i + 1] >= (gen[i] if s is None else s)


def test_log_placeholders_resolved_before_next_stage(log_data, monkeypatch):
    monkeypatch.setattr("opsis.models.tree_importance_screen", keep_all)
    seen = []
    real_stage = opsis.models.apply_operator_stage

    def recording_stage(state, stage, *args, **kwargs):
        logs = [d for d in state.descriptors if is_log_family(d)]
        seen.append((sum(has_placeholder(d) for d in logs),
                     sum(not has_placeholder(d) for d in logs)))
        return real_stage(state, stage, *args, **kwargs)

    monkeypatch.setattr("opsis.models.apply_operator_stage", recording_stage)
    X, y = log_data
    OpsisRegressor(opt=["binary", "unary", "binary"], K=1, nfolds=3,
                   verbose=False).fit(X.iloc[:150, :3], y[:150])
    assert len(seen) == 3
    unresolved, resolved = seen[2]
    assert unresolved == 0
    assert resolved > 0


def test_empty_screen_raises(small_data, monkeypatch):
    monkeypatch.setattr("opsis.models.tree_importance_screen",
                        lambda X, y, **kwargs: np.array([], dtype=int))
    X, y = small_data
    with pytest.raises(SelectionExhaustionError):
        OpsisRegressor(opt=["binary"], K=1, verbose=False).fit(X, y)


def test_unknown_placeholder_feature_is_dropped_before_refinement(log_data):
    X, y = log_data
    prims = X.iloc[:300, :3].reset_index(drop=True)
    prims['CONST'] = 1.0
    state = DescriptorState.from_primitives(prims, y[:300])
    good = Unary('log', Shifted(Leaf('x2')))
    bad = Unary('log', Shifted(Leaf('x9')))
    state = state.append(np.column_stack([np.log(prims['x2'] + 1.0), np.zeros(300)]),
                         [good, bad])

    with pytest.warns(UserWarning):
        out = OpsisRegressor(verbose=False)._resolve_placeholders(state, predicate=is_log_family)

    assert bad not in out.descriptors
    assert out.n_columns == state.n_columns - 1
    logs = [d for d in out.descriptors if is_log_family(d)]
    assert len(logs) == 1 and not has_placeholder(logs[0])
    assert base_features(logs[0]) == {'x2'}


def test_no_prescreen_holds_first_iteration(log_data, monkeypatch):
    monkeypatch.setattr("opsis.models.tree_importance_screen", keep_all)
    X, y = log_data
    model = OpsisRegressor(opt=["binary", "unary"], pre_screen=False, K=1,
                           nfolds=3, verbose=False)
    model.fit(X.iloc[:150, :3], y[:150])
    assert model.hold == 0
    assert model.result_.sel_size[0] is None
    assert model.result_.sel_size[1] is not None


def test_degenerate_primary_feature_is_removed(log_data, monkeypatch):
    monkeypatch.setattr("opsis.models.tree_importance_screen", keep_all)
    X, y = log_data
    X = X.iloc[:200, :3].copy()
    X['z'] = 2.0
    model = OpsisRegressor(opt=["binary"], K=1, nfolds=3, verbose=False).fit(X, y[:200])
    for node in model.state_.descriptors:
        assert 'z' not in base_features(node)
    assert model.result_.gen_size[0] == 4


def test_fixed_seed_is_deterministic(small_data):
    X, y = small_data
    config = {"opt": ["binary"], "K": 2, "nfolds": 3, "num_trees": 20,
              "num_permute_samples": 5, "random_state": 42, "verbose": False}
    a = OpsisRegressor(**config).fit(X, y).result_
    b = OpsisRegressor(**config).fit(X, y).result_
    assert a.descriptor_names == b.descriptor_names
    np.testing.assert_array_equal(a.coefficients, b.coefficients)
    assert a.gen_size == b.gen_size
    assert a.sel_size == b.sel_size
    assert a.gen_size[0] == 7


def test_out_of_sample_rmse(small_data, monkeypatch):
    monkeypatch.setattr("opsis.models.tree_importance_screen", keep_all)
    X, y = small_data
    model = OpsisRegressor(opt=["binary"], K=1, nfolds=3, out_sample=True,
                           train_ratio=0.8, random_state=3, verbose=False).fit(X, y)
    assert model.result_.out_sample_rmse is not None
    assert model.result_.out_sample_rmse < 0.1


def test_predict_accepts_arrays(small_data, monkeypatch):
    monkeypatch.setattr("opsis.models.tree_importance_screen", keep_all)
    X, y = small_data
    model = OpsisRegressor(opt=["binary"], K=1, nfolds=3, verbose=False).fit(X.to_numpy(), y)
    assert model.primary_names_ == [f"x{i + 1}" for i in range(6)]
    np.testing.assert_allclose(model.predict(X.to_numpy()), model.predict(X))
    assert model.score(X, y) > 0.99
    with pytest.raises(ValueError):
        model.predict(X.to_numpy()[:, :3])


def test_save_results(small_data, monkeypatch, tmp_path):
    monkeypatch.setattr("opsis.models.tree_importance_screen", keep_all)
    X, y = small_data
    workdir = tmp_path / "opsis_run"
    model = OpsisRegressor(opt=["binary"], K=2, nfolds=3, aic=True,
                           workdir=str(workdir), verbose=False).fit(X, y)

    assert os.path.exists(workdir / "opsis.out")
    assert os.path.exists(workdir / "models" / "model_K01.dat")
    assert os.path.exists(workdir / "desc_dat" / "selected.dat")
    assert "BEST MODEL" in (workdir / "opsis.out").read_text()
    assert "y =" in model.best_model_summary()
    assert model.best_model_latex().startswith("$")


def test_params_roundtrip():
    model = OpsisRegressor(stages="union", seed=7, K=3)
    assert model.opt == ['all']
    assert model.random_state == 7
    params = model.get_params()
    assert params['K'] == 3
    model.set_params(K=4, screen_method='local')
    assert model.K == 4
    assert model.screen_method == 'local'
    assert model.random_state == 7


@pytest.mark.parametrize("config", [
    {"opt": ["ternary"]},
    {"screen_method": "bogus"},
])
def test_invalid_construction(config):
    with pytest.raises(ConfigurationError):
        OpsisRegressor(**config)


@pytest.mark.parametrize("config", [
    {"opt": ["binary", "unary"], "hold": 3},
    {"opt": ["binary", "unary", "binary"], "num_trees": [10, 20]},
    {"train_ratio": 0.0},
    {"nfolds": 2},
    {"K": 0},
    {"constant_bounds": (5.0, 0.0)},
    {"train_idx": [0, 0, 1]},
    {"hold": "1"},
    {"hold": 1.5},
])
def test_invalid_configuration(small_data, config, monkeypatch):
    monkeypatch.setattr("opsis.models.tree_importance_screen", fail_if_called)
    X, y = small_data
    with pytest.raises(ConfigurationError):
        OpsisRegressor(verbose=False, **config).fit(X, y)


def test_invalid_data(small_data, monkeypatch):
    monkeypatch.setattr("opsis.models.tree_importance_screen", fail_if_called)
    X, y = small_data
    model = OpsisRegressor(verbose=False)
    with pytest.raises(ConfigurationError):
        model.fit(X, y[:-1])
    with pytest.raises(ConfigurationError):
        model.fit(X.rename(columns={'x1': 'CONST'}), y)
    X_nan = X.copy()
    X_nan.iloc[0, 0] = np.nan
    with pytest.raises(ConfigurationError):
        model.fit(X_nan, y)
    with pytest.raises(ConfigurationError):
        model.fit(np.arange(10.0), np.arange(10.0))
