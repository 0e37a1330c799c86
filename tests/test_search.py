import numpy as np
import pytest

from opsis.exceptions import ConfigurationError
from opsis.scoring import (
    abs_correlations, correlation_screen, tree_importance_screen, lasso_screen
)
from opsis.search import best_subset_select, information_criterion


@pytest.fixture
def sample_data():
    rng = np.random.default_rng(5)
    X = rng.normal(size=(200, 6))
    y = 1.0 + 3.0 * X[:, 1] - 2.0 * X[:, 4] + 0.01 * rng.normal(size=200)
    return X, y


def test_best_subset_finds_true_support(sample_data):
    X, y = sample_data
    res = best_subset_select(X, y, K=3, verbose=False)
    assert sorted(res['models']) == [1, 2, 3]
    assert res['models'][2]['indices'] == [1, 4]
    np.testing.assert_allclose(res['models'][2]['coef'], [1.0, 3.0, -2.0], atol=0.01)
    assert res['best_k'] == 3


def test_aic_prefers_smallest_exact_model(sample_data):
    X, _ = sample_data
    y = 1.0 + 3.0 * X[:, 1] - 2.0 * X[:, 4]
    res = best_subset_select(X, y, K=4, aic=True, verbose=False)
    assert res["models"][2]["aic"] == -np.inf
    assert res["best_k"] == 2
    assert res["best"]["names"] == ["d1", "d4"]


def test_parallel_matches_serial(sample_data):
    X, y = sample_data
    serial = best_subset_select(X, y, K=2, verbose=False)
    parallel = best_subset_select(X, y, K=2, parallel=True, n_jobs=2, verbose=False)
    for k in serial['models']:
        assert serial['models'][k]['indices'] == parallel['models'][k]['indices']
        assert serial['models'][k]['rss'] == parallel['models'][k]['rss']


def test_ties_break_on_smallest_indices():
    x = np.linspace(0, 1, 30)
    X = np.column_stack([x, x, x])
    res = best_subset_select(X, 2 * x + 1, K=1, verbose=False)
    assert res['models'][1]['indices'] == [0]


def test_stops_when_k_exceeds_candidates(sample_data):
    X, y = sample_data
    res = best_subset_select(X[:, :2], y, K=5, verbose=False)
    assert sorted(res['models']) == [1, 2]
    with pytest.raises(ConfigurationError):
        best_subset_select(X, y, K=0)


def test_information_criterion():
    assert information_criterion(0.0, 10, 1) == -np.inf
    assert information_criterion(10.0, 10, 2) == pytest.approx(6.0)


def test_correlation_screen_drops_constant_columns():
    X = np.column_stack([np.arange(10.0), np.ones(10), np.arange(10.0) ** 2])
    y = np.arange(10.0) + 1
    assert list(correlation_screen(X, y)) == [0, 2]
    assert np.isnan(abs_correlations(X, np.ones(10))).all()


def test_tree_importance_screen_keeps_signal():
    rng = np.random.default_rng(0)
    X = rng.uniform(size=(300, 12))
    y = 10 * X[:, 0] + 5 * X[:, 2] ** 2 + 0.01 * rng.normal(size=300)
    for method in ('global_se', 'global_max', 'local'):
        keep = tree_importance_screen(X, y, method=method, num_trees=30,
                                      num_permute_samples=10, random_state=1)
        assert set(keep) == {0, 2}
    with pytest.raises(ConfigurationError):
        tree_importance_screen(X, y, method='bogus')


def test_tree_importance_screen_is_reproducible():
    rng = np.random.default_rng(1)
    X = rng.uniform(size=(150, 4))
    y = X[:, 0] + rng.normal(scale=0.1, size=150)
    a = tree_importance_screen(X, y, num_trees=20, num_permute_samples=5, random_state=3)
    b = tree_importance_screen(X, y, num_trees=20, num_permute_samples=5, random_state=3)
    np.testing.assert_array_equal(a, b)


def test_lasso_screen(sample_data):
    X, y = sample_data
    res = lasso_screen(X, y, nfolds=5, random_state=0)
    assert 1 in res['support'] and 4 in res['support']
    assert res['coef'].shape == (X.shape[1] + 1,)
    assert res['coef'][2] == pytest.approx(3.0, abs=0.1)


def test_lasso_screen_without_signal():
    X = np.ones((20, 3))
    with pytest.warns(UserWarning):
        res = lasso_screen(X, np.arange(20.0), nfolds=3)
    assert len(res['support']) == 0
