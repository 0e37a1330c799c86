"""
Best-subset (L0) selection over the descriptors that survived screening.

For every model size k = 1..K all k-combinations of candidate columns are
fitted by ordinary least squares (with intercept) and the one with the
smallest residual sum of squares is kept. The final model order is chosen by
AIC or fixed at K.

Example:
    >>> res = best_subset_select(X_sel, y, names, K=3, aic=True)
    >>> res['best_k'], res['models'][res['best_k']]['names']
"""
import math
import time
import warnings
from itertools import combinations

import numpy as np
from joblib import Parallel, delayed
from sklearn.linear_model import LinearRegression

from .constants import MAX_COMBINATIONS_WARNING_THRESHOLD
from .exceptions import ConfigurationError


def _score_combo(combo, X, y):
    """Helper function for parallelized brute-force scoring."""
    A = np.column_stack([np.ones(len(y)), X[:, list(combo)]])
    try:
        coef, *_ = np.linalg.lstsq(A, y, rcond=None)
    except np.linalg.LinAlgError:
        return float('inf'), combo
    rss = float(np.sum((y - A @ coef) ** 2))
    return (rss if np.isfinite(rss) else float('inf')), combo


def information_criterion(rss, n, k):
    """AIC of a k-descriptor model with intercept: n·ln(RSS/n) + 2(k+1)."""
    if rss <= 1e-12:
        return -np.inf
    return n * np.log(rss / n) + 2 * (k + 1)


def best_subset_select(X, y, names=None, K=5, aic=False, parallel=False, n_jobs=-1,
                       train_idx=None, verbose=True):
    """
    Exhaustive best-subset regression for k = 1..K.

    Ties on RSS are broken by the lexicographically smallest index tuple, so
    the result does not depend on evaluation order (parallel or not).

    Returns:
        dict with 'models' {k: {'indices', 'names', 'coef' (intercept first),
        'rss', 'rmse', 'aic', 'model'}}, 'best_k' and 'best'.
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    if K < 1:
        raise ConfigurationError("K must be >= 1.")
    names = list(names) if names is not None else [f"d{j}" for j in range(X.shape[1])]
    rows = np.arange(len(y)) if train_idx is None else np.asarray(train_idx)
    Xt, yt = X[rows], y[rows]
    n, p = Xt.shape

    if verbose:
        print("\n" + "=" * 20 + " Starting Best-Subset (L0) Search " + "=" * 20)
    models = {}
    for k in range(1, K + 1):
        t_start = time.time()
        if k > p:
            if verbose: print(f"  Model size {k} is larger than the number of candidates ({p}). Stopping.")
            break
        n_combos = math.comb(p, k)
        if n_combos > MAX_COMBINATIONS_WARNING_THRESHOLD:
            warnings.warn(f"Number of combinations ({n_combos:,}) is very large. This may take a long time.")

        combos = combinations(range(p), k)
        if parallel:
            tasks = (delayed(_score_combo)(combo, Xt, yt) for combo in combos)
            results = Parallel(n_jobs=n_jobs, prefer="threads")(tasks)
        else:
            results = [_score_combo(combo, Xt, yt) for combo in combos]

        valid = [r for r in results if np.isfinite(r[0])]
        if not valid:
            if verbose: print(f"  No valid models found for k={k}. Stopping.")
            break
        best_rss, best_combo = min(valid)

        indices = list(best_combo)
        model = LinearRegression().fit(Xt[:, indices], yt)
        models[k] = {
            'indices': indices,
            'names': [names[j] for j in indices],
            'coef': np.r_[model.intercept_, model.coef_],
            'rss': best_rss,
            'rmse': float(np.sqrt(best_rss / n)),
            'aic': information_criterion(best_rss, n, k),
            'model': model,
        }
        if verbose:
            print(f"  k={k}: {n_combos:,} combinations, best RSS {best_rss:.6g} "
                  f"({time.time() - t_start:.2f}s) -> {', '.join(models[k]['names'])}")

    if not models:
        return {'models': {}, 'best_k': None, 'best': None}

    if aic:
        best_k = min(models, key=lambda k: (models[k]['aic'], k))
        if verbose: print(f"Selected best k = {best_k} (lowest AIC {models[best_k]['aic']:.4g})")
    else:
        best_k = max(models)
    return {'models': models, 'best_k': best_k, 'best': models[best_k]}
