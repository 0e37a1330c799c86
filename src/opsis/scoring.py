"""
Screening collaborators and scoring helpers.

- Marginal correlation screen: drops columns whose correlation with the
  response is undefined (constant or non-finite columns).
- Tree-importance screen: random-forest variable importances compared with a
  permuted-response null distribution ("local", "global_max", "global_se").
- L1 screen: cross-validated LASSO on a log-spaced penalty grid.

Example:
    keep = tree_importance_screen(X, y, method="global_se", random_state=0)
    l1 = lasso_screen(X[:, keep], y, nfolds=10)
    l1["support"]           # indices with non-zero coefficient
"""
import numpy as np
import warnings

from sklearn.ensemble import RandomForestRegressor
from sklearn.linear_model import LassoCV
from sklearn.model_selection import KFold
from sklearn.preprocessing import StandardScaler
from sklearn.metrics import mean_squared_error

from .constants import GLOBAL_SE, GLOBAL_MAX, LOCAL, VALID_SCREEN_METHODS
from .exceptions import ConfigurationError


def rmse(y_true, y_pred):
    return float(np.sqrt(mean_squared_error(y_true, y_pred)))


def abs_correlations(X, y):
    """|Pearson correlation| of every column with y; NaN where undefined."""
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    with np.errstate(all='ignore'):
        Xc = X - X.mean(axis=0)
        yc = y - y.mean()
        denom = np.sqrt((Xc ** 2).sum(axis=0)) * np.sqrt((yc ** 2).sum())
        corr = np.abs(Xc.T @ yc) / denom
    constant = np.ptp(X, axis=0) == 0 if X.shape[0] else np.ones(X.shape[1], dtype=bool)
    corr[constant | ~np.isfinite(corr)] = np.nan
    if np.ptp(y) == 0:
        corr[:] = np.nan
    return corr


def correlation_screen(X, y):
    """Indices of columns whose correlation with y is defined."""
    return np.flatnonzero(np.isfinite(abs_correlations(X, y)))


def _rows(n, train_idx):
    return np.arange(n) if train_idx is None else np.asarray(train_idx)


def tree_importance_screen(X, y, method=GLOBAL_SE, num_trees=50, num_reps_for_avg=1,
                           num_permute_samples=20, alpha=0.05, random_state=None,
                           train_idx=None, n_jobs=None):
    """
    Keeps the columns whose random-forest importance beats a permutation null.

    The importances of the real response (averaged over `num_reps_for_avg`
    forests) are compared with those obtained after permuting y
    `num_permute_samples` times:

    - local:      importance_j above the (1-alpha) quantile of its own null.
    - global_max: importance_j above the (1-alpha) quantile of the null maximum.
    - global_se:  importance_j above m_j + C*·s_j, with C* the (1-alpha)
                  quantile of max_j (null_j - m_j) / s_j.

    Returns:
        Sorted array of retained column indices.
    """
    if method not in VALID_SCREEN_METHODS:
        raise ConfigurationError(f"screen_method must be one of {VALID_SCREEN_METHODS}, got '{method}'.")
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    rows = _rows(len(y), train_idx)
    Xt, yt = X[rows], y[rows]
    rng = np.random.default_rng(random_state)

    def _importances(target):
        acc = np.zeros(X.shape[1])
        for _ in range(num_reps_for_avg):
            forest = RandomForestRegressor(n_estimators=num_trees, max_features=1 / 3,
                                           random_state=int(rng.integers(2**31 - 1)),
                                           n_jobs=n_jobs)
            forest.fit(Xt, target)
            acc += forest.feature_importances_
        return acc / num_reps_for_avg

    real = _importances(yt)
    null = np.array([_importances(rng.permutation(yt)) for _ in range(num_permute_samples)])

    if method == LOCAL:
        keep = real > np.quantile(null, 1 - alpha, axis=0)
    elif method == GLOBAL_MAX:
        keep = real > np.quantile(null.max(axis=1), 1 - alpha)
    else:
        m = null.mean(axis=0)
        s = null.std(axis=0, ddof=1 if num_permute_samples > 1 else 0)
        s = np.where(s > 0, s, np.finfo(float).eps)
        c_star = np.quantile(((null - m) / s).max(axis=1), 1 - alpha)
        keep = real > m + c_star * s
    return np.flatnonzero(keep)


def lasso_screen(X, y, train_idx=None, nfolds=10, nlambda=100, standardize=True,
                 random_state=None, max_iter=10000):
    """
    Cross-validated LASSO screen.

    The penalty grid has `nlambda` log-spaced values from the smallest penalty
    that zeroes every coefficient down to 1e-4 of it. Coefficients are mapped
    back to the scale of X.

    Returns:
        dict with 'coef' (intercept first), 'support', 'alpha', 'model', 'scaler'.
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    rows = _rows(len(y), train_idx)
    Xt, yt = X[rows], y[rows]

    scaler = StandardScaler(with_mean=True, with_std=bool(standardize)).fit(Xt)
    Z = scaler.transform(Xt)

    alpha_max = np.max(np.abs(Z.T @ (yt - yt.mean()))) / len(yt) if Z.shape[1] else 0.0
    if not np.isfinite(alpha_max) or alpha_max <= 0:
        warnings.warn("LASSO screen: response has no linear signal in the candidate columns.")
        return {'coef': np.r_[yt.mean(), np.zeros(X.shape[1])],
                'support': np.array([], dtype=int), 'alpha': np.inf,
                'model': None, 'scaler': scaler}
    alphas = np.logspace(np.log10(alpha_max), np.log10(alpha_max * 1e-4), nlambda)

    cv = KFold(n_splits=max(2, min(nfolds, len(yt))), shuffle=True, random_state=random_state)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        model = LassoCV(alphas=alphas, cv=cv, max_iter=max_iter).fit(Z, yt)

    scale = scaler.scale_ if scaler.scale_ is not None else np.ones(X.shape[1])
    coef = model.coef_ / scale
    intercept = model.intercept_ - np.sum(coef * scaler.mean_)
    return {'coef': np.r_[intercept, coef],
            'support': np.flatnonzero(model.coef_ != 0),
            'alpha': float(model.alpha_),
            'model': model,
            'scaler': scaler}
