"""
Inside-constant refinement.

Descriptors such as `log((x2+CONST))` carry an additive constant that the
generator only knows as a placeholder. Refinement resolves those constants
together with the outside linear weights of

    y ≈ Σ_j β_j · f_j(x; C_j)

by coordinate descent: each placeholder constant in turn is optimised over a
bounded bracket while the others stay fixed, and every trial refits the
weights jointly by ordinary least squares (no intercept; the bias column
CONST, when present, absorbs it).

Example:
    >>> res = refine_constants(["log((x2+CONST))", "log((x4+CONST))"], X, y)
    >>> res.constants
    array([1.5, 0.3])
"""
import warnings
from typing import NamedTuple

import numpy as np
from scipy.optimize import minimize_scalar, least_squares
from sklearn.linear_model import LinearRegression

from .constants import CONSTANT_BOUNDS, CONSTANT_GRID_POINTS, SURROGATE_CONSTANT
from .descriptors import (
    as_descriptor, has_placeholder, build_design_matrix, resolve_constant, to_string
)
from .exceptions import OptimizationError, ConfigurationError


class RefinementResult(NamedTuple):
    constants: np.ndarray
    weights: np.ndarray
    intercept: float
    model: LinearRegression
    rmse: float
    descriptors: list


def _ols_rmse(phi, y, required=None):
    """
    In-sample RMSE of the no-intercept least-squares fit on the finite columns
    of *phi*; inf if column *required* is non-finite or nothing is left.
    """
    finite = np.all(np.isfinite(phi), axis=0)
    if (required is not None and not finite[required]) or not np.any(finite):
        return np.inf
    phi = phi[:, finite]
    try:
        coef, *_ = np.linalg.lstsq(phi, y, rcond=None)
    except np.linalg.LinAlgError:
        return np.inf
    return float(np.sqrt(np.mean((y - phi @ coef) ** 2)))


def _optimize_constant(j, constants, nodes, primitives, y, bounds):
    lo, hi = bounds

    def objective(c):
        trial = constants.copy()
        trial[j] = c
        return _ols_rmse(build_design_matrix(nodes, primitives, trial), y, required=j)

    grid = np.linspace(lo, hi, CONSTANT_GRID_POINTS)
    grid_rmse = np.array([objective(c) for c in grid])
    if not np.any(np.isfinite(grid_rmse)):
        name = to_string(nodes[j])
        raise OptimizationError(
            f"Objective is non-finite over [{lo:g}, {hi:g}] for {name}.", descriptor=name)

    res = minimize_scalar(objective, bounds=(lo, hi), method='bounded', options={'xatol': 1e-10})
    best_c, best_f = float(res.x), float(res.fun)

    k = int(np.argmin(np.where(np.isfinite(grid_rmse), grid_rmse, np.inf)))
    if not np.isfinite(best_f) or grid_rmse[k] < best_f:
        # Brent settled in a worse basin (or a non-finite region); restart next to the best grid point
        step = grid[1] - grid[0]
        a, b = max(lo, grid[k] - step), min(hi, grid[k] + step)
        res = minimize_scalar(objective, bounds=(a, b), method='bounded', options={'xatol': 1e-10})
        if np.isfinite(res.fun) and res.fun < grid_rmse[k]:
            best_c, best_f = float(res.x), float(res.fun)
        else:
            best_c, best_f = float(grid[k]), float(grid_rmse[k])
    return best_c, best_f


def _polish_constants(nodes, primitives, y, constants, idx, bounds):
    """Joint variable-projection least squares over all placeholder constants."""
    lo, hi = bounds
    penalty = np.full(len(y), 1e10)
    start = build_design_matrix(nodes, primitives, constants)
    # constants whose column is already non-finite stay where the sweeps left them
    idx = [j for j in idx if np.all(np.isfinite(start[:, j]))]
    if not idx:
        return constants

    def residuals(c):
        trial = constants.copy()
        trial[idx] = c
        phi = build_design_matrix(nodes, primitives, trial)
        finite = np.all(np.isfinite(phi), axis=0)
        if not np.all(finite[idx]):
            return penalty
        phi = phi[:, finite]
        coef, *_ = np.linalg.lstsq(phi, y, rcond=None)
        return y - phi @ coef

    start_rmse = _ols_rmse(start, y)
    if not np.isfinite(start_rmse):
        return constants

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        result = least_squares(residuals, np.clip(constants[idx], lo, hi), bounds=(lo, hi),
                               method='trf', jac='3-point', ftol=1e-15, xtol=1e-15,
                               gtol=1e-15, max_nfev=200 * len(idx))

    polished = constants.copy()
    polished[idx] = np.clip(result.x, lo, hi)
    if _ols_rmse(build_design_matrix(nodes, primitives, polished), y) <= start_rmse:
        return polished
    return constants


def refine_constants(descriptors, primitives, y, bounds=CONSTANT_BOUNDS, n_sweeps=1,
                     polish=False, strict=False, verbose=False):
    """
    Resolves the placeholder constants of *descriptors* and fits outside weights.

    Args:
        descriptors: descriptor strings or nodes.
        primitives: DataFrame of primary features the descriptors are evaluated on.
        y: response vector.
        bounds: search bracket for every constant.
        n_sweeps: number of coordinate-descent passes over the placeholders.
        polish: finish with a joint bounded Gauss-Newton solve.
        strict: re-raise OptimizationError instead of keeping the prior constant.

    Returns:
        RefinementResult. Constants are 0 for descriptors without a placeholder;
        `descriptors` holds the nodes with their constants resolved.
    """
    nodes = [as_descriptor(d) for d in descriptors]
    if not nodes:
        raise ConfigurationError("refine_constants() needs at least one descriptor.")
    lo, hi = float(bounds[0]), float(bounds[1])
    if not lo < hi:
        raise ConfigurationError(f"Invalid constant bounds {bounds}; need lower < upper.")
    if int(n_sweeps) < 1:
        raise ConfigurationError("n_sweeps must be >= 1.")

    y = np.asarray(y, dtype=float)
    idx = [j for j, node in enumerate(nodes) if has_placeholder(node)]
    constants = np.zeros(len(nodes))
    constants[idx] = np.clip(SURROGATE_CONSTANT, lo, hi)

    if verbose and idx:
        print(f"    Refining {len(idx)} inside constant(s) over [{lo:g}, {hi:g}]...")

    for _ in range(int(n_sweeps)):
        for j in idx:
            try:
                constants[j], score = _optimize_constant(j, constants, nodes, primitives, y, (lo, hi))
            except OptimizationError as e:
                if strict:
                    raise
                warnings.warn(f"{e} Keeping C = {constants[j]:.4g}.")
                continue
            if verbose:
                print(f"      {to_string(nodes[j])}: C = {constants[j]:.6g} (RMSE {score:.6g})")

    if polish and idx:
        constants = _polish_constants(nodes, primitives, y, constants, idx, (lo, hi))

    phi = build_design_matrix(nodes, primitives, constants)
    finite = np.all(np.isfinite(phi), axis=0)
    if not np.any(finite):
        raise OptimizationError("No finite descriptor column left after refinement.")
    if not np.all(finite):
        warnings.warn(f"{int((~finite).sum())} descriptor column(s) are non-finite; "
                      f"their weights are set to 0.")

    model = LinearRegression(fit_intercept=False).fit(phi[:, finite], y)
    weights = np.zeros(len(nodes))
    weights[finite] = model.coef_
    rmse = float(np.sqrt(np.mean((y - model.predict(phi[:, finite])) ** 2)))

    resolved = [resolve_constant(node, c) if has_placeholder(node) else node
                for node, c in zip(nodes, constants)]
    return RefinementResult(constants, weights, 0.0, model, rmse, resolved)
