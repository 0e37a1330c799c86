# -*- coding: utf-8 -*-
"""
This module contains the primary user-facing class of the OPSIS package.
`OpsisRegressor` orchestrates the whole workflow: iterative descriptor
generation and screening, inside-constant refinement, the final L1 screen and
best-subset selection. It is a Scikit-learn compatible estimator.

Workflow (opt = ["binary", "unary", "binary"]):
    primary features + CONST
      -> [screen -> generate -> refine new log placeholders]  x len(opt)
      -> L1 screen -> refine remaining placeholders -> L0 selection

Example:
    >>> model = OpsisRegressor(opt=["binary", "unary"], K=2, random_state=0)
    >>> model.fit(X, y)
    >>> print(model.best_model_summary())
    y = 0.12 + 5.0*log(x2 + 1.5) + 2.0*log(x4 + 0.3)
"""
import numbers
import time
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from sklearn.base import BaseEstimator, RegressorMixin
from sklearn.linear_model import LinearRegression
from sklearn.exceptions import ConvergenceWarning

from .constants import (
    BIAS_COLUMN, STAGE_ALIASES, VALID_STAGES, GLOBAL_SE, VALID_SCREEN_METHODS,
    CONSTANT_BOUNDS, MAX_ABS_FEAT_VAL
)
from .descriptors import (
    is_valid_feature_name, has_placeholder, is_log_family, template_constant,
    build_design_matrix, to_string
)
from .exceptions import ConfigurationError, SelectionExhaustionError
from .features import DescriptorState, apply_operator_stage, materialize_descriptors
from .refine import refine_constants
from .scoring import (
    correlation_screen, abs_correlations, tree_importance_screen, lasso_screen, rmse
)
from .search import best_subset_select
from .units import DimensionFilter
from .utils import save_results, print_descriptor_formula
from . import utils as plot_utils

warnings.filterwarnings("ignore", category=ConvergenceWarning)

PER_ITERATION_KEYS = ('num_trees', 'num_reps_for_avg', 'num_permute_samples')


@dataclass
class SearchResult:
    """Outcome of one OPSIS run."""
    descriptor_names: list
    descriptors: list
    constants: np.ndarray
    X_selected: np.ndarray
    coefficients: np.ndarray
    gen_size: list
    sel_size: list
    in_sample_rmse: float
    out_sample_rmse: Optional[float] = None
    lzero_models: dict = field(default_factory=dict)
    lzero_best_k: Optional[int] = None
    l1_model: Optional[dict] = None
    runtime: float = 0.0
    exact_recovery: bool = False


class OpsisRegressor(RegressorMixin, BaseEstimator):
    """
    Operator-induced descriptor search with inside-constant refinement.
    """
    def __init__(self, **kwargs):
        super().__init__()
        self._parse_config(kwargs)
        self.result_ = None
        self.state_ = None
        self.descriptors_ = None
        self.coef_ = None
        self.primary_names_ = None
        self.timing_summary_ = {}

    def _parse_config(self, config):
        """
        Parses the configuration dictionary and sets class attributes with defaults.
        """
        # Rename legacy keys for backward compatibility
        if 'stages' in config: config.setdefault('opt', config['stages'])
        if 'seed' in config: config.setdefault('random_state', config['seed'])
        if 'primary_units' in config: config.setdefault('units', config['primary_units'])
        if 'BART_var_sel_method' in config: config.setdefault('screen_method', config['BART_var_sel_method'])
        if 'num_cpu_threads' in config: config.setdefault('n_jobs', config['num_cpu_threads'])

        opt = config.get('opt', ['binary', 'unary', 'binary'])
        if isinstance(opt, str): opt = [opt]
        self.opt = [STAGE_ALIASES.get(str(s).lower(), str(s).lower()) for s in opt]
        for stage in self.opt:
            if stage not in VALID_STAGES:
                raise ConfigurationError(f"opt entries must be one of {VALID_STAGES} (or 'union'). Got '{stage}'")

        self.hold = config.get('hold', 0)
        self.pre_screen = config.get('pre_screen', True)
        self.corr_screen = config.get('corr_screen', True)
        self.sin_cos = config.get('sin_cos', False)
        self.apply_pos_opt_on_neg_x = config.get('apply_pos_opt_on_neg_x', True)
        self.units = config.get('units', None)

        self.screen_method = str(config.get('screen_method', GLOBAL_SE)).lower()
        if self.screen_method not in VALID_SCREEN_METHODS:
            raise ConfigurationError(f"screen_method must be one of {VALID_SCREEN_METHODS}. Got '{self.screen_method}'")
        self.num_trees = config.get('num_trees', 50)
        self.num_reps_for_avg = config.get('num_reps_for_avg', 1)
        self.num_permute_samples = config.get('num_permute_samples', 20)
        self.screen_alpha = config.get('screen_alpha', 0.05)

        self.nfolds = config.get('nfolds', 10)
        self.nlambda = config.get('nlambda', 100)

        self.out_sample = config.get('out_sample', False)
        self.train_idx = config.get('train_idx', None)
        self.train_ratio = config.get('train_ratio', 1.0)

        self.Lzero = config.get('Lzero', True)
        self.K = config.get('K', 5)
        self.aic = config.get('aic', False)
        self.parallel = config.get('parallel', False)
        self.n_jobs = config.get('n_jobs', -1)
        self.standardize = config.get('standardize', True)

        self.constant_bounds = tuple(config.get('constant_bounds', CONSTANT_BOUNDS))
        self.n_sweeps = config.get('n_sweeps', 1)
        self.polish_constants = config.get('polish_constants', False)
        self.max_abs_feat_val = config.get('max_abs_feat_val', MAX_ABS_FEAT_VAL)

        self.workdir = config.get('workdir', None)
        self.random_state = config.get('random_state', None)
        self.verbose = config.get('verbose', True)

    def get_params(self, deep=True):
        """Gets parameters for this estimator, Scikit-learn compatible."""
        return {
            'opt': self.opt, 'hold': self.hold, 'pre_screen': self.pre_screen,
            'corr_screen': self.corr_screen, 'sin_cos': self.sin_cos,
            'apply_pos_opt_on_neg_x': self.apply_pos_opt_on_neg_x, 'units': self.units,
            'screen_method': self.screen_method, 'num_trees': self.num_trees,
            'num_reps_for_avg': self.num_reps_for_avg,
            'num_permute_samples': self.num_permute_samples, 'screen_alpha': self.screen_alpha,
            'nfolds': self.nfolds, 'nlambda': self.nlambda,
            'out_sample': self.out_sample, 'train_idx': self.train_idx, 'train_ratio': self.train_ratio,
            'Lzero': self.Lzero, 'K': self.K, 'aic': self.aic, 'parallel': self.parallel,
            'n_jobs': self.n_jobs, 'standardize': self.standardize,
            'constant_bounds': self.constant_bounds, 'n_sweeps': self.n_sweeps,
            'polish_constants': self.polish_constants, 'max_abs_feat_val': self.max_abs_feat_val,
            'workdir': self.workdir, 'random_state': self.random_state, 'verbose': self.verbose,
        }

    def set_params(self, **params):
        """Sets the parameters of this estimator, Scikit-learn compatible."""
        self._parse_config({**self.get_params(), **params})
        return self

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _per_iteration(self, name, n_iterations):
        value = getattr(self, name)
        values = list(value) if isinstance(value, (list, tuple, np.ndarray)) else [value]
        if len(values) == 1:
            values = values * n_iterations
        elif len(values) != n_iterations:
            raise ConfigurationError(f"Length of `{name}` must equal the length of `opt` or 1!")
        if any(int(v) < 1 for v in values):
            raise ConfigurationError(f"`{name}` must be >= 1.")
        return [int(v) for v in values]

    def _validate_config(self, n_iterations, n_samples):
        """Checks the configuration against the data before any computation."""
        if n_iterations < 1:
            raise ConfigurationError("Length of `opt` must be >= 1.")
        if isinstance(self.hold, bool) or not isinstance(self.hold, numbers.Integral) or self.hold < 0:
            raise ConfigurationError("`hold` must be a non-negative integer.")
        if self.hold > n_iterations:
            raise ConfigurationError("`hold` must be an integer <= length of `opt`!")
        per_iter = {name: self._per_iteration(name, n_iterations) for name in PER_ITERATION_KEYS}

        if not 0 < self.train_ratio <= 1:
            raise ConfigurationError("train_ratio must be a number in (0, 1].")
        if not 0 < self.screen_alpha < 1:
            raise ConfigurationError("screen_alpha must be in (0, 1).")
        if self.nfolds < 3:
            raise ConfigurationError("nfolds must be >= 3.")
        if self.nlambda < 1:
            raise ConfigurationError("nlambda must be >= 1.")
        if self.Lzero and int(self.K) < 1:
            raise ConfigurationError("K must be >= 1 when Lzero=True.")
        if int(self.n_sweeps) < 1:
            raise ConfigurationError("n_sweeps must be >= 1.")
        if len(self.constant_bounds) != 2 or not self.constant_bounds[0] < self.constant_bounds[1]:
            raise ConfigurationError(f"constant_bounds must be (lower, upper) with lower < upper. Got {self.constant_bounds}")
        if self.train_idx is not None:
            idx = np.asarray(self.train_idx)
            if idx.ndim != 1 or not np.issubdtype(idx.dtype, np.integer):
                raise ConfigurationError("`train_idx` must be a 1-D integer vector.")
            if len(idx) > n_samples or len(np.unique(idx)) != len(idx):
                raise ConfigurationError("`train_idx` must hold unique row indices, at most n of them.")
            if len(idx) == 0 or idx.min() < 0 or idx.max() >= n_samples:
                raise ConfigurationError("`train_idx` is out of range.")
        return per_iter

    def _setup_data(self, X, y):
        """Validates shapes and names, returns the primary DataFrame and y."""
        if isinstance(X, pd.DataFrame):
            X_df = X.copy()
            X_df.columns = [str(c) for c in X_df.columns]
        else:
            X_arr = np.asarray(X, dtype=float)
            if X_arr.ndim != 2:
                raise ConfigurationError("X must be a 2-D matrix or DataFrame.")
            X_df = pd.DataFrame(X_arr, columns=[f"x{i + 1}" for i in range(X_arr.shape[1])])
        X_df = X_df.reset_index(drop=True)

        n, p = X_df.shape
        if n == 0: raise ConfigurationError("X must have >= 1 row.")
        if p == 0: raise ConfigurationError("X must have >= 1 column.")
        y_arr = np.asarray(y, dtype=float).ravel()
        if len(y_arr) != n:
            raise ConfigurationError("Different number of observations in y and X!")

        bad = [c for c in X_df.columns if not is_valid_feature_name(c)]
        if bad:
            raise ConfigurationError(f"Invalid or reserved feature names: {bad}")
        if X_df.columns.duplicated().any():
            raise ConfigurationError("Feature names must be unique.")
        try:
            X_df = X_df.astype(float)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"X must be numeric: {e}") from e
        if not np.all(np.isfinite(X_df.to_numpy())) or not np.all(np.isfinite(y_arr)):
            raise ConfigurationError("X and y must be finite.")
        return X_df, y_arr

    def _split(self, n, rng):
        if self.train_idx is not None:
            train = np.sort(np.asarray(self.train_idx))
        elif self.out_sample:
            train = np.sort(rng.choice(n, int(np.floor(self.train_ratio * n)), replace=False))
        else:
            return None, None
        if len(train) == 0:
            raise ConfigurationError("The training split is empty; increase train_ratio.")
        test = np.setdiff1d(np.arange(n), train)
        if self.out_sample and len(test) == 0:
            warnings.warn("out_sample=True but the test split is empty. Out-of-sample RMSE is not computed.")
        return train, (test if len(test) else None)

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def _train_rows(self, state):
        return np.arange(len(state.y)) if state.train_idx is None else state.train_idx

    def _drop_nonfinite(self, state):
        finite = np.all(np.isfinite(state.X), axis=0)
        if np.all(finite):
            return state
        if self.verbose:
            print(f"    Dropping {int((~finite).sum())} non-finite descriptor column(s).")
        return state.select(np.flatnonzero(finite))

    def _screen(self, state, i, per_iter, rng):
        state = self._drop_nonfinite(state)
        bias = state.bias_index
        candidates = [j for j in range(state.n_columns) if j != bias]
        if not candidates:
            raise SelectionExhaustionError(f"No descriptor left to screen at iteration {i + 1}.")

        if self.verbose:
            print(f"  Screening {len(candidates)} descriptors by tree importance ({self.screen_method})...")
        keep = tree_importance_screen(
            state.X[:, candidates], state.y, method=self.screen_method,
            num_trees=per_iter['num_trees'][i],
            num_reps_for_avg=per_iter['num_reps_for_avg'][i],
            num_permute_samples=per_iter['num_permute_samples'][i],
            alpha=self.screen_alpha, random_state=int(rng.integers(2**31 - 1)),
            train_idx=state.train_idx, n_jobs=self.n_jobs if self.parallel else None)
        kept = [candidates[j] for j in keep]
        if not kept:
            raise SelectionExhaustionError(f"No descriptor survived the importance screen at iteration {i + 1}.")
        if bias is not None:
            kept = sorted(kept + [bias])
        state = state.select(kept)
        if self.verbose:
            print(f"    Kept {state.n_columns} of {len(candidates) + (bias is not None)} columns.")
        return state.record_selection(state.n_columns)

    def _resolve_placeholders(self, state, predicate=None, whole_set=False):
        """
        Refines unresolved placeholder constants and rewrites their columns.

        With `whole_set` every descriptor of the state takes part in the joint
        fit; otherwise only the matching placeholders (plus the bias column).
        """
        targets = [j for j, node in enumerate(state.descriptors)
                   if has_placeholder(node) and (predicate is None or predicate(node))]
        if not targets:
            return state

        rows = self._train_rows(state)
        train_prims = state.primitives.iloc[rows].reset_index(drop=True)
        _, _, valid = materialize_descriptors([state.descriptors[j] for j in targets], train_prims)
        if len(valid) < len(targets):
            dropped = {targets[k] for k in range(len(targets)) if k not in valid}
            state = state.select([j for j in range(state.n_columns) if j not in dropped])
            return self._resolve_placeholders(state, predicate, whole_set)

        if whole_set:
            idx = list(range(state.n_columns))
        else:
            idx = targets + ([state.bias_index] if state.bias_index is not None else [])

        if self.verbose:
            print(f"  -> Refining inside constants of {len(targets)} descriptor(s)...")
        res = refine_constants([state.descriptors[j] for j in idx], train_prims,
                               state.y[rows], bounds=self.constant_bounds,
                               n_sweeps=self.n_sweeps, polish=self.polish_constants,
                               verbose=self.verbose)
        columns = build_design_matrix(res.descriptors, state.primitives)
        return state.replace_columns(idx, columns, res.descriptors)

    def _exact_recovery(self, state, test_idx):
        """Top-K log placeholders by |corr|, refined and fitted exactly without intercept."""
        if self.verbose:
            print("\n--- Exact-recovery path: restricting to log-family placeholder descriptors ---")
        candidates = [j for j, node in enumerate(state.descriptors) if is_log_family(node)]
        if not candidates:
            raise SelectionExhaustionError("No log-family placeholder descriptor was generated.")
        rows = self._train_rows(state)
        corr = abs_correlations(state.X[np.ix_(rows, candidates)], state.y[rows])
        order = sorted(range(len(candidates)), key=lambda k: (-np.nan_to_num(corr[k], nan=-1.0), k))
        top = [candidates[k] for k in order[:int(self.K)]]

        res = refine_constants([state.descriptors[j] for j in top],
                               state.primitives.iloc[rows].reset_index(drop=True),
                               state.y[rows], bounds=self.constant_bounds,
                               n_sweeps=self.n_sweeps, polish=True, verbose=self.verbose)
        phi = build_design_matrix(res.descriptors, state.primitives)
        coefficients = np.r_[0.0, res.weights]
        out_rmse = None
        if test_idx is not None:
            out_rmse = rmse(state.y[test_idx], phi[test_idx] @ res.weights)
        return SearchResult(
            descriptor_names=[to_string(d) for d in res.descriptors],
            descriptors=list(res.descriptors),
            constants=np.array([template_constant(d) for d in res.descriptors]),
            X_selected=phi, coefficients=coefficients,
            gen_size=list(state.gen_size), sel_size=list(state.sel_size),
            in_sample_rmse=res.rmse, out_sample_rmse=out_rmse, exact_recovery=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fit(self, X, y):
        t_start_fit = time.time()
        self.timing_summary_ = {}
        if self.workdir: Path(self.workdir).mkdir(parents=True, exist_ok=True)

        X_df, y_arr = self._setup_data(X, y)
        n_iterations = len(self.opt)
        per_iter = self._validate_config(n_iterations, len(y_arr))
        self.primary_names_ = list(X_df.columns)

        hold = int(self.hold)
        if not self.pre_screen and hold == 0 and n_iterations > 1:
            hold = 1

        rng = np.random.default_rng(self.random_state)
        train_idx, test_idx = self._split(len(y_arr), rng)

        # --- Primary features ------------------------------------------------
        kept_names = list(X_df.columns)
        if self.corr_screen:
            keep = correlation_screen(X_df.to_numpy(), y_arr)
            kept_names = [X_df.columns[j] for j in keep]
            dropped = sorted(set(X_df.columns) - set(kept_names))
            if dropped and self.verbose:
                print(f"Correlation screen removed {len(dropped)} primary feature(s): {', '.join(dropped)}")
            if not kept_names:
                raise SelectionExhaustionError("No primary feature has a defined correlation with y.")
        primitives = X_df[kept_names].copy()
        primitives[BIAS_COLUMN] = 1.0

        dimension_filter = DimensionFilter(self.units, kept_names) if self.units else None
        state = DescriptorState.from_primitives(primitives, y_arr, train_idx, dimension_filter)
        state = state.record_generation()

        # --- Iterative generation and screening ------------------------------
        if self.verbose:
            print(f"\n{'='*25}\n--- STARTING ITERATIVE DESCRIPTOR GENERATION & SCREENING ---\n{'='*25}")
        t_start = time.time()
        for i, stage in enumerate(self.opt):
            if self.verbose: print(f"\nIteration {i + 1}/{n_iterations} ({stage})")
            if i < hold:
                if self.verbose: print("  Skipping descriptor screening (hold).")
                state = apply_operator_stage(state, stage, self.sin_cos, self.apply_pos_opt_on_neg_x,
                                             dimension_filter, self.max_abs_feat_val, self.verbose)
                state = state.record_generation().record_selection(None)
                continue

            state = self._screen(state, i, per_iter, rng)
            state = apply_operator_stage(state, stage, self.sin_cos, self.apply_pos_opt_on_neg_x,
                                         dimension_filter, self.max_abs_feat_val, self.verbose)
            state = state.record_generation()
            state = self._resolve_placeholders(state, predicate=is_log_family)
        self.timing_summary_['Descriptor Generation'] = time.time() - t_start

        if hold >= n_iterations:
            self.state_ = state
            result = self._exact_recovery(state, test_idx)
            return self._finish(result, X_df, y_arr, t_start_fit)

        # --- L1 screen -------------------------------------------------------
        t_start = time.time()
        state = self._drop_nonfinite(state)
        bias = state.bias_index
        candidates = [j for j in range(state.n_columns) if j != bias]
        if not candidates:
            raise SelectionExhaustionError("No descriptor left for the L1 screen.")
        if self.verbose:
            print(f"\nLASSO descriptor selection over {len(candidates)} descriptors...")
        l1 = lasso_screen(state.X[:, candidates], state.y, train_idx=train_idx,
                          nfolds=self.nfolds, nlambda=self.nlambda, standardize=self.standardize,
                          random_state=int(rng.integers(2**31 - 1)))
        support = [candidates[j] for j in l1['support']]
        if not support:
            raise SelectionExhaustionError("No descriptor survived the L1 screen.")
        l1['names'] = [to_string(state.descriptors[j]) for j in support]
        state = state.select(sorted(support + ([bias] if bias is not None else [])))
        state = state.record_selection(state.n_columns)
        if self.verbose:
            print(f"  LASSO kept {len(support)} descriptors (alpha = {l1['alpha']:.4g}).")

        # --- Catch-all refinement ------------------------------------------
        state = self._resolve_placeholders(state, whole_set=True)
        self.timing_summary_['L1 Screen & Refinement'] = time.time() - t_start
        self.state_ = state

        # --- L0 selection ----------------------------------------------------
        t_start = time.time()
        bias = state.bias_index
        candidates = [j for j in range(state.n_columns) if j != bias]
        names = [to_string(state.descriptors[j]) for j in candidates]
        X_cand = state.X[:, candidates]
        lzero_models, best_k = {}, None
        if self.Lzero:
            l0 = best_subset_select(X_cand, state.y, names, K=int(self.K), aic=self.aic,
                                    parallel=self.parallel, n_jobs=self.n_jobs,
                                    train_idx=train_idx, verbose=self.verbose)
            if l0['best'] is None:
                raise SelectionExhaustionError("Best-subset selection found no valid model.")
            lzero_models, best_k = l0['models'], l0['best_k']
            chosen = l0['best']['indices']
            model = l0['best']['model']
        else:
            chosen = list(range(len(candidates)))
            rows = self._train_rows(state)
            model = LinearRegression().fit(X_cand[rows], state.y[rows])
        self.timing_summary_['L0 Selection'] = time.time() - t_start

        nodes = [state.descriptors[candidates[j]] for j in chosen]
        X_sel = X_cand[:, chosen]
        coefficients = np.r_[model.intercept_, model.coef_]
        rows = self._train_rows(state)
        in_rmse = rmse(state.y[rows], model.predict(X_sel[rows]))
        out_rmse = rmse(state.y[test_idx], model.predict(X_sel[test_idx])) if test_idx is not None else None

        result = SearchResult(
            descriptor_names=[to_string(d) for d in nodes], descriptors=nodes,
            constants=np.array([template_constant(d) for d in nodes]),
            X_selected=X_sel, coefficients=coefficients,
            gen_size=list(state.gen_size), sel_size=list(state.sel_size),
            in_sample_rmse=in_rmse, out_sample_rmse=out_rmse,
            lzero_models=lzero_models, lzero_best_k=best_k, l1_model=l1)
        return self._finish(result, X_df, y_arr, t_start_fit)

    def _finish(self, result, X_df, y, t_start_fit):
        result.runtime = time.time() - t_start_fit
        self.result_ = result
        self.descriptors_ = list(result.descriptors)
        self.coef_ = np.asarray(result.coefficients, dtype=float)
        self.timing_summary_['Total Fit Time'] = result.runtime

        if self.verbose:
            print("\n" + self.best_model_summary())
            print(f"In-sample RMSE: {result.in_sample_rmse:.6g}")
            if result.out_sample_rmse is not None:
                print(f"Out-of-sample RMSE: {result.out_sample_rmse:.6g}")
            print("\n" + "="*25 + " Timing Summary " + "="*25)
            for stage, duration in self.timing_summary_.items(): print(f"  - {stage:<30}: {duration:.2f} seconds")
            print("="*68 + "\nFit complete.")

        if self.workdir: save_results(self, X_df, y)
        return self

    def transform(self, X):
        """Materialises the selected descriptors on new primary features."""
        if self.result_ is None: raise RuntimeError("Call fit() before transform().")
        if isinstance(X, pd.DataFrame):
            X_df = X.copy()
            X_df.columns = [str(c) for c in X_df.columns]
        else:
            X_arr = np.asarray(X, dtype=float)
            if X_arr.ndim != 2 or X_arr.shape[1] != len(self.primary_names_):
                raise ValueError(f"Prediction input must have {len(self.primary_names_)} columns.")
            X_df = pd.DataFrame(X_arr, columns=self.primary_names_)
        missing = [c for c in self.primary_names_ if c not in X_df.columns]
        if missing:
            raise ValueError(f"Prediction input is missing primary features: {missing}")
        return build_design_matrix(self.descriptors_, X_df.reset_index(drop=True).astype(float))

    def predict(self, X):
        phi = self.transform(X)
        return self.coef_[0] + phi @ self.coef_[1:]

    def best_model_summary(self, target_name='y'):
        """Returns a string containing the symbolic formula of the best model."""
        if self.result_ is None:
            return "No best model found. Please fit the model first."
        return print_descriptor_formula(self.descriptors_, self.coef_, target_name=target_name)

    def best_model_latex(self, target_name='y'):
        """Returns a LaTeX formatted string of the best model formula."""
        if self.result_ is None:
            return "No best model found. Please fit the model first."
        return print_descriptor_formula(self.descriptors_, self.coef_, target_name=target_name,
                                        latex_format=True)

    def summary_report(self, X, y):
        """Generates a text summary report of the final results."""
        if self.result_ is None: return "Fit was not successful. No summary to report."
        res = self.result_
        lines = [
            "OPSIS Summary", "=============",
            f"OPERATOR_STAGES: {', '.join(self.opt)}",
            f"HOLD: {self.hold}",
            f"SCREEN_METHOD: {self.screen_method}",
            f"EXACT_RECOVERY_PATH: {'YES' if res.exact_recovery else 'NO'}",
            f"N_SAMPLES: {len(X)}",
            f"N_PRIMARY_FEATURES: {len(self.primary_names_)}",
            f"GENERATION_SIZES: {res.gen_size}",
            f"SELECTION_SIZES: {['NA' if s is None else s for s in res.sel_size]}",
            f"SELECTED_K: {res.lzero_best_k if res.lzero_best_k is not None else len(res.descriptors)}",
            f"IN_SAMPLE_RMSE: {res.in_sample_rmse:.6g}",
        ]
        if res.out_sample_rmse is not None:
            lines.append(f"OUT_OF_SAMPLE_RMSE: {res.out_sample_rmse:.6g}")
        lines.append(f"R2 on full data: {self.score(X, y):.4f}")
        lines.append(f"RUNTIME: {res.runtime:.2f} s")
        lines.append("\n******* BEST MODEL *******")
        lines.append(self.best_model_summary())
        lines.append("\nSelected descriptors (inside constant):")
        for name, c in zip(res.descriptor_names, res.constants):
            lines.append(f"  - {name:<42} C = {c:.6g}")
        return "\n".join(lines)

    def plot_parity(self, X, y, **kwargs):
        return plot_utils.plot_parity(self, X, y, **kwargs)

    def plot_generation_sizes(self, **kwargs):
        return plot_utils.plot_generation_sizes(self.result_, **kwargs)
