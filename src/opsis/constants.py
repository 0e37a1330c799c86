# -*- coding: utf-8 -*-
"""
This module defines global constants used across the OPSIS package to ensure
consistency and avoid magic strings.

Example:
    CONSTANT_BOUNDS = (0.0, 5.0)     # search bracket for inside constants
"""

# Reserved token marking an unresolved additive constant inside a descriptor,
# e.g. "log((x2+CONST))". The bias column of the working matrix carries the
# same name, so pairing a primitive with it yields the shifted term.
PLACEHOLDER = 'CONST'
BIAS_COLUMN = PLACEHOLDER

# Value of the bias column; also the surrogate an unresolved constant takes
# before refinement.
SURROGATE_CONSTANT = 1.0

# Named numeric constant understood by the evaluator (used by sin(pi*x)).
PI_SYMBOL = 'pi'

# Operator stages
UNARY = 'unary'
BINARY = 'binary'
ALL = 'all'
STAGE_ALIASES = {'union': ALL}
VALID_STAGES = [UNARY, BINARY, ALL]

# Permutation-null thresholds for the tree-importance screen
GLOBAL_SE = 'global_se'
GLOBAL_MAX = 'global_max'
LOCAL = 'local'
VALID_SCREEN_METHODS = [GLOBAL_SE, GLOBAL_MAX, LOCAL]

# Refinement
CONSTANT_BOUNDS = (0.0, 5.0)
CONSTANT_GRID_POINTS = 11
CONSTANT_NAME_FORMAT = '%.4g'

# Generated columns larger than this are pruned (tree ensembles work in float32).
MAX_ABS_FEAT_VAL = 1e30
# Two columns closer than this (max abs difference) are duplicates.
DUPLICATE_TOL = 1e-12

# A threshold for warning users about potentially long-running computations.
MAX_COMBINATIONS_WARNING_THRESHOLD = 2_000_000
