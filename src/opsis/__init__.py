"""
OPSIS: Operator-induced Symbolic Search with inside-constant refinement
========================================================
OPSIS package initialiser.

Re-exports the key public classes so users can write

    >>> from opsis import OpsisRegressor, refine_constants

without digging into sub-modules.

Example – quick start:
    >>> model = OpsisRegressor(opt=["binary", "unary"], K=2)
    >>> model.fit(X, y).best_model_summary()
"""
from .models import OpsisRegressor, SearchResult
from .descriptors import (
    parse_descriptor,
    evaluate_descriptor,
    build_design_matrix
)
from .features import DescriptorState, apply_operator_stage
from .refine import refine_constants
from .utils import print_descriptor_formula

__all__ = [
    'OpsisRegressor',
    'SearchResult',
    'parse_descriptor',
    'evaluate_descriptor',
    'build_design_matrix',
    'DescriptorState',
    'apply_operator_stage',
    'refine_constants',
    'print_descriptor_formula'
]
