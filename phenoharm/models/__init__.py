"""
Mixed model fitting for harmonization diagnostics
"""

from .null_model import fit_null_model, build_design_matrix

__all__ = ['fit_null_model', 'build_design_matrix']
