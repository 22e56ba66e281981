"""
Plots for comparing phenotype distributions across studies
"""

from .distributions import create_distribution_report

__all__ = ['create_distribution_report']
