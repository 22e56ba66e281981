"""
phenoharm: cross-study phenotype harmonization diagnostics

Combines per-study phenotype tables, summarizes them by study, and fits
homoskedastic and heteroskedastic null mixed models with a relatedness
matrix to judge whether the studies can be analyzed jointly.
"""

__version__ = "0.1.0"

from .data.loaders import load_study_phenotypes, load_relatedness_matrix
from .data.harmonize import combine_studies, align_to_matrix
from .models.null_model import fit_null_model
from .utils.data_types import AnnotatedDataFrame, RelatednessMatrix, NullModel
from .utils.stats import likelihood_ratio_test, wald_test
from .pipelines.harmonization import HarmonizationPipeline

__all__ = [
    'load_study_phenotypes',
    'load_relatedness_matrix',
    'combine_studies',
    'align_to_matrix',
    'fit_null_model',
    'AnnotatedDataFrame',
    'RelatednessMatrix',
    'NullModel',
    'likelihood_ratio_test',
    'wald_test',
    'HarmonizationPipeline',
]
