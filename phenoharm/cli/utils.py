import argparse
from typing import Dict, List, Optional, Sequence, Union

OUTPUT_CHOICES = (
    'summary_tables',
    'distribution_plots',
    'model_tables',
    'residual_plot',
)

DEFAULT_STUDY_FILES = (
    'pheno_data_study_1.txt',
    'pheno_data_study_2.txt',
    'pheno_data_study_3.txt',
)


def normalize_outputs(outputs: List[str]) -> List[str]:
    """Helper to normalize output choices"""
    if not outputs:
        return list(OUTPUT_CHOICES)
    valid = []
    for o in outputs:
        for part in str(o).split(','):
            part = part.strip().lower()
            if part in OUTPUT_CHOICES and part not in valid:
                valid.append(part)
    return valid if valid else list(OUTPUT_CHOICES)


def parse_study_files(items: Sequence[str]) -> Union[Dict[str, str], List[str]]:
    """Turn ``name=path`` / ``path`` arguments into loader input

    All items must use the same style: either every item names its study or
    none does.
    """
    named = ['=' in item for item in items]
    if any(named) and not all(named):
        raise ValueError("Either name every study file (name=path) or none of them")
    if all(named) and items:
        pairs = [item.split('=', 1) for item in items]
        return {name.strip(): path.strip() for name, path in pairs}
    return list(items)


def split_columns(value: Optional[str]) -> Optional[List[str]]:
    """Comma-separated column list, or None"""
    if value is None:
        return None
    return [c.strip() for c in value.split(',') if c.strip()]


def parse_args(argv: Optional[Sequence[str]] = None):
    """Parse command line arguments for the harmonization pipeline"""
    parser = argparse.ArgumentParser(
        description="Cross-study phenotype harmonization diagnostics using phenoharm",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # Inputs
    parser.add_argument("--study-files", "-s", nargs='+', default=list(DEFAULT_STUDY_FILES),
                       help="Study phenotype tables (tab-delimited), as path or name=path")
    parser.add_argument("--relatedness", "-k", required=True,
                       help="Relatedness matrix file (pickle, npz, HDF5, CSV/TSV)")
    parser.add_argument("--sample-map", default=None,
                       help="Optional subject-to-sample ID mapping table")
    parser.add_argument("--data-dir", "-d", default="data",
                       help="Directory holding (or receiving) the input files")

    # Remote locations
    parser.add_argument("--base-url", default=None,
                       help="Base URL of the study phenotype tables; files missing from --data-dir are fetched from here")
    parser.add_argument("--relatedness-url", default=None,
                       help="URL of the relatedness matrix; fetched if missing from --data-dir")
    parser.add_argument("--overwrite", action='store_true',
                       help="Re-download files even if local copies exist")

    # Columns
    parser.add_argument("--outcome", default="height",
                       help="Outcome column")
    parser.add_argument("--covariates", default=None,
                       help="Comma-separated fixed effect covariates (default: sex, age and the study column)")
    parser.add_argument("--study-column", default="study",
                       help="Name of the study identifier column added when combining")
    parser.add_argument("--id-column", default="subject_id",
                       help="Subject ID column in the study tables")
    parser.add_argument("--sample-column", default="sample_id",
                       help="Sample ID column matching the relatedness matrix")
    parser.add_argument("--sex-column", default="sex",
                       help="Sex column for the study x sex boxplot")

    # Model / tests
    parser.add_argument("--alpha", type=float, default=0.05,
                       help="Significance level for choosing the heteroskedastic model")
    parser.add_argument("--ml-loglik", action='store_true',
                       help="Use ML-form log-likelihoods in the LRT instead of REML")
    parser.add_argument("--max-iter", type=int, default=100,
                       help="Maximum REML optimizer iterations")
    parser.add_argument("--tol", type=float, default=1e-6,
                       help="REML convergence tolerance")

    # Output
    parser.add_argument("--outputdir", "-o", default="./harmonization_results",
                       help="Output directory")
    parser.add_argument("--outputs", nargs="+",
                       default=list(OUTPUT_CHOICES),
                       help=f"Outputs to generate, space or comma separated: {', '.join(OUTPUT_CHOICES)}")
    parser.add_argument("--quiet", action='store_true',
                       help="Suppress progress messages")

    return parser.parse_args(argv)
