"""
Statistical utilities for harmonization diagnostics
"""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from .data_types import LRTResult, NullModel, WaldResult


def category_counts(df: pd.DataFrame, study_column: str, category_column: str) -> pd.DataFrame:
    """Count subjects per study and category level, with totals

    Args:
        df: Combined phenotype table
        study_column: Study identifier column
        category_column: Categorical column to tabulate (e.g. sex)

    Returns:
        Crosstab with one row per study plus an 'All' row and column
    """
    return pd.crosstab(
        df[study_column].astype(str), df[category_column].astype(str),
        margins=True, margins_name='All',
    )


def numeric_summary(df: pd.DataFrame, study_column: str, columns: Sequence[str]) -> pd.DataFrame:
    """Per-study count, mean, sd, min, quartiles and max of numeric columns

    Returns a long table with one row per (study, variable).
    """
    rows = []
    for col in columns:
        values = pd.to_numeric(df[col], errors='coerce')
        desc = values.groupby(df[study_column], observed=True).describe()
        desc['n_missing'] = values.isna().groupby(df[study_column], observed=True).sum()
        desc.insert(0, 'variable', col)
        rows.append(desc)
    if not rows:
        return pd.DataFrame()
    summary = pd.concat(rows)
    summary.index.name = study_column
    return summary.reset_index()


def summarize_by_study(df: pd.DataFrame,
                       study_column: str = 'study',
                       categorical_columns: Sequence[str] = ('sex',),
                       numeric_columns: Sequence[str] = ('age', 'height')) -> Dict[str, pd.DataFrame]:
    """Collect the descriptive tables used to eyeball harmonization

    Returns:
        Dict with 'n' (subjects per study), 'counts_<column>' crosstabs and
        'numeric' summary
    """
    summary = {
        'n': df.groupby(study_column, observed=True).size().rename('n').reset_index(),
    }
    for col in categorical_columns:
        summary[f'counts_{col}'] = category_counts(df, study_column, col)
    summary['numeric'] = numeric_summary(df, study_column, list(numeric_columns))
    return summary


def likelihood_ratio_test(null: NullModel, alt: NullModel, use_reml: bool = True) -> LRTResult:
    """Likelihood ratio test of a nested null model against a richer one

    The statistic is 2 * (LL_alt - LL_null) with degrees of freedom equal to
    the number of extra variance components. REML log-likelihoods are only
    comparable when both models share fixed effects, which holds for the
    homoskedastic vs heteroskedastic comparison.

    Args:
        null: Model with fewer variance components
        alt: Model with more variance components
        use_reml: Compare REML log-likelihoods (otherwise ML-form)

    Returns:
        LRTResult
    """
    if use_reml and list(null.fixef.index) != list(alt.fixef.index):
        raise ValueError("REML likelihood ratio test requires identical fixed effects")

    df = alt.n_var_comp - null.n_var_comp
    if df <= 0:
        raise ValueError("Alternative model must have more variance components than the null model")

    ll_null = null.log_lik_reml if use_reml else null.log_lik
    ll_alt = alt.log_lik_reml if use_reml else alt.log_lik
    lrt_stat = 2.0 * (ll_alt - ll_null)

    # Numerical stability check (stat should be >= 0)
    if lrt_stat < 0:
        lrt_stat = 0.0

    p_value = stats.chi2.sf(lrt_stat, df=df)
    return LRTResult(
        stat=float(lrt_stat),
        df=int(df),
        pvalue=float(p_value),
        log_lik_null=float(ll_null),
        log_lik_alt=float(ll_alt),
        reml=use_reml,
    )


def study_terms(model: NullModel, study_column: str = 'study') -> List[str]:
    """Fixed effect names produced by the study covariate."""
    if study_column in model.design_terms:
        return list(model.design_terms[study_column])
    prefix = f"{study_column}_"
    return [name for name in model.fixef.index if name.startswith(prefix)]


def wald_test(model: NullModel, terms: Sequence[str]) -> WaldResult:
    """Joint Wald test that the selected fixed effects are all zero

    With the study indicators this tests equality of covariate-adjusted study
    means.
    """
    terms = list(terms)
    if not terms:
        raise ValueError("No terms selected for Wald test")
    missing = [t for t in terms if t not in model.fixef.index]
    if missing:
        raise ValueError(f"Terms not in model: {missing}")

    beta = model.fixef.loc[terms, 'Est'].to_numpy(dtype=np.float64)
    cov = model.beta_cov.loc[terms, terms].to_numpy(dtype=np.float64)
    try:
        stat = float(beta @ np.linalg.solve(cov, beta))
    except np.linalg.LinAlgError:
        stat = float(beta @ np.linalg.pinv(cov) @ beta)

    p_value = stats.chi2.sf(stat, df=len(terms))
    return WaldResult(stat=stat, df=len(terms), pvalue=float(p_value), terms=tuple(terms))


def compare_fixed_effects(first: NullModel, second: NullModel,
                          labels: Tuple[str, str] = ('hom', 'het')) -> pd.DataFrame:
    """Side-by-side fixed effect estimates with their difference."""
    a, b = labels
    joined = first.fixef[['Est', 'SE']].join(
        second.fixef[['Est', 'SE']], lsuffix=f'_{a}', rsuffix=f'_{b}', how='outer'
    )
    joined['diff'] = joined[f'Est_{b}'] - joined[f'Est_{a}']
    return joined


def fixed_effects_agree(first: NullModel, second: NullModel, rtol: float = 0.05) -> bool:
    """Whether two models' fixed effects agree to within a fraction of their SEs."""
    table = compare_fixed_effects(first, second)
    se = np.maximum(table['SE_hom'].to_numpy(), table['SE_het'].to_numpy())
    return bool(np.all(np.abs(table['diff'].to_numpy()) <= rtol * np.maximum(se, 1e-12) + 1e-8))


def variance_component_ci(model: NullModel, level: float = 0.95,
                          proportion: bool = False) -> pd.DataFrame:
    """Normal-approximation confidence intervals for variance components

    Uses the inverse average information matrix. With ``proportion=True``
    estimates are divided by their total and the delta method is applied.
    """
    est = model.var_comp.to_numpy(dtype=np.float64)
    cov = model.var_comp_cov.to_numpy(dtype=np.float64)
    z = stats.norm.ppf(0.5 + level / 2.0)

    if proportion:
        total = est.sum()
        # gradient of est_i / total w.r.t. est
        jac = (np.eye(len(est)) * total - est[:, np.newaxis]) / total ** 2
        cov = jac @ cov @ jac.T
        est = est / total

    se = np.sqrt(np.maximum(np.diag(cov), 0.0))
    return pd.DataFrame({
        'Est': est,
        'SE': se,
        'lower': est - z * se,
        'upper': est + z * se,
    }, index=model.var_comp.index)


def better_model(null: NullModel, alt: NullModel, lrt: LRTResult,
                 alpha: float = 0.05) -> NullModel:
    """Pick the heteroskedastic model when the LRT rejects at ``alpha``."""
    return alt if lrt.pvalue < alpha else null


def comparison_table(lrt: LRTResult, wald: Optional[WaldResult] = None) -> pd.DataFrame:
    """Stack test results into a small table for saving."""
    rows = [lrt.to_row()]
    if wald is not None:
        rows.append(wald.to_row())
    return pd.DataFrame(rows)
