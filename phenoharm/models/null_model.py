"""
Null linear mixed model with relatedness random effects

Fits the phenotype-only model used to judge whether harmonized studies can be
analyzed together:

    y = X*beta + g_1 + ... + g_k + e

Where:
- X is the design matrix (intercept + covariates, categorical covariates
  dummy coded against their first level)
- g_k ~ N(0, sigma_k^2 * K_k) for each supplied covariance matrix K_k
- e ~ N(0, diag(sigma_e^2)) with either one shared residual variance
  (homoskedastic) or one residual variance per level of a grouping column
  (heteroskedastic)

Variance components are estimated by REML. The eigenspace shortcut used for
single-kinship GWAS models does not apply once residual variances differ by
group, so the likelihood is evaluated through a Cholesky factor of V and
optimized on the log scale with L-BFGS-B using the analytic REML score.
"""

import time
import warnings
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import linalg, optimize, stats

from ..utils.data_types import AnnotatedDataFrame, NullModel, RelatednessMatrix

# Log variance components are bounded relative to the OLS residual variance
LOG_BOUNDS = (-18.0, 6.0)
LOG_2PI = np.log(2.0 * np.pi)

CovarianceInput = Union[RelatednessMatrix, np.ndarray, pd.DataFrame,
                        Sequence[Union[RelatednessMatrix, np.ndarray]],
                        Dict[str, Union[RelatednessMatrix, np.ndarray]]]


def build_design_matrix(df: pd.DataFrame,
                        covars: Sequence[str],
                        intercept: bool = True) -> Tuple[np.ndarray, List[str], Dict[str, Tuple[str, ...]]]:
    """Build the fixed effect design matrix

    Numeric columns enter as-is. Any other column is treated as categorical and
    expanded to indicator columns for every level except the first category
    (category order for categorical columns, sorted otherwise), named
    ``<column>_<level>``.

    Args:
        df: Table holding the covariate columns
        covars: Covariate column names
        intercept: Prepend an intercept column

    Returns:
        Tuple of (X, column_names, terms) where ``terms`` maps each covariate
        to the design columns it produced
    """
    n = len(df)
    parts = []
    names = []
    terms: Dict[str, Tuple[str, ...]] = {}

    if intercept:
        parts.append(np.ones(n))
        names.append('(Intercept)')

    for col in covars:
        if col not in df.columns:
            raise ValueError(f"Covariate '{col}' not found in data")
        series = df[col]
        if pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series):
            parts.append(series.to_numpy(dtype=np.float64))
            names.append(col)
            terms[col] = (col,)
            continue

        cat = series.astype('category').cat.remove_unused_categories()
        levels = list(cat.cat.categories)
        term_names = []
        for level in levels[1:]:
            parts.append((cat == level).to_numpy(dtype=np.float64))
            term_names.append(f"{col}_{level}")
        names.extend(term_names)
        terms[col] = tuple(term_names)

    if not parts:
        raise ValueError("Design matrix has no columns")

    X = np.column_stack(parts)
    rank = np.linalg.matrix_rank(X)
    if rank < X.shape[1]:
        raise ValueError(f"Design matrix is rank deficient (rank {rank} < {X.shape[1]} columns)")

    return X, names, terms


def _covariance_list(cov_mat: CovarianceInput) -> List[Tuple[str, np.ndarray, Optional[List[str]]]]:
    """Normalize covariance input to [(name, matrix, sample_ids_or_None)]."""
    if isinstance(cov_mat, dict):
        items = list(cov_mat.items())
    elif isinstance(cov_mat, (list, tuple)):
        if len(cov_mat) == 1:
            items = [(None, cov_mat[0])]
        else:
            items = [(f"A{i + 1}", m) for i, m in enumerate(cov_mat)]
    else:
        items = [(None, cov_mat)]

    if not items:
        raise ValueError("At least one covariance matrix is required")

    out = []
    for name, mat in items:
        if isinstance(mat, pd.DataFrame):
            mat = RelatednessMatrix(mat)
        if isinstance(mat, RelatednessMatrix):
            out.append((name or mat.name, mat.to_numpy(), list(mat.sample_ids)))
        elif isinstance(mat, np.ndarray):
            if mat.ndim != 2 or mat.shape[0] != mat.shape[1]:
                raise ValueError("Covariance matrix must be square")
            out.append((name or "A", np.asarray(mat, dtype=np.float64), None))
        else:
            raise ValueError("Covariance matrix must be RelatednessMatrix, DataFrame, or numpy array")
    return out


def _build_v(theta: np.ndarray, components: Sequence[np.ndarray], n: int) -> np.ndarray:
    V = np.zeros((n, n), dtype=np.float64)
    diag = np.diag_indices(n)
    for t, comp in zip(theta, components):
        if comp.ndim == 1:
            V[diag] += t * comp
        else:
            V += t * comp
    return V


def _reml_terms(theta: np.ndarray, y: np.ndarray, X: np.ndarray,
                components: Sequence[np.ndarray]) -> Dict[str, np.ndarray]:
    """Quantities shared by the REML likelihood, score and AI matrix

    Raises ``np.linalg.LinAlgError`` if V or X'V^-1X is not positive definite.
    """
    n, p = X.shape
    V = _build_v(theta, components, n)

    cho_v = linalg.cho_factor(V, lower=True, check_finite=False)
    logdet_v = 2.0 * np.sum(np.log(np.diag(cho_v[0])))
    Vi = linalg.cho_solve(cho_v, np.eye(n), check_finite=False)

    ViX = Vi @ X
    XViX = X.T @ ViX
    cho_x = linalg.cho_factor(XViX, lower=True, check_finite=False)
    logdet_xvix = 2.0 * np.sum(np.log(np.diag(cho_x[0])))
    XViX_inv = linalg.cho_solve(cho_x, np.eye(p), check_finite=False)

    beta = XViX_inv @ (ViX.T @ y)
    # P = V^-1 - V^-1 X (X'V^-1X)^-1 X'V^-1
    P = Vi - ViX @ XViX_inv @ ViX.T
    Py = P @ y
    yPy = float(y @ Py)

    return {
        'logdet_v': logdet_v,
        'logdet_xvix': logdet_xvix,
        'XViX_inv': XViX_inv,
        'beta': beta,
        'P': P,
        'Py': Py,
        'yPy': yPy,
    }


def _calculate_neg_reml_likelihood(theta: np.ndarray, y: np.ndarray, X: np.ndarray,
                                   components: Sequence[np.ndarray]) -> float:
    """Calculate REML NEGATIVE log-likelihood for variance components theta

    Args:
        theta: Variance components, one per entry of ``components``
        y: Phenotype vector
        X: Design matrix
        components: Covariance structures; 2D matrices or 1D diagonals

    Returns:
        Negative REML log-likelihood (to minimize)
    """
    n, p = X.shape
    try:
        terms = _reml_terms(theta, y, X, components)
    except (np.linalg.LinAlgError, ValueError):
        return np.inf

    # 0.5 * [log|V| + log|X'V^-1X| + y'Py + (n-p)*log(2*pi)]
    return 0.5 * (terms['logdet_v'] + terms['logdet_xvix'] + terms['yPy'] + (n - p) * LOG_2PI)


def _reml_score(theta: np.ndarray, terms: Dict[str, np.ndarray],
                components: Sequence[np.ndarray]) -> np.ndarray:
    """Gradient of the negative REML log-likelihood w.r.t. theta."""
    P = terms['P']
    Py = terms['Py']
    grad = np.zeros(len(theta))
    for i, comp in enumerate(components):
        if comp.ndim == 1:
            tr_pv = float(np.sum(np.diag(P) * comp))
            quad = float(np.sum(comp * Py * Py))
        else:
            tr_pv = float(np.sum(P * comp))
            quad = float(Py @ comp @ Py)
        grad[i] = 0.5 * (tr_pv - quad)
    return grad


def _average_information(terms: Dict[str, np.ndarray],
                         components: Sequence[np.ndarray]) -> np.ndarray:
    """Average information matrix AI_ij = 0.5 * y'P V_i P V_j P y."""
    P = terms['P']
    Py = terms['Py']
    VPy = np.column_stack([
        comp * Py if comp.ndim == 1 else comp @ Py
        for comp in components
    ])
    return 0.5 * VPy.T @ P @ VPy


def fit_null_model(annot: Union[AnnotatedDataFrame, pd.DataFrame],
                   outcome: str,
                   covars: Optional[Sequence[str]] = None,
                   cov_mat: Optional[CovarianceInput] = None,
                   group_var: Optional[str] = None,
                   sample_column: str = 'sample_id',
                   start: Optional[Sequence[float]] = None,
                   max_iter: int = 100,
                   tol: float = 1e-6,
                   verbose: bool = True) -> NullModel:
    """Fit a null linear mixed model by REML

    Args:
        annot: Annotated phenotype table (or plain DataFrame). Must contain
            ``sample_column``, ``outcome`` and every covariate.
        outcome: Outcome column name
        covars: Covariate column names (fixed effects)
        cov_mat: Covariance matrix or matrices for the random effects. A
            RelatednessMatrix must list samples in the same order as the table.
        group_var: Column whose levels get separate residual variances
        sample_column: Column holding sample IDs
        start: Starting variance components (same order as the output)
        max_iter: Maximum optimizer iterations
        tol: Relative function tolerance for convergence
        verbose: Print progress information

    Returns:
        NullModel with fixed effects, variance components, residuals and
        likelihoods
    """
    if cov_mat is None:
        raise ValueError("At least one covariance matrix is required for the null model")

    if isinstance(annot, AnnotatedDataFrame):
        df = annot.to_dataframe()
    elif isinstance(annot, pd.DataFrame):
        df = annot.copy()
    else:
        raise ValueError("annot must be AnnotatedDataFrame or DataFrame")

    covars = list(covars or [])
    for col in [sample_column, outcome] + covars + ([group_var] if group_var else []):
        if col not in df.columns:
            raise ValueError(f"Column '{col}' not found in phenotype table")

    sample_ids = df[sample_column].astype(str).tolist()
    n_total = len(sample_ids)

    cov_list = _covariance_list(cov_mat)
    for name, mat, mat_ids in cov_list:
        if mat.shape[0] != n_total:
            raise ValueError(
                f"Covariance matrix '{name}' has {mat.shape[0]} samples but the phenotype table has {n_total} rows"
            )
        if mat_ids is not None and mat_ids != sample_ids:
            raise ValueError(
                f"Sample order of the phenotype table does not match covariance matrix '{name}'"
            )

    if verbose:
        print("=" * 60)
        print("NULL MODEL (REML)")
        print("=" * 60)

    # Drop incomplete rows; covariance matrices follow
    model_cols = [outcome] + covars + ([group_var] if group_var else [])
    keep = df[model_cols].notna().all(axis=1).to_numpy()
    if not keep.all():
        warnings.warn(f"Dropping {int((~keep).sum())} samples with missing values in {model_cols}")
    if keep.sum() == 0:
        raise ValueError("No complete samples available for model fitting")

    df = df.loc[keep].reset_index(drop=True)
    sample_ids = [s for s, k in zip(sample_ids, keep) if k]
    idx = np.where(keep)[0]

    y = pd.to_numeric(df[outcome], errors='coerce').to_numpy(dtype=np.float64)
    if not np.all(np.isfinite(y)):
        raise ValueError(f"Outcome '{outcome}' must be numeric")
    X, x_names, design_terms = build_design_matrix(df, covars)
    n, p = X.shape

    # Variance component structures: covariance matrices then residual diagonals
    vc_names = []
    components: List[np.ndarray] = []
    for name, mat, _ in cov_list:
        vc_names.append(f"V_{name}")
        components.append(mat[np.ix_(idx, idx)])

    if group_var is None:
        vc_names.append("V_E")
        components.append(np.ones(n))
    else:
        groups = df[group_var].astype('category').cat.remove_unused_categories()
        for level in groups.cat.categories:
            name = f"V_{level}"
            if name in vc_names:
                name = f"V_{group_var}_{level}"
            vc_names.append(name)
            components.append((groups == level).to_numpy(dtype=np.float64))
    m = len(components)

    if verbose:
        print(f"Fitting {n} samples, {p} fixed effects, {m} variance components")
        if group_var:
            print(f"Heteroskedastic residual variance by '{group_var}'")

    # OLS residual variance sets the scale and the starting point
    ols = sm.OLS(y, X).fit()
    scale = float(ols.scale) if ols.scale > 0 else float(np.var(y))
    if start is not None:
        start = np.asarray(start, dtype=np.float64)
        if start.shape != (m,):
            raise ValueError(f"start must have {m} values, got {start.shape}")
        x0 = np.log(np.maximum(start, scale * np.exp(LOG_BOUNDS[0])) / scale)
    else:
        n_mats = len(cov_list)
        x0 = np.full(m, np.log(1.0 / (n_mats + 1)))
    x0 = np.clip(x0, LOG_BOUNDS[0], LOG_BOUNDS[1])

    def neg_reml_and_grad(log_theta):
        theta = scale * np.exp(log_theta)
        try:
            terms = _reml_terms(theta, y, X, components)
        except (np.linalg.LinAlgError, ValueError):
            return np.inf, np.zeros_like(log_theta)
        nll = 0.5 * (terms['logdet_v'] + terms['logdet_xvix'] + terms['yPy'] + (n - p) * LOG_2PI)
        grad = _reml_score(theta, terms, components) * theta
        return nll, grad

    start_time = time.time()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        result = optimize.minimize(
            neg_reml_and_grad,
            x0,
            jac=True,
            method='L-BFGS-B',
            bounds=[LOG_BOUNDS] * m,
            options={'maxiter': max_iter, 'ftol': tol, 'gtol': 1e-8},
        )

    converged = bool(result.success) and np.isfinite(result.fun)
    messages = []
    if not converged:
        msg = f"REML optimization did not converge: {result.message}"
        messages.append(msg)
        warnings.warn(msg)

    log_theta = np.asarray(result.x, dtype=np.float64)
    theta = scale * np.exp(log_theta)
    for name, lt in zip(vc_names, log_theta):
        if lt <= LOG_BOUNDS[0] + 1e-6:
            msg = f"Variance component {name} estimated at the boundary (0)"
            messages.append(msg)
            warnings.warn(msg)

    terms = _reml_terms(theta, y, X, components)
    beta = terms['beta']
    beta_cov = terms['XViX_inv']
    se = np.sqrt(np.maximum(np.diag(beta_cov), 0.0))
    with np.errstate(divide='ignore', invalid='ignore'):
        wald = np.where(se > 0, (beta / se) ** 2, np.nan)
    pvals = stats.chi2.sf(wald, df=1)

    ai = _average_information(terms, components)
    try:
        vc_cov = np.linalg.inv(ai)
    except np.linalg.LinAlgError:
        vc_cov = np.linalg.pinv(ai)

    log_lik_reml = -0.5 * (terms['logdet_v'] + terms['logdet_xvix'] + terms['yPy'] + (n - p) * LOG_2PI)
    # ML-form log-likelihood at the REML estimates; y'Py = r'V^-1 r
    log_lik = -0.5 * (n * LOG_2PI + terms['logdet_v'] + terms['yPy'])
    aic = 2.0 * (p + m) - 2.0 * log_lik

    fitted = X @ beta
    resid = y - fitted

    if verbose:
        elapsed = time.time() - start_time
        for name, value in zip(vc_names, theta):
            print(f"   {name} = {value:.6f}")
        print(f"REML log-likelihood: {log_lik_reml:.4f} ({result.nit} iterations, {elapsed:.2f} seconds)")
        print(f"Converged: {converged}")

    return NullModel(
        outcome=outcome,
        covars=tuple(covars),
        group_var=group_var,
        sample_ids=tuple(sample_ids),
        fixef=pd.DataFrame({'Est': beta, 'SE': se, 'Stat': wald, 'pval': pvals}, index=x_names),
        beta_cov=pd.DataFrame(beta_cov, index=x_names, columns=x_names),
        var_comp=pd.Series(theta, index=vc_names, name='varComp'),
        var_comp_cov=pd.DataFrame(vc_cov, index=vc_names, columns=vc_names),
        resid_marginal=pd.Series(resid, index=sample_ids, name='resid_marginal'),
        fitted_values=pd.Series(fitted, index=sample_ids, name='fitted_values'),
        log_lik=float(log_lik),
        log_lik_reml=float(log_lik_reml),
        n_iter=int(result.nit),
        converged=converged,
        het_resid=group_var is not None,
        aic=float(aic),
        messages=tuple(messages),
        design_terms=design_terms,
    )
