"""
Core data structures for phenoharm package
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd


class RelatednessMatrix:
    """Genetic relatedness matrix indexed by sample ID

    Must be a symmetric square matrix. Sample IDs label both rows and columns
    in the same order.
    """

    def __init__(self, data: Union[np.ndarray, pd.DataFrame],
                 sample_ids: Optional[Sequence] = None,
                 name: str = "A"):
        if isinstance(data, pd.DataFrame):
            if sample_ids is None:
                sample_ids = [str(s) for s in data.index]
                if list(data.columns.astype(str)) != sample_ids:
                    raise ValueError("Relatedness matrix row and column labels must match")
            self._data = data.to_numpy(dtype=np.float64, copy=True)
        elif isinstance(data, np.ndarray):
            self._data = np.array(data, dtype=np.float64, copy=True)
        else:
            raise ValueError("Data must be array or DataFrame")

        # Validate properties
        if self._data.ndim != 2:
            raise ValueError("Relatedness matrix must be 2D")
        if self._data.shape[0] != self._data.shape[1]:
            raise ValueError("Relatedness matrix must be square")
        if not np.allclose(self._data, self._data.T, atol=1e-8):
            raise ValueError("Relatedness matrix must be symmetric")

        if sample_ids is None:
            sample_ids = [str(i) for i in range(self._data.shape[0])]
        self.sample_ids: List[str] = [str(s) for s in sample_ids]
        if len(self.sample_ids) != self._data.shape[0]:
            raise ValueError(
                f"Got {len(self.sample_ids)} sample IDs for a {self._data.shape[0]}x{self._data.shape[0]} matrix"
            )
        if len(set(self.sample_ids)) != len(self.sample_ids):
            raise ValueError("Relatedness matrix sample IDs must be unique")

        self.name = name

    @property
    def shape(self) -> Tuple[int, int]:
        """Matrix shape"""
        return self._data.shape

    @property
    def n_samples(self) -> int:
        """Number of samples"""
        return self._data.shape[0]

    def __getitem__(self, key):
        """Support array indexing"""
        return self._data[key]

    def to_numpy(self) -> np.ndarray:
        """Convert to numpy array"""
        return self._data.copy()

    def to_dataframe(self) -> pd.DataFrame:
        """Convert to a DataFrame labelled by sample ID"""
        return pd.DataFrame(self._data, index=self.sample_ids, columns=self.sample_ids)

    def subset(self, sample_ids: Sequence) -> "RelatednessMatrix":
        """Return the matrix restricted to (and reordered by) ``sample_ids``."""
        position = {sid: i for i, sid in enumerate(self.sample_ids)}
        wanted = [str(s) for s in sample_ids]
        missing = [s for s in wanted if s not in position]
        if missing:
            raise ValueError(f"{len(missing)} sample IDs not in relatedness matrix, e.g. {missing[:3]}")
        idx = np.array([position[s] for s in wanted], dtype=int)
        return RelatednessMatrix(self._data[np.ix_(idx, idx)], sample_ids=wanted, name=self.name)


class AnnotatedDataFrame:
    """Phenotype table paired with a free-text description per column

    Descriptions for columns that are not listed default to an empty string.
    Describing a column that does not exist is an error.
    """

    def __init__(self, data: pd.DataFrame, metadata: Optional[Dict[str, str]] = None):
        if not isinstance(data, pd.DataFrame):
            raise ValueError("Data must be a DataFrame")
        metadata = dict(metadata or {})
        unknown = [c for c in metadata if c not in data.columns]
        if unknown:
            raise ValueError(f"Metadata describes columns not in data: {unknown}")

        self.data = data.copy()
        self.metadata = pd.DataFrame({
            'labelDescription': [str(metadata.get(c, '')) for c in data.columns],
        }, index=list(data.columns))

    @property
    def columns(self) -> List[str]:
        return list(self.data.columns)

    @property
    def n_samples(self) -> int:
        """Number of rows"""
        return len(self.data)

    def describe(self, column: str) -> str:
        """Description of a single column"""
        return self.metadata.loc[column, 'labelDescription']

    def __getitem__(self, key):
        return self.data[key]

    def to_dataframe(self) -> pd.DataFrame:
        """Convert to pandas DataFrame"""
        return self.data.copy()


@dataclass(frozen=True)
class NullModel:
    """Fitted linear mixed model without genotype effects

    ``fixef`` has columns Est, SE, Stat (Wald chi-square, 1 df) and pval,
    indexed by design-matrix column name. ``resid_marginal`` and ``fitted_values``
    are indexed by sample ID in the order the model was fit.
    """

    outcome: str
    covars: Tuple[str, ...]
    group_var: Optional[str]
    sample_ids: Tuple[str, ...]
    fixef: pd.DataFrame
    beta_cov: pd.DataFrame
    var_comp: pd.Series
    var_comp_cov: pd.DataFrame
    resid_marginal: pd.Series
    fitted_values: pd.Series
    log_lik: float
    log_lik_reml: float
    n_iter: int
    converged: bool
    het_resid: bool
    aic: float = float('nan')
    messages: Tuple[str, ...] = field(default_factory=tuple)
    design_terms: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    @property
    def n_samples(self) -> int:
        """Number of samples used in the fit"""
        return len(self.sample_ids)

    @property
    def n_var_comp(self) -> int:
        """Number of variance components"""
        return len(self.var_comp)

    @property
    def beta(self) -> pd.Series:
        """Fixed effect estimates"""
        return self.fixef['Est']

    def summary(self) -> pd.DataFrame:
        """One-row overview of the fit"""
        return pd.DataFrame([{
            'outcome': self.outcome,
            'group_var': self.group_var if self.group_var else '',
            'n_samples': self.n_samples,
            'n_var_comp': self.n_var_comp,
            'logLik': self.log_lik,
            'logLikR': self.log_lik_reml,
            'AIC': self.aic,
            'n_iter': self.n_iter,
            'converged': self.converged,
            'hetResid': self.het_resid,
        }])


@dataclass(frozen=True)
class LRTResult:
    """Likelihood ratio test between two nested null models."""

    stat: float
    df: int
    pvalue: float
    log_lik_null: float
    log_lik_alt: float
    reml: bool = True

    def to_row(self) -> Dict[str, Union[str, int, float]]:
        return {
            'test': 'LRT',
            'stat': self.stat,
            'df': self.df,
            'pvalue': self.pvalue,
        }


@dataclass(frozen=True)
class WaldResult:
    """Joint Wald test on a set of fixed effect coefficients."""

    stat: float
    df: int
    pvalue: float
    terms: Tuple[str, ...]

    def to_row(self) -> Dict[str, Union[str, int, float]]:
        return {
            'test': 'Wald',
            'stat': self.stat,
            'df': self.df,
            'pvalue': self.pvalue,
        }
