"""
Assembly of per-study phenotype tables into one harmonized table
"""

import warnings
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from ..utils.data_types import AnnotatedDataFrame, NullModel, RelatednessMatrix
from .loaders import list_columns

DEFAULT_DESCRIPTIONS = {
    'subject_id': 'subject identifier',
    'sample_id': 'sample identifier matching the relatedness matrix',
    'sex': 'subject sex',
    'age': 'age at measurement in years',
    'height': 'body height in cm',
    'study': 'study identifier',
}


def check_column_names(tables: Mapping[str, pd.DataFrame]) -> List[str]:
    """Verify every study table has the same column names in the same order

    Args:
        tables: Study name to phenotype table

    Returns:
        The shared column names

    Raises:
        ValueError naming the first study that disagrees with the first table
    """
    columns = list_columns(tables)
    if not columns:
        raise ValueError("No study tables supplied")

    names = list(columns)
    reference_name = names[0]
    reference = columns[reference_name]
    for name in names[1:]:
        current = columns[name]
        if current == reference:
            continue
        missing = [c for c in reference if c not in current]
        extra = [c for c in current if c not in reference]
        if missing or extra:
            raise ValueError(
                f"Study '{name}' columns differ from '{reference_name}': missing {missing}, unexpected {extra}"
            )
        raise ValueError(
            f"Study '{name}' column order {current} differs from '{reference_name}' order {reference}"
        )
    return list(reference)


def combine_studies(tables: Mapping[str, pd.DataFrame], study_column: str = 'study') -> pd.DataFrame:
    """Tag each study's rows with its name and stack them

    The study column is categorical with levels in input order, so the first
    study is the reference level in model fits.
    """
    columns = check_column_names(tables)
    if study_column in columns:
        raise ValueError(f"Study tables already contain a '{study_column}' column")

    parts = []
    for name, df in tables.items():
        part = df.copy()
        part[study_column] = name
        parts.append(part)

    combined = pd.concat(parts, ignore_index=True)
    combined[study_column] = pd.Categorical(combined[study_column], categories=list(tables))
    return combined


def attach_sample_ids(df: pd.DataFrame,
                      id_column: str = 'subject_id',
                      sample_column: str = 'sample_id',
                      sample_map: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """Add the identifier used by the relatedness matrix

    Without a sample map the subject ID is reused. With one, subjects are
    looked up by ``id_column``; unmapped subjects get a missing sample ID.
    """
    if id_column not in df.columns:
        raise ValueError(f"ID column '{id_column}' not found")

    out = df.copy()
    raw_ids = out[id_column]
    subject_ids = raw_ids.where(raw_ids.isna(), raw_ids.astype(str))
    if sample_map is None:
        out[sample_column] = subject_ids
        return out

    if id_column not in sample_map.columns or sample_column not in sample_map.columns:
        raise ValueError(f"Sample map must have '{id_column}' and '{sample_column}' columns")
    lookup = pd.Series(
        sample_map[sample_column].astype(str).to_numpy(),
        index=sample_map[id_column].astype(str),
    )
    out[sample_column] = subject_ids.map(lookup)
    n_unmapped = int(out[sample_column].isna().sum())
    if n_unmapped:
        warnings.warn(f"{n_unmapped} subjects have no entry in the sample map")
    return out


def align_to_matrix(df: pd.DataFrame,
                    matrix: RelatednessMatrix,
                    sample_column: str = 'sample_id') -> Tuple[pd.DataFrame, RelatednessMatrix]:
    """Reorder the table to the matrix's sample order

    Rows whose sample is not in the matrix, and matrix samples without a row,
    are dropped with a warning.

    Returns:
        Tuple of (aligned_table, matrix_subset) with identical sample order
    """
    if sample_column not in df.columns:
        raise ValueError(f"Sample column '{sample_column}' not found")

    table_ids = df[sample_column]
    valid = table_ids.notna()
    table_ids = table_ids.astype(str)
    if table_ids[valid].duplicated().any():
        dups = table_ids[valid][table_ids[valid].duplicated()].unique()[:3].tolist()
        raise ValueError(f"Duplicated sample IDs in phenotype table, e.g. {dups}")

    in_table = set(table_ids[valid])
    order = [s for s in matrix.sample_ids if s in in_table]
    if not order:
        raise ValueError("No common samples between phenotype table and relatedness matrix")

    n_rows_dropped = len(df) - len(order)
    n_matrix_dropped = matrix.n_samples - len(order)
    if n_rows_dropped:
        warnings.warn(f"Dropping {n_rows_dropped} phenotype rows not found in the relatedness matrix")
    if n_matrix_dropped:
        warnings.warn(f"Dropping {n_matrix_dropped} relatedness matrix samples without phenotypes")

    row_of = pd.Series(np.flatnonzero(valid.to_numpy()), index=table_ids[valid].to_numpy())
    positions = row_of.loc[order].to_numpy()
    aligned = df.iloc[positions].reset_index(drop=True)
    aligned[sample_column] = aligned[sample_column].astype(str)
    subset = matrix if n_matrix_dropped == 0 else matrix.subset(order)
    return aligned, subset


def check_sample_order(df: pd.DataFrame, matrix: RelatednessMatrix,
                       sample_column: str = 'sample_id') -> None:
    """Raise unless the table rows follow the matrix sample order exactly."""
    ids = df[sample_column].astype(str).tolist()
    if ids != list(matrix.sample_ids):
        mismatch = next(
            (i for i, (a, b) in enumerate(zip(ids, matrix.sample_ids)) if a != b),
            min(len(ids), matrix.n_samples),
        )
        raise ValueError(
            f"Phenotype table order does not match relatedness matrix (first difference at row {mismatch})"
        )


def describe_columns(df: pd.DataFrame,
                     descriptions: Optional[Dict[str, str]] = None) -> AnnotatedDataFrame:
    """Wrap a table with per-column descriptions

    Known column names get a default description; ``descriptions`` overrides
    or adds to them.
    """
    metadata = {c: DEFAULT_DESCRIPTIONS[c] for c in df.columns if c in DEFAULT_DESCRIPTIONS}
    metadata.update(descriptions or {})
    return AnnotatedDataFrame(df, metadata)


def match_residuals(df: pd.DataFrame, model: NullModel,
                    sample_column: str = 'sample_id',
                    column: str = 'resid') -> pd.DataFrame:
    """Attach the model's marginal residuals to the table by sample ID

    Rows that were not in the fit get NaN.
    """
    out = df.copy()
    ids = out[sample_column].astype(str)
    out[column] = model.resid_marginal.reindex(ids.to_numpy()).to_numpy(dtype=np.float64)
    return out
