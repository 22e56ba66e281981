"""
Data loading utilities for study phenotype tables and relatedness matrices
"""

import pickle
import warnings
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import h5py
import numpy as np
import pandas as pd

from ..utils.data_types import RelatednessMatrix

# Robust NA handling: recognize common missing tokens
NA_VALUES = [
    '', 'NA', 'NaN', 'nan', 'NAN', 'na', 'N/A', 'n/a', 'Null', 'NULL',
    '.', '-', '--'
]


def detect_file_format(filepath: Union[str, Path]) -> str:
    """Detect file format based on extension and content

    Args:
        filepath: Path to file

    Returns:
        Detected format: 'pickle', 'npz', 'hdf5', 'csv', 'tsv' or 'unknown'
    """
    filepath = Path(filepath)
    suffix = filepath.suffix.lower()

    if suffix in ['.pkl', '.pickle']:
        return 'pickle'
    elif suffix == '.npz':
        return 'npz'
    elif suffix in ['.h5', '.hdf5']:
        return 'hdf5'
    elif suffix in ['.tsv', '.txt']:
        return 'tsv'
    elif suffix == '.csv':
        return 'csv'

    # Try to detect by content
    try:
        with open(filepath, 'rb') as f:
            head = f.read(8)
        if head.startswith(b'\x89HDF'):
            return 'hdf5'
        if head.startswith(b'PK'):
            return 'npz'
        if head[:1] == b'\x80':
            return 'pickle'
        with open(filepath, 'r') as f:
            first_line = f.readline().strip()
        if '\t' in first_line and ',' not in first_line:
            return 'tsv'
        elif ',' in first_line:
            return 'csv'
    except (OSError, UnicodeDecodeError):
        return 'unknown'
    return 'unknown'


def load_study_phenotype(filepath: Union[str, Path],
                         id_column: Optional[str] = None) -> pd.DataFrame:
    """Load one study's phenotype table

    Tables are tab-delimited with a header row. Comma-delimited files are
    accepted when the extension says so.

    Args:
        filepath: Path to phenotype file
        id_column: Subject ID column; if given it must exist and is read as text

    Returns:
        DataFrame with the file's columns in file order
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Phenotype file not found: {filepath}")

    read_kwargs = dict(na_values=NA_VALUES, keep_default_na=True)
    if id_column is not None:
        read_kwargs['dtype'] = {id_column: str}

    if detect_file_format(filepath) == 'csv':
        df = pd.read_csv(filepath, **read_kwargs)
    else:
        df = pd.read_csv(filepath, sep='\t', **read_kwargs)

    if df.empty:
        raise ValueError(f"Phenotype file has no rows: {filepath}")
    if id_column is not None and id_column not in df.columns:
        raise ValueError(f"ID column '{id_column}' not found in {filepath}")

    if id_column is not None and df[id_column].duplicated().any():
        n_dups = int(df[id_column].duplicated().sum())
        warnings.warn(
            f"Detected {n_dups} duplicated subject IDs in {filepath.name}; retained only the first record per ID."
        )
        df = df.drop_duplicates(subset=[id_column], keep='first').reset_index(drop=True)

    return df


def study_name_from_path(filepath: Union[str, Path]) -> str:
    """Default study name: the file stem without a 'pheno_data_' prefix."""
    stem = Path(filepath).name.split('.')[0]
    for prefix in ('pheno_data_', 'phenotype_', 'pheno_'):
        if stem.startswith(prefix) and len(stem) > len(prefix):
            return stem[len(prefix):]
    return stem


def load_study_phenotypes(files: Union[Mapping[str, Union[str, Path]], Sequence[Union[str, Path]]],
                          id_column: Optional[str] = None) -> Dict[str, pd.DataFrame]:
    """Load several study tables keyed by study name

    Args:
        files: Mapping of study name to path, or a list of paths (names are
            derived from file names)
        id_column: Subject ID column

    Returns:
        Dict of study name to DataFrame, in input order
    """
    if isinstance(files, Mapping):
        items = list(files.items())
    else:
        items = [(study_name_from_path(f), f) for f in files]

    names = [name for name, _ in items]
    if len(set(names)) != len(names):
        raise ValueError(f"Study names must be unique, got {names}")

    return {name: load_study_phenotype(path, id_column=id_column) for name, path in items}


def _matrix_from_object(obj, name: str) -> RelatednessMatrix:
    """Convert an unpickled object to a RelatednessMatrix."""
    if isinstance(obj, RelatednessMatrix):
        return obj
    if isinstance(obj, pd.DataFrame):
        return RelatednessMatrix(obj, name=name)
    if isinstance(obj, dict):
        matrix = obj.get('matrix', obj.get('grm'))
        ids = obj.get('sample_id', obj.get('sample_ids'))
        if matrix is None:
            raise ValueError("Serialized relatedness matrix dict needs a 'matrix' entry")
        return RelatednessMatrix(np.asarray(matrix), sample_ids=ids, name=name)
    if isinstance(obj, np.ndarray):
        warnings.warn("Relatedness matrix has no sample IDs; using row positions as IDs.")
        return RelatednessMatrix(obj, name=name)
    raise ValueError(f"Unsupported relatedness matrix object: {type(obj).__name__}")


def load_relatedness_matrix(filepath: Union[str, Path],
                            file_format: Optional[str] = None,
                            name: str = "A") -> RelatednessMatrix:
    """Load a genetic relatedness matrix

    Supported formats:
    - pickle: a DataFrame indexed by sample ID, or a dict with 'matrix' and
      'sample_id' entries
    - npz: arrays 'matrix' and 'sample_id'
    - hdf5: datasets 'matrix' and 'sample_id'
    - csv/tsv: square table whose first column holds sample IDs and whose
      header repeats them

    Args:
        filepath: Path to matrix file
        file_format: Format override (auto-detected if None)
        name: Name used for the variance component

    Returns:
        RelatednessMatrix
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Relatedness matrix file not found: {filepath}")

    if file_format is None:
        file_format = detect_file_format(filepath)

    if file_format == 'pickle':
        with open(filepath, 'rb') as handle:
            obj = pickle.load(handle)
        return _matrix_from_object(obj, name)

    if file_format == 'npz':
        with np.load(filepath, allow_pickle=False) as data:
            if 'matrix' not in data:
                raise ValueError(f"{filepath} has no 'matrix' array")
            ids = data['sample_id'].astype(str).tolist() if 'sample_id' in data else None
            return RelatednessMatrix(data['matrix'], sample_ids=ids, name=name)

    if file_format == 'hdf5':
        with h5py.File(filepath, 'r') as handle:
            if 'matrix' not in handle:
                raise ValueError(f"{filepath} has no 'matrix' dataset")
            matrix = handle['matrix'][()]
            ids = None
            if 'sample_id' in handle:
                ids = [s.decode() if isinstance(s, bytes) else str(s) for s in handle['sample_id'][()]]
        return RelatednessMatrix(matrix, sample_ids=ids, name=name)

    if file_format in ['csv', 'tsv']:
        sep = ',' if file_format == 'csv' else '\t'
        df = pd.read_csv(filepath, sep=sep, index_col=0)
        df.index = df.index.astype(str)
        df.columns = df.columns.astype(str)
        return RelatednessMatrix(df, name=name)

    raise ValueError(f"Unsupported relatedness matrix format: {file_format}")


def load_sample_map(filepath: Union[str, Path],
                    subject_column: str = 'subject_id',
                    sample_column: str = 'sample_id') -> pd.DataFrame:
    """Load a subject-to-sample ID mapping table

    Returns:
        DataFrame with the two ID columns as text, one row per subject
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Sample map file not found: {filepath}")

    sep = ',' if detect_file_format(filepath) == 'csv' else '\t'
    df = pd.read_csv(filepath, sep=sep, dtype=str)
    for col in (subject_column, sample_column):
        if col not in df.columns:
            raise ValueError(f"Column '{col}' not found in sample map {filepath}")

    df = df[[subject_column, sample_column]].dropna()
    if df[subject_column].duplicated().any():
        raise ValueError("Sample map lists a subject more than once")
    return df.reset_index(drop=True)


def list_columns(tables: Mapping[str, pd.DataFrame]) -> Dict[str, List[str]]:
    """Column names per study, in file order."""
    return {name: list(df.columns) for name, df in tables.items()}
