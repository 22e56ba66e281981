"""Shared simulated data: three studies of related subjects with height."""

import pickle
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

STUDY_SIZES = {'study_1': 40, 'study_2': 48, 'study_3': 32}
STUDY_SHIFT = {'study_1': 0.0, 'study_2': 2.0, 'study_3': -1.0}
RESID_SD = {'study_1': 4.0, 'study_2': 6.0, 'study_3': 10.0}
FAMILY_SIZE = 4
GENETIC_VAR = 16.0


def _simulate(seed: int = 7):
    rng = np.random.default_rng(seed)

    frames = {}
    for name, n in STUDY_SIZES.items():
        frames[name] = pd.DataFrame({
            'subject_id': [f"{name}_{i:03d}" for i in range(n)],
            'sex': rng.choice(['F', 'M'], size=n),
            'age': rng.uniform(20, 70, size=n).round(1),
        })

    ids = [sid for df in frames.values() for sid in df['subject_id']]
    n_total = len(ids)

    # Families of four siblings, never crossing a study boundary
    grm = np.zeros((n_total, n_total))
    for start in range(0, n_total, FAMILY_SIZE):
        grm[start:start + FAMILY_SIZE, start:start + FAMILY_SIZE] = 0.5
    np.fill_diagonal(grm, 1.0)
    g = np.linalg.cholesky(grm) @ rng.normal(size=n_total) * np.sqrt(GENETIC_VAR)

    offset = 0
    tables = {}
    for name, df in frames.items():
        n = len(df)
        e = rng.normal(scale=RESID_SD[name], size=n)
        df['height'] = (
            165.0 + 12.0 * (df['sex'] == 'M') + 0.05 * df['age']
            + STUDY_SHIFT[name] + g[offset:offset + n] + e
        ).round(1)
        tables[name] = df[['subject_id', 'sex', 'age', 'height']]
        offset += n

    return tables, pd.DataFrame(grm, index=ids, columns=ids)


@pytest.fixture
def simulated():
    """(study tables, relatedness DataFrame) with residual SD rising by study."""
    return _simulate()


@pytest.fixture
def study_files(tmp_path: Path, simulated):
    """Study tables written as tab-delimited files plus a pickled matrix."""
    tables, grm = simulated
    data_dir = tmp_path / "data"
    data_dir.mkdir()

    paths = []
    for name, df in tables.items():
        path = data_dir / f"pheno_data_{name}.txt"
        df.to_csv(path, sep='\t', index=False)
        paths.append(path)

    grm_path = data_dir / "grm.pkl"
    with open(grm_path, 'wb') as handle:
        pickle.dump(grm, handle)

    return {'study_files': paths, 'relatedness_file': grm_path, 'data_dir': data_dir}
