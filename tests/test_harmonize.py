import numpy as np
import pandas as pd
import pytest

from phenoharm.data import harmonize
from phenoharm.utils.data_types import AnnotatedDataFrame, RelatednessMatrix


def _tables():
    return {
        'study_1': pd.DataFrame({'subject_id': ['a', 'b'], 'sex': ['F', 'M'], 'height': [160.0, 175.0]}),
        'study_2': pd.DataFrame({'subject_id': ['c'], 'sex': ['M'], 'height': [180.0]}),
    }


def _matrix(ids):
    n = len(ids)
    return RelatednessMatrix(np.eye(n) + 0.1 * (np.ones((n, n)) - np.eye(n)), sample_ids=ids)


def test_check_column_names_accepts_matching_tables() -> None:
    assert harmonize.check_column_names(_tables()) == ['subject_id', 'sex', 'height']


def test_check_column_names_reports_differences() -> None:
    tables = _tables()
    tables['study_2'] = tables['study_2'].rename(columns={'height': 'Height'})
    with pytest.raises(ValueError, match="study_2.*missing \\['height'\\].*unexpected \\['Height'\\]"):
        harmonize.check_column_names(tables)

    tables = _tables()
    tables['study_2'] = tables['study_2'][['sex', 'subject_id', 'height']]
    with pytest.raises(ValueError, match="column order"):
        harmonize.check_column_names(tables)


def test_combine_studies_tags_rows_in_input_order() -> None:
    combined = harmonize.combine_studies(_tables())

    assert len(combined) == 3
    assert combined['study'].tolist() == ['study_1', 'study_1', 'study_2']
    assert list(combined['study'].cat.categories) == ['study_1', 'study_2']
    assert list(combined.columns) == ['subject_id', 'sex', 'height', 'study']


def test_combine_studies_rejects_existing_study_column() -> None:
    with pytest.raises(ValueError, match="already contain"):
        harmonize.combine_studies(_tables(), study_column='sex')


def test_attach_sample_ids_with_and_without_map() -> None:
    combined = harmonize.combine_studies(_tables())

    plain = harmonize.attach_sample_ids(combined)
    assert plain['sample_id'].tolist() == ['a', 'b', 'c']

    sample_map = pd.DataFrame({'subject_id': ['a', 'b'], 'sample_id': ['S1', 'S2']})
    with pytest.warns(UserWarning, match="1 subjects have no entry"):
        mapped = harmonize.attach_sample_ids(combined, sample_map=sample_map)
    assert mapped['sample_id'].tolist()[:2] == ['S1', 'S2']
    assert pd.isna(mapped.loc[2, 'sample_id'])


def test_align_to_matrix_reorders_and_subsets() -> None:
    df = harmonize.attach_sample_ids(harmonize.combine_studies(_tables()))
    matrix = _matrix(['c', 'x', 'a', 'b'])

    with pytest.warns(UserWarning, match="relatedness matrix samples without phenotypes"):
        aligned, subset = harmonize.align_to_matrix(df, matrix)

    assert aligned['sample_id'].tolist() == ['c', 'a', 'b']
    assert subset.sample_ids == ['c', 'a', 'b']
    assert aligned['height'].tolist() == [180.0, 160.0, 175.0]
    harmonize.check_sample_order(aligned, subset)


def test_align_to_matrix_drops_unmatched_rows() -> None:
    df = harmonize.attach_sample_ids(harmonize.combine_studies(_tables()))

    with pytest.warns(UserWarning, match="Dropping 1 phenotype rows"):
        aligned, subset = harmonize.align_to_matrix(df, _matrix(['b', 'a']))

    assert aligned['sample_id'].tolist() == ['b', 'a']
    assert subset.n_samples == 2


def test_align_to_matrix_errors() -> None:
    df = harmonize.attach_sample_ids(harmonize.combine_studies(_tables()))
    with pytest.raises(ValueError, match="No common samples"):
        harmonize.align_to_matrix(df, _matrix(['x', 'y']))

    dup = df.copy()
    dup.loc[2, 'sample_id'] = 'a'
    with pytest.raises(ValueError, match="Duplicated sample IDs"):
        harmonize.align_to_matrix(dup, _matrix(['a', 'b']))


def test_check_sample_order_raises_on_mismatch() -> None:
    df = pd.DataFrame({'sample_id': ['a', 'b']})
    with pytest.raises(ValueError, match="first difference at row 0"):
        harmonize.check_sample_order(df, _matrix(['b', 'a']))


def test_describe_columns_defaults_and_overrides() -> None:
    df = harmonize.combine_studies(_tables())

    annot = harmonize.describe_columns(df, {'height': 'standing height (cm)'})

    assert isinstance(annot, AnnotatedDataFrame)
    assert annot.describe('sex') == 'subject sex'
    assert annot.describe('height') == 'standing height (cm)'
    assert list(annot.metadata.index) == list(df.columns)

    with pytest.raises(ValueError, match="not in data"):
        harmonize.describe_columns(df, {'weight': 'body weight'})


def test_relatedness_matrix_subset_and_validation() -> None:
    matrix = _matrix(['a', 'b', 'c'])

    subset = matrix.subset(['c', 'a'])
    assert subset.sample_ids == ['c', 'a']
    assert subset.to_dataframe().loc['c', 'a'] == pytest.approx(0.1)

    with pytest.raises(ValueError, match="not in relatedness matrix"):
        matrix.subset(['z'])
    with pytest.raises(ValueError, match="unique"):
        RelatednessMatrix(np.eye(2), sample_ids=['a', 'a'])
    with pytest.raises(ValueError, match="square"):
        RelatednessMatrix(np.ones((2, 3)))


def test_attach_sample_ids_keeps_missing_subject_ids_missing() -> None:
    df = pd.DataFrame({'subject_id': ['a', None, 7], 'height': [160.0, 170.0, 180.0]})

    out = harmonize.attach_sample_ids(df)

    assert out.loc[0, 'sample_id'] == 'a'
    assert pd.isna(out.loc[1, 'sample_id'])
    assert out.loc[2, 'sample_id'] == '7'
