import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from phenoharm.visualization import distributions


def _frame() -> pd.DataFrame:
    rng = np.random.default_rng(3)
    n = 30
    return pd.DataFrame({
        'study': pd.Categorical(np.repeat(['s1', 's2', 's3'], 10)),
        'sex': np.tile(['F', 'M'], n // 2),
        'height': rng.normal(170, 8, size=n),
        'resid': rng.normal(0, 1, size=n),
    })


def test_outcome_boxplots_return_figures() -> None:
    df = _frame()

    fig_study = distributions.plot_outcome_by_study(df)
    fig_sex = distributions.plot_outcome_by_study_and_sex(df)

    assert isinstance(fig_study, matplotlib.figure.Figure)
    assert fig_study.axes[0].get_title() == "height by study"
    assert fig_sex.axes[0].get_legend() is not None
    plt.close('all')


def test_residual_plot_has_zero_line() -> None:
    fig = distributions.plot_residuals_by_study(_frame())

    ax = fig.axes[0]
    assert any(np.allclose(line.get_ydata(), 0.0) for line in ax.get_lines())
    plt.close(fig)


def test_plots_handle_all_missing_values() -> None:
    df = _frame()
    df['height'] = np.nan

    fig = distributions.plot_outcome_by_study(df)

    assert fig.axes[0].texts[0].get_text() == 'No non-missing height values'
    plt.close(fig)


def test_create_distribution_report_saves_selected_plots(tmp_path) -> None:
    report = distributions.create_distribution_report(
        _frame(),
        resid_column='resid',
        output_prefix=str(tmp_path / "harm"),
        verbose=False,
    )

    assert set(report['plots']) == {'by_study', 'by_study_sex', 'residuals'}
    expected = {str(tmp_path / f"harm_height_{name}.png") for name in report['plots']}
    assert set(report['files_created']) == expected
    assert all((tmp_path / f"harm_height_{name}.png").exists() for name in report['plots'])
    plt.close('all')


def test_create_distribution_report_skips_unavailable_and_rejects_unknown(tmp_path) -> None:
    report = distributions.create_distribution_report(
        _frame(), sex_column=None, plot_types=['by_study_sex', 'residuals'], save_plots=False, verbose=False,
    )
    assert report['plots'] == {}
    assert report['files_created'] == []

    with pytest.raises(ValueError, match="Unknown plot types"):
        distributions.create_distribution_report(_frame(), plot_types=['qq'], save_plots=False, verbose=False)


def test_residual_spread_by_study() -> None:
    df = pd.DataFrame({
        'study': ['a', 'a', 'a', 'b', 'b', 'b'],
        'resid': [-1.0, 0.0, 1.0, -3.0, 0.0, 3.0],
    })

    spread = distributions.residual_spread(df)

    assert spread['n'].tolist() == [3, 3]
    assert spread['mean'].tolist() == pytest.approx([0.0, 0.0])
    assert spread['sd'].tolist() == pytest.approx([1.0, 3.0])
    assert spread['iqr'].tolist() == pytest.approx([1.0, 3.0])
