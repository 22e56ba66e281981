"""
Distribution plots for comparing studies before and after model adjustment
"""

from typing import Dict, List, Optional, Tuple

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

PLOT_CHOICES: Tuple[str, ...] = ('by_study', 'by_study_sex', 'residuals')


def _empty_plot(ax, message: str, title: str) -> None:
    ax.text(0.5, 0.5, message, ha='center', va='center', transform=ax.transAxes)
    ax.set_title(title)


def plot_outcome_by_study(df: pd.DataFrame,
                          outcome: str = 'height',
                          study_column: str = 'study',
                          title: Optional[str] = None,
                          figsize: Tuple[int, int] = (6, 4)) -> plt.Figure:
    """Boxplot of the outcome for each study

    Args:
        df: Combined phenotype table
        outcome: Numeric column to plot
        study_column: Study identifier column
        title: Plot title
        figsize: Figure size

    Returns:
        matplotlib Figure object
    """
    fig, ax = plt.subplots(figsize=figsize)
    title = title or f"{outcome} by {study_column}"

    data = df[[study_column, outcome]].dropna()
    if data.empty:
        _empty_plot(ax, f'No non-missing {outcome} values', title)
        return fig

    sns.boxplot(data=data, x=study_column, y=outcome, ax=ax)
    ax.set_title(title)
    ax.grid(True, axis='y', alpha=0.3)

    plt.tight_layout()
    return fig


def plot_outcome_by_study_and_sex(df: pd.DataFrame,
                                  outcome: str = 'height',
                                  study_column: str = 'study',
                                  sex_column: str = 'sex',
                                  title: Optional[str] = None,
                                  figsize: Tuple[int, int] = (7, 4)) -> plt.Figure:
    """Boxplot of the outcome for each study, split by sex."""
    fig, ax = plt.subplots(figsize=figsize)
    title = title or f"{outcome} by {study_column} and {sex_column}"

    data = df[[study_column, sex_column, outcome]].dropna()
    if data.empty:
        _empty_plot(ax, f'No non-missing {outcome} values', title)
        return fig

    sns.boxplot(data=data, x=study_column, y=outcome, hue=sex_column, ax=ax)
    ax.set_title(title)
    ax.grid(True, axis='y', alpha=0.3)
    ax.legend(title=sex_column)

    plt.tight_layout()
    return fig


def plot_residuals_by_study(df: pd.DataFrame,
                            resid_column: str = 'resid',
                            study_column: str = 'study',
                            title: str = "Marginal residuals by study",
                            figsize: Tuple[int, int] = (6, 4)) -> plt.Figure:
    """Boxplot of marginal residuals per study with a zero reference line."""
    fig, ax = plt.subplots(figsize=figsize)

    data = df[[study_column, resid_column]].dropna()
    if data.empty:
        _empty_plot(ax, 'No residuals to plot', title)
        return fig

    sns.boxplot(data=data, x=study_column, y=resid_column, ax=ax)
    ax.axhline(0.0, color='red', linestyle='--', alpha=0.8)
    ax.set_title(title)
    ax.set_ylabel('marginal residual')
    ax.grid(True, axis='y', alpha=0.3)

    plt.tight_layout()
    return fig


def create_distribution_report(df: pd.DataFrame,
                               outcome: str = 'height',
                               study_column: str = 'study',
                               sex_column: Optional[str] = 'sex',
                               resid_column: Optional[str] = None,
                               plot_types: Optional[List[str]] = None,
                               output_prefix: str = "harmonization",
                               dpi: int = 150,
                               verbose: bool = True,
                               save_plots: bool = True) -> Dict:
    """Generate the distribution plots used to judge harmonization

    Args:
        df: Combined phenotype table
        outcome: Outcome column
        study_column: Study identifier column
        sex_column: Sex column for the split boxplot (None to skip)
        resid_column: Residual column for the residual boxplot (None to skip)
        plot_types: Subset of PLOT_CHOICES (default: all that apply)
        output_prefix: Prefix for output files
        dpi: Plot resolution
        verbose: Print progress information
        save_plots: Save plots to files

    Returns:
        Dictionary with 'plots' (name -> Figure) and 'files_created'
    """
    if plot_types is None:
        plot_types = list(PLOT_CHOICES)
    unknown = [p for p in plot_types if p not in PLOT_CHOICES]
    if unknown:
        raise ValueError(f"Unknown plot types: {unknown}")

    if verbose:
        print("Generating distribution plots...")

    report = {
        'plots': {},
        'files_created': []
    }

    if 'by_study' in plot_types:
        report['plots']['by_study'] = plot_outcome_by_study(df, outcome, study_column)

    if 'by_study_sex' in plot_types and sex_column is not None and sex_column in df.columns:
        report['plots']['by_study_sex'] = plot_outcome_by_study_and_sex(
            df, outcome, study_column, sex_column
        )

    if 'residuals' in plot_types and resid_column is not None and resid_column in df.columns:
        report['plots']['residuals'] = plot_residuals_by_study(df, resid_column, study_column)

    if save_plots:
        for name, fig in report['plots'].items():
            filename = f"{output_prefix}_{outcome}_{name}.png"
            fig.savefig(filename, dpi=dpi, bbox_inches='tight')
            report['files_created'].append(filename)
            if verbose:
                print(f"   Saved {filename}")

    return report


def residual_spread(df: pd.DataFrame, resid_column: str = 'resid',
                    study_column: str = 'study') -> pd.DataFrame:
    """Per-study residual mean, SD and IQR to accompany the residual boxplot."""
    grouped = df.groupby(study_column, observed=True)[resid_column]
    return pd.DataFrame({
        'n': grouped.count(),
        'mean': grouped.mean(),
        'sd': grouped.std(),
        'iqr': grouped.quantile(0.75) - grouped.quantile(0.25),
    }).reset_index()
