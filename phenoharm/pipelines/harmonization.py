"""
Harmonization Pipeline Module

This module sequences the cross-study harmonization checks: fetching and
loading study tables, assembling the combined table, descriptive diagnostics,
fitting homoskedastic and heteroskedastic null mixed models with a relatedness
matrix, comparing them, and inspecting the marginal residuals.
"""

import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import pandas as pd

from ..data.download import fetch_file, fetch_study_files, missing_files
from ..data.harmonize import (
    align_to_matrix, attach_sample_ids, check_sample_order, combine_studies,
    describe_columns, match_residuals
)
from ..data.loaders import load_relatedness_matrix, load_sample_map, load_study_phenotypes
from ..models.null_model import fit_null_model
from ..utils.data_types import AnnotatedDataFrame, LRTResult, NullModel, RelatednessMatrix, WaldResult
from ..utils.stats import (
    better_model, comparison_table, compare_fixed_effects, fixed_effects_agree,
    likelihood_ratio_test, study_terms, summarize_by_study, variance_component_ci, wald_test
)
from ..visualization.distributions import create_distribution_report, residual_spread

OUTPUT_CHOICES: Tuple[str, ...] = (
    'summary_tables',
    'distribution_plots',
    'model_tables',
    'residual_plot',
)

DEFAULT_COVARIATES: Tuple[str, ...] = ('sex', 'age', 'study')


class HarmonizationPipeline:
    """
    Pipeline for deciding whether phenotype data from several studies can be
    analyzed jointly.

    Typical workflow:
        1. Initialize pipeline with output directory
        2. Fetch (once) and load study phenotype tables and the relatedness matrix
        3. Combine studies into one table
        4. Describe the combined table (counts, summaries, boxplots)
        5. Align the table to the relatedness matrix
        6. Fit homoskedastic and heteroskedastic null models
        7. Compare the models (LRT) and test study means (Wald)
        8. Plot marginal residuals of the better model by study

    Attributes:
        study_tables (dict): Study name -> phenotype DataFrame
        combined_df (DataFrame): Combined table with study column; gains a
            residual column after residual_diagnostics()
        relatedness (RelatednessMatrix): Relatedness matrix, subset to the
            phenotyped samples after prepare_model_data()
        annotated (AnnotatedDataFrame): Aligned table passed to the model fitter
        models (dict): 'hom' and 'het' NullModel fits
        lrt (LRTResult), wald (WaldResult): Comparison results

    Example:
        >>> pipeline = HarmonizationPipeline(output_dir='./harmonization')
        >>> pipeline.load_data(
        ...     study_files={'study_1': 'pheno_data_study_1.txt',
        ...                  'study_2': 'pheno_data_study_2.txt'},
        ...     relatedness_file='grm.pkl'
        ... )
        >>> pipeline.combine()
        >>> pipeline.describe()
        >>> pipeline.prepare_model_data()
        >>> pipeline.fit_models()
        >>> pipeline.compare_models()
        >>> pipeline.residual_diagnostics()
    """

    def __init__(self, output_dir: str = "./harmonization_results", verbose: bool = True):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.verbose = verbose

        # Data storage
        self.study_tables: Dict[str, pd.DataFrame] = {}
        self.relatedness: Optional[RelatednessMatrix] = None
        self.combined_df: Optional[pd.DataFrame] = None
        self.annotated: Optional[AnnotatedDataFrame] = None

        # Column roles
        self.id_column = 'subject_id'
        self.sample_column = 'sample_id'
        self.study_column = 'study'
        self.outcome = 'height'

        # Analysis State
        self.summaries: Dict[str, pd.DataFrame] = {}
        self.models: Dict[str, NullModel] = {}
        self.lrt: Optional[LRTResult] = None
        self.wald: Optional[WaldResult] = None
        self.best_model_name: Optional[str] = None
        self.files_created: List[str] = []

    def log(self, message: str):
        """Internal logger"""
        if self.verbose:
            print(message)

    def log_step(self, step_name: str, start_time: Optional[float] = None):
        """Log a pipeline step with optional timing"""
        if start_time is not None:
            elapsed = time.time() - start_time
            self.log(f"{step_name} completed in {elapsed:.2f} seconds")
        else:
            self.log(f"{step_name}...")

    def _save_table(self, df: pd.DataFrame, name: str, index: bool = False) -> Path:
        path = self.output_dir / name
        df.to_csv(path, index=index)
        self.files_created.append(str(path))
        self.log(f"   Saved {path}")
        return path

    def fetch_data(self,
                   base_url: str,
                   study_files: Sequence[str],
                   relatedness_url: Optional[str] = None,
                   data_dir: Union[str, Path] = "data",
                   overwrite: bool = False) -> Dict[str, Any]:
        """
        Download study tables (and optionally the relatedness matrix) unless
        local copies already exist.

        Args:
            base_url: Location holding the study phenotype tables
            study_files: File names under ``base_url``
            relatedness_url: Full URL of the relatedness matrix file
            data_dir: Local directory for the downloads
            overwrite: Download even if local copies exist

        Returns:
            Dict with 'study_files' (list of paths) and 'relatedness_file'
        """
        step_start = time.time()
        self.log_step("Step 0: Fetching input files")

        data_dir = Path(data_dir)
        targets = [data_dir / Path(name).name for name in study_files]
        n_missing = sum(missing_files(targets).values())
        self.log(f"   {n_missing} of {len(targets)} phenotype files need downloading")

        try:
            study_paths = fetch_study_files(base_url, study_files, data_dir,
                                            overwrite=overwrite, verbose=self.verbose)
            relatedness_path = None
            if relatedness_url:
                relatedness_name = relatedness_url.rstrip('/').split('/')[-1]
                relatedness_path = fetch_file(relatedness_url, data_dir / relatedness_name,
                                              overwrite=overwrite, verbose=self.verbose)
        except Exception as e:
            raise ValueError(f"Error fetching input files: {e}")

        self.log_step("Fetching", step_start)
        return {'study_files': study_paths, 'relatedness_file': relatedness_path}

    def load_data(self,
                  study_files: Union[Mapping[str, Union[str, Path]], Sequence[Union[str, Path]]],
                  relatedness_file: Optional[Union[str, Path]] = None,
                  id_column: str = 'subject_id',
                  relatedness_format: Optional[str] = None):
        """
        Load study phenotype tables and the relatedness matrix.

        Args:
            study_files: Mapping of study name to path, or list of paths
                (study names derived from file names)
            relatedness_file: Relatedness matrix file (pickle, npz, HDF5, or
                delimited text)
            id_column: Subject ID column in every study table
            relatedness_format: Format override for the matrix file
        """
        step_start = time.time()
        self.log_step("Step 1: Loading study phenotype tables")
        self.id_column = id_column

        try:
            self.study_tables = load_study_phenotypes(study_files, id_column=id_column)
        except Exception as e:
            raise ValueError(f"Error loading phenotype files: {e}")
        for name, df in self.study_tables.items():
            self.log(f"   {name}: {len(df)} subjects, columns {list(df.columns)}")

        if relatedness_file is not None:
            try:
                self.relatedness = load_relatedness_matrix(relatedness_file, file_format=relatedness_format)
            except Exception as e:
                raise ValueError(f"Error loading relatedness matrix: {e}")
            self.log(f"   Relatedness matrix: {self.relatedness.n_samples} samples")

        self.log_step("Data loading", step_start)

    def combine(self, study_column: str = 'study') -> pd.DataFrame:
        """Check column agreement and stack the study tables."""
        if not self.study_tables:
            raise ValueError("Data not loaded. Call load_data() first.")

        step_start = time.time()
        self.log_step("Step 2: Combining study tables")
        self.study_column = study_column

        self.combined_df = combine_studies(self.study_tables, study_column=study_column)
        self.log(f"   Combined table: {len(self.combined_df)} rows from {len(self.study_tables)} studies")

        self.log_step("Combining", step_start)
        return self.combined_df

    def describe(self,
                 outcome: str = 'height',
                 sex_column: Optional[str] = 'sex',
                 numeric_columns: Optional[Sequence[str]] = None,
                 outputs: Sequence[str] = OUTPUT_CHOICES) -> Dict[str, pd.DataFrame]:
        """
        Per-study counts and numeric summaries, plus outcome boxplots by study
        and by study x sex.
        """
        if self.combined_df is None:
            raise ValueError("Studies not combined. Call combine() first.")

        step_start = time.time()
        self.log_step("Step 3: Descriptive diagnostics")
        self.outcome = outcome

        if numeric_columns is None:
            numeric_columns = [
                c for c in self.combined_df.columns
                if c not in (self.id_column, self.study_column, sex_column)
                and pd.api.types.is_numeric_dtype(self.combined_df[c])
            ]
        categorical = [sex_column] if sex_column and sex_column in self.combined_df.columns else []

        self.summaries = summarize_by_study(
            self.combined_df,
            study_column=self.study_column,
            categorical_columns=categorical,
            numeric_columns=numeric_columns,
        )
        for _, row in self.summaries['n'].iterrows():
            self.log(f"   {row[self.study_column]}: n = {row['n']}")

        if 'summary_tables' in outputs:
            self._save_table(self.summaries['n'], "study_counts.csv")
            for col in categorical:
                self._save_table(self.summaries[f'counts_{col}'], f"study_counts_by_{col}.csv", index=True)
            self._save_table(self.summaries['numeric'], "study_numeric_summary.csv")

        if 'distribution_plots' in outputs:
            try:
                report = create_distribution_report(
                    self.combined_df,
                    outcome=outcome,
                    study_column=self.study_column,
                    sex_column=sex_column,
                    plot_types=['by_study', 'by_study_sex'],
                    output_prefix=str(self.output_dir / "harmonization"),
                    verbose=False,
                    save_plots=True,
                )
                self.files_created.extend(report['files_created'])
                for fig in report['plots'].values():
                    plt.close(fig)
            except Exception as e:
                self.log(f"   Plotting error: {e}")

        self.log_step("Descriptive diagnostics", step_start)
        return self.summaries

    def prepare_model_data(self,
                           sample_column: str = 'sample_id',
                           sample_map_file: Optional[Union[str, Path]] = None,
                           descriptions: Optional[Dict[str, str]] = None) -> AnnotatedDataFrame:
        """
        Attach sample IDs, reorder the combined table to the relatedness
        matrix's sample order, and wrap it with column descriptions.
        """
        if self.combined_df is None:
            raise ValueError("Studies not combined. Call combine() first.")
        if self.relatedness is None:
            raise ValueError("Relatedness matrix not loaded.")

        step_start = time.time()
        self.log_step("Step 4: Preparing model data")
        self.sample_column = sample_column

        sample_map = None
        if sample_map_file is not None:
            try:
                sample_map = load_sample_map(sample_map_file, subject_column=self.id_column,
                                             sample_column=sample_column)
            except Exception as e:
                raise ValueError(f"Error loading sample map: {e}")

        self.combined_df = attach_sample_ids(self.combined_df, id_column=self.id_column,
                                             sample_column=sample_column, sample_map=sample_map)
        aligned, self.relatedness = align_to_matrix(self.combined_df, self.relatedness,
                                                    sample_column=sample_column)
        check_sample_order(aligned, self.relatedness, sample_column=sample_column)
        self.annotated = describe_columns(aligned, descriptions)
        self.log(f"   Aligned {self.annotated.n_samples} samples to the relatedness matrix")

        self.log_step("Model data preparation", step_start)
        return self.annotated

    def fit_models(self,
                   outcome: Optional[str] = None,
                   covars: Optional[Sequence[str]] = None,
                   group_var: Optional[str] = None,
                   max_iter: int = 100,
                   tol: float = 1e-6) -> Dict[str, NullModel]:
        """
        Fit the homoskedastic and heteroskedastic (residual variance by
        ``group_var``, default the study column) null models.
        """
        if self.annotated is None:
            raise ValueError("Model data not prepared. Call prepare_model_data() first.")

        step_start = time.time()
        self.log_step("Step 5: Fitting null mixed models")

        outcome = outcome or self.outcome
        self.outcome = outcome
        covars = list(covars) if covars is not None else [
            c if c != 'study' else self.study_column for c in DEFAULT_COVARIATES
        ]
        group_var = group_var or self.study_column

        fit_kwargs = dict(
            outcome=outcome,
            covars=covars,
            cov_mat=self.relatedness,
            sample_column=self.sample_column,
            max_iter=max_iter,
            tol=tol,
            verbose=self.verbose,
        )
        try:
            self.log("   Fitting homoskedastic model...")
            self.models['hom'] = fit_null_model(self.annotated, **fit_kwargs)
            self.log(f"   Fitting heteroskedastic model (residual variance by {group_var})...")
            self.models['het'] = fit_null_model(self.annotated, group_var=group_var, **fit_kwargs)
        except Exception as e:
            raise ValueError(f"Error fitting null model: {e}")

        for name, model in self.models.items():
            self.log(f"   [{name}] logLikR = {model.log_lik_reml:.3f}, converged = {model.converged}")

        self.log_step("Model fitting", step_start)
        return self.models

    def compare_models(self,
                       alpha: float = 0.05,
                       use_reml: bool = True,
                       outputs: Sequence[str] = OUTPUT_CHOICES) -> pd.DataFrame:
        """
        Likelihood ratio test of heteroskedastic vs homoskedastic residuals and
        Wald test of the study fixed effects in the better model.
        """
        if 'hom' not in self.models or 'het' not in self.models:
            raise ValueError("Models not fitted. Call fit_models() first.")

        step_start = time.time()
        self.log_step("Step 6: Comparing models")

        hom, het = self.models['hom'], self.models['het']
        self.lrt = likelihood_ratio_test(hom, het, use_reml=use_reml)
        self.log(f"   LRT: stat = {self.lrt.stat:.3f}, df = {self.lrt.df}, p = {self.lrt.pvalue:.3g}")

        best = better_model(hom, het, self.lrt, alpha=alpha)
        self.best_model_name = 'het' if best is het else 'hom'
        self.log(f"   Better-fitting model: {self.best_model_name}")

        if not fixed_effects_agree(hom, het):
            self.log("   Note: fixed effects differ noticeably between the two models")

        terms = study_terms(best, self.study_column)
        if terms:
            self.wald = wald_test(best, terms)
            self.log(
                f"   Wald test of study means: stat = {self.wald.stat:.3f}, "
                f"df = {self.wald.df}, p = {self.wald.pvalue:.3g}"
            )
        else:
            self.wald = None
            self.log("   No study terms in the model; skipping Wald test")

        table = comparison_table(self.lrt, self.wald)
        if 'model_tables' in outputs:
            self._save_table(table, "model_comparison.csv")
            self._save_table(compare_fixed_effects(hom, het), "fixed_effects_comparison.csv", index=True)
            for name, model in self.models.items():
                self._save_table(model.fixef, f"fixed_effects_{name}.csv", index=True)
                self._save_table(variance_component_ci(model), f"variance_components_{name}.csv", index=True)
                self._save_table(model.summary(), f"model_summary_{name}.csv")

        self.log_step("Model comparison", step_start)
        return table

    def residual_diagnostics(self,
                             resid_column: str = 'resid',
                             outputs: Sequence[str] = OUTPUT_CHOICES) -> pd.DataFrame:
        """
        Attach marginal residuals of the better model to the combined table and
        plot them by study.
        """
        if self.best_model_name is None:
            raise ValueError("Models not compared. Call compare_models() first.")

        step_start = time.time()
        self.log_step("Step 7: Residual diagnostics")

        model = self.models[self.best_model_name]
        self.combined_df = match_residuals(self.combined_df, model,
                                           sample_column=self.sample_column, column=resid_column)
        spread = residual_spread(self.combined_df, resid_column=resid_column,
                                 study_column=self.study_column)
        for _, row in spread.iterrows():
            self.log(f"   {row[self.study_column]}: residual sd = {row['sd']:.3f}")

        if 'model_tables' in outputs:
            self._save_table(
                self.combined_df[[self.id_column, self.sample_column, self.study_column, resid_column]],
                "residuals.csv",
            )
            self._save_table(spread, "residual_spread.csv")

        if 'residual_plot' in outputs:
            try:
                report = create_distribution_report(
                    self.combined_df,
                    outcome=self.outcome,
                    study_column=self.study_column,
                    resid_column=resid_column,
                    plot_types=['residuals'],
                    output_prefix=str(self.output_dir / "harmonization"),
                    verbose=False,
                    save_plots=True,
                )
                self.files_created.extend(report['files_created'])
                for fig in report['plots'].values():
                    plt.close(fig)
            except Exception as e:
                self.log(f"   Plotting error: {e}")

        self.log_step("Residual diagnostics", step_start)
        return spread

    def run(self,
            study_files: Union[Mapping[str, Union[str, Path]], Sequence[Union[str, Path]]],
            relatedness_file: Union[str, Path],
            outcome: str = 'height',
            covars: Optional[Sequence[str]] = None,
            id_column: str = 'subject_id',
            sample_column: str = 'sample_id',
            study_column: str = 'study',
            sex_column: Optional[str] = 'sex',
            sample_map_file: Optional[Union[str, Path]] = None,
            alpha: float = 0.05,
            use_reml: bool = True,
            max_iter: int = 100,
            tol: float = 1e-6,
            outputs: Sequence[str] = OUTPUT_CHOICES) -> Dict[str, Any]:
        """Run steps 1-7 in order and return the key results."""
        self.load_data(study_files, relatedness_file, id_column=id_column)
        self.combine(study_column=study_column)
        self.describe(outcome=outcome, sex_column=sex_column, outputs=outputs)
        self.prepare_model_data(sample_column=sample_column, sample_map_file=sample_map_file)
        self.fit_models(outcome=outcome, covars=covars, max_iter=max_iter, tol=tol)
        comparison = self.compare_models(alpha=alpha, use_reml=use_reml, outputs=outputs)
        spread = self.residual_diagnostics(outputs=outputs)

        self.log("\nHarmonization diagnostics completed successfully.")
        return {
            'models': self.models,
            'lrt': self.lrt,
            'wald': self.wald,
            'best_model': self.best_model_name,
            'comparison': comparison,
            'residual_spread': spread,
            'files_created': list(self.files_created),
        }
