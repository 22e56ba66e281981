"""End-to-end tests for the run_harmonization.py command line script."""

import matplotlib

matplotlib.use("Agg")

from importlib import util
from pathlib import Path
from types import ModuleType

import pandas as pd


def _load_script_module() -> ModuleType:
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "run_harmonization.py"
    spec = util.spec_from_file_location("run_harmonization_cli", module_path)
    if spec is None or spec.loader is None:
        raise RuntimeError("Failed to load run_harmonization.py module for testing")
    module = util.module_from_spec(spec)
    spec.loader.exec_module(module)  # type: ignore[assignment]
    return module


RUN_HARMONIZATION = _load_script_module()


def _argv(study_files, output_dir: Path, *extra: str):
    return [
        "-s", *[str(p) for p in study_files['study_files']],
        "-k", str(study_files['relatedness_file']),
        "-o", str(output_dir),
        "--quiet",
        *extra,
    ]


def test_main_runs_with_default_covariates(tmp_path: Path, study_files) -> None:
    output_dir = tmp_path / "out"

    results = RUN_HARMONIZATION.main(_argv(study_files, output_dir, "--outputs", "summary_tables,model_tables"))

    assert results['best_model'] == 'het'
    assert (output_dir / "model_comparison.csv").exists()
    assert (output_dir / "study_counts.csv").exists()
    assert not list(output_dir.glob("*.png"))


def test_main_maps_default_covariates_to_custom_study_column(tmp_path: Path, study_files) -> None:
    output_dir = tmp_path / "out"

    results = RUN_HARMONIZATION.main(
        _argv(study_files, output_dir, "--study-column", "cohort", "--outputs", "model_tables")
    )

    het = results['models']['het']
    assert het.group_var == 'cohort'
    assert 'cohort' in het.covars
    assert results['wald'].terms == ('cohort_study_2', 'cohort_study_3')
    residuals = pd.read_csv(output_dir / "residuals.csv")
    assert 'cohort' in residuals.columns


def test_main_resolves_relative_paths_against_data_dir(tmp_path: Path, study_files, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    names = [p.name for p in study_files['study_files']]

    results = RUN_HARMONIZATION.main([
        "-s", *names,
        "-k", study_files['relatedness_file'].name,
        "-d", str(study_files['data_dir']),
        "-o", "out",
        "--quiet",
        "--outputs", "model_tables",
    ])

    assert set(results['models']) == {'hom', 'het'}
    assert (tmp_path / "out" / "residuals.csv").exists()
