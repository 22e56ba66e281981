import pytest

from phenoharm.cli import utils


def test_normalize_outputs_defaults_and_filters() -> None:
    assert utils.normalize_outputs([]) == list(utils.OUTPUT_CHOICES)
    assert utils.normalize_outputs([" model_tables ", "residual_plot", "unknown"]) == ["model_tables", "residual_plot"]
    assert utils.normalize_outputs(["summary_tables,model_tables", "model_tables"]) == ["summary_tables", "model_tables"]
    # all invalid falls back to defaults
    assert utils.normalize_outputs(["bad"]) == list(utils.OUTPUT_CHOICES)


def test_parse_study_files_named_and_plain() -> None:
    assert utils.parse_study_files(["a.txt", "b.txt"]) == ["a.txt", "b.txt"]
    assert utils.parse_study_files(["s1=a.txt", "s2 = b.txt"]) == {"s1": "a.txt", "s2": "b.txt"}
    with pytest.raises(ValueError, match="name every study file"):
        utils.parse_study_files(["s1=a.txt", "b.txt"])


def test_split_columns() -> None:
    assert utils.split_columns("sex, age,,study") == ["sex", "age", "study"]
    assert utils.split_columns(None) is None


def test_parse_args_defaults() -> None:
    args = utils.parse_args(["--relatedness", "grm.pkl"])

    assert args.relatedness == "grm.pkl"
    assert args.study_files == list(utils.DEFAULT_STUDY_FILES)
    assert args.outcome == "height"
    assert args.covariates is None
    assert args.alpha == pytest.approx(0.05)
    assert args.ml_loglik is False
    assert args.base_url is None
    assert args.outputs == list(utils.OUTPUT_CHOICES)


def test_parse_args_respects_overrides() -> None:
    args = utils.parse_args([
        "-k", "grm.h5",
        "-s", "s1=one.txt", "s2=two.txt",
        "--base-url", "http://host/data",
        "--alpha", "0.01",
        "--ml-loglik",
        "--outputs", "model_tables",
        "-o", "out",
        "--quiet",
    ])

    assert args.study_files == ["s1=one.txt", "s2=two.txt"]
    assert args.base_url == "http://host/data"
    assert args.alpha == pytest.approx(0.01)
    assert args.ml_loglik is True
    assert args.outputs == ["model_tables"]
    assert args.outputdir == "out"
    assert args.quiet is True


def test_parse_args_requires_relatedness() -> None:
    with pytest.raises(SystemExit):
        utils.parse_args([])


def test_parse_args_accepts_comma_separated_outputs() -> None:
    args = utils.parse_args(["-k", "grm.pkl", "--outputs", "summary_tables,model_tables", "residual_plot"])

    assert utils.normalize_outputs(args.outputs) == ["summary_tables", "model_tables", "residual_plot"]
