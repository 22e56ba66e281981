#!/usr/bin/env python3
"""
Cross-study phenotype harmonization diagnostics (pipeline driver)
"""
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from phenoharm.cli.utils import normalize_outputs, parse_args, parse_study_files, split_columns
from phenoharm.pipelines.harmonization import HarmonizationPipeline


def main(argv=None):
    args = parse_args(argv)

    pipeline = HarmonizationPipeline(output_dir=args.outputdir, verbose=not args.quiet)
    data_dir = Path(args.data_dir)

    study_files = parse_study_files(args.study_files)
    if isinstance(study_files, dict):
        names = list(study_files.values())
    else:
        names = list(study_files)

    # 0. Fetch missing inputs once
    if args.base_url or args.relatedness_url:
        pipeline.fetch_data(
            base_url=args.base_url or '',
            study_files=names if args.base_url else [],
            relatedness_url=args.relatedness_url,
            data_dir=data_dir,
            overwrite=args.overwrite,
        )

    def local(path):
        path = Path(path)
        return path if path.is_absolute() or path.exists() else data_dir / path.name

    if isinstance(study_files, dict):
        study_paths = {name: local(path) for name, path in study_files.items()}
    else:
        study_paths = [local(path) for path in study_files]

    covars = split_columns(args.covariates)
    outputs = normalize_outputs(args.outputs)

    results = pipeline.run(
        study_files=study_paths,
        relatedness_file=local(args.relatedness),
        outcome=args.outcome,
        covars=covars,
        id_column=args.id_column,
        sample_column=args.sample_column,
        study_column=args.study_column,
        sex_column=args.sex_column,
        sample_map_file=local(args.sample_map) if args.sample_map else None,
        alpha=args.alpha,
        use_reml=not args.ml_loglik,
        max_iter=args.max_iter,
        tol=args.tol,
        outputs=outputs,
    )

    lrt = results['lrt']
    print(f"\nLRT (het vs hom): stat = {lrt.stat:.3f}, df = {lrt.df}, p = {lrt.pvalue:.3g}")
    print(f"Better-fitting model: {results['best_model']}")
    if results['wald'] is not None:
        wald = results['wald']
        print(f"Wald test of study means: stat = {wald.stat:.3f}, df = {wald.df}, p = {wald.pvalue:.3g}")
    return results


if __name__ == "__main__":
    main()
