"""
Command-line interface for dawn-dusk.
"""

import argparse
import sys
from pathlib import Path

import pandas as pd

from . import __version__
from .exceptions import DawnDuskError
from .pipeline import prepare_analysis_table, run_pipeline, save_dataframe
from .taxonomy import load_synonyms


def parse_reference_levels(pairs):
    """Turn ['territory=3', 'sociality=0'] into a dict of reference levels."""
    levels = {}
    for pair in pairs or []:
        if '=' not in pair:
            raise argparse.ArgumentTypeError(f"Reference level must look like NAME=LEVEL, got {pair!r}")
        name, level = pair.split('=', 1)
        levels[name.strip()] = level.strip()
    return levels


def add_input_arguments(parser):
    parser.add_argument("detections", help="Acoustic detection CSV")
    parser.add_argument("--species", required=True, help="eBird code / scientific name lookup CSV")
    parser.add_argument("--traits", required=True, help="Trait CSV with trophic_niche")
    parser.add_argument("--territory", required=True, help="Territoriality CSV")
    parser.add_argument("--sociality", required=True, help="Sociality CSV")
    parser.add_argument("--templates", required=True, help="Peak frequency template CSV")
    parser.add_argument("--sites", default=None, help="Site coordinates CSV")
    parser.add_argument("--synonyms", default=None, help="Taxonomic synonym CSV (default: bundled)")
    parser.add_argument("--timezone", default=None, help="Timezone for sites without one, e.g. Asia/Kolkata")
    parser.add_argument("--window", type=float, default=None,
                        help="Keep observations within this many hours after dawn / before dusk")
    parser.add_argument("--segment-minutes", type=float, default=10.0,
                        help="Length of one recording segment (default: 10)")
    parser.add_argument("--dusk-reference", choices=["end", "start"], default="end",
                        help="Measure time to dusk from the segment end or start")
    parser.add_argument("--min-templates", type=int, default=5,
                        help="Minimum frequency templates per species (default: 5)")
    parser.add_argument("--trophic-policy", default="merge_minor",
                        help="Trophic niche collapsing policy (default: merge_minor)")
    parser.add_argument("--strict-joins", action="store_true",
                        help="Fail instead of reporting species missing from covariate tables")
    parser.add_argument("-o", "--output", default=None, help="Output folder")


def prepare_options(args):
    return {
        'trophic_policy': args.trophic_policy,
        'min_templates': args.min_templates,
        'window_hours': args.window,
        'segment_minutes': args.segment_minutes,
        'dusk_reference': args.dusk_reference,
        'timezone': args.timezone,
        'on_unmatched': 'raise' if args.strict_joins else 'report',
    }


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="dawn-dusk",
        description="Dawn versus dusk acoustic detection analysis with phylogenetic regression",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands",
    )

    prepare_parser = subparsers.add_parser(
        "prepare",
        help="Build the per-species analysis table and exclusion report",
    )
    add_input_arguments(prepare_parser)

    run_parser = subparsers.add_parser(
        "run",
        help="Build the analysis table and fit the phylogenetic models",
    )
    add_input_arguments(run_parser)
    run_parser.add_argument("--tree", required=True, help="Nexus or Newick tree file (one or more trees)")
    run_parser.add_argument("--tree-synonyms", default=None,
                            help="Analysis name to tree label CSV (default: bundled)")
    run_parser.add_argument("--habitat", default=None, help="Site habitat CSV with site_type")
    run_parser.add_argument("--model", choices=["BM", "lambda"], default="lambda",
                            help="Evolutionary model for the residual covariance")
    run_parser.add_argument("--glmm", action="store_true",
                            help="Also fit the Poisson mixed model on raw counts")
    run_parser.add_argument("--reference", action="append", default=[], metavar="NAME=LEVEL",
                            help="Reference level of a categorical predictor (repeatable; "
                                 "overrides that predictor's default only)")
    run_parser.add_argument("--max-iter", type=int, default=500,
                            help="Iteration budget for each model fit")

    args = parser.parse_args()

    try:
        if args.command == "prepare":
            table, _, audit = prepare_analysis_table(
                pd.read_csv(args.detections),
                pd.read_csv(args.species),
                pd.read_csv(args.traits),
                pd.read_csv(args.territory),
                pd.read_csv(args.sociality),
                pd.read_csv(args.templates),
                sites=pd.read_csv(args.sites) if args.sites else None,
                synonyms=load_synonyms(args.synonyms),
                **prepare_options(args)
            )
            if args.output:
                output_dir = Path(args.output)
                save_dataframe(table, output_dir / "analysis_table.csv")
                save_dataframe(audit.exclusions_frame(), output_dir / "exclusions.csv")
            return 0

        elif args.command == "run":
            reference_levels = parse_reference_levels(args.reference) or None
            result = run_pipeline(
                args.detections,
                args.species,
                args.traits,
                args.territory,
                args.sociality,
                args.templates,
                args.tree,
                sites_path=args.sites,
                habitat_path=args.habitat,
                output_dir=args.output,
                synonyms_path=args.synonyms,
                tree_synonyms_path=args.tree_synonyms,
                reference_levels=reference_levels,
                evolution_model=args.model,
                fit_glmm=args.glmm,
                max_iter=args.max_iter,
                **prepare_options(args)
            )
            print(result['model_summary'].to_string(index=False))
            return 1 if result['audit'].failures else 0

        else:
            parser.print_help()
            return 1

    except DawnDuskError as error:
        print(f"Error: {error}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
