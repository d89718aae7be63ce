#!/usr/bin/env python3
"""
Command line interface for factor gene set enrichment analysis.
"""

import argparse
import logging
import sys
from pathlib import Path

import tomli

from .config import EnrichmentConfig, SET_STATISTICS, SIGN_MODES, STATISTICAL_TESTS
from .exceptions import EnrichmentError
from .pipeline import EnrichmentPipeline
from .utils import setup_logging


def _factor(value: str):
    """Factor selections are 1-based indices or factor names."""
    return int(value) if value.isdigit() else value


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run gene set enrichment analysis on latent factor weights"
    )

    parser.add_argument(
        "config_file",
        type=str,
        help="Path to TOML configuration file"
    )

    input_group = parser.add_argument_group("Input file overrides")
    input_group.add_argument(
        "--weights",
        type=str,
        help="Override weight matrix file path"
    )
    input_group.add_argument(
        "--feature-sets",
        type=str,
        help="Override feature set catalog path (TSV matrix or GMT)"
    )
    input_group.add_argument(
        "--data",
        type=str,
        help="Override data matrix file path (for cor.adj.parametric)"
    )

    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument(
        "--output-dir",
        type=str,
        help="Override output directory"
    )

    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument(
        "--factors",
        type=_factor,
        nargs="+",
        help="Factors to test (1-based indices or names, or 'all')"
    )
    analysis_group.add_argument(
        "--sign",
        choices=SIGN_MODES,
        help="Override sign filter"
    )
    analysis_group.add_argument(
        "--set-statistic",
        choices=SET_STATISTICS,
        help="Override set statistic"
    )
    analysis_group.add_argument(
        "--test",
        choices=STATISTICAL_TESTS,
        help="Override statistical test"
    )
    analysis_group.add_argument(
        "--permutations",
        type=int,
        help="Override number of permutations"
    )
    analysis_group.add_argument(
        "--alpha",
        type=float,
        help="Override adjusted p-value threshold"
    )
    analysis_group.add_argument(
        "--min-size",
        type=int,
        help="Override minimum feature set size"
    )
    analysis_group.add_argument(
        "--seed",
        type=int,
        help="Override random seed"
    )
    analysis_group.add_argument(
        "--num-threads",
        type=int,
        help="Override number of parallel workers"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )

    return parser.parse_args(argv)


def update_config(config: dict, args: argparse.Namespace) -> dict:
    """Update configuration with command line overrides."""
    config.setdefault('input', {})
    config.setdefault('output', {})
    config.setdefault('analysis', {})

    if args.weights:
        config['input']['weights_file'] = args.weights
    if args.feature_sets:
        config['input']['feature_sets_file'] = args.feature_sets
    if args.data:
        config['input']['data_file'] = args.data

    if args.output_dir:
        config['output']['output_dir'] = args.output_dir

    if args.factors:
        # A lone "all" selects every factor
        config['analysis']['factors'] = "all" if args.factors == ["all"] else args.factors
    if args.sign:
        config['analysis']['sign'] = args.sign
    if args.set_statistic:
        config['analysis']['set_statistic'] = args.set_statistic
    if args.test:
        config['analysis']['statistical_test'] = args.test
    if args.permutations is not None:
        config['analysis']['n_permutations'] = args.permutations
    if args.alpha is not None:
        config['analysis']['alpha'] = args.alpha
    if args.min_size is not None:
        config['analysis']['min_size'] = args.min_size
    if args.seed is not None:
        config['analysis']['seed'] = args.seed
    if args.num_threads is not None:
        config['analysis']['num_threads'] = args.num_threads

    return config


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    try:
        with open(args.config_file, 'rb') as f:
            config = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        print(f"Error loading configuration file: {str(e)}", file=sys.stderr)
        sys.exit(1)

    config = update_config(config, args)

    output_dir = Path(config['output'].get('output_dir', 'results'))
    logger = setup_logging(output_dir / 'logs', level=getattr(logging, args.log_level))

    logger.info("Starting factor gene set enrichment analysis")
    logger.info(f"Using configuration file: {args.config_file}")

    try:
        pipeline = EnrichmentPipeline(EnrichmentConfig.from_dict(config))
        result = pipeline.run()
        pipeline.save_results(output_dir)
    except (EnrichmentError, ValueError, FileNotFoundError) as e:
        logger.error(f"Pipeline execution failed: {str(e)}")
        sys.exit(1)

    for factor in result.factors:
        hits = result.significant_pathways[factor]
        logger.info(f"{factor}: {len(hits)} significant gene sets")
    if result.errors:
        logger.warning(f"{len(result.errors)} factor(s) have sets that could not be tested: {', '.join(result.errors)}")
    logger.info("Pipeline execution completed successfully")


if __name__ == "__main__":
    main()
