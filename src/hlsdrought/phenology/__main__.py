#!/usr/bin/env python3
"""hlsdrought.phenology

Year-specific phenology CLI for hlsdrought.

This is one of the hlsdrought subsystem CLIs:
- hlsdrought.phenology → year-specific GAM splines and derivatives (this file)

Upstream phases (scene download, NDVI + cloud masking, 4 km aggregation, and
the multi-year baseline fit) write the long-form NDVI timeseries this
subsystem consumes. It does not modify that table.

Responsibilities:
- Fit one penalized smoother per pixel-year, with cross-year edge padding
- Emit first derivatives with posterior credible intervals (derivatives)
- Emit the fitted year curve with standard errors (splines)
- Checkpoint partial results and resume after interruption
- Summarize existing outputs by year

Outputs:
- data/gam_models/conus_4km_year_derivatives.csv
    pixel_id, year, yday, deriv_mean, deriv_lwr, deriv_upr, sig
- data/gam_models/conus_4km_year_splines.csv
    pixel_id, year, yday, year_mean, year_se, year_lwr, year_upr

Design notes:
- All knobs live in config/phenology.yaml; CLI flags override a few of them
- A run is safe to kill: rerunning picks up from the last checkpoint
- Exit status 2 means the run finished but every attempted pixel failed

Examples:
  # Derivatives for the configured years on 8 cores
  python -m hlsdrought.phenology derivatives --n-cores 8

  # Year splines for a single year, ignoring any checkpoint
  python -m hlsdrought.phenology splines --start-year 2022 --end-year 2022 --no-resume

  # Per-year summary of an existing derivatives table
  python -m hlsdrought.phenology summarize data/gam_models/conus_4km_year_derivatives.csv
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from hlsdrought.config import (
    DEFAULT_CONFIG_YAML,
    PhenologyConfig,
    configure_logging,
    load_config,
)

logger = logging.getLogger("hlsdrought.phenology")


# -----------------------------------------------------------------------------
# Default output paths
# -----------------------------------------------------------------------------
# Used when neither the CLI nor the config names a path.

DEFAULT_TIMESERIES = Path("data/gam_models/conus_4km_ndvi_timeseries.csv")
DEFAULT_DERIVATIVES = Path("data/gam_models/conus_4km_year_derivatives.csv")
DEFAULT_SPLINES = Path("data/gam_models/conus_4km_year_splines.csv")

EXIT_ALL_FAILED = 2


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def _add_run_args(p: argparse.ArgumentParser) -> None:
    """Options shared by the derivatives and splines commands."""
    p.add_argument(
        "--input",
        type=Path,
        default=None,
        help=f"NDVI timeseries (CSV or parquet; default: config paths.timeseries_file or {DEFAULT_TIMESERIES})",
    )
    p.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Output table (CSV or parquet; default: from config paths)",
    )
    p.add_argument(
        "--n-cores",
        type=int,
        default=None,
        help="Worker processes (default: config parallel.n_cores)",
    )
    p.add_argument("--start-year", type=int, default=None, help="First target year (default: config years.start)")
    p.add_argument("--end-year", type=int, default=None, help="Last target year (default: config years.end)")
    p.add_argument(
        "--no-resume",
        action="store_true",
        help="Ignore any existing checkpoint and start fresh",
    )
    p.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the resolved run plan without fitting anything",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for hlsdrought.phenology."""
    ap = argparse.ArgumentParser(
        prog="hlsdrought.phenology",
        description="Year-specific GAM splines and derivatives for HLS NDVI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  derivatives  # First derivatives + credible intervals per pixel-year
  splines      # Fitted year curves + standard errors per pixel-year
  summarize    # By-year summary of an existing output table
  inspect      # Validate and describe the input timeseries
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Phenology YAML (default: {DEFAULT_CONFIG_YAML} if present, else built-in defaults)",
    )
    ap.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: config logging.level)",
    )

    # --- Subcommands ---
    sub = ap.add_subparsers(dest="command", required=True)

    deriv = sub.add_parser(
        "derivatives",
        help="Year-specific derivatives with posterior credible intervals",
        description="""
For every pixel and target year, fit a padded seasonal smoother and simulate
its first derivative on days 1..365. A day is flagged '*' when the credible
interval excludes zero.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_run_args(deriv)

    splines = sub.add_parser(
        "splines",
        help="Year-specific fitted curves with standard errors",
        description="""
Same fits as 'derivatives', but emits the fitted NDVI curve (year_mean),
its standard error (year_se), and posterior quantiles on days 1..365.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_run_args(splines)

    summ = sub.add_parser("summarize", help="Summarize a derivatives or splines table by year")
    summ.add_argument("table", type=Path, help="Derivatives or splines table (CSV or parquet)")

    insp = sub.add_parser("inspect", help="Validate and describe the input timeseries")
    insp.add_argument("--input", type=Path, default=None, help="NDVI timeseries (default: from config)")

    return ap


# -----------------------------------------------------------------------------
# Config resolution
# -----------------------------------------------------------------------------

def _load_run_config(args: argparse.Namespace) -> PhenologyConfig:
    """Config file (explicit, default, or built-in) plus CLI overrides."""
    try:
        if args.config is not None:
            cfg = load_config(args.config)
        elif DEFAULT_CONFIG_YAML.exists():
            cfg = load_config(DEFAULT_CONFIG_YAML)
        else:
            cfg = PhenologyConfig()

        overrides = {"log_level": args.log_level}
        if getattr(args, "n_cores", None) is not None:
            overrides["n_cores"] = args.n_cores
        if getattr(args, "no_resume", False):
            overrides["resume_from_checkpoint"] = False
        start = getattr(args, "start_year", None)
        end = getattr(args, "end_year", None)
        if start is not None or end is not None:
            start = cfg.first_year if start is None else start
            end = cfg.last_year if end is None else end
            if end < start:
                raise ValueError(f"--end-year ({end}) must be >= --start-year ({start})")
            overrides["target_years"] = tuple(range(start, end + 1))
        return cfg.with_overrides(**overrides)
    except ValueError as e:
        raise SystemExit(f"Invalid configuration: {e}") from e


def _input_path(args: argparse.Namespace, cfg: PhenologyConfig) -> Path:
    return args.input or cfg.timeseries_file or DEFAULT_TIMESERIES


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _run_product(args: argparse.Namespace, product_name: str) -> int:
    """Shared body of the derivatives and splines commands."""
    cfg = _load_run_config(args)
    configure_logging(cfg.log_level)

    # Lazy import to keep CLI startup fast
    from hlsdrought.phenology.checkpoint import checkpoint_path_for
    from hlsdrought.phenology.pixel_year import Product
    from hlsdrought.phenology.runner import BatchDerivativeRunner
    from hlsdrought.timeseries import TimeseriesError, load_timeseries

    product = Product(product_name)
    input_path = _input_path(args, cfg)
    if args.output is not None:
        output_path = args.output
    elif product is Product.DERIVATIVES:
        output_path = cfg.derivatives_file or DEFAULT_DERIVATIVES
    else:
        output_path = cfg.splines_file or DEFAULT_SPLINES

    if args.dry_run:
        print(f"[dry-run] Would run {product.value}:")
        print(f"  Input: {input_path}")
        print(f"  Output: {output_path}")
        print(f"  Checkpoint: {checkpoint_path_for(output_path)} (resume={cfg.resume_from_checkpoint})")
        print(f"  Years: {cfg.first_year}-{cfg.last_year} (boundary years use k={cfg.gam_knots - cfg.boundary_knot_reduction})")
        print(f"  GAM: basis={cfg.gam_basis.value} k={cfg.gam_knots} padding={cfg.edge_padding_days}d")
        print(f"  Posterior: n_sims={cfg.n_posterior_sims} alpha={cfg.alpha_level} seed={cfg.posterior_seed}")
        print(f"  Cores: {cfg.n_cores} | checkpoint every {cfg.checkpoint_interval} pixels")
        return 0

    try:
        timeseries = load_timeseries(input_path)
    except TimeseriesError as e:
        raise SystemExit(str(e)) from e

    runner = BatchDerivativeRunner(cfg, product, output_path=output_path)
    runner.run(timeseries)

    if runner.all_failed:
        logger.error("%s Every attempted pixel failed", product.tag)
        return EXIT_ALL_FAILED
    return 0


def _handle_derivatives(args: argparse.Namespace) -> int:
    return _run_product(args, "derivatives")


def _handle_splines(args: argparse.Namespace) -> int:
    return _run_product(args, "splines")


def _handle_summarize(args: argparse.Namespace) -> int:
    """Print a by-year summary of an existing output table."""
    cfg = _load_run_config(args)
    configure_logging(cfg.log_level)

    import pandas as pd

    from hlsdrought.phenology.summary import summarize, totals
    from hlsdrought.timeseries import read_table

    if not args.table.exists():
        raise SystemExit(f"Table not found: {args.table}")
    df = read_table(args.table)
    try:
        by_year = summarize(df)
    except ValueError as e:
        raise SystemExit(str(e)) from e

    with pd.option_context("display.max_rows", None, "display.width", 120):
        print(by_year.to_string(index=False, float_format=lambda v: f"{v:.4f}"))
    print()
    for key, value in totals(df).items():
        print(f"  {key}: {value:.2f}" if isinstance(value, float) else f"  {key}: {value}")
    return 0


def _handle_inspect(args: argparse.Namespace) -> int:
    """Load the input timeseries and print what a run would see."""
    cfg = _load_run_config(args)
    configure_logging(cfg.log_level)

    from hlsdrought.timeseries import TimeseriesError, describe_timeseries, load_timeseries

    input_path = _input_path(args, cfg)
    try:
        df = load_timeseries(input_path)
    except TimeseriesError as e:
        raise SystemExit(str(e)) from e

    info = describe_timeseries(df, cfg.target_years, cfg.min_observations)
    print(f"Timeseries: {input_path}")
    for key, value in info.items():
        print(f"  {key}: {value}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for hlsdrought.phenology CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "derivatives": _handle_derivatives,
        "splines": _handle_splines,
        "summarize": _handle_summarize,
        "inspect": _handle_inspect,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
