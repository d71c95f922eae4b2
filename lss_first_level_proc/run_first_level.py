#!/usr/bin/env python3

# ============================================================================
# YAML CONFIG RUNNER FOR SINGLE-TRIAL FIRST-LEVEL PROCESSING
# Reads a YAML config, validates it, and dispatches each analysis block
# to the appropriate pipeline script's run() function.
#
# Usage:
#   lss-first-level --config my_study.yaml
#   lss-first-level --config my_study.yaml --dry-run
#   lss-first-level --config my_study.yaml --analyses 0 2
#   lss-first-level --config my_study.yaml --log-file run.log
#
# Version: 1.0
# ============================================================================

import sys
import time
import shutil
import argparse

from .first_level_utils import setup_logging, FirstLevelError
from .first_level_config import load_and_validate, describe_namespace

from .beta_series_first_level import run as run_beta_series
from .mean_resms_first_level import run as run_mean_resms

# Dispatch table
DISPATCH = {
    "beta_series": run_beta_series,
    "mean_resms": run_mean_resms,
}

# Analysis types that shell out to AFNI
AFNI_TYPES = {"beta_series"}

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Run single-trial first-level analyses from a YAML config file."
    )
    parser.add_argument(
        "--config", type=str, required=True,
        help="Path to the YAML configuration file."
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Validate the config and print the analysis plan without executing."
    )
    parser.add_argument(
        "--analyses", type=int, nargs="+", default=None,
        help="Run only specific analysis block indices (0-based). Default: run all."
    )
    parser.add_argument(
        "--log-file", type=str, default=None,
        help="Optional path to a log file (useful for parallel runs)."
    )

    args = parser.parse_args(argv)
    logger = setup_logging("run_first_level", log_file=args.log_file)

    # Load and validate config
    logger.info("Loading config from %s", args.config)
    try:
        analysis_list = load_and_validate(args.config, logger)
    except (FileNotFoundError, ValueError) as e:
        logger.error("%s", e)
        sys.exit(1)
    logger.info("Config validated: %d analysis block(s) found.", len(analysis_list))

    # Filter to requested indices
    if args.analyses is not None:
        for idx in args.analyses:
            if idx < 0 or idx >= len(analysis_list):
                logger.error("--analyses index %d is out of range (0-%d).", idx, len(analysis_list) - 1)
                sys.exit(1)
        analysis_list = [(atype, ns, name) for i, (atype, ns, name) in enumerate(analysis_list) if i in args.analyses]
        logger.info("Running %d selected analysis block(s).", len(analysis_list))

    # Print analysis plan
    logger.info("=" * 60)
    logger.info("ANALYSIS PLAN")
    logger.info("=" * 60)
    for i, (atype, ns, name) in enumerate(analysis_list):
        logger.info("  [%d] %s (type: %s)", i, name, atype)
        for key, val in describe_namespace(atype, ns):
            logger.info("       %s: %s", key, val)
    logger.info("=" * 60)

    if args.dry_run:
        logger.info("Dry run complete. No analyses were executed.")
        return

    # Check that AFNI is available on PATH
    if any(atype in AFNI_TYPES for atype, _, _ in analysis_list) and shutil.which("3dDeconvolve") is None:
        logger.error("AFNI not found on PATH. Install AFNI and ensure it is on your PATH before running.")
        sys.exit(1)

    # Execute each analysis block; stop at the first fatal error
    start_time = time.time()
    for i, (atype, ns, name) in enumerate(analysis_list):
        logger.info("-" * 60)
        logger.info("Starting analysis [%d]: %s (type: %s)", i, name, atype)
        logger.info("-" * 60)

        run_fn = DISPATCH[atype]
        block_start = time.time()
        try:
            run_fn(ns, logger)
        except SystemExit as e:
            if e.code != 0:
                logger.error("Analysis [%d] '%s' failed. Stopping.", i, name)
                sys.exit(1)
        except FirstLevelError as e:
            logger.error("Analysis [%d] '%s' failed (%s): %s", i, name, type(e).__name__, e)
            sys.exit(1)
        except Exception as e:
            logger.error("Analysis [%d] '%s' raised an unexpected error: %s", i, name, e)
            sys.exit(1)

        logger.info("Analysis [%d] '%s' completed in %.2f seconds.", i, name, time.time() - block_start)

    logger.info("=" * 60)
    logger.info("All analyses completed successfully in %.2f seconds.", time.time() - start_time)

if __name__ == "__main__":
    main()
