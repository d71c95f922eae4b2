#!/usr/bin/env python3

# ============================================================================
# MEAN RESIDUAL VARIANCE (ResMS) OVER THE MODEL MASK
# For each estimated model directory, averages ResMS.nii.gz over the voxels of
# mask.nii.gz and writes one table row per model.
#
# Version: 1.0
# ============================================================================
'''
REQUIREMENTS:
- numpy
- pandas
- nibabel

INPUTS:
(required)
--model_dirs: list (comma-separated) of model directories containing mask.nii.gz and ResMS.nii.gz
    (e.g. the Sess{sss}/ or Sess{sss}/{condition}_{kkk}/ directories from beta_series_first_level)
--out_path: global file path of the output CSV

(optional)
--mask_threshold: mask voxels strictly above this value are included (default: 0)

OUTPUTS:
{out_path}: columns ["MODEL_DIR", "MEAN_RESMS"], one row per model directory

NOTE: voxels of the mask that fall outside the ResMS grid, and NaN voxels inside it,
count as 0 in the mean (so they pull the mean toward zero rather than being excluded).
'''

# Imports
import copy
import os
import argparse
import time

import pandas as pd

from .first_level_utils import (
    setup_logging,
    valid_string_list,
)
from .roi_extract import mean_residual_variance

def run(args, logger):
    """Compute mean ResMS for each model directory and save the table."""
    args = copy.copy(args)

    rows = {"MODEL_DIR": [], "MEAN_RESMS": []}
    for model_dir in args.model_dirs:
        mean_resms = mean_residual_variance(model_dir, thresh=args.mask_threshold, logger=logger)
        rows["MODEL_DIR"].append(model_dir)
        rows["MEAN_RESMS"].append(mean_resms)

    out_dir = os.path.dirname(os.path.abspath(args.out_path))
    os.makedirs(out_dir, exist_ok=True)
    out_df = pd.DataFrame(rows)
    out_df.to_csv(args.out_path, index=False)
    logger.info("Mean ResMS for %d model(s) written to %s", len(out_df), args.out_path)
    return out_df

def main():
    """CLI entrypoint: parse --flags, call run()."""
    start_time = time.time()

    parser = argparse.ArgumentParser(description="Mean residual variance over each model's mask.")
    parser.add_argument("--model_dirs", type=valid_string_list, required=True)
    parser.add_argument("--out_path", type=str, required=True)
    parser.add_argument("--mask_threshold", type=float, default=0.0, required=False)

    args = parser.parse_args()
    logger = setup_logging("mean_resms_first_level")

    run(args, logger)

    logger.info("Total runtime: %.2f seconds", time.time() - start_time)

if __name__ == "__main__":
    main()
