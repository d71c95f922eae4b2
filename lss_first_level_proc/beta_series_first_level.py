#!/usr/bin/env python3

# ============================================================================
# SINGLE-TRIAL BETA SERIES FROM A PRIOR FIRST-LEVEL MODEL
# 1. Loads the prior model description (sessions, conditions, covariates, timing)
# 2. Partitions each session's events into single-trial regressor sets
#    (multi-regressor: one model per session; multi-model/LS-S: one model per trial)
# 3. Builds and estimates each model with AFNI's 3dDeconvolve (and 3dREMLfit for AR(1))
# 4. Extracts single-trial betas with AFNI's 3dcalc
# 5. Concatenates betas into 4D images per condition with AFNI's 3dTcat
#
# Version: 1.0
# ============================================================================
'''
REQUIREMENTS:
- AFNI
- numpy
- pandas
- nibabel

INPUTS:
(required)
--subject: subject ID used to name the trial information table and run summary
--model_path: global file path to the YAML description of the prior first-level model
    (tr, units, microtime_resolution, hrf_model, mask_path, noise_model and a list of sessions with
    scan_path, task_timing_path or inline conditions, covariates_path, hpf)
--out_dir: global directory path for model directories and beta images; will create if doesn't exist
--model: modeling strategy; 'multi_regressor' (or 1) for one model per session with one regressor per
    trial, 'multi_model' (or 2) for one model per trial (LS-S)

(optional)
--ignore_conditions: list (comma-separated) of conditions that are modeled as a whole and get no betas
--overwrite: (no value) re-run models and re-create images even if outputs already exist
--delete_files: (no value) delete the per-trial model directories' contents once the beta is extracted
--num_cores: number of CPU cores available to 3dDeconvolve (int; defaults to 1)

OUTPUTS:
multi_model:
{out_dir}/Sess{sss}/{condition}_{kkk}/: model inputs/outputs for one trial (timing files, st_regs.json, st_covs.txt,
    design.x1D, stats.nii.gz, errts.nii.gz, mask.nii.gz, ResMS.nii.gz)
{out_dir}/betas/Sess{sss}_{condition}_{kkk}.nii.gz: single-trial beta
{out_dir}/betas/4D_{condition}_Sess{sss}.nii.gz: all single-trial betas of a condition within a session
{out_dir}/betas/{subject}_beta_info.csv: trial information table
multi_regressor:
{out_dir}/Sess{sss}/: one model per session
{out_dir}/betas/Sess{sss}_{condition}_{k}.nii.gz: single-trial beta
{out_dir}/betas/4D_{condition}.nii.gz: all single-trial betas of a condition across sessions
{out_dir}/{subject}_beta_info.csv: trial information table
(always)
{out_dir}/{subject}_run_summary.json: strategy, counts, and the 4D images created
'''

# Imports
import copy
import os
import re
import argparse
import time

from .first_level_utils import (
    setup_logging,
    dir_path_exists,
    file_path_exists,
    valid_string_list,
    remove_files_from_dir,
    log_hrf_model,
    estimate_model,
    extract_regressor_beta,
    concatenate_images,
    write_run_summary,
    UnsupportedStrategy,
    STATS_FILE,
)
from .first_level_model import load_model_description
from .trial_partition import (
    partition_multi_regressor,
    iter_multi_model,
    record_covariates,
    trial_info_frame,
    wanted_conditions,
)

MULTI_REGRESSOR = "multi_regressor"
MULTI_MODEL = "multi_model"

# Accepted strategy selectors (numeric codes follow the original model numbering)
STRATEGIES = {
    MULTI_REGRESSOR: MULTI_REGRESSOR,
    "1": MULTI_REGRESSOR,
    MULTI_MODEL: MULTI_MODEL,
    "2": MULTI_MODEL,
}

def resolve_strategy(model_selector):
    """Map a strategy selector to 'multi_regressor' or 'multi_model'."""
    key = str(model_selector).strip()
    if key not in STRATEGIES:
        raise UnsupportedStrategy(
            f"Unknown model type '{model_selector}'. Use 'multi_regressor' (1) or 'multi_model' (2).")
    return STRATEGIES[key]

def session_label(session_index):
    return f"Sess{session_index:03d}"

def condition_image_path(beta_dir, condition, session_index=None):
    """4D output image for a condition (per session for multi-model)."""
    if session_index is None:
        return os.path.join(beta_dir, f"4D_{condition}.nii.gz")
    return os.path.join(beta_dir, f"4D_{condition}_{session_label(session_index)}.nii.gz")

def list_session_betas(beta_dir, session_index, condition):
    """Single-trial betas of a condition within a session, in trial order."""
    pattern = re.compile(rf"^{session_label(session_index)}_{re.escape(condition)}_(\d{{3,}})\.nii\.gz$")
    if not os.path.isdir(beta_dir):
        return []
    found = []
    for f in os.listdir(beta_dir):
        match = pattern.match(f)
        if match:
            found.append((int(match.group(1)), os.path.join(beta_dir, f)))
    return [path for _, path in sorted(found)]

# ----------------------------------------------------------------------------
# Multi-model (LS-S)
# ----------------------------------------------------------------------------

def gen_multi_model_betas(model, args, logger, exists=os.path.exists):
    """One model per trial; returns (images, trial_log, counts)."""
    beta_dir = os.path.join(args.out_dir, "betas")
    trial_log = []
    images = {}
    counts = {"n_models_estimated": 0, "n_models_skipped": 0}

    for session in model["sessions"]:
        s_idx = session["index"]
        sess_dir = os.path.join(args.out_dir, session_label(s_idx))
        session_conditions = wanted_conditions(session, args.ignore_conditions)

        # Models for every trial of every condition of interest
        skip_conditions = [c for c in session_conditions
                           if not args.overwrite and exists(condition_image_path(beta_dir, c, s_idx))]
        for cond in skip_conditions:
            logger.info("Exists: %s (skipping trials).", condition_image_path(beta_dir, cond, s_idx))

        for cond_name, trial_number, regressor_set in iter_multi_model(
                session, args.ignore_conditions, trial_log=trial_log):
            single_name = regressor_set["names"][0]
            trial_dir = os.path.join(sess_dir, single_name)
            beta_file = os.path.join(beta_dir, f"{session_label(s_idx)}_{single_name}.nii.gz")
            trial_log[-1]["trial_dir"] = trial_dir
            trial_log[-1]["beta_file"] = beta_file

            if cond_name in skip_conditions:
                continue
            if not args.overwrite and exists(beta_file):
                logger.info("Exists: %s", beta_file)
                counts["n_models_skipped"] += 1
                continue

            logger.info("Estimating %s trial %d (%s, %d regressors).",
                        session_label(s_idx), trial_number, single_name, len(regressor_set["names"]))
            os.makedirs(trial_dir, exist_ok=True)
            stats_path = estimate_model(regressor_set, session, model, trial_dir,
                                        num_cores=args.num_cores, logger=logger)
            extract_regressor_beta(stats_path, single_name, beta_file, logger=logger)
            counts["n_models_estimated"] += 1

            if args.delete_files:
                remove_files_from_dir(trial_dir, logger=logger)

        # 4D image per condition of interest in this session
        for cond in session_conditions:
            out_path = condition_image_path(beta_dir, cond, s_idx)
            if not args.overwrite and exists(out_path):
                logger.info("Exists: %s", out_path)
                images.setdefault(cond, []).append(out_path)
                continue
            betas = list_session_betas(beta_dir, s_idx, cond)
            if not betas:
                logger.warning("No single-trial betas for %s in %s; no 4D image written.",
                               cond, session_label(s_idx))
                continue
            concatenate_images(betas, out_path, logger=logger)
            images.setdefault(cond, []).append(out_path)

    info_path = os.path.join(beta_dir, f"{args.subject}_beta_info.csv")
    trial_info_frame(trial_log).to_csv(info_path, index=False)
    logger.info("Trial information written to %s", info_path)
    return images, trial_log, counts

# ----------------------------------------------------------------------------
# Multi-regressor
# ----------------------------------------------------------------------------

def gen_multi_regressor_betas(model, args, logger, exists=os.path.exists):
    """One model per session with one regressor per trial; returns (images, trial_log, counts)."""
    beta_dir = os.path.join(args.out_dir, "betas")
    trial_log = []
    counts = {"n_models_estimated": 0, "n_models_skipped": 0}
    cond_betas = {cond: [] for cond in wanted_conditions(model["sessions"], args.ignore_conditions)}
    refreshed = set()

    for session in model["sessions"]:
        s_idx = session["index"]
        sess_dir = os.path.join(args.out_dir, session_label(s_idx))
        first_record = len(trial_log)
        regressor_set = partition_multi_regressor(session, args.ignore_conditions, trial_log=trial_log)
        trial_records = [r for r in trial_log[first_record:] if r["condition"] not in args.ignore_conditions]
        record_covariates(trial_log, s_idx, session["covariates"].shape[1] if session["covariates"].size else 0)
        logger.info("%s: %d regressors (%d single trials).",
                    session_label(s_idx), len(regressor_set["names"]), len(trial_records))

        stats_path = os.path.join(sess_dir, STATS_FILE)
        estimated = args.overwrite or not exists(stats_path)
        if estimated:
            os.makedirs(sess_dir, exist_ok=True)
            stats_path = estimate_model(regressor_set, session, model, sess_dir,
                                        num_cores=args.num_cores, logger=logger)
            counts["n_models_estimated"] += 1
        else:
            logger.info("Exists: %s", stats_path)
            counts["n_models_skipped"] += 1

        for record in trial_records:
            beta_file = os.path.join(beta_dir, f"{session_label(s_idx)}_{record['beta_name']}.nii.gz")
            record["beta_file"] = beta_file
            # Betas from an earlier model are stale once the session is re-estimated
            if estimated or not exists(beta_file):
                extract_regressor_beta(stats_path, record["beta_name"], beta_file, logger=logger)
                refreshed.add(record["condition"])
            cond_betas[record["condition"]].append(beta_file)

    images = {}
    for cond, betas in cond_betas.items():
        out_path = condition_image_path(beta_dir, cond)
        if not args.overwrite and cond not in refreshed and exists(out_path):
            logger.info("Exists: %s", out_path)
            images[cond] = [out_path]
            continue
        if not betas:
            logger.warning("No single-trial betas for %s; no 4D image written.", cond)
            continue
        concatenate_images(betas, out_path, logger=logger)
        images[cond] = [out_path]

    info_path = os.path.join(args.out_dir, f"{args.subject}_beta_info.csv")
    trial_info_frame(trial_log).to_csv(info_path, index=False)
    logger.info("Trial information written to %s", info_path)
    return images, trial_log, counts

def run(args, logger, exists=os.path.exists):
    """Validate args and execute pipeline. Works from CLI or config runner.

    Returns
    -------
    dict
        {condition: [4D image paths]} (one path per session for multi-model,
        a single path for multi-regressor).
    """
    args = copy.copy(args)

    # Strategy is checked before any file is read or written
    strategy = resolve_strategy(args.model)
    args.ignore_conditions = list(args.ignore_conditions or [])

    model = load_model_description(args.model_path, logger=logger)
    log_hrf_model(model["hrf_model"], model.get("custom_hrf"), logger)
    if args.ignore_conditions:
        logger.info("Conditions modeled without single-trial betas: %s", args.ignore_conditions)

    dir_path_exists(args.out_dir)
    dir_path_exists(os.path.join(args.out_dir, "betas"))

    if strategy == MULTI_MODEL:
        images, trial_log, counts = gen_multi_model_betas(model, args, logger, exists=exists)
    else:
        images, trial_log, counts = gen_multi_regressor_betas(model, args, logger, exists=exists)

    summary = {
        "strategy": strategy,
        "subject": args.subject,
        "n_sessions": len(model["sessions"]),
        "n_trials": sum(1 for r in trial_log if r["condition"] != "covariate"),
        "ignore_conditions": args.ignore_conditions,
        "model_settings": {key: model[key] for key in
                           ("tr", "units", "hrf_model", "noise_model",
                            "microtime_resolution", "microtime_onset")},
        "images": images,
    }
    summary.update(counts)
    write_run_summary(args.out_dir, args.subject, summary, logger)
    return images

def main():
    """CLI entrypoint: parse --flags, call run()."""

    # Start the timer
    start_time = time.time()

    # ---------------------------------
    # Parse arguments
    # ---------------------------------
    parser = argparse.ArgumentParser(
        description="Single-trial beta series (multi-regressor or LS-S) from a prior first-level model.")
    # required:
    parser.add_argument("--subject", type=str, required=True)
    parser.add_argument("--model_path", type=file_path_exists, required=True)
    parser.add_argument("--out_dir", type=dir_path_exists, required=True)
    parser.add_argument("--model", type=str, required=True,
                        help="'multi_regressor' (1) or 'multi_model' (2).")

    # optional:
    parser.add_argument("--ignore_conditions", type=valid_string_list, default=[], required=False)
    parser.add_argument("--overwrite", action='store_true', required=False)
    parser.add_argument("--delete_files", action='store_true', required=False)
    parser.add_argument("--num_cores", type=int, default=1, required=False)

    args = parser.parse_args()
    logger = setup_logging("beta_series_first_level")

    run(args, logger)

    # Display total runtime
    logger.info("Total runtime: %.2f seconds", time.time() - start_time)

if __name__ == "__main__":
    main()
