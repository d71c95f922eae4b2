#!/usr/bin/env python3

# ============================================================================
# SHARED UTILITIES FOR SINGLE-TRIAL (LSS) FIRST-LEVEL PROCESSING
# Common functions used by the beta series and mean ResMS tools: logging,
# argparse types, error types, HRF strings, and the AFNI model helpers.
#
# Version: 1.0
# ============================================================================

import json
import math
import os
import sys
import shutil
import logging
import argparse
import subprocess

import numpy as np
import nibabel as nib

# ----------------------------------------------------------------------------
# Error Types
# ----------------------------------------------------------------------------

class FirstLevelError(Exception):
    """Base class for fatal first-level processing errors."""

class MissingInput(FirstLevelError, FileNotFoundError):
    """A model description, mask, scan, or other referenced file is missing."""

class InvalidInput(FirstLevelError, ValueError):
    """Malformed model or condition data (e.g. onset/duration length mismatch)."""

class SingularTransform(FirstLevelError, ValueError):
    """An affine transform could not be inverted."""

class UnsupportedStrategy(FirstLevelError, ValueError):
    """Unrecognized modeling strategy selector."""

# ----------------------------------------------------------------------------
# General Helpers
# ----------------------------------------------------------------------------

def dir_path_exists(path_string):
    """argparse type: ensure directory exists (create if needed)."""
    if not os.path.isdir(path_string):
        os.makedirs(path_string, exist_ok=True)
    return path_string

def file_path_exists(path_string):
    """argparse type: ensure a single file path exists."""
    if not os.path.isfile(path_string):
        raise argparse.ArgumentTypeError(
            f"[ERROR] The file '{path_string}' does not exist or is not a valid file."
        )
    return path_string

def valid_string_list(string_list):
    """argparse type: parse comma-separated string into a list of stripped, non-empty strings."""
    try:
        conds = string_list.split(",")
        conds_s = [cond.strip() for cond in conds]
        for cond in conds_s:
            if cond is None or cond == "":
                raise argparse.ArgumentTypeError(
                    f"[ERROR] '{string_list}' could not be parsed; "
                    "use string-list notation (e.g. 'cond1label,cond2label...')"
                )
        return conds_s
    except argparse.ArgumentTypeError:
        raise
    except (ValueError, IndexError, AttributeError):
        raise argparse.ArgumentTypeError(
            f"[ERROR] '{string_list}' could not be parsed; "
            "use string-list notation (e.g. 'cond1label,cond2label...')"
        )

def setup_logging(script_name, log_file=None):
    """
    Configure and return a logger with console output (and optional file output).

    Parameters
    ----------
    script_name : str
        Name used in log format, e.g. "beta_series_first_level".
    log_file : str, optional
        Path to a log file. If provided, logs are also written to this file.

    Returns
    -------
    logging.Logger
    """
    logger = logging.getLogger(script_name)
    logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers if called multiple times
    if logger.handlers:
        return logger

    fmt = logging.Formatter(
        fmt="%(asctime)s [%(name)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Console handler
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    # Optional file handler
    if log_file is not None:
        fh = logging.FileHandler(log_file)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    return logger

def remove_files_from_dir(dir_string, logger=None):
    """Remove all files, links, and subdirectories from a directory."""
    _log = logger or logging.getLogger(__name__)
    resolved = os.path.realpath(dir_string)
    if resolved == "/" or resolved == os.path.expanduser("~") or len(resolved) < 5:
        _log.error("Refusing to clear dangerous path: '%s' (resolved: '%s').", dir_string, resolved)
        sys.exit(1)
    if not os.path.isdir(dir_string):
        _log.warning("'%s' does not exist. Nothing to remove.", dir_string)
    else:
        for item_name in os.listdir(dir_string):
            item_path = os.path.join(dir_string, item_name)
            try:
                if os.path.isfile(item_path):
                    os.remove(item_path)
                elif os.path.islink(item_path):
                    os.unlink(item_path)
                elif os.path.isdir(item_path):
                    shutil.rmtree(item_path)
            except OSError as e:
                _log.error("Error deleting '%s': %s", item_path, e)

def write_run_summary(out_dir, out_file_pre, summary, logger):
    """Write a run summary JSON file ({out_dir}/{out_file_pre}_run_summary.json).

    Parameters
    ----------
    out_dir : str
        Output directory.
    out_file_pre : str
        Output file prefix (usually the subject ID).
    summary : dict
        Data to write. Typical keys include:
        - strategy, n_sessions, n_trials
        - n_models_estimated, n_models_skipped
        - images (condition -> list of 4D image paths)
    logger : logging.Logger
    """
    summary_path = os.path.join(out_dir, f"{out_file_pre}_run_summary.json")
    try:
        with open(summary_path, 'w') as f:
            json.dump(summary, f, indent=2)
        logger.info("Run summary written to %s", summary_path)
    except OSError as e:
        logger.warning("Could not write run summary to %s: %s", summary_path, e)
    return summary_path

# ----------------------------------------------------------------------------
# HRF Model Helpers
# ----------------------------------------------------------------------------

# HRF model categories
HRF_DURATION_MODELS = {"GAM", "BLOCK"}       # Use mean_dur in model string
HRF_DM_MODELS = {"dmBLOCK"}                  # Per-trial duration via married timing
HRF_IMPULSE_MODELS = {"SPMG1"}               # No duration parameter
VALID_HRF_MODELS = HRF_DURATION_MODELS | HRF_DM_MODELS | HRF_IMPULSE_MODELS | {"custom"}

# Known AFNI model name prefixes for custom HRF validation (first pass)
AFNI_MODEL_PREFIXES = {
    "GAM", "BLOCK", "dmBLOCK", "dmUBLOCK", "TENT", "TENTzero",
    "CSPLIN", "CSPLINzero", "SPMG1", "SPMG2", "SPMG3",
    "TWOGAMpw", "MION", "MIONN", "WAV", "EXPR", "POLY", "SIN",
}

def validate_custom_hrf(custom_hrf, logger):
    """
    Two-stage validation of a custom HRF string:
    1. Prefix check: verify the string starts with a known AFNI model name
    2. AFNI dry run: use 3dDeconvolve -nodata to validate full syntax

    Returns True if valid, False otherwise (errors logged).
    """
    import tempfile

    # Stage 1: prefix whitelist
    prefix_match = any(custom_hrf == name or custom_hrf.startswith(name + "(")
                       for name in AFNI_MODEL_PREFIXES)
    if not prefix_match:
        known = ", ".join(sorted(AFNI_MODEL_PREFIXES))
        logger.error("custom_hrf '%s' does not start with a known AFNI model name. "
                     "Known models: %s", custom_hrf, known)
        return False

    # Stage 2: AFNI -nodata dry run
    tmp_timing = None
    tmp_x1d = None
    try:
        with tempfile.NamedTemporaryFile(mode='w', suffix='.1D', delete=False) as f:
            f.write("10\n")
            tmp_timing = f.name
        tmp_x1d = tmp_timing.replace('.1D', '_test.x1D')
        cmd = ["3dDeconvolve", "-nodata", "100", "1",
               "-polort", "-1", "-num_stimts", "1",
               "-stim_times", "1", tmp_timing, custom_hrf,
               "-x1D", tmp_x1d, "-x1D_stop", "-nobucket"]
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            logger.error("custom_hrf '%s' failed AFNI validation. "
                         "3dDeconvolve error: %s", custom_hrf,
                         result.stderr.strip())
            return False
        return True
    finally:
        for p in (tmp_timing, tmp_x1d):
            if p and os.path.exists(p):
                os.unlink(p)

def needs_married_timing(hrf_model, custom_hrf=None):
    """Check if the HRF model requires married timing (onset*duration).

    Handles both named models (e.g. 'dmBLOCK') and custom strings
    (e.g. hrf_model='custom', custom_hrf='dmBLOCK(1)').
    """
    if hrf_model in HRF_DM_MODELS:
        return True
    if hrf_model == "custom" and custom_hrf is not None:
        return any(custom_hrf == name or custom_hrf.startswith(name + "(")
                   for name in HRF_DM_MODELS)
    return False

def build_hrf_string(hrf_model, mean_dur=None, custom_hrf=None):
    """Construct AFNI stim_times model string for the selected HRF."""
    if hrf_model == "custom":
        if not custom_hrf:
            raise ValueError("custom_hrf is required when hrf_model='custom'")
        return custom_hrf
    if hrf_model == "GAM":
        return f"GAM(8.6,.547,{mean_dur})"
    if hrf_model == "BLOCK":
        return f"BLOCK({mean_dur},1)"
    if hrf_model == "dmBLOCK":
        return "dmBLOCK(0)"
    if hrf_model == "SPMG1":
        return "SPMG1"
    raise ValueError(f"Unknown hrf_model: {hrf_model}")

def log_hrf_model(hrf_model, custom_hrf, logger):
    """Log the HRF model being used."""
    logger.info("HRF model: %s", hrf_model if hrf_model != "custom" else f"custom ({custom_hrf})")

# ----------------------------------------------------------------------------
# AFNI Helpers
# ----------------------------------------------------------------------------

# Fixed file names inside every model directory
STATS_FILE = "stats.nii.gz"
ERRTS_FILE = "errts.nii.gz"
DESIGN_FILE = "design.x1D"
MASK_FILE = "mask.nii.gz"
RESMS_FILE = "ResMS.nii.gz"
REGRESSOR_JSON = "st_regs.json"
COVARIATE_FILE = "st_covs.txt"

def run_afni_command(command, capture_output=False, description="", logger=None):
    """
    Run an AFNI command via subprocess with standardized error handling.

    Parameters
    ----------
    command : list of str
        The command and arguments.
    capture_output : bool
        If True, capture and return stdout.
    description : str
        Human-readable description for logging.
    logger : logging.Logger, optional

    Returns
    -------
    subprocess.CompletedProcess or str
        If capture_output is True, returns stdout as a string.
        Otherwise returns the CompletedProcess object.

    Raises
    ------
    subprocess.CalledProcessError
        If the command exits with non-zero status.
    """
    if logger:
        logger.debug("Running: %s", " ".join(command))

    try:
        env = os.environ.copy()
        env['AFNI_COMPRESSOR'] = 'GZIP'
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=True,
            env=env,
        )
        if capture_output:
            return result.stdout
        return result
    except subprocess.CalledProcessError as e:
        desc = f" ({description})" if description else ""
        msg = f"AFNI command failed{desc}: {' '.join(command)}"
        if e.stderr:
            msg += f"\n  stderr: {e.stderr.strip()}"
        if logger:
            logger.error(msg)
        raise

def clean_deconvolve_err(out_dir=None):
    """Remove 3dDeconvolve.err file if it exists (always generated by AFNI).

    Checks both the current working directory and out_dir (if provided).
    """
    for directory in filter(None, [".", out_dir]):
        err_path = os.path.join(directory, "3dDeconvolve.err")
        if os.path.exists(err_path):
            os.remove(err_path)

def regressor_timing_path(model_dir, index):
    """Timing file for the index-th (1-based) regressor of a model."""
    return os.path.join(model_dir, f"stim_{index:03d}_onsets.1D")

def write_regressor_files(regressor_set, model_dir, model, logger=None):
    """Write one AFNI timing file per regressor plus a JSON copy of the set.

    Onsets given in scans (model['units'] == 'scans') are converted to
    seconds. Married timing ('onset*duration') is written when the HRF model
    needs per-event durations.

    Returns
    -------
    list of str
        Timing file paths, parallel to regressor_set['names'].
    """
    _log = logger or logging.getLogger(__name__)
    scale = model["tr"] if model.get("units") == "scans" else 1.0
    married = needs_married_timing(model["hrf_model"], model.get("custom_hrf"))

    timing_paths = []
    for i, name in enumerate(regressor_set["names"], start=1):
        onsets = [float(o) * scale for o in regressor_set["onsets"][i - 1]]
        durations = [float(d) * scale for d in regressor_set["durations"][i - 1]]
        path = regressor_timing_path(model_dir, i)
        with open(path, 'w') as f:
            if married:
                for onset, dur in zip(onsets, durations):
                    f.write(f"{onset}*{dur}\n")
            else:
                for onset in onsets:
                    f.write(f"{onset}\n")
        timing_paths.append(path)

    with open(os.path.join(model_dir, REGRESSOR_JSON), 'w') as f:
        json.dump(regressor_set, f, indent=2)
    _log.debug("Wrote %d regressor timing files to %s", len(timing_paths), model_dir)
    return timing_paths

def write_covariate_file(covariates, path):
    """Write covariates tab-delimited (rows = timepoints). Returns None if there are none."""
    if covariates is None or covariates.size == 0:
        return None
    np.savetxt(path, covariates, fmt="%.8f", delimiter="\t")
    return path

def compute_polort(n_volumes, tr, hpf):
    """Legendre polynomial degree standing in for a high-pass filter of period hpf (s).

    AFNI's automatic choice ('A') is used when no period is given.
    """
    if hpf is None:
        return "A"
    return str(1 + int(math.floor(n_volumes * tr / float(hpf))))

def build_model_command(regressor_set, timing_paths, session, model, model_dir,
                        n_volumes, covariate_path=None, num_cores=1):
    """Build the 3dDeconvolve command for one regressor set.

    With an AR(1) noise model 3dDeconvolve only writes the design matrix and
    3dREMLfit does the estimation (see build_remlfit_command).
    """
    cmd = ["3dDeconvolve", "-quiet",
           "-input", session["scan_path"],
           "-polort", compute_polort(n_volumes, model["tr"], session.get("hpf"))]
    if model.get("mask_path") is not None:
        cmd.extend(["-mask", model["mask_path"]])
    if covariate_path is not None:
        cmd.extend(["-ortvec", covariate_path, "covariates"])
    cmd.extend(["-TR_times", str(model["tr"] / model.get("microtime_resolution", 16))])
    cmd.extend(["-num_stimts", f"{len(regressor_set['names'])}"])

    married = needs_married_timing(model["hrf_model"], model.get("custom_hrf"))
    stim_flag = "-stim_times_AM1" if married else "-stim_times"
    scale = model["tr"] if model.get("units") == "scans" else 1.0
    for i, name in enumerate(regressor_set["names"], start=1):
        mean_dur = None
        if model["hrf_model"] in HRF_DURATION_MODELS:
            mean_dur = float(np.mean(regressor_set["durations"][i - 1])) * scale
        hrf_string = build_hrf_string(model["hrf_model"], mean_dur=mean_dur,
                                      custom_hrf=model.get("custom_hrf"))
        cmd.extend([stim_flag, f"{i}", timing_paths[i - 1], hrf_string,
                    "-stim_label", f"{i}", name])

    cmd.extend(["-x1D", os.path.join(model_dir, DESIGN_FILE)])
    if model.get("noise_model") == "AR(1)":
        cmd.extend(["-x1D_stop", "-nobucket"])
    else:
        cmd.extend(["-bucket", os.path.join(model_dir, STATS_FILE),
                    "-errts", os.path.join(model_dir, ERRTS_FILE)])
    cmd.extend(["-jobs", f"{num_cores}"])
    return cmd

def build_remlfit_command(session, model, model_dir):
    """Build the 3dREMLfit command estimating a model with ARMA(1,1) noise."""
    cmd = ["3dREMLfit",
           "-matrix", os.path.join(model_dir, DESIGN_FILE),
           "-input", session["scan_path"]]
    if model.get("mask_path") is not None:
        cmd.extend(["-mask", model["mask_path"]])
    cmd.extend(["-Rbuck", os.path.join(model_dir, STATS_FILE),
                "-Rerrts", os.path.join(model_dir, ERRTS_FILE)])
    return cmd

def count_volumes(scan_path):
    """Number of volumes (4th dimension) in a NIfTI scan."""
    img = nib.load(scan_path)
    if len(img.shape) > 3:
        return img.shape[3]
    return 1

def write_model_mask(model, session, model_dir, logger=None):
    """Write mask.nii.gz for a model: copy the explicit mask or run 3dAutomask."""
    mask_out = os.path.join(model_dir, MASK_FILE)
    if model.get("mask_path") is not None:
        nib.save(nib.load(model["mask_path"]), mask_out)
    else:
        if os.path.exists(mask_out):
            os.remove(mask_out)
        run_afni_command(["3dAutomask", "-prefix", mask_out, session["scan_path"]],
                         description="3dAutomask model mask", logger=logger)
    return mask_out

def write_residual_variance(model_dir, logger=None):
    """Compute ResMS (residual sum of squares / residual dof) from errts.

    The residual dof is the number of timepoints minus the number of design
    matrix columns.
    """
    _log = logger or logging.getLogger(__name__)
    errts_path = os.path.join(model_dir, ERRTS_FILE)
    design_path = os.path.join(model_dir, DESIGN_FILE)
    for path in (errts_path, design_path):
        if not os.path.exists(path):
            raise MissingInput(f"Expected model output not found: {path}")

    design = np.loadtxt(design_path, comments="#", ndmin=2)
    errts = nib.load(errts_path)
    resid = errts.get_fdata()
    if resid.ndim == 3:
        resid = resid[..., np.newaxis]
    dof = resid.shape[3] - design.shape[1]
    if dof < 1:
        raise InvalidInput(
            f"Insufficient residual degrees of freedom ({dof}) for model in {model_dir}")

    resms = np.sum(resid ** 2, axis=3) / dof
    resms_path = os.path.join(model_dir, RESMS_FILE)
    nib.save(nib.Nifti1Image(resms.astype(np.float32), errts.affine), resms_path)
    _log.info("Residual variance (dof=%d) written to %s", dof, resms_path)
    return resms_path

def estimate_model(regressor_set, session, model, model_dir, num_cores=1, logger=None):
    """
    Build and estimate one first-level model for a regressor set with AFNI.

    Parameters
    ----------
    regressor_set : dict
        names / onsets / durations lists from trial_partition.
    session : dict
        Session from the model description (scan_path, covariates, hpf).
    model : dict
        Model description (global timing and noise settings).
    model_dir : str
        Directory receiving all model inputs and outputs.
    num_cores : int
    logger : logging.Logger, optional

    Returns
    -------
    str
        Path to the statistics bucket (regressor coefficients labeled
        '{name}#0_Coef').

    Raises
    ------
    InvalidInput
        If the covariate rows do not match the number of scan volumes.
    subprocess.CalledProcessError
        If AFNI fails.
    """
    _log = logger or logging.getLogger(__name__)
    os.makedirs(model_dir, exist_ok=True)

    n_volumes = count_volumes(session["scan_path"])
    covariates = session.get("covariates")
    if covariates is not None and covariates.size > 0 and covariates.shape[0] != n_volumes:
        raise InvalidInput(
            f"Session {session.get('index')}: covariates have {covariates.shape[0]} rows "
            f"but {session['scan_path']} has {n_volumes} volumes.")

    timing_paths = write_regressor_files(regressor_set, model_dir, model, logger=logger)
    covariate_path = write_covariate_file(covariates, os.path.join(model_dir, COVARIATE_FILE))

    # AFNI refuses to overwrite existing outputs
    for fname in (STATS_FILE, ERRTS_FILE, DESIGN_FILE):
        fpath = os.path.join(model_dir, fname)
        if os.path.exists(fpath):
            os.remove(fpath)

    decon_command = build_model_command(regressor_set, timing_paths, session, model, model_dir,
                                        n_volumes, covariate_path=covariate_path,
                                        num_cores=num_cores)
    run_afni_command(decon_command, description="3dDeconvolve model", logger=logger)
    if model.get("noise_model") == "AR(1)":
        run_afni_command(build_remlfit_command(session, model, model_dir),
                         description="3dREMLfit model", logger=logger)
    clean_deconvolve_err(model_dir)

    stats_path = os.path.join(model_dir, STATS_FILE)
    if not os.path.exists(stats_path):
        raise MissingInput(f"Model estimation did not produce {stats_path}")

    write_model_mask(model, session, model_dir, logger=logger)
    write_residual_variance(model_dir, logger=logger)
    _log.info("Estimated model with %d regressors in %s", len(regressor_set["names"]), model_dir)
    return stats_path

def extract_regressor_beta(stats_path, regressor_name, out_path, logger=None):
    """Copy the coefficient sub-brick of one regressor into its own image."""
    if os.path.exists(out_path):
        os.remove(out_path)
    calc_command = ["3dcalc", "-a", f"{stats_path}[{regressor_name}#0_Coef]",
                    "-expr", "a",
                    "-prefix", out_path]
    run_afni_command(calc_command, description=f"3dcalc beta {regressor_name}", logger=logger)
    if not os.path.exists(out_path):
        raise MissingInput(f"Failed to extract beta for {regressor_name}: {out_path}")
    return out_path

def concatenate_images(image_paths, out_path, logger=None):
    """Concatenate an ordered list of 3D images into one 4D image with 3dTcat."""
    _log = logger or logging.getLogger(__name__)
    if len(image_paths) == 0:
        raise MissingInput(f"No images to concatenate into {out_path}")
    if os.path.exists(out_path):
        os.remove(out_path)
    tcat_command = ["3dTcat", "-prefix", out_path] + list(image_paths)
    run_afni_command(tcat_command, description=f"3dTcat {os.path.basename(out_path)}", logger=logger)
    if not os.path.exists(out_path):
        raise MissingInput(f"Failed to create 4D image {out_path}")
    _log.info("Created %s from %d images.", out_path, len(image_paths))
    return out_path
