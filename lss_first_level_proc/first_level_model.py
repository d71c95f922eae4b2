#!/usr/bin/env python3

# ============================================================================
# PRIOR MODEL DESCRIPTION LOADER
# Reads the YAML description of a previously specified first-level model
# (global timing settings plus sessions with scans, condition events, and
# nuisance covariates) and validates everything it references.
#
# Version: 1.0
# ============================================================================

import os
import logging

import numpy as np
import pandas as pd
import yaml

from .first_level_utils import (
    MissingInput,
    InvalidInput,
    VALID_HRF_MODELS,
    validate_custom_hrf,
)

VALID_UNITS = {"secs", "scans"}
VALID_NOISE_MODELS = {"none", "AR(1)"}

# Defaults for optional global settings.
# microtime_onset is carried with the description only to be reported in the
# run summary: AFNI has no equivalent of SPM's reference time bin.
MODEL_DEFAULTS = {
    "units": "secs",
    "microtime_resolution": 16,
    "microtime_onset": 8,
    "hrf_model": "GAM",
    "custom_hrf": None,
    "mask_path": None,
    "noise_model": "AR(1)",
}

def _require_file(path, what):
    if path is None or not os.path.isfile(path):
        raise MissingInput(f"Cannot find {what}: {path}")
    return path

def read_session_conditions(timing_path):
    """Read condition events from a timing CSV with CONDITION, ONSET, DURATION columns.

    Conditions are returned in order of first appearance; each condition's
    events keep their row order in the file.
    """
    _require_file(timing_path, "timing file")
    stim_df = pd.read_csv(timing_path, sep=',')
    stim_df.columns = stim_df.columns.str.strip()

    for curr_col in ["CONDITION", "ONSET", "DURATION"]:
        if curr_col not in stim_df.columns.to_list():
            raise InvalidInput(
                f"Timing file {timing_path} did not contain necessary columns "
                "'CONDITION', 'ONSET', and 'DURATION'")

    stim_df["CONDITION"] = stim_df["CONDITION"].astype(str).str.strip()
    conditions = []
    for cond in stim_df["CONDITION"].unique():
        cond_df = stim_df[stim_df["CONDITION"] == cond]
        conditions.append({
            "name": cond,
            "onsets": [float(v) for v in cond_df["ONSET"]],
            "durations": [float(v) for v in cond_df["DURATION"]],
        })
    return conditions

def _inline_conditions(raw_conditions, label):
    if not isinstance(raw_conditions, list):
        raise InvalidInput(f"[{label}] 'conditions' must be a list.")
    conditions = []
    for cond in raw_conditions:
        if not isinstance(cond, dict) or "name" not in cond or "onsets" not in cond:
            raise InvalidInput(f"[{label}] each condition needs 'name' and 'onsets'.")
        onsets = [float(v) for v in np.atleast_1d(cond["onsets"])]
        durations = cond.get("durations", [0.0] * len(onsets))
        durations = [float(v) for v in np.atleast_1d(durations)]
        if len(onsets) != len(durations):
            raise InvalidInput(
                f"[{label}] condition '{cond['name']}' has {len(onsets)} onsets "
                f"but {len(durations)} durations.")
        conditions.append({"name": str(cond["name"]), "onsets": onsets, "durations": durations})
    return conditions

def load_covariates(covariates_path):
    """Load a nuisance covariate matrix (rows = timepoints) as a 2D array."""
    _require_file(covariates_path, "covariates file")
    data = np.loadtxt(covariates_path, ndmin=2)
    return data

def _load_session(raw_session, index):
    label = f"session {index}"
    if not isinstance(raw_session, dict):
        raise InvalidInput(f"[{label}] must be a mapping.")

    scan_path = _require_file(raw_session.get("scan_path"), f"scan for {label}")

    if raw_session.get("conditions") is not None:
        conditions = _inline_conditions(raw_session["conditions"], label)
    elif raw_session.get("task_timing_path") is not None:
        conditions = read_session_conditions(raw_session["task_timing_path"])
    else:
        raise InvalidInput(f"[{label}] needs 'task_timing_path' or 'conditions'.")

    if raw_session.get("covariates_path") is not None:
        covariates = load_covariates(raw_session["covariates_path"])
    else:
        covariates = np.zeros((0, 0))

    hpf = raw_session.get("hpf")
    if hpf is not None:
        try:
            hpf = float(hpf)
        except (TypeError, ValueError):
            raise InvalidInput(f"[{label}] hpf must be a positive number, got {hpf!r}.")
        if hpf <= 0:
            raise InvalidInput(f"[{label}] hpf must be a positive number, got {hpf}.")

    return {
        "index": index,
        "scan_path": scan_path,
        "conditions": conditions,
        "covariates": covariates,
        "hpf": hpf,
    }

def load_model_description(model_path, logger=None):
    """
    Load and validate a prior first-level model description.

    Parameters
    ----------
    model_path : str
        Path to the YAML model description.
    logger : logging.Logger, optional

    Returns
    -------
    dict
        Global settings (tr, units, microtime_resolution, microtime_onset,
        hrf_model, custom_hrf, mask_path, noise_model) and 'sessions', a list
        of session dicts (index, scan_path, conditions, covariates, hpf).

    Raises
    ------
    MissingInput
        If the description or any file it references does not exist.
    InvalidInput
        If the description is malformed.
    """
    _log = logger or logging.getLogger(__name__)
    _log.info("Loading previous model: %s", model_path)
    _require_file(model_path, "model description")

    with open(model_path, "r") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise InvalidInput(f"YAML parse error in {model_path}: {e}")
    if not isinstance(raw, dict):
        raise InvalidInput(f"Model description is empty or not a mapping: {model_path}")

    model = dict(MODEL_DEFAULTS)
    model.update({k: v for k, v in raw.items() if k != "sessions"})

    try:
        model["tr"] = float(model["tr"])
    except (KeyError, TypeError, ValueError):
        raise InvalidInput("Model description needs a numeric 'tr'.")
    if model["tr"] <= 0:
        raise InvalidInput(f"tr must be a positive number, got {model['tr']}.")

    if model["units"] not in VALID_UNITS:
        raise InvalidInput(f"units must be one of {sorted(VALID_UNITS)}, got '{model['units']}'.")
    if model["noise_model"] not in VALID_NOISE_MODELS:
        raise InvalidInput(
            f"noise_model must be one of {sorted(VALID_NOISE_MODELS)}, got '{model['noise_model']}'.")
    if model["hrf_model"] not in VALID_HRF_MODELS:
        raise InvalidInput(
            f"hrf_model must be one of {sorted(VALID_HRF_MODELS)}, got '{model['hrf_model']}'.")
    if model["hrf_model"] == "custom" and not model["custom_hrf"]:
        raise InvalidInput("custom_hrf string is required when hrf_model='custom'.")
    if model["hrf_model"] == "custom" and not validate_custom_hrf(model["custom_hrf"], _log):
        raise InvalidInput(f"custom_hrf '{model['custom_hrf']}' is not a valid AFNI model string.")
    try:
        model["microtime_resolution"] = int(model["microtime_resolution"])
    except (TypeError, ValueError):
        raise InvalidInput("microtime_resolution must be a positive integer.")
    if model["microtime_resolution"] < 1:
        raise InvalidInput("microtime_resolution must be a positive integer.")
    if model["mask_path"] is not None:
        _require_file(model["mask_path"], "explicit mask")

    raw_sessions = raw.get("sessions")
    if not isinstance(raw_sessions, list) or len(raw_sessions) == 0:
        raise InvalidInput("Model description needs a non-empty 'sessions' list.")
    model["sessions"] = [_load_session(s, i) for i, s in enumerate(raw_sessions, start=1)]

    n_scans = len(model["sessions"])
    _log.info("Modeling %d session(s) (TR=%.3f s, HRF=%s, noise model=%s).",
              n_scans, model["tr"], model["hrf_model"], model["noise_model"])
    return model
