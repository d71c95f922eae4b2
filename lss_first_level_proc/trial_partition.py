#!/usr/bin/env python3

# ============================================================================
# TRIAL / CONDITION ONSET PARTITIONING
# Builds the regressor sets for the two single-trial modeling strategies:
#   multi-regressor: one model per session, one regressor per trial
#   multi-model (LS-S): one model per trial; the trial gets its own regressor,
#                       the other trials of its condition share one, and every
#                       other condition keeps its original regressor
#
# Version: 1.0
# ============================================================================

import pandas as pd

from .first_level_utils import InvalidInput

TRIAL_INFO_COLUMNS = ["beta_number", "session", "condition", "condition_rep",
                      "number_onsets", "first_onset", "beta_name"]

# ----------------------------------------------------------------------------
# Regressor Sets
# ----------------------------------------------------------------------------

def new_regressor_set():
    """Return an empty regressor set (parallel names/onsets/durations lists)."""
    return {"names": [], "onsets": [], "durations": []}

def add_regressor(regressor_set, name, onsets, durations):
    """Append one regressor; onsets and durations are copied into new lists."""
    regressor_set["names"].append(name)
    regressor_set["onsets"].append(list(onsets))
    regressor_set["durations"].append(list(durations))
    return regressor_set

def check_condition(condition):
    """Raise InvalidInput if a condition's onsets and durations differ in length."""
    n_onsets = len(condition["onsets"])
    n_durations = len(condition["durations"])
    if n_onsets != n_durations:
        raise InvalidInput(
            f"Condition '{condition['name']}' has {n_onsets} onsets but {n_durations} durations.")

def _session_conditions(session):
    conditions = session["conditions"]
    for cond in conditions:
        check_condition(cond)
    return conditions

# ----------------------------------------------------------------------------
# Trial Log
# ----------------------------------------------------------------------------

def log_trial(trial_log, session_index, condition, condition_rep, onsets, beta_name):
    """Append one trial record to trial_log and return it."""
    record = {
        "beta_number": len(trial_log) + 1,
        "session": session_index,
        "condition": condition,
        "condition_rep": condition_rep,
        "number_onsets": len(onsets),
        "first_onset": onsets[0] if len(onsets) > 0 else None,
        "beta_name": beta_name,
    }
    trial_log.append(record)
    return record

def record_covariates(trial_log, session_index, n_covariates):
    """Append one 'covariate' row per nuisance covariate column."""
    for icov in range(1, n_covariates + 1):
        log_trial(trial_log, session_index, "covariate", icov, [0], f"covariate{icov}")

def trial_info_frame(trial_log):
    """Trial log as a DataFrame (standard columns first)."""
    df = pd.DataFrame(trial_log)
    if df.empty:
        return pd.DataFrame(columns=TRIAL_INFO_COLUMNS)
    extra = [c for c in df.columns if c not in TRIAL_INFO_COLUMNS]
    return df[TRIAL_INFO_COLUMNS + extra]

# ----------------------------------------------------------------------------
# Multi-regressor Strategy
# ----------------------------------------------------------------------------

def partition_multi_regressor(session, ignore_conditions, trial_log=None):
    """
    Regressor set for a single model of one session with one regressor per trial.

    Conditions are visited in declared order. An ignored condition becomes one
    regressor named after the condition and holding all of its events; every
    other condition contributes one regressor per trial named
    '{condition}_{k}' (k counted from 1 in the condition's onset order).

    Parameters
    ----------
    session : dict
        Must contain 'conditions' (list of {name, onsets, durations}) and
        'index' (1-based session number, used for the trial log).
    ignore_conditions : collection of str
        Condition labels modeled as a whole instead of per trial.
    trial_log : list, optional
        If given, one record per emitted regressor is appended.

    Returns
    -------
    dict
        Regressor set with 'names', 'onsets', 'durations'.

    Raises
    ------
    InvalidInput
        If any condition has mismatched onsets and durations.
    """
    if trial_log is None:
        trial_log = []
    session_index = session.get("index", 1)
    regressor_set = new_regressor_set()

    for cond in _session_conditions(session):
        name = cond["name"]
        if name in ignore_conditions:
            add_regressor(regressor_set, name, cond["onsets"], cond["durations"])
            log_trial(trial_log, session_index, name, 1, cond["onsets"], name)
        else:
            for k, (onset, duration) in enumerate(zip(cond["onsets"], cond["durations"]), start=1):
                single_name = f"{name}_{k}"
                add_regressor(regressor_set, single_name, [onset], [duration])
                log_trial(trial_log, session_index, name, k, [onset], single_name)

    return regressor_set

# ----------------------------------------------------------------------------
# Multi-model (LS-S) Strategy
# ----------------------------------------------------------------------------

def single_trial_name(condition_name, trial_number):
    """Name of the single-trial regressor, e.g. 'go_007'."""
    return f"{condition_name}_{trial_number:03d}"

def other_trials_name(condition_name):
    """Name of the regressor holding the remaining trials of a condition."""
    return f"OTHER_{condition_name}"

def partition_single_trial(session, cond_index, trial_number):
    """
    Regressor set isolating one trial of one condition.

    The set holds, in order: the single trial ('{C}_{kkk}'); all other trials
    of the same condition ('OTHER_{C}', left out when the condition has a
    single trial); then each other declared condition (ignored ones
    included) under its own label with its full event list.

    Parameters
    ----------
    session : dict
        Session with 'conditions'.
    cond_index : int
        0-based index of the condition in session['conditions'].
    trial_number : int
        1-based trial number within the condition.

    Raises
    ------
    InvalidInput
        If the condition index or trial number is out of range, or a
        condition has mismatched onsets and durations.
    """
    conditions = _session_conditions(session)
    if not 0 <= cond_index < len(conditions):
        raise InvalidInput(
            f"Condition index {cond_index} is out of range (session has {len(conditions)} conditions).")
    cond = conditions[cond_index]
    n_trials = len(cond["onsets"])
    if not 1 <= trial_number <= n_trials:
        raise InvalidInput(
            f"Trial {trial_number} is out of range for condition '{cond['name']}' ({n_trials} trials).")

    regressor_set = new_regressor_set()
    k = trial_number - 1

    add_regressor(regressor_set, single_trial_name(cond["name"], trial_number),
                  [cond["onsets"][k]], [cond["durations"][k]])

    other_onsets = [o for i, o in enumerate(cond["onsets"]) if i != k]
    other_durations = [d for i, d in enumerate(cond["durations"]) if i != k]
    if other_onsets:
        add_regressor(regressor_set, other_trials_name(cond["name"]), other_onsets, other_durations)

    for j, other in enumerate(conditions):
        if j != cond_index:
            add_regressor(regressor_set, other["name"], other["onsets"], other["durations"])

    return regressor_set

def iter_multi_model(session, ignore_conditions, trial_log=None):
    """
    Yield (condition_name, trial_number, regressor_set) for every trial of
    every non-ignored condition of a session, in declared order.

    One record per trial is appended to trial_log when it is given.
    """
    session_index = session.get("index", 1)
    for j, cond in enumerate(_session_conditions(session)):
        if cond["name"] in ignore_conditions:
            continue
        for trial_number in range(1, len(cond["onsets"]) + 1):
            regressor_set = partition_single_trial(session, j, trial_number)
            if trial_log is not None:
                log_trial(trial_log, session_index, cond["name"], trial_number,
                          [cond["onsets"][trial_number - 1]],
                          single_trial_name(cond["name"], trial_number))
            yield cond["name"], trial_number, regressor_set

def wanted_conditions(sessions, ignore_conditions):
    """Non-ignored condition labels across sessions (declared order, no repeats)."""
    if isinstance(sessions, dict):
        sessions = [sessions]
    wanted = []
    for session in sessions:
        for cond in session["conditions"]:
            if cond["name"] not in ignore_conditions and cond["name"] not in wanted:
                wanted.append(cond["name"])
    return wanted
