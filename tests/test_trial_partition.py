"""Tests for single-trial regressor partitioning (multi-regressor and LS-S)."""

import pytest

from lss_first_level_proc.first_level_utils import InvalidInput
from lss_first_level_proc.trial_partition import (
    partition_multi_regressor,
    partition_single_trial,
    iter_multi_model,
    record_covariates,
    trial_info_frame,
    wanted_conditions,
    TRIAL_INFO_COLUMNS,
)


def _session():
    return {
        "index": 1,
        "conditions": [
            {"name": "face", "onsets": [10.0, 30.0, 50.0], "durations": [2.0, 2.0, 3.0]},
            {"name": "house", "onsets": [20.0, 40.0], "durations": [2.0, 2.5]},
            {"name": "NR", "onsets": [5.0, 45.0], "durations": [1.0, 1.0]},
            {"name": "cue", "onsets": [60.0], "durations": [0.5]},
        ],
    }


def _all_onsets(regressor_set):
    return sorted(o for onsets in regressor_set["onsets"] for o in onsets)


def _session_onsets(session):
    return sorted(o for c in session["conditions"] for o in c["onsets"])


# ---------------------------------------------------------------------------
# Multi-regressor strategy
# ---------------------------------------------------------------------------

class TestMultiRegressor:

    def test_names_and_order(self):
        rs = partition_multi_regressor(_session(), ["NR"])
        assert rs["names"] == ["face_1", "face_2", "face_3", "house_1", "house_2", "NR", "cue_1"]

    def test_single_trial_regressors(self):
        rs = partition_multi_regressor(_session(), ["NR"])
        assert rs["onsets"][1] == [30.0]
        assert rs["durations"][2] == [3.0]
        assert rs["onsets"][4] == [40.0]
        assert rs["durations"][4] == [2.5]

    def test_ignored_condition_is_one_regressor(self):
        rs = partition_multi_regressor(_session(), ["NR"])
        i = rs["names"].index("NR")
        assert rs["onsets"][i] == [5.0, 45.0]
        assert rs["durations"][i] == [1.0, 1.0]

    def test_every_onset_in_exactly_one_regressor(self):
        session = _session()
        rs = partition_multi_regressor(session, ["NR"])
        total = sum(len(o) for o in rs["onsets"])
        assert total == sum(len(c["onsets"]) for c in session["conditions"])
        assert _all_onsets(rs) == _session_onsets(session)

    def test_parallel_lists(self):
        session = _session()
        rs = partition_multi_regressor(session, [])
        n_trials = sum(len(c["onsets"]) for c in session["conditions"])
        assert len(rs["names"]) == len(rs["onsets"]) == len(rs["durations"]) == n_trials

    def test_trial_log(self):
        log = []
        partition_multi_regressor(_session(), ["NR"], trial_log=log)
        assert [r["beta_number"] for r in log] == list(range(1, 8))
        nr = [r for r in log if r["condition"] == "NR"][0]
        assert nr["condition_rep"] == 1
        assert nr["number_onsets"] == 2
        assert nr["first_onset"] == 5.0
        face3 = [r for r in log if r["beta_name"] == "face_3"][0]
        assert face3["condition_rep"] == 3
        assert face3["number_onsets"] == 1
        assert face3["session"] == 1

    def test_input_not_mutated(self):
        session = _session()
        rs = partition_multi_regressor(session, ["NR"])
        rs["onsets"][5].append(99.0)
        assert session["conditions"][2]["onsets"] == [5.0, 45.0]

    def test_mismatched_lengths_raise(self):
        session = _session()
        session["conditions"][1]["durations"] = [2.0]
        with pytest.raises(InvalidInput):
            partition_multi_regressor(session, [])


# ---------------------------------------------------------------------------
# Multi-model (LS-S) strategy
# ---------------------------------------------------------------------------

class TestSingleTrial:

    def test_group_order(self):
        rs = partition_single_trial(_session(), 0, 2)
        assert rs["names"] == ["face_002", "OTHER_face", "house", "NR", "cue"]

    def test_single_trial_and_other_same_condition(self):
        rs = partition_single_trial(_session(), 0, 2)
        assert rs["onsets"][0] == [30.0]
        assert rs["durations"][0] == [2.0]
        assert rs["onsets"][1] == [10.0, 50.0]
        assert rs["durations"][1] == [2.0, 3.0]

    def test_other_conditions_unchanged(self):
        rs = partition_single_trial(_session(), 1, 1)
        assert rs["names"] == ["house_001", "OTHER_house", "face", "NR", "cue"]
        assert rs["onsets"][2] == [10.0, 30.0, 50.0]
        assert rs["onsets"][3] == [5.0, 45.0]

    def test_every_onset_once(self):
        session = _session()
        for j, cond in enumerate(session["conditions"]):
            for k in range(1, len(cond["onsets"]) + 1):
                rs = partition_single_trial(session, j, k)
                assert _all_onsets(rs) == _session_onsets(session)

    def test_single_trial_condition_has_no_other_group(self):
        session = _session()
        rs = partition_single_trial(session, 3, 1)
        assert "OTHER_cue" not in rs["names"]
        assert len(rs["names"]) == 1 + (len(session["conditions"]) - 1)
        assert rs["names"] == ["cue_001", "face", "house", "NR"]

    def test_duplicate_onset_values_kept(self):
        session = {"conditions": [{"name": "a", "onsets": [4.0, 4.0, 8.0], "durations": [1.0, 2.0, 3.0]}]}
        rs = partition_single_trial(session, 0, 1)
        assert rs["onsets"][1] == [4.0, 8.0]
        assert rs["durations"][1] == [2.0, 3.0]

    def test_condition_index_out_of_range(self):
        with pytest.raises(InvalidInput):
            partition_single_trial(_session(), 4, 1)

    def test_trial_out_of_range(self):
        with pytest.raises(InvalidInput):
            partition_single_trial(_session(), 1, 3)
        with pytest.raises(InvalidInput):
            partition_single_trial(_session(), 1, 0)


class TestIterMultiModel:

    def test_skips_ignored_conditions(self):
        names = [rs["names"][0] for _, _, rs in iter_multi_model(_session(), ["NR"])]
        assert names == ["face_001", "face_002", "face_003", "house_001", "house_002", "cue_001"]

    def test_trial_log(self):
        log = []
        list(iter_multi_model(_session(), ["NR"], trial_log=log))
        assert len(log) == 6
        assert all(r["number_onsets"] == 1 for r in log)
        assert log[4]["beta_name"] == "house_002"
        assert log[4]["condition_rep"] == 2
        assert log[4]["first_onset"] == 40.0

    def test_deterministic(self):
        first = [rs for _, _, rs in iter_multi_model(_session(), ["NR"])]
        second = [rs for _, _, rs in iter_multi_model(_session(), ["NR"])]
        assert first == second


# ---------------------------------------------------------------------------
# Bookkeeping helpers
# ---------------------------------------------------------------------------

class TestBookkeeping:

    def test_wanted_conditions_declared_order(self):
        other = {"conditions": [{"name": "extra", "onsets": [1.0], "durations": [1.0]},
                                {"name": "face", "onsets": [2.0], "durations": [1.0]}]}
        assert wanted_conditions([_session(), other], ["NR"]) == ["face", "house", "cue", "extra"]
        assert wanted_conditions(_session(), ["NR", "cue"]) == ["face", "house"]

    def test_covariate_rows(self):
        log = []
        partition_multi_regressor(_session(), ["NR"], trial_log=log)
        record_covariates(log, 1, 2)
        assert log[-1]["beta_name"] == "covariate2"
        assert log[-1]["beta_number"] == 9

    def test_trial_info_frame(self):
        log = []
        list(iter_multi_model(_session(), ["NR"], trial_log=log))
        log[0]["trial_dir"] = "/tmp/x"
        df = trial_info_frame(log)
        assert list(df.columns[:len(TRIAL_INFO_COLUMNS)]) == TRIAL_INFO_COLUMNS
        assert "trial_dir" in df.columns
        assert len(df) == 6

    def test_empty_trial_info_frame(self):
        df = trial_info_frame([])
        assert list(df.columns) == TRIAL_INFO_COLUMNS
