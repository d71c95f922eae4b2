"""Tests for the YAML config loader/validator and the config runner."""

import logging
import os
import pytest
import yaml
from unittest.mock import patch

from lss_first_level_proc.first_level_config import load_and_validate
from lss_first_level_proc import run_first_level

logger = logging.getLogger("test_config")


def _write_config(tmp_path, config):
    path = str(tmp_path / "config.yaml")
    with open(path, "w") as f:
        yaml.safe_dump(config, f)
    return path


def _beta_block(tmp_path, **overrides):
    model_path = str(tmp_path / "model.yaml")
    if not os.path.exists(model_path):
        open(model_path, "w").close()
    block = {
        "name": "lss",
        "type": "beta_series",
        "subject": "sub-01",
        "model_path": model_path,
        "out_dir": str(tmp_path / "out"),
        "model": "multi_model",
    }
    block.update(overrides)
    return block


class TestLoadAndValidate:

    def test_beta_series_namespace(self, tmp_path):
        config = {
            "global": {"num_cores": 4},
            "analyses": [_beta_block(tmp_path, ignore_conditions="NR, cue", num_cores=8)],
        }
        (atype, ns, name), = load_and_validate(_write_config(tmp_path, config), logger)
        assert atype == "beta_series"
        assert name == "lss"
        assert ns.ignore_conditions == ["NR", "cue"]
        assert ns.num_cores == 4
        assert ns.overwrite is False
        assert ns.delete_files is False
        assert ns.model == "multi_model"

    def test_numeric_model_selector(self, tmp_path):
        config = {"analyses": [_beta_block(tmp_path, model=1)]}
        (_, ns, _), = load_and_validate(_write_config(tmp_path, config), logger)
        assert ns.model == "1"
        assert ns.num_cores == 1

    def test_mean_resms_namespace(self, tmp_path):
        config = {"analyses": [{
            "type": "mean_resms",
            "model_dirs": ["a/Sess001", "a/Sess002"],
            "out_path": str(tmp_path / "resms.csv"),
            "mask_threshold": 0.5,
        }]}
        (atype, ns, name), = load_and_validate(_write_config(tmp_path, config), logger)
        assert atype == "mean_resms"
        assert name == "analyses[0]"
        assert ns.model_dirs == ["a/Sess001", "a/Sess002"]
        assert ns.mask_threshold == 0.5

    @pytest.mark.parametrize("bad", [
        {"model": "lsa"},
        {"type": "glm"},
        {"model_path": "/does/not/exist.yaml"},
        {"ignore_conditions": 5},
    ])
    def test_invalid_block_exits(self, tmp_path, bad):
        config = {"analyses": [_beta_block(tmp_path, **bad)]}
        with pytest.raises(SystemExit):
            load_and_validate(_write_config(tmp_path, config), logger)

    def test_missing_required_key(self, tmp_path, caplog):
        block = _beta_block(tmp_path)
        del block["subject"]
        with caplog.at_level(logging.ERROR):
            with pytest.raises(SystemExit):
                load_and_validate(_write_config(tmp_path, {"analyses": [block]}), logger)
        assert "subject" in caplog.text

    def test_duplicate_outputs(self, tmp_path):
        config = {"analyses": [_beta_block(tmp_path), _beta_block(tmp_path, name="again")]}
        with pytest.raises(SystemExit):
            load_and_validate(_write_config(tmp_path, config), logger)

    def test_bad_num_cores(self, tmp_path):
        config = {"global": {"num_cores": 0}, "analyses": [_beta_block(tmp_path)]}
        with pytest.raises(SystemExit):
            load_and_validate(_write_config(tmp_path, config), logger)

    def test_missing_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_and_validate(str(tmp_path / "config.yaml"), logger)


class TestRunner:

    def test_dry_run_executes_nothing(self, tmp_path):
        path = _write_config(tmp_path, {"analyses": [_beta_block(tmp_path)]})
        with patch.dict(run_first_level.DISPATCH, {"beta_series": lambda ns, lg: pytest.fail("ran")}):
            run_first_level.main(["--config", path, "--dry-run"])

    def test_dispatches_blocks(self, tmp_path):
        path = _write_config(tmp_path, {"analyses": [{
            "type": "mean_resms",
            "model_dirs": "a,b",
            "out_path": str(tmp_path / "resms.csv"),
        }]})
        calls = []
        with patch.dict(run_first_level.DISPATCH, {"mean_resms": lambda ns, lg: calls.append(ns)}):
            run_first_level.main(["--config", path])
        assert calls[0].model_dirs == ["a", "b"]

    def test_missing_afni_exits(self, tmp_path):
        path = _write_config(tmp_path, {"analyses": [_beta_block(tmp_path)]})
        with patch("lss_first_level_proc.run_first_level.shutil.which", return_value=None):
            with pytest.raises(SystemExit):
                run_first_level.main(["--config", path])

    def test_first_level_error_exits(self, tmp_path):
        from lss_first_level_proc.first_level_utils import MissingInput

        def fail(ns, lg):
            raise MissingInput("no scan")

        path = _write_config(tmp_path, {"analyses": [_beta_block(tmp_path)]})
        with patch("lss_first_level_proc.run_first_level.shutil.which", return_value="/usr/bin/3dDeconvolve"), \
                patch.dict(run_first_level.DISPATCH, {"beta_series": fail}):
            with pytest.raises(SystemExit) as excinfo:
                run_first_level.main(["--config", path])
        assert excinfo.value.code == 1
