"""
lss_first_level_proc — Single-trial first-level fMRI beta series.

Builds multi-regressor or LS-S (one model per trial) single-trial models
from a prior first-level model description, estimates them with AFNI,
concatenates the trial betas into per-condition 4D images, and summarizes
model residual variance over ROIs.
"""

__version__ = "1.0.0"

# Public API
from .first_level_utils import (
    setup_logging,
    build_hrf_string,
    needs_married_timing,
    FirstLevelError,
    MissingInput,
    InvalidInput,
    SingularTransform,
    UnsupportedStrategy,
    VALID_HRF_MODELS,
)
from .first_level_config import load_and_validate
from .first_level_model import load_model_description
from .trial_partition import (
    partition_multi_regressor,
    partition_single_trial,
    iter_multi_model,
)
from .roi_extract import (
    find_index,
    remap,
    mean_over_roi,
    mean_residual_variance,
)
from .run_first_level import DISPATCH

from .beta_series_first_level import run as run_beta_series
from .mean_resms_first_level import run as run_mean_resms
