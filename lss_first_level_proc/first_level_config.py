#!/usr/bin/env python3

# ============================================================================
# YAML CONFIG LOADER AND VALIDATOR FOR SINGLE-TRIAL FIRST-LEVEL PROCESSING
# Reads a YAML config file, validates its structure and values, merges global
# defaults into each analysis block, and builds argparse.Namespace objects
# compatible with each script's run() function.
#
# Version: 1.0
# ============================================================================

import os
import sys
import argparse

import yaml

VALID_TYPES = {"beta_series", "mean_resms"}
VALID_MODELS = {"multi_regressor", "multi_model", "1", "2"}

# Required keys per analysis type
REQUIRED_KEYS = {
    "beta_series": {"subject", "model_path", "out_dir", "model"},
    "mean_resms": {"model_dirs", "out_path"},
}

# Keys that are actual boolean flags
BOOL_KEYS = ("overwrite", "delete_files")

# Keys that are always read from global (block values ignored)
GLOBAL_ONLY_KEYS = ("num_cores",)

def load_config(config_path):
    """Load a YAML config file and return the raw dict."""
    if not os.path.isfile(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with open(config_path, "r") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"YAML parse error in {config_path}: {e}")
    if raw is None:
        raise ValueError(f"Config file is empty: {config_path}")
    return raw

def _as_list(value):
    """Accept a YAML list or a comma-separated string; None -> []."""
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]

def validate_config(raw_config, logger):
    """
    Validate the structure and values of a raw config dict.

    Returns the validated config (with 'global' defaulting to {} if absent).
    """
    # Top-level structure
    if "analyses" not in raw_config:
        logger.error("Config missing required top-level key 'analyses'.")
        sys.exit(1)
    if not isinstance(raw_config["analyses"], list) or len(raw_config["analyses"]) == 0:
        logger.error("'analyses' must be a non-empty list.")
        sys.exit(1)

    global_cfg = raw_config.get("global", {}) or {}
    if not isinstance(global_cfg, dict):
        logger.error("'global' must be a dict if provided.")
        sys.exit(1)

    # Validate global.num_cores (optional)
    nc = global_cfg.get("num_cores")
    if nc is not None:
        try:
            nc_int = int(nc)
        except (TypeError, ValueError):
            logger.error("global.num_cores must be a positive integer.")
            sys.exit(1)
        if nc_int < 1:
            logger.error("global.num_cores must be a positive integer, got %s.", nc)
            sys.exit(1)

    # Validate each analysis block
    for idx, block in enumerate(raw_config["analyses"]):
        if not isinstance(block, dict):
            logger.error("analyses[%d] must be a dict.", idx)
            sys.exit(1)
        label = block.get("name", f"analyses[{idx}]")

        # type
        if "type" not in block:
            logger.error("[%s] Missing required key 'type'.", label)
            sys.exit(1)
        atype = block["type"]
        if atype not in VALID_TYPES:
            logger.error("[%s] Invalid type '%s'. Must be one of %s.", label, atype, VALID_TYPES)
            sys.exit(1)

        # Required keys
        for key in REQUIRED_KEYS[atype]:
            if key not in block:
                logger.error("[%s] Missing required key '%s' for type '%s'.", label, key, atype)
                sys.exit(1)

        # Warn if block contains global-only keys (they will be ignored)
        for key in GLOBAL_ONLY_KEYS:
            if key in block:
                logger.warning("[%s] '%s' is a global-only setting; block value will be ignored.", label, key)

        if atype == "beta_series":
            # Model description must exist
            if not os.path.isfile(block["model_path"]):
                logger.error("[%s] File does not exist: model_path = '%s'.", label, block["model_path"])
                sys.exit(1)

            # Strategy selector
            if str(block["model"]).strip() not in VALID_MODELS:
                logger.error("[%s] model must be one of %s, got '%s'.",
                             label, sorted(VALID_MODELS), block["model"])
                sys.exit(1)

            # ignore_conditions must be a list or comma-separated string
            ign = block.get("ignore_conditions")
            if ign is not None and not isinstance(ign, (list, str)):
                logger.error("[%s] ignore_conditions must be a list of condition names.", label)
                sys.exit(1)

            # Validate out_dir can be created
            out_dir = block["out_dir"]
            if not os.path.isdir(out_dir):
                try:
                    os.makedirs(out_dir, exist_ok=True)
                except OSError as e:
                    logger.error("[%s] Cannot create out_dir '%s': %s", label, out_dir, e)
                    sys.exit(1)

        elif atype == "mean_resms":
            dirs = _as_list(block["model_dirs"])
            if len(dirs) == 0:
                logger.error("[%s] model_dirs must be a non-empty list.", label)
                sys.exit(1)
            mt = block.get("mask_threshold")
            if mt is not None:
                try:
                    float(mt)
                except (TypeError, ValueError):
                    logger.error("[%s] mask_threshold must be a number.", label)
                    sys.exit(1)

    # Check for duplicate (out_dir, subject) pairs across beta_series blocks
    seen_pairs = {}
    for idx, block in enumerate(raw_config["analyses"]):
        if block["type"] != "beta_series":
            continue
        label = block.get("name", f"analyses[{idx}]")
        pair = (block["out_dir"], str(block["subject"]))
        if pair in seen_pairs:
            logger.error("[%s] Duplicate (out_dir, subject) pair: ('%s', '%s'); "
                         "also used by [%s]. Output files would collide.",
                         label, pair[0], pair[1], seen_pairs[pair])
            sys.exit(1)
        seen_pairs[pair] = label

    raw_config["global"] = global_cfg
    return raw_config

def _merge_global_into_block(block, global_cfg):
    """
    Merge global settings into an analysis block.

    Global-only keys (num_cores) are injected from global. All other settings
    use direct block values (no inheritance).
    """
    merged = dict(block)

    # Global-only keys: always use global value, ignore block
    for key in GLOBAL_ONLY_KEYS:
        merged[key] = global_cfg.get(key)

    # Boolean flag keys: null → False
    for key in BOOL_KEYS:
        val = merged.get(key)
        if val is None:
            merged[key] = False

    return merged

def build_namespace(merged_block, logger):
    """
    Flatten a merged YAML block into an argparse.Namespace with the exact
    attribute names each script's run() expects.
    """
    atype = merged_block["type"]

    ns = argparse.Namespace()

    if atype == "beta_series":
        ns.subject = str(merged_block["subject"])
        ns.model_path = merged_block["model_path"]
        ns.out_dir = merged_block["out_dir"]
        ns.model = str(merged_block["model"]).strip()
        ns.ignore_conditions = _as_list(merged_block.get("ignore_conditions"))
        ns.overwrite = bool(merged_block["overwrite"])
        ns.delete_files = bool(merged_block["delete_files"])
        val = merged_block.get("num_cores")
        ns.num_cores = int(val) if val is not None else 1

    elif atype == "mean_resms":
        ns.model_dirs = _as_list(merged_block["model_dirs"])
        ns.out_path = merged_block["out_path"]
        val = merged_block.get("mask_threshold")
        ns.mask_threshold = float(val) if val is not None else 0.0

    return ns

def describe_namespace(atype, ns):
    """Short (key, value) pairs for the analysis plan printout."""
    if atype == "beta_series":
        return [("subject", ns.subject), ("model", ns.model), ("out_dir", ns.out_dir)]
    return [("model_dirs", ", ".join(ns.model_dirs)), ("out_path", ns.out_path)]

# ----------------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------------

def load_and_validate(config_path, logger):
    """
    Load, validate, merge, and build Namespace objects from a YAML config.

    Returns
    -------
    list of (str, argparse.Namespace, str)
        Each tuple is (analysis_type, namespace, analysis_name).
    """
    raw = load_config(config_path)
    validated = validate_config(raw, logger)

    global_cfg = validated["global"]
    results = []

    for idx, block in enumerate(validated["analyses"]):
        merged = _merge_global_into_block(block, global_cfg)
        ns = build_namespace(merged, logger)
        atype = block["type"]
        name = block.get("name", f"analyses[{idx}]")
        results.append((atype, ns, name))

    return results
