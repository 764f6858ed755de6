"""Utility helpers shared across the flowmap pipeline.

This module centralises configuration loading/validation, logging setup, output
folder preparation, and manifest/JSON helpers.  Every tunable threshold used by
the extraction and layout stages lives in ``_DEFAULT_CONFIG`` so the values are
documented once and clamped to a valid range in :func:`prepare_config`.

Relative paths (the default ``config.yaml`` and ``output.folder``) are resolved
against the current working directory, never against the installed package.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple


LOG = logging.getLogger("flowmap.utils")


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG: Dict[str, Any] = {
    "extract": {
        "scan_interval": 0.2,
        "max_frames": 600,
        "max_checkpoints": None,
        "end_margin": 0.05,
        "end_tolerance": 0.1,
        "final_frame_policy": "always",
        "final_duplicate_threshold": 0.998,
        "capture_max_dimension": 1500,
        "jpeg_quality": 80,
    },
    "signals": {
        "sample_size": 100,
        "complexity_threshold": 2.0,
        "complexity_stride": 5,
        "duplicate_threshold": 0.995,
        "noise_floor": 40,
        "pixel_stride": 1,
        "early_exit": True,
    },
    "layout": {
        "node_width": 240.0,
        "node_height": 460.0,
        "gap_x": 100.0,
        "gap_y": 120.0,
        "margin_x": 100.0,
        "margin_y": 80.0,
        "canvas_pad_x": 400.0,
        "canvas_pad_y": 300.0,
        "tie_epsilon": 0.01,
    },
    "analysis": {
        "enabled": True,
        "model": "gpt-4.1-mini",
        "temperature": 0.2,
        "timeout_sec": 180,
    },
    "media": {"ffprobe_bin": None},
    "output": {
        "folder": "outputs",
        "write_frames": True,
        "contact_sheet": True,
    },
    "logging": {"level": "INFO", "save_log": True},
}

FINAL_FRAME_POLICIES = ("always", "dedupe")


# (section, key, low, high, integer?) for every numeric tunable.
_BOUNDS: Tuple[Tuple[str, str, float, float, bool], ...] = (
    ("extract", "scan_interval", 0.01, 60.0, False),
    ("extract", "max_frames", 1, 5000, True),
    ("extract", "end_margin", 0.0, 1.0, False),
    ("extract", "end_tolerance", 0.0, 1.0, False),
    ("extract", "final_duplicate_threshold", 0.5, 1.0, False),
    ("extract", "capture_max_dimension", 64, 8192, True),
    ("extract", "jpeg_quality", 10, 100, True),
    ("signals", "sample_size", 16, 512, True),
    ("signals", "complexity_threshold", 0.0, 255.0, False),
    ("signals", "complexity_stride", 1, 64, True),
    ("signals", "duplicate_threshold", 0.5, 1.0, False),
    ("signals", "noise_floor", 0, 765, True),
    ("signals", "pixel_stride", 1, 64, True),
    ("layout", "node_width", 1.0, 10_000.0, False),
    ("layout", "node_height", 1.0, 10_000.0, False),
    ("layout", "gap_x", 0.0, 10_000.0, False),
    ("layout", "gap_y", 0.0, 10_000.0, False),
    ("layout", "margin_x", 0.0, 10_000.0, False),
    ("layout", "margin_y", 0.0, 10_000.0, False),
    ("layout", "canvas_pad_x", 0.0, 10_000.0, False),
    ("layout", "canvas_pad_y", 0.0, 10_000.0, False),
    ("layout", "tie_epsilon", 0.0, 1.0, False),
    ("analysis", "temperature", 0.0, 2.0, False),
    ("analysis", "timeout_sec", 5.0, 3600.0, False),
)


def default_config() -> Dict[str, Any]:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(_DEFAULT_CONFIG)


def default_config_path() -> Path:
    """``config.yaml`` in the directory flowmap is run from."""

    return Path.cwd() / "config.yaml"


def load_config_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load a YAML configuration file if it exists, otherwise return defaults."""

    import yaml  # Local import to keep the module importable during tests

    cfg_path = Path(path) if path else default_config_path()
    if not cfg_path.exists():
        LOG.warning("config not found at %s; using defaults", cfg_path)
        return default_config()
    with cfg_path.open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, Mapping):
        raise ValueError(f"config file {cfg_path} must contain a mapping at the top level")
    return merge_dicts(_DEFAULT_CONFIG, loaded)


def merge_dicts(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep-merge *override* over *base*. Neither input is modified."""

    merged = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_dicts(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_cli_overrides(cfg: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``{"section.key": value}`` overrides into a copy of *cfg*."""

    nested: Dict[str, Any] = {}
    for dotted_key, value in overrides.items():
        *parents, leaf = dotted_key.split(".")
        node = nested
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value
    return merge_dicts(cfg, nested)


def _bounded(section: Dict[str, Any], name: str, lo: float, hi: float, fallback: float) -> float:
    """Read ``section[key]`` as a finite number inside ``[lo, hi]``."""

    key = name.rsplit(".", 1)[-1]
    raw = section.get(key, fallback)
    try:
        number = float(raw)
    except (TypeError, ValueError):
        number = math.nan
    if math.isnan(number):
        LOG.warning("config[%s]=%r is not a number; using %s", name, raw, fallback)
        return float(fallback)
    if number < lo or number > hi:
        edge = lo if number < lo else hi
        LOG.warning("config[%s]=%s outside [%s, %s]; clamped to %s", name, raw, lo, hi, edge)
        return float(edge)
    return number


def _resolve_folder(folder: Any) -> Path:
    path = Path(folder or "outputs").expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path.resolve()


def prepare_config(raw_cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate and normalise configuration:

    * Merge with defaults.
    * Clamp every numeric tunable listed in ``_BOUNDS``.
    * Normalise the final-frame policy and the boolean switches.
    * Resolve the output folder to an absolute path under the working directory.
    """

    cfg = merge_dicts(_DEFAULT_CONFIG, raw_cfg or {})

    for section_name, key, lo, hi, integer in _BOUNDS:
        section = cfg.setdefault(section_name, {})
        fallback = _DEFAULT_CONFIG[section_name][key]
        value = _bounded(section, f"{section_name}.{key}", lo, hi, fallback)
        section[key] = int(round(value)) if integer else value

    extract = cfg["extract"]
    max_checkpoints = extract.get("max_checkpoints")
    if max_checkpoints in (None, "", 0):
        extract["max_checkpoints"] = None
    else:
        extract["max_checkpoints"] = int(
            round(_bounded(extract, "extract.max_checkpoints", 2, 100_000, 2))
        )
    policy = str(extract.get("final_frame_policy", "always")).strip().lower()
    if policy not in FINAL_FRAME_POLICIES:
        LOG.warning("config[extract.final_frame_policy]=%r unknown; using 'always'", policy)
        policy = "always"
    extract["final_frame_policy"] = policy

    cfg["signals"]["early_exit"] = bool(cfg["signals"].get("early_exit", True))

    analysis = cfg.setdefault("analysis", {})
    analysis["enabled"] = bool(analysis.get("enabled", True))
    analysis["model"] = str(analysis.get("model") or _DEFAULT_CONFIG["analysis"]["model"])

    cfg.setdefault("media", {}).setdefault("ffprobe_bin", None)

    output = cfg.setdefault("output", {})
    output["folder"] = str(_resolve_folder(output.get("folder")))
    output["write_frames"] = bool(output.get("write_frames", True))
    output["contact_sheet"] = bool(output.get("contact_sheet", True))

    logging_cfg = cfg.setdefault("logging", {})
    logging_cfg["level"] = str(logging_cfg.get("level", "INFO")).upper()
    logging_cfg["save_log"] = bool(logging_cfg.get("save_log", True))

    return cfg


def ensure_output_tree(cfg: Mapping[str, Any]) -> Tuple[Path, Path, Path]:
    """Ensure output/, output/logs, and output/frames exist."""

    out_dir = Path((cfg.get("output") or {}).get("folder", "outputs"))
    logs = out_dir / "logs"
    frames = out_dir / "frames"
    for path in (out_dir, logs, frames):
        path.mkdir(parents=True, exist_ok=True)
    return out_dir, logs, frames


def configure_logging(cfg: Mapping[str, Any], log_dir: Optional[Path] = None) -> Optional[Path]:
    """Apply the configured level and attach a run log file when requested."""

    logging_cfg = cfg.get("logging") or {}
    level = getattr(logging, str(logging_cfg.get("level", "INFO")).upper(), logging.INFO)
    root = logging.getLogger("flowmap")
    root.setLevel(level)
    if not logging_cfg.get("save_log", True) or log_dir is None:
        return None

    log_path = Path(log_dir) / "flowmap.log"
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_path.absolute():
            return log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(handler)
    return log_path


def stable_config_signature(cfg: Mapping[str, Any]) -> str:
    """Return a deterministic hash of the configuration dictionary."""

    payload = json.dumps(cfg, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def write_json(path: Path, payload: Mapping[str, Any]) -> Path:
    """Serialise *payload* beside *path*, then move it into place in one step."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.parent / f".{path.name}.{os.getpid()}.partial"
    staging.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    os.replace(staging, path)
    return path


__all__ = [
    "FINAL_FRAME_POLICIES",
    "default_config",
    "default_config_path",
    "load_config_file",
    "merge_dicts",
    "prepare_config",
    "apply_cli_overrides",
    "ensure_output_tree",
    "configure_logging",
    "stable_config_signature",
    "write_json",
]
