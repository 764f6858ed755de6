# -*- coding: utf-8 -*-
"""
Command-line entry point.
Run:
  python -m flowmap.app --in recording.mp4 --out outputs/demo
Layout only, from a saved analysis response:
  python -m flowmap.app --graph outputs/demo/analysis.json --out outputs/demo
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from flowmap.core import pipeline
from flowmap.core.utils import (
    FINAL_FRAME_POLICIES,
    apply_cli_overrides,
    configure_logging,
    ensure_output_tree,
    load_config_file,
    prepare_config,
    write_json,
)
from flowmap.sitemap.layout import LayoutSettings

LOG = logging.getLogger("flowmap.app")


def _apply_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Map CLI flags to config override keys."""
    overrides: Dict[str, Any] = {}
    if args.out:
        overrides["output.folder"] = str(Path(args.out).resolve())
    if args.interval is not None:
        overrides["extract.scan_interval"] = float(args.interval)
    if args.max_frames is not None:
        overrides["extract.max_frames"] = int(args.max_frames)
    if args.final_frame:
        overrides["extract.final_frame_policy"] = args.final_frame
    if args.no_analysis:
        overrides["analysis.enabled"] = False
    return overrides


def _run_layout_only(args: argparse.Namespace, cfg: Dict[str, Any]) -> int:
    """Re-lay out a saved analysis response; no video is opened."""
    prepared = prepare_config(apply_cli_overrides(cfg, _apply_overrides(args)))
    out_dir, log_dir, _ = ensure_output_tree(prepared)
    configure_logging(prepared, log_dir)
    try:
        graph, layout = pipeline.layout_from_file(
            Path(args.graph), LayoutSettings.from_config(prepared)
        )
    except Exception as exc:
        LOG.exception("layout failed: %s", exc)
        return 1
    out_path = out_dir / "layout.json"
    write_json(out_path, {"sitemap": graph.to_payload(), "layout": layout.to_dict()})
    LOG.info("laid out %d screens; canvas %.0fx%.0f", len(layout.nodes), layout.width, layout.height)
    LOG.info("layout: %s", out_path)
    return 0


def _run_cli(args: argparse.Namespace) -> int:
    """Full pipeline execution path."""
    try:
        cfg = load_config_file(Path(args.config) if args.config else None)
    except Exception as exc:
        LOG.exception("could not load config: %s", exc)
        return 1

    if args.graph:
        return _run_layout_only(args, cfg)

    try:
        result = pipeline.run_pipeline(
            args.input,
            config=cfg,
            cli_overrides=_apply_overrides(args),
            progress_cb=lambda frac, msg: LOG.info("%03d%% %s", int(frac * 100), msg),
        )
    except Exception as exc:
        LOG.exception("pipeline failed: %s", exc)
        return 1
    LOG.info("kept %d frames", len(result.get("written", [])))
    layout = result.get("layout")
    if layout is not None:
        LOG.info("sitemap: %d screens, canvas %.0fx%.0f", len(layout.nodes), layout.width, layout.height)
    LOG.info("manifest: %s", result.get("manifest"))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowmap",
        description="Screen recording -> keyframes -> user-flow sitemap",
    )
    parser.add_argument("--in", dest="input", help="Input video path or URL")
    parser.add_argument("--graph", dest="graph", help="Saved analysis JSON; lay it out without a video")
    parser.add_argument("--out", dest="out", help="Output directory override")
    parser.add_argument("--config", dest="config", default="", help="Path to config.yaml")
    parser.add_argument("--interval", dest="interval", type=float, help="Scan interval in seconds")
    parser.add_argument("--max-frames", dest="max_frames", type=int, help="Cap on kept frames")
    parser.add_argument(
        "--final-frame",
        dest="final_frame",
        choices=FINAL_FRAME_POLICIES,
        help="Keep the last checkpoint always, or only when it is not a duplicate",
    )
    parser.add_argument(
        "--no-analysis",
        dest="no_analysis",
        action="store_true",
        help="Only extract keyframes; skip the sitemap analysis",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    if not args.input and not args.graph:
        LOG.error("nothing to do: pass --in <video> or --graph <analysis.json>")
        return 1
    return _run_cli(args)


if __name__ == "__main__":
    sys.exit(main())
