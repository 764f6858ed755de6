"""End-to-end pipeline: screen recording in, keyframes + positioned sitemap out.

Stages
------
1. **Configuration & ingest**: load/clamp config, prepare the output tree,
   resolve the source and open it.
2. **Sampling**: build the checkpoint schedule from the video duration.
3. **Extraction**: walk the checkpoints and keep distinct UI states.
4. **Analysis**: send the kept frames to the analysis service (optional).
5. **Layout**: place the returned screens on the level grid.

Every stage records serialisable diagnostics in ``stage_log``; the same dict
ends up in ``run_manifest.json``.  A failing analysis call still writes the
frames and the manifest before the error is re-raised.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np

from flowmap.core.errors import AnalysisServiceError
from flowmap.core.extraction import CapturedFrame, ExtractionSettings, extract_keyframes
from flowmap.core.ingest import remove_temp_source, resolve_source
from flowmap.core.media import VideoSource
from flowmap.core.signals import SignalSettings
from flowmap.core.utils import (
    apply_cli_overrides,
    configure_logging,
    ensure_output_tree,
    load_config_file,
    prepare_config,
    stable_config_signature,
    write_json,
)
from flowmap.sitemap.analysis import analyze_frames, load_graph_file
from flowmap.sitemap.layout import LayoutSettings, compute_layout
from flowmap.sitemap.models import LayoutResult, SitemapGraph


LOG = logging.getLogger("flowmap.pipeline")

ProgressCb = Optional[Callable[[float, str], None]]
CancelFn = Optional[Callable[[], bool]]

SCHEMA_VERSION = "1.0"


@dataclass(frozen=True)
class PipelineContext:
    """Capture configuration, paths, and deterministic identifiers."""

    cfg: Dict[str, Any]
    output_dir: Path
    log_dir: Path
    frames_dir: Path
    cfg_signature: str
    resolved_source: str
    source_is_temp: bool = False
    log_path: Optional[Path] = None


# ---------------------------------------------------------------------------
# Configuration & ingest helpers
# ---------------------------------------------------------------------------


def _load_config(
    config: Optional[Dict[str, Any]],
    config_path: Optional[Path],
    cli_overrides: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    base_cfg = config or load_config_file(config_path)
    if cli_overrides:
        base_cfg = apply_cli_overrides(base_cfg, cli_overrides)
    return prepare_config(base_cfg)


def _initialise_context(
    source: str,
    config: Optional[Dict[str, Any]],
    config_path: Optional[Path],
    cli_overrides: Optional[Mapping[str, Any]],
) -> PipelineContext:
    """Load configuration, prep directories and logging, and resolve the source."""

    cfg = _load_config(config, config_path, cli_overrides)
    out_dir, log_dir, frames_dir = ensure_output_tree(cfg)
    log_path = configure_logging(cfg, log_dir)
    resolved, is_temp = resolve_source(source)

    return PipelineContext(
        cfg=cfg,
        output_dir=out_dir,
        log_dir=log_dir,
        frames_dir=frames_dir,
        cfg_signature=stable_config_signature(cfg),
        resolved_source=resolved,
        source_is_temp=is_temp,
        log_path=log_path,
    )


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _frame_filename(index: int, frame: CapturedFrame) -> str:
    return f"frame_{index:03d}_{int(round(frame.time * 1000)):08d}ms.jpg"


def _frame_entry(index: int, frame: CapturedFrame, path: Optional[Path]) -> Dict[str, Any]:
    return {
        "index": index,
        "time": frame.time,
        "source_time": frame.source_time,
        "checkpoint": frame.checkpoint,
        "width": frame.width,
        "height": frame.height,
        "path": str(path) if path else None,
    }


def _decode(frame: CapturedFrame) -> Optional[np.ndarray]:
    buf = np.frombuffer(frame.image, dtype=np.uint8)
    return cv2.imdecode(buf, cv2.IMREAD_COLOR)


def _contact_sheet(
    frames: Sequence[CapturedFrame],
    path: Path,
    columns: int = 4,
    thumb_width: int = 320,
) -> Optional[Path]:
    """Write a keyframe contact sheet for quick QA. Returns the path on success."""

    thumbs: List[np.ndarray] = []
    for frame in frames:
        image = _decode(frame)
        if image is None:
            LOG.debug("skipping undecodable capture @ %.2fs in contact sheet", frame.time)
            continue
        h, w = image.shape[:2]
        thumb_h = max(1, int(round(h * thumb_width / float(w))))
        thumbs.append(cv2.resize(image, (thumb_width, thumb_h), interpolation=cv2.INTER_AREA))
    if not thumbs:
        return None

    cols = max(1, min(columns, len(thumbs)))
    rows = int(math.ceil(len(thumbs) / cols))
    cell_h = max(t.shape[0] for t in thumbs)
    sheet = np.full((rows * cell_h, cols * thumb_width, 3), 16, dtype=np.uint8)
    for idx, thumb in enumerate(thumbs):
        r, c = divmod(idx, cols)
        th = thumb.shape[0]
        sheet[r * cell_h : r * cell_h + th, c * thumb_width : (c + 1) * thumb_width] = thumb
    if cv2.imwrite(str(path), sheet):
        return path
    return None


def _write_outputs(
    frames: Sequence[CapturedFrame],
    context: PipelineContext,
) -> Tuple[List[Dict[str, Any]], Optional[Path]]:
    """Write kept frames (already JPEG) plus the optional contact sheet."""

    output_cfg = context.cfg.get("output") or {}
    written: List[Dict[str, Any]] = []
    for index, frame in enumerate(frames):
        path: Optional[Path] = None
        if output_cfg.get("write_frames", True):
            path = context.frames_dir / _frame_filename(index, frame)
            path.write_bytes(frame.image)
        written.append(_frame_entry(index, frame, path))

    sheet: Optional[Path] = None
    if output_cfg.get("contact_sheet", True):
        sheet = _contact_sheet(frames, context.output_dir / "contact_sheet.jpg")
    return written, sheet


def _build_manifest(
    context: PipelineContext,
    stage_log: Mapping[str, Any],
    written: Sequence[Mapping[str, Any]],
    contact_sheet: Optional[Path],
    graph: Optional[SitemapGraph],
    layout: Optional[LayoutResult],
) -> Tuple[Dict[str, Any], Path]:
    manifest = {
        "schema_version": SCHEMA_VERSION,
        "source": stage_log.get("ingest", {}),
        "config_signature": context.cfg_signature,
        "sampling": stage_log.get("sampling", {}),
        "extraction": stage_log.get("extraction", {}),
        "analysis": stage_log.get("analysis", {}),
        "outputs": {
            "frames": list(written),
            "contact_sheet": str(contact_sheet) if contact_sheet else None,
            "log": str(context.log_path) if context.log_path else None,
        },
        "sitemap": graph.to_payload() if graph else None,
        "layout": layout.to_dict() if layout else None,
    }
    manifest_path = context.output_dir / "run_manifest.json"
    write_json(manifest_path, manifest)
    return manifest, manifest_path


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


def layout_from_file(
    path: Path,
    settings: Optional[LayoutSettings] = None,
    frame_count: Optional[int] = None,
) -> Tuple[SitemapGraph, LayoutResult]:
    """Lay out a previously saved analysis response without touching any video."""

    graph = load_graph_file(path, frame_count)
    return graph, compute_layout(graph, settings or LayoutSettings())


def run_pipeline(
    source: str,
    *,
    config: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
    cli_overrides: Optional[Dict[str, Any]] = None,
    progress_cb: ProgressCb = None,
    cancel_fn: CancelFn = None,
    analyze: bool = True,
    analysis_client: Optional[Any] = None,
) -> Dict[str, Any]:
    """Execute the keyframe + sitemap pipeline and return a manifest summary."""

    progress_cb = progress_cb or (lambda frac, msg: None)
    cancel_fn = cancel_fn or (lambda: False)

    context = _initialise_context(source, config, config_path, cli_overrides)
    stage_log: Dict[str, Any] = {}
    extract_settings = ExtractionSettings.from_config(context.cfg)
    signal_settings = SignalSettings.from_config(context.cfg)

    progress_cb(0.02, "opening source")
    media_cfg = context.cfg.get("media") or {}
    try:
        with VideoSource(context.resolved_source, ffprobe_bin=media_cfg.get("ffprobe_bin")) as video:
            stage_log["ingest"] = {
                "input": str(source),
                "source": context.resolved_source,
                "downloaded": context.source_is_temp,
                "fps": video.fps,
                "resolution": {"width": video.width, "height": video.height},
                "duration_sec": video.duration,
            }

            def _extraction_progress(frac: float, msg: str) -> None:
                progress_cb(0.05 + 0.75 * frac, msg)

            result = extract_keyframes(
                video,
                extract_settings,
                signal_settings,
                progress_cb=_extraction_progress,
                cancel_fn=cancel_fn,
            )
    finally:
        if context.source_is_temp:
            remove_temp_source(context.resolved_source)

    stage_log["sampling"] = {
        "scan_interval": extract_settings.scan_interval,
        "max_checkpoints": extract_settings.max_checkpoints,
        "checkpoints": len(result.checkpoints),
    }
    stage_log["extraction"] = {
        **result.summary(),
        "final_frame_policy": extract_settings.final_frame_policy,
        "decisions": result.decisions,
    }
    progress_cb(0.82, f"kept {len(result.frames)} frames")

    written, sheet = _write_outputs(result.frames, context)
    progress_cb(0.85, f"wrote {len(written)} frames")

    analysis_cfg = context.cfg.get("analysis") or {}
    graph: Optional[SitemapGraph] = None
    layout: Optional[LayoutResult] = None
    if not (analyze and analysis_cfg.get("enabled", True)):
        stage_log["analysis"] = {"enabled": False}
    else:
        progress_cb(0.88, "analyzing screens")
        stage_log["analysis"] = {"enabled": True, "model": analysis_cfg.get("model")}
        try:
            graph = analyze_frames(
                result.frames,
                str(analysis_cfg.get("model")),
                float(analysis_cfg.get("temperature", 0.2)),
                timeout=analysis_cfg.get("timeout_sec"),
                client=analysis_client,
            )
        except AnalysisServiceError as exc:
            stage_log["analysis"]["error"] = str(exc)
            _build_manifest(context, stage_log, written, sheet, None, None)
            raise
        stage_log["analysis"].update(screens=len(graph.screens), edges=len(graph.edges))
        write_json(context.output_dir / "analysis.json", graph.to_payload())

        progress_cb(0.95, "computing layout")
        layout = compute_layout(graph, LayoutSettings.from_config(context.cfg))
        stage_log["layout"] = {
            "nodes": len(layout.nodes),
            "width": layout.width,
            "height": layout.height,
        }

    manifest, manifest_path = _build_manifest(context, stage_log, written, sheet, graph, layout)
    progress_cb(1.0, "pipeline complete")

    return {
        "output_dir": str(context.output_dir),
        "frames": result.frames,
        "written": written,
        "contact_sheet": str(sheet) if sheet else None,
        "graph": graph,
        "layout": layout,
        "manifest": str(manifest_path),
        "stage_log": stage_log,
    }


__all__ = [
    "run_pipeline",
    "layout_from_file",
    "PipelineContext",
]
