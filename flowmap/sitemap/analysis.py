"""Screen/flow analysis of captured keyframes via the OpenAI Responses API."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import re
import textwrap
from typing import Any, Dict, List, Optional, Sequence, Union

from openai import OpenAI

from flowmap.core.errors import AnalysisServiceError
from .models import FlowEdge, ScreenNode, SitemapGraph


LOG = logging.getLogger("flowmap.sitemap.analysis")

DEFAULT_MODEL = "gpt-4.1-mini"

SYSTEM_INSTRUCTION = textwrap.dedent(
    """
    You are a UX expert and interaction designer. You receive screenshots taken
    in chronological order from a screen recording of a digital product (mobile
    app, website or desktop application). The interface may be in any language,
    including Chinese; read the on-screen text to understand the context.

    Reconstruct the user flow sitemap:

    1. Identify distinct screens or pages. Ignore transition frames (motion blur,
       half-swiped pages, loading spinners) and duplicates.
    2. Identify the interactions that connect the screens, following the order
       of the frames. On mobile look for taps and swipes; on web and desktop look
       for clicks, hover states and cursor movement leading to a change.
    3. For `label` use a short name of 2-6 words (e.g. "Product Detail",
       "Settings", "Login Page"). For `description` briefly describe the
       screen's purpose in the language of the UI. For each edge `label`
       describe the action (e.g. "Click [Button]", "Tap [Icon]").
    4. If frame 1 shows Home, frame 2 is a transition and frame 3 shows Settings,
       link Home -> Settings.

    Answer with a single JSON object of the form:
    {"screens": [{"id": str, "label": str, "description": str, "frameIndex": int}],
     "edges": [{"fromId": str, "toId": str, "label": str}]}
    `id` values are unique slugs such as "home" or "settings". `frameIndex` is the
    0-based index of the frame that best represents the screen.
    """
).strip()

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# OpenAI helpers
# ---------------------------------------------------------------------------

def _build_openai_client() -> OpenAI:
    """Create an OpenAI client or raise a detailed error."""

    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise AnalysisServiceError(
            "OPENAI_API_KEY is not set in the environment; export a key or run with --no-analysis"
        )

    try:
        return OpenAI(api_key=api_key)
    except Exception as exc:  # pragma: no cover - network configuration issues
        raise AnalysisServiceError("failed to initialise OpenAI client") from exc


def build_analysis_request(frames: Sequence[Any]) -> List[Dict[str, Any]]:
    """Ordered ``{index, time, image}`` records; ``image`` is a JPEG data URL."""

    return [
        {"index": index, "time": float(frame.time), "image": frame.to_data_url()}
        for index, frame in enumerate(frames)
    ]


def _build_input(request: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    content: List[Dict[str, Any]] = [
        {
            "type": "input_text",
            "text": (
                f"Here are {len(request)} frames extracted chronologically from a screen "
                "recording. Analyze them to build a sitemap and answer in JSON."
            ),
        }
    ]
    for item in request:
        content.append(
            {"type": "input_text", "text": f"Frame Index: {item['index']} (Time: {item['time']:.1f}s)"}
        )
        content.append({"type": "input_image", "image_url": item["image"]})
    return [{"role": "user", "content": content}]


def call_analysis_service(
    frames: Sequence[Any],
    model: str = DEFAULT_MODEL,
    temperature: float = 0.2,
    *,
    timeout: Optional[float] = None,
    client: Optional[Any] = None,
) -> str:
    """Send one analysis request for *frames* and return the raw response text.

    The call is made once; there is no retry.
    """

    if not frames:
        raise AnalysisServiceError("no frames to analyze")

    client = client or _build_openai_client()
    request = build_analysis_request(frames)
    LOG.info("requesting sitemap analysis for %d frames (model=%s)", len(request), model)

    kwargs: Dict[str, Any] = {
        "model": model,
        "instructions": SYSTEM_INSTRUCTION,
        "input": _build_input(request),
        "text": {"format": {"type": "json_object"}},
        "temperature": temperature,
    }
    if timeout:
        kwargs["timeout"] = timeout

    try:
        response = client.responses.create(**kwargs)
    except Exception as exc:
        raise AnalysisServiceError("OpenAI analysis request failed") from exc

    text = getattr(response, "output_text", None)
    if not isinstance(text, str) or not text.strip():
        raise AnalysisServiceError("OpenAI analysis response was empty")
    return text


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def extract_json_payload(text: str) -> Dict[str, Any]:
    """Decode the service answer, tolerating a surrounding markdown code fence."""

    cleaned = _FENCE_RE.sub("", (text or "").strip()).strip() or "{}"
    try:
        payload = json.loads(cleaned)
    except ValueError as exc:
        LOG.error("analysis response was not JSON: %.200s", cleaned)
        raise AnalysisServiceError("analysis response was not valid JSON") from exc
    if not isinstance(payload, dict):
        raise AnalysisServiceError("analysis response must be a JSON object")
    return payload


def _require_str(item: Dict[str, Any], key: str, where: str) -> str:
    if key not in item or item[key] is None:
        raise AnalysisServiceError(f"{where} is missing `{key}`")
    value = item[key]
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise AnalysisServiceError(f"{where} has a non-text `{key}`: {value!r}")
    return str(value)


def parse_analysis(payload: Dict[str, Any], frame_count: Optional[int] = None) -> SitemapGraph:
    """Validate an analysis payload and build a :class:`SitemapGraph`.

    ``frameIndex`` must be an integer inside ``[0, frame_count)``; when
    *frame_count* is ``None`` only the lower bound is checked.  Screen ids must
    be unique.  Edges pointing at unknown screens are kept here; layout drops
    them.
    """

    if not isinstance(payload, dict):
        raise AnalysisServiceError("analysis payload must be a mapping")
    for key in ("screens", "edges"):
        if not isinstance(payload.get(key), list):
            raise AnalysisServiceError(f"analysis payload is missing a `{key}` list")

    screens: List[ScreenNode] = []
    seen: set[str] = set()
    for pos, raw in enumerate(payload["screens"]):
        where = f"screens[{pos}]"
        if not isinstance(raw, dict):
            raise AnalysisServiceError(f"{where} is not an object")
        screen_id = _require_str(raw, "id", where).strip()
        if not screen_id:
            raise AnalysisServiceError(f"{where} has an empty `id`")
        if screen_id in seen:
            raise AnalysisServiceError(f"duplicate screen id {screen_id!r}")
        seen.add(screen_id)

        frame_index = raw.get("frameIndex")
        if isinstance(frame_index, bool) or not isinstance(frame_index, int):
            raise AnalysisServiceError(f"{where} has a non-integer `frameIndex`: {frame_index!r}")
        if frame_index < 0 or (frame_count is not None and frame_index >= frame_count):
            raise AnalysisServiceError(
                f"{where} references unknown frame {frame_index} (have {frame_count})"
            )

        screens.append(
            ScreenNode(
                id=screen_id,
                label=_require_str(raw, "label", where),
                description=_require_str(raw, "description", where),
                frame_index=frame_index,
            )
        )

    edges: List[FlowEdge] = []
    for pos, raw in enumerate(payload["edges"]):
        where = f"edges[{pos}]"
        if not isinstance(raw, dict):
            raise AnalysisServiceError(f"{where} is not an object")
        edges.append(
            FlowEdge(
                from_id=_require_str(raw, "fromId", where).strip(),
                to_id=_require_str(raw, "toId", where).strip(),
                label=_require_str(raw, "label", where),
            )
        )

    LOG.info("analysis found %d screens and %d edges", len(screens), len(edges))
    return SitemapGraph(screens=screens, edges=edges)


def analyze_frames(
    frames: Sequence[Any],
    model: str = DEFAULT_MODEL,
    temperature: float = 0.2,
    *,
    timeout: Optional[float] = None,
    client: Optional[Any] = None,
) -> SitemapGraph:
    """Resolve the sitemap for *frames* or raise if the request cannot be satisfied."""

    text = call_analysis_service(frames, model, temperature, timeout=timeout, client=client)
    return parse_analysis(extract_json_payload(text), len(frames))


def load_graph_file(path: Union[str, Path], frame_count: Optional[int] = None) -> SitemapGraph:
    """Read a saved analysis response (or a run's ``analysis.json``) from disk."""

    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"graph file not found: {p}")
    return parse_analysis(extract_json_payload(p.read_text(encoding="utf-8")), frame_count)


__all__ = [
    "SYSTEM_INSTRUCTION",
    "build_analysis_request",
    "call_analysis_service",
    "extract_json_payload",
    "parse_analysis",
    "analyze_frames",
    "load_graph_file",
]
