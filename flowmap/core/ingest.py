# -*- coding: utf-8 -*-
from __future__ import annotations
import os
from pathlib import Path
from urllib.parse import unquote, urlparse
import tempfile
import shutil
import urllib.request
import logging
from typing import Optional, Tuple

LOG = logging.getLogger("flowmap.ingest")

VIDEO_EXTS = (".mp4", ".mov", ".mkv", ".webm", ".avi", ".m4v")
URL_SCHEMES = ("http", "https", "file")


def _is_url(s: str) -> bool:
    u = urlparse(s)
    return bool(u.scheme) and u.scheme.lower() in URL_SCHEMES


def _looks_like_video_path(path: str) -> bool:
    return path.lower().endswith(VIDEO_EXTS)


def _ext_from_content_type(url: str, content_type: str) -> str:
    ctype = content_type.lower()
    if "mp4" in ctype: return ".mp4"
    if "quicktime" in ctype: return ".mov"
    if "matroska" in ctype: return ".mkv"
    if "webm" in ctype: return ".webm"
    if "x-msvideo" in ctype: return ".avi"
    suffix = Path(urlparse(url).path).suffix.lower()
    return suffix if suffix in VIDEO_EXTS else ".mp4"


def _download_to_tempfile(url: str, timeout: float = 30.0) -> str:
    req = urllib.request.Request(url, headers={"User-Agent": "flowmap/0.1", "Accept": "*/*"})
    tmp_path: Optional[str] = None
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            ext = _ext_from_content_type(url, resp.headers.get("Content-Type") or "")
            fd, tmp_path = tempfile.mkstemp(prefix="flowmap_", suffix=ext)
            os.close(fd)
            LOG.info("ingest: downloading %s -> %s", url, tmp_path)
            with open(tmp_path, "wb") as f:
                shutil.copyfileobj(resp, f)
            return tmp_path
    except Exception:
        # do not leave partials lying around
        if tmp_path and os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def _resolve_local_path(p: str) -> Path:
    return Path(os.path.expanduser(os.path.expandvars(p))).resolve()


def resolve_source(source: str) -> Tuple[str, bool]:
    """
    Return ``(path, is_temp)``: a cv2.VideoCapture-friendly string for a screen
    recording, and whether it is a temporary download the caller must remove.
      - local paths are expanded, resolved, and validated
      - file:// URLs are resolved to local filesystem paths
      - http(s) URLs ending in a video extension are handed to OpenCV directly
      - other http(s) URLs are downloaded to a temp file

    Raises:
        FileNotFoundError if a local path cannot be found.
        URLError/HTTPError on network failures.
    """
    source = str(source).strip()
    if _is_url(source):
        u = urlparse(source)
        if u.scheme.lower() == "file":
            local_p = _resolve_local_path(unquote(u.path))
            if not local_p.exists():
                raise FileNotFoundError(f"file URL not found: {source}")
            LOG.info("ingest: using file URL path %s", local_p)
            return str(local_p), False
        if _looks_like_video_path(u.path):
            LOG.info("ingest: using stream URL %s", source)
            return source, False
        return _download_to_tempfile(source), True

    path = _resolve_local_path(source)
    if not path.is_file():
        raise FileNotFoundError(f"source not found: {source}")
    return str(path), False


def remove_temp_source(path: str) -> None:
    """Delete a temp download created by :func:`resolve_source`."""
    try:
        os.remove(path)
        LOG.info("ingest: removed temp download %s", path)
    except FileNotFoundError:
        LOG.debug("ingest: temp download %s already gone", path)
