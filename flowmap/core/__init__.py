# Core subpackage marker.
__all__ = [
    "errors",
    "utils",
    "ingest",
    "media",
    "scheduler",
    "signals",
    "extraction",
    "pipeline",
]
