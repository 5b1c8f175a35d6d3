"""Top-level package for gijiroku."""

__version__ = "0.1.0"

from . import config, extractor, health, minutes, pipeline, providers, storage, summarizer, transcriber

__all__ = [
    "__version__",
    "config",
    "extractor",
    "health",
    "minutes",
    "pipeline",
    "providers",
    "storage",
    "summarizer",
    "transcriber",
]
