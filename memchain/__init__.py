"""memchain: encrypted, hash-chained, anchored agent memory."""

from __future__ import annotations

from memchain.capture import CaptureInput, CaptureMessage, CaptureStrategy
from memchain.config import MemchainSettings, load_config
from memchain.factory import MemchainRuntime, create_runtime
from memchain.pipeline import MemoryPipeline

__version__ = "0.1.0"

__all__ = [
    "CaptureInput",
    "CaptureMessage",
    "CaptureStrategy",
    "MemchainRuntime",
    "MemchainSettings",
    "MemoryPipeline",
    "__version__",
    "create_runtime",
    "load_config",
]
