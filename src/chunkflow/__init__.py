"""Chunked, resumable job processing over a durable SQLite queue."""

from .engine import Engine
from .errors import (
    EngineError,
    EngineInternalError,
    ErrorKind,
    GenerationError,
    InvalidJobStateError,
    JobNotFoundError,
)
from .models import EngineConfig

__version__ = "0.1.0"

__all__ = [
    "Engine",
    "EngineConfig",
    "EngineError",
    "EngineInternalError",
    "ErrorKind",
    "GenerationError",
    "InvalidJobStateError",
    "JobNotFoundError",
    "__version__",
]
