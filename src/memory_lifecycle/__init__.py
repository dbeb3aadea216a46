"""Memory lifecycle engine: cached project records, rotating backups and similarity-driven maintenance."""

__version__ = "0.1.0"

from .errors import MemoryEngineError
from .services import MemoryService

__all__ = ["MemoryEngineError", "MemoryService", "__version__"]
