"""Service layer - memory service, FastAPI application and HTTP interfaces."""

from .app import create_memory_app
from .config import MemoryConfig
from .core import MemoryService

__all__ = ["create_memory_app", "MemoryConfig", "MemoryService"]
