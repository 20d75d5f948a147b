"""Repository configuration models and loader exports."""

from .loader import RepositoryLoadError, RepositoryLoader, load_config
from .models import EdgeWorkerConfig, RepositoryConfig

__all__ = [
    "EdgeWorkerConfig",
    "RepositoryConfig",
    "RepositoryLoadError",
    "RepositoryLoader",
    "load_config",
]
