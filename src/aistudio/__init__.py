"""AI Studio - image-and-prompt generation service with a retrying async client."""

__version__ = "0.1.0"

from aistudio.core.config import StudioConfig, config

__all__ = [
    "StudioConfig",
    "config",
]
