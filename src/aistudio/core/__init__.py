"""Core functionality for AI Studio.

- **config**: Pydantic Settings configuration (``AISTUDIO_`` prefix)
- **errors**: Error taxonomy shared by server and client
- **events**: Structured event logging helpers
- **credentials**: Users and bearer tokens (SQLite + bcrypt)
- **image_store**: Decoding, normalising and storing uploaded images
- **generations_db**: SQLite store for generation records
- **orchestrator**: Submission pipeline tying the stores together

Usage Example
-------------
    from aistudio.core import GenerationService, GenerationsDB, ImageStore, config

    with GenerationsDB(config.database_path) as records:
        service = GenerationService(ImageStore(config.uploads_dir), records)
        result = await service.submit(1, "a lighthouse", "Classic", data_url)
"""

from aistudio.core.config import StudioConfig, config
from aistudio.core.generations_db import GenerationRecord, GenerationsDB, GenerationStatus
from aistudio.core.image_store import ImageStore, reference_to_url, url_to_reference
from aistudio.core.orchestrator import GenerationResult, GenerationService, SimulationSettings

__all__ = [
    "GenerationRecord",
    "GenerationResult",
    "GenerationService",
    "GenerationStatus",
    "GenerationsDB",
    "ImageStore",
    "SimulationSettings",
    "StudioConfig",
    "config",
    "reference_to_url",
    "url_to_reference",
]
