"""AI Studio client.

- **api**: ``ApiClient``, an async httpx wrapper over the REST API
- **retry**: ``RetryPolicy`` and ``run_with_retry``
- **controller**: ``GenerationController``, retries + abort + history refresh + restore
"""

from aistudio.client.api import ApiClient, to_data_url
from aistudio.client.controller import Draft, GenerationController, describe_failure
from aistudio.client.retry import RetryPolicy, run_with_retry

__all__ = [
    "ApiClient",
    "Draft",
    "GenerationController",
    "RetryPolicy",
    "describe_failure",
    "run_with_retry",
    "to_data_url",
]
