from api.src.services.github import (
    verify_signature,
    fetch_pipeline_config,
    parse_webhook_payload,
)
from api.src.services.queue import (
    enqueue_pipeline_run,
    request_cancel,
    get_run_status,
    get_queue_length,
)

__all__ = [
    "verify_signature",
    "fetch_pipeline_config",
    "parse_webhook_payload",
    "enqueue_pipeline_run",
    "request_cancel",
    "get_run_status",
    "get_queue_length",
]
