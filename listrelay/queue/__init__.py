"""Orchestrator queue payloads and submission."""

from listrelay.queue.client import QueueClient, QueueClientFactory, SubmissionResult, validate_item_data
from listrelay.queue.payload import (
    QueueItemPayload,
    build_item_content,
    build_payload,
    encode_field_name,
    flatten,
)

__all__ = [
    "QueueClient",
    "QueueClientFactory",
    "QueueItemPayload",
    "SubmissionResult",
    "build_item_content",
    "build_payload",
    "encode_field_name",
    "flatten",
    "validate_item_data",
]
