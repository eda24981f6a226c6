"""Webhook intake for SharePoint list change notifications."""

from listrelay.webhook.models import (
    Notification,
    ResourceData,
)

__all__ = [
    "Notification",
    "ResourceData",
]
