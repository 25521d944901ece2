"""
Collaborators used by job handlers: completions, storage, notifications.
"""

from journalq.services.completion import (
    AnthropicCompletionService,
    CompletionService,
    parse_json_reply,
)
from journalq.services.notifications import (
    NotificationChannel,
    NotificationHub,
    event_message,
)
from journalq.services.storage import (
    InMemoryStorage,
    Storage,
    StorageError,
    SupabaseStorage,
    build_storage,
)

__all__ = [
    "AnthropicCompletionService",
    "CompletionService",
    "parse_json_reply",
    "NotificationChannel",
    "NotificationHub",
    "event_message",
    "InMemoryStorage",
    "Storage",
    "StorageError",
    "SupabaseStorage",
    "build_storage",
]
