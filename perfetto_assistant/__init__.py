"""Per-trace analysis conversations backed by a streaming analysis service."""

from perfetto_assistant.identity import TraceMeta, fingerprint

__all__ = [
    "TraceMeta",
    "fingerprint",
]
