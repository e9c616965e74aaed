"""Upstream catalog access: JSON API client, exports and payload parsing."""
from __future__ import annotations

from .client import UpstreamClient
from .exports import ExportReader
from .parsing import RecordDraft, RelationshipEntry, parse_post, parse_tag

__all__ = [
    "ExportReader",
    "RecordDraft",
    "RelationshipEntry",
    "UpstreamClient",
    "parse_post",
    "parse_tag",
]
