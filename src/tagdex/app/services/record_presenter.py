"""Shape indexed records for API responses."""

from __future__ import annotations

from typing import Any, Mapping

from tagdex.app.models import Record, Tag, TagCategory

_PREVIEW_EXTENSION = "jpg"


def asset_urls(base_url: str, content_hash: str | None, file_type: str | None) -> dict[str, str | None]:
    """Derive file, sample and preview URLs from the content hash."""

    if not content_hash or len(content_hash) < 4:
        return {"file": None, "sample": None, "preview": None}
    prefix = f"{content_hash[0:2]}/{content_hash[2:4]}/{content_hash}"
    extension = file_type or _PREVIEW_EXTENSION
    return {
        "file": f"{base_url}/{prefix}.{extension}",
        "sample": f"{base_url}/sample/{prefix}.{_PREVIEW_EXTENSION}",
        "preview": f"{base_url}/preview/{prefix}.{_PREVIEW_EXTENSION}",
    }


def present_tags(record: Record, tags: Mapping[int, Tag]) -> dict[str, list[str]]:
    named: dict[str, list[str]] = {}
    for category in TagCategory:
        names = [
            tags[tag_id].name for tag_id in record.tags[int(category)] if tag_id in tags
        ]
        named[category.label] = names
    return named


def present_record(
    record: Record, tags: Mapping[int, Tag], *, asset_base_url: str
) -> dict[str, Any]:
    flags = record.flags
    payload: dict[str, Any] = {
        "id": record.id,
        "tags": present_tags(record, tags),
        "uploaderId": record.uploader_id,
        "approverId": record.approver_id,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
        "updatedAt": record.updated_at.isoformat() if record.updated_at else None,
        "md5": record.content_hash,
        "sources": list(record.sources),
        "rating": record.rating,
        "width": record.width,
        "height": record.height,
        "ratio": record.ratio,
        "megapixels": record.megapixels,
        "duration": record.duration,
        "favoriteCount": record.favorite_count,
        "score": record.score,
        "parentId": record.parent_id,
        "children": sorted(record.children),
        "fileType": record.file_type,
        "fileSize": record.file_size,
        "commentCount": record.comment_count,
        "isDeleted": flags.deleted,
        "isPending": flags.pending,
        "isFlagged": flags.flagged,
        "isRatingLocked": flags.rating_locked,
        "isStatusLocked": flags.status_locked,
        "isNoteLocked": flags.note_locked,
    }
    if not flags.deleted:
        payload.update(asset_urls(asset_base_url, record.content_hash, record.file_type))
    return payload


def present_tag(tag: Tag) -> dict[str, Any]:
    return {
        "id": tag.id,
        "name": tag.name,
        "category": int(tag.category),
        "categoryName": tag.category.label,
        "postCount": tag.post_count,
        "updatedAt": tag.updated_at.isoformat() if tag.updated_at else None,
    }


__all__ = ["asset_urls", "present_record", "present_tag", "present_tags"]
