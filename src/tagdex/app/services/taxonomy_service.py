"""Tag metadata and implication lookups for the public endpoints."""

from __future__ import annotations

from typing import Any, Iterable

from tagdex.app.services.record_presenter import present_tag
from tagdex.app.services.tag_resolver import TagResolver, normalize_name

INCLUDE_PARENTS = "parents"
INCLUDE_CHILDREN = "children"
INCLUDE_ALL_PARENTS = "allparents"
DEFAULT_INCLUDE = (INCLUDE_CHILDREN, INCLUDE_PARENTS)


class TaxonomyService:
    def __init__(
        self,
        resolver: TagResolver,
        db,
        *,
        max_tags: int = 150,
    ) -> None:
        self._resolver = resolver
        self._db = db
        self._max_tags = max(1, int(max_tags))

    def _bounded(self, names: Iterable[str]) -> list[str]:
        unique: list[str] = []
        for name in names:
            key = normalize_name(name)
            if key and key not in unique:
                unique.append(key)
        return unique[: self._max_tags]

    async def lookup(self, names: Iterable[str]) -> dict[str, Any]:
        """Return tag metadata keyed by the requested name; misses are omitted."""

        resolved = await self._resolver.resolve_tags(self._bounded(names))
        return {name: present_tag(tag) for name, tag in resolved.items()}

    async def relationships(
        self, names: Iterable[str], include: Iterable[str] = DEFAULT_INCLUDE
    ) -> dict[str, dict[str, list[str]]]:
        """Implication neighbours keyed by canonical (alias-resolved) name."""

        wanted = {item.strip().lower() for item in include if item.strip()}
        resolved = await self._resolver.resolve_tags(self._bounded(names))
        canonical = {tag.id: tag for tag in resolved.values()}
        ids = list(canonical)

        sections: dict[str, dict[int, list[int]]] = {}
        if INCLUDE_ALL_PARENTS in wanted:
            sections["parents"] = await self._db.tags.all_parents_of(ids)
        elif INCLUDE_PARENTS in wanted:
            sections["parents"] = await self._db.tags.parents_of(ids)
        if INCLUDE_CHILDREN in wanted:
            sections["children"] = await self._db.tags.children_of(ids)

        related_ids = {
            other for section in sections.values() for values in section.values() for other in values
        }
        names_by_id = {
            tag_id: tag.name for tag_id, tag in (await self._db.tags.get_many(related_ids)).items()
        }

        relationships: dict[str, dict[str, list[str]]] = {}
        for tag_id, tag in canonical.items():
            entry: dict[str, list[str]] = {}
            for section, mapping in sections.items():
                entry[section] = [
                    names_by_id[other] for other in mapping.get(tag_id, []) if other in names_by_id
                ]
            relationships[tag.name] = entry
        return relationships


__all__ = ["DEFAULT_INCLUDE", "TaxonomyService"]
