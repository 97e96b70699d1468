from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from typing import Any

from registry_discovery.core.urls import normalize_repository_url, repository_full_name, repository_name
from registry_discovery.services.models import (
    RELATIONSHIP_TYPES,
    CandidateEntry,
    RegistryEntry,
    RelationshipCandidate,
)

logger = logging.getLogger(__name__)

Heuristic = Callable[[CandidateEntry, RegistryEntry], RelationshipCandidate | None]

LOW_CONFIDENCE_FLOOR = 0.5
# fork/duplicate claims below the floor are reported as related.
DOWNGRADABLE_TYPES = {"fork", "duplicate"}
SAME_NAME_CONFIDENCE = 0.6
_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOP_WORDS = {"mcp", "server", "the", "a", "an", "for", "and", "of", "js", "ts", "py"}


class RelationshipDetector:
    def __init__(self, heuristics: Sequence[Heuristic] | None = None) -> None:
        self.heuristics: list[Heuristic] = list(heuristics) if heuristics is not None else list(DEFAULT_HEURISTICS)

    def classify(
        self,
        candidate: CandidateEntry,
        existing_index: Sequence[RegistryEntry],
    ) -> list[RelationshipCandidate]:
        strongest: dict[tuple[str, str], RelationshipCandidate] = {}
        for entry in existing_index:
            # The candidate's own registry row is re-discovery, not a relationship.
            if entry.repository_url == candidate.repository_url:
                continue
            for heuristic in self.heuristics:
                try:
                    found = heuristic(candidate, entry)
                except Exception:
                    logger.exception(
                        "relationship heuristic failed heuristic=%s candidate=%s entry=%s",
                        getattr(heuristic, "__name__", repr(heuristic)),
                        candidate.id,
                        entry.id,
                    )
                    continue
                if found is None:
                    continue
                adjusted = enforce_confidence_floor(found)
                key = (adjusted.parent_id, adjusted.type)
                current = strongest.get(key)
                if current is None or adjusted.confidence > current.confidence:
                    strongest[key] = adjusted

        return sorted(strongest.values(), key=lambda row: (-row.confidence, row.type, row.parent_id))


def enforce_confidence_floor(relationship: RelationshipCandidate) -> RelationshipCandidate:
    confidence = min(1.0, max(0.0, float(relationship.confidence)))
    relationship_type = relationship.type if relationship.type in RELATIONSHIP_TYPES else "related"
    metadata = dict(relationship.metadata)
    if relationship_type in DOWNGRADABLE_TYPES and confidence < LOW_CONFIDENCE_FLOOR:
        metadata["downgraded_from"] = relationship_type
        relationship_type = "related"
    return RelationshipCandidate(
        parent_id=relationship.parent_id,
        type=relationship_type,
        confidence=confidence,
        metadata=metadata,
    )


def fork_metadata_signal(candidate: CandidateEntry, entry: RegistryEntry) -> RelationshipCandidate | None:
    metadata = candidate.metadata
    if _truthy(metadata.get("fork")):
        if _points_at(entry, url=metadata.get("parent_url"), full_name=metadata.get("parent_full_name")):
            return RelationshipCandidate(
                parent_id=entry.id,
                type="fork",
                confidence=1.0,
                metadata={"signal": "fork_metadata"},
            )
    if _points_at(entry, url=metadata.get("template_url"), full_name=metadata.get("template_full_name")):
        return RelationshipCandidate(
            parent_id=entry.id,
            type="template",
            confidence=0.95,
            metadata={"signal": "template_metadata"},
        )
    return None


def hinted_relationship_signal(candidate: CandidateEntry, entry: RegistryEntry) -> RelationshipCandidate | None:
    """Relationship hints supplied by the discovery source under ``relationship_hints``."""
    hints = candidate.metadata.get("relationship_hints")
    if not isinstance(hints, list):
        return None
    best: RelationshipCandidate | None = None
    for hint in hints:
        if not isinstance(hint, dict) or not _points_at(entry, url=hint.get("url"), full_name=hint.get("full_name")):
            continue
        confidence = _coerce_float(hint.get("confidence"))
        relationship_type = hint.get("type")
        if confidence is None or relationship_type not in RELATIONSHIP_TYPES:
            continue
        if best is None or confidence > best.confidence:
            best = RelationshipCandidate(
                parent_id=entry.id,
                type=relationship_type,
                confidence=confidence,
                metadata={"signal": "source_hint", "source": hint.get("source")},
            )
    return best


def name_similarity_signal(candidate: CandidateEntry, entry: RegistryEntry) -> RelationshipCandidate | None:
    candidate_name = repository_name(candidate.repository_url)
    entry_name = entry.name or repository_name(entry.repository_url)
    if candidate_name.casefold() == entry_name.casefold():
        return RelationshipCandidate(
            parent_id=entry.id,
            type="duplicate",
            confidence=SAME_NAME_CONFIDENCE,
            metadata={"signal": "same_repository_name", "name": candidate_name},
        )

    similarity = _jaccard(_tokenize(candidate_name), _tokenize(entry_name))
    if similarity < 0.5:
        return None
    return RelationshipCandidate(
        parent_id=entry.id,
        type="related",
        confidence=round(0.8 * similarity, 4),
        metadata={"signal": "name_similarity", "similarity": round(similarity, 4)},
    )


DEFAULT_HEURISTICS: tuple[Heuristic, ...] = (
    fork_metadata_signal,
    hinted_relationship_signal,
    name_similarity_signal,
)


def _points_at(entry: RegistryEntry, *, url: Any, full_name: Any) -> bool:
    if isinstance(url, str) and url.strip():
        try:
            if normalize_repository_url(url) == entry.repository_url:
                return True
        except ValueError:
            pass
    if isinstance(full_name, str) and full_name.strip():
        return full_name.strip().strip("/").casefold() == repository_full_name(entry.repository_url)
    return False


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(value, (int, float)):
        return value != 0
    return False


def _coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _jaccard(left: set[str], right: set[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def _tokenize(value: str | None) -> set[str]:
    if not value:
        return set()
    return {token for token in _TOKEN_RE.findall(value.casefold()) if token not in _STOP_WORDS}
