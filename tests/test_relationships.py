from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from registry_discovery.services.models import CandidateEntry, RegistryEntry, RelationshipCandidate
from registry_discovery.services.relationships import (
    RelationshipDetector,
    enforce_confidence_floor,
    fork_metadata_signal,
    hinted_relationship_signal,
    name_similarity_signal,
)


def _candidate(url: str, metadata: dict[str, Any] | None = None) -> CandidateEntry:
    full_name = url.split("github.com/", 1)[1]
    return CandidateEntry(
        id="cand-1",
        repository_url=url,
        repository_full_name=full_name,
        source_type="automatedSearch",
        priority=5,
        status="processing",
        attempt_count=0,
        max_attempts=3,
        last_error=None,
        metadata=metadata or {},
        created_at=datetime(2026, 3, 2, tzinfo=timezone.utc),
    )


def _entry(entry_id: str, url: str) -> RegistryEntry:
    return RegistryEntry(id=entry_id, slug=entry_id, repository_url=url, name=url.rsplit("/", 1)[1])


def test_fork_metadata_points_at_parent_entry() -> None:
    candidate = _candidate(
        "https://github.com/someone/weather-server",
        {"fork": True, "parent_url": "https://github.com/Acme/Weather-Server.git"},
    )
    parent = _entry("e-parent", "https://github.com/acme/weather-server")

    found = RelationshipDetector([fork_metadata_signal]).classify(candidate, [parent])

    assert [(row.parent_id, row.type, row.confidence) for row in found] == [("e-parent", "fork", 1.0)]


def test_template_metadata_by_full_name() -> None:
    candidate = _candidate("https://github.com/someone/my-tool", {"template_full_name": "acme/starter"})
    template = _entry("e-template", "https://github.com/acme/starter")

    found = RelationshipDetector([fork_metadata_signal]).classify(candidate, [template])

    assert [(row.type, row.confidence) for row in found] == [("template", 0.95)]


def test_low_confidence_duplicate_and_fork_are_downgraded_to_related() -> None:
    candidate = _candidate(
        "https://github.com/someone/tool",
        {
            "relationship_hints": [
                {"url": "https://github.com/acme/tool", "type": "duplicate", "confidence": 0.3, "source": "search"},
                {"full_name": "other/tool-fork", "type": "fork", "confidence": 0.49},
            ]
        },
    )
    index = [_entry("e-1", "https://github.com/acme/tool"), _entry("e-2", "https://github.com/other/tool-fork")]

    found = RelationshipDetector([hinted_relationship_signal]).classify(candidate, index)

    assert [(row.parent_id, row.type) for row in found] == [("e-2", "related"), ("e-1", "related")]
    assert found[0].metadata["downgraded_from"] == "fork"
    assert found[1].metadata["downgraded_from"] == "duplicate"


def test_confidence_is_clamped_and_unknown_types_become_related() -> None:
    clamped = enforce_confidence_floor(RelationshipCandidate(parent_id="e", type="duplicate", confidence=1.7))
    unknown = enforce_confidence_floor(RelationshipCandidate(parent_id="e", type="sibling", confidence=0.8))

    assert clamped.type == "duplicate"
    assert clamped.confidence == 1.0
    assert unknown.type == "related"


def test_strongest_tuple_wins_and_output_sorted_by_confidence() -> None:
    candidate = _candidate(
        "https://github.com/someone/weather",
        {
            "relationship_hints": [
                {"url": "https://github.com/acme/weather", "type": "duplicate", "confidence": 0.7},
                {"url": "https://github.com/acme/weather", "type": "duplicate", "confidence": 0.95},
            ]
        },
    )
    index = [_entry("e-weather", "https://github.com/acme/weather")]

    found = RelationshipDetector().classify(candidate, index)

    duplicates = [row for row in found if row.type == "duplicate"]
    assert len(duplicates) == 1
    assert duplicates[0].confidence == 0.95
    assert found == sorted(found, key=lambda row: -row.confidence)


def test_name_similarity_signals() -> None:
    same_name = name_similarity_signal(
        _candidate("https://github.com/someone/weather-mcp"),
        _entry("e-1", "https://github.com/acme/weather-mcp"),
    )
    similar = name_similarity_signal(
        _candidate("https://github.com/someone/weather-forecast-mcp"),
        _entry("e-2", "https://github.com/acme/weather-forecast-tools"),
    )
    unrelated = name_similarity_signal(
        _candidate("https://github.com/someone/postgres-mcp"),
        _entry("e-3", "https://github.com/acme/weather-mcp"),
    )

    assert (same_name.type, same_name.confidence) == ("duplicate", 0.6)
    assert similar.type == "related"
    assert 0 < similar.confidence < 0.8
    assert unrelated is None


def test_detector_skips_the_candidates_own_entry_and_survives_broken_heuristics() -> None:
    def broken(candidate, entry):
        raise KeyError("missing field")

    candidate = _candidate("https://github.com/acme/weather")
    index = [_entry("e-self", "https://github.com/acme/weather")]

    assert RelationshipDetector([broken, name_similarity_signal]).classify(candidate, index) == []
    assert RelationshipDetector([broken]).classify(candidate, [_entry("e-2", "https://github.com/b/c")]) == []
