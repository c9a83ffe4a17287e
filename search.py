"""Fuzzy lookup of characters that can still join the selected encounter."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

MAX_RESULTS = 10


def fuzzy_match(name: str, query: Optional[str]) -> bool:
    """True when every character of ``query`` appears in ``name`` in order, ignoring case."""

    query = (query or "").casefold()
    if not query:
        return True
    remaining = iter((name or "").casefold())
    return all(char in remaining for char in query)


def search_candidates(
    characters: Iterable[Dict[str, Any]],
    query: Optional[str],
    exclude_ids: Iterable[int] = (),
    limit: int = MAX_RESULTS,
) -> List[Dict[str, Any]]:
    excluded = set(exclude_ids)
    matches: List[Dict[str, Any]] = []
    for character in characters:
        if character["id"] in excluded or not fuzzy_match(character.get("name", ""), query):
            continue
        matches.append(character)
        if len(matches) >= limit:
            break
    return matches
