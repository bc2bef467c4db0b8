"""Post-scan categorization of results via Gemini.

The classifier is untrusted: its output is validated for shape only, and index
references that do not resolve are skipped when grouping results.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from . import config
from .dedup import ScanResult
from .gemini_client import BaseGeminiClient, hash_text

logger = logging.getLogger(__name__)

PROMPT_NAME = "categorize_results_v1"


class CategorizationError(RuntimeError):
    pass


@dataclass(frozen=True)
class Category:
    name: str
    description: str
    place_indices: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class Categorization:
    summary: str
    categories: List[Category]
    model: str = ""


@dataclass(frozen=True)
class CategoryGroup:
    name: str
    description: str
    results: List[ScanResult]


@dataclass(frozen=True)
class CategorizedView:
    summary: str
    groups: List[CategoryGroup]
    uncategorized: List[ScanResult]

    def category_by_index(self) -> Dict[int, str]:
        """First category each result index appears in."""
        mapping: Dict[int, str] = {}
        for group in self.groups:
            for result in group.results:
                mapping.setdefault(result.index, group.name)
        return mapping

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "categories": [
                {
                    "name": group.name,
                    "description": group.description,
                    "placeIndices": [result.index for result in group.results],
                }
                for group in self.groups
            ],
            "uncategorized": [result.index for result in self.uncategorized],
        }


def build_prompt(results: Sequence[ScanResult], query: str) -> str:
    summaries = [
        {
            "i": result.index,
            "name": result.place.name,
            "address": result.place.address,
            "types": ", ".join(result.place.types[:3]),
            "rating": result.place.rating,
        }
        for result in results
    ]
    return (
        f'You are analyzing a list of {len(results)} places found by searching for "{query}" '
        "in a state of India.\n\n"
        f"Categorize these places into logical groups ({config.CATEGORIZE_MIN_CATEGORIES}-"
        f"{config.CATEGORIZE_MAX_CATEGORIES} categories). For each category, provide:\n"
        "1. A short category name\n"
        "2. A one-sentence description\n"
        "3. The indices (i) of places belonging to it\n\n"
        "Also provide a brief overall summary (2-3 sentences) of what was found.\n\n"
        "Respond ONLY with valid JSON in this exact format:\n"
        "{\n"
        '  "summary": "Overall summary here...",\n'
        '  "categories": [\n'
        "    {\n"
        '      "name": "Category Name",\n'
        '      "description": "One sentence description",\n'
        '      "placeIndices": [0, 1, 5, 12]\n'
        "    }\n"
        "  ]\n"
        "}\n\n"
        "Here are the places:\n"
        f"{json.dumps(summaries, ensure_ascii=False)}"
    )


def validate_categorization_payload(data: Dict[str, Any]) -> None:
    categories = data.get("categories")
    if not isinstance(categories, list):
        raise ValueError("categories must be a list")
    for idx, category in enumerate(categories):
        if not isinstance(category, dict):
            raise ValueError(f"category {idx} is not an object")
        if not isinstance(category.get("name"), str) or not category["name"].strip():
            raise ValueError(f"category {idx} has no name")
        indices = category.get("placeIndices", [])
        if not isinstance(indices, list):
            raise ValueError(f"category {idx} placeIndices must be a list")


def parse_categorization(data: Dict[str, Any], model: str = "") -> Categorization:
    categories = [
        Category(
            name=str(item["name"]).strip(),
            description=str(item.get("description") or ""),
            place_indices=list(item.get("placeIndices") or []),
        )
        for item in data.get("categories") or []
    ]
    summary = data.get("summary")
    return Categorization(
        summary=summary if isinstance(summary, str) else "",
        categories=categories,
        model=model,
    )


def categorize_results(
    results: Sequence[ScanResult],
    query: str,
    client: BaseGeminiClient,
) -> Categorization:
    if not results:
        raise CategorizationError("No results to categorize")
    prompt = build_prompt(results, query)
    logger.info("Categorizing %s results", len(results))
    call = client.generate_json(
        PROMPT_NAME,
        prompt,
        hash_text(prompt),
        validator=validate_categorization_payload,
    )
    if call.status != "ok" or call.data is None:
        detail = call.error or call.status
        logger.warning("Categorization failed: %s", detail)
        raise CategorizationError(f"AI categorization failed: {detail}")
    return parse_categorization(call.data, model=call.model)


def _resolve_index(value: Any, size: int) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        idx = value
    elif isinstance(value, float) and value.is_integer():
        idx = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        idx = int(value.strip())
    else:
        return None
    if 0 <= idx < size:
        return idx
    return None


def group_results(results: Sequence[ScanResult], categorization: Categorization) -> CategorizedView:
    """Resolve category indices against ``results``, skipping any that do not exist."""
    by_index = {result.index: result for result in results}
    size = max(by_index) + 1 if by_index else 0
    assigned: set = set()
    groups: List[CategoryGroup] = []
    skipped = 0
    for category in categorization.categories:
        members: List[ScanResult] = []
        seen: set = set()
        for raw in category.place_indices:
            idx = _resolve_index(raw, size)
            if idx is None or idx not in by_index or idx in seen:
                skipped += 1
                continue
            seen.add(idx)
            members.append(by_index[idx])
        assigned.update(seen)
        groups.append(CategoryGroup(name=category.name, description=category.description, results=members))
    if skipped:
        logger.info("Skipped %s invalid or repeated category indices", skipped)
    uncategorized = [result for result in results if result.index not in assigned]
    return CategorizedView(summary=categorization.summary, groups=groups, uncategorized=uncategorized)
