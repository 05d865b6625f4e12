"""
Bulk Compound Prompt Resolution

Resolves many prompts without issuing a query per prompt per nesting level.
All data needed for resolution is loaded breadth-first, one batch query per
level, and every prompt is then resolved from memory with the regular
``resolve`` recursion.

Use Cases:
- Listing pages resolving a page of prompts at once
- API endpoints resolving up to a few hundred prompts per request

Query count:
- Naive: one query per prompt per nesting level
- Bulk: one query per nesting level, regardless of how many prompts
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .resolution import resolve
from .types import (
    BatchPromptFetcher,
    BulkFetchResult,
    BulkResolutionResult,
    CompoundPromptError,
    Prompt,
)
from .validation import MAX_NESTING_DEPTH

logger = logging.getLogger(__name__)

PROMPT_NOT_FOUND = "Prompt not found"
DEFAULT_MAX_WORKERS = 8


def _unique(prompt_ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(prompt_ids))


def bulk_fetch(prompt_ids: Iterable[str],
               fetch_many: BatchPromptFetcher,
               max_depth: int = MAX_NESTING_DEPTH) -> BulkFetchResult:
    """
    Fetch all prompts and nested components needed to resolve ``prompt_ids``.

    Breadth-first, one batch query per level:
    1. Fetch the requested prompts with their direct components
    2. Store every component's referenced prompt as a stub so literal leaves
       need no further query
    3. Fetch the referenced prompts that are themselves compound
    4. Repeat until nothing is left to fetch or ``max_depth`` is passed

    Passes are sequential since each level's ids come from the previous one.

    Args:
        prompt_ids: Prompt ids to fetch
        fetch_many: Callable returning the prompts (with components) for a list
            of ids in a single query
        max_depth: Nesting ceiling, bounds the number of passes

    Returns:
        BulkFetchResult with the id -> prompt map and the number of passes issued

    Example:
        >>> result = bulk_fetch(["id1", "id2", "id3"], storage.fetch_many)
        >>> result.passes
        2
    """
    result = BulkFetchResult()
    current_level: Set[str] = set(prompt_ids)
    fetched: Set[str] = set()
    depth = 0

    while current_level and depth <= max_depth:
        to_fetch = sorted(current_level - fetched)
        if not to_fetch:
            break

        prompts = list(fetch_many(to_fetch))
        result.passes += 1
        next_level: Set[str] = set()

        for prompt in prompts:
            fetched.add(prompt.id)
            result.prompts[prompt.id] = prompt

            if not prompt.is_compound:
                continue

            for component in prompt.components:
                referenced = component.component_prompt
                if referenced is None:
                    continue

                if referenced.id not in result.prompts:
                    result.prompts[referenced.id] = referenced.stub()

                if referenced.is_compound:
                    next_level.add(referenced.id)

        logger.debug(
            f"Bulk fetch pass {result.passes}: requested {len(to_fetch)}, "
            f"received {len(prompts)}, next level {len(next_level)}"
        )

        current_level = next_level
        depth += 1

    return result


def _resolve_from_map(prompt_id: str,
                      prompt_map: Dict[str, Prompt],
                      max_depth: int) -> Tuple[Optional[str], Optional[str]]:
    """Resolve one id against the in-memory map; returns (text, error)"""
    prompt = prompt_map.get(prompt_id)
    if prompt is None:
        return None, PROMPT_NOT_FOUND

    if not prompt.is_compound:
        return prompt.text or "", None

    try:
        result = resolve(prompt_id, prompt_map.get, 0, set(), max_depth)
    except CompoundPromptError as e:
        logger.warning(f"Bulk resolution failed for prompt '{prompt_id}': {e}")
        return None, str(e)

    return result.resolved_text, None


def bulk_resolve(prompt_ids: Iterable[str],
                 fetch_many: BatchPromptFetcher,
                 max_depth: int = MAX_NESTING_DEPTH,
                 max_workers: Optional[int] = None) -> BulkResolutionResult:
    """
    Resolve multiple prompts efficiently in bulk.

    Loads everything with ``bulk_fetch`` and resolves each prompt from the
    in-memory map, so resolution itself issues no queries. Each id is resolved
    independently: one failing prompt is reported in ``errors`` and does not
    affect the others.

    Args:
        prompt_ids: Prompt ids to resolve
        fetch_many: Batch fetch callable, see ``bulk_fetch``
        max_depth: Nesting ceiling
        max_workers: Thread pool size for the per-id resolution

    Returns:
        BulkResolutionResult with resolved texts, errors and the number of
        batch queries executed
    """
    prompt_ids = _unique(prompt_ids)
    if not prompt_ids:
        return BulkResolutionResult()

    fetch_result = bulk_fetch(prompt_ids, fetch_many, max_depth)
    prompt_map = fetch_result.prompts

    # The map is read-only from here on
    workers = min(max_workers or DEFAULT_MAX_WORKERS, len(prompt_ids))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        outcomes = list(executor.map(
            lambda prompt_id: _resolve_from_map(prompt_id, prompt_map, max_depth),
            prompt_ids,
        ))

    result = BulkResolutionResult(queries_executed=fetch_result.passes)
    for prompt_id, (text, error) in zip(prompt_ids, outcomes):
        if error is not None:
            result.errors[prompt_id] = error
            result.error_count += 1
        else:
            result.resolved_texts[prompt_id] = text
            result.success_count += 1

    logger.debug(
        f"Bulk resolved {result.success_count}/{len(prompt_ids)} prompts "
        f"in {result.queries_executed} queries"
    )
    return result


def resolve_one(prompt_id: str,
                fetch_many: BatchPromptFetcher,
                max_depth: int = MAX_NESTING_DEPTH) -> str:
    """
    Resolve a single prompt through the bulk path.

    Returns:
        The resolved text, or an empty string if resolution failed
    """
    result = bulk_resolve([prompt_id], fetch_many, max_depth, max_workers=1)
    return result.resolved_texts.get(prompt_id, "")
