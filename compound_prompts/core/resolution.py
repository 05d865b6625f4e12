"""
Compound Prompt Resolution

Expands a (possibly compound) prompt into its final text. The recursion in
``resolve`` is the single resolution algorithm of the engine: previews and bulk
resolution reuse it by supplying a different ``fetch`` callable.

Resolution Process:
1. Fetch the prompt and its ordered components
2. For each component in position order:
   a. Add the text before it, if any
   b. Recursively resolve the referenced prompt, if any
   c. Add the text after it, if any
3. Drop blank parts and join the rest with a blank line
"""

import logging
from typing import Iterable, List, Optional, Set

from .types import (
    Component,
    MaxDepthExceededError,
    NotFoundError,
    PromptFetcher,
    ResolutionResult,
)
from .validation import MAX_NESTING_DEPTH

logger = logging.getLogger(__name__)

PART_SEPARATOR = "\n\n"


def join_parts(parts: Iterable[str]) -> str:
    """Join resolved parts, dropping any that are empty or whitespace only"""
    return PART_SEPARATOR.join(part for part in parts if part.strip())


def _ordered(components: Iterable[Component]) -> List[Component]:
    # Storage claims position order; do not rely on it
    return sorted(components, key=lambda component: component.position)


def resolve(prompt_id: str,
            fetch: PromptFetcher,
            depth: int = 0,
            visited: Optional[Set[str]] = None,
            max_depth: int = MAX_NESTING_DEPTH) -> ResolutionResult:
    """
    Resolve a prompt to its final text.

    Recursively resolves every referenced component and returns the final text
    along with the deepest level reached and every prompt id consumed.

    Args:
        prompt_id: Prompt to resolve
        fetch: Callable returning a prompt with its components, or None
        depth: Current recursion depth (used internally)
        visited: Prompt ids consumed so far (used internally)
        max_depth: Nesting ceiling

    Returns:
        ResolutionResult with the resolved text and metadata

    Raises:
        MaxDepthExceededError: If recursion goes past ``max_depth``
        NotFoundError: If the prompt or any referenced prompt does not exist

    Example:
        >>> result = resolve("compound-1", storage.fetch)
        >>> print(result.resolved_text)
        "First prompt\\n\\nSecond prompt"
        >>> sorted(result.used_prompt_ids)
        ['compound-1', 'simple-1', 'simple-2']
    """
    if depth > max_depth:
        raise MaxDepthExceededError(
            max_depth,
            depth,
            f"Resolution exceeded maximum nesting depth of {max_depth}",
        )

    if visited is None:
        visited = set()

    prompt = fetch(prompt_id)
    if prompt is None:
        raise NotFoundError(prompt_id)

    visited.add(prompt_id)

    if not prompt.is_compound:
        return ResolutionResult(
            resolved_text=prompt.text or "",
            depth_reached=depth,
            used_prompt_ids=visited,
        )

    parts: List[str] = []
    max_depth_reached = depth

    for component in _ordered(prompt.components):
        if component.text_before is not None:
            parts.append(component.text_before)

        if component.component_prompt_id is not None:
            child = resolve(
                component.component_prompt_id,
                fetch,
                depth + 1,
                visited,
                max_depth,
            )
            parts.append(child.resolved_text)
            visited.update(child.used_prompt_ids)
            max_depth_reached = max(max_depth_reached, child.depth_reached)

        if component.text_after is not None:
            parts.append(component.text_after)

    return ResolutionResult(
        resolved_text=join_parts(parts),
        depth_reached=max_depth_reached,
        used_prompt_ids=visited,
    )


def resolve_text(prompt_id: str, fetch: PromptFetcher) -> str:
    """Resolve a prompt and return only its final text"""
    return resolve(prompt_id, fetch).resolved_text


def get_dependencies(prompt_id: str, fetch: PromptFetcher) -> Set[str]:
    """
    Get every prompt id consumed when resolving a prompt, including itself.

    Used to warn editors before deleting a prompt that is still part of a
    compound prompt, and to find what to refresh when a base prompt changes.
    """
    return resolve(prompt_id, fetch).used_prompt_ids


def preview_components(components: Iterable[Component], fetch: PromptFetcher) -> str:
    """
    Preview how an unsaved component list would resolve.

    Referenced prompts are expanded with ``resolve`` so nested compound prompts
    inside an in-progress edit are fully resolved. Components with only literal
    text never call ``fetch``.

    Args:
        components: Component list that has not been persisted
        fetch: Callable returning a persisted prompt with its components, or None

    Returns:
        The resolved preview text

    Raises:
        NotFoundError: If a referenced prompt does not exist
        MaxDepthExceededError: If a referenced prompt nests too deep
    """
    parts: List[str] = []

    for component in _ordered(components):
        if component.text_before is not None:
            parts.append(component.text_before)

        if component.component_prompt_id is not None:
            parts.append(resolve_text(component.component_prompt_id, fetch))

        if component.text_after is not None:
            parts.append(component.text_after)

    return join_parts(parts)
