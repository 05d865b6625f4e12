"""
Validation System for Compound Prompts

This module guards writes to the prompt reference graph. It runs before a
component is attached to a compound prompt and whenever a component list is
saved, so that resolution is always guaranteed to terminate.

Key Features:
- Circular reference detection over the stored reference graph using DFS
- Nesting depth calculation with a hard ceiling
- Structural validation of component lists
- Comprehensive error reporting with detailed paths
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .types import (
    CircularReferenceError,
    Component,
    InvalidComponentError,
    MaxDepthExceededError,
    NotFoundError,
    Prompt,
    PromptFetcher,
)

logger = logging.getLogger(__name__)

# Maximum allowed nesting depth for compound prompts
MAX_NESTING_DEPTH = 5


@dataclass
class ValidationResult:
    """Structural problems found in a component list, one message per problem"""
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False


def detect_cycle(prompt_id: str,
                 fetch: PromptFetcher,
                 ancestors: Optional[Set[str]] = None,
                 path: Optional[List[str]] = None) -> bool:
    """
    Detect circular references reachable from a prompt using DFS.

    Walks the reference graph depth-first, keeping the ids on the current path
    as the recursion stack. Reaching an id that is already on the stack means
    the graph has a cycle. Sub-graphs that were fully explored earlier in the
    same call are not walked again.

    Args:
        prompt_id: Prompt to start from
        fetch: Callable returning a prompt with its components, or None
        ancestors: Ids treated as already on the path (used to pre-seed the
            compound prompt a candidate is about to be attached to)
        path: Ordered ids matching ``ancestors``, for error reporting

    Returns:
        True when no cycle is reachable

    Raises:
        CircularReferenceError: If a cycle is found; ``path`` holds the ids
            from the start of the walk up to the repeated id
        NotFoundError: If any visited id does not resolve to a prompt

    Example:
        >>> # A -> B -> A
        >>> detect_cycle("A", prompts.get)
        Traceback (most recent call last):
        ...
        CircularReferenceError: Circular reference detected: A -> B -> A
    """
    recursion_stack = set(ancestors or ())
    stack_path = list(path or [])
    explored: Set[str] = set()

    def dfs(node_id: str) -> None:
        if node_id in recursion_stack:
            raise CircularReferenceError(stack_path + [node_id])

        if node_id in explored:
            return

        prompt = fetch(node_id)
        if prompt is None:
            raise NotFoundError(node_id)

        if prompt.is_compound:
            recursion_stack.add(node_id)
            stack_path.append(node_id)

            for component in prompt.components:
                # Literal-only components cannot introduce a cycle
                if component.component_prompt_id is None:
                    continue
                dfs(component.component_prompt_id)

            recursion_stack.discard(node_id)
            stack_path.pop()

        explored.add(node_id)

    dfs(prompt_id)
    return True


def compute_depth(prompt_id: str,
                  fetch: PromptFetcher,
                  memo: Optional[Dict[str, int]] = None,
                  max_depth: int = MAX_NESTING_DEPTH) -> int:
    """
    Calculate the maximum nesting depth reachable from a prompt.

    The depth of a literal prompt is 0. The depth of a compound prompt is
    1 + the deepest of its referenced prompts; components without a reference
    do not contribute, so a compound prompt made only of literal text has
    depth 0.

    The ceiling is enforced as soon as it is detected: a prompt reached more
    than ``max_depth`` hops below the start already proves the start is too
    deep, so the walk stops there instead of finishing the subtree. This also
    bounds the walk on graphs that contain a cycle.

    Args:
        prompt_id: Prompt to measure
        fetch: Callable returning a prompt with its components, or None
        memo: Map of already computed depths, shared across the call so a
            diamond-shaped graph computes each node once
        max_depth: Nesting ceiling

    Returns:
        The nesting depth of the prompt

    Raises:
        MaxDepthExceededError: If the depth exceeds ``max_depth``
        NotFoundError: If any visited id does not resolve to a prompt
    """
    if memo is None:
        memo = {}

    def measure(node_id: str, level: int) -> int:
        if level > max_depth:
            raise MaxDepthExceededError(max_depth, level)

        if node_id in memo:
            depth = memo[node_id]
        else:
            prompt = fetch(node_id)
            if prompt is None:
                raise NotFoundError(node_id)

            child_depths = [
                measure(child_id, level + 1)
                for child_id in prompt.referenced_ids()
            ] if prompt.is_compound else []

            depth = 1 + max(child_depths) if child_depths else 0
            if depth > max_depth:
                raise MaxDepthExceededError(max_depth, depth)
            memo[node_id] = depth

        if level + depth > max_depth:
            raise MaxDepthExceededError(max_depth, level + depth)
        return depth

    return measure(prompt_id, 0)


def validate_new_component(compound_id: str,
                           candidate_id: str,
                           fetch: PromptFetcher,
                           max_depth: int = MAX_NESTING_DEPTH) -> bool:
    """
    Check that a prompt can be attached as a component of a compound prompt.

    Checks, in order:
    1. The candidate prompt exists
    2. The candidate is not the compound prompt itself
    3. Attaching it would not create a cycle
    4. The compound prompt would stay within the nesting ceiling

    Args:
        compound_id: Compound prompt receiving the component
        candidate_id: Prompt to reference from the new component
        fetch: Callable returning a prompt with its components, or None
        max_depth: Nesting ceiling

    Returns:
        True if the component can be safely added

    Raises:
        NotFoundError: If the candidate does not exist
        CircularReferenceError: On self-reference or an indirect cycle
        MaxDepthExceededError: If the compound prompt would nest too deep
    """
    candidate = fetch(candidate_id)
    if candidate is None:
        raise NotFoundError(candidate_id, f"Component prompt not found: {candidate_id}")

    if candidate_id == compound_id:
        raise CircularReferenceError(
            [compound_id, candidate_id],
            "A prompt cannot reference itself",
        )

    # The candidate must not lead back to the compound prompt
    detect_cycle(candidate_id, fetch, ancestors={compound_id}, path=[compound_id])

    candidate_depth = compute_depth(candidate_id, fetch, max_depth=max_depth)
    new_depth = 1 + candidate_depth
    if new_depth > max_depth:
        raise MaxDepthExceededError(
            max_depth,
            new_depth,
            f"Adding this component would exceed maximum nesting depth of {max_depth}",
        )

    logger.debug(f"Component '{candidate_id}' accepted for '{compound_id}' (depth {new_depth})")
    return True


def collect_component_errors(components: Iterable[Component]) -> ValidationResult:
    """
    Collect every structural problem in a component list without raising.

    Used where callers want field-level messages for all problems at once.
    """
    result = ValidationResult()
    components = list(components)

    if not components:
        result.add_error("Compound prompt must have at least one component")
        return result

    positions = sorted(component.position for component in components)
    seen: Set[int] = set()
    for position in positions:
        if position in seen:
            result.add_error(f"Duplicate component position: {position}")
        seen.add(position)

    for expected, position in enumerate(sorted(seen)):
        if position != expected:
            result.add_error(
                f"Component positions must be consecutive starting from 0. Expected {expected}, got {position}"
            )
            break

    for component in components:
        if component.is_empty():
            result.add_error(
                f"Component at position {component.position} has neither a component prompt nor custom text"
            )

    return result


def validate_component_list(components: Iterable[Component]) -> bool:
    """
    Validate a complete set of components for a compound prompt.

    Pure structural check, no data access. Ensures:
    1. The list is not empty
    2. Positions are unique and consecutive starting from 0
    3. Each component has a component prompt or custom text

    Raises:
        InvalidComponentError: Carrying every problem found
    """
    result = collect_component_errors(components)
    if not result.is_valid:
        raise InvalidComponentError(result.errors[0], result.errors)
    return True


def validate_prompt_shape(prompt: Prompt) -> bool:
    """
    Check that a prompt's slot content matches its compound flag.

    Raises:
        InvalidComponentError: If a literal prompt has components or a compound
            prompt carries literal text
    """
    if not prompt.is_compound and prompt.components:
        raise InvalidComponentError(f"Prompt '{prompt.id}' is not compound but has components")

    if prompt.is_compound and prompt.text:
        raise InvalidComponentError(f"Compound prompt '{prompt.id}' cannot carry literal text")

    return True
