"""
Core Compound Prompt Data Structures and Errors

This module defines the foundational data structures shared by every part of the
compound prompt engine: the validator, the single and bulk resolvers, the
relational storage layer and the import/export loader.

A prompt is either literal text or a compound document whose content is assembled
from an ordered list of components. Each component can carry:
- Literal text placed before the slot content
- A reference to another prompt (which may itself be compound)
- Literal text placed after the slot content
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


class CompoundPromptError(Exception):
    """Base exception for compound prompt operations"""

    code = "COMPOUND_PROMPT_ERROR"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for API responses and logs"""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(CompoundPromptError):
    """Raised when a referenced prompt id does not resolve to any stored prompt"""

    code = "NOT_FOUND"

    def __init__(self, prompt_id: str, message: Optional[str] = None):
        super().__init__(message or f"Prompt not found: {prompt_id}", {"prompt_id": prompt_id})
        self.prompt_id = prompt_id


class CircularReferenceError(CompoundPromptError):
    """Raised when the prompt reference graph contains a cycle"""

    code = "CIRCULAR_REFERENCE"

    def __init__(self, path: List[str], message: Optional[str] = None):
        self.path = list(path)
        super().__init__(
            message or f"Circular reference detected: {' -> '.join(self.path)}",
            {"path": self.path},
        )


class MaxDepthExceededError(CompoundPromptError):
    """Raised when nesting reaches past the fixed ceiling"""

    code = "MAX_DEPTH_EXCEEDED"

    def __init__(self, max_depth: int, actual_depth: int, message: Optional[str] = None):
        self.max_depth = max_depth
        self.actual_depth = actual_depth
        super().__init__(
            message or f"Maximum nesting depth of {max_depth} exceeded. Actual depth: {actual_depth}",
            {"max_depth": max_depth, "actual_depth": actual_depth},
        )


class InvalidComponentError(CompoundPromptError):
    """Raised when a component list violates its structural contract"""

    code = "INVALID_COMPONENT"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors) if errors else [message]
        super().__init__(message, self.errors)


@dataclass
class Component:
    """
    One ordered slot inside a compound prompt.

    ``component_prompt`` is an optional stub of the referenced prompt's own core
    fields, present when the component was loaded together with its reference.
    """
    position: int
    component_prompt_id: Optional[str] = None
    text_before: Optional[str] = None
    text_after: Optional[str] = None
    id: Optional[str] = None
    component_prompt: Optional["Prompt"] = None

    def is_empty(self) -> bool:
        """True when the component carries neither a reference nor any text"""
        return (
            self.component_prompt_id is None
            and self.text_before is None
            and self.text_after is None
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "position": self.position,
            "component_prompt_id": self.component_prompt_id,
            "text_before": self.text_before,
            "text_after": self.text_after,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Component":
        """
        Create a Component from request or storage data.

        Accepts the storage column names (``custom_text_before`` /
        ``custom_text_after``) as aliases for the text fields.

        Raises:
            InvalidComponentError: If data is not a dictionary or position is not an integer
        """
        if not isinstance(data, dict):
            raise InvalidComponentError("Component data must be a dictionary")

        position = data.get("position")
        if isinstance(position, bool) or not isinstance(position, int):
            raise InvalidComponentError(f"Component position must be an integer, got {position!r}")

        text_before = data.get("text_before", data.get("custom_text_before"))
        text_after = data.get("text_after", data.get("custom_text_after"))

        return cls(
            position=position,
            component_prompt_id=data.get("component_prompt_id"),
            text_before=text_before,
            text_after=text_after,
            id=data.get("id"),
        )


@dataclass
class Prompt:
    """
    A named unit of text, literal or compound.

    ``text`` is only used when the prompt is not compound; ``components`` only
    when it is. ``max_depth`` is the cached nesting depth written back by the
    authoring workflow and is ``None`` for literal prompts.

    Example:
        >>> simple = Prompt(id="p1", text="Be concise.")
        >>> compound = Prompt(id="p2", is_compound=True,
        ...                   components=[Component(0, component_prompt_id="p1")])
    """
    id: str
    text: Optional[str] = None
    is_compound: bool = False
    max_depth: Optional[int] = None
    components: List[Component] = field(default_factory=list)
    title: Optional[str] = None
    slug: Optional[str] = None

    def referenced_ids(self) -> List[str]:
        """Ids referenced by this prompt's components, in position order"""
        return [
            component.component_prompt_id
            for component in sorted(self.components, key=lambda c: c.position)
            if component.component_prompt_id is not None
        ]

    def stub(self) -> "Prompt":
        """Copy of this prompt's core fields without its components"""
        return Prompt(
            id=self.id,
            text=self.text,
            is_compound=self.is_compound,
            max_depth=self.max_depth,
            title=self.title,
            slug=self.slug,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "slug": self.slug,
            "text": self.text,
            "is_compound": self.is_compound,
            "max_depth": self.max_depth,
            "components": [component.to_dict() for component in self.components],
        }

    def __repr__(self) -> str:
        if self.is_compound:
            return f"Prompt(id='{self.id}', compound, components={len(self.components)})"
        preview = (self.text or "")[:30]
        return f"Prompt(id='{self.id}', text='{preview}...')"


@dataclass
class ResolutionResult:
    """Container for a fully resolved prompt"""
    resolved_text: str = ""
    depth_reached: int = 0
    used_prompt_ids: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolved_text": self.resolved_text,
            "depth_reached": self.depth_reached,
            "used_prompt_ids": sorted(self.used_prompt_ids),
        }


@dataclass
class BulkFetchResult:
    """Prompts loaded by a bulk fetch, with the number of batch queries it issued"""
    prompts: Dict[str, Prompt] = field(default_factory=dict)
    passes: int = 0


@dataclass
class BulkResolutionResult:
    """Outcome of resolving many prompts at once"""
    resolved_texts: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    success_count: int = 0
    error_count: int = 0
    queries_executed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolved_texts": dict(self.resolved_texts),
            "errors": dict(self.errors),
            "success_count": self.success_count,
            "error_count": self.error_count,
            "queries_executed": self.queries_executed,
        }


# Data-access capabilities injected into the engine
PromptFetcher = Callable[[str], Optional[Prompt]]
BatchPromptFetcher = Callable[[List[str]], Iterable[Prompt]]
