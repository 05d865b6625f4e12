"""
Core System Components for Compound Prompts

This package contains the data structures and operations that turn a graph of
prompts into final text:

- types: Prompt and component data structures, results and exceptions
- validation: Circular reference detection, depth calculation and component list checks
- resolution: Recursive resolution and previews of unsaved component lists
- bulk: Breadth-first batch loading and in-memory resolution of many prompts
- storage: Relational storage for prompts and their components
- transfer: Import and export of prompt libraries

These components are used by the HTTP API and can be driven directly by any
caller that supplies a fetch capability.
"""

from .types import (
    Prompt,
    Component,
    ResolutionResult,
    BulkFetchResult,
    BulkResolutionResult,
    CompoundPromptError,
    NotFoundError,
    CircularReferenceError,
    MaxDepthExceededError,
    InvalidComponentError,
)

from .validation import (
    MAX_NESTING_DEPTH,
    ValidationResult,
    detect_cycle,
    compute_depth,
    validate_new_component,
    validate_component_list,
    collect_component_errors,
    validate_prompt_shape,
)

from .resolution import (
    resolve,
    resolve_text,
    get_dependencies,
    preview_components,
    join_parts,
)

from .bulk import (
    bulk_fetch,
    bulk_resolve,
    resolve_one,
)

from .storage import (
    PromptStorage,
    DuplicateSlugError,
    StorageError,
    PromptInUseError,
    create_storage,
    get_global_storage,
    reset_global_storage,
)

from .transfer import (
    ImportResult,
    TransferError,
    export_prompts,
    export_to_file,
    import_prompts,
    import_from_file,
)

__all__ = [
    # Core data structures
    "Prompt",
    "Component",
    "ResolutionResult",
    "BulkFetchResult",
    "BulkResolutionResult",

    # Exceptions
    "CompoundPromptError",
    "NotFoundError",
    "CircularReferenceError",
    "MaxDepthExceededError",
    "InvalidComponentError",
    "StorageError",
    "PromptInUseError",
    "DuplicateSlugError",
    "TransferError",

    # Validation
    "MAX_NESTING_DEPTH",
    "ValidationResult",
    "detect_cycle",
    "compute_depth",
    "validate_new_component",
    "validate_component_list",
    "collect_component_errors",
    "validate_prompt_shape",

    # Resolution
    "resolve",
    "resolve_text",
    "get_dependencies",
    "preview_components",
    "join_parts",
    "bulk_fetch",
    "bulk_resolve",
    "resolve_one",

    # Storage
    "PromptStorage",
    "create_storage",
    "get_global_storage",
    "reset_global_storage",

    # Import / export
    "ImportResult",
    "export_prompts",
    "export_to_file",
    "import_prompts",
    "import_from_file",
]
