"""
Compound Prompts

Resolution engine for prompts assembled from other prompts. A compound prompt
is an ordered list of components, each contributing literal text, a reference
to another prompt, or both. The engine expands references recursively into
final text and guards the reference graph against cycles and runaway nesting.

This package includes:
- Graph validation run before components are saved
- Single, preview and bulk resolution
- Relational storage with import/export
- An aiohttp API exposing the operations
"""

# =============================================================================
# Package Metadata
# =============================================================================

__version__ = "0.1.0"
__description__ = "Recursive resolution engine for compound prompts"
