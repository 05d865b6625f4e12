"""
Import and Export of Prompt Libraries

Moves prompts between databases as a portable JSON document. Prompts are
identified by slug rather than id in the document, so components are written as
references to slugs and remapped on import.

Import runs in two passes inside one transaction:
1. Create or update every prompt row and build the slug -> id map
2. Write each compound prompt's components through the graph validator and
   backfill nesting depths, including for prompts whose compound flag flipped

Any unknown slug, structural violation, cycle or depth overflow aborts the
whole import and nothing is written.
"""

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import jsonschema
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .models import ComponentRow, PromptRow
from .storage import PromptStorage
from .types import CompoundPromptError, Component

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
ON_DUPLICATE_CHOICES = ("skip", "update", "error")

schema_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), "transfer-schema.json")


class TransferError(Exception):
    """Raised when an import or export document cannot be processed"""
    pass


@dataclass
class ImportResult:
    """Outcome of an import, in the shape returned to API callers"""
    success: bool = True
    total: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "total": self.total,
            "imported": self.imported,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


def _load_schema() -> Dict[str, Any]:
    with open(schema_path, "r", encoding="utf-8") as schema_file:
        return json.load(schema_file)


def validate_document(document: Any) -> None:
    """
    Validate an import document against the transfer schema.

    Raises:
        TransferError: If the document does not match the schema
    """
    try:
        jsonschema.validate(document, _load_schema())
    except jsonschema.ValidationError as e:
        location = "/".join(str(part) for part in e.absolute_path)
        raise TransferError(f"Invalid import document at '{location}': {e.message}") from e


def _row_to_export(row: PromptRow) -> Dict[str, Any]:
    return {
        "title": row.title,
        "slug": row.slug,
        "prompt_text": row.prompt_text,
        "is_compound": row.is_compound,
        "max_depth": row.max_depth,
        "components": [
            {
                "position": component.position,
                "component_prompt_slug": (
                    component.component_prompt.slug if component.component_prompt is not None else None
                ),
                "custom_text_before": component.custom_text_before,
                "custom_text_after": component.custom_text_after,
            }
            for component in row.components
        ],
    }


def _load_rows(session: Session, prompt_ids: Optional[List[str]]) -> List[PromptRow]:
    query = (
        select(PromptRow)
        .options(selectinload(PromptRow.components).selectinload(ComponentRow.component_prompt))
        .order_by(PromptRow.created_at, PromptRow.id)
    )
    if prompt_ids is None:
        return list(session.scalars(query))

    # Pull in everything the selected prompts reference so the document is self-contained
    rows: Dict[str, PromptRow] = {}
    pending = set(prompt_ids)
    while pending:
        batch = list(session.scalars(query.where(PromptRow.id.in_(sorted(pending)))))
        found = {row.id for row in batch}
        missing = pending - found - set(rows)
        if missing and not rows:
            raise TransferError(f"Prompts not found: {', '.join(sorted(missing))}")

        pending = set()
        for row in batch:
            rows[row.id] = row
            for component in row.components:
                child_id = component.component_prompt_id
                if child_id is not None and child_id not in rows:
                    pending.add(child_id)

    return sorted(rows.values(), key=lambda row: (row.created_at, row.id))


def export_prompts(storage: PromptStorage, prompt_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Build an export document.

    Args:
        storage: Storage to read from
        prompt_ids: Prompts to export, along with everything they reference.
            If None, exports all prompts.

    Returns:
        The export document

    Raises:
        TransferError: If a requested prompt does not exist
    """
    with storage.session_scope() as session:
        prompts = [_row_to_export(row) for row in _load_rows(session, prompt_ids)]

    logger.info(f"Exported {len(prompts)} prompts")
    return {
        "version": EXPORT_VERSION,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "total_count": len(prompts),
        "prompts": prompts,
    }


def _atomic_write(filepath: str, data: Dict[str, Any]) -> None:
    temp_dir = os.path.dirname(os.path.abspath(filepath))
    temp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            mode='w',
            encoding='utf-8',
            dir=temp_dir,
            delete=False,
            suffix='.tmp'
        ) as temp_file:
            temp_path = temp_file.name
            json.dump(data, temp_file, indent=2, ensure_ascii=False)

        shutil.move(temp_path, filepath)

    except OSError as e:
        if temp_path and os.path.exists(temp_path):
            os.remove(temp_path)
        raise TransferError(f"Atomic write failed for {filepath}: {e}") from e


def export_to_file(storage: PromptStorage,
                   export_path: str,
                   prompt_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Export prompts to a JSON file for sharing.

    The file is written atomically: readers never see a partial document.

    Returns:
        The exported document
    """
    document = export_prompts(storage, prompt_ids)
    _atomic_write(export_path, document)
    logger.info(f"Wrote export of {document['total_count']} prompts to {export_path}")
    return document


def _create_or_update_rows(session: Session,
                           prompts: List[Dict[str, Any]],
                           on_duplicate: str,
                           result: ImportResult) -> Tuple[Dict[str, str], List[str]]:
    """
    First pass: write prompt rows.

    Returns the compound slugs whose components need writing, and the ids of
    existing prompts whose compound flag flipped.
    """
    pending_components: Dict[str, str] = {}
    converted: List[str] = []

    for data in prompts:
        slug = data["slug"]
        is_compound = data.get("is_compound", False)
        text = None if is_compound else data.get("prompt_text")
        if is_compound and data.get("prompt_text"):
            result.warnings.append(f"Ignored literal text on compound prompt '{slug}'")

        row = session.scalar(select(PromptRow).where(PromptRow.slug == slug))
        if row is not None:
            if on_duplicate == "error":
                raise TransferError(f"Prompt with slug '{slug}' already exists")
            if on_duplicate == "skip":
                logger.warning(f"Skipping import of existing prompt '{slug}'")
                result.skipped += 1
                continue

            row.title = data["title"]
            row.prompt_text = text
            if row.is_compound != is_compound:
                row.components.clear()
                row.is_compound = is_compound
                row.max_depth = 0 if is_compound else None
                converted.append(row.id)
        else:
            row = PromptRow(
                title=data["title"],
                slug=slug,
                prompt_text=text,
                is_compound=is_compound,
                max_depth=0 if is_compound else None,
            )
            session.add(row)

        session.flush()
        result.imported += 1
        if is_compound:
            pending_components[slug] = row.id

    return pending_components, converted


def _resolve_slug(session: Session, slug: str, slug_map: Dict[str, str]) -> str:
    if slug not in slug_map:
        prompt_id = session.scalar(select(PromptRow.id).where(PromptRow.slug == slug))
        if prompt_id is None:
            raise TransferError(f"Unknown component prompt slug: {slug}")
        slug_map[slug] = prompt_id
    return slug_map[slug]


def import_prompts(storage: PromptStorage,
                   document: Any,
                   on_duplicate: str = "skip",
                   dry_run: bool = False) -> ImportResult:
    """
    Import prompts from an export document.

    Args:
        storage: Storage to write to
        document: Parsed export document
        on_duplicate: What to do when a slug already exists: "skip" keeps the
            stored prompt, "update" overwrites it, "error" aborts the import
        dry_run: Validate and run the whole import, then roll it back

    Returns:
        ImportResult with counts, errors and warnings

    Raises:
        TransferError: If ``on_duplicate`` is not a known choice
    """
    if on_duplicate not in ON_DUPLICATE_CHOICES:
        raise TransferError(f"on_duplicate must be one of {', '.join(ON_DUPLICATE_CHOICES)}")

    try:
        validate_document(document)
    except TransferError as e:
        return ImportResult(success=False, errors=[str(e)])

    prompts = document["prompts"]
    result = ImportResult(total=len(prompts))
    by_slug = {data["slug"]: data for data in prompts}
    if len(by_slug) != len(prompts):
        return ImportResult(
            success=False,
            total=len(prompts),
            failed=len(prompts),
            errors=["Import document contains duplicate slugs"],
        )

    try:
        with storage.write_lock, storage.session_scope() as session:
            pending, converted = _create_or_update_rows(session, prompts, on_duplicate, result)
            slug_map = dict(pending)

            for slug, compound_id in pending.items():
                entries = by_slug[slug].get("components", [])
                if not entries:
                    result.warnings.append(f"Compound prompt '{slug}' has no components")
                    continue

                components = [
                    Component(
                        position=entry["position"],
                        component_prompt_id=(
                            _resolve_slug(session, entry["component_prompt_slug"], slug_map)
                            if entry.get("component_prompt_slug") else None
                        ),
                        text_before=entry.get("custom_text_before"),
                        text_after=entry.get("custom_text_after"),
                    )
                    for entry in entries
                ]
                storage.replace_components(session, compound_id, components)

            # Prompts that include a converted prompt change depth too
            for prompt_id in converted:
                storage.refresh_depths(session, prompt_id)

            if dry_run:
                session.rollback()

    except (TransferError, CompoundPromptError) as e:
        logger.warning(f"Import aborted: {e}")
        return ImportResult(
            success=False,
            total=result.total,
            failed=result.total,
            errors=[str(e)],
            warnings=result.warnings,
        )

    logger.info(
        f"Import {'dry run ' if dry_run else ''}completed: {result.imported} imported, "
        f"{result.skipped} skipped of {result.total}"
    )
    return result


def import_from_file(storage: PromptStorage,
                     import_path: str,
                     on_duplicate: str = "skip",
                     dry_run: bool = False) -> ImportResult:
    """
    Import prompts from an exported JSON file.

    Raises:
        TransferError: If the file cannot be read or is not valid JSON
    """
    try:
        with open(import_path, 'r', encoding='utf-8') as f:
            document = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise TransferError(f"Could not read import file {import_path}: {e}") from e

    return import_prompts(storage, document, on_duplicate, dry_run)
