"""
Relational Storage for Compound Prompts

This module stores prompts and their components in two relational tables and
supplies the data-access capabilities the engine consumes:

- ``fetch(id)``: one prompt with its ordered components, in one query
- ``fetch_many(ids)``: many prompts with their components, in one query

It also hosts the authoring operations that write to the reference graph, all
gated by the graph validator and run in a single transaction:

- Creating prompts
- Replacing a compound prompt's component list and backfilling ``max_depth``
- Guarded deletion of prompts still referenced by compound prompts
"""

import logging
import re
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from sqlalchemy import create_engine, delete, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, joinedload, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base, ComponentRow, PromptRow
from .types import (
    BatchPromptFetcher,
    Component,
    InvalidComponentError,
    NotFoundError,
    Prompt,
    PromptFetcher,
)
from .validation import (
    MAX_NESTING_DEPTH,
    compute_depth,
    validate_component_list,
    validate_new_component,
    validate_prompt_shape,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations"""
    pass


class PromptInUseError(StorageError):
    """Raised when deleting a prompt that compound prompts still reference"""

    def __init__(self, prompt_id: str, referenced_by: List[str]):
        self.prompt_id = prompt_id
        self.referenced_by = list(referenced_by)
        super().__init__(
            f"Prompt '{prompt_id}' is still referenced by {len(self.referenced_by)} compound prompt(s)"
        )


class DuplicateSlugError(StorageError):
    """Raised when an explicit slug is already taken by another prompt"""

    def __init__(self, slug: str):
        self.slug = slug
        super().__init__(f"Prompt with slug '{slug}' already exists")


def slugify(text: str) -> str:
    """Lowercase, dash-separated slug for a title"""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or "prompt"


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for ``database_url``.

    SQLite engines get foreign key enforcement turned on; in-memory SQLite
    shares one connection so every session sees the same database.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(database_url, pool_pre_ping=True)


def _prompt_query(ids: List[str]):
    return (
        select(PromptRow)
        .where(PromptRow.id.in_(ids))
        .options(joinedload(PromptRow.components).joinedload(ComponentRow.component_prompt))
        .execution_options(populate_existing=True)
    )


class PromptStorage:
    """
    Relational storage manager for prompts and compound prompt components.

    Provides:
    - Single and batch fetch capabilities for the resolvers and validator
    - Validated authoring writes to the reference graph
    - Transaction scopes shared with the import/export loader
    """

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        """
        Initialize PromptStorage.

        Args:
            database_url: SQLAlchemy database URL, ignored when ``engine`` is given
            engine: Pre-built engine to use

        Raises:
            StorageError: If neither a URL nor an engine is provided
        """
        if engine is None:
            if not database_url:
                raise StorageError("A database URL or engine is required")
            engine = build_engine(database_url)

        self._lock = threading.RLock()
        self._engine = engine
        self._session_factory = sessionmaker(
            bind=engine,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def write_lock(self):
        """Lock serializing writes to the reference graph"""
        return self._lock

    def create_all(self) -> None:
        """Create all tables from ORM metadata"""
        Base.metadata.create_all(self._engine)

    def drop_all(self) -> None:
        """Drop all tables (test cleanup only)"""
        Base.metadata.drop_all(self._engine)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error"""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -- fetch capabilities -------------------------------------------------

    @staticmethod
    def _fetch(session: Session, prompt_id: str) -> Optional[Prompt]:
        row = session.execute(_prompt_query([prompt_id])).unique().scalar_one_or_none()
        return row.to_prompt() if row is not None else None

    @staticmethod
    def _fetch_many(session: Session, prompt_ids: Iterable[str]) -> List[Prompt]:
        ids = list(prompt_ids)
        if not ids:
            return []
        rows = session.execute(_prompt_query(ids)).unique().scalars().all()
        return [row.to_prompt() for row in rows]

    def fetcher(self, session: Session) -> PromptFetcher:
        """Fetch capability bound to an open session"""
        return lambda prompt_id: self._fetch(session, prompt_id)

    def batch_fetcher(self, session: Session) -> BatchPromptFetcher:
        """Batch fetch capability bound to an open session"""
        return lambda prompt_ids: self._fetch_many(session, prompt_ids)

    def fetch(self, prompt_id: str) -> Optional[Prompt]:
        """
        Fetch a prompt with its ordered components in one query.

        Each component carries a stub of its referenced prompt.

        Returns:
            The prompt, or None if it does not exist
        """
        with self._session_factory() as session:
            return self._fetch(session, prompt_id)

    def fetch_many(self, prompt_ids: Iterable[str]) -> List[Prompt]:
        """Fetch many prompts with their ordered components in one query"""
        with self._session_factory() as session:
            return self._fetch_many(session, prompt_ids)

    # -- authoring ----------------------------------------------------------

    def _unique_slug(self, session: Session, base: str) -> str:
        slug = base
        suffix = 1
        while session.scalar(select(PromptRow.id).where(PromptRow.slug == slug)) is not None:
            suffix += 1
            slug = f"{base}-{suffix}"
        return slug

    def create_prompt(self,
                      title: str,
                      text: Optional[str] = None,
                      is_compound: bool = False,
                      slug: Optional[str] = None,
                      prompt_id: Optional[str] = None) -> Prompt:
        """
        Create a literal or (initially empty) compound prompt.

        Args:
            title: Display title
            text: Literal text, only for non-compound prompts
            is_compound: Whether the prompt is assembled from components
            slug: Portable identity; generated from the title when omitted
            prompt_id: Explicit id; generated when omitted

        Returns:
            The created prompt

        Raises:
            InvalidComponentError: If a compound prompt is given literal text
            DuplicateSlugError: If an explicit ``slug`` is already in use
        """
        candidate = Prompt(id=prompt_id or "", text=text, is_compound=is_compound, title=title)
        validate_prompt_shape(candidate)

        with self._lock, self.session_scope() as session:
            if slug and session.scalar(select(PromptRow.id).where(PromptRow.slug == slug)) is not None:
                raise DuplicateSlugError(slug)

            row = PromptRow(
                title=title,
                slug=slug or self._unique_slug(session, slugify(title)),
                prompt_text=None if is_compound else text,
                is_compound=is_compound,
                max_depth=0 if is_compound else None,
            )
            if prompt_id:
                row.id = prompt_id
            session.add(row)
            session.flush()
            prompt = row.to_prompt(include_components=False)

        logger.info(f"Created {'compound' if is_compound else 'literal'} prompt '{prompt.slug}' ({prompt.id})")
        return prompt

    def replace_components(self,
                           session: Session,
                           compound_id: str,
                           components: List[Component],
                           max_depth: int = MAX_NESTING_DEPTH) -> int:
        """
        Replace a compound prompt's components inside an open transaction.

        Validates the list structurally and every reference against the stored
        graph, writes the rows, then backfills ``max_depth`` for the prompt and
        every compound prompt that transitively includes it.

        Returns:
            The new nesting depth of the compound prompt

        Raises:
            NotFoundError: If the compound prompt or a referenced prompt is missing
            InvalidComponentError: On structural violations or a literal target
            CircularReferenceError: If a reference would create a cycle
            MaxDepthExceededError: If any affected prompt would nest too deep
        """
        row = session.get(PromptRow, compound_id)
        if row is None:
            raise NotFoundError(compound_id)
        if not row.is_compound:
            raise InvalidComponentError(f"Prompt '{compound_id}' is not a compound prompt")

        validate_component_list(components)

        fetch = self.fetcher(session)
        for component in components:
            if component.component_prompt_id is not None:
                validate_new_component(compound_id, component.component_prompt_id, fetch, max_depth)

        session.execute(delete(ComponentRow).where(ComponentRow.compound_prompt_id == compound_id))
        session.flush()
        for component in sorted(components, key=lambda c: c.position):
            session.add(ComponentRow(
                compound_prompt_id=compound_id,
                component_prompt_id=component.component_prompt_id,
                position=component.position,
                custom_text_before=component.text_before,
                custom_text_after=component.text_after,
            ))
        session.flush()

        return self.refresh_depths(session, compound_id, max_depth)

    def refresh_depths(self,
                       session: Session,
                       prompt_id: str,
                       max_depth: int = MAX_NESTING_DEPTH) -> int:
        """
        Recompute ``max_depth`` for a prompt and every prompt that includes it.

        Literal prompts store no depth. Call after any write that changes the
        shape of the graph below ``prompt_id``, including flipping its
        compound flag.

        Returns:
            The nesting depth of ``prompt_id``
        """
        fetch = self.fetcher(session)
        memo: Dict[str, int] = {}
        pending = [prompt_id]
        refreshed = set()

        while pending:
            current_id = pending.pop()
            if current_id in refreshed:
                continue
            refreshed.add(current_id)

            depth = compute_depth(current_id, fetch, memo, max_depth)
            row = session.get(PromptRow, current_id)
            row.max_depth = depth if row.is_compound else None
            # Later fetches repopulate loaded rows from the database
            session.flush()
            pending.extend(self._referencing_ids(session, current_id))

        return memo[prompt_id]

    def set_components(self,
                       compound_id: str,
                       components: List[Component],
                       max_depth: int = MAX_NESTING_DEPTH) -> Prompt:
        """
        Replace a compound prompt's component list in its own transaction.

        See ``replace_components`` for validation and errors.

        Returns:
            The updated compound prompt with its components
        """
        with self._lock, self.session_scope() as session:
            depth = self.replace_components(session, compound_id, components, max_depth)
            prompt = self._fetch(session, compound_id)

        logger.info(
            f"Saved {len(components)} components for compound prompt '{compound_id}' (depth {depth})"
        )
        return prompt

    @staticmethod
    def _referencing_ids(session: Session, prompt_id: str) -> List[str]:
        return list(session.scalars(
            select(ComponentRow.compound_prompt_id)
            .where(ComponentRow.component_prompt_id == prompt_id)
            .distinct()
        ))

    def find_referencing_prompts(self, prompt_id: str) -> List[str]:
        """
        Get the compound prompts that directly reference a prompt.

        Returns:
            Sorted list of compound prompt ids
        """
        with self._session_factory() as session:
            return sorted(self._referencing_ids(session, prompt_id))

    def delete_prompt(self, prompt_id: str) -> bool:
        """
        Delete a prompt and its own components.

        Returns:
            True if the prompt was deleted, False if it did not exist

        Raises:
            PromptInUseError: If compound prompts still reference it
        """
        with self._lock, self.session_scope() as session:
            row = session.get(PromptRow, prompt_id)
            if row is None:
                return False

            referenced_by = self._referencing_ids(session, prompt_id)
            if referenced_by:
                raise PromptInUseError(prompt_id, sorted(referenced_by))

            session.delete(row)

        logger.info(f"Deleted prompt '{prompt_id}'")
        return True

    def list_prompt_ids(self, limit: int = 50, offset: int = 0, compound_only: bool = False) -> List[str]:
        """List prompt ids ordered by creation, one page at a time"""
        query = select(PromptRow.id).order_by(PromptRow.created_at, PromptRow.id)
        if compound_only:
            query = query.where(PromptRow.is_compound.is_(True))

        with self._session_factory() as session:
            return list(session.scalars(query.limit(limit).offset(offset)))

    def get_storage_info(self) -> Dict[str, int]:
        """Counts of stored prompts and components"""
        with self._session_factory() as session:
            return {
                "prompts": session.scalar(select(func.count()).select_from(PromptRow)),
                "compound_prompts": session.scalar(
                    select(func.count()).select_from(PromptRow).where(PromptRow.is_compound.is_(True))
                ),
                "components": session.scalar(select(func.count()).select_from(ComponentRow)),
            }


# Factory function for easy instantiation
def create_storage(database_url: str, create_tables: bool = True) -> PromptStorage:
    """
    Factory function to create a PromptStorage instance.

    Args:
        database_url: SQLAlchemy database URL
        create_tables: Create missing tables right away

    Returns:
        Configured PromptStorage instance
    """
    storage = PromptStorage(database_url)
    if create_tables:
        storage.create_all()
    return storage


# Global storage instance for shared use
_global_storage: Optional[PromptStorage] = None


def get_global_storage() -> PromptStorage:
    """
    Get or create the global storage instance, configured from the loaded config.

    Returns:
        Global PromptStorage instance
    """
    global _global_storage
    if _global_storage is None:
        from ..config import load_config

        _global_storage = create_storage(load_config().database_url)
    return _global_storage


def reset_global_storage() -> None:
    """Reset the global storage instance and dispose its engine"""
    global _global_storage
    if _global_storage is not None:
        _global_storage.engine.dispose()
    _global_storage = None
