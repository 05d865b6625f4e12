"""
ORM Models for the prompt reference graph.

Tables:
  - prompts: literal and compound prompts
  - compound_prompt_components: ordered components of compound prompts, each
    optionally referencing another prompt
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String,
    Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .types import Component, Prompt


def _utcnow():
    return datetime.now(timezone.utc)


def _genuuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all ORM models."""
    pass


class PromptRow(Base):
    __tablename__ = "prompts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_genuuid)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    prompt_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_compound: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_depth: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    components: Mapped[List["ComponentRow"]] = relationship(
        "ComponentRow",
        foreign_keys="ComponentRow.compound_prompt_id",
        back_populates="compound_prompt",
        order_by="ComponentRow.position",
        cascade="all, delete-orphan",
    )

    def to_prompt(self, include_components: bool = True) -> Prompt:
        """Convert to the engine's Prompt, with one level of components"""
        prompt = Prompt(
            id=self.id,
            text=self.prompt_text,
            is_compound=self.is_compound,
            max_depth=self.max_depth,
            title=self.title,
            slug=self.slug,
        )
        if include_components:
            prompt.components = [row.to_component() for row in self.components]
        return prompt

    def __repr__(self):
        return f"<Prompt {self.slug} compound={self.is_compound}>"


class ComponentRow(Base):
    __tablename__ = "compound_prompt_components"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_genuuid)
    compound_prompt_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("prompts.id", ondelete="CASCADE"), nullable=False
    )
    component_prompt_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("prompts.id", ondelete="RESTRICT"), nullable=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    custom_text_before: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    custom_text_after: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    compound_prompt: Mapped[PromptRow] = relationship(
        "PromptRow",
        foreign_keys=[compound_prompt_id],
        back_populates="components",
    )
    component_prompt: Mapped[Optional[PromptRow]] = relationship(
        "PromptRow",
        foreign_keys=[component_prompt_id],
    )

    __table_args__ = (
        UniqueConstraint("compound_prompt_id", "position", name="uq_compound_component_position"),
        CheckConstraint("compound_prompt_id != component_prompt_id", name="ck_component_no_self_reference"),
        Index("idx_compound_components_base", "component_prompt_id"),
        Index("idx_compound_components_order", "compound_prompt_id", "position"),
    )

    def to_component(self) -> Component:
        referenced = self.component_prompt
        return Component(
            id=self.id,
            position=self.position,
            component_prompt_id=self.component_prompt_id,
            text_before=self.custom_text_before,
            text_after=self.custom_text_after,
            component_prompt=referenced.to_prompt(include_components=False) if referenced is not None else None,
        )

    def __repr__(self):
        return f"<Component {self.compound_prompt_id}#{self.position} -> {self.component_prompt_id}>"
