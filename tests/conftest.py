"""
Test configuration and fixtures for compound prompt tests.
"""
import dataclasses
from typing import Dict, Iterable, List, Union
from unittest.mock import Mock

import pytest

from compound_prompts.core.storage import PromptStorage
from compound_prompts.core.types import Component, Prompt


class PromptGraph:
    """
    In-memory prompt graph providing the engine's fetch capabilities.

    ``fetch`` and ``fetch_many`` are Mocks wrapping the dict lookups so tests
    can count calls.
    """

    def __init__(self):
        self.prompts: Dict[str, Prompt] = {}
        self.fetch = Mock(side_effect=self._fetch)
        self.fetch_many = Mock(side_effect=self._fetch_many)

    def literal(self, prompt_id: str, text=None) -> Prompt:
        prompt = Prompt(id=prompt_id, text=text)
        self.prompts[prompt_id] = prompt
        return prompt

    def compound(self, prompt_id: str, *parts: Union[str, Component]) -> Prompt:
        """Add a compound prompt; string parts become references at their index"""
        components = [
            part if isinstance(part, Component) else Component(position=index, component_prompt_id=part)
            for index, part in enumerate(parts)
        ]
        prompt = Prompt(id=prompt_id, is_compound=True, components=components)
        self.prompts[prompt_id] = prompt
        return prompt

    def chain(self, length: int, leaf_text: str = "leaf") -> List[str]:
        """Build c1 -> c2 -> ... -> c<length> -> leaf and return the compound ids"""
        self.literal("leaf", leaf_text)
        ids = [f"c{i}" for i in range(1, length + 1)]
        for index, prompt_id in enumerate(ids):
            child = ids[index + 1] if index + 1 < len(ids) else "leaf"
            self.compound(prompt_id, child)
        return ids

    def _fetch(self, prompt_id: str):
        return self.prompts.get(prompt_id)

    def _fetch_many(self, prompt_ids: Iterable[str]) -> List[Prompt]:
        # Mirror storage: components carry stubs of the prompts they reference
        found = []
        for prompt_id in prompt_ids:
            prompt = self.prompts.get(prompt_id)
            if prompt is None:
                continue
            components = [
                dataclasses.replace(
                    component,
                    component_prompt=self.prompts[component.component_prompt_id].stub()
                    if component.component_prompt_id in self.prompts else None,
                )
                for component in prompt.components
            ]
            found.append(dataclasses.replace(prompt, components=components))
        return found


@pytest.fixture
def graph():
    """Fixture providing an empty in-memory prompt graph."""
    return PromptGraph()


@pytest.fixture
def storage():
    """Fixture providing storage on a fresh in-memory SQLite database."""
    storage = PromptStorage("sqlite://")
    storage.create_all()
    yield storage
    storage.drop_all()
    storage.engine.dispose()


@pytest.fixture
def temp_config_dir(tmp_path):
    """Fixture providing a temporary directory for config testing."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir
