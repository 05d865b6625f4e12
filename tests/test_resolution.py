"""
Unit tests for single prompt resolution and previews.
"""

import pytest

from compound_prompts.core.resolution import (
    get_dependencies,
    join_parts,
    preview_components,
    resolve,
    resolve_text,
)
from compound_prompts.core.types import (
    Component,
    MaxDepthExceededError,
    NotFoundError,
)
from compound_prompts.core.validation import MAX_NESTING_DEPTH


class TestJoinParts:
    """Test joining of resolved parts."""

    def test_joins_with_blank_line(self):
        assert join_parts(["one", "two"]) == "one\n\ntwo"

    def test_drops_blank_parts_without_trimming_kept_ones(self):
        assert join_parts(["  one ", "", "   ", "\n", "two"]) == "  one \n\ntwo"

    def test_nothing_left(self):
        assert join_parts(["", "  "]) == ""


class TestResolve:
    """Test recursive resolution."""

    def test_literal_prompt_resolves_to_its_text(self, graph):
        graph.literal("a", "Be concise.")

        result = resolve("a", graph.fetch)

        assert result.resolved_text == "Be concise."
        assert result.depth_reached == 0
        assert result.used_prompt_ids == {"a"}

    def test_literal_prompt_without_text(self, graph):
        graph.literal("a")

        assert resolve("a", graph.fetch).resolved_text == ""

    def test_two_references(self, graph):
        """Two simple references are joined with a blank line."""
        graph.literal("a", "First prompt")
        graph.literal("b", "Second prompt")
        graph.compound("c", "a", "b")

        result = resolve("c", graph.fetch)

        assert result.resolved_text == "First prompt\n\nSecond prompt"
        assert result.depth_reached == 1
        assert result.used_prompt_ids == {"a", "b", "c"}

    def test_nested_compound(self, graph):
        """A -> B -> C reaches depth 2 and consumes all three prompts."""
        graph.literal("C", "leaf text")
        graph.compound("B", "C")
        graph.compound("A", "B")

        result = resolve("A", graph.fetch)

        assert result.resolved_text == "leaf text"
        assert result.depth_reached == 2
        assert result.used_prompt_ids == {"A", "B", "C"}

    def test_text_before_reference(self, graph):
        graph.literal("actual", "The actual prompt")
        graph.compound("wrapper", Component(position=0, component_prompt_id="actual", text_before="Context: "))

        assert resolve("wrapper", graph.fetch).resolved_text == "Context: \n\nThe actual prompt"

    def test_whitespace_only_text_contributes_nothing(self, graph):
        graph.literal("content", "Content")
        graph.compound(
            "wrapper",
            Component(position=0, component_prompt_id="content", text_before="   ", text_after="   "),
        )

        assert resolve("wrapper", graph.fetch).resolved_text == "Content"

    def test_empty_and_missing_text_are_equivalent(self, graph):
        graph.literal("content", "Content")
        graph.compound("empty", Component(position=0, component_prompt_id="content", text_after=""))
        graph.compound("absent", Component(position=0, component_prompt_id="content"))

        assert resolve("empty", graph.fetch).resolved_text == resolve("absent", graph.fetch).resolved_text

    def test_components_are_resolved_in_position_order(self, graph):
        graph.literal("a", "A")
        graph.literal("b", "B")
        graph.compound(
            "c",
            Component(position=1, component_prompt_id="b"),
            Component(position=0, component_prompt_id="a", text_after="after a"),
        )

        assert resolve("c", graph.fetch).resolved_text == "A\n\nafter a\n\nB"

    def test_literal_only_component(self, graph):
        graph.compound("c", Component(position=0, text_before="Hello", text_after="World"))

        assert resolve("c", graph.fetch).resolved_text == "Hello\n\nWorld"

    def test_repeated_reference_is_counted_once(self, graph):
        graph.literal("a", "A")
        graph.compound("b", "a")
        graph.compound("root", "a", "b", "a")

        result = resolve("root", graph.fetch)

        assert result.resolved_text == "A\n\nA\n\nA"
        assert result.used_prompt_ids == {"root", "a", "b"}

    def test_used_ids_include_every_transitive_reference(self, graph):
        ids = graph.chain(4)

        result = resolve(ids[0], graph.fetch)

        assert result.used_prompt_ids == set(ids) | {"leaf"}
        assert result.depth_reached == 4

    def test_missing_root(self, graph):
        with pytest.raises(NotFoundError) as exc_info:
            resolve("ghost", graph.fetch)

        assert str(exc_info.value) == "Prompt not found: ghost"

    def test_missing_reference_unwinds(self, graph):
        graph.compound("b", "ghost")
        graph.compound("a", Component(position=0, text_before="text"), Component(position=1, component_prompt_id="b"))

        with pytest.raises(NotFoundError) as exc_info:
            resolve("a", graph.fetch)

        assert exc_info.value.prompt_id == "ghost"

    def test_seven_nested_compounds_exceed_ceiling(self, graph):
        """A chain of seven compounds raises against a ceiling of five."""
        ids = graph.chain(7)

        with pytest.raises(MaxDepthExceededError) as exc_info:
            resolve(ids[0], graph.fetch)

        assert exc_info.value.max_depth == MAX_NESTING_DEPTH
        assert exc_info.value.actual_depth == MAX_NESTING_DEPTH + 1

    def test_chain_at_ceiling_resolves(self, graph):
        ids = graph.chain(MAX_NESTING_DEPTH, leaf_text="bottom")

        result = resolve(ids[0], graph.fetch)

        assert result.resolved_text == "bottom"
        assert result.depth_reached == MAX_NESTING_DEPTH

    def test_cycle_in_stored_data_hits_ceiling(self, graph):
        graph.compound("a", "b")
        graph.compound("b", "a")

        with pytest.raises(MaxDepthExceededError):
            resolve("a", graph.fetch)

    def test_idempotent(self, graph):
        graph.literal("a", "  spaced  ")
        graph.compound("b", Component(position=0, component_prompt_id="a", text_before="intro"))
        graph.compound("c", "b", "a")

        first = resolve("c", graph.fetch)
        second = resolve("c", graph.fetch)

        assert first.resolved_text == second.resolved_text

    def test_does_not_mutate_prompts(self, graph):
        graph.literal("a", "A")
        compound = graph.compound("b", Component(position=0, component_prompt_id="a", text_before="x"))
        before = compound.to_dict()

        resolve("b", graph.fetch)

        assert compound.to_dict() == before


class TestResolveHelpers:
    """Test thin wrappers around resolve."""

    def test_resolve_text(self, graph):
        graph.literal("a", "A")
        graph.compound("b", "a")

        assert resolve_text("b", graph.fetch) == "A"

    def test_get_dependencies(self, graph):
        graph.literal("c", "C")
        graph.compound("b", "c")
        graph.compound("a", "b")

        assert get_dependencies("a", graph.fetch) == {"a", "b", "c"}


class TestPreviewComponents:
    """Test previews of unsaved component lists."""

    def test_literal_only_components_never_fetch(self, graph):
        components = [
            Component(position=0, text_before="Hello"),
            Component(position=1, text_after="World"),
        ]

        assert preview_components(components, graph.fetch) == "Hello\n\nWorld"
        graph.fetch.assert_not_called()

    def test_nested_references_are_fully_resolved(self, graph):
        graph.literal("c", "deep")
        graph.compound("b", "c")
        components = [
            Component(position=1, text_before="last"),
            Component(position=0, component_prompt_id="b", text_before="first"),
        ]

        assert preview_components(components, graph.fetch) == "first\n\ndeep\n\nlast"

    def test_missing_reference(self, graph):
        with pytest.raises(NotFoundError):
            preview_components([Component(position=0, component_prompt_id="ghost")], graph.fetch)

    def test_matches_saved_resolution(self, graph):
        graph.literal("a", "A")
        components = [
            Component(position=0, component_prompt_id="a", text_before="Context: "),
            Component(position=1, text_after="  "),
        ]
        graph.compound("saved", *components)

        assert preview_components(components, graph.fetch) == resolve_text("saved", graph.fetch)
