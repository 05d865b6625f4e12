"""
Unit tests for bulk fetch and bulk resolution.
"""

import pytest

from compound_prompts.core.bulk import (
    PROMPT_NOT_FOUND,
    bulk_fetch,
    bulk_resolve,
    resolve_one,
)
from compound_prompts.core.resolution import resolve
from compound_prompts.core.types import Component, CompoundPromptError


@pytest.fixture
def library(graph):
    """A small library mixing literal, nested and deep prompts."""
    graph.literal("s1", "First prompt")
    graph.literal("s2", "Second prompt")
    graph.literal("blank", "   ")
    graph.compound("pair", "s1", "s2")
    graph.compound(
        "wrapped",
        Component(position=0, component_prompt_id="pair", text_before="Context: "),
        Component(position=1, component_prompt_id="blank", text_after="done"),
    )
    graph.compound("outer", "wrapped", "s1")
    return graph


class TestBulkFetch:
    """Test breadth-first loading."""

    def test_one_pass_per_compound_level(self, library):
        result = bulk_fetch(["outer"], library.fetch_many)

        # outer, then wrapped, then pair; literal leaves come in as stubs
        assert result.passes == 3
        assert library.fetch_many.call_count == 3
        assert set(result.prompts) == {"outer", "wrapped", "pair", "s1", "s2", "blank"}

    def test_literal_only_request_is_a_single_pass(self, library):
        result = bulk_fetch(["s1", "s2"], library.fetch_many)

        assert result.passes == 1
        assert result.prompts["s1"].text == "First prompt"

    def test_stubs_are_not_refetched(self, library):
        bulk_fetch(["pair"], library.fetch_many)

        requested = [list(call.args[0]) for call in library.fetch_many.call_args_list]
        assert requested == [["pair"]]

    def test_shared_prompts_are_fetched_once(self, library):
        bulk_fetch(["outer", "wrapped", "pair"], library.fetch_many)

        requested = [id_ for call in library.fetch_many.call_args_list for id_ in call.args[0]]
        assert sorted(requested) == ["outer", "pair", "wrapped"]

    def test_fetched_prompt_replaces_stub(self, library):
        result = bulk_fetch(["outer"], library.fetch_many)

        assert len(result.prompts["wrapped"].components) == 2

    def test_passes_are_bounded_by_ceiling(self, graph):
        ids = graph.chain(10)

        result = bulk_fetch([ids[0]], graph.fetch_many, max_depth=5)

        assert result.passes == 6

    def test_missing_ids_are_absent(self, graph):
        result = bulk_fetch(["ghost"], graph.fetch_many)

        assert result.prompts == {}
        assert result.passes == 1

    def test_empty_request(self, graph):
        result = bulk_fetch([], graph.fetch_many)

        assert result.passes == 0
        graph.fetch_many.assert_not_called()


class TestBulkResolve:
    """Test bulk resolution against the in-memory map."""

    def test_matches_single_resolution(self, library):
        """Bulk resolution is an optimization, not a different algorithm."""
        ids = ["outer", "wrapped", "pair", "s1", "blank"]

        result = bulk_resolve(ids, library.fetch_many)

        for prompt_id in ids:
            assert result.resolved_texts[prompt_id] == resolve(prompt_id, library.fetch).resolved_text
        assert result.success_count == len(ids)
        assert result.error_count == 0

    def test_expected_text(self, library):
        result = bulk_resolve(["wrapped"], library.fetch_many)

        assert result.resolved_texts["wrapped"] == "Context: \n\nFirst prompt\n\nSecond prompt\n\ndone"

    def test_queries_executed_is_the_pass_count(self, library):
        result = bulk_resolve(["outer", "s1"], library.fetch_many)

        assert result.queries_executed == 3
        assert result.queries_executed == library.fetch_many.call_count

    def test_missing_id(self, library):
        result = bulk_resolve(["s1", "ghost"], library.fetch_many)

        assert result.resolved_texts == {"s1": "First prompt"}
        assert result.errors == {"ghost": PROMPT_NOT_FOUND}
        assert result.success_count == 1
        assert result.error_count == 1

    def test_depth_error_is_contained(self, library):
        """One prompt nesting too deep does not affect the others."""
        ids = library.chain(7)

        result = bulk_resolve([ids[0], "pair"], library.fetch_many)

        assert "Resolution exceeded maximum nesting depth of 5" in result.errors[ids[0]]
        assert result.resolved_texts["pair"] == "First prompt\n\nSecond prompt"

    def test_deep_prompt_matches_single_resolution_error(self, graph):
        ids = graph.chain(7)

        result = bulk_resolve([ids[0]], graph.fetch_many)

        with pytest.raises(CompoundPromptError) as exc_info:
            resolve(ids[0], graph.fetch)
        assert result.errors[ids[0]] == str(exc_info.value)

    def test_duplicate_ids_are_resolved_once(self, library):
        result = bulk_resolve(["pair", "pair"], library.fetch_many)

        assert result.success_count == 1
        assert list(result.resolved_texts) == ["pair"]

    def test_empty_request(self, graph):
        result = bulk_resolve([], graph.fetch_many)

        assert result.resolved_texts == {}
        assert result.queries_executed == 0
        graph.fetch_many.assert_not_called()

    def test_to_dict(self, library):
        data = bulk_resolve(["s1"], library.fetch_many).to_dict()

        assert data == {
            "resolved_texts": {"s1": "First prompt"},
            "errors": {},
            "success_count": 1,
            "error_count": 0,
            "queries_executed": 1,
        }


class TestResolveOne:
    """Test single resolution through the bulk path."""

    def test_resolves(self, library):
        assert resolve_one("pair", library.fetch_many) == "First prompt\n\nSecond prompt"

    def test_failure_yields_empty_string(self, library):
        assert resolve_one("ghost", library.fetch_many) == ""
