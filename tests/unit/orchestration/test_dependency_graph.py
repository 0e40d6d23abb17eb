"""
Unit tests for DependencyGraph validation and ordering.
"""

import pytest

from intentmoe.errors import CyclicDependencyError, InvalidSubtaskError
from intentmoe.orchestration import DependencyGraph, Subtask, subtasks_from_descriptors


def task(subtask_id, *dependencies, priority="medium", action=None):
    return Subtask(
        subtask_id=subtask_id,
        action=action if action is not None else f"do_{subtask_id}",
        dependencies=set(dependencies),
        priority=priority,
    )


class TestGraphValidation:
    """Test rejection of malformed batches."""

    def test_duplicate_ids(self):
        with pytest.raises(InvalidSubtaskError) as exc_info:
            DependencyGraph([task("a"), task("a")])

        assert exc_info.value.subtask_id == "a"

    def test_unknown_dependency(self):
        with pytest.raises(InvalidSubtaskError, match="unknown subtask ghost"):
            DependencyGraph([task("a", "ghost")])

    def test_empty_action(self):
        with pytest.raises(InvalidSubtaskError, match="no action"):
            DependencyGraph([task("a", action="  ")])

    def test_two_node_cycle(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            DependencyGraph([task("a", "b"), task("b", "a")])

        assert exc_info.value.cycle == ["a", "b", "a"]
        assert "a -> b -> a" in str(exc_info.value)

    def test_self_dependency(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            DependencyGraph([task("a", "a")])

        assert exc_info.value.cycle == ["a", "a"]

    def test_cycle_behind_valid_prefix(self):
        subtasks = [
            task("root"),
            task("x", "root", "c"),
            task("a", "c"),
            task("b", "a"),
            task("c", "b"),
        ]

        with pytest.raises(CyclicDependencyError) as exc_info:
            DependencyGraph(subtasks)

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}


class TestGraphOrdering:
    """Test topological order and index bookkeeping."""

    def test_order_respects_dependencies(self):
        graph = DependencyGraph([task("alarm", "weather"), task("weather"), task("notify", "alarm")])

        order = graph.topological_order()

        assert order.index("weather") < order.index("alarm") < order.index("notify")

    def test_priority_breaks_ties_among_ready_subtasks(self):
        graph = DependencyGraph(
            [task("low", priority="low"), task("mid"), task("high", priority="high")]
        )

        assert graph.topological_order() == ["high", "mid", "low"]

    def test_roots_and_in_degrees(self):
        graph = DependencyGraph([task("a"), task("b", "a"), task("c", "a", "b")])

        assert graph.roots() == [0]
        assert graph.in_degrees() == [0, 1, 2]
        assert len(graph) == 3

    def test_transitive_dependents(self):
        graph = DependencyGraph(
            [task("a"), task("b", "a"), task("c", "b"), task("d"), task("e", "d", "c")]
        )

        dependents = {graph.subtasks[i].subtask_id for i in graph.transitive_dependents(0)}

        assert dependents == {"b", "c", "e"}

    def test_empty_batch(self):
        graph = DependencyGraph([])

        assert graph.topological_order() == []
        assert graph.roots() == []


class TestSubtaskDescriptors:
    """Test building subtasks from model-proposed descriptors."""

    def test_descriptor_fields(self):
        subtasks = subtasks_from_descriptors(
            [
                {"id": "w", "action": "get_weather", "entities": {"city": "Lima"}, "priority": "HIGH"},
                {"action": "set_alarm", "depends_on": "w", "priority": "urgent"},
            ]
        )

        assert subtasks[0].subtask_id == "w"
        assert subtasks[0].entities == {"city": "Lima"}
        assert subtasks[0].is_critical
        assert subtasks[1].subtask_id == "subtask_2"
        assert subtasks[1].dependencies == {"w"}
        assert subtasks[1].priority.value == "medium"

    @pytest.mark.parametrize("dependencies", [3, 2.5, True, {"w": 1}, None])
    def test_malformed_dependencies_are_ignored(self, dependencies):
        subtasks = subtasks_from_descriptors(
            [{"subtask_id": "alarm", "action": "set_alarm", "dependencies": dependencies}]
        )

        assert subtasks[0].dependencies == set()

    def test_non_scalar_dependency_items_are_dropped(self):
        subtasks = subtasks_from_descriptors(
            [{"subtask_id": "alarm", "action": "set_alarm", "dependencies": ["w", 7, None, ["x"]]}]
        )

        assert subtasks[0].dependencies == {"w", "7"}
