"""Tests for parsing builder Graph JSON into a WorkflowGraph."""

import pytest

from core.constants import EdgeHandle, NodeType
from core.exceptions import GraphParseError
from workflow.graph import ConditionConfig, DelayConfig, TriggerConfig, WorkflowGraph

from factories import edge, graph, node, team_size_graph, trigger


@pytest.mark.unit
class TestFromJson:

    def test_parses_typed_configs(self):
        g = WorkflowGraph.from_json(team_size_graph())

        assert len(g) == 4
        t1 = g.get("t1")
        assert t1.type == NodeType.TRIGGER
        assert t1.config == TriggerConfig(trigger_type="stage_changed", to_stage_id="s-approved")
        assert g.get("c1").config == ConditionConfig(field="team_size", operator="equals", value="1-5")
        assert g.get("a1").is_action
        assert not g.get("c1").is_action

    def test_camel_case_config_keys(self):
        g = WorkflowGraph.from_json(graph(
            [
                {"id": "t1", "type": "trigger", "data": {"triggerType": "tag_added", "config": {"tagId": "vip"}}},
                {"id": "d1", "type": "delay", "data": {"config": {"durationMinutes": "30"}}},
            ],
            [edge("t1", "d1")],
        ))
        assert g.get("t1").config.tag_id == "vip"
        assert g.get("d1").config == DelayConfig(duration_minutes=30)

    def test_edges_follow_handles(self):
        g = WorkflowGraph.from_json(team_size_graph())

        assert g.next_node_id("t1") == "c1"
        assert g.next_node_id("c1", EdgeHandle.TRUE) == "a1"
        assert g.next_node_id("c1", EdgeHandle.FALSE) == "e1"
        assert g.next_node_id("a1") is None
        assert [e.handle for e in g.outgoing("c1")] == [EdgeHandle.TRUE, EdgeHandle.FALSE]
        assert len(g.incoming("a1")) == 1

    def test_trigger_property(self):
        g = WorkflowGraph.from_json(team_size_graph())
        assert g.trigger.id == "t1"

        two = WorkflowGraph.from_json(graph([trigger("t1"), trigger("t2")], []))
        assert two.trigger is None
        assert len(two.trigger_nodes()) == 2

    def test_missing_values_are_left_to_the_validator(self):
        g = WorkflowGraph.from_json(graph([trigger(), node("m1", "move_stage")], [edge("t1", "m1")]))
        assert g.get("m1").config.stage_id == ""


@pytest.mark.unit
class TestParseErrors:

    def test_not_an_object(self):
        with pytest.raises(GraphParseError):
            WorkflowGraph.from_json(["nodes"])

    def test_collects_every_problem(self):
        with pytest.raises(GraphParseError) as exc_info:
            WorkflowGraph.from_json(graph(
                [
                    trigger("t1"),
                    trigger("t1"),
                    {"id": "x1", "type": "teleport", "data": {}},
                    {"type": "delay"},
                ],
                [edge("t1", "ghost")],
            ))
        problems = exc_info.value.problems
        assert any("duplicate node id 't1'" in p for p in problems)
        assert any("unknown type 'teleport'" in p for p in problems)
        assert any("has no id" in p for p in problems)
        assert any("unknown target 'ghost'" in p for p in problems)

    def test_unknown_handle(self):
        with pytest.raises(GraphParseError) as exc_info:
            WorkflowGraph.from_json(graph(
                [trigger(), node("d1", "delay", duration_minutes=5)],
                [edge("t1", "d1", "maybe")],
            ))
        assert "unknown handle 'maybe'" in exc_info.value.message

    @pytest.mark.parametrize("duration", [1.5, "soon", True])
    def test_bad_duration(self, duration):
        with pytest.raises(GraphParseError):
            WorkflowGraph.from_json(graph([node("d1", "delay", duration_minutes=duration)], []))

    @pytest.mark.parametrize("config", [{}, {"duration_minutes": None}, {"durationMinutes": ""}])
    def test_unset_duration_defaults_to_an_hour(self, config):
        g = WorkflowGraph.from_json(graph([node("d1", "delay", **config)], []))
        assert g.get("d1").config == DelayConfig(duration_minutes=60)
