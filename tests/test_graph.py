import pytest

from builders import chain, edge, graph, greeting_flow, node, trigger
from core.errors import GraphValidationError
from services.graph import DEFAULT_LABEL, FAILURE_LABEL, validate_graph


class TestValidateGraph:
    def test_valid_flow_builds_arena(self):
        flow = validate_graph(greeting_flow())

        assert flow.trigger_id == "trigger"
        assert set(flow.nodes) == {"trigger", "hello", "ask", "yes", "no"}
        assert flow.successor("trigger") == "hello"
        assert flow.successor("ask", "true") == "yes"
        assert flow.successor("ask", "false") == "no"
        assert flow.successor("yes") is None
        assert [n.id for n in flow.report_nodes()] == ["hello", "ask", "yes", "no"]

    def test_arena_is_read_only(self):
        flow = validate_graph(greeting_flow())
        with pytest.raises(TypeError):
            flow.nodes["extra"] = flow.nodes["hello"]

    def test_requires_exactly_one_trigger(self):
        with pytest.raises(GraphValidationError, match="exatamente um gatilho"):
            validate_graph(chain(node("a", "text", content="oi")))

        two = graph([trigger("t1"), trigger("t2")], [])
        with pytest.raises(GraphValidationError, match="exatamente um gatilho"):
            validate_graph(two)

    def test_trigger_cannot_have_inbound_edges(self):
        flow = graph([trigger(), node("a", "text", content="oi")], [edge("trigger", "a"), edge("a", "trigger")])
        with pytest.raises(GraphValidationError, match="entrada"):
            validate_graph(flow)

    def test_edge_to_missing_node(self):
        flow = graph([trigger()], [edge("trigger", "ghost")])
        with pytest.raises(GraphValidationError, match="ghost"):
            validate_graph(flow)

    def test_duplicate_node_ids(self):
        flow = graph([trigger(), node("a", "text"), node("a", "stop")], [])
        with pytest.raises(GraphValidationError, match="duplicado"):
            validate_graph(flow)

    def test_unknown_kind_is_rejected(self):
        flow = graph([trigger(), {"id": "x", "kind": "carousel", "config": {}}], [edge("trigger", "x")])
        with pytest.raises(GraphValidationError):
            validate_graph(flow)

    def test_invalid_config_reports_location(self):
        flow = chain(trigger(), node("wait", "delay", amount=-1, unit="seconds"))
        with pytest.raises(GraphValidationError, match="Configuração inválida"):
            validate_graph(flow)

    def test_simple_condition_needs_true_and_false(self):
        flow = graph(
            [trigger(), node("c", "condition", mode="simple", operator="equals", value="1"), node("a", "text", content="a")],
            [edge("trigger", "c"), edge("c", "a", "true")],
        )
        with pytest.raises(GraphValidationError, match="'false'"):
            validate_graph(flow)

    def test_simple_condition_accepts_yes_no_labels(self):
        flow = graph(
            [trigger(), node("c", "condition", operator="equals", value="1"), node("a", "stop"), node("b", "stop")],
            [edge("trigger", "c"), edge("c", "a", "Sim"), edge("c", "b", "Não")],
        )
        built = validate_graph(flow)
        assert built.successor("c", "true") == "a"
        assert built.successor("c", "false") == "b"

    def test_switch_condition_label_invariants(self):
        cases = [{"value": "1", "label": "um"}, {"value": "2", "label": "dois"}]
        nodes = [trigger(), node("s", "condition", mode="switch", cases=cases), node("x", "stop")]

        ok = graph(nodes, [edge("trigger", "s"), edge("s", "x", "um"), edge("s", "x", "dois"), edge("s", "x", "default")])
        assert validate_graph(ok).successor("s", DEFAULT_LABEL) == "x"

        missing_default = graph(nodes, [edge("trigger", "s"), edge("s", "x", "um"), edge("s", "x", "dois")])
        with pytest.raises(GraphValidationError, match="'default'"):
            validate_graph(missing_default)

        stray = graph(nodes, [
            edge("trigger", "s"), edge("s", "x", "um"), edge("s", "x", "dois"),
            edge("s", "x", "default"), edge("s", "x", "tres"),
        ])
        with pytest.raises(GraphValidationError, match="tres"):
            validate_graph(stray)

    @pytest.mark.parametrize("reserved", ["Default", "DEFAULT", "Failure"])
    def test_switch_reserved_labels_ignore_case(self, reserved):
        cases = [{"value": "1", "label": "um"}, {"value": "2", "label": reserved}]
        flow = graph(
            [trigger(), node("s", "condition", mode="switch", cases=cases), node("x", "stop")],
            [edge("trigger", "s"), edge("s", "x", "um"), edge("s", "x", reserved), edge("s", "x", "default")],
        )
        with pytest.raises(GraphValidationError, match="reservado"):
            validate_graph(flow)

    def test_switch_duplicate_labels_ignore_case(self):
        cases = [{"value": "1", "label": "Sim"}, {"value": "2", "label": "sim"}]
        flow = graph(
            [trigger(), node("s", "condition", mode="switch", cases=cases), node("x", "stop")],
            [edge("trigger", "s"), edge("s", "x", "Sim"), edge("s", "x", "sim"), edge("s", "x", "default")],
        )
        with pytest.raises(GraphValidationError, match="duplicados"):
            validate_graph(flow)

    def test_switch_cases_without_label_use_index(self):
        cases = [{"value": "1"}, {"value": "2"}]
        flow = graph(
            [trigger(), node("s", "condition", mode="switch", cases=cases), node("x", "stop")],
            [edge("trigger", "s"), edge("s", "x", "case-0"), edge("s", "x", "case-1"), edge("s", "x", "default")],
        )
        assert validate_graph(flow).successor("s", "case-1") == "x"

    def test_failure_edge(self):
        flow = graph(
            [trigger(), node("h", "http_request", url="https://api.test"), node("ok", "stop"), node("err", "stop")],
            [edge("trigger", "h"), edge("h", "ok"), edge("h", "err", "Failure")],
        )
        built = validate_graph(flow)
        assert built.failure_edge("h").target == "err"
        assert built.failure_edge("h").label == FAILURE_LABEL
        # aresta de falha nunca é seguida em caso de sucesso
        assert built.successor("h") == "ok"

    def test_only_one_failure_edge_per_node(self):
        flow = graph(
            [trigger(), node("h", "http_request", url="https://api.test"), node("a", "stop"), node("b", "stop")],
            [edge("trigger", "h"), edge("h", "a", "failure"), edge("h", "b", "failure")],
        )
        with pytest.raises(GraphValidationError, match="mais de uma aresta de falha"):
            validate_graph(flow)

    def test_cycles_are_allowed(self):
        flow = graph(
            [trigger(), node("a", "text", content="a"), node("b", "text", content="b")],
            [edge("trigger", "a"), edge("a", "b"), edge("b", "a")],
        )
        assert validate_graph(flow).successor("b") == "a"

    def test_first_edge_wins_when_several(self):
        flow = graph(
            [trigger(), node("a", "text", content="a"), node("b", "stop"), node("c", "stop")],
            [edge("trigger", "a"), edge("a", "b"), edge("a", "c")],
        )
        assert validate_graph(flow).successor("a") == "b"


class TestBuilderFormat:
    def test_react_flow_nodes_and_legacy_fields(self):
        raw = {
            "nodes": [
                {"id": "1", "type": "trigger", "data": {"config": {
                    "scheduleType": "scheduled", "scheduledDate": "2026-03-10", "scheduledTime": "09:30",
                    "categories": ["vip"], "connections": ["123"],
                }}},
                {"id": "2", "type": "httprest", "data": {"label": "Consulta", "config": {
                    "method": "post", "url": "https://api.test", "timeout": 10,
                }}},
                {"id": "3", "type": "image", "data": {"config": {"mediaUrl": "banner.png"}}},
            ],
            "edges": [
                {"id": "e1", "sourceNodeId": "1", "targetNodeId": "2"},
                {"id": "e2", "source": "2", "target": "3"},
            ],
        }
        built = validate_graph(raw)

        trigger_config = built.trigger.config
        assert trigger_config.schedule_type == "scheduled"
        assert trigger_config.scheduled_at.hour == 9
        assert trigger_config.audience_tags == ["vip"]
        assert trigger_config.channel_ids == ["123"]

        http = built.node("2")
        assert http.kind == "http_request"
        assert http.label == "Consulta"
        assert http.config.method == "POST"
        assert http.config.timeout_seconds == 10

        assert built.node("3").config.asset_ref == "banner.png"
        assert built.successor("1") == "2"

    def test_http_timeout_out_of_range_is_rejected(self):
        flow = chain(trigger(), node("h", "http_request", url="https://api.test", timeoutSeconds=120))
        with pytest.raises(GraphValidationError):
            validate_graph(flow)
