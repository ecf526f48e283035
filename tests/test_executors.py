import asyncio
import json
from datetime import timedelta
from types import SimpleNamespace

import httpx

from conftest import NOW, ScriptedAI
from core.engine_settings import EngineSettings
from core.errors import NodeExecutionError
from schemas import FlowNode
from services.executors import ExecutionContext, Outcome, execute_node

CONTACT = SimpleNamespace(id=1, name="Ana", phone="5511999990000", email="ana@test.com", category="vip", notes="")


def build_node(kind, node_id="n1", **config):
    return FlowNode.model_validate({"id": node_id, "kind": kind, "config": config})


def run(collaborators, node, variables=None, settings=None, **kwargs):
    ctx = ExecutionContext(
        contact=CONTACT,
        channel_id="123",
        variables={"nome": "Ana", **(variables or {})},
        collaborators=collaborators,
        now=NOW,
        settings=settings or EngineSettings(),
        **kwargs,
    )
    return asyncio.run(execute_node(ctx, node))


class TestMessages:
    def test_text_interpolates_and_sends(self, collaborators, sender):
        result = run(collaborators, build_node("text", content="Olá {{nome}}, pedido {{pedido}}"))

        assert result.outcome == Outcome.NEXT
        assert result.sent is True
        assert sender.texts == ["Olá Ana, pedido {{pedido}}"]
        assert sender.sent[0][1] == "123"

    def test_text_picks_among_variations(self, collaborators, sender):
        node = build_node("text", content="A", variations=["B", "", "C"])
        for _ in range(20):
            run(collaborators, node)
        assert set(sender.texts) <= {"A", "B", "C"}

    def test_text_already_sent_is_not_resent(self, collaborators, sender):
        result = run(collaborators, build_node("text", content="Oi"), already_sent=True)
        assert result.outcome == Outcome.NEXT
        assert result.sent is True
        assert sender.sent == []

    def test_empty_text_moves_on_without_sending(self, collaborators, sender):
        result = run(collaborators, build_node("text", content="  "))
        assert result.outcome == Outcome.NEXT
        assert result.sent is False
        assert sender.sent == []

    def test_send_failure_fails_node(self, collaborators):
        collaborators.sender.error = NodeExecutionError("WhatsApp recusou a mensagem (400): número inválido")
        result = run(collaborators, build_node("text", content="Oi"))
        assert result.outcome == Outcome.FAIL
        assert "número inválido" in result.error

    def test_media_resolves_asset_and_caption(self, collaborators, sender):
        result = run(collaborators, build_node("image", assetRef="promo.png", caption="Para {{nome}}"))

        assert result.outcome == Outcome.NEXT
        message = sender.sent[0][2]
        assert message.kind == "image"
        assert message.media_url == "https://cdn.test/promo.png"
        assert message.caption == "Para Ana"

    def test_media_without_asset_fails(self, collaborators, sender):
        result = run(collaborators, build_node("document"))
        assert result.outcome == Outcome.FAIL
        assert "sem arquivo" in result.error
        assert sender.sent == []


class TestAI:
    def test_output_is_stored_and_sent(self, collaborators, sender):
        collaborators.ai = ScriptedAI("Resposta pronta")
        node = build_node("ai", provider="groq", systemPrompt="Você atende {{nome}}", userPrompt="{{mensagem_usuario}}")

        result = run(collaborators, node, variables={"mensagem_usuario": "Qual o preço?"})

        assert result.outcome == Outcome.NEXT
        assert result.variables == {"resposta_ia": "Resposta pronta"}
        assert sender.texts == ["Resposta pronta"]
        assert collaborators.ai.calls == [("Você atende Ana", "Qual o preço?", "groq")]

    def test_retries_with_exponential_backoff(self, collaborators, sleeper):
        collaborators.ai = ScriptedAI(RuntimeError("429"), RuntimeError("503"), "ok")
        result = run(collaborators, build_node("ai", userPrompt="oi"), settings=EngineSettings(ai_max_retries=3))

        assert result.outcome == Outcome.NEXT
        assert len(collaborators.ai.calls) == 3
        assert sleeper.delays == [1.0, 2.0]

    def test_gives_up_after_retries(self, collaborators, sleeper, sender):
        collaborators.ai = ScriptedAI(*[RuntimeError("timeout")] * 4)
        result = run(collaborators, build_node("ai", userPrompt="oi"), settings=EngineSettings(ai_max_retries=3))

        assert result.outcome == Outcome.FAIL
        assert "4 tentativas" in result.error
        assert sleeper.delays == [1.0, 2.0, 4.0]
        assert sender.sent == []

    def test_configuration_error_is_not_retried(self, collaborators, sleeper):
        collaborators.ai = ScriptedAI(NodeExecutionError("OPENAI_API_KEY não configurada"))
        result = run(collaborators, build_node("ai", userPrompt="oi"))

        assert result.outcome == Outcome.FAIL
        assert result.error == "OPENAI_API_KEY não configurada"
        assert sleeper.delays == []


class TestHttpRequest:
    def test_success_applies_bindings(self, collaborators):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"cliente": {"plano": "ouro"}, "itens": [{"sku": "A"}, {"sku": "B"}]})

        collaborators.http_transport = httpx.MockTransport(handler)
        node = build_node(
            "http_request",
            method="POST",
            url="https://api.test/clientes/{{telefone}}",
            headers='{"Authorization": "Bearer {{token}}"}',
            body='{"nome": "{{nome}}"}',
            variableMappings=[
                {"jsonPath": "cliente.plano", "variableName": "plano"},
                {"jsonPath": "itens.flatMap(item => item.sku)", "variableName": ""},
                {"jsonPath": "nao.existe", "variableName": "fantasma"},
            ],
        )

        result = run(collaborators, node, variables={"telefone": "5511", "token": "abc"})

        assert result.outcome == Outcome.NEXT
        assert seen == {"url": "https://api.test/clientes/5511", "auth": "Bearer abc", "body": {"nome": "Ana"}}
        assert result.variables == {"http_status": 200, "plano": "ouro", "itens_sku": ["A", "B"]}

    def test_non_2xx_fails(self, collaborators):
        collaborators.http_transport = httpx.MockTransport(lambda request: httpx.Response(503, text="fora"))
        result = run(collaborators, build_node("http_request", url="https://api.test"))

        assert result.outcome == Outcome.FAIL
        assert "HTTP 503" in result.error
        assert result.variables == {"http_status": 503}

    def test_timeout_fails(self, collaborators):
        def handler(request):
            raise httpx.ReadTimeout("lento", request=request)

        collaborators.http_transport = httpx.MockTransport(handler)
        result = run(collaborators, build_node("http_request", url="https://api.test", timeoutSeconds=5))

        assert result.outcome == Outcome.FAIL
        assert "Timeout após 5s" in result.error

    def test_malformed_json_body_fails_without_request(self, collaborators):
        calls = []
        collaborators.http_transport = httpx.MockTransport(lambda request: calls.append(request) or httpx.Response(200))
        result = run(collaborators, build_node("http_request", method="POST", url="https://api.test", body="{nome: }"))

        assert result.outcome == Outcome.FAIL
        assert "JSON inválido em body" in result.error
        assert calls == []


class TestConditionNode:
    def test_waits_for_reply(self, collaborators):
        result = run(collaborators, build_node("condition", operator="contains", value="sim"))
        assert result.outcome == Outcome.WAIT_REPLY

    def test_branches_on_reply(self, collaborators):
        node = build_node("condition", operator="contains", value="sim")
        result = run(collaborators, node, variables={"mensagem_usuario": "Sim, quero"}, has_unread_reply=True)

        assert result.outcome == Outcome.BRANCH
        assert result.label == "true"
        assert result.consumed_reply is True

    def test_without_wait_evaluates_variable(self, collaborators):
        node = build_node("condition", input="{{plano}}", operator="equals", value="ouro", waitForReply=False)
        result = run(collaborators, node, variables={"plano": "prata"})

        assert result.label == "false"
        assert result.consumed_reply is False

    def test_switch_default(self, collaborators):
        cases = [{"value": "1", "label": "um"}, {"value": "2", "label": "dois"}]
        node = build_node("condition", mode="switch", cases=cases)

        chosen = run(collaborators, node, variables={"mensagem_usuario": "2"}, has_unread_reply=True)
        fallback = run(collaborators, node, variables={"mensagem_usuario": "9"}, has_unread_reply=True)

        assert chosen.label == "dois"
        assert fallback.label == "default"


class TestOtherNodes:
    def test_delay_suspends_until(self, collaborators):
        result = run(collaborators, build_node("delay", amount=2, unit="hours"))
        assert result.outcome == Outcome.SUSPEND
        assert result.resume_at == NOW + timedelta(hours=2)

    def test_crm_action(self, collaborators):
        result = run(collaborators, build_node("integration_crm", action="update_status", value="{{categoria}}"),
                     variables={"categoria": "2"})
        assert result.outcome == Outcome.NEXT
        assert collaborators.crm.calls == [(1, "update_status", "2")]

    def test_chat_tags_are_idempotent(self, collaborators):
        node = build_node("integration_chat", action="add", tags=["lead", "{{categoria}}"])
        run(collaborators, node, variables={"categoria": "vip"})
        run(collaborators, node, variables={"categoria": "vip"})
        assert collaborators.chat.labels[1] == {"lead", "vip"}

    def test_missing_integration_fails(self, collaborators):
        collaborators.crm = None
        result = run(collaborators, build_node("integration_crm", action="mark_lost"))
        assert result.outcome == Outcome.FAIL

    def test_stop_completes(self, collaborators):
        assert run(collaborators, build_node("stop")).outcome == Outcome.COMPLETE

    def test_unexpected_exception_becomes_failure(self, collaborators):
        class Broken:
            async def apply(self, contact, action, tags):
                raise KeyError("boom")

        collaborators.chat = Broken()
        result = run(collaborators, build_node("integration_chat", action="remove", tags=["x"]))
        assert result.outcome == Outcome.FAIL
        assert "Erro ao atualizar tags" in result.error
