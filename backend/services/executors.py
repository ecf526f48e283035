"""
Executores de nós: um por tipo, registrados em EXECUTORS.

Cada executor recebe o contexto da sessão e o nó e devolve um NodeResult
descrevendo o efeito (seguir, ramificar, suspender, aguardar resposta, concluir
ou falhar). Executores nunca alteram a sessão: quem aplica o resultado é o engine.
"""
import json
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from core.engine_settings import EngineSettings, engine_settings
from core.errors import NodeExecutionError
from core.logger import setup_logger
from services.collaborators import Collaborators, OutboundMessage
from services.conditions import evaluate, resolve_switch
from services.graph import DEFAULT_LABEL, FALSE_LABEL, TRUE_LABEL, case_label
from services.variables import (
    AI_OUTPUT_VAR, HTTP_STATUS_VAR, default_variable_name, extract_json_path, interpolate,
)
from storage import resolve_asset_url

logger = setup_logger("FlowExecutors")

UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}


class Outcome:
    NEXT = "next"
    BRANCH = "branch"
    SUSPEND = "suspend"
    WAIT_REPLY = "wait_reply"
    COMPLETE = "complete"
    FAIL = "fail"


@dataclass
class NodeResult:
    outcome: str
    label: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    sent: bool = False
    error: Optional[str] = None
    resume_at: Optional[datetime] = None
    consumed_reply: bool = False


def failed(message: str, **kwargs) -> NodeResult:
    return NodeResult(outcome=Outcome.FAIL, error=message, **kwargs)


@dataclass
class ExecutionContext:
    contact: Any
    channel_id: Optional[str]
    variables: Dict[str, Any]
    collaborators: Collaborators
    now: datetime
    has_unread_reply: bool = False
    already_sent: bool = False
    settings: EngineSettings = engine_settings


def pick_variation(main: Optional[str], variations) -> Optional[str]:
    """Sorteio uniforme entre o conteúdo principal e as variações não vazias."""
    options = [main] if main and main.strip() else []
    options.extend(v for v in (variations or []) if v and v.strip())
    if not options:
        return None
    return random.choice(options)


async def _send(ctx: ExecutionContext, message: OutboundMessage) -> Optional[str]:
    """Envia pelo canal; devolve a mensagem de erro ou None."""
    try:
        await ctx.collaborators.sender.send(ctx.contact, ctx.channel_id, message)
    except NodeExecutionError as e:
        return e.message
    except Exception as e:
        logger.error(f"❌ Falha no envio para contato {getattr(ctx.contact, 'id', None)}: {e}")
        return f"Falha no envio: {e}"
    return None


async def execute_trigger(ctx, node):
    return NodeResult(outcome=Outcome.NEXT)


async def execute_text(ctx, node):
    if ctx.already_sent:
        logger.info(f"♻️ Nó {node.id} já enviado nesta visita, pulando envio")
        return NodeResult(outcome=Outcome.NEXT, sent=True)

    chosen = pick_variation(node.config.content, node.config.variations)
    if chosen is None:
        logger.warning(f"⚠️ Nó de texto {node.id} sem conteúdo. Seguindo.")
        return NodeResult(outcome=Outcome.NEXT)

    text = interpolate(chosen, ctx.variables)
    logger.info(f"📩 Enviando texto do nó {node.id}: '{text[:60]}'")
    error = await _send(ctx, OutboundMessage(kind="text", text=text))
    if error:
        return failed(error)
    return NodeResult(outcome=Outcome.NEXT, sent=True)


async def execute_media(ctx, node):
    if ctx.already_sent:
        logger.info(f"♻️ Nó {node.id} já enviado nesta visita, pulando envio")
        return NodeResult(outcome=Outcome.NEXT, sent=True)

    config = node.config
    ref = pick_variation(config.asset_ref, config.variations)
    resolve = ctx.collaborators.resolve_asset or resolve_asset_url
    url = resolve(ref) if ref else None
    if not url:
        return failed(f"Mídia ({config.kind}) sem arquivo configurado")

    caption = interpolate(config.caption, ctx.variables) if config.caption else None
    logger.info(f"🖼️ Enviando {config.kind} do nó {node.id}: {url}")
    error = await _send(ctx, OutboundMessage(kind=config.kind, media_url=url, caption=caption))
    if error:
        return failed(error)
    return NodeResult(outcome=Outcome.NEXT, sent=True)


async def execute_ai(ctx, node):
    if ctx.already_sent:
        logger.info(f"♻️ Resposta de IA do nó {node.id} já enviada, pulando")
        return NodeResult(outcome=Outcome.NEXT, sent=True)

    config = node.config
    ai = ctx.collaborators.ai
    if ai is None:
        return failed("Nenhum provedor de IA configurado")

    system_prompt = interpolate(config.system_prompt, ctx.variables)
    user_prompt = interpolate(config.user_prompt, ctx.variables)

    attempts = ctx.settings.ai_max_retries + 1
    output = None
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            output = await ai.complete(system_prompt, user_prompt, config.provider)
            break
        except NodeExecutionError as e:
            # Erro de configuração: não adianta repetir
            return failed(e.message)
        except Exception as e:
            last_error = e
            logger.warning(f"⚠️ IA ({config.provider}) falhou na tentativa {attempt}/{attempts}: {e}")
            if attempt < attempts:
                await ctx.collaborators.sleep(ctx.settings.ai_retry_base_delay * (2 ** (attempt - 1)))

    if output is None:
        return failed(f"IA falhou após {attempts} tentativas: {last_error}")

    variables = {AI_OUTPUT_VAR: output}
    error = await _send(ctx, OutboundMessage(kind="text", text=output))
    if error:
        return failed(error, variables=variables)
    return NodeResult(outcome=Outcome.NEXT, sent=True, variables=variables)


def _interpolate_structure(value, variables):
    if isinstance(value, str):
        return interpolate(value, variables)
    if isinstance(value, dict):
        return {k: _interpolate_structure(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_structure(v, variables) for v in value]
    return value


def _json_field(raw, variables, field_name: str):
    """Headers/body podem vir como texto JSON (do construtor) ou objeto."""
    if raw is None:
        return None
    if not isinstance(raw, str):
        return _interpolate_structure(raw, variables)
    text = interpolate(raw, variables).strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise NodeExecutionError(f"JSON inválido em {field_name}: {e.msg}")


async def execute_http_request(ctx, node):
    config = node.config
    try:
        url = interpolate(config.url, ctx.variables).strip()
        headers = _json_field(config.headers, ctx.variables, "headers") or {}
        body = _json_field(config.body, ctx.variables, "body")
    except NodeExecutionError as e:
        return failed(e.message)

    if not isinstance(headers, dict):
        return failed("Headers devem ser um objeto JSON")
    headers = {str(k): str(v) for k, v in headers.items()}
    timeout = max(1, min(60, config.timeout_seconds))

    logger.info(f"🌐 HTTP {config.method} {url} (timeout {timeout}s)")
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=ctx.collaborators.http_transport) as client:
            kwargs = {"headers": headers}
            if body is not None and config.method != "GET":
                kwargs["json"] = body
            response = await client.request(config.method, url, **kwargs)
    except httpx.TimeoutException:
        return failed(f"Timeout após {timeout}s em {config.method} {url}")
    except httpx.HTTPError as e:
        return failed(f"Erro de conexão em {config.method} {url}: {e}")

    variables = {HTTP_STATUS_VAR: response.status_code}
    if not 200 <= response.status_code < 300:
        return failed(f"HTTP {response.status_code} em {config.method} {url}", variables=variables)

    try:
        data = response.json()
    except ValueError:
        data = response.text

    for binding in config.variable_mappings:
        name = binding.variable_name or default_variable_name(binding.json_path)
        value = extract_json_path(data, binding.json_path)
        if value is None:
            logger.warning(f"⚠️ Caminho '{binding.json_path}' não encontrado na resposta do nó {node.id}")
            continue
        variables[name] = value

    return NodeResult(outcome=Outcome.NEXT, variables=variables)


async def execute_condition(ctx, node):
    config = node.config
    if config.wait_for_reply and not ctx.has_unread_reply:
        logger.info(f"⏳ Condição {node.id} aguardando resposta do contato")
        return NodeResult(outcome=Outcome.WAIT_REPLY)

    value = interpolate(config.input or "", ctx.variables)

    if config.mode == "switch":
        cases = [c.model_copy(update={"value": interpolate(c.value, ctx.variables)}) for c in config.cases]
        index = resolve_switch(cases, value)
        label = DEFAULT_LABEL if index is None else case_label(config.cases[index], index)
    else:
        matched = evaluate(config.operator, value, interpolate(config.value or "", ctx.variables))
        label = TRUE_LABEL if matched else FALSE_LABEL

    logger.info(f"🤔 Condição {node.id}: '{value[:40]}' -> {label}")
    return NodeResult(outcome=Outcome.BRANCH, label=label, consumed_reply=config.wait_for_reply)


async def execute_delay(ctx, node):
    config = node.config
    seconds = config.amount * UNIT_SECONDS[config.unit]
    resume_at = ctx.now + timedelta(seconds=seconds)
    logger.info(f"⏳ Delay de {config.amount} {config.unit} no nó {node.id}. Retoma em {resume_at}")
    return NodeResult(outcome=Outcome.SUSPEND, resume_at=resume_at)


async def execute_crm(ctx, node):
    crm = ctx.collaborators.crm
    if crm is None:
        return failed("Integração de CRM não configurada")
    value = interpolate(node.config.value or "", ctx.variables)
    try:
        await crm.apply(ctx.contact, node.config.action, value)
    except NodeExecutionError as e:
        return failed(e.message)
    except Exception as e:
        return failed(f"Erro no CRM ({node.config.action}): {e}")
    return NodeResult(outcome=Outcome.NEXT)


async def execute_chat(ctx, node):
    chat = ctx.collaborators.chat
    if chat is None:
        return failed("Integração de chat não configurada")
    tags = [interpolate(t, ctx.variables) for t in node.config.tags]
    try:
        await chat.apply(ctx.contact, node.config.action, tags)
    except NodeExecutionError as e:
        return failed(e.message)
    except Exception as e:
        return failed(f"Erro ao atualizar tags ({node.config.action}): {e}")
    return NodeResult(outcome=Outcome.NEXT)


async def execute_stop(ctx, node):
    logger.info(f"🛑 Nó de parada {node.id}")
    return NodeResult(outcome=Outcome.COMPLETE)


EXECUTORS = {
    "trigger": execute_trigger,
    "text": execute_text,
    "image": execute_media,
    "video": execute_media,
    "audio": execute_media,
    "document": execute_media,
    "ai": execute_ai,
    "http_request": execute_http_request,
    "condition": execute_condition,
    "delay": execute_delay,
    "integration_crm": execute_crm,
    "integration_chat": execute_chat,
    "stop": execute_stop,
}


async def execute_node(ctx: ExecutionContext, node) -> NodeResult:
    """Executa o nó; qualquer exceção inesperada vira falha do nó (nunca atravessa a sessão)."""
    executor = EXECUTORS.get(node.kind)
    if executor is None:
        return failed(f"Tipo de nó sem executor: {node.kind}")
    try:
        return await executor(ctx, node)
    except Exception as e:
        logger.exception(f"❌ Erro inesperado no nó {node.id} ({node.kind})")
        return failed(f"Erro inesperado no nó {node.id} ({node.kind}): {e}")
