import json
import os
from typing import Optional

import httpx
from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

import schemas
from core.deps import get_client_id, get_db
from core.logger import setup_logger
from rabbitmq_client import WHATSAPP_EVENTS_QUEUE, rabbitmq
from services.engine import record_reply
from services.variables import suggest_json_paths
from worker import handle_whatsapp_event, wake_sessions

logger = setup_logger("RepliesRouter")

router = APIRouter()


def get_http_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Transporte do httpx usado no teste de requisição (None = rede real)."""
    return None


@router.get("/webhooks/whatsapp", summary="Meta Verification Challenge")
async def meta_verification(request: Request):
    """
    Endpoint para validação do webhook pela Meta.
    Compara o hub.verify_token com WHATSAPP_VERIFY_TOKEN.
    """
    params = request.query_params
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token")
    challenge = params.get("hub.challenge")

    if mode == "subscribe" and token:
        configured_token = os.getenv("WHATSAPP_VERIFY_TOKEN", "flowengine")
        if token == configured_token:
            logger.info("✅ Meta Webhook Challenge Verified!")
            return Response(content=challenge or "", media_type="text/plain")
        logger.warning("❌ Meta Verification Failed: token divergente")
        raise HTTPException(status_code=403, detail="Verification token mismatch")

    raise HTTPException(status_code=403, detail="Invalid verification request")


@router.post("/webhooks/whatsapp", summary="Meta Event Ingestion")
async def meta_event_ingestion(payload: dict = Body(...)):
    """
    Recebe eventos da Meta e publica no RabbitMQ.
    Sem RabbitMQ o evento é processado na própria requisição.
    """
    logger.info("📥 [META] Webhook Recebido")
    if await rabbitmq.publish(WHATSAPP_EVENTS_QUEUE, payload):
        logger.info(f"📤 [META] Evento publicado no RabbitMQ: {WHATSAPP_EVENTS_QUEUE}")
        return {"status": "ok"}

    # A Meta sempre recebe 200, senão ela desativa o webhook
    woken = await handle_whatsapp_event(payload, use_queue=False)
    return {"status": "processed_locally", "woken": woken}


@router.post("/replies", summary="Registrar resposta de um contato")
async def register_reply(
    reply: schemas.IncomingReply,
    client_id: int = Depends(get_client_id),
    db: Session = Depends(get_db)
):
    """
    Registra a última mensagem do contato em todas as sessões ativas
    e acorda as que estão aguardando resposta.
    """
    sessions = record_reply(db, client_id, reply.phone, reply.text)
    session_ids = [s.id for s in sessions]
    if session_ids:
        await wake_sessions(session_ids)
    return {"status": "ok", "woken": len(session_ids)}


@router.post("/http-proxy/test", summary="Testar requisição HTTP do nó")
async def test_http_request(
    data: schemas.HttpTestRequest,
    client_id: int = Depends(get_client_id),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_http_transport)
):
    """
    Executa a requisição configurada no editor e devolve o status, o corpo
    e os caminhos JSON sugeridos para o mapeamento de variáveis.
    """
    kwargs = {"headers": data.headers or {}}
    if data.body is not None and data.method.upper() not in ("GET", "DELETE"):
        if isinstance(data.body, (dict, list)):
            kwargs["json"] = data.body
        else:
            kwargs["content"] = str(data.body)

    try:
        async with httpx.AsyncClient(timeout=data.timeout, transport=transport) as client:
            res = await client.request(data.method.upper(), data.url, **kwargs)
    except httpx.TimeoutException:
        return {"success": False, "error": f"Timeout após {data.timeout}s"}
    except httpx.HTTPError as e:
        logger.warning(f"⚠️ Teste HTTP falhou ({data.url}): {e}")
        return {"success": False, "error": str(e)}

    try:
        body = res.json()
    except json.JSONDecodeError:
        body = res.text

    return {
        "success": res.is_success,
        "status": res.status_code,
        "body": body,
        "paths": suggest_json_paths(body) if isinstance(body, (dict, list)) else [],
    }
