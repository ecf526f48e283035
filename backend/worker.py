import asyncio
import os
from typing import List

from sqlalchemy.orm import Session

import models
from core.logger import setup_logger
from database import SessionLocal
from rabbitmq_client import SESSION_ADVANCE_QUEUE, WHATSAPP_EVENTS_QUEUE, rabbitmq
from services.engine import advance_session, record_reply
from services.scheduler import dispatch_sessions, publish_sessions

logger = setup_logger("Worker")

# Worker Configuration
PREFETCH_COUNT = int(os.getenv("RABBITMQ_PREFETCH_COUNT", 5))


async def handle_session_advance(data: dict):
    """
    Processa mensagens da fila 'flow_session_advances': {"session_id": <id>}
    """
    session_id = data.get("session_id")
    if not session_id:
        logger.warning(f"⚠️ Mensagem sem session_id ignorada: {data}")
        return

    db = SessionLocal()
    try:
        session = await advance_session(db, int(session_id))
        if session is not None:
            logger.info(f"✅ Sessão {session_id} avançada -> {session.status} (nó {session.current_node_id})")
            await rabbitmq.publish_event("session_updated", {
                "session_id": session.id,
                "campaign_id": session.campaign_id,
                "status": session.status,
                "current_node_id": session.current_node_id,
            })
    finally:
        db.close()


def extract_incoming_messages(payload: dict) -> List[dict]:
    """
    Extrai mensagens recebidas de um webhook da Meta.
    Devolve [{"phone", "text", "phone_number_id"}]. Botões e listas usam o título como texto.
    """
    messages = []
    for item in payload.get("entry", []) or []:
        for change in item.get("changes", []) or []:
            value = change.get("value", {}) or {}
            phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
            for msg in value.get("messages", []) or []:
                msg_type = msg.get("type")
                text = None
                if msg_type == "text":
                    text = (msg.get("text") or {}).get("body")
                elif msg_type == "button":
                    text = (msg.get("button") or {}).get("text")
                elif msg_type == "interactive":
                    interactive = msg.get("interactive") or {}
                    reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
                    text = reply.get("title")
                if msg.get("from") and text is not None:
                    messages.append({"phone": msg["from"], "text": text, "phone_number_id": phone_number_id})
    return messages


def resolve_client_ids(db: Session, phone_number_id: str) -> List[int]:
    """Tenants donos da conexão: configuração WA_PHONE_NUMBER_ID ou sessões usando o canal."""
    if not phone_number_id:
        return []
    ids = {
        cfg.client_id for cfg in db.query(models.AppConfig).filter(
            models.AppConfig.key == "WA_PHONE_NUMBER_ID",
            models.AppConfig.value == phone_number_id
        ).all()
    }
    ids.update(
        client_id for (client_id,) in db.query(models.FlowSession.client_id).filter(
            models.FlowSession.channel_id == phone_number_id
        ).distinct().all()
    )
    return sorted(ids)


async def wake_sessions(session_ids: List[int], use_queue: bool = True):
    pending = session_ids
    if session_ids and use_queue:
        pending = await publish_sessions(session_ids)
    if pending:
        await dispatch_sessions(pending)


async def handle_whatsapp_event(data: dict, use_queue: bool = True) -> int:
    """
    Processa eventos crus do Webhook da Meta: registra as respostas dos contatos
    e acorda as sessões que aguardavam resposta. Devolve quantas foram acordadas.
    """
    messages = extract_incoming_messages(data)
    if not messages:
        return 0

    db = SessionLocal()
    try:
        woken = []
        for message in messages:
            for client_id in resolve_client_ids(db, message["phone_number_id"]):
                sessions = record_reply(db, client_id, message["phone"], message["text"])
                woken.extend(s.id for s in sessions)
    finally:
        db.close()

    if woken:
        logger.info(f"📨 {len(woken)} sessão(ões) acordada(s) por resposta")
        await wake_sessions(woken, use_queue)
    return len(woken)


async def start_worker():
    """Inicia o worker e conecta às filas"""
    logger.info(f"👷 Iniciando Flow Worker | Prefetch: {PREFETCH_COUNT}")

    await rabbitmq.connect()

    # Avanço de sessões: cada mensagem é uma sessão
    await rabbitmq.consume(SESSION_ADVANCE_QUEUE, handle_session_advance, prefetch_count=PREFETCH_COUNT)

    # Fila de Eventos do WhatsApp (Meta Webhooks)
    await rabbitmq.consume(WHATSAPP_EVENTS_QUEUE, handle_whatsapp_event, prefetch_count=20)

    logger.info("🚀 Worker rodando e aguardando processamento...")

    try:
        await asyncio.Future()
    except asyncio.CancelledError:
        logger.info("🛑 Worker parando...")
        await rabbitmq.close()


if __name__ == "__main__":
    try:
        asyncio.run(start_worker())
    except KeyboardInterrupt:
        print("Worker parado manualmente")
