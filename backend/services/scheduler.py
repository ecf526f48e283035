"""
Scheduler / Dispatcher.

A cada ciclo: ativa campanhas agendadas vencidas, inscreve o público das campanhas
iniciadas, expira sessões vencidas, publica as sessões prontas na fila
flow_session_advances (ou despacha em processo se o RabbitMQ estiver fora) e
conclui automaticamente as campanhas drenadas.
"""
import asyncio
import unicodedata
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

import models
from core.engine_settings import EngineSettings, engine_settings
from core.errors import SchedulingError
from core.logger import setup_logger
from database import SessionLocal
from rabbitmq_client import rabbitmq
from services.collaborators import Collaborators
from services.engine import (
    RUNNABLE_CAMPAIGN_STATUSES, WAIT_DELAY, WAIT_REPLY,
    advance_session, create_session, expire_sessions, load_graph, utcnow,
)
from services.lifecycle import activate_due_campaigns, auto_complete_campaigns

logger = setup_logger("Scheduler")


def normalize_tag(text: str) -> str:
    """Tags comparadas sem #, acentos e maiúsculas."""
    if not text:
        return ""
    text = str(text).replace("#", "").strip().lower()
    text = "".join(c for c in unicodedata.normalize("NFKD", text) if not unicodedata.combining(c))
    return " ".join(text.split())


def eligible_contacts(db: Session, campaign: models.Campaign) -> List[Tuple[models.Contact, Optional[str]]]:
    """
    Contatos do público do gatilho com o canal de envio de cada um.

    Público: contatos com alguma tag (ou categoria) entre as do gatilho; sem tags, todos.
    Canal: o canal fixo do contato se estiver na seleção; contatos sem canal fixo
    recebem os canais selecionados em rodízio. Canal fixo fora da seleção = inelegível.
    """
    wanted = {normalize_tag(t) for t in (campaign.target_filter or {}).get("audienceTags", []) if normalize_tag(t)}
    channels = list(campaign.channel_selection or [])

    contacts = db.query(models.Contact).filter(
        models.Contact.client_id == campaign.client_id
    ).order_by(models.Contact.id).all()

    result = []
    rotation = 0
    for contact in contacts:
        if wanted:
            contact_tags = {normalize_tag(t) for t in (contact.tags or [])}
            if contact.category:
                contact_tags.add(normalize_tag(contact.category))
            if not wanted & contact_tags:
                continue

        if not channels:
            result.append((contact, contact.channel_id))
        elif contact.channel_id:
            if contact.channel_id in channels:
                result.append((contact, contact.channel_id))
        else:
            result.append((contact, channels[rotation % len(channels)]))
            rotation += 1
    return result


def enroll_campaign(db: Session, campaign: models.Campaign, now: datetime = None,
                    settings: EngineSettings = engine_settings) -> int:
    """Cria uma sessão por contato elegível (uma única vez por campanha). Devolve quantas foram criadas."""
    now = now or utcnow()
    graph = load_graph(campaign)
    existing = {
        contact_id for (contact_id,) in
        db.query(models.FlowSession.contact_id).filter(models.FlowSession.campaign_id == campaign.id).all()
    }

    created = 0
    try:
        eligible = eligible_contacts(db, campaign)
        if not eligible and not existing:
            raise SchedulingError("Nenhum contato elegível para o público e canais do gatilho")

        for contact, channel_id in eligible:
            if contact.id in existing:
                continue
            create_session(db, campaign, contact, channel_id, graph=graph, now=now, settings=settings)
            created += 1
            if created % settings.dispatch_batch_size == 0:
                db.commit()
        campaign.last_scheduling_error = None
    except SchedulingError as e:
        logger.warning(f"⚠️ Campanha {campaign.id}: {e.message}")
        campaign.last_scheduling_error = e.message

    campaign.enrollment_done = True
    db.commit()
    logger.info(f"👥 Campanha {campaign.id}: {created} sessão(ões) criada(s)")
    return created


def claim_ready_batch(db: Session, now: datetime = None, settings: EngineSettings = engine_settings) -> List[int]:
    """Seleciona sessões prontas ainda não enfileiradas e marca queued_at."""
    now = now or utcnow()
    lease_cutoff = now - timedelta(seconds=settings.claim_lease_seconds)

    query = db.query(models.FlowSession.id).join(models.Campaign).filter(
        models.FlowSession.status == models.SessionStatus.ACTIVE,
        models.Campaign.status.in_(RUNNABLE_CAMPAIGN_STATUSES),
        or_(models.FlowSession.claim_token.is_(None), models.FlowSession.claimed_at < lease_cutoff),
        or_(models.FlowSession.queued_at.is_(None), models.FlowSession.queued_at < lease_cutoff),
        or_(
            models.FlowSession.waiting_for.is_(None),
            and_(models.FlowSession.waiting_for == WAIT_DELAY, models.FlowSession.resume_at <= now),
            and_(models.FlowSession.waiting_for == WAIT_REPLY, models.FlowSession.has_unread_reply.is_(True)),
        ),
    ).order_by(models.FlowSession.id).limit(settings.dispatch_batch_size)

    if db.get_bind().dialect.name == "postgresql":
        # 🔒 SELECT FOR UPDATE SKIP LOCKED - vários schedulers não pegam a mesma sessão
        query = query.with_for_update(skip_locked=True, of=models.FlowSession)

    ids = [session_id for (session_id,) in query.all()]
    if ids:
        db.query(models.FlowSession).filter(models.FlowSession.id.in_(ids)).update(
            {"queued_at": now}, synchronize_session=False
        )
    db.commit()
    return ids


async def dispatch_sessions(session_ids: List[int], collaborators: Collaborators = None, now: datetime = None,
                            settings: EngineSettings = engine_settings, session_factory=SessionLocal) -> int:
    """Avança as sessões em processo, em paralelo limitado por DISPATCH_CONCURRENCY."""
    semaphore = asyncio.Semaphore(settings.dispatch_concurrency)
    advanced = 0

    async def _run(session_id: int):
        nonlocal advanced
        async with semaphore:
            db = session_factory()
            try:
                if await advance_session(db, session_id, collaborators, now, settings):
                    advanced += 1
            except Exception as e:
                logger.error(f"❌ Erro ao avançar sessão {session_id}: {e}")
            finally:
                db.close()

    await asyncio.gather(*(_run(sid) for sid in session_ids))
    return advanced


async def publish_sessions(session_ids: List[int]) -> List[int]:
    """Publica na fila; devolve os ids que não puderam ser publicados."""
    for index, session_id in enumerate(session_ids):
        if not await rabbitmq.publish_session_advance(session_id):
            return session_ids[index:]
    return []


async def run_scheduler_cycle(db: Session, now: datetime = None, use_queue: bool = True,
                              collaborators: Collaborators = None, settings: EngineSettings = engine_settings,
                              session_factory=SessionLocal) -> dict:
    now = now or utcnow()

    activated = activate_due_campaigns(db, now)

    to_enroll = db.query(models.Campaign).filter(
        models.Campaign.status == models.CampaignStatus.STARTED,
        models.Campaign.enrollment_done.is_(False)
    ).all()
    enrolled = 0
    for campaign in to_enroll:
        enrolled += enroll_campaign(db, campaign, now, settings)

    expired = expire_sessions(db, now, settings)

    ready = claim_ready_batch(db, now, settings)
    pending = ready
    if ready and use_queue:
        pending = await publish_sessions(ready)
        if pending:
            logger.warning(f"⚠️ RabbitMQ indisponível: despachando {len(pending)} sessão(ões) em processo")
    if pending:
        await dispatch_sessions(pending, collaborators, now, settings, session_factory)

    completed = auto_complete_campaigns(db, now)

    for campaign_id in activated + completed:
        if use_queue:
            await rabbitmq.publish_event("campaign_updated", {"campaign_id": campaign_id})

    return {
        "activated": activated,
        "enrolled": enrolled,
        "expired": expired,
        "dispatched": len(ready),
        "completed": completed,
    }


async def scheduler_task():
    logger.info("Scheduler task started (RabbitMQ Mode)")
    while True:
        db = SessionLocal()
        try:
            stats = await run_scheduler_cycle(db)
            if stats["dispatched"] or stats["enrolled"]:
                logger.info(f"🔁 Ciclo: {stats}")
        except Exception as e:
            logger.error(f"Scheduler loop error: {e}")
        finally:
            db.close()

        await asyncio.sleep(engine_settings.scheduler_interval_seconds)
