"""
Ciclo de vida da campanha:

    DRAFT -> SCHEDULED | STARTED
    SCHEDULED -> STARTED (quando vence) | PAUSED | COMPLETED
    STARTED <-> PAUSED
    STARTED | PAUSED -> COMPLETED (terminal)

A publicação valida o grafo uma única vez. Concluir drena as sessões ativas,
a menos que seja forçado.
"""
import copy
import zoneinfo
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

import models
import schemas
from core.engine_settings import engine_settings
from core.errors import CampaignStateError, GraphValidationError, NotFoundError
from core.logger import setup_logger
from services.engine import ensure_utc, extend_session_expiry, force_complete_sessions, forget_graph, utcnow
from services.graph import validate_graph

logger = setup_logger("CampaignLifecycle")

S = models.CampaignStatus


def to_utc(value: Optional[datetime], tz_name: str = None) -> Optional[datetime]:
    """Datas sem fuso vindas do construtor são interpretadas no fuso da campanha."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=zoneinfo.ZoneInfo(tz_name or engine_settings.campaign_timezone))
    return value.astimezone(timezone.utc)


def get_campaign(db: Session, campaign_id: int, client_id: int) -> models.Campaign:
    campaign = db.query(models.Campaign).filter(
        models.Campaign.id == campaign_id,
        models.Campaign.client_id == client_id
    ).first()
    if not campaign:
        raise NotFoundError(f"Campanha {campaign_id} não encontrada")
    return campaign


def list_campaigns(db: Session, client_id: int, status: str = None, search: str = None) -> List[models.Campaign]:
    query = db.query(models.Campaign).filter(models.Campaign.client_id == client_id)
    if status:
        query = query.filter(models.Campaign.status == status.upper())
    if search:
        query = query.filter(models.Campaign.name.ilike(f"%{search}%"))
    return query.order_by(models.Campaign.created_at.desc(), models.Campaign.id.desc()).all()


def create_campaign(db: Session, client_id: int, data: schemas.CampaignCreate) -> models.Campaign:
    campaign = models.Campaign(
        client_id=client_id,
        name=data.name,
        description=data.description,
        graph=data.graph,
        status=S.DRAFT,
    )
    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    logger.info(f"📝 Campanha {campaign.id} ('{campaign.name}') criada em rascunho")
    return campaign


def update_campaign(db: Session, campaign_id: int, client_id: int, data: schemas.CampaignUpdate) -> models.Campaign:
    campaign = get_campaign(db, campaign_id, client_id)
    if data.graph is not None:
        if campaign.status != S.DRAFT:
            raise CampaignStateError("O fluxo só pode ser editado em rascunho")
        campaign.graph = data.graph
    if data.name is not None:
        campaign.name = data.name
    if data.description is not None:
        campaign.description = data.description
    db.commit()
    db.refresh(campaign)
    return campaign


def duplicate_campaign(db: Session, campaign_id: int, client_id: int) -> models.Campaign:
    original = get_campaign(db, campaign_id, client_id)
    duplicate = models.Campaign(
        client_id=client_id,
        name=f"{original.name} (cópia)",
        description=original.description,
        graph=copy.deepcopy(original.graph or {}),
        status=S.DRAFT,
    )
    db.add(duplicate)
    db.commit()
    db.refresh(duplicate)
    logger.info(f"📋 Campanha {campaign_id} duplicada como {duplicate.id}")
    return duplicate


def delete_campaign(db: Session, campaign_id: int, client_id: int):
    campaign = get_campaign(db, campaign_id, client_id)
    if campaign.status == S.STARTED:
        raise CampaignStateError("Pause ou conclua a campanha antes de excluí-la")
    db.delete(campaign)
    db.commit()
    forget_graph(campaign_id)
    logger.info(f"🗑️ Campanha {campaign_id} excluída")


def publish_campaign(db: Session, campaign_id: int, client_id: int, now: datetime = None) -> models.Campaign:
    """
    DRAFT -> STARTED (imediata ou agendamento vencido) ou SCHEDULED.
    Grafo inválido levanta GraphValidationError e a campanha continua em rascunho.
    """
    now = now or utcnow()
    campaign = get_campaign(db, campaign_id, client_id)
    if campaign.status != S.DRAFT:
        raise CampaignStateError(f"Só campanhas em rascunho podem ser publicadas (status atual: {campaign.status})")

    graph = validate_graph(campaign.graph)
    trigger = graph.trigger.config

    scheduled_for = None
    if trigger.schedule_type == "scheduled":
        if not trigger.scheduled_at:
            raise GraphValidationError("Gatilho agendado sem data/hora")
        scheduled_for = to_utc(trigger.scheduled_at)

    campaign.schedule_type = trigger.schedule_type
    campaign.scheduled_for = scheduled_for
    campaign.target_filter = {"audienceTags": list(trigger.audience_tags)}
    campaign.channel_selection = list(trigger.channel_ids)
    campaign.enrollment_done = False
    campaign.last_scheduling_error = None
    campaign.published_at = now

    if scheduled_for and scheduled_for > now:
        campaign.status = S.SCHEDULED
        logger.info(f"📅 Campanha {campaign.id} agendada para {scheduled_for}")
    else:
        campaign.status = S.STARTED
        campaign.started_at = now
        logger.info(f"🚀 Campanha {campaign.id} iniciada")

    db.commit()
    db.refresh(campaign)
    return campaign


def pause_campaign(db: Session, campaign_id: int, client_id: int, now: datetime = None) -> models.Campaign:
    campaign = get_campaign(db, campaign_id, client_id)
    if campaign.status not in (S.STARTED, S.SCHEDULED):
        raise CampaignStateError(f"Não é possível pausar uma campanha em {campaign.status}")
    campaign.status = S.PAUSED
    campaign.paused_at = now or utcnow()
    db.commit()
    db.refresh(campaign)
    logger.info(f"⏸️ Campanha {campaign.id} pausada")
    return campaign


def resume_campaign(db: Session, campaign_id: int, client_id: int, now: datetime = None) -> models.Campaign:
    now = now or utcnow()
    campaign = get_campaign(db, campaign_id, client_id)
    if campaign.status != S.PAUSED:
        raise CampaignStateError(f"Só campanhas pausadas podem ser retomadas (status atual: {campaign.status})")

    scheduled_for = ensure_utc(campaign.scheduled_for)
    if not campaign.started_at and scheduled_for and scheduled_for > now:
        campaign.status = S.SCHEDULED
    else:
        campaign.status = S.STARTED
        campaign.started_at = campaign.started_at or now

    # Tempo em pausa não consome o TTL das sessões
    paused_at = ensure_utc(campaign.paused_at)
    if paused_at and now > paused_at:
        shifted = extend_session_expiry(db, campaign.id, now - paused_at)
        logger.info(f"⌛ Campanha {campaign.id}: expiração de {shifted} sessão(ões) adiada em {now - paused_at}")
    campaign.paused_at = None
    db.commit()
    db.refresh(campaign)
    logger.info(f"▶️ Campanha {campaign.id} retomada ({campaign.status})")
    return campaign


def complete_campaign(db: Session, campaign_id: int, client_id: int, force: bool = False, now: datetime = None) -> models.Campaign:
    """
    Conclui a campanha. Sem force, as sessões ACTIVE terminam naturalmente (drenagem);
    com force, todas são concluídas imediatamente com o marcador 'force-completed'.
    """
    now = now or utcnow()
    campaign = get_campaign(db, campaign_id, client_id)
    if campaign.status == S.DRAFT:
        raise CampaignStateError("Campanha em rascunho não pode ser concluída")
    if campaign.status == S.COMPLETED and not force:
        raise CampaignStateError("Campanha já concluída")

    if campaign.status != S.COMPLETED:
        campaign.status = S.COMPLETED
        campaign.completed_at = now
    if force:
        campaign.force_completed = True
    db.commit()

    if force:
        force_complete_sessions(db, campaign.id, now)

    db.refresh(campaign)
    logger.info(f"✅ Campanha {campaign.id} concluída{' (forçada)' if force else ''}")
    return campaign


def activate_due_campaigns(db: Session, now: datetime = None) -> List[int]:
    """SCHEDULED com data vencida -> STARTED."""
    now = now or utcnow()
    due = db.query(models.Campaign).filter(
        models.Campaign.status == S.SCHEDULED,
        models.Campaign.scheduled_for <= now
    ).all()
    for campaign in due:
        campaign.status = S.STARTED
        campaign.started_at = now
        logger.info(f"🚀 Campanha agendada {campaign.id} iniciada")
    db.commit()
    return [c.id for c in due]


def auto_complete_campaigns(db: Session, now: datetime = None) -> List[int]:
    """
    Conclui campanhas STARTED cujo público já foi todo inscrito e que não têm mais
    sessões ACTIVE. Campanhas sem nenhuma sessão (público vazio) continuam STARTED.
    """
    now = now or utcnow()
    candidates = db.query(models.Campaign).filter(
        models.Campaign.status == S.STARTED,
        models.Campaign.enrollment_done.is_(True)
    ).all()

    completed = []
    for campaign in candidates:
        counts = dict(
            db.query(models.FlowSession.status, func.count(models.FlowSession.id))
            .filter(models.FlowSession.campaign_id == campaign.id)
            .group_by(models.FlowSession.status)
            .all()
        )
        if not counts or counts.get(models.SessionStatus.ACTIVE, 0) > 0:
            continue
        campaign.status = S.COMPLETED
        campaign.completed_at = now
        completed.append(campaign.id)
        logger.info(f"✅ Campanha {campaign.id} concluída automaticamente ({sum(counts.values())} sessões)")
    db.commit()
    return completed
