"""
Máquina de estados da sessão: cada contato percorre o grafo da campanha de forma
independente. Estados: ACTIVE -> COMPLETED | FAILED | EXPIRED (terminais).

Uma sessão só é avançada por quem detém a reivindicação (claim) exclusiva.
Antes de cada nó o status da campanha é relido: pausar interrompe entre nós,
nunca no meio de uma chamada externa.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

import models
from core.engine_settings import EngineSettings, engine_settings
from core.errors import GraphValidationError, NotFoundError
from core.logger import session_logger, setup_logger
from services.collaborators import Collaborators, build_collaborators
from services.executors import ExecutionContext, NodeResult, Outcome, execute_node
from services.graph import FlowGraph, validate_graph
from services.variables import ERROR_REASON_VAR, LAST_REPLY_VAR, build_variables

logger = setup_logger("FlowEngine")

RUNNABLE_CAMPAIGN_STATUSES = (models.CampaignStatus.STARTED, models.CampaignStatus.COMPLETED)
MAX_STEPS_REASON = "max steps exceeded"
FORCE_COMPLETED_MARKER = "force-completed"

WAIT_DELAY = "delay"
WAIT_REPLY = "reply"

GRAPH_CACHE_SIZE = 256

_graph_cache: Dict[tuple, FlowGraph] = {}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite devolve datetimes sem fuso; tudo é gravado em UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def load_graph(campaign: models.Campaign) -> FlowGraph:
    """Grafo validado da campanha. O grafo não muda após a publicação, então é cacheado."""
    if not campaign.published_at:
        return validate_graph(campaign.graph)
    key = (campaign.id, ensure_utc(campaign.published_at).isoformat())
    graph = _graph_cache.get(key)
    if graph is None:
        graph = validate_graph(campaign.graph)
        if len(_graph_cache) >= GRAPH_CACHE_SIZE:
            # Descarta o mais antigo (dict mantém a ordem de inserção)
            _graph_cache.pop(next(iter(_graph_cache)))
        _graph_cache[key] = graph
    return graph


def forget_graph(campaign_id: int):
    """Remove do cache os grafos publicados da campanha."""
    for key in [k for k in _graph_cache if k[0] == campaign_id]:
        del _graph_cache[key]


def _expiry(now: datetime, settings: EngineSettings) -> datetime:
    return now + timedelta(hours=settings.session_ttl_hours)


def create_session(db: Session, campaign: models.Campaign, contact: models.Contact, channel_id: Optional[str] = None,
                   graph: FlowGraph = None, now: datetime = None, settings: EngineSettings = engine_settings) -> models.FlowSession:
    """Cria a sessão do contato começando no sucessor do gatilho (não faz commit)."""
    now = now or utcnow()
    graph = graph or load_graph(campaign)
    first_node = graph.successor(graph.trigger_id)

    session = models.FlowSession(
        client_id=campaign.client_id,
        campaign_id=campaign.id,
        contact_id=contact.id,
        channel_id=channel_id,
        current_node_id=first_node,
        status=models.SessionStatus.ACTIVE,
        variables={},
        visited_nodes={},
        step_count=0,
        has_unread_reply=False,
        expires_at=_expiry(now, settings),
    )
    if first_node is None:
        # Gatilho sem saída: nada a executar
        session.status = models.SessionStatus.COMPLETED
        session.finished_at = now
        logger.info(f"🏁 Campanha {campaign.id}: gatilho sem saída, sessão do contato {contact.id} concluída")

    db.add(session)
    return session


def claim_session(db: Session, session_id: int, now: datetime = None, settings: EngineSettings = engine_settings) -> Optional[str]:
    """
    Reivindica a sessão para avanço exclusivo (compare-and-swap no banco).
    Devolve o token ou None se outra execução detém uma reivindicação válida.
    """
    now = now or utcnow()
    token = uuid.uuid4().hex
    lease_cutoff = now - timedelta(seconds=settings.claim_lease_seconds)
    updated = db.query(models.FlowSession).filter(
        models.FlowSession.id == session_id,
        models.FlowSession.status == models.SessionStatus.ACTIVE,
        or_(models.FlowSession.claim_token.is_(None), models.FlowSession.claimed_at < lease_cutoff),
    ).update({"claim_token": token, "claimed_at": now}, synchronize_session=False)
    db.commit()
    return token if updated == 1 else None


def release_session(db: Session, session_id: int, token: str):
    db.query(models.FlowSession).filter(
        models.FlowSession.id == session_id,
        models.FlowSession.claim_token == token,
    ).update({"claim_token": None, "claimed_at": None, "queued_at": None}, synchronize_session=False)
    db.commit()


def _visit_record(session: models.FlowSession, node, step: int, result: NodeResult, now: datetime) -> dict:
    previous = (session.visited_nodes or {}).get(node.id)
    same_visit = bool(previous and previous.get("step") == step)
    if same_visit:
        count = previous.get("count", 1)
    else:
        count = (previous.get("count", 0) if previous else 0) + 1

    record = {
        "nodeId": node.id,
        "kind": node.kind,
        "visitedAt": now.isoformat(),
        "step": step,
        "count": count,
        "sent": bool(result.sent or (same_visit and previous.get("sent"))),
        "outcome": result.outcome,
    }
    if result.label:
        record["label"] = result.label
    if result.error:
        record["error"] = result.error
    return record


def _finish(session: models.FlowSession, status: str, now: datetime, reason: str = None):
    session.status = status
    session.finished_at = now
    session.waiting_for = None
    session.resume_at = None
    if reason:
        session.failure_reason = reason
        session.variables = {**(session.variables or {}), ERROR_REASON_VAR: reason}


def fail_session(db: Session, session: models.FlowSession, reason: str, now: datetime = None):
    now = now or utcnow()
    _finish(session, models.SessionStatus.FAILED, now, reason)
    db.commit()
    session_logger(logger, session).error(f"❌ Falhou: {reason}")


def apply_result(db: Session, session: models.FlowSession, graph: FlowGraph, node, step: int, result: NodeResult,
                 now: datetime, settings: EngineSettings = engine_settings):
    """Registra a visita, mescla variáveis e escolhe o próximo nó."""
    record = _visit_record(session, node, step, result, now)
    log = session_logger(logger, session)

    if result.outcome == Outcome.WAIT_REPLY:
        record["outcome"] = "waiting"
        session.visited_nodes = {**(session.visited_nodes or {}), node.id: record}
        session.waiting_for = WAIT_REPLY
        session.expires_at = _expiry(now, settings)
        db.commit()
        return

    # 1º commit: visita (com sent e o rótulo escolhido) e variáveis.
    # Um replay após queda encontra sent=True e não reenvia, ou reaplica o mesmo ramo.
    session.visited_nodes = {**(session.visited_nodes or {}), node.id: record}
    variables = dict(result.variables or {})
    if result.consumed_reply and session.last_reply is not None:
        variables.setdefault(LAST_REPLY_VAR, session.last_reply)
    if variables:
        session.variables = {**(session.variables or {}), **variables}
    db.commit()

    # 2º commit: transição. A resposta só é marcada como lida junto com ela.
    session.step_count = step
    if result.consumed_reply:
        session.has_unread_reply = False
    session.waiting_for = None
    session.resume_at = None
    session.expires_at = _expiry(now, settings)

    if result.outcome == Outcome.FAIL:
        failure_edge = graph.failure_edge(node.id)
        if failure_edge is None:
            _finish(session, models.SessionStatus.FAILED, now, result.error)
            log.error(f"❌ Falhou no nó {node.id}: {result.error}")
        else:
            session.variables = {**(session.variables or {}), ERROR_REASON_VAR: result.error}
            session.current_node_id = failure_edge.target
            log.warning(f"↪️ Nó {node.id} falhou ({result.error}), seguindo aresta de falha")
        db.commit()
        return

    if result.outcome == Outcome.COMPLETE:
        _finish(session, models.SessionStatus.COMPLETED, now)
        log.info(f"🏁 Concluída no nó {node.id}")
        db.commit()
        return

    label = result.label if result.outcome == Outcome.BRANCH else None
    next_node = graph.successor(node.id, label)

    if next_node is None:
        _finish(session, models.SessionStatus.COMPLETED, now)
        log.info(f"🏁 Concluída (nó {node.id} sem saída{' ' + label if label else ''})")
    else:
        session.current_node_id = next_node
        if result.outcome == Outcome.SUSPEND:
            session.waiting_for = WAIT_DELAY
            session.resume_at = result.resume_at
            session.expires_at = max(session.expires_at, result.resume_at + timedelta(hours=settings.session_ttl_hours))
            log.info(f"⏳ Suspensa até {result.resume_at} -> próximo {next_node}")
    db.commit()


def is_ready(session: models.FlowSession, now: datetime) -> bool:
    if session.waiting_for == WAIT_DELAY:
        return ensure_utc(session.resume_at) <= now
    if session.waiting_for == WAIT_REPLY:
        return bool(session.has_unread_reply)
    return True


async def run_session(db: Session, session: models.FlowSession, collaborators: Collaborators,
                      now: datetime = None, settings: EngineSettings = engine_settings):
    """Executa nós em sequência até suspender, terminar ou a campanha deixar de rodar."""
    campaign = session.campaign
    contact = session.contact
    log = session_logger(logger, session)

    try:
        graph = load_graph(campaign)
    except GraphValidationError as e:
        fail_session(db, session, f"Fluxo inválido: {e.reason}", now)
        return

    while True:
        db.refresh(session)
        db.refresh(campaign)
        current_time = now or utcnow()

        if session.status != models.SessionStatus.ACTIVE:
            break
        if campaign.status not in RUNNABLE_CAMPAIGN_STATUSES:
            log.info(f"⏸️ Campanha em {campaign.status}: aguardando")
            break
        if session.expires_at and ensure_utc(session.expires_at) <= current_time:
            _finish(session, models.SessionStatus.EXPIRED, current_time)
            db.commit()
            log.info("⌛ Expirada")
            break
        if not is_ready(session, current_time):
            break
        if session.step_count >= settings.max_session_steps:
            fail_session(db, session, MAX_STEPS_REASON, current_time)
            break

        node = graph.node(session.current_node_id)
        if node is None:
            fail_session(db, session, f"Nó {session.current_node_id} não existe no fluxo", current_time)
            break

        step = session.step_count + 1
        previous = (session.visited_nodes or {}).get(node.id)
        same_step = bool(previous and previous.get("step") == step)
        already_sent = bool(same_step and previous.get("sent"))

        if same_step and previous.get("outcome") == Outcome.BRANCH and previous.get("label"):
            # Ramo já escolhido antes da queda: não reavalia (a resposta pode ter mudado)
            log.info(f"🔁 Passo {step} | nó {node.id} já avaliado, reaplicando ramo '{previous['label']}'")
            stored = session.variables or {}
            result = NodeResult(
                outcome=Outcome.BRANCH,
                label=previous["label"],
                variables={LAST_REPLY_VAR: stored[LAST_REPLY_VAR]} if LAST_REPLY_VAR in stored else {},
                consumed_reply=bool(getattr(node.config, "wait_for_reply", False)),
            )
        else:
            log.info(f"📍 Passo {step} | nó {node.kind} ({node.id})")
            ctx = ExecutionContext(
                contact=contact,
                channel_id=session.channel_id,
                variables=build_variables(contact, session.variables, session.last_reply),
                collaborators=collaborators,
                now=current_time,
                has_unread_reply=bool(session.has_unread_reply),
                already_sent=already_sent,
                settings=settings,
            )
            result = await execute_node(ctx, node)
        apply_result(db, session, graph, node, step, result, now or utcnow(), settings)


async def advance_session(db: Session, session_id: int, collaborators: Collaborators = None,
                          now: datetime = None, settings: EngineSettings = engine_settings) -> Optional[models.FlowSession]:
    """
    Reivindica e avança a sessão. Devolve a sessão, ou None se ela não existe,
    não está ACTIVE ou já está sendo avançada por outra execução.
    """
    token = claim_session(db, session_id, now, settings)
    if token is None:
        logger.debug(f"Sessão {session_id} não reivindicada (inativa ou em processamento)")
        return None

    session = db.query(models.FlowSession).filter(models.FlowSession.id == session_id).first()
    try:
        collaborators = collaborators or build_collaborators(session.client_id)
        await run_session(db, session, collaborators, now, settings)
    finally:
        db.rollback()
        release_session(db, session_id, token)
    db.refresh(session)
    return session


def _phone_digits(phone: str) -> str:
    return "".join(filter(str.isdigit, phone or ""))


def record_reply(db: Session, client_id: int, phone: str, text: str, now: datetime = None,
                 settings: EngineSettings = engine_settings) -> List[models.FlowSession]:
    """
    Registra a resposta do contato em todas as suas sessões ACTIVE:
    grava last_reply (exposta como {{mensagem_usuario}}) e marca a resposta como não lida.
    Não toca em variables, que pertencem a quem detém a reivindicação.
    Devolve as sessões que aguardavam resposta (prontas para avançar).
    """
    now = now or utcnow()
    digits = _phone_digits(phone)
    if not digits:
        return []

    # Compara pelos 8 últimos dígitos (tolerante ao 9º dígito e ao DDI)
    candidates = db.query(models.Contact).filter(
        models.Contact.client_id == client_id,
        models.Contact.phone.like(f"%{digits[-8:]}"),
    ).all()
    contact_ids = [
        c.id for c in candidates
        if _phone_digits(c.phone).endswith(digits) or digits.endswith(_phone_digits(c.phone))
        or _phone_digits(c.phone)[-8:] == digits[-8:]
    ]
    if not contact_ids:
        logger.info(f"📭 Resposta de {phone} sem contato correspondente")
        return []

    sessions = db.query(models.FlowSession).filter(
        models.FlowSession.client_id == client_id,
        models.FlowSession.contact_id.in_(contact_ids),
        models.FlowSession.status == models.SessionStatus.ACTIVE,
    ).all()

    woken = []
    for session in sessions:
        session.last_reply = text
        session.has_unread_reply = True
        session.expires_at = max(ensure_utc(session.expires_at) or now, _expiry(now, settings))
        if session.waiting_for == WAIT_REPLY:
            woken.append(session)
    db.commit()

    logger.info(f"📨 Resposta de {phone} registrada em {len(sessions)} sessão(ões), {len(woken)} aguardando")
    return woken


def expire_sessions(db: Session, now: datetime = None, settings: EngineSettings = engine_settings) -> int:
    """
    Varredura: ACTIVE com expires_at vencido -> EXPIRED (sem executar mais nós).
    Sessões de campanhas pausadas ficam congeladas e não expiram.
    """
    now = now or utcnow()
    lease_cutoff = now - timedelta(seconds=settings.claim_lease_seconds)
    runnable_campaigns = select(models.Campaign.id).where(models.Campaign.status.in_(RUNNABLE_CAMPAIGN_STATUSES))
    count = db.query(models.FlowSession).filter(
        models.FlowSession.status == models.SessionStatus.ACTIVE,
        models.FlowSession.campaign_id.in_(runnable_campaigns),
        models.FlowSession.expires_at < now,
        or_(models.FlowSession.claim_token.is_(None), models.FlowSession.claimed_at < lease_cutoff),
    ).update({
        "status": models.SessionStatus.EXPIRED,
        "finished_at": now,
        "waiting_for": None,
        "resume_at": None,
        "claim_token": None,
        "claimed_at": None,
    }, synchronize_session=False)
    db.commit()
    if count:
        logger.info(f"⌛ {count} sessão(ões) expirada(s)")
    return count


def extend_session_expiry(db: Session, campaign_id: int, delta: timedelta) -> int:
    """Empurra expires_at das sessões ACTIVE da campanha (tempo em pausa não conta). Não faz commit."""
    sessions = db.query(models.FlowSession).filter(
        models.FlowSession.campaign_id == campaign_id,
        models.FlowSession.status == models.SessionStatus.ACTIVE,
        models.FlowSession.expires_at.isnot(None),
    ).all()
    for session in sessions:
        session.expires_at = ensure_utc(session.expires_at) + delta
    return len(sessions)


def force_complete_sessions(db: Session, campaign_id: int, now: datetime = None) -> int:
    """Conclui à força todas as sessões ACTIVE da campanha, com marcador no log de visitas."""
    now = now or utcnow()
    sessions = db.query(models.FlowSession).filter(
        models.FlowSession.campaign_id == campaign_id,
        models.FlowSession.status == models.SessionStatus.ACTIVE,
    ).all()
    for session in sessions:
        marker = {
            "nodeId": FORCE_COMPLETED_MARKER,
            "kind": "marker",
            "visitedAt": now.isoformat(),
            "step": session.step_count or 0,
            "count": 1,
            "sent": False,
            "outcome": FORCE_COMPLETED_MARKER,
            "interruptedAt": session.current_node_id,
        }
        session.visited_nodes = {**(session.visited_nodes or {}), FORCE_COMPLETED_MARKER: marker}
        _finish(session, models.SessionStatus.COMPLETED, now)
    db.commit()
    logger.info(f"🏁 Campanha {campaign_id}: {len(sessions)} sessão(ões) concluída(s) à força")
    return len(sessions)


def get_session(db: Session, session_id: int, client_id: int = None) -> models.FlowSession:
    query = db.query(models.FlowSession).filter(models.FlowSession.id == session_id)
    if client_id:
        query = query.filter(models.FlowSession.client_id == client_id)
    session = query.first()
    if not session:
        raise NotFoundError(f"Sessão {session_id} não encontrada")
    return session
