from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

import models
import schemas
from core.errors import FlowEngineError
from core.logger import setup_logger
from services.graph import parse_graph, validate_graph
from services.lifecycle import get_campaign

logger = setup_logger("Reports")

KIND_LABELS = {
    "text": "Texto",
    "image": "Imagem",
    "video": "Vídeo",
    "audio": "Áudio",
    "document": "Documento",
    "ai": "IA",
    "condition": "Condição",
    "delay": "Espera",
    "http_request": "Requisição HTTP",
    "integration_crm": "Perfex CRM",
    "integration_chat": "Chatwoot",
    "stop": "Fim",
}


def _flow_nodes(campaign: models.Campaign):
    try:
        return validate_graph(campaign.graph).report_nodes()
    except FlowEngineError:
        # Rascunho inválido: melhor esforço, só para exibir as colunas
        try:
            return [n for n in parse_graph(campaign.graph).nodes if n.kind != "trigger"]
        except FlowEngineError:
            return []


def session_stats(db: Session, campaign_id: int) -> schemas.ReportStats:
    counts = dict(
        db.query(models.FlowSession.status, func.count(models.FlowSession.id))
        .filter(models.FlowSession.campaign_id == campaign_id)
        .group_by(models.FlowSession.status)
        .all()
    )
    total = sum(counts.values())
    completed = counts.get(models.SessionStatus.COMPLETED, 0)
    return schemas.ReportStats(
        total=total,
        active=counts.get(models.SessionStatus.ACTIVE, 0),
        completed=completed,
        failed=counts.get(models.SessionStatus.FAILED, 0),
        expired=counts.get(models.SessionStatus.EXPIRED, 0),
        completion_rate=round(completed * 100.0 / total, 1) if total else 0.0,
    )


def get_campaign_report(db: Session, campaign_id: int, client_id: int) -> schemas.CampaignReport:
    """Relatório somente-leitura: contadores por status, sessões e funil por nó."""
    campaign = get_campaign(db, campaign_id, client_id)
    stats = session_stats(db, campaign.id)

    sessions = db.query(models.FlowSession).options(joinedload(models.FlowSession.contact)).filter(
        models.FlowSession.campaign_id == campaign.id
    ).order_by(models.FlowSession.id).all()

    session_rows = [
        schemas.SessionReport(
            session_id=s.id,
            contact_id=s.contact_id,
            contact_name=s.contact.name if s.contact else None,
            contact_phone=s.contact.phone if s.contact else None,
            status=s.status,
            current_node_id=s.current_node_id,
            failure_reason=s.failure_reason,
            variables=s.variables or {},
            visited_nodes=s.visited_nodes or {},
        )
        for s in sessions
    ]

    flow_nodes = []
    previous_reached = stats.total
    for node in _flow_nodes(campaign):
        reached = sum(1 for s in sessions if node.id in (s.visited_nodes or {}))
        sent = sum(1 for s in sessions if (s.visited_nodes or {}).get(node.id, {}).get("sent"))
        drop_off = (previous_reached - reached) * 100.0 / previous_reached if previous_reached else 0.0
        flow_nodes.append(schemas.ReportNode(
            id=node.id,
            kind=node.kind,
            label=node.label or KIND_LABELS.get(node.kind, node.kind),
            reached=reached,
            sent=sent,
            drop_off=round(max(drop_off, 0.0), 1),
        ))
        previous_reached = reached

    return schemas.CampaignReport(
        campaign=schemas.Campaign.model_validate(campaign),
        stats=stats,
        sessions=session_rows,
        flow_nodes=flow_nodes,
    )
