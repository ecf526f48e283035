from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
import schemas
from core.deps import get_client_id, get_db, http_error
from core.errors import FlowEngineError, GraphValidationError
from core.logger import setup_logger
from rabbitmq_client import rabbitmq
from services import lifecycle
from services.graph import validate_graph
from services.reports import get_campaign_report

logger = setup_logger("CampaignsRouter")

router = APIRouter()


async def _notify(campaign):
    await rabbitmq.publish_event("campaign_updated", {
        "campaign_id": campaign.id,
        "client_id": campaign.client_id,
        "status": campaign.status,
    })


@router.get("/campaigns", response_model=List[schemas.Campaign], summary="Listar campanhas interativas")
def list_campaigns(
    status: Optional[str] = None,
    search: Optional[str] = None,
    client_id: int = Depends(get_client_id),
    db: Session = Depends(get_db)
):
    """
    Lista as campanhas do cliente.

    - **status**: filtra por DRAFT, SCHEDULED, STARTED, PAUSED ou COMPLETED.
    - **search**: busca parcial pelo nome.
    """
    return lifecycle.list_campaigns(db, client_id, status=status, search=search)


@router.post("/campaigns", response_model=schemas.Campaign, summary="Criar campanha (rascunho)")
def create_campaign(
    campaign: schemas.CampaignCreate,
    client_id: int = Depends(get_client_id),
    db: Session = Depends(get_db)
):
    return lifecycle.create_campaign(db, client_id, campaign)


@router.get("/campaigns/{campaign_id}", response_model=schemas.Campaign, summary="Obter campanha")
def read_campaign(campaign_id: int, client_id: int = Depends(get_client_id), db: Session = Depends(get_db)):
    try:
        return lifecycle.get_campaign(db, campaign_id, client_id)
    except FlowEngineError as e:
        raise http_error(e)


@router.put("/campaigns/{campaign_id}", response_model=schemas.Campaign, summary="Atualizar campanha")
def update_campaign(
    campaign_id: int,
    data: schemas.CampaignUpdate,
    client_id: int = Depends(get_client_id),
    db: Session = Depends(get_db)
):
    """O fluxo (graph) só pode ser alterado enquanto a campanha está em rascunho."""
    try:
        return lifecycle.update_campaign(db, campaign_id, client_id, data)
    except FlowEngineError as e:
        raise http_error(e)


@router.delete("/campaigns/{campaign_id}", summary="Excluir campanha")
def delete_campaign(campaign_id: int, client_id: int = Depends(get_client_id), db: Session = Depends(get_db)):
    try:
        lifecycle.delete_campaign(db, campaign_id, client_id)
    except FlowEngineError as e:
        raise http_error(e)
    return {"message": "Campanha excluída com sucesso"}


@router.post("/campaigns/{campaign_id}/validate", summary="Validar o fluxo sem publicar")
def validate_campaign(campaign_id: int, client_id: int = Depends(get_client_id), db: Session = Depends(get_db)):
    try:
        campaign = lifecycle.get_campaign(db, campaign_id, client_id)
        graph = validate_graph(campaign.graph)
    except GraphValidationError as e:
        return {"valid": False, "reason": e.reason}
    except FlowEngineError as e:
        raise http_error(e)
    return {"valid": True, "nodes": len(graph.nodes)}


@router.post("/campaigns/{campaign_id}/publish", response_model=schemas.Campaign, summary="Publicar campanha")
async def publish_campaign(campaign_id: int, client_id: int = Depends(get_client_id), db: Session = Depends(get_db)):
    """
    Valida o fluxo e inicia a campanha (ou agenda, se o gatilho for agendado).
    Fluxo inválido retorna 400 e a campanha continua em rascunho.
    """
    try:
        campaign = lifecycle.publish_campaign(db, campaign_id, client_id)
    except FlowEngineError as e:
        raise http_error(e)
    await _notify(campaign)
    return campaign


@router.post("/campaigns/{campaign_id}/pause", response_model=schemas.Campaign, summary="Pausar campanha")
async def pause_campaign(campaign_id: int, client_id: int = Depends(get_client_id), db: Session = Depends(get_db)):
    try:
        campaign = lifecycle.pause_campaign(db, campaign_id, client_id)
    except FlowEngineError as e:
        raise http_error(e)
    await _notify(campaign)
    return campaign


@router.post("/campaigns/{campaign_id}/resume", response_model=schemas.Campaign, summary="Retomar campanha")
async def resume_campaign(campaign_id: int, client_id: int = Depends(get_client_id), db: Session = Depends(get_db)):
    try:
        campaign = lifecycle.resume_campaign(db, campaign_id, client_id)
    except FlowEngineError as e:
        raise http_error(e)
    await _notify(campaign)
    return campaign


@router.post("/campaigns/{campaign_id}/complete", response_model=schemas.Campaign, summary="Concluir campanha")
async def complete_campaign(
    campaign_id: int,
    data: Optional[schemas.CampaignComplete] = Body(None),
    client_id: int = Depends(get_client_id),
    db: Session = Depends(get_db)
):
    """
    Conclui a campanha. Por padrão as sessões ativas terminam naturalmente;
    com **force=true** todas são concluídas imediatamente.
    """
    force = bool(data and data.force)
    try:
        campaign = lifecycle.complete_campaign(db, campaign_id, client_id, force=force)
    except FlowEngineError as e:
        raise http_error(e)
    await _notify(campaign)
    return campaign


@router.post("/campaigns/{campaign_id}/duplicate", response_model=schemas.Campaign, summary="Duplicar campanha")
def duplicate_campaign(campaign_id: int, client_id: int = Depends(get_client_id), db: Session = Depends(get_db)):
    try:
        return lifecycle.duplicate_campaign(db, campaign_id, client_id)
    except FlowEngineError as e:
        raise http_error(e)


@router.get("/campaigns/{campaign_id}/report", response_model=schemas.CampaignReport, summary="Relatório da campanha")
def campaign_report(campaign_id: int, client_id: int = Depends(get_client_id), db: Session = Depends(get_db)):
    """Contadores por status, sessões com o log de visitas e o funil por nó."""
    try:
        return get_campaign_report(db, campaign_id, client_id)
    except FlowEngineError as e:
        raise http_error(e)
