from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from core.errors import CampaignStateError, FlowEngineError, GraphValidationError, NotFoundError
from database import SessionLocal
import models


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_client_id(x_client_id: Optional[int] = Header(None), db: Session = Depends(get_db)) -> int:
    """Tenant selecionado no header X-Client-ID."""
    if not x_client_id:
        raise HTTPException(status_code=400, detail="Client ID não fornecido (header X-Client-ID)")
    client = db.query(models.Client).filter(models.Client.id == x_client_id).first()
    if not client or not client.is_active:
        raise HTTPException(status_code=404, detail="Cliente não encontrado")
    return x_client_id


def http_error(error: FlowEngineError) -> HTTPException:
    """Traduz os erros do motor para respostas HTTP."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, CampaignStateError):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, GraphValidationError):
        return HTTPException(status_code=400, detail=f"Fluxo inválido: {error.reason}")
    return HTTPException(status_code=400, detail=error.message)
