from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
import models, schemas
from core.deps import get_client_id, get_db

router = APIRouter()


@router.get("/contacts", response_model=List[schemas.Contact], summary="Listar contatos")
def list_contacts(
    tag: Optional[str] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    client_id: int = Depends(get_client_id),
    db: Session = Depends(get_db)
):
    query = db.query(models.Contact).filter(models.Contact.client_id == client_id)
    if search:
        query = query.filter(
            models.Contact.name.ilike(f"%{search}%") | models.Contact.phone.ilike(f"%{search}%")
        )
    contacts = query.order_by(models.Contact.id).all()
    if tag:
        # tags é JSON: filtro feito em Python para funcionar em Postgres e SQLite
        contacts = [c for c in contacts if tag in (c.tags or []) or c.category == tag]
    return contacts[skip:skip + limit]


@router.post("/contacts", response_model=schemas.Contact, summary="Cadastrar contato")
def create_contact(contact: schemas.ContactCreate, client_id: int = Depends(get_client_id), db: Session = Depends(get_db)):
    """
    Cadastra um contato que poderá ser inscrito nas campanhas.

    - **tags**: categorias usadas pelo público do gatilho.
    - **channel_id**: conexão WhatsApp fixa (opcional).
    """
    phone = "".join(filter(str.isdigit, contact.phone))
    if not phone:
        raise HTTPException(status_code=400, detail="Telefone inválido")

    existing = db.query(models.Contact).filter(
        models.Contact.client_id == client_id,
        models.Contact.phone == phone
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail="Já existe um contato com este telefone.")

    db_contact = models.Contact(client_id=client_id, **contact.model_dump(exclude={"phone"}), phone=phone)
    db.add(db_contact)
    db.commit()
    db.refresh(db_contact)
    return db_contact


@router.get("/contacts/{contact_id}", response_model=schemas.Contact, summary="Obter contato")
def read_contact(contact_id: int, client_id: int = Depends(get_client_id), db: Session = Depends(get_db)):
    contact = db.query(models.Contact).filter(
        models.Contact.id == contact_id,
        models.Contact.client_id == client_id
    ).first()
    if not contact:
        raise HTTPException(status_code=404, detail="Contato não encontrado")
    return contact
