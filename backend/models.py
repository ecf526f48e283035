from sqlalchemy import Column, Integer, String, JSON, DateTime, ForeignKey, Boolean, Index, UniqueConstraint
from sqlalchemy.sql import func
from database import Base
from sqlalchemy.orm import relationship


class CampaignStatus:
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    STARTED = "STARTED"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"

    ALL = (DRAFT, SCHEDULED, STARTED, PAUSED, COMPLETED)


class SessionStatus:
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    ALL = (ACTIVE, COMPLETED, FAILED, EXPIRED)
    TERMINAL = (COMPLETED, FAILED, EXPIRED)


class Client(Base):
    """Multi-tenancy: Each client has isolated campaigns, contacts, settings, etc."""
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, index=True, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    campaigns = relationship("Campaign", back_populates="client")
    contacts = relationship("Contact", back_populates="client")
    configs = relationship("AppConfig", back_populates="client")


class Contact(Base):
    """
    Registro de contato (colaborador externo: o CRUD completo vive fora do motor).
    O motor só lê estes campos para filtrar o público e montar as variáveis embutidas.
    """
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    name = Column(String, nullable=True)
    phone = Column(String, index=True, nullable=False)
    email = Column(String, nullable=True)
    category = Column(String, nullable=True)
    notes = Column(String, nullable=True)
    tags = Column(JSON, default=list)  # Categorias/tags usadas pelo público do gatilho
    channel_id = Column(String, nullable=True)  # Conexão WhatsApp fixa do contato (opcional)
    crm_lead_id = Column(String, nullable=True)  # ID do lead no CRM externo (Perfex)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    client = relationship("Client", back_populates="contacts")
    sessions = relationship("FlowSession", back_populates="contact")


class Campaign(Base):
    __tablename__ = "interactive_campaigns"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    name = Column(String, index=True, nullable=False)
    description = Column(String, nullable=True)
    graph = Column(JSON, default=dict)  # { "nodes": [...], "edges": [...] }
    status = Column(String, default=CampaignStatus.DRAFT, index=True)

    # Derivados do nó gatilho na publicação
    schedule_type = Column(String, default="immediate")  # immediate, scheduled
    scheduled_for = Column(DateTime(timezone=True), nullable=True, index=True)
    target_filter = Column(JSON, default=dict)  # {"audienceTags": [...]}
    channel_selection = Column(JSON, default=list)  # ["<phone_number_id>", ...]

    enrollment_done = Column(Boolean, default=False)  # Todos os contatos elegíveis já receberam sessão
    last_scheduling_error = Column(String, nullable=True)
    force_completed = Column(Boolean, default=False)

    published_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    client = relationship("Client", back_populates="campaigns")
    sessions = relationship("FlowSession", back_populates="campaign", cascade="all, delete-orphan")


class FlowSession(Base):
    """Uma execução independente de um contato pelo grafo de uma campanha."""
    __tablename__ = "flow_sessions"
    __table_args__ = (
        UniqueConstraint("campaign_id", "contact_id", name="uq_flow_session_campaign_contact"),
        Index("ix_flow_sessions_campaign_status", "campaign_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    campaign_id = Column(Integer, ForeignKey("interactive_campaigns.id"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False, index=True)
    channel_id = Column(String, nullable=True)

    current_node_id = Column(String, nullable=True)
    status = Column(String, default=SessionStatus.ACTIVE, index=True)
    variables = Column(JSON, default=dict)
    visited_nodes = Column(JSON, default=dict)  # {node_id: VisitRecord}
    step_count = Column(Integer, default=0)
    failure_reason = Column(String, nullable=True)

    # Suspensão: None (pronta), "delay" (acorda em resume_at) ou "reply" (aguarda resposta)
    waiting_for = Column(String, nullable=True)
    resume_at = Column(DateTime(timezone=True), nullable=True, index=True)
    has_unread_reply = Column(Boolean, default=False)
    last_reply = Column(String, nullable=True)  # Gravada só pelo webhook de respostas

    # Reivindicação exclusiva (lease) para avançar no máximo uma vez por vez
    claim_token = Column(String, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    queued_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    campaign = relationship("Campaign", back_populates="sessions")
    contact = relationship("Contact", back_populates="sessions")


class AppConfig(Base):
    """
    Armazena configurações dinâmicas do sistema (ex: Credenciais WhatsApp/OpenAI/CRM).
    Substitui a necessidade de reiniciar para ler variáveis de ambiente.
    """
    __tablename__ = "app_config"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)
    key = Column(String, index=True, nullable=False)
    value = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    client = relationship("Client", back_populates="configs")
