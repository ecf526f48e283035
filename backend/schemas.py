from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import datetime

# --- Node Config Variants (tagged union por "kind") ---

NODE_KINDS = (
    "trigger", "text", "image", "video", "audio", "document", "ai", "condition",
    "delay", "http_request", "integration_crm", "integration_chat", "stop",
)
MEDIA_KINDS = ("image", "video", "audio", "document")

# Nomes usados pelo construtor visual antigo
KIND_ALIASES = {
    "httprest": "http_request",
    "http": "http_request",
    "integration_perfex": "integration_crm",
    "integration_chatwoot": "integration_chat",
}


class CamelModel(BaseModel):
    """Campos snake_case no Python, camelCase no JSON (formato do construtor de fluxos)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def _rename_legacy(data: Any, renames: Dict[str, str]) -> Any:
    if not isinstance(data, dict):
        return data
    data = dict(data)
    for old, new in renames.items():
        if old in data and data.get(new) in (None, "", []):
            data[new] = data.pop(old)
    return data


class TriggerConfig(CamelModel):
    kind: Literal["trigger"] = "trigger"
    schedule_type: Literal["immediate", "scheduled"] = "immediate"
    scheduled_at: Optional[datetime] = None
    audience_tags: List[str] = Field(default_factory=list, description="Categorias/tags do público (qualquer uma)")
    channel_ids: List[str] = Field(default_factory=list, description="Conexões WhatsApp (phone_number_id)")

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data):
        data = _rename_legacy(data, {"categories": "audienceTags", "connections": "channelIds"})
        # O construtor grava data e hora separadas
        if isinstance(data, dict) and not data.get("scheduledAt") and data.get("scheduledDate") and data.get("scheduledTime"):
            data["scheduledAt"] = f"{data['scheduledDate']}T{data['scheduledTime']}"
        return data


class TextConfig(CamelModel):
    kind: Literal["text"] = "text"
    content: Optional[str] = None
    variations: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data):
        return _rename_legacy(data, {"textVariations": "variations"})


class MediaConfig(CamelModel):
    kind: Literal["image", "video", "audio", "document"]
    asset_ref: Optional[str] = None
    variations: List[str] = Field(default_factory=list, description="Referências de mídia alternativas")
    caption: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data):
        return _rename_legacy(data, {"mediaUrl": "assetRef", "mediaVariations": "variations"})


class AIConfig(CamelModel):
    kind: Literal["ai"] = "ai"
    provider: Literal["openai", "groq"] = "openai"
    system_prompt: str = ""
    user_prompt: str = ""

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data):
        return _rename_legacy(data, {"aiProvider": "provider", "prompt": "userPrompt"})


class ConditionCase(CamelModel):
    value: str = ""
    label: str = ""
    operator: str = "equals"

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data):
        return _rename_legacy(data, {"conditionType": "operator"})


class ConditionConfig(CamelModel):
    kind: Literal["condition"] = "condition"
    mode: Literal["simple", "switch"] = "simple"
    operator: Optional[str] = "contains"
    value: Optional[str] = ""
    cases: List[ConditionCase] = Field(default_factory=list)
    input: str = Field("{{mensagem_usuario}}", description="Valor avaliado (padrão: última resposta do contato)")
    wait_for_reply: bool = True

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data):
        return _rename_legacy(data, {"conditionType": "operator"})


class DelayConfig(CamelModel):
    kind: Literal["delay"] = "delay"
    amount: int = Field(1, ge=0)
    unit: Literal["seconds", "minutes", "hours", "days"] = "seconds"

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data):
        return _rename_legacy(data, {"value": "amount", "time": "amount"})


class VariableBinding(CamelModel):
    json_path: str
    variable_name: str


class HttpRequestConfig(CamelModel):
    kind: Literal["http_request"] = "http_request"
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    url: str
    headers: Optional[Union[str, Dict[str, Any]]] = None  # JSON (texto ou objeto)
    body: Optional[Union[str, Dict[str, Any], List[Any]]] = None
    timeout_seconds: int = Field(30, ge=1, le=60)
    variable_mappings: List[VariableBinding] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data):
        data = _rename_legacy(data, {"timeout": "timeoutSeconds"})
        if isinstance(data, dict) and isinstance(data.get("method"), str):
            data["method"] = data["method"].upper()
        return data


class CrmActionConfig(CamelModel):
    kind: Literal["integration_crm"] = "integration_crm"
    action: Literal["update_status", "update_source", "assign_to", "mark_lost", "mark_junk"] = "update_status"
    value: Optional[str] = ""


class ChatTagConfig(CamelModel):
    kind: Literal["integration_chat"] = "integration_chat"
    action: Literal["add", "remove"] = "add"
    tags: List[str] = Field(default_factory=list)


class StopConfig(CamelModel):
    kind: Literal["stop"] = "stop"


NodeConfig = Annotated[
    Union[
        TriggerConfig, TextConfig, MediaConfig, AIConfig, ConditionConfig, DelayConfig,
        HttpRequestConfig, CrmActionConfig, ChatTagConfig, StopConfig,
    ],
    Field(discriminator="kind"),
]


# --- Graph ---

class FlowNode(CamelModel):
    id: str
    kind: Literal[NODE_KINDS]
    label: Optional[str] = None
    config: NodeConfig

    @model_validator(mode="before")
    @classmethod
    def _inject_kind(cls, data):
        """Aceita {id, kind, config} e o formato React Flow {id, type, data: {config, label}}."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        node_data = data.get("data") if isinstance(data.get("data"), dict) else {}
        kind = data.get("kind") or data.get("type")
        kind = KIND_ALIASES.get(kind, kind)
        config = data.get("config")
        if config is None:
            config = node_data.get("config") or {}
        config = dict(config)
        config["kind"] = kind
        data["kind"] = kind
        data["config"] = config
        if not data.get("label") and node_data.get("label"):
            data["label"] = node_data["label"]
        return data


class FlowEdge(CamelModel):
    id: str
    source: str
    target: str
    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_fields(cls, data):
        return _rename_legacy(data, {"sourceNodeId": "source", "targetNodeId": "target", "sourceHandle": "label"})


class FlowGraphSchema(CamelModel):
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)


# --- Campaign Schemas ---

class CampaignBase(BaseModel):
    name: str = Field(..., description="Nome de identificação da campanha", example="Campanha Black Friday")
    description: Optional[str] = Field(None, description="Descrição opcional para uso interno")


class CampaignCreate(CampaignBase):
    graph: Dict[str, Any] = Field(default_factory=lambda: {"nodes": [], "edges": []}, description="Grafo do Flow Builder")


class CampaignUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    graph: Optional[Dict[str, Any]] = None


class CampaignComplete(BaseModel):
    force: bool = Field(False, description="Força a conclusão das sessões ativas em vez de drenar")


class Campaign(CampaignBase):
    id: int
    status: str
    graph: Dict[str, Any] = Field(default_factory=dict)
    schedule_type: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    target_filter: Optional[Dict[str, Any]] = None
    channel_selection: Optional[List[str]] = None
    last_scheduling_error: Optional[str] = None
    force_completed: bool = False
    published_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# --- Contact Schemas ---

class ContactCreate(BaseModel):
    name: Optional[str] = None
    phone: str = Field(..., description="Número no formato internacional sem +", example="5511999999999")
    email: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    channel_id: Optional[str] = None
    crm_lead_id: Optional[str] = None


class Contact(ContactCreate):
    id: int

    class Config:
        from_attributes = True


# --- Replies / Webhooks ---

class IncomingReply(BaseModel):
    phone: str = Field(..., description="Telefone do contato que respondeu")
    text: str = Field(..., description="Texto da resposta")


class HttpTestRequest(BaseModel):
    url: str
    method: str = "GET"
    headers: Optional[Dict[str, Any]] = None
    body: Optional[Any] = None
    timeout: int = Field(30, ge=1, le=60)


# --- Reports ---

class ReportStats(CamelModel):
    total: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    expired: int = 0
    completion_rate: float = 0.0


class SessionReport(CamelModel):
    session_id: int
    contact_id: int
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    status: str
    current_node_id: Optional[str] = None
    failure_reason: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    visited_nodes: Dict[str, Any] = Field(default_factory=dict)


class ReportNode(CamelModel):
    id: str
    kind: str
    label: str
    reached: int = 0
    sent: int = 0
    drop_off: float = 0.0  # % das sessões do nó anterior que não chegaram aqui


class CampaignReport(CamelModel):
    campaign: Campaign
    stats: ReportStats
    sessions: List[SessionReport]
    flow_nodes: List[ReportNode] = Field(default_factory=list)
