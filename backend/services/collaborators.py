"""
Capacidades externas usadas pelos executores de nós.

O motor só conhece estes protocolos; as implementações padrão (WhatsApp Cloud API,
OpenAI/Groq, Perfex, Chatwoot) são montadas por build_collaborators().
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Protocol

import httpx


@dataclass
class OutboundMessage:
    kind: str  # text, image, video, audio, document
    text: Optional[str] = None
    media_url: Optional[str] = None
    caption: Optional[str] = None


class ChannelSender(Protocol):
    async def send(self, contact, channel_id: Optional[str], message: OutboundMessage) -> Any:
        ...


class AICompletion(Protocol):
    async def complete(self, system_prompt: str, user_prompt: str, provider: str = "openai") -> str:
        ...


class CRMIntegration(Protocol):
    async def apply(self, contact, action: str, value: Optional[str]) -> None:
        ...


class ChatIntegration(Protocol):
    async def apply(self, contact, action: str, tags: List[str]) -> None:
        ...


@dataclass
class Collaborators:
    sender: ChannelSender
    ai: Optional[AICompletion] = None
    crm: Optional[CRMIntegration] = None
    chat: Optional[ChatIntegration] = None
    resolve_asset: Optional[Callable[[str], Optional[str]]] = None
    http_transport: Optional[httpx.AsyncBaseTransport] = None
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)


def build_collaborators(client_id: int) -> Collaborators:
    """Implementações padrão por tenant (credenciais via config_loader)."""
    from whatsapp_client import WhatsAppClient
    from ai_client import AIClient
    from perfex_client import PerfexClient
    from chatwoot_client import ChatwootClient
    from storage import resolve_asset_url

    return Collaborators(
        sender=WhatsAppClient(client_id=client_id),
        ai=AIClient(client_id=client_id),
        crm=PerfexClient(client_id=client_id),
        chat=ChatwootClient(client_id=client_id),
        resolve_asset=lambda ref: resolve_asset_url(ref, client_id=client_id),
    )
