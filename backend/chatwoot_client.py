import httpx
from core.errors import NodeExecutionError
from core.logger import setup_logger
from config_loader import get_settings, missing_settings

logger = setup_logger("ChatwootClient")


class ChatwootClient:
    def __init__(self, account_id: str = None, client_id: int = None, transport: httpx.AsyncBaseTransport = None):
        self.client_id = client_id
        self.settings = get_settings(client_id)
        self.account_id = account_id or self.settings["CHATWOOT_ACCOUNT_ID"] or "1"
        self.api_url = (self.settings["CHATWOOT_API_URL"] or "https://app.chatwoot.com/api/v1").rstrip("/")
        self.api_token = self.settings["CHATWOOT_API_TOKEN"]

        self.base_url = f"{self.api_url}/accounts/{self.account_id}"
        self.headers = {
            "api_access_token": self.api_token,
            "Content-Type": "application/json"
        }
        self.transport = transport

    async def search_contact(self, client: httpx.AsyncClient, phone: str):
        """Busca o contato pelo telefone (com e sem +, e pelos 8 últimos dígitos)."""
        clean_phone = "".join(filter(str.isdigit, phone or ""))
        search_queries = [clean_phone, f"+{clean_phone}"]
        if len(clean_phone) >= 8:
            search_queries.append(clean_phone[-8:])

        for q in search_queries:
            response = await client.get(f"{self.base_url}/contacts/search", headers=self.headers, params={"q": q})
            response.raise_for_status()
            payload = response.json().get("payload") or []
            if payload:
                return payload[0]["id"]
        return None

    async def get_contact_labels(self, client: httpx.AsyncClient, contact_id: int) -> list:
        response = await client.get(f"{self.base_url}/contacts/{contact_id}/labels", headers=self.headers)
        response.raise_for_status()
        return response.json().get("payload") or []

    async def set_contact_labels(self, client: httpx.AsyncClient, contact_id: int, labels: list):
        # A API substitui a lista inteira de labels do contato
        response = await client.post(
            f"{self.base_url}/contacts/{contact_id}/labels",
            json={"labels": labels},
            headers=self.headers
        )
        response.raise_for_status()
        return response.json()

    async def apply(self, contact, action: str, tags: list):
        """Adiciona ou remove labels do contato (operação de conjunto, idempotente)."""
        missing = missing_settings(self.settings, "CHATWOOT_API_TOKEN")
        if missing:
            raise NodeExecutionError(f"Chatwoot não configurado ({', '.join(missing)})")

        wanted = [t.strip() for t in tags if t and t.strip()]
        async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
            try:
                chatwoot_contact_id = await self.search_contact(client, contact.phone)
                if not chatwoot_contact_id:
                    raise NodeExecutionError(f"Contato {contact.phone} não encontrado no Chatwoot")

                current = await self.get_contact_labels(client, chatwoot_contact_id)
                if action == "add":
                    updated = current + [t for t in wanted if t not in current]
                elif action == "remove":
                    updated = [t for t in current if t not in wanted]
                else:
                    raise NodeExecutionError(f"Ação de tag desconhecida: {action}")

                if updated == current:
                    logger.info(f"🏷️ Labels de {contact.phone} já estão atualizadas ({action} {wanted})")
                    return

                await self.set_contact_labels(client, chatwoot_contact_id, updated)
                logger.info(f"🏷️ Labels de {contact.phone}: {current} -> {updated}")
            except httpx.HTTPError as e:
                logger.error(f"Error updating Chatwoot labels: {e}")
                raise NodeExecutionError(f"Falha ao atualizar labels no Chatwoot: {e}") from e
