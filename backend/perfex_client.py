import httpx
from core.errors import NodeExecutionError
from core.logger import setup_logger
from config_loader import get_settings, missing_settings

logger = setup_logger("PerfexClient")

# Ação do nó -> campos do lead no Perfex (módulo REST API)
ACTION_FIELDS = {
    "update_status": lambda value: {"status": value},
    "update_source": lambda value: {"source": value},
    "assign_to": lambda value: {"assigned": value},
    "mark_lost": lambda value: {"lost": 1},
    "mark_junk": lambda value: {"junk": 1},
}


class PerfexClient:
    def __init__(self, client_id: int = None, transport: httpx.AsyncBaseTransport = None):
        self.client_id = client_id
        self.settings = get_settings(client_id)
        self.api_url = self.settings["PERFEX_API_URL"].rstrip("/")
        self.api_token = self.settings["PERFEX_API_TOKEN"]
        self.headers = {"authtoken": self.api_token}
        self.transport = transport

    async def find_lead_id(self, client: httpx.AsyncClient, phone: str):
        clean_phone = "".join(filter(str.isdigit, phone or ""))
        if not clean_phone:
            return None
        response = await client.get(f"{self.api_url}/api/leads/search/{clean_phone}", headers=self.headers)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        results = response.json()
        if isinstance(results, list) and results:
            return str(results[0].get("id"))
        return None

    async def apply(self, contact, action: str, value):
        """Aplica a ação ao lead do contato. Reaplicar o mesmo valor não tem efeito adicional."""
        missing = missing_settings(self.settings, "PERFEX_API_URL", "PERFEX_API_TOKEN")
        if missing:
            raise NodeExecutionError(f"Perfex CRM não configurado ({', '.join(missing)})")
        if action not in ACTION_FIELDS:
            raise NodeExecutionError(f"Ação de CRM desconhecida: {action}")
        if action in ("update_status", "update_source", "assign_to") and not value:
            raise NodeExecutionError(f"Ação {action} sem valor configurado")

        fields = ACTION_FIELDS[action](value)
        async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
            lead_id = contact.crm_lead_id or await self.find_lead_id(client, contact.phone)
            if not lead_id:
                raise NodeExecutionError(f"Lead não encontrado no Perfex para {contact.phone}")

            response = await client.put(f"{self.api_url}/api/leads/{lead_id}", data=fields, headers=self.headers)
            if response.status_code >= 400:
                logger.error(f"❌ Perfex recusou {action} no lead {lead_id}: {response.status_code} {response.text}")
                raise NodeExecutionError(f"Perfex respondeu {response.status_code} ao aplicar {action}")

        logger.info(f"🔧 Perfex: {action} aplicado ao lead {lead_id} ({fields})")
