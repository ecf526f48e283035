import httpx
from core.errors import NodeExecutionError
from core.logger import setup_logger
from config_loader import get_settings, missing_settings

logger = setup_logger("WhatsAppClient")

GRAPH_API_URL = "https://graph.facebook.com"


class WhatsAppClient:
    """
    Envio direto pela WhatsApp Cloud API (Meta).
    channel_id é o phone_number_id da conexão usada pela sessão.
    """

    def __init__(self, client_id: int = None, transport: httpx.AsyncBaseTransport = None):
        self.client_id = client_id
        self.settings = get_settings(client_id)
        self.token = self.settings["WA_ACCESS_TOKEN"]
        self.api_version = self.settings["WA_API_VERSION"] or "v24.0"
        self.default_phone_id = self.settings["WA_PHONE_NUMBER_ID"]
        self.transport = transport

    def build_payload(self, phone: str, message) -> dict:
        # Remove caracteres não numéricos do telefone
        clean_phone = "".join(filter(str.isdigit, phone or ""))
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": clean_phone,
            "type": message.kind,
        }

        if message.kind == "text":
            payload["text"] = {"preview_url": False, "body": message.text or ""}
            return payload

        media = {"link": message.media_url}
        if message.caption and message.kind in ("image", "video", "document"):
            media["caption"] = message.caption
        if message.kind == "document":
            media["filename"] = message.media_url.rsplit("/", 1)[-1].split("?")[0]
        payload[message.kind] = media
        return payload

    async def send(self, contact, channel_id, message):
        phone_id = channel_id or self.default_phone_id
        missing = missing_settings(self.settings, "WA_ACCESS_TOKEN")
        if not phone_id:
            missing.append("WA_PHONE_NUMBER_ID")
        if missing:
            raise NodeExecutionError(f"Credenciais do WhatsApp não configuradas ({', '.join(missing)})")

        url = f"{GRAPH_API_URL}/{self.api_version}/{phone_id}/messages"
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json"
        }
        payload = self.build_payload(contact.phone, message)

        async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
            response = await client.post(url, json=payload, headers=headers)

        if response.status_code not in (200, 201):
            detail = response.text
            try:
                detail = response.json().get("error", {}).get("message", response.text)
            except ValueError:
                pass
            logger.error(f"❌ Envio WhatsApp falhou ({response.status_code}) para {payload['to']}: {detail}")
            raise NodeExecutionError(f"WhatsApp recusou a mensagem ({response.status_code}): {detail}")

        data = response.json()
        wamid = (data.get("messages") or [{}])[0].get("id")
        logger.info(f"✅ Mensagem {message.kind} enviada para {payload['to']} (wamid={wamid})")
        return data
