from fastapi import APIRouter, Header, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session
from core.deps import get_db
from core.logger import setup_logger
from config_loader import get_settings
import httpx
import psutil
from typing import Optional
from rabbitmq_client import rabbitmq

logger = setup_logger("Health")

router = APIRouter(prefix="/health", tags=["Health"])


async def check_whatsapp(wa_phone_id, wa_token, api_version="v21.0"):
    if not wa_phone_id or not wa_token:
        return "offline"
    try:
        async with httpx.AsyncClient() as client:
            res = await client.get(
                f"https://graph.facebook.com/{api_version}/{wa_phone_id}",
                params={"access_token": wa_token},
                timeout=3.0
            )
            return "online" if res.status_code == 200 else f"error ({res.status_code})"
    except httpx.HTTPError:
        return "timeout"


def check_database(db: Session):
    try:
        db.execute(text("SELECT 1"))
        return "online"
    except Exception as e:
        logger.error(f"❌ Health: banco indisponível -> {e}")
        return "error"


@router.get("/")
async def get_health_status(
    x_client_id: Optional[int] = Header(None),
    db: Session = Depends(get_db)
):
    """
    Status do banco, RabbitMQ e recursos do servidor.
    Com o header X-Client-ID também verifica a conexão WhatsApp do cliente.
    """
    rabbit_status = "online" if rabbitmq.is_connected else "offline"

    status = {
        "database": check_database(db),
        "rabbitmq": rabbit_status,
        "cpu_percent": psutil.cpu_percent(interval=None),
        "memory_percent": psutil.virtual_memory().percent,
    }

    if x_client_id:
        s = get_settings(client_id=x_client_id)
        status["whatsapp"] = await check_whatsapp(
            s.get("WA_PHONE_NUMBER_ID"), s.get("WA_ACCESS_TOKEN"), s.get("WA_API_VERSION") or "v21.0"
        )

    return status
