import os
from typing import Dict, Iterable, List

from sqlalchemy.exc import SQLAlchemyError

from core.logger import setup_logger
from database import SessionLocal
from models import AppConfig

logger = setup_logger("ConfigLoader")

# Chaves por integração. Valor do tenant (AppConfig) > variável de ambiente > padrão.
SETTING_GROUPS = {
    "whatsapp": ["WA_ACCESS_TOKEN", "WA_API_VERSION", "WA_PHONE_NUMBER_ID"],
    "ai": ["OPENAI_API_KEY", "OPENAI_MODEL", "GROQ_API_KEY", "GROQ_MODEL"],
    "chatwoot": ["CHATWOOT_API_URL", "CHATWOOT_API_TOKEN", "CHATWOOT_ACCOUNT_ID"],
    "perfex": ["PERFEX_API_URL", "PERFEX_API_TOKEN"],
    "storage": ["S3_ENDPOINT_URL", "S3_ACCESS_KEY", "S3_SECRET_KEY", "S3_BUCKET_NAME", "S3_PUBLIC_URL", "S3_REGION"],
    "rabbitmq": ["RABBITMQ_HOST", "RABBITMQ_PORT", "RABBITMQ_USER", "RABBITMQ_PASSWORD", "RABBITMQ_VHOST",
                 "RABBITMQ_PREFETCH_COUNT"],
}
SETTING_KEYS = [key for keys in SETTING_GROUPS.values() for key in keys]


def _from_env(keys: Iterable[str]) -> Dict[str, str]:
    return {key: os.getenv(key, "") for key in keys}


def get_settings(client_id: int = None) -> Dict[str, str]:
    """
    Configurações do tenant numa única consulta. Chave ausente ou vazia no banco
    cai para a variável de ambiente. Sem client_id só o ambiente é usado.
    """
    settings = _from_env(SETTING_KEYS)
    if not client_id:
        return settings

    db = SessionLocal()
    try:
        rows = db.query(AppConfig).filter(AppConfig.client_id == client_id).all()
    except SQLAlchemyError as e:
        logger.error(f"❌ Erro ao carregar configurações do cliente {client_id}: {e}")
        return settings
    finally:
        db.close()

    for row in rows:
        if row.key in settings and row.value:
            settings[row.key] = row.value
    logger.debug(f"{len(rows)} configuração(ões) no banco para client_id={client_id}")
    return settings


def get_setting(key: str, default: str = "", client_id: int = None) -> str:
    """Uma única configuração, opcionalmente por client_id"""
    return get_settings(client_id).get(key) or default


def missing_settings(settings: Dict[str, str], *keys: str) -> List[str]:
    """Chaves obrigatórias sem valor, para mensagens de erro de integração."""
    return [key for key in keys if not settings.get(key)]
