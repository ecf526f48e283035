import os
from dataclasses import dataclass


def _int_env(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def _float_env(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class EngineSettings:
    """
    Parâmetros do motor lidos do ambiente.

    max_session_steps faz parte do contrato público: uma sessão que executa
    mais nós do que isso termina em FAILED("max steps exceeded").
    """
    max_session_steps: int = 500
    session_ttl_hours: int = 72
    claim_lease_seconds: int = 300
    ai_max_retries: int = 3
    ai_retry_base_delay: float = 1.0
    dispatch_concurrency: int = 20
    dispatch_batch_size: int = 200
    scheduler_interval_seconds: float = 2.0
    campaign_timezone: str = "America/Sao_Paulo"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            max_session_steps=_int_env("MAX_SESSION_STEPS", 500),
            session_ttl_hours=_int_env("SESSION_TTL_HOURS", 72),
            claim_lease_seconds=_int_env("CLAIM_LEASE_SECONDS", 300),
            ai_max_retries=_int_env("AI_MAX_RETRIES", 3),
            ai_retry_base_delay=_float_env("AI_RETRY_BASE_DELAY", 1.0),
            dispatch_concurrency=_int_env("DISPATCH_CONCURRENCY", 20),
            dispatch_batch_size=_int_env("DISPATCH_BATCH_SIZE", 200),
            scheduler_interval_seconds=_float_env("SCHEDULER_INTERVAL_SECONDS", 2.0),
            campaign_timezone=os.getenv("CAMPAIGN_TIMEZONE", "America/Sao_Paulo"),
        )


engine_settings = EngineSettings.from_env()
