from openai import AsyncOpenAI
from core.errors import NodeExecutionError
from core.logger import setup_logger
from config_loader import get_settings, missing_settings

logger = setup_logger("AIClient")

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

PROVIDERS = {
    # provider: (chave da API, chave do modelo, modelo padrão, base_url)
    "openai": ("OPENAI_API_KEY", "OPENAI_MODEL", "gpt-4o-mini", None),
    "groq": ("GROQ_API_KEY", "GROQ_MODEL", "llama-3.1-8b-instant", GROQ_BASE_URL),
}


class AIClient:
    """Geração de respostas via OpenAI ou Groq (API compatível com OpenAI)."""

    def __init__(self, client_id: int = None):
        self.client_id = client_id
        self.settings = get_settings(client_id)

    def get_openai_client(self, provider: str):
        if provider not in PROVIDERS:
            raise NodeExecutionError(f"Provedor de IA desconhecido: {provider}")
        key_name, model_key, default_model, base_url = PROVIDERS[provider]
        if missing_settings(self.settings, key_name):
            raise NodeExecutionError(f"{key_name} não configurada")
        model = self.settings[model_key] or default_model
        return AsyncOpenAI(api_key=self.settings[key_name], base_url=base_url), model

    async def complete(self, system_prompt: str, user_prompt: str, provider: str = "openai") -> str:
        client, model = self.get_openai_client(provider)

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        logger.info(f"🤖 Gerando resposta com {provider} ({model})")
        completion = await client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=0.7,
        )
        text = (completion.choices[0].message.content or "").strip()
        if not text:
            raise ValueError("Resposta vazia do modelo")
        return text
