from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from dotenv import load_dotenv
load_dotenv()
import asyncio
import os
import sentry_sdk

from database import engine
import models
from routers import campaigns, contacts, replies, health
from services.scheduler import scheduler_task
from rabbitmq_client import SESSION_ADVANCE_QUEUE, WHATSAPP_EVENTS_QUEUE, rabbitmq
from core.logger import logger

models.Base.metadata.create_all(bind=engine)

API_DESCRIPTION = """
## 🚀 FlowEngine API

Motor de campanhas interativas de WhatsApp desenhadas como fluxo.

### Funcionalidades
* **Campanhas:** rascunho, publicação, agendamento, pausa e conclusão.
* **Fluxos:** mensagens, mídia, IA, condições, esperas, requisições HTTP e integrações.
* **Respostas:** webhook da Meta acorda as sessões que aguardam o contato.
* **Relatórios:** status por sessão e funil por nó.

### Tenant
Envie o header `X-Client-ID` em todas as chamadas.
"""

ROUTERS = [
    (campaigns.router, "Campaigns"),
    (contacts.router, "Contacts"),
    (replies.router, "Replies"),
    (health.router, "Health"),
]

# Fila -> prefetch dos consumidores internos
CONSUMER_PREFETCH = {
    SESSION_ADVANCE_QUEUE: int(os.getenv("RABBITMQ_PREFETCH_COUNT", 5)),
    WHATSAPP_EVENTS_QUEUE: 20,
}


def cors_origins():
    origins = ["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000", "http://localhost:8000"]
    extra = os.getenv("CORS_ORIGINS", "")
    origins.extend(origin.strip() for origin in extra.split(",") if origin.strip())
    return origins


if os.getenv("SENTRY_DSN"):
    sentry_sdk.init(
        dsn=os.getenv("SENTRY_DSN"),
        environment=os.getenv("SENTRY_ENVIRONMENT", "production"),
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "1.0")),
    )

app = FastAPI(title="FlowEngine API - Campanhas Interativas", description=API_DESCRIPTION, version="1.0.0")

# Mídia local (storage sem S3 devolve URLs /static/uploads)
os.makedirs("static/uploads", exist_ok=True)
app.mount("/static", StaticFiles(directory="static"), name="static")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for router, tag in ROUTERS:
    app.include_router(router, prefix="/api", tags=[tag])


@app.middleware("http")
async def log_requests(request: Request, call_next):
    if not request.url.path.startswith(("/static", "/docs", "/openapi.json", "/favicon.ico")):
        client_id = request.headers.get("X-Client-ID", "-")
        logger.info(f"🔍 [REQUEST] {request.method} {request.url.path} (cliente {client_id})")
    return await call_next(request)


@app.on_event("startup")
async def startup_event():
    logger.info("🚀 Iniciando FlowEngine API...")

    # Ativa campanhas, inscreve contatos e publica as sessões prontas
    asyncio.create_task(scheduler_task())

    # Sem container de worker separado, a própria API consome as filas
    try:
        from worker import handle_session_advance, handle_whatsapp_event
        handlers = {SESSION_ADVANCE_QUEUE: handle_session_advance, WHATSAPP_EVENTS_QUEUE: handle_whatsapp_event}
        await rabbitmq.connect()
        for queue_name, handler in handlers.items():
            await rabbitmq.consume(queue_name, handler, prefetch_count=CONSUMER_PREFETCH[queue_name])
    except Exception as e:
        logger.error(f"❌ Falha ao iniciar consumidores internos: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    await rabbitmq.close()


@app.get("/")
async def read_root():
    return {"message": "FlowEngine API", "docs": "/docs", "status": "online"}
