import json
from typing import Awaitable, Callable, Optional
from urllib.parse import quote_plus

import aio_pika
from dotenv import load_dotenv

load_dotenv()
from core.logger import setup_logger
from config_loader import get_setting

logger = setup_logger(__name__)

# Cada mensagem é {"session_id": <id>}: um worker avança a sessão até ela suspender ou terminar
SESSION_ADVANCE_QUEUE = "flow_session_advances"
# Payload cru do webhook da Meta
WHATSAPP_EVENTS_QUEUE = "whatsapp_events"
# Fanout de campaign_updated / session_updated para quem acompanha em tempo real
EVENTS_EXCHANGE = "flowengine_events"

DURABLE_QUEUES = (SESSION_ADVANCE_QUEUE, WHATSAPP_EVENTS_QUEUE)


def build_dsn() -> str:
    """DSN a partir das configurações (banco primeiro, depois env). Porta 5671 usa AMQPS."""
    host = get_setting("RABBITMQ_HOST", "localhost")
    port = int(get_setting("RABBITMQ_PORT", "5672"))
    user = get_setting("RABBITMQ_USER", "guest")
    password = get_setting("RABBITMQ_PASSWORD", "guest")
    vhost = get_setting("RABBITMQ_VHOST", "/")
    scheme = "amqps" if port == 5671 else "amqp"
    return f"{scheme}://{user}:{quote_plus(password)}@{host}:{port}/{quote_plus(vhost)}"


class RabbitMQClient:
    def __init__(self):
        self.connection = None
        self.channel = None
        self.events_exchange = None

    @property
    def is_connected(self) -> bool:
        return bool(self.connection and not self.connection.is_closed and self.channel)

    async def connect(self):
        """Conecta e declara filas e exchange. Falha só é logada: sem broker o scheduler despacha em processo."""
        if self.is_connected:
            return

        dsn = build_dsn()
        try:
            logger.info(f"🐇 Conectando ao RabbitMQ em {dsn.rsplit('@', 1)[-1]}...")
            self.connection = await aio_pika.connect_robust(dsn)
            self.channel = await self.connection.channel()
            for queue_name in DURABLE_QUEUES:
                await self.channel.declare_queue(queue_name, durable=True)
            self.events_exchange = await self.channel.declare_exchange(EVENTS_EXCHANGE, aio_pika.ExchangeType.FANOUT)
            logger.info("✅ RabbitMQ conectado")
        except Exception as e:
            logger.error(f"❌ Erro ao conectar no RabbitMQ: {e}")
            self.connection = None
            self.channel = None
            self.events_exchange = None

    async def _ready(self) -> bool:
        if not self.is_connected:
            await self.connect()
        return self.channel is not None

    async def publish(self, queue_name: str, message: dict) -> bool:
        """Publica mensagem persistente na fila. False quando o broker não está disponível."""
        if not await self._ready():
            return False
        try:
            await self.channel.default_exchange.publish(
                aio_pika.Message(
                    body=json.dumps(message).encode(),
                    content_type="application/json",
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT
                ),
                routing_key=queue_name
            )
            logger.debug(f"📤 {queue_name} <- {message}")
            return True
        except Exception as e:
            logger.error(f"❌ Erro ao publicar na fila {queue_name}: {e}")
            return False

    async def publish_session_advance(self, session_id: int) -> bool:
        return await self.publish(SESSION_ADVANCE_QUEUE, {"session_id": session_id})

    async def publish_event(self, event_type: str, data: dict) -> bool:
        """Evento para todos os ouvintes (fanout): campaign_updated, session_updated."""
        if not await self._ready():
            return False
        try:
            await self.events_exchange.publish(
                aio_pika.Message(body=json.dumps({"event": event_type, "data": data}, default=str).encode()),
                routing_key=""
            )
            return True
        except Exception as e:
            logger.error(f"❌ Erro ao publicar evento {event_type}: {e}")
            return False

    async def consume(self, queue_name: str, callback: Callable[[dict], Awaitable[Optional[object]]],
                      prefetch_count: int = 1) -> bool:
        """
        Consome a fila com no máximo prefetch_count mensagens em processamento.
        A mensagem é confirmada mesmo se o callback falhar: a sessão continua
        elegível e o scheduler a publica de novo quando o lease expirar.
        """
        if not await self._ready():
            logger.error(f"❌ Sem RabbitMQ: consumidor de {queue_name} não iniciado")
            return False

        await self.channel.set_qos(prefetch_count=prefetch_count)
        queue = await self.channel.declare_queue(queue_name, durable=True)

        async def on_message(message: aio_pika.IncomingMessage):
            async with message.process():
                try:
                    await callback(json.loads(message.body.decode()))
                except Exception as e:
                    logger.error(f"❌ Erro processando mensagem de {queue_name}: {e}")

        await queue.consume(on_message)
        logger.info(f"👂 Consumindo {queue_name} (prefetch: {prefetch_count})")
        return True

    async def close(self):
        if self.connection:
            await self.connection.close()
        self.connection = None
        self.channel = None
        self.events_exchange = None


rabbitmq = RabbitMQClient()
