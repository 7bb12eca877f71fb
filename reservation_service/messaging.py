import json
import logging

import aio_pika

from reservation_service.config import get_settings

logger = logging.getLogger(__name__)

EXCHANGES = ("reservation_exchange",)

connection = None
channel = None


async def setup_rabbitmq():
    global connection, channel
    try:
        connection = await aio_pika.connect_robust(get_settings().rabbitmq_url)
        channel = await connection.channel()
        for exchange_name in EXCHANGES:
            await channel.declare_exchange(exchange_name, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("RabbitMQ setup complete.")
    except Exception as e:
        logger.error("Error setting up RabbitMQ: %s", e)


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


async def publish_event(exchange_name: str, routing_key: str, message_data: dict):
    """Best-effort publish. Settlement and reclamation are already committed when
    this runs, so a broker outage is logged rather than raised."""
    if not channel:
        logger.debug("RabbitMQ channel not available, dropping %s", message_data["event_type"])
        return

    message_body = json.dumps(message_data, default=str).encode("utf-8")
    message = aio_pika.Message(
        message_body,
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )

    try:
        exchange = await channel.get_exchange(exchange_name)
        await exchange.publish(message, routing_key=routing_key)
        logger.info("Published event to %s: %s", routing_key, message_data["event_type"])
    except Exception as e:
        logger.error("Error publishing event %s: %s", message_data["event_type"], e)
