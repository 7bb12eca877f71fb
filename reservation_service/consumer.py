import asyncio
import json
import logging
from uuid import uuid4

import aio_pika
from tenacity import retry, retry_if_result, stop_after_attempt, wait_exponential

from reservation_service.config import get_settings
from reservation_service.database import configure, init_db
from reservation_service.errors import TransientContention
from reservation_service.messaging import close_rabbitmq, publish_event, setup_rabbitmq
from reservation_service.models import utcnow
from reservation_service.schemas import Outcome, Result
from reservation_service.settlement import settle

logger = logging.getLogger(__name__)


def _is_transient(result: Result) -> bool:
    return result.outcome is Outcome.TRANSIENT_CONTENTION


@retry(
    retry=retry_if_result(_is_transient),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=5),
    retry_error_callback=lambda state: state.outcome.result(),
)
async def settle_with_retry(cart_id: str, payment_reference: str) -> Result:
    return await settle(cart_id, payment_reference)


async def process_payment_processed(message: aio_pika.IncomingMessage):
    # Fatal errors propagate so the message is requeued rather than lost.
    async with message.process(requeue=True):
        try:
            event_data = json.loads(message.body.decode())
            cart_id = event_data["cart_id"]
            payment_reference = event_data["payment_reference"]
        except (ValueError, KeyError) as e:
            logger.error("Discarding malformed PaymentProcessed event: %s", e)
            return

        logger.info("Received PaymentProcessed for cart %s (%s)", cart_id, payment_reference)
        result = await settle_with_retry(cart_id, payment_reference)

        if result.outcome is Outcome.OK:
            return
        if result.outcome is Outcome.TRANSIENT_CONTENTION:
            raise TransientContention(result.detail or "settlement kept hitting contention")

        # Paid, but the cart is gone: the payment side decides between refund and support.
        event_to_publish = {
            "event_id": str(uuid4()),
            "event_type": "SettlementRejected",
            "timestamp": utcnow().isoformat(),
            "cart_id": cart_id,
            "payment_reference": payment_reference,
            "reason": result.outcome.value,
        }
        await publish_event("reservation_exchange", "settlement.rejected", event_to_publish)


async def start_consumer():
    connection = await aio_pika.connect_robust(get_settings().rabbitmq_url)
    async with connection:
        channel = await connection.channel()
        await channel.set_qos(prefetch_count=10)

        payment_exchange = await channel.declare_exchange(
            "payment_exchange", aio_pika.ExchangeType.TOPIC, durable=True
        )
        await channel.declare_exchange("reservation_exchange", aio_pika.ExchangeType.TOPIC, durable=True)

        queue = await channel.declare_queue("reservation_q", durable=True)
        await queue.bind(payment_exchange, "payment.processed")

        logger.info("Reservation Service is listening for payment events...")
        await queue.consume(process_payment_processed, no_ack=False)

        # Keep the main task running
        await asyncio.Future()


async def main():
    logging.basicConfig(level=get_settings().log_level)
    configure()
    await init_db()
    await setup_rabbitmq()
    try:
        await start_consumer()
    finally:
        await close_rabbitmq()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Reservation consumer stopped.")
