import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from reservation_service import carts, reclaimer, settlement
from reservation_service.config import Settings, get_settings
from reservation_service.database import configure, dispose, init_db
from reservation_service.errors import InvalidTransition, OrderNotFound, StorageUnavailable
from reservation_service.messaging import close_rabbitmq, setup_rabbitmq
from reservation_service.schemas import (
    AddItemRequest,
    OrderRead,
    OrderStatusUpdate,
    Outcome,
    ReclaimReport,
    Result,
    SettleRequest,
    UpdateQuantityRequest,
)

logger = logging.getLogger(__name__)

OUTCOME_STATUS = {
    Outcome.OK: 200,
    Outcome.OUT_OF_STOCK: 409,
    Outcome.ALREADY_SETTLED: 409,
    Outcome.CART_EXPIRED_OR_MISSING: 410,
    Outcome.TRANSIENT_CONTENTION: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    configure()
    await init_db()
    await setup_rabbitmq()
    logger.info("Reservation Service started")
    yield
    await close_rabbitmq()
    await dispose()
    logger.info("Reservation Service shutting down...")


app = FastAPI(title="Reservation Service", lifespan=lifespan)


def respond(result: Result, success_status: int = 200) -> JSONResponse:
    status_code = success_status if result.ok else OUTCOME_STATUS[result.outcome]
    headers = {"Retry-After": "1"} if result.outcome is Outcome.TRANSIENT_CONTENTION else None
    return JSONResponse(status_code=status_code, content=jsonable_encoder(result), headers=headers)


@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    logger.error("Storage unavailable while serving %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health", tags=["health"])
async def health():
    return {"status": "healthy"}


@app.get("/api/carts/{cart_id}")
async def get_cart(cart_id: str):
    return respond(await carts.get_cart(cart_id))


@app.post("/api/carts/{cart_id}/items")
async def add_item(cart_id: str, body: AddItemRequest):
    result = await carts.add_item(cart_id, body.sku_id, body.quantity, owner_id=body.owner_id)
    return respond(result, success_status=201)


@app.patch("/api/carts/{cart_id}/items/{sku_id}")
async def update_quantity(cart_id: str, sku_id: str, body: UpdateQuantityRequest):
    return respond(await carts.update_quantity(cart_id, sku_id, body.quantity))


@app.delete("/api/carts/{cart_id}/items/{sku_id}")
async def remove_item(cart_id: str, sku_id: str):
    return respond(await carts.remove_item(cart_id, sku_id))


@app.post("/api/checkout/settle")
async def settle(body: SettleRequest):
    return respond(await settlement.settle(body.cart_id, body.payment_reference))


@app.get("/api/orders", response_model=OrderRead)
async def find_order_by_payment(payment_reference: str):
    order = await settlement.get_order_by_payment(payment_reference)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.get("/api/orders/{order_id}", response_model=OrderRead)
async def get_order(order_id: str):
    try:
        return await settlement.get_order(order_id)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")


@app.put("/api/orders/{order_id}/status", response_model=OrderRead)
async def update_order_status(order_id: str, body: OrderStatusUpdate):
    try:
        return await settlement.transition_order(order_id, body.status)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@app.post("/api/cron/cleanup-carts", response_model=ReclaimReport)
async def cleanup_carts(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
):
    if not settings.cron_secret or authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    return await reclaimer.reclaim_expired()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
