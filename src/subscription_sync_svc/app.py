import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from subscription_sync_svc.config import get_settings
from subscription_sync_svc.models.base import init_db
from subscription_sync_svc.routers import stripe_router

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="subscription-sync-svc", lifespan=lifespan)

# Stripe webhooks are delivered to /api/stripe/webhook
app.include_router(stripe_router.router, prefix="/api/stripe")


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("subscription_sync_svc.app:app", host="0.0.0.0", port=8000, reload=False)
