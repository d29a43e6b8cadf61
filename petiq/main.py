import logging
from uuid import uuid4

import stripe
from fastapi import FastAPI, Request, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from petiq import config
from petiq.routes import router, admin_router
from petiq.database import Base, engine, SessionLocal
from petiq.errors import register_error_handlers
from petiq.gateway import FAILED, PROCESSING, SUCCEEDED
from petiq.logging import configure_logging, request_id_ctx
from petiq.mirror import best_effort, upsert_transaction
from petiq.stripe_service import outcome_from_stripe

configure_logging()
logger = logging.getLogger(__name__)
logger.info("startup config=%s", config.safe_config())

app = FastAPI(title="PetIQ.LK Checkout Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)

app.include_router(router, prefix="/api")
app.include_router(admin_router, prefix="/api")

Base.metadata.create_all(bind=engine)

LEDGER_EVENTS = {
    "payment_intent.succeeded": SUCCEEDED,
    "payment_intent.processing": PROCESSING,
    "payment_intent.payment_failed": FAILED,
}


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id_ctx.set(request.headers.get("x-request-id") or uuid4().hex)
    response = await call_next(request)
    response.headers["x-request-id"] = request_id_ctx.get()
    return response


@app.get("/")
def root():
    return {"ok": True, "gateway": "stripe" if config.stripe_configured() else "demo"}


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            config.STRIPE_WEBHOOK_SECRET
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    if event["type"] not in LEDGER_EVENTS:
        return {"ok": True}

    outcome = outcome_from_stripe(event["data"]["object"])
    outcome.status = LEDGER_EVENTS[event["type"]]

    db = SessionLocal()
    try:
        row = best_effort(db, "webhook upsert tx", upsert_transaction, outcome)
    finally:
        db.close()
    logger.info("webhook %s ledgered %s: %s", event["type"], outcome.id, bool(row))
    return {"ok": True}
