import logging

import stripe
from fastapi import Depends, FastAPI, Header, HTTPException, Request

from storefront import checkout
from storefront.config import LOG_LEVEL
from storefront.database import Base, engine, get_db
from storefront.errors import register_exception_handlers
from storefront.routes import router
from storefront.stripe_service import construct_event

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront Checkout API")

register_exception_handlers(app)
app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None), db=Depends(get_db)):
    payload = await request.body()

    try:
        event = construct_event(payload, stripe_signature)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    logger.info("Stripe event %s received", event["type"])
    checkout.reconcile_webhook_event(db, event)
    return {"ok": True}
