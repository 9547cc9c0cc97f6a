import logging
from fastapi import FastAPI, Request, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from momo_billing import config
from momo_billing.routes import router
from momo_billing.database import Base, engine, get_db
from momo_billing.errors import TransactionNotFoundError
from momo_billing.repository import Repository
from momo_billing.webhooks import WebhookReconciler
import momo_billing.models  # noqa: F401

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Mobile Money Billing Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


def reconcile_notification(db: Session, payload):
    return WebhookReconciler(Repository(db)).handle(payload)


@app.post("/webhook")
async def gateway_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Payunit notification ingress.

    200 acknowledges (processed, duplicate, or nothing to do), 404 tells the
    provider we have no such transaction yet, 500 asks it to retry.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.error("Webhook body is not valid JSON")
        return JSONResponse(status_code=500, content={"ok": False, "error": "Invalid payload"})

    try:
        outcome = await run_in_threadpool(reconcile_notification, db, payload)
    except TransactionNotFoundError:
        return JSONResponse(status_code=404, content={"ok": False, "error": "Transaction not found"})
    except Exception:
        logger.exception("Webhook processing failed")
        return JSONResponse(status_code=500, content={"ok": False, "error": "Processing failed"})

    return {"ok": True, "result": outcome.value}
