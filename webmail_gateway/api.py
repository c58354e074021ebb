import asyncio
import hmac
import logging
import os
import smtplib
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import unquote

import imapclient
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from pydantic import BaseModel

from webmail_gateway.config import load_config, GatewayConfig
from webmail_gateway.exceptions import MessageNotFound, OperationCancelled
from webmail_gateway.models import OutgoingMessage
from webmail_gateway.service import MailService
from webmail_gateway.threads import thread_key

logger = logging.getLogger(__name__)

CONFIG_PATH = os.environ.get("GATEWAY_CONFIG")


class GatewayState:
    def __init__(self):
        self.config: Optional[GatewayConfig] = None
        self.service: Optional[MailService] = None


state = GatewayState()


# Request models
class SendMailRequest(BaseModel):
    to: list[str]
    subject: str
    text: str = ""
    html: str = ""
    cc: Optional[list[str]] = None
    bcc: Optional[list[str]] = None


class ReplyRequest(BaseModel):
    text: str = ""
    html: str = ""
    to: Optional[list[str]] = None
    subject: str = ""


class ForwardRequest(BaseModel):
    to: list[str]
    timeout_seconds: Optional[float] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting webmail gateway...")
    if state.service is None:
        try:
            state.config = load_config(CONFIG_PATH)
            state.service = MailService(state.config)
        except ValueError as e:
            logger.error(f"Gateway not configured: {e}")
    yield
    logger.info("Shutting down webmail gateway...")


app = FastAPI(title="Webmail Gateway", lifespan=lifespan)


def get_service() -> MailService:
    if state.service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Gateway not configured",
        )
    return state.service


def require_token(authorization: Optional[str] = Header(default=None)) -> None:
    token = state.config.bearer_token if state.config else None
    if not token:
        return
    expected = f"Bearer {token}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing bearer token",
        )


async def _run(operation: str, func, *args, **kwargs):
    """Run a blocking service call off the event loop and map its errors."""
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except MessageNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except OperationCancelled as e:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (
        ConnectionError,
        imapclient.IMAPClient.Error,  # type: ignore[attr-defined]
        smtplib.SMTPException,
        OSError,
    ) as e:
        logger.error(f"{operation} failed at the mail store: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"{operation} failed: {e}",
        )


def _message_payload(message) -> dict:
    data = message.to_dict()
    data["thread_id"] = thread_key(message)
    return data


@app.get("/health")
async def health():
    return {"status": "ok", "configured": state.service is not None}


@app.get("/api/mail/inbox", dependencies=[Depends(require_token)])
async def inbox(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    service: MailService = Depends(get_service),
):
    """Latest inbox messages, newest first."""
    messages = await _run("Fetch inbox", service.get_inbox, limit)
    return {"status": "ok", "messages": [_message_payload(m) for m in messages]}


@app.get("/api/mail/thread/{thread_id}", dependencies=[Depends(require_token)])
async def thread(thread_id: str, service: MailService = Depends(get_service)):
    """Reply tree for one conversation."""
    result = await _run("Fetch thread", service.get_thread, unquote(thread_id))
    return {"status": "ok", **result.to_dict()}


@app.post("/api/mail/send", dependencies=[Depends(require_token)])
async def send(req: SendMailRequest, service: MailService = Depends(get_service)):
    outgoing = OutgoingMessage(
        to=req.to,
        subject=req.subject,
        text=req.text,
        html=req.html,
        cc=req.cc or [],
        bcc=req.bcc or [],
    )
    result = await _run("Send mail", service.send_mail, outgoing)
    return {"status": "ok", **result.to_dict()}


@app.post("/api/mail/reply/{message_id}", dependencies=[Depends(require_token)])
async def reply(
    message_id: str, req: ReplyRequest, service: MailService = Depends(get_service)
):
    result = await _run(
        "Reply",
        service.reply,
        unquote(message_id),
        text=req.text,
        html=req.html,
        fallback_to=req.to,
        fallback_subject=req.subject,
    )
    return {"status": "ok", **result.to_dict()}


@app.post("/api/mail/forward/{message_id}", dependencies=[Depends(require_token)])
async def forward(
    message_id: str, req: ForwardRequest, service: MailService = Depends(get_service)
):
    token = service.cancel_token(req.timeout_seconds)
    result = await _run("Forward", service.forward, unquote(message_id), req.to, token)
    return {
        "status": "ok",
        "message": "Mail forwarded successfully",
        **result.to_dict(),
    }


def run_engine():
    import argparse

    parser = argparse.ArgumentParser(description="Webmail Gateway API")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    args = parser.parse_args()

    logger.info(f"Starting Webmail Gateway on {args.host}:{args.port}")
    config = uvicorn.Config(app, host=args.host, port=args.port, log_level="info")
    server = uvicorn.Server(config)
    server.run()
