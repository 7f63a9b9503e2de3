import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .controller import SessionController
from .db import Database, get_db, setting, setting_flag
from .events import Event, ImageArrived, TextMessage
from .green_api import GreenAPIClient
from .ledger import KnownChats
from .logs import configure_logging, json_log
from .pdf_packer import PDFComposer
from .session import SessionStore
from .storage import Storage

APP_TITLE = "GreenAPI ID Card→PDF Relay"
VERSION = "1.0.0"

configure_logging()

app = FastAPI(title=APP_TITLE, version=VERSION)

storage = Storage(base=Path(os.getenv("STORAGE_DIR", "storage")))

workers: List[asyncio.Task] = []
inflight: Set[asyncio.Task] = set()
_controller: Optional[SessionController] = None


async def fetch_media(url: str, target: Path) -> Path:
    async with httpx.AsyncClient(timeout=60, follow_redirects=True) as http_client:
        return await storage.download_media(http_client, url, target)


def get_controller() -> SessionController:
    global _controller
    if _controller is None:
        db = Database()
        db.init()
        ledger = KnownChats(storage.base / "known_chats.json")
        ledger.load()
        retention = int(setting("PDF_RETENTION_SECONDS", "10800", db=db))
        _controller = SessionController(
            store=SessionStore(storage),
            client=GreenAPIClient.from_env(db),
            composer=PDFComposer(storage, stamp_labels=setting_flag("STAMP_LABELS", False, db=db)),
            fetcher=fetch_media,
            ledger=ledger,
            operator_id=setting("ADMIN_CHAT_ID", "", db=db) or None,
            pdf_retention_seconds=retention if retention > 0 else None,
        )
    return _controller


@app.on_event("startup")
async def on_startup():
    storage.ensure_layout()
    controller = get_controller()
    json_log("startup", version=VERSION, known_chats=len(controller.ledger))

    if setting_flag("POLL_NOTIFICATIONS", True):
        # Launch Green API notification poller (for setups without webhooks)
        workers.append(asyncio.create_task(notification_poller()))


@app.on_event("shutdown")
async def on_shutdown():
    json_log("shutdown")
    for w in workers:
        w.cancel()
    await asyncio.gather(*workers, return_exceptions=True)


WINDOW_SECONDS = int(os.getenv("WINDOW_SECONDS", "180"))


def _extract_event_time(payload: Dict[str, Any]) -> Optional[datetime]:
    ts = payload.get("timestamp") or (payload.get("messageData") or {}).get("timestamp")
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _extract_text_from_payload(payload: Dict[str, Any]) -> Optional[str]:
    """
    Human text from the common Green-API shapes:
      - textMessageData.textMessage (typeMessage == textMessage)
      - extendedTextMessageData.text (typeMessage == extendedTextMessage)
    """
    md = payload.get("messageData") or {}
    t = (md.get("typeMessage") or "").lower()

    if t == "textmessage":
        tmd = md.get("textMessageData") or {}
        if tmd.get("textMessage"):
            return tmd.get("textMessage")

    if t == "extendedtextmessage":
        etd = md.get("extendedTextMessageData") or {}
        for k in ("text", "description", "title"):
            v = etd.get(k)
            if isinstance(v, str) and v.strip():
                return v
    return None


def _extract_media(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    md = payload.get("messageData") or {}
    for k in ("imageMessageData", "fileMessageData", "documentMessageData"):
        m = md.get(k)
        if isinstance(m, dict) and (m.get("downloadUrl") or m.get("url")):
            return m
    return None


def payload_to_event(payload: Dict[str, Any]) -> Optional[Event]:
    sender_data = payload.get("senderData") or {}
    message_data = payload.get("messageData") or {}
    chat_id = sender_data.get("chatId") or payload.get("chatId") or message_data.get("chatId")
    if not chat_id:
        return None
    sender_id = sender_data.get("sender") or chat_id

    media = _extract_media(payload)
    if media is not None:
        return ImageArrived(
            chat_id=chat_id,
            download_url=media.get("downloadUrl") or media.get("url") or "",
            caption=media.get("caption"),
            file_name=media.get("fileName"),
            mime_type=media.get("mimeType") or media.get("mimetype"),
            sender_id=sender_id,
        )

    text = _extract_text_from_payload(payload)
    if text:
        return TextMessage(chat_id=chat_id, text=text, sender_id=sender_id)
    return None


async def handle_incoming_payload(payload: Dict[str, Any], db: Database) -> Dict[str, Any]:
    webhook_type = payload.get("typeWebhook")
    if not webhook_type:
        json_log("webhook_ignored", reason="missing_typeWebhook")
        return {"ok": True, "ignored": True}
    # Only process incoming messages; ignore outgoing echoes to avoid replying to ourselves
    if str(webhook_type).lower() != "incomingmessagereceived":
        json_log("webhook_ignored", reason="not_incoming", type=str(webhook_type))
        return {"ok": True, "ignored": True}

    msg_id = payload.get("idMessage") or (payload.get("messageData") or {}).get("idMessage")

    now = datetime.now(tz=timezone.utc)
    evt_time = _extract_event_time(payload) or now
    age = (now - evt_time).total_seconds()
    if age > WINDOW_SECONDS:
        json_log("message_skipped_outside_window", msg_id=str(msg_id), age_seconds=int(age))
        return {"ok": True, "skipped": "outside_window", "age_seconds": int(age)}

    if msg_id:
        if db.has_processed(str(msg_id)):
            json_log("duplicate_message_skipped", msg_id=str(msg_id))
            return {"ok": True, "duplicate": True, "msg_id": str(msg_id)}
        # Mark as processed early to avoid races on re-delivery
        db.mark_processed(str(msg_id))

    event = payload_to_event(payload)
    if event is None:
        json_log("webhook_ignored", reason="unsupported_message", msg_id=str(msg_id))
        return {"ok": True, "ignored": True}

    json_log("event_received", kind=type(event).__name__, chat_id=event.chat_id, msg_id=str(msg_id))
    await get_controller().dispatch(event)
    return {"ok": True, "event": type(event).__name__}


def _track(task: asyncio.Task):
    inflight.add(task)
    task.add_done_callback(inflight.discard)


async def notification_poller():
    """
    Polls Green API ReceiveNotification and routes each notification through the
    same handler as /webhook. Handlers run as separate tasks so a slow download
    does not hold back the next message.
    """
    db = Database()
    client = GreenAPIClient.from_env(db)
    while True:
        try:
            data = await client.receive_notification()
            if not data:
                await asyncio.sleep(0.5)
                continue
            receipt_id = data.get("receiptId")
            body = data.get("body") or data
            _track(asyncio.create_task(handle_incoming_payload(body, db)))
            if receipt_id is not None:
                try:
                    await client.delete_notification(int(receipt_id))
                except Exception as e:
                    json_log("delete_notification_error", error=str(e), receipt_id=receipt_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("receive_notification_error", error=str(e))
            await asyncio.sleep(2.0)


@app.post("/webhook")
async def webhook(request: Request, db: Database = Depends(get_db)):
    try:
        payload = await request.json()
    except Exception:
        raw = await request.body()
        return JSONResponse({"ok": False, "error": "invalid_json", "raw": raw.decode("utf-8", "ignore")}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"ok": False, "error": "invalid_payload"}, status_code=400)

    res = await handle_incoming_payload(payload, db)
    status = 200 if res.get("ok") else 400
    return JSONResponse(res, status_code=status)


@app.get("/health")
async def health():
    controller = get_controller()
    return {
        "ok": True,
        "version": VERSION,
        "sessions": len(controller.store.sessions),
        "known_chats": len(controller.ledger),
    }


def run():
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    uvicorn.run("idrelay.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    run()
