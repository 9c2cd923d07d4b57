import os
import json
import logging

from dotenv import load_dotenv

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slack_bolt import App
from slack_bolt.adapter.fastapi import SlackRequestHandler
from slack_sdk import WebClient
from openai import OpenAI

from sop_engine import SopLibrary
from sop_sources import InvalidPayload, SourceError, load_configured_sources, parse_sync_payload
from tickets import DEFAULT_MODEL, TicketDesk, answer

# Load environment variables
load_dotenv()

SLACK_BOT_TOKEN = os.environ["SLACK_BOT_TOKEN"]
SLACK_SIGNING_SECRET = os.environ["SLACK_SIGNING_SECRET"]
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", DEFAULT_MODEL)
TICKET_WEBHOOK_URL = os.environ.get("TICKET_WEBHOOK_URL")
SOP_DIR = os.environ.get("SOP_DIR")
SOP_DRIVE_FOLDER_ID = os.environ.get("SOP_DRIVE_FOLDER_ID")
SOP_SYNC_TOKEN = os.environ.get("SOP_SYNC_TOKEN")
SOP_SYNC_MAX_BYTES = int(os.environ.get("SOP_SYNC_MAX_BYTES", 10 * 1024 * 1024))
SOP_SYNC_NOTIFY_CHANNEL_ID = os.environ.get("SOP_SYNC_NOTIFY_CHANNEL_ID")
# Set to "false" only where auth.test cannot be reached (local runs, tests)
SLACK_TOKEN_VERIFICATION = os.environ.get("SLACK_TOKEN_VERIFICATION", "true").lower() != "false"

# Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# OpenAI client (optional: without it there is no free-text extraction or fallback)
ai = OpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None

# Slack Bolt app (for events & slash commands)
bolt_app = App(
    token=SLACK_BOT_TOKEN,
    signing_secret=SLACK_SIGNING_SECRET,
    token_verification_enabled=SLACK_TOKEN_VERIFICATION,
)

# Slack WebClient (for sync notifications)
slack_client = WebClient(token=SLACK_BOT_TOKEN)

# SOP index + per-agent ticket flow
sop_library = SopLibrary()
ticket_desk = TicketDesk(
    sop_library,
    webhook_url=TICKET_WEBHOOK_URL,
    ai=ai,
    model=OPENAI_MODEL,
)


def reload_sops(strict=True):
    """
    Rebuild the SOP index from SOP_DIR and the Drive folder. With strict=True a
    failing source raises SourceError and the current index stays published.
    """
    documents = load_configured_sources(
        sop_dir=SOP_DIR,
        drive_folder_id=SOP_DRIVE_FOLDER_ID,
        strict=strict,
    )
    return sop_library.sync(documents)


def notify_sync(text: str):
    if not SOP_SYNC_NOTIFY_CHANNEL_ID:
        return
    try:
        slack_client.chat_postMessage(channel=SOP_SYNC_NOTIFY_CHANNEL_ID, text=text)
    except Exception as e:
        logger.error(f"Error posting SOP sync notice: {e}")


reload_sops(strict=False)


# -------------------------------
# Slack listeners
# -------------------------------
@bolt_app.event("message")
def handle_message(event, say, logger):
    # Ignore bot posts, edits, joins, etc.
    if event.get("subtype") or event.get("bot_id"):
        return

    user_id = event.get("user")
    if not user_id:
        return

    try:
        ticket_desk.handle_message(user_id, event.get("text") or "", say)
    except Exception as e:
        logger.error(f"Error handling message from {user_id}: {e}")
        say("Sorry, something went wrong while handling that. Please try again.")


@bolt_app.command("/sop_help")
def sop_help(ack, body, respond, logger):
    """
    One-shot SOP lookup without opening a ticket.

    Usage from Slack:
      /sop_help Casa Amore | guest can't connect to wifi
    """
    ack()

    raw_text = (body.get("text") or "").strip()
    if "|" not in raw_text:
        respond(
            "Please provide a cabin and an issue.\n"
            "Example: /sop_help Casa Amore | guest can't connect to wifi"
        )
        return

    cabin, issue = (part.strip() for part in raw_text.split("|", 1))
    if not cabin or not issue:
        respond("Both a cabin and an issue are needed, separated by '|'.")
        return

    try:
        respond(answer(sop_library, cabin, issue, ai=ai, model=OPENAI_MODEL)[:3000])
    except Exception as e:
        logger.error(f"/sop_help error: {e}")
        respond("Sorry, I could not look that up in the SOPs.")


@bolt_app.command("/sop_reload")
def sop_reload(ack, body, respond, logger):
    """Re-read SOPs from the configured directory and Drive folder."""
    ack()

    user_id = body.get("user_id")
    try:
        fresh = reload_sops()
        respond(
            f"Reloaded {len(fresh)} SOP documents "
            f"({SopLibrary.section_count(fresh)} sections), requested by <@{user_id}>."
        )
    except SourceError as e:
        logger.error(f"/sop_reload source error: {e}")
        respond(
            f"Reload failed ({e}). Still using the previous "
            f"{len(sop_library.current)} SOP documents."
        )
    except Exception as e:
        logger.error(f"/sop_reload error: {e}")
        respond("Sorry, I could not reload the SOPs. Check the logs.")


# FastAPI wrapper for Slack events
app = FastAPI()
handler = SlackRequestHandler(bolt_app)


@app.post("/slack/events")
async def slack_events(req: Request):
    return await handler.handle(req)


@app.get("/healthz")
async def healthz():
    current = sop_library.current
    return {
        "ok": True,
        "documents": len(current),
        "sections": SopLibrary.section_count(current),
    }


@app.post("/sync-sops")
async def sync_sops(request: Request):
    """
    Replace all SOPs with the posted files:
      {"files": [{"filename": "casa-amore.txt", "content": "..."}]}
    """
    if SOP_SYNC_TOKEN and request.headers.get("x-sync-token") != SOP_SYNC_TOKEN:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > SOP_SYNC_MAX_BYTES:
        return JSONResponse({"error": "Payload too large"}, status_code=413)

    raw = await request.body()
    if len(raw) > SOP_SYNC_MAX_BYTES:
        return JSONResponse({"error": "Payload too large"}, status_code=413)

    try:
        body = json.loads(raw)
    except ValueError:
        return JSONResponse({"error": "Invalid file data"}, status_code=400)

    try:
        documents = parse_sync_payload(body)
    except InvalidPayload as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    try:
        fresh = sop_library.sync(documents)
    except Exception:
        logger.exception("sync_sops failed")
        return JSONResponse({"error": "SOP sync failed"}, status_code=500)

    logger.info(f"Received {len(documents)} SOP files")
    notify_sync(
        f"✅ Received {len(documents)} SOP files "
        f"({SopLibrary.section_count(fresh)} sections)."
    )
    return {"message": "SOPs synced successfully", "files": len(documents)}
