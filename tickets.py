import json
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

import requests

from sop_engine import Match, Note, SopLibrary

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

GREETING = (
    "Hi there <@{user}>! 👋 Please paste the guest's message "
    "and tell me which cabin this is for."
)
FORMAT_HINT = (
    "Hmm... I couldn't understand that. Please format like this:\n\n"
    "*Cabin:* Casa Amore\n*Issue:* Guest said fireplace won't turn on."
)
LOG_FAILED = "⚠️ I ran into an issue trying to log this. Please let the ops lead know."
RESET_WORDS = {"reset", "cancel", "start over"}


# -------------------------------
# Conversation state
# -------------------------------
@dataclass(frozen=True)
class AwaitingDetails:
    pass


@dataclass(frozen=True)
class Submitted:
    cabin: str
    issue: str


ConversationState = Union[AwaitingDetails, Submitted]


# -------------------------------
# Parsing agent input
# -------------------------------
CABIN_RE = re.compile(r"Cabin:[ \t]*(.+?)[ \t]*(?=Issue:|$)", re.IGNORECASE | re.MULTILINE)
ISSUE_RE = re.compile(r"Issue:[ \t]*(.+?)[ \t]*(?=Cabin:|$)", re.IGNORECASE | re.MULTILINE)


def _strip_slack_bold(s: str) -> str:
    return s.replace("*", "").strip()


def parse_issue_input(text: str) -> Optional[dict]:
    """
    Fixed format:
      Cabin: Casa Amore
      Issue: Guest said fireplace won't turn on.
    Returns {"cabin", "issue"} or None.
    """
    cleaned = _strip_slack_bold(text or "")
    cabin_match = CABIN_RE.search(cleaned)
    issue_match = ISSUE_RE.search(cleaned)
    if not cabin_match or not issue_match:
        return None

    cabin = cabin_match.group(1).strip()
    issue = issue_match.group(1).strip()
    if not cabin or not issue:
        return None
    return {"cabin": cabin, "issue": issue}


def parse_issue_only(text: str) -> Optional[str]:
    """`Issue: ...` without a cabin, used for follow-ups on the same cabin."""
    issue_match = ISSUE_RE.search(_strip_slack_bold(text or ""))
    if not issue_match:
        return None
    return issue_match.group(1).strip() or None


def extract_with_model(ai, text: str, model: str = DEFAULT_MODEL) -> Optional[dict]:
    """
    Ask the model to pull cabin + issue out of free text. Returns None when the
    model cannot find both or answers with something that is not JSON.
    """
    resp = ai.chat.completions.create(
        model=model,
        messages=[
            {
                "role": "system",
                "content": (
                    "You help a short-term-rental support team. Extract the cabin "
                    "(property) name and the guest's issue from the agent's message. "
                    'Reply with JSON only: {"cabin": "...", "issue": "..."}. '
                    "Use an empty string for anything that is not stated."
                ),
            },
            {"role": "user", "content": text},
        ],
        temperature=0,
        response_format={"type": "json_object"},
    )
    content = resp.choices[0].message.content or ""
    try:
        data = json.loads(content)
    except ValueError:
        logger.warning("Model extraction returned non-JSON: %r", content[:200])
        return None
    if not isinstance(data, dict):
        return None

    cabin = str(data.get("cabin") or "").strip()
    issue = str(data.get("issue") or "").strip()
    if not cabin or not issue:
        return None
    return {"cabin": cabin, "issue": issue}


# -------------------------------
# Ticket webhook
# -------------------------------
def log_ticket(url: str, cabin: str, issue: str, user_id: str) -> None:
    """
    Append the ticket to the ops spreadsheet through the Apps Script webhook.
    """
    if not url:
        raise RuntimeError("TICKET_WEBHOOK_URL not set")

    resp = requests.post(
        url,
        json={
            "issueDetails": issue,
            "cabinName": cabin,
            "userEmail": f"{user_id}@slack.user",
        },
        timeout=30,
    )
    resp.raise_for_status()


# -------------------------------
# Replies
# -------------------------------
def render_match(match: Match) -> str:
    """Plain Slack text for an SOP hit."""
    lines = [f"📘 From SOP *{match.document}* ({match.section}):"]
    for entry in match.entries:
        if isinstance(entry, Note):
            lines.append(f"📝 {entry.text}")
        else:
            lines.append(f"• {entry.label}: {entry.value}")
    if match.suggested_reply:
        lines.append("")
        lines.append(
            f"Suggested reply: Hi! The WiFi password for {match.section} "
            f"is {match.suggested_reply}."
        )
    return "\n".join(lines)


def fallback_reply(ai, cabin: str, issue: str, model: str = DEFAULT_MODEL) -> str:
    """Conversational answer when no SOP covers the issue."""
    resp = ai.chat.completions.create(
        model=model,
        messages=[
            {
                "role": "system",
                "content": (
                    "You are Sol, a support assistant for a short-term-rental team. "
                    "An agent is handling a guest issue that our SOPs do not cover. "
                    "Give short, practical troubleshooting steps the agent can relay "
                    "to the guest, and say when the issue needs a maintenance visit. "
                    "Plain text only."
                ),
            },
            {"role": "user", "content": f"Cabin: {cabin}\nIssue: {issue}"},
        ],
        temperature=0.2,
    )
    return resp.choices[0].message.content or ""


def answer(library: SopLibrary, cabin: str, issue: str, ai=None, model: str = DEFAULT_MODEL) -> str:
    """SOP answer if there is one, otherwise the model, otherwise a plain miss."""
    result = library.resolve(cabin, issue)
    if isinstance(result, Match):
        return render_match(result)

    if ai is not None:
        try:
            guidance = fallback_reply(ai, cabin, issue, model=model)
            if guidance:
                return f"I couldn't find this in the SOPs for *{cabin}*. Suggested steps:\n\n{guidance}"
        except Exception as e:
            logger.error(f"Fallback model call failed for {cabin!r}: {e}")
    return f"No SOP found for *{cabin}* covering that issue."


# -------------------------------
# Conversation handling
# -------------------------------
class TicketDesk:
    """
    Per-agent conversation flow. `say` is the Slack say() callable (or any
    callable taking the reply text).
    """

    def __init__(self, library: SopLibrary, webhook_url: Optional[str] = None, ai=None,
                 model: str = DEFAULT_MODEL):
        self.library = library
        self.webhook_url = webhook_url
        self.ai = ai
        self.model = model
        self.conversations: dict[str, ConversationState] = {}

    def state_for(self, user_id: str) -> Optional[ConversationState]:
        return self.conversations.get(user_id)

    def reset(self, user_id: str) -> None:
        self.conversations.pop(user_id, None)

    def parse(self, text: str) -> Optional[dict]:
        parsed = parse_issue_input(text)
        if parsed or self.ai is None:
            return parsed
        try:
            return extract_with_model(self.ai, text, model=self.model)
        except Exception as e:
            logger.error(f"Model extraction failed: {e}")
            return None

    def handle_message(self, user_id: str, text: str, say) -> None:
        text = (text or "").strip()

        if text.lower() in RESET_WORDS:
            self.reset(user_id)
            say("Okay, starting over. Send me a message when you have a new guest issue.")
            return

        state = self.state_for(user_id)
        if state is None:
            self.conversations[user_id] = AwaitingDetails()
            say(GREETING.format(user=user_id))
            return

        parsed = self.parse(text)
        if not parsed and isinstance(state, Submitted):
            # Follow-up on the last ticket's cabin.
            follow_up = parse_issue_only(text)
            if follow_up:
                self.submit(user_id, state.cabin, follow_up, say)
                return

        if not parsed:
            self.conversations[user_id] = AwaitingDetails()
            say(FORMAT_HINT)
            return

        self.submit(user_id, parsed["cabin"], parsed["issue"], say)

    def submit(self, user_id: str, cabin: str, issue: str, say) -> None:
        self.conversations[user_id] = Submitted(cabin=cabin, issue=issue)
        logger.info("Ticket from %s: cabin=%r issue=%r", user_id, cabin, issue)

        try:
            log_ticket(self.webhook_url, cabin, issue, user_id)
            say(f"📝 Got it. I've saved this issue under *{cabin}* and will check SOPs now...")
        except Exception as e:
            logger.error(f"Error logging ticket to webhook: {e}")
            say(LOG_FAILED)

        say(answer(self.library, cabin, issue, ai=self.ai, model=self.model))
