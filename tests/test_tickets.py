import json
from types import SimpleNamespace

import pytest
import requests

import tickets
from sop_engine import SopLibrary, index, resolve
from tickets import (
    FORMAT_HINT,
    LOG_FAILED,
    AwaitingDetails,
    Submitted,
    TicketDesk,
    answer,
    extract_with_model,
    log_ticket,
    parse_issue_input,
    render_match,
)

CASA_AMORE = (
    "Task: Casa Amore\n"
    "wifi_network_name: CasaAmoreGuest\n"
    "wifi_password: sunshine123\n"
    "Breaker panel is behind the pantry door\n"
    "Task: Casa Luna\n"
    "wifi_password: moonlight456\n"
)
WEBHOOK = "https://script.example.com/exec"


class FakeCompletions:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        message = SimpleNamespace(content=reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def fake_ai(*replies):
    completions = FakeCompletions(replies)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


class FakeResponse:
    def __init__(self, status=200):
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


@pytest.fixture
def library():
    lib = SopLibrary()
    lib.sync([("casa-amore.txt", CASA_AMORE)])
    return lib


@pytest.fixture
def posts(monkeypatch):
    sent = []

    def fake_post(url, json=None, timeout=None):
        sent.append({"url": url, "json": json, "timeout": timeout})
        return FakeResponse()

    monkeypatch.setattr(tickets.requests, "post", fake_post)
    return sent


# --- parsing ---

def test_parse_issue_input_multiline():
    assert parse_issue_input("Cabin: Casa Amore\nIssue: Guest said fireplace won't turn on.") == {
        "cabin": "Casa Amore",
        "issue": "Guest said fireplace won't turn on.",
    }


def test_parse_issue_input_slack_bold_and_case():
    text = "*cabin:* Casa Luna\n*ISSUE:* hot tub cold"
    assert parse_issue_input(text) == {"cabin": "Casa Luna", "issue": "hot tub cold"}


def test_parse_issue_input_single_line():
    assert parse_issue_input("Cabin: Casa Luna Issue: wifi down") == {
        "cabin": "Casa Luna",
        "issue": "wifi down",
    }


@pytest.mark.parametrize("text", ["", "the wifi is down at casa luna", "Cabin: Casa Luna", "Issue: wifi", "Cabin: \nIssue: wifi"])
def test_parse_issue_input_rejects(text):
    assert parse_issue_input(text) is None


def test_extract_with_model():
    ai = fake_ai(json.dumps({"cabin": "Casa Luna", "issue": "wifi is down"}))
    assert extract_with_model(ai, "wifi is down at luna") == {"cabin": "Casa Luna", "issue": "wifi is down"}
    call = ai.chat.completions.calls[0]
    assert call["response_format"] == {"type": "json_object"}
    assert call["messages"][-1]["content"] == "wifi is down at luna"


@pytest.mark.parametrize("reply", ["not json", "[]", json.dumps({"cabin": "", "issue": "x"})])
def test_extract_with_model_rejects(reply):
    assert extract_with_model(fake_ai(reply), "hello") is None


# --- webhook ---

def test_log_ticket_posts_payload(posts):
    log_ticket(WEBHOOK, "Casa Amore", "wifi down", "U123")
    assert posts == [{
        "url": WEBHOOK,
        "json": {"issueDetails": "wifi down", "cabinName": "Casa Amore", "userEmail": "U123@slack.user"},
        "timeout": 30,
    }]


def test_log_ticket_requires_url():
    with pytest.raises(RuntimeError):
        log_ticket(None, "Casa Amore", "wifi", "U1")


def test_log_ticket_raises_on_http_error(monkeypatch):
    monkeypatch.setattr(tickets.requests, "post", lambda *a, **kw: FakeResponse(500))
    with pytest.raises(requests.HTTPError):
        log_ticket(WEBHOOK, "Casa Amore", "wifi", "U1")


# --- replies ---

def test_render_match(library):
    text = render_match(resolve(library.current, "Casa Amore", "wifi"))
    assert text.splitlines() == [
        "📘 From SOP *casa-amore.txt* (Casa Amore):",
        "• WiFi Network: CasaAmoreGuest",
        "• Password: sunshine123",
        "📝 Breaker panel is behind the pantry door",
        "",
        "Suggested reply: Hi! The WiFi password for Casa Amore is sunshine123.",
    ]


def test_render_match_without_password():
    idx = index([("pine.txt", "Task: Pine Lodge\ndoor_code: 4455")])
    text = render_match(resolve(idx, "Pine Lodge", "door"))
    assert "• Door Code: 4455" in text
    assert "Suggested reply" not in text


def test_answer_falls_back_to_model(library):
    ai = fake_ai("Check the pilot light.")
    text = answer(library, "Casa Luna", "fireplace broken", ai=ai)
    assert text.startswith("I couldn't find this in the SOPs for *Casa Luna*")
    assert text.endswith("Check the pilot light.")
    assert ai.chat.completions.calls[0]["temperature"] == 0.2


def test_answer_without_model_or_on_model_error(library):
    expected = "No SOP found for *Casa Luna* covering that issue."
    assert answer(library, "Casa Luna", "fireplace broken") == expected
    assert answer(library, "Casa Luna", "fireplace broken", ai=fake_ai(RuntimeError("rate limited"))) == expected


# --- conversation ---

def test_first_message_greets(library, posts):
    desk = TicketDesk(library, webhook_url=WEBHOOK)
    said = []
    desk.handle_message("U1", "hello", said.append)
    assert said == ["Hi there <@U1>! 👋 Please paste the guest's message and tell me which cabin this is for."]
    assert desk.state_for("U1") == AwaitingDetails()
    assert posts == []


def test_details_are_logged_and_answered(library, posts):
    desk = TicketDesk(library, webhook_url=WEBHOOK)
    said = []
    desk.handle_message("U1", "hi", said.append)
    desk.handle_message("U1", "Cabin: Casa Amore\nIssue: guest can't connect to wifi", said.append)

    assert desk.state_for("U1") == Submitted(cabin="Casa Amore", issue="guest can't connect to wifi")
    assert posts[0]["json"]["cabinName"] == "Casa Amore"
    assert said[1] == "📝 Got it. I've saved this issue under *Casa Amore* and will check SOPs now..."
    assert "• Password: sunshine123" in said[2]


def test_bad_details_get_format_hint(library, posts):
    desk = TicketDesk(library, webhook_url=WEBHOOK)
    said = []
    desk.handle_message("U1", "hi", said.append)
    desk.handle_message("U1", "the fireplace is broken", said.append)
    assert said[-1] == FORMAT_HINT
    assert desk.state_for("U1") == AwaitingDetails()
    assert posts == []


def test_model_extraction_when_format_missing(library, posts):
    ai = fake_ai(json.dumps({"cabin": "Casa Amore", "issue": "wifi not working"}))
    desk = TicketDesk(library, webhook_url=WEBHOOK, ai=ai)
    said = []
    desk.handle_message("U1", "hi", said.append)
    desk.handle_message("U1", "guest at casa amore says wifi not working", said.append)
    assert desk.state_for("U1") == Submitted(cabin="Casa Amore", issue="wifi not working")
    assert "sunshine123" in said[-1]


def test_log_failure_still_answers(library, monkeypatch):
    monkeypatch.setattr(tickets.requests, "post", lambda *a, **kw: FakeResponse(502))
    desk = TicketDesk(library, webhook_url=WEBHOOK)
    said = []
    desk.handle_message("U1", "hi", said.append)
    desk.handle_message("U1", "Cabin: Casa Amore\nIssue: wifi", said.append)
    assert said[1] == LOG_FAILED
    assert "sunshine123" in said[2]


def test_submitted_user_can_report_next_issue(library, posts):
    desk = TicketDesk(library, webhook_url=WEBHOOK)
    said = []
    desk.handle_message("U1", "hi", said.append)
    desk.handle_message("U1", "Cabin: Casa Amore\nIssue: wifi", said.append)
    desk.handle_message("U1", "Cabin: Casa Luna\nIssue: wifi password", said.append)
    assert desk.state_for("U1") == Submitted(cabin="Casa Luna", issue="wifi password")
    assert len(posts) == 2
    assert "moonlight456" in said[-1]


def test_reset_clears_state(library, posts):
    desk = TicketDesk(library, webhook_url=WEBHOOK)
    said = []
    desk.handle_message("U1", "hi", said.append)
    desk.handle_message("U1", "Cancel", said.append)
    assert desk.state_for("U1") is None


def test_users_are_independent(library, posts):
    desk = TicketDesk(library, webhook_url=WEBHOOK)
    desk.handle_message("U1", "hi", lambda _: None)
    desk.handle_message("U2", "Cabin: Casa Amore\nIssue: wifi", lambda _: None)
    assert desk.state_for("U1") == AwaitingDetails()
    assert desk.state_for("U2") == AwaitingDetails()


def test_follow_up_issue_reuses_submitted_cabin(library, posts):
    desk = TicketDesk(library, webhook_url=WEBHOOK)
    said = []
    desk.handle_message("U1", "hi", said.append)
    desk.handle_message("U1", "Cabin: Casa Luna\nIssue: fireplace broken", said.append)
    desk.handle_message("U1", "Issue: guest also asked for the wifi password", said.append)

    assert desk.state_for("U1") == Submitted(cabin="Casa Luna", issue="guest also asked for the wifi password")
    assert posts[-1]["json"]["cabinName"] == "Casa Luna"
    assert "moonlight456" in said[-1]


def test_issue_only_while_awaiting_details_gets_format_hint(library, posts):
    desk = TicketDesk(library, webhook_url=WEBHOOK)
    said = []
    desk.handle_message("U1", "hi", said.append)
    desk.handle_message("U1", "Issue: wifi", said.append)
    assert said[-1] == FORMAT_HINT
    assert posts == []


def test_parse_issue_only():
    assert tickets.parse_issue_only("*Issue:* hot tub cold") == "hot tub cold"
    assert tickets.parse_issue_only("hot tub cold") is None
