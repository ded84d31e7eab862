import base64
import json
import re
from email import message_from_bytes
from unittest.mock import AsyncMock

import httpx
import pytest

from app.services.gmail import google_client
from app.services.gmail.google_client import GoogleGmailError, GoogleGmailService

MESSAGES_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages"


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii")


def _message_payload(message_id: str, sender: str = "Mario Bianchi <mario.bianchi@example.com>") -> dict:
    return {
        "id": message_id,
        "threadId": "thread-1",
        "labelIds": ["INBOX", "UNREAD"],
        "snippet": "Buongiorno",
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "Subject", "value": "Informazioni"},
                {"name": "Message-ID", "value": f"<{message_id}@mail.example.com>"},
            ],
            "body": {"data": _b64("Buongiorno, quali sono gli orari?")},
        },
    }


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(google_client.asyncio, "sleep", AsyncMock())


@pytest.mark.asyncio
async def test_list_messages_fetches_full_payloads(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_response(
        method="GET",
        url=re.compile(re.escape(MESSAGES_URL) + r"\?.*"),
        json={"messages": [{"id": "msg-1"}], "resultSizeEstimate": 1},
    )
    httpx_mock.add_response(
        method="GET",
        url=re.compile(re.escape(f"{MESSAGES_URL}/msg-1") + r"\?.*"),
        json=_message_payload("msg-1"),
    )

    messages = await service.list_messages("token", max_results=20, query="is:unread in:inbox")
    await service.close()

    assert len(messages) == 1
    assert messages[0].sender_email == "mario.bianchi@example.com"
    assert messages[0].body == "Buongiorno, quali sono gli orari?"
    assert messages[0].rfc_message_id == "<msg-1@mail.example.com>"

    list_request, get_request = httpx_mock.get_requests()
    assert list_request.url.params["q"] == "is:unread in:inbox"
    assert list_request.url.params["maxResults"] == "20"
    assert list_request.headers["Authorization"] == "Bearer token"
    assert get_request.url.params["format"] == "full"


@pytest.mark.asyncio
async def test_empty_inbox(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_response(method="GET", url=re.compile(re.escape(MESSAGES_URL) + r"\?.*"), json={})

    assert await service.list_messages("token", query="is:unread") == []
    await service.close()


@pytest.mark.asyncio
async def test_unauthorized_is_auth_error(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_response(
        method="GET",
        url=re.compile(re.escape(MESSAGES_URL) + r"\?.*"),
        status_code=401,
        json={"error": {"code": 401, "message": "Invalid Credentials"}},
    )

    with pytest.raises(GoogleGmailError) as exc_info:
        await service.list_messages("expired", query="is:unread")
    await service.close()

    assert exc_info.value.is_auth_error is True
    assert str(exc_info.value) == "Gmail authorization expired. Please reconnect."


@pytest.mark.asyncio
async def test_failed_message_fetch_aborts_listing(httpx_mock, no_backoff):
    service = GoogleGmailService()
    httpx_mock.add_response(
        method="GET",
        url=re.compile(re.escape(MESSAGES_URL) + r"\?.*"),
        json={"messages": [{"id": "msg-1"}, {"id": "msg-2"}]},
    )
    httpx_mock.add_response(
        method="GET", url=re.compile(re.escape(f"{MESSAGES_URL}/msg-1") + r"\?.*"), json=_message_payload("msg-1")
    )
    httpx_mock.add_response(
        method="GET",
        url=re.compile(re.escape(f"{MESSAGES_URL}/msg-2") + r"\?.*"),
        status_code=404,
        json={"error": {"code": 404, "message": "Not Found"}},
    )

    with pytest.raises(GoogleGmailError) as exc_info:
        await service.list_messages("token", query="is:unread")
    await service.close()

    assert exc_info.value.is_auth_error is False


@pytest.mark.asyncio
async def test_server_errors_are_retried(httpx_mock, no_backoff):
    service = GoogleGmailService()
    url = re.compile(re.escape(MESSAGES_URL) + r"\?.*")
    httpx_mock.add_response(method="GET", url=url, status_code=503, json={"error": {"code": 503}})
    httpx_mock.add_response(method="GET", url=url, json={"messages": []})

    assert await service.list_messages("token", query="is:unread") == []
    await service.close()

    assert len(httpx_mock.get_requests()) == 2


@pytest.mark.asyncio
async def test_send_reply_in_thread(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_response(
        method="POST", url=f"{MESSAGES_URL}/send", json={"id": "sent-1", "threadId": "thread-1"}
    )

    data = await service.send_message(
        "token",
        "mario.bianchi@example.com",
        "Re: Informazioni",
        "Gentile paziente, grazie.",
        thread_id="thread-1",
        in_reply_to="<msg-1@mail.example.com>",
    )
    await service.close()

    assert data["id"] == "sent-1"
    body = json.loads(httpx_mock.get_requests()[0].content)
    assert body["threadId"] == "thread-1"
    mime = message_from_bytes(base64.urlsafe_b64decode(body["raw"]))
    assert mime["To"] == "mario.bianchi@example.com"
    assert mime["In-Reply-To"] == "<msg-1@mail.example.com>"
    assert mime["References"] == "<msg-1@mail.example.com>"


@pytest.mark.asyncio
async def test_send_is_not_retried(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_response(
        method="POST", url=f"{MESSAGES_URL}/send", status_code=503, json={"error": {"code": 503}}
    )

    with pytest.raises(GoogleGmailError) as exc_info:
        await service.send_message("token", "mario.bianchi@example.com", "Re: x", "Body")
    await service.close()

    assert len(httpx_mock.get_requests()) == 1
    assert exc_info.value.delivery_unknown is False


@pytest.mark.asyncio
async def test_send_read_timeout_marks_delivery_unknown(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_exception(httpx.ReadTimeout("Read timed out"), method="POST", url=f"{MESSAGES_URL}/send")

    with pytest.raises(GoogleGmailError) as exc_info:
        await service.send_message("token", "mario.bianchi@example.com", "Re: x", "Body")
    await service.close()

    assert exc_info.value.delivery_unknown is True


@pytest.mark.asyncio
async def test_send_connect_error_is_not_delivered(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_exception(httpx.ConnectError("Connection refused"), method="POST", url=f"{MESSAGES_URL}/send")

    with pytest.raises(GoogleGmailError) as exc_info:
        await service.send_message("token", "mario.bianchi@example.com", "Re: x", "Body")
    await service.close()

    assert exc_info.value.delivery_unknown is False


@pytest.mark.asyncio
async def test_mark_as_read_removes_unread_label(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_response(method="POST", url=f"{MESSAGES_URL}/msg-1/modify", json={"id": "msg-1"})

    await service.mark_as_read("token", "msg-1")
    await service.close()

    assert json.loads(httpx_mock.get_requests()[0].content) == {"removeLabelIds": ["UNREAD"]}


@pytest.mark.asyncio
async def test_thread_messages_are_parsed(httpx_mock):
    service = GoogleGmailService()
    httpx_mock.add_response(
        method="GET",
        url=re.compile(re.escape("https://gmail.googleapis.com/gmail/v1/users/me/threads/thread-1") + r"\?.*"),
        json={
            "id": "thread-1",
            "messages": [
                _message_payload("msg-1"),
                _message_payload("msg-2", sender="Studio Rossi <info@studiorossi.it>"),
            ],
        },
    )

    messages = await service.get_thread_messages("token", "thread-1")
    await service.close()

    assert [m.id for m in messages] == ["msg-1", "msg-2"]
    assert messages[1].sender_email == "info@studiorossi.it"
