import json

import httpx
import pytest

from slack_flow.models import Attachment
from slack_flow.protocols import ChatClientProtocol
from slack_flow.slack_client import SlackApiError, SlackClient


def _client(handler, tmp_path) -> tuple[SlackClient, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = SlackClient(
        "xoxb-test",
        base_url="https://slack.test/api/",
        attachment_dir=tmp_path / "files",
        transport=httpx.MockTransport(_record),
    )
    return client, requests


def test_auth_test(tmp_path):
    def handler(request):
        return httpx.Response(200, json={"ok": True, "user_id": "UBOT", "bot_id": "B1", "user": "relay"})

    client, requests = _client(handler, tmp_path)
    info = client.test_connection()

    assert info.ok is True
    assert info.bot_user_id == "UBOT"
    assert info.bot_name == "relay"
    assert client.bot_user_id == "UBOT"
    assert requests[0].url == "https://slack.test/api/auth.test"
    assert requests[0].headers["Authorization"] == "Bearer xoxb-test"


def test_fetch_history_maps_messages(tmp_path):
    def handler(request):
        return httpx.Response(
            200,
            json={
                "ok": True,
                "messages": [
                    {
                        "ts": "100.2",
                        "user": "U1",
                        "text": "!claude demo look",
                        "files": [
                            {"id": "F1", "name": "shot.png", "mimetype": "image/png", "url_private": "https://f/1"}
                        ],
                    },
                    {"user": "U2", "text": "no ts"},
                    {"ts": "100.1", "bot_id": "B1", "text": "hi"},
                ],
            },
        )

    client, requests = _client(handler, tmp_path)
    messages = client.fetch_history("C1", since_ts="100.0")

    params = requests[0].url.params
    assert requests[0].url.path == "/api/conversations.history"
    assert params["channel"] == "C1"
    assert params["oldest"] == "100.0"
    assert params["inclusive"] == "true"
    assert [m.id for m in messages] == ["100.2", "100.1"]
    assert messages[0].author_id == "U1"
    assert messages[0].attachments[0] == Attachment("F1", "shot.png", "image/png", "https://f/1")
    assert messages[1].author_id is None


def test_fetch_history_without_watermark_has_no_oldest(tmp_path):
    client, requests = _client(lambda r: httpx.Response(200, json={"ok": True, "messages": []}), tmp_path)
    assert client.fetch_history("C1") == []
    assert "oldest" not in requests[0].url.params


def test_fetch_thread_replies(tmp_path):
    def handler(request):
        return httpx.Response(
            200,
            json={"ok": True, "messages": [{"ts": "1.0", "text": "root"}, {"ts": "1.5", "thread_ts": "1.0"}]},
        )

    client, requests = _client(handler, tmp_path)
    replies = client.fetch_thread_replies("C1", "1.0", since_ts="1.2")

    params = requests[0].url.params
    assert requests[0].url.path == "/api/conversations.replies"
    assert params["ts"] == "1.0"
    assert params["oldest"] == "1.2"
    assert replies[1].parent_thread_id == "1.0"


def test_post_message_converts_markdown_and_threads(tmp_path):
    client, requests = _client(lambda r: httpx.Response(200, json={"ok": True}), tmp_path)
    client.post_message("C1", "**done** see [docs](https://x.io)", thread_id="1.0")

    body = json.loads(requests[0].content)
    assert requests[0].method == "POST"
    assert body == {"channel": "C1", "text": "*done* see <https://x.io|docs>", "thread_ts": "1.0"}


def test_api_error_raises(tmp_path):
    client, _ = _client(lambda r: httpx.Response(200, json={"ok": False, "error": "channel_not_found"}), tmp_path)
    with pytest.raises(SlackApiError, match="channel_not_found") as excinfo:
        client.fetch_history("CX")
    assert excinfo.value.method == "conversations.history"


def test_http_error_raises(tmp_path):
    client, _ = _client(lambda r: httpx.Response(503, text="unavailable"), tmp_path)
    with pytest.raises(SlackApiError):
        client.post_message("C1", "hi")


def test_download_attachment(tmp_path):
    def handler(request):
        assert request.headers["Authorization"] == "Bearer xoxb-test"
        return httpx.Response(200, content=b"\x89PNG data")

    client, _ = _client(handler, tmp_path)
    path = client.download_attachment(Attachment("F1", "../shot.png", "image/png", "https://f/1"))

    assert path.startswith(str(tmp_path / "files" / "slack-"))
    assert path.endswith("-shot.png")
    with open(path, "rb") as fh:
        assert fh.read() == b"\x89PNG data"


def test_download_failures(tmp_path):
    client, _ = _client(lambda r: httpx.Response(403), tmp_path)
    with pytest.raises(SlackApiError, match="HTTP 403"):
        client.download_attachment(Attachment("F1", "a.png", "image/png", "https://f/1"))
    with pytest.raises(SlackApiError, match="no private URL"):
        client.download_attachment(Attachment("F2", "b.png", "image/png"))
    assert list((tmp_path / "files").iterdir()) == []


def test_client_implements_protocol(tmp_path):
    client, _ = _client(lambda r: httpx.Response(200, json={"ok": True}), tmp_path)
    assert isinstance(client, ChatClientProtocol)
