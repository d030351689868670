import pytest
import requests

from sew4mi.observability import get_counter_value
from sew4mi.services.messaging_provider import MessagingError, WhatsAppCloudProvider
from sew4mi.services.notification_service import NotificationService


class _FakeResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


class _FakeSession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.calls.append({"url": url, "json": json})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _provider(response):
    session = _FakeSession(response)
    provider = WhatsAppCloudProvider("token", "12345", api_url="https://graph.test/v18.0/", http_session=session)
    return provider, session


def test_sends_text_message():
    provider, session = _provider(_FakeResponse(200, {"messages": [{"id": "wamid.1"}]}))

    assert provider.send_message("+233 24-111-2222", "Your fitting is ready") == "wamid.1"
    assert session.calls[0]["url"] == "https://graph.test/v18.0/12345/messages"
    assert session.calls[0]["json"]["to"] == "233241112222"
    assert get_counter_value("whatsapp_messages_sent_total") == 1


@pytest.mark.parametrize(
    "response",
    [
        _FakeResponse(500, text="upstream down"),
        _FakeResponse(200, text="<html>gateway</html>"),
        requests.ConnectionError("refused"),
    ],
)
def test_delivery_problems_raise_messaging_error(response):
    provider, _ = _provider(response)

    with pytest.raises(MessagingError):
        provider.send_message("0241112222", "hello")

    assert get_counter_value("whatsapp_messages_failed_total") == 1
    assert get_counter_value("whatsapp_messages_sent_total") == 0


def test_push_reports_failure_for_non_json_reply():
    provider, _ = _provider(_FakeResponse(200, text="OK"))
    NotificationService().use_provider(provider)

    assert NotificationService().push("0241112222", "hello", "payment_confirmation") is False
    assert get_counter_value("notifications_push_failed_total") == 1
