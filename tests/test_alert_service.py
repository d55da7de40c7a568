import asyncio
import threading
from unittest.mock import MagicMock, Mock, patch

import httpx

from crmsync.services.alert_service import alert, alert_error, format_alert, send_alert


class TestSendAlert:
    @patch("crmsync.services.alert_service.settings")
    def test_returns_false_when_not_configured(self, mock_settings):
        mock_settings.alert_bot_token = None
        mock_settings.alert_chat_id = None

        assert send_alert("ERROR", "Test message") is False

    @patch("crmsync.services.alert_service.httpx.Client")
    @patch("crmsync.services.alert_service.settings")
    def test_sends_alert_to_telegram(self, mock_settings, mock_client_class):
        mock_settings.alert_bot_token = "test-token"
        mock_settings.alert_chat_id = "test-chat"
        mock_settings.telegram_api_base = "https://api.telegram.org"
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200)

        result = send_alert("ERROR", "Conversation resolution failed", {"external_user_id": 12345})

        assert result is True
        url = mock_client.post.call_args[0][0]
        assert url == "https://api.telegram.org/bottest-token/sendMessage"
        json_data = mock_client.post.call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "external_user_id: 12345" in json_data["text"]

    @patch("crmsync.services.alert_service.httpx.Client")
    @patch("crmsync.services.alert_service.settings")
    def test_network_error_returns_false(self, mock_settings, mock_client_class):
        mock_settings.alert_bot_token = "test-token"
        mock_settings.alert_chat_id = "test-chat"
        mock_settings.telegram_api_base = "https://api.telegram.org"
        mock_client_class.return_value.__enter__.return_value.post.side_effect = httpx.ConnectError("boom")

        assert send_alert("ERROR", "x") is False


class TestShortcuts:
    @patch("crmsync.services.alert_service.send_alert")
    def test_alert_error_sends_from_worker_thread(self, mock_send):
        callers = []
        mock_send.side_effect = lambda *args: callers.append(threading.get_ident()) or True

        assert asyncio.run(alert_error("a", {"k": "v"})) is True

        mock_send.assert_called_once_with("ERROR", "a", {"k": "v"})
        assert callers != [threading.get_ident()]

    @patch("crmsync.services.alert_service.send_alert", return_value=False)
    def test_alert_passes_level(self, mock_send):
        assert asyncio.run(alert("WARNING", "b")) is False
        mock_send.assert_called_once_with("WARNING", "b", None)

    def test_format_alert(self):
        text = format_alert("CRITICAL", "Debounced message flush failed", {"fragments": 3})
        assert "CRITICAL" in text
        assert "fragments: 3" in text
