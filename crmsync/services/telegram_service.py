from typing import Optional

import httpx

from crmsync.config import settings
from crmsync.logging_config import get_logger

logger = get_logger("telegram_service")


class FileTooLargeError(Exception):
    def __init__(self, file_path: str, max_bytes: int):
        self.file_path = file_path
        self.max_bytes = max_bytes
        super().__init__(f"File {file_path} exceeds {max_bytes} bytes")


class TelegramService:
    """Async client for the Telegram Bot API (messages and file downloads)."""

    def __init__(
        self,
        bot_token: str,
        api_base: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token
        api_base = (api_base or settings.telegram_api_base).rstrip("/")
        self.base_url = f"{api_base}/bot{bot_token}"
        self.file_base_url = f"{api_base}/file/bot{bot_token}"
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _make_request(self, method: str, data: Optional[dict] = None) -> dict:
        """Make request to Telegram API. Never raises; errors come back as ok=False."""
        url = f"{self.base_url}/{method}"
        try:
            async with self._client() as client:
                response = await client.post(url, json=data or {})
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Telegram API error", extra={"context": {"method": method, "error": str(e)}})
            return {"ok": False, "error": str(e)}

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        reply_to_message_id: Optional[int] = None,
        parse_mode: Optional[str] = None,
    ) -> dict:
        """Send message to Telegram chat."""
        data = {"chat_id": chat_id, "text": text}
        if parse_mode:
            data["parse_mode"] = parse_mode
        if reply_to_message_id:
            data["reply_to_message_id"] = reply_to_message_id

        return await self._make_request("sendMessage", data)

    async def get_file(self, file_id: str) -> Optional[str]:
        """Resolve a file_id to its download path. Returns file_path or None."""
        result = await self._make_request("getFile", {"file_id": file_id})
        if result.get("ok"):
            return result.get("result", {}).get("file_path")
        logger.warning("getFile failed", extra={"context": {"file_id": file_id, "response": result}})
        return None

    async def download_file(self, file_path: str, max_bytes: Optional[int] = None) -> bytes:
        """Download file content. Raises httpx.HTTPError or FileTooLargeError."""
        url = f"{self.file_base_url}/{file_path}"
        chunks = []
        total = 0
        async with self._client() as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    total += len(chunk)
                    if max_bytes and total > max_bytes:
                        raise FileTooLargeError(file_path, max_bytes)
                    chunks.append(chunk)
        return b"".join(chunks)
