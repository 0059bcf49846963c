"""Telegram Bot API client.

Each bridge thread is a forum topic of one supergroup. Updates are pulled
with long polling (``getUpdates``), so the bridge needs no public endpoint.
"""
from typing import Any, Dict, List, Optional

import httpx

from sshbridge.config import HTTP_TIMEOUT, MAX_MESSAGE_LENGTH, POLL_TIMEOUT, THREAD_NAME_LIMIT
from sshbridge.utils import log_error

TELEGRAM_API_BASE = "https://api.telegram.org/bot"


class TelegramError(Exception):
    pass


class TelegramChat:
    def __init__(self, token: str, client: Optional[httpx.Client] = None,
                 api_base: str = TELEGRAM_API_BASE):
        if not token:
            raise ValueError("Telegram bot token not configured")
        self.base_url = f"{api_base}{token}"
        self.client = client or httpx.Client(timeout=HTTP_TIMEOUT)

    def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        response = self.client.post(f"{self.base_url}/{method}", json=payload)
        try:
            data = response.json()
        except ValueError:
            response.raise_for_status()
            raise TelegramError(f"{method}: non-JSON response")
        if not data.get("ok"):
            raise TelegramError(f"{method}: {data.get('description') or response.status_code}")
        return data.get("result")

    def send_message(self, chat_id: int, text: str, thread_id: Optional[int] = None,
                     reply_markup: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """Send plain text into a topic; returns the message id or None on failure."""
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text[:MAX_MESSAGE_LENGTH]}
        if thread_id:
            payload["message_thread_id"] = thread_id
        if reply_markup:
            payload["reply_markup"] = reply_markup
        try:
            result = self._call("sendMessage", payload)
        except (httpx.HTTPError, TelegramError) as exc:
            log_error(f"sendMessage to {chat_id}/{thread_id} failed: {exc}")
            return None
        return result.get("message_id") if isinstance(result, dict) else None

    def edit_message(self, chat_id: int, message_id: int, text: str,
                     reply_markup: Optional[Dict[str, Any]] = None) -> bool:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text[:MAX_MESSAGE_LENGTH],
        }
        if reply_markup:
            payload["reply_markup"] = reply_markup
        try:
            self._call("editMessageText", payload)
        except (httpx.HTTPError, TelegramError) as exc:
            log_error(f"editMessageText {message_id} failed: {exc}")
            return False
        return True

    def create_thread(self, chat_id: int, name: str) -> int:
        result = self._call("createForumTopic", {"chat_id": chat_id, "name": name[:THREAD_NAME_LIMIT]})
        return int(result["message_thread_id"])

    def close_thread(self, chat_id: int, thread_id: int) -> bool:
        try:
            self._call("closeForumTopic", {"chat_id": chat_id, "message_thread_id": thread_id})
        except (httpx.HTTPError, TelegramError) as exc:
            log_error(f"closeForumTopic {thread_id} failed: {exc}")
            return False
        return True

    def answer_callback(self, callback_id: str, text: str = "") -> None:
        payload: Dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text[:200]
        try:
            self._call("answerCallbackQuery", payload)
        except (httpx.HTTPError, TelegramError) as exc:
            log_error(f"answerCallbackQuery failed: {exc}")

    def get_updates(self, offset: Optional[int] = None, timeout: int = POLL_TIMEOUT) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": ["message", "callback_query"],
        }
        if offset is not None:
            payload["offset"] = offset
        return self._call("getUpdates", payload) or []

    def close(self) -> None:
        self.client.close()
