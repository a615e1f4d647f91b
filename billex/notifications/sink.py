"""
Notification sinks

Deliver a short message (and optionally a file) to whoever started a job.
Delivery is best-effort: fire_and_forget never lets a delivery failure
reach the caller.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Set, Union

import httpx

from billex.exceptions import NotificationError

logger = logging.getLogger(__name__)

_pending: Set[asyncio.Task] = set()


class NotificationSink(ABC):
    """Where job results are delivered"""

    @abstractmethod
    async def send(
        self,
        recipient: str,
        message: str,
        attachment: Optional[Union[str, Path]] = None
    ) -> None:
        """
        Deliver a message

        Raises:
            NotificationError: Delivery failed
        """
        pass


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the log (development)"""

    async def send(self, recipient, message, attachment=None) -> None:
        suffix = f" [attachment: {attachment}]" if attachment else ''
        logger.info(f"Notification to {recipient}: {message}{suffix}")


class WebhookNotificationSink(NotificationSink):
    """
    POSTs notifications as JSON to a webhook

    Example:
        sink = WebhookNotificationSink(
            url="https://chat.example.com/hooks/billex",
            hmac_secret="secret_key"
        )
        await sink.send("user-42", "Your invoices are ready", "/tmp/report.xlsx")
    """

    def __init__(
        self,
        url: str,
        hmac_secret: Optional[str] = None,
        hmac_header: str = "X-Signature",
        bearer_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url
        self.hmac_secret = hmac_secret
        self.hmac_header = hmac_header
        self.bearer_token = bearer_token
        self.timeout = timeout
        self._transport = transport

    def _build_payload(self, recipient: str, message: str, attachment: Optional[Union[str, Path]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'recipient': recipient, 'message': message}
        if attachment:
            path = Path(attachment)
            payload['attachment'] = {
                'filename': path.name,
                'content_base64': base64.b64encode(path.read_bytes()).decode('ascii')
            }
        return payload

    def _build_headers(self, body: bytes) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.bearer_token:
            headers['Authorization'] = f"Bearer {self.bearer_token}"
        if self.hmac_secret:
            headers[self.hmac_header] = self._sign_payload(body)
        return headers

    def _sign_payload(self, body: bytes) -> str:
        """Sign payload with HMAC"""
        signature = hmac.new(self.hmac_secret.encode(), body, hashlib.sha256).hexdigest()
        return f"sha256={signature}"

    async def send(self, recipient, message, attachment=None) -> None:
        try:
            payload = self._build_payload(recipient, message, attachment)
        except OSError as e:
            raise NotificationError(f"Cannot read attachment {attachment}: {e}") from e

        body = json.dumps(payload, sort_keys=True).encode()

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.url, content=body, headers=self._build_headers(body))
            except httpx.HTTPError as e:
                raise NotificationError(f"Webhook delivery to {self.url} failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise NotificationError(
                f"Webhook delivery to {self.url} failed: HTTP {response.status_code}",
                status_code=response.status_code
            )
        logger.debug(f"Delivered notification to {recipient} via webhook")


async def _deliver(sink: NotificationSink, recipient: str, message: str, attachment) -> None:
    try:
        await sink.send(recipient, message, attachment)
    except NotificationError as e:
        logger.warning(f"Notification to {recipient} not delivered: {e}")
    except Exception as e:
        logger.exception(f"Notification sink error for {recipient}: {e}")


def fire_and_forget(
    sink: NotificationSink,
    recipient: str,
    message: str,
    attachment: Optional[Union[str, Path]] = None
) -> asyncio.Task:
    """
    Schedule delivery on the running loop without awaiting it

    Returns:
        The delivery task (callers normally ignore it)
    """
    task = asyncio.get_running_loop().create_task(_deliver(sink, recipient, message, attachment))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task
