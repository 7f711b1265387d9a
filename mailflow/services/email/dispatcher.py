"""
Outbound email delivery over the provider's HTTP API.
Builds the raw MIME message, posts it with retry/backoff, and returns the
provider's message id.
"""

import asyncio
import base64
import re
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid

import httpx

from mailflow.config import settings
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.services.email.send_ledger import SendLedger, send_ledger

logger = get_logger(__name__)

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 20  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

UNSUBSCRIBE_LINK_PATTERN = re.compile(r"unsubscribe/([a-fA-F\d-]+)\"")


class EmailDeliveryError(Exception):
    """Delivery provider rejected the message or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        recoverable: bool = True,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = "send_email"
        self.status_code = status_code
        self.recoverable = recoverable
        self.response_data = response_data or {}


def build_raw_message(
    sender_email: str, sender_name: str, to: str, subject: str, html: str
) -> bytes:
    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((sender_name, sender_email))
    msg["To"] = to
    msg["Reply-To"] = sender_email
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=sender_email.rpartition("@")[2] or None)

    match = UNSUBSCRIBE_LINK_PATTERN.search(html)
    if match:
        msg["List-Unsubscribe"] = (
            f"<{settings.unsubscribe_base_url()}/unsubscribe/{match.group(1)}>"
        )

    msg.attach(MIMEText(html, "html", "utf-8"))
    return msg.as_bytes()


class EmailDispatcher:
    """Client for the delivery provider's raw-send endpoint."""

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        ledger: SendLedger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url or settings.EMAIL_API_URL
        self.api_key = api_key if api_key is not None else settings.EMAIL_API_KEY
        self.ledger = ledger or send_ledger
        self._transport = transport

    def _headers(self, idempotency_key: str | None) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _post_with_retry(self, payload: dict, headers: dict) -> httpx.Response:
        last_error: Exception | None = None

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.post(self.api_url, json=payload, headers=headers)

                    if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                        wait_time = BACKOFF_FACTOR**attempt
                        logger.warning(
                            "Email provider transient status",
                            status_code=response.status_code,
                            attempt=attempt,
                            wait_time=wait_time,
                        )
                        await asyncio.sleep(wait_time)
                        continue

                    return response

                except httpx.RequestError as exc:
                    last_error = exc

                    if attempt == MAX_RETRIES:
                        raise

                    wait_time = BACKOFF_FACTOR**attempt
                    logger.warning(
                        "Email provider request error, retrying",
                        attempt=attempt,
                        wait_time=wait_time,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)

        if last_error:
            raise last_error
        raise EmailDeliveryError("Email send failed: Unknown error")

    async def send(
        self,
        sender_email: str,
        sender_name: str,
        to: str,
        subject: str,
        html: str,
        idempotency_key: str | None = None,
    ) -> str:
        """
        Deliver one message and return the provider's message id.

        When ``idempotency_key`` is given the message id is recorded in the
        send ledger so later attempts under the same key can be skipped.

        Raises:
            EmailDeliveryError: provider rejected the message or is unreachable
        """
        raw = build_raw_message(sender_email, sender_name, to, subject, html)
        payload = {
            "source": formataddr((sender_name, sender_email)),
            "destinations": [to],
            "raw": base64.b64encode(raw).decode("ascii"),
        }

        try:
            response = await self._post_with_retry(payload, self._headers(idempotency_key))
        except httpx.RequestError as e:
            logger.error("Email provider unreachable", to_domain=to.rpartition("@")[2], error=str(e))
            raise EmailDeliveryError(f"Email provider unreachable: {e}") from e

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"body": response.text[:200]}
            logger.error(
                "Email provider rejected message",
                status_code=response.status_code,
                response=error_data,
            )
            raise EmailDeliveryError(
                f"Email provider returned {response.status_code}",
                status_code=response.status_code,
                recoverable=response.status_code in RETRY_STATUS_CODES,
                response_data=error_data,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EmailDeliveryError("Email provider returned a non-JSON response") from e

        message_id = data.get("message_id") or data.get("messageId") or data.get("id")
        if not message_id:
            raise EmailDeliveryError("Email provider did not return a message id", response_data=data)

        if idempotency_key:
            await self.ledger.record(idempotency_key, message_id)

        logger.info("Email sent", message_id=message_id, to_domain=to.rpartition("@")[2])
        return message_id


email_dispatcher = EmailDispatcher()
