"""Outbound email providers.

Every sender exposes ``async send(message) -> dict`` where ``message`` holds
``to``, ``subject``, ``html``, optional ``text``, ``from``, optional
``reply_to`` and ``tags`` (a mapping). The result is
``{"id", "success", "error", "permanent"}``: ``permanent`` tells the caller
whether retrying can help.
"""

from __future__ import annotations

import asyncio
import uuid
from email.message import EmailMessage
from typing import Any, Dict, Optional, Tuple

import aiohttp
import aiosmtplib

from .logger import get_logger

RESEND_API_URL = "https://api.resend.com"

TEMPORARY_ERROR_PATTERNS = (
    "421",
    "450",
    "451",
    "452",
    "timeout",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "throttl",
)


def send_result(
    message_id: str = "",
    *,
    success: bool,
    error: Optional[str] = None,
    permanent: bool = False,
) -> Dict[str, Any]:
    return {"id": message_id, "success": success, "error": error, "permanent": permanent}


def classify_http_status(status: int) -> bool:
    """Return ``True`` when an HTTP error status is worth retrying."""
    return status == 429 or status == 408 or status >= 500


def classify_smtp_error(exc: Exception) -> Tuple[bool, Optional[int]]:
    """Classify an SMTP error as temporary or permanent.

    Returns ``(is_temporary, smtp_code)``. Network errors and 4xx replies are
    temporary, 5xx replies are permanent, anything unknown is retried.
    """
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPException):
        smtp_code = getattr(exc, "code", None) or getattr(exc, "smtp_code", None)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return True, smtp_code

    if smtp_code:
        if 400 <= smtp_code < 500:
            return True, smtp_code
        if 500 <= smtp_code < 600:
            return False, smtp_code

    error_msg = str(exc).lower()
    for pattern in TEMPORARY_ERROR_PATTERNS:
        if pattern in error_msg:
            return True, smtp_code
    return True, smtp_code


class ResendSender:
    """Client for the Resend-compatible ``POST /emails`` API."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = RESEND_API_URL,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
        logger=None,
    ):
        if not api_key:
            raise ValueError("Resend API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self.logger = logger or get_logger("MailGenius.senders")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    @staticmethod
    def build_body(message: Dict[str, Any]) -> Dict[str, Any]:
        to = message["to"]
        body: Dict[str, Any] = {
            "from": message["from"],
            "to": to if isinstance(to, list) else [to],
            "subject": message["subject"],
            "html": message.get("html") or "",
        }
        if message.get("text"):
            body["text"] = message["text"]
        if message.get("reply_to"):
            body["reply_to"] = message["reply_to"]
        tags = message.get("tags") or {}
        if tags:
            body["tags"] = [{"name": str(name), "value": str(value)} for name, value in tags.items()]
        return body

    async def send(self, message: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with session.post(f"{self.base_url}/emails", json=self.build_body(message), headers=headers) as resp:
                try:
                    data = await resp.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    data = {}
                data = data if isinstance(data, dict) else {}
                if resp.status >= 400:
                    error = data.get("message") or data.get("error") or f"HTTP {resp.status}"
                    return send_result(
                        success=False,
                        error=f"{error} (HTTP {resp.status})",
                        permanent=not classify_http_status(resp.status),
                    )
                return send_result(str(data.get("id") or ""), success=True)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.warning("Email API not reachable: %s", exc)
            return send_result(success=False, error=str(exc) or exc.__class__.__name__, permanent=False)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


class SmtpSender:
    """Deliver through a plain SMTP relay, reusing one connection."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        start_tls: bool = False,
        timeout: float = 30.0,
        logger=None,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = (self.port == 465) if use_tls is None else bool(use_tls)
        self.start_tls = bool(start_tls) and not self.use_tls
        self.timeout = float(timeout)
        self.logger = logger or get_logger("MailGenius.senders")
        self._smtp: Optional[aiosmtplib.SMTP] = None
        self._lock = asyncio.Lock()

    async def _connect(self) -> aiosmtplib.SMTP:
        smtp = aiosmtplib.SMTP(
            hostname=self.host, port=self.port, use_tls=self.use_tls, start_tls=self.start_tls, timeout=10.0
        )

        async def _do_connect():
            await smtp.connect()
            if self.user and self.password:
                await smtp.login(self.user, self.password)

        await asyncio.wait_for(_do_connect(), timeout=15.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False
        return code == 250

    async def _get_connection(self) -> aiosmtplib.SMTP:
        if self._smtp is not None and await self._is_alive(self._smtp):
            return self._smtp
        await self._drop_connection()
        self._smtp = await self._connect()
        return self._smtp

    async def _drop_connection(self) -> None:
        smtp, self._smtp = self._smtp, None
        if smtp is None:
            return
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            self.logger.debug("Ignoring error while closing SMTP connection")

    @staticmethod
    def build_message(message: Dict[str, Any]) -> EmailMessage:
        msg = EmailMessage()
        to = message["to"]
        msg["From"] = message["from"]
        msg["To"] = ", ".join(to) if isinstance(to, (list, tuple)) else to
        msg["Subject"] = message["subject"]
        if message.get("reply_to"):
            msg["Reply-To"] = message["reply_to"]
        msg["Message-ID"] = f"<{uuid.uuid4()}@mailgenius>"
        tags = message.get("tags") or {}
        if tags:
            msg["X-MailGenius-Tags"] = "; ".join(f"{name}={value}" for name, value in tags.items())
        text = message.get("text")
        html = message.get("html")
        msg.set_content(text or "")
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    async def send(self, message: Dict[str, Any]) -> Dict[str, Any]:
        msg = self.build_message(message)
        async with self._lock:
            try:
                smtp = await self._get_connection()
                async with asyncio.timeout(self.timeout):
                    await smtp.send_message(msg)
            except Exception as exc:
                is_temporary, smtp_code = classify_smtp_error(exc)
                await self._drop_connection()
                error = f"{exc} (SMTP {smtp_code})" if smtp_code else str(exc)
                return send_result(success=False, error=error, permanent=not is_temporary)
        return send_result(msg["Message-ID"].strip("<>"), success=True)

    async def close(self) -> None:
        async with self._lock:
            await self._drop_connection()


class DryRunSender:
    """Accept every message without delivering it (development and test mode)."""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("MailGenius.senders")
        self.sent = 0

    async def send(self, message: Dict[str, Any]) -> Dict[str, Any]:
        self.sent += 1
        self.logger.debug("Dry-run delivery to %s: %s", message.get("to"), message.get("subject"))
        return send_result(f"dry-run-{uuid.uuid4()}", success=True)

    async def close(self) -> None:
        return None


def build_sender(settings: Dict[str, Any], logger=None):
    """Return the sender selected by ``settings['email_provider']``."""
    provider = str(settings.get("email_provider") or "dry-run").lower()
    if provider == "resend":
        return ResendSender(
            str(settings.get("resend_api_key") or ""),
            base_url=str(settings.get("resend_api_url") or RESEND_API_URL),
            logger=logger,
        )
    if provider == "smtp":
        return SmtpSender(
            str(settings.get("smtp_host") or "localhost"),
            int(settings.get("smtp_port") or 587),
            user=settings.get("smtp_user"),
            password=settings.get("smtp_password"),
            use_tls=settings.get("smtp_use_tls"),
            logger=logger,
        )
    if provider == "dry-run":
        return DryRunSender(logger=logger)
    raise ValueError(f"Unknown email provider '{provider}'")
