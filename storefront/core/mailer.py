"""
Storefront — core/mailer.py
─────────────────────────────────────────────────────────────────
Outbound email via the Resend HTTP API.

send() either returns normally or raises DependencyError /
DependencyTimeout. Callers that must not proceed without the
email (registration) just let it propagate.

Without RESEND_API_KEY the message is logged instead of sent,
so registration can be completed locally.
─────────────────────────────────────────────────────────────────
"""

import logging

import httpx

from storefront.core.errors import DependencyError, DependencyTimeout

logger = logging.getLogger("storefront.mailer")


class Mailer:

    def __init__(self, api_key: str, sender: str, api_url: str,
                 timeout: float = 10.0, transport: httpx.AsyncBaseTransport = None):
        self.api_key = api_key
        self.sender = sender
        self.api_url = api_url
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config) -> "Mailer":
        return cls(
            api_key=config.RESEND_API_KEY,
            sender=config.EMAIL_FROM,
            api_url=config.MAIL_API_URL,
            timeout=config.MAIL_TIMEOUT,
        )

    async def send(self, to_address: str, subject: str, body: str) -> None:
        if not self.api_key:
            logger.warning(f"[DEV] Mail not configured. To {to_address} | {subject} | {body}")
            return

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                res = await client.post(
                    self.api_url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "from":    self.sender,
                        "to":      [to_address],
                        "subject": subject,
                        "text":    body,
                    },
                )
        except httpx.TimeoutException as e:
            logger.error(f"Mail API timed out sending to {to_address}: {e}")
            raise DependencyTimeout("Mail transport timed out")
        except httpx.HTTPError as e:
            logger.error(f"Mail API unreachable sending to {to_address}: {e}")
            raise DependencyError("Mail transport unreachable")

        if res.is_error:
            logger.error(f"Mail API rejected message to {to_address}: {res.status_code} {res.text[:200]}")
            raise DependencyError(f"Mail transport returned {res.status_code}")

        logger.info(f"Mail sent to {to_address}: {subject}")
