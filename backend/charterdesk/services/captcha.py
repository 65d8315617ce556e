"""Cloudflare Turnstile CAPTCHA verification."""

import logging

import httpx

from charterdesk.core.config import settings
from charterdesk.core.errors import CaptchaFailedError, DownstreamError

logger = logging.getLogger(__name__)


class TurnstileVerifier:
    """Server-side check of a Turnstile challenge response.

    A rejected challenge raises CaptchaFailedError. An unreachable or
    misbehaving verifier raises DownstreamError; the request is never let
    through unchecked.
    """

    def __init__(
        self,
        secret_key: str | None = None,
        verify_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.TURNSTILE_SECRET_KEY
        self.verify_url = verify_url or settings.TURNSTILE_VERIFY_URL
        self.timeout_seconds = timeout_seconds or settings.CAPTCHA_TIMEOUT_SECONDS
        self._transport = transport

    async def verify(self, response_token: str, remote_ip: str | None = None) -> None:
        if not response_token:
            raise CaptchaFailedError()

        if not self.secret_key:
            logger.error("TURNSTILE_SECRET_KEY is not configured")
            raise DownstreamError("CAPTCHA verification is not configured")

        form = {"secret": self.secret_key, "response": response_token}
        if remote_ip and remote_ip != "unknown":
            form["remoteip"] = remote_ip

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(self.verify_url, data=form)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.warning("Turnstile siteverify request failed: %s", type(e).__name__)
            raise DownstreamError("CAPTCHA verifier unavailable") from e
        except ValueError as e:
            logger.warning("Turnstile siteverify returned a non-JSON body")
            raise DownstreamError("CAPTCHA verifier unavailable") from e

        if not data.get("success"):
            logger.info(
                "Turnstile challenge rejected",
                extra={"error_codes": data.get("error-codes", [])},
            )
            raise CaptchaFailedError()


def get_captcha_verifier() -> TurnstileVerifier:
    """Dependency returning a verifier built from settings."""
    return TurnstileVerifier()
