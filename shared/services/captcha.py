from __future__ import annotations

import logging

import httpx


_logger = logging.getLogger(__name__)


class CaptchaVerifier:
    """hCaptcha siteverify client. Without a secret every proof is accepted."""

    def __init__(self, secret: str, verify_url: str, *, timeout: float = 5):
        self.secret = str(secret or "")
        self.verify_url = str(verify_url)
        self.timeout = float(timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.secret)

    async def verify(self, token: str | None, remote_ip: str | None = None) -> bool:
        if not self.enabled:
            _logger.debug("captcha verification skipped: no secret configured")
            return True

        tok = (token or "").strip()
        if not tok:
            return False

        data = {"secret": self.secret, "response": tok}
        if remote_ip:
            data["remoteip"] = remote_ip

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(self.verify_url, data=data)
                ok = resp.status_code == 200 and resp.json().get("success") is True
            except (httpx.HTTPError, ValueError) as e:
                _logger.warning("captcha verification failed", extra={"error": type(e).__name__})
                return False

        if not ok:
            _logger.info("captcha rejected", extra={"status_code": resp.status_code})
        return ok
