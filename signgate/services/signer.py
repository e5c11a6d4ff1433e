"""
signgate/services/signer.py

Client for the upstream signer that produces TikTok live signatures.

Design Decisions:
- The gateway never computes signatures itself. It forwards the room
  URL to a signer service and passes the payload through untouched.
- The httpx.AsyncClient is injected and owned by the application
  lifespan, so one connection pool serves every request.
- Every failure mode (timeout, transport error, non-2xx, non-JSON
  body) surfaces as SignerError. The route maps it to 502 and the
  outcome log records it as SIGNER_ERROR.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from signgate.utils.exceptions import SignerError
from signgate.utils.logger import get_logger
from signgate.utils.metrics import signer_latency_seconds

logger = get_logger(__name__)


@dataclass(frozen=True)
class SignatureResult:
    """Signer payload plus how long the signer took."""

    data: dict[str, Any]
    latency_ms: float


class Signer(Protocol):
    async def sign(self, room_url: str) -> SignatureResult:
        ...


@dataclass
class HttpSigner:
    """
    Signer backed by an HTTP signing service.

    Example:
        async with httpx.AsyncClient(timeout=10.0) as http:
            signer = HttpSigner(http=http, url="http://signer:8080/sign")
            result = await signer.sign("https://www.tiktok.com/@user/live")
    """

    http: httpx.AsyncClient
    url: str
    timeout_seconds: float = 10.0

    async def sign(self, room_url: str) -> SignatureResult:
        """
        Raises:
            SignerError: The signer timed out, failed, or returned garbage.
        """
        start = time.perf_counter()
        try:
            response = await self.http.post(
                self.url,
                json={"url": room_url},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as exc:
            logger.warning(f"Signer timed out after {self.timeout_seconds}s")
            raise SignerError("Signature service timed out.") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(f"Signer returned HTTP {exc.response.status_code}")
            raise SignerError(
                "Signature service returned an error.",
                detail=f"status={exc.response.status_code}",
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(f"Signer request failed: {exc!r}")
            raise SignerError("Signature service unreachable.") from exc
        except ValueError as exc:
            raise SignerError("Signature service returned a malformed response.") from exc
        finally:
            signer_latency_seconds.observe(time.perf_counter() - start)

        if isinstance(payload, dict) and "data" in payload and isinstance(payload["data"], dict):
            if payload.get("success") is False:
                raise SignerError("Signature generation failed.", detail=str(payload.get("error", "")))
            payload = payload["data"]
        if not isinstance(payload, dict):
            raise SignerError("Signature service returned a malformed response.")

        return SignatureResult(data=payload, latency_ms=round((time.perf_counter() - start) * 1000, 2))
