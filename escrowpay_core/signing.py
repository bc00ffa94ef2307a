"""
Delegated-signing provider client (Xaman platform API).

EscrowPay never holds signing keys.  Transactions are handed to the
provider as *signing requests* ("payloads"); the wallet holder approves or
rejects them in their app and the provider submits the signed transaction.

The orchestrator only depends on the ``SigningService`` protocol:

    create_signing_request(txjson, options)  -> SigningRequestRef
    get_signing_request_status(request_id)   -> SigningStatus
    cancel_signing_request(request_id)       -> CancelResult

``XamanClient`` implements it over the REST API with aiohttp.  Transport
failures become ``SigningServiceUnavailable``, timeouts ``SigningTimeout``
and provider refusals ``SigningServiceError``; nothing is retried here.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import aiohttp

from escrowpay_core.errors import (
    SigningServiceError,
    SigningServiceUnavailable,
    SigningTimeout,
)

logger = logging.getLogger("escrowpay_signing")

USER_AGENT = "EscrowPay/1.0"

# Engine result classes that mean the tx was never applied to any ledger
UNAPPLIED_RESULT_PREFIXES = ("tef", "tem", "tel")


@dataclass(frozen=True)
class SigningRequestRef:
    """Provider handle for a signing request, safe to show to the end user."""
    request_id: str
    next_url: str = ""
    qr_png: str = ""
    websocket: str = ""
    pushed: bool = False

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "next_url": self.next_url,
            "qr_png": self.qr_png,
            "websocket": self.websocket,
            "pushed": self.pushed,
        }


@dataclass(frozen=True)
class SigningStatus:
    request_id: str
    signed: bool = False
    rejected: bool = False
    expired: bool = False
    resolved: bool = False
    tx_hash: Optional[str] = None
    account: Optional[str] = None
    # Preliminary engine result reported when the provider submitted the tx
    dispatched_result: Optional[str] = None

    @property
    def answered(self) -> bool:
        return self.signed or self.rejected or self.expired

    @property
    def dispatch_failed(self) -> bool:
        r = self.dispatched_result or ""
        return self.signed and r.startswith(UNAPPLIED_RESULT_PREFIXES)


@dataclass(frozen=True)
class CancelResult:
    cancelled: bool
    reason: str = ""


@dataclass
class SigningOptions:
    expire_minutes: int = 10
    submit: bool = True
    instruction: str = ""
    identifier: str = ""
    blob: dict[str, Any] = field(default_factory=dict)

    def to_payload(self, txjson: dict) -> dict:
        body: dict[str, Any] = {
            "txjson": txjson,
            "options": {"submit": self.submit, "expire": self.expire_minutes},
        }
        meta: dict[str, Any] = {}
        if self.identifier:
            meta["identifier"] = self.identifier
        if self.instruction:
            meta["instruction"] = self.instruction
        if self.blob:
            meta["blob"] = self.blob
        if meta:
            body["custom_meta"] = meta
        return body


class SigningService(Protocol):
    async def create_signing_request(self, txjson: dict, options: SigningOptions) -> SigningRequestRef: ...

    async def get_signing_request_status(self, request_id: str) -> SigningStatus: ...

    async def cancel_signing_request(self, request_id: str) -> CancelResult: ...


def parse_payload_created(data: dict) -> SigningRequestRef:
    uuid = data.get("uuid")
    if not uuid:
        raise SigningServiceError("Provider reply has no payload uuid")
    nxt = data.get("next") or {}
    refs = data.get("refs") or {}
    return SigningRequestRef(
        request_id=uuid,
        next_url=nxt.get("always", ""),
        qr_png=refs.get("qr_png", ""),
        websocket=refs.get("websocket_status", ""),
        pushed=bool(data.get("pushed", False)),
    )


def parse_payload_status(request_id: str, data: dict) -> SigningStatus:
    """
    Map a payload GET reply onto ``SigningStatus``.

    ``meta.resolved`` without ``meta.signed`` means the user declined;
    a cancelled payload counts as rejected as well.
    """
    meta = data.get("meta") or {}
    response = data.get("response") or {}
    signed = bool(meta.get("signed"))
    expired = bool(meta.get("expired")) and not signed
    rejected = not signed and not expired and (
        bool(meta.get("cancelled")) or bool(meta.get("resolved"))
    )
    return SigningStatus(
        request_id=request_id,
        signed=signed,
        rejected=rejected,
        expired=expired,
        resolved=bool(meta.get("resolved")),
        tx_hash=response.get("txid") or None,
        account=response.get("account") or None,
        dispatched_result=response.get("dispatched_result") or None,
    )


class XamanClient:
    """aiohttp client for the Xaman platform payload API."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str = "https://xumm.app/api/v1/platform",
        timeout: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ):
        if not api_key or not api_secret:
            logger.warning("Xaman API credentials not configured - signing requests will fail")
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "X-API-Secret": self.api_secret,
            "User-Agent": USER_AGENT,
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()

    async def _request(self, method: str, path: str, body: dict | None = None) -> dict:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(method, url, json=body, headers=self._headers()) as resp:
                if resp.status >= 500:
                    text = await resp.text()
                    logger.error(f"Xaman API error: HTTP {resp.status}: {text[:200]}")
                    raise SigningServiceUnavailable(f"Signing provider error: HTTP {resp.status}")
                if resp.status >= 400:
                    text = await resp.text()
                    logger.error(f"Xaman API refused request: HTTP {resp.status}: {text[:200]}")
                    raise SigningServiceError(f"Signing provider refused request: HTTP {resp.status}", resp.status)
                return await resp.json()
        except asyncio.TimeoutError as exc:
            raise SigningTimeout(f"Signing provider did not answer within {self.timeout}s") from exc
        except aiohttp.ClientError as exc:
            logger.error(f"Network error connecting to Xaman: {exc}")
            raise SigningServiceUnavailable(f"Signing provider unreachable: {exc}") from exc

    # ── SigningService ───────────────────────────────────────────

    async def create_signing_request(self, txjson: dict, options: SigningOptions) -> SigningRequestRef:
        logger.info(
            f"Creating signing request: {txjson.get('TransactionType')} "
            f"for {txjson.get('Account')}"
        )
        data = await self._request("POST", "/payload", options.to_payload(txjson))
        ref = parse_payload_created(data)
        logger.info(f"Signing request created: {ref.request_id}")
        return ref

    async def get_signing_request_status(self, request_id: str) -> SigningStatus:
        data = await self._request("GET", f"/payload/{request_id}")
        return parse_payload_status(request_id, data)

    async def cancel_signing_request(self, request_id: str) -> CancelResult:
        data = await self._request("DELETE", f"/payload/{request_id}")
        result = data.get("result") or {}
        return CancelResult(
            cancelled=bool(result.get("cancelled")),
            reason=str(result.get("reason", "")),
        )
