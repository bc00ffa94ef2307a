"""
REST / HTTP API for the escrow service.

Built on ``aiohttp``; a thin JSON layer over ``EscrowService``.

Endpoints
---------
GET  /health                    Liveness plus contract counts
POST /escrow                    Create an escrow and its EscrowCreate signing request
GET  /escrow/{id}               Contract snapshot (secrets stripped)
GET  /escrow/{id}/ledger        The escrow object as the validated ledger holds it
POST /escrow/{id}/poll          Pull provider / ledger status into the contract
POST /escrow/{id}/finish        Request an EscrowFinish signature
POST /escrow/{id}/cancel        Request an EscrowCancel signature
POST /escrow/{id}/abort         Abort a contract that was never submitted

Errors are returned as ``{"success": false, "error": <code>, ...}`` with the
HTTP status taken from the error code.  A ``pending`` contract is a success.

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header only,
  compared with ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(service, api_config=cfg.api)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from escrowpay_core.errors import EscrowError

if TYPE_CHECKING:
    from escrowpay_core.config import APIConfig
    from escrowpay_core.orchestrator import EscrowResult, EscrowService

logger = logging.getLogger("escrowpay_api")

_HTTP_STATUS = {
    "invalid_address": 400,
    "invalid_escrow_params": 400,
    "invalid_escrow_reference": 400,
    "contract_not_found": 404,
    "invalid_state_transition": 409,
    "signing_service_error": 502,
    "signing_service_unavailable": 503,
    "crypto_unavailable": 503,
    "signing_timeout": 504,
}


def http_status_for(code: str | None) -> int:
    return _HTTP_STATUS.get(code or "", 500)


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int, rejecting floats, bools and non-numeric input."""
    if isinstance(value, (bool, float)):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be an integer") from None


async def _read_body(request: web.Request) -> dict:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


def _result_response(result: EscrowResult, ok_status: int = 200) -> web.Response:
    status = ok_status if result.success else http_status_for(result.error)
    return web.json_response(result.to_dict(), status=status)


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token bucket; ``rpm`` <= 0 disables limiting."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm
        # ip -> [tokens, last_refill]
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):
    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """Require ``X-API-Key`` on mutating requests (header only, never query)."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


class APIServer:
    """aiohttp wrapper around an ``EscrowService``."""

    def __init__(
        self,
        service: EscrowService,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.service = service
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._started_at = time.time()

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536
        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))
        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        return app

    async def start(self) -> None:
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_post("/escrow", self._create)
        app.router.add_get("/escrow/{id}", self._get)
        app.router.add_get("/escrow/{id}/ledger", self._ledger)
        app.router.add_post("/escrow/{id}/poll", self._poll)
        app.router.add_post("/escrow/{id}/finish", self._finish)
        app.router.add_post("/escrow/{id}/cancel", self._cancel)
        app.router.add_post("/escrow/{id}/abort", self._abort)

    # ── handlers ─────────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        store = self.service.store
        return web.json_response({
            "ok": True,
            "uptime": round(time.time() - self._started_at, 1),
            "contracts": len(store),
            "by_state": store.count_by_state(),
            "persistent": store.repository is not None,
        })

    async def _create(self, request: web.Request) -> web.Response:
        """
        POST /escrow
        Body: {"from": "r...", "to": "r...", "amount": "25", "bookingId": "b1",
               "finishAfter": 1767225600, "cancelAfter": 1767830400}
        """
        body = await _read_body(request)
        result = await self.service.create_escrow(body)
        return _result_response(result, ok_status=201)

    async def _get(self, request: web.Request) -> web.Response:
        contract_id = request.match_info["id"]
        try:
            snapshot = self.service.get_escrow_status(contract_id)
        except EscrowError as exc:
            return web.json_response(
                {"success": False, "error": exc.code, "message": exc.message},
                status=http_status_for(exc.code),
            )
        return web.json_response({"success": True, "contract": snapshot.to_dict()})

    async def _ledger(self, request: web.Request) -> web.Response:
        result = await self.service.get_ledger_escrow(request.match_info["id"])
        return _result_response(result)

    async def _poll(self, request: web.Request) -> web.Response:
        result = await self.service.poll_escrow(request.match_info["id"])
        return _result_response(result)

    async def _finish(self, request: web.Request) -> web.Response:
        """POST /escrow/{id}/finish  Body (optional): {"offer_sequence": 7}"""
        body = await _read_body(request)
        offer_sequence = body.get("offer_sequence", body.get("offerSequence"))
        if offer_sequence is not None:
            offer_sequence = _safe_int(offer_sequence, "offer_sequence")
        result = await self.service.finish_escrow(request.match_info["id"], offer_sequence)
        return _result_response(result)

    async def _cancel(self, request: web.Request) -> web.Response:
        """POST /escrow/{id}/cancel  Body: {"reason": "...", "offer_sequence": 7}"""
        body = await _read_body(request)
        reason = str(body.get("reason") or "Escrow cancelled")
        offer_sequence = body.get("offer_sequence", body.get("offerSequence"))
        if offer_sequence is not None:
            offer_sequence = _safe_int(offer_sequence, "offer_sequence")
        result = await self.service.cancel_escrow(request.match_info["id"], reason, offer_sequence)
        return _result_response(result)

    async def _abort(self, request: web.Request) -> web.Response:
        body = await _read_body(request)
        reason = str(body.get("reason") or "Aborted by user")
        result = await self.service.abort_escrow(request.match_info["id"], reason)
        return _result_response(result)
