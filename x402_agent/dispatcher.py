"""
Tool Dispatcher - forwards a tool call to the upstream verification API and
translates the HTTP status into success / payment_required / error.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .auth import UserIdentity

logger = logging.getLogger("ToolDispatcher")

SUCCESS = "success"
PAYMENT_REQUIRED = "payment_required"
ERROR = "error"

READ_METHODS = ("GET", "HEAD", "DELETE")


@dataclass(frozen=True)
class DispatchResult:
    status: str
    data: Any = None
    details: Optional[dict] = None
    error: Optional[str] = None
    status_code: Optional[int] = None


@dataclass(frozen=True)
class PaymentContext:
    tx_hash: Optional[str] = None
    wallet: Optional[str] = None
    amount: Optional[str] = None

    def headers(self):
        headers = {}
        if self.tx_hash:
            headers["x-payment-tx"] = self.tx_hash
        if self.wallet:
            headers["x-wallet-address"] = self.wallet
        if self.amount:
            headers["x-payment-amount"] = str(self.amount)
        return headers


def _error_message(response):
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()[:200] or "Unknown Backend Error"
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if value:
                return value if isinstance(value, str) else str(value)
    return "Unknown Backend Error"


def _json_or_text(response):
    try:
        return response.json()
    except ValueError:
        return response.text


class ToolDispatcher:
    def __init__(
        self,
        catalog,
        payment_target=None,
        chain_id=None,
        base_url_override=None,
        timeout=30.0,
        http_client=None,
    ):
        self.catalog = catalog
        self.payment_target = payment_target
        self.chain_id = chain_id
        self.base_url_override = base_url_override.rstrip("/") if base_url_override else None
        self.timeout = timeout
        self._http = http_client or httpx.Client(timeout=timeout)

    def close(self):
        self._http.close()

    def resolve_url(self, url):
        """Point catalog URLs at a different upstream host (local proxy, staging)."""
        if not self.base_url_override:
            return url
        parsed = httpx.URL(url)
        query = f"?{parsed.query.decode()}" if parsed.query else ""
        return f"{self.base_url_override}{parsed.path}{query}"

    def build_headers(self, identity, payment=None):
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if identity is not None and identity.bearer:
            headers["Authorization"] = f"Bearer {identity.bearer}"
        if payment is not None:
            headers.update(payment.headers())
        return headers

    def dispatch(self, tool_id, args, identity, payment=None):
        """Unknown tool ids raise UnknownToolError; everything else is a DispatchResult."""
        tool = self.catalog.require(tool_id)
        url = self.resolve_url(tool.url)
        request_kwargs = {"headers": self.build_headers(identity, payment)}
        if tool.method in READ_METHODS:
            request_kwargs["params"] = args
        else:
            request_kwargs["json"] = args

        logger.info(f"🚀 [Dispatch] {tool_id} → {tool.method} {url}")
        try:
            response = self._http.request(tool.method, url, **request_kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"❌ [Dispatch] {tool_id} timed out: {e}")
            return DispatchResult(ERROR, error=f"Upstream timeout: {e}")
        except httpx.HTTPError as e:
            logger.error(f"❌ [Dispatch] {tool_id} failed: {e}")
            return DispatchResult(ERROR, error=f"Upstream unavailable: {e}")

        return self.interpret(response, tool, identity)

    def interpret(self, response, tool, identity):
        code = response.status_code
        if code == 402:
            return self._payment_required(response, tool, identity)
        if 200 <= code < 300:
            logger.info(f"✅ [Dispatch] Success for {tool.id}")
            return DispatchResult(SUCCESS, data=_json_or_text(response), status_code=code)
        message = _error_message(response)
        logger.warning(f"⚠️  [Dispatch] {tool.id} upstream returned {code}: {message}")
        return DispatchResult(ERROR, error=f"Backend returned {code}: {message}", status_code=code)

    def _payment_required(self, response, tool, identity):
        if isinstance(identity, UserIdentity):
            return DispatchResult(
                ERROR,
                error="Insufficient credits. Please top up your account or switch to x402 mode.",
                status_code=402,
            )

        body = _json_or_text(response)
        details = dict(body) if isinstance(body, dict) else {"message": body}
        suggested = details.get("receiver_address")
        # The agent only ever pays into its own payment contract.
        details["receiver_address"] = self.payment_target
        if self.chain_id is not None:
            details["chain_id"] = self.chain_id
        if suggested and suggested != self.payment_target:
            logger.info(f"🔁 [Dispatch] Upstream payee {suggested} replaced by {self.payment_target}")
        details["endpoint"] = tool.url
        details["toolName"] = tool.id
        details.setdefault("serviceId", tool.id)
        return DispatchResult(PAYMENT_REQUIRED, details=details, status_code=402)

    def forward(self, method, url, identity, payment=None, params=None, body=None):
        """Raw passthrough for the paid proxy route. Transport errors propagate."""
        url = self.resolve_url(url)
        logger.info(f"🔀 [Proxy] Forwarding {method} to {url}")
        return self._http.request(
            method,
            url,
            params=params or None,
            json=body,
            headers=self.build_headers(identity, payment),
        )
