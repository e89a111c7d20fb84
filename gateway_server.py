import time
import logging
from collections import defaultdict
from urllib.parse import urljoin

import httpx
import uvicorn
from fastapi import FastAPI, Request, HTTPException, Response, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool
from web3 import Web3

from x402_agent import __version__
from x402_agent.auth import ServiceIdentity, l402_from_header, resolve_identity
from x402_agent.config import Settings, load_environment
from x402_agent.dispatcher import PaymentContext
from x402_agent.errors import ModelServiceError
from x402_agent.orchestrator import ChatRequest
from x402_agent.services import build_services

logger = logging.getLogger("Gateway")


# --- IN-MEMORY RATE LIMITER ---

RATE_LIMITS = defaultdict(list)

RL_WINDOW = 60  # seconds
RL_LAST_SWEEP = 0.0


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


def evict_idle_clients(now):
    """Drop IPs with no request inside the window."""
    idle = [ip for ip, hits in RATE_LIMITS.items() if not hits or now - hits[-1] >= RL_WINDOW]
    for ip in idle:
        del RATE_LIMITS[ip]
    return len(idle)


async def rate_limit(request: Request, max_requests: int):
    global RL_LAST_SWEEP
    ip = get_client_ip(request)
    now = time.time()
    if now - RL_LAST_SWEEP >= RL_WINDOW:
        evict_idle_clients(now)
        RL_LAST_SWEEP = now
    RATE_LIMITS[ip] = [t for t in RATE_LIMITS[ip] if now - t < RL_WINDOW]
    if len(RATE_LIMITS[ip]) >= max_requests:
        logger.warning(f"🛑 [RATE LIMIT] Blocked IP {ip}")
        raise HTTPException(status_code=429, detail="Too Many Requests")
    RATE_LIMITS[ip].append(now)


async def rl_chat(request: Request):
    await rate_limit(request, max_requests=30)  # Each chat turn costs a model call


async def rl_standard(request: Request):
    await rate_limit(request, max_requests=120)


def resolve_proxy_target(target, base_url):
    """Absolute or path-only X-Target-Url, pinned to the upstream host."""
    url = urljoin(base_url.rstrip("/") + "/", target.strip())
    allowed = httpx.URL(base_url)
    parsed = httpx.URL(url)
    if parsed.scheme not in ("http", "https") or parsed.host != allowed.host:
        return None
    return url


def parse_images(raw):
    """Inline images as {mimeType, data (base64)}; None when the shape is wrong."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        return None
    images = []
    for img in raw:
        if not isinstance(img, dict):
            return None
        mime_type, data = img.get("mimeType"), img.get("data")
        if not isinstance(mime_type, str) or not isinstance(data, str) or not data:
            return None
        images.append({"mimeType": mime_type, "data": data})
    return images


def _payload(response):
    try:
        return response.json()
    except ValueError:
        return None


def create_app(services=None) -> FastAPI:
    if services is None:
        load_environment()
        services = build_services(Settings.from_env())
    settings = services.settings

    app = FastAPI(title="x402 Agent Gateway", version=__version__)
    app.state.services = services

    # --- CORS CONFIGURATION ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Validation-Proof", "WWW-Authenticate"],
    )

    @app.on_event("startup")
    async def warm_rate_cache():
        if services.rate_cache is not None:
            services.rate_cache.refresh_in_background()

    @app.on_event("shutdown")
    async def close_clients():
        services.close()

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception):
        logger.exception(f"💥 [Gateway] Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"error": "Internal error"})

    @app.get("/")
    async def root():
        return {
            "status": "operational",
            "version": __version__,
            "message": "x402 Agent Gateway. Pay per tool call.",
            "tools": len(services.catalog),
        }

    # --- AGENT CHAT ---

    @app.post("/api/agent/chat", dependencies=[Depends(rl_chat)])
    async def agent_chat(request: Request):
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON")

        message = body.get("message") or ""
        tool_call = body.get("tool_call")
        history = body.get("history") or []
        payment_tx = body.get("paymentTx") or request.headers.get("x-payment-tx")

        if not isinstance(message, str):
            raise HTTPException(status_code=400, detail="message must be a string")
        if not message.strip() and tool_call is None:
            raise HTTPException(status_code=400, detail="Message is required")
        if not isinstance(history, list):
            raise HTTPException(status_code=400, detail="history must be a list")
        if payment_tx is not None and not isinstance(payment_tx, str):
            raise HTTPException(status_code=400, detail="paymentTx must be a string")
        images = parse_images(body.get("images"))
        if images is None:
            raise HTTPException(status_code=400, detail="images must be a list of {mimeType, data}")

        identity = resolve_identity(
            settings.verifier_service_token,
            authorization=request.headers.get("Authorization"),
            user_token=body.get("userToken"),
            mode=body.get("mode"),
        )
        payment_amount = body.get("paymentAmount")
        chat = ChatRequest(
            message=message,
            history=[turn for turn in history if isinstance(turn, dict)],
            payment_tx=payment_tx,
            payment_wallet=body.get("paymentWallet"),
            payment_amount=str(payment_amount) if payment_amount is not None else None,
            tool_call=tool_call,
            images=images,
        )

        try:
            reply = await run_in_threadpool(services.orchestrator.handle, chat, identity)
        except ModelServiceError as e:
            return JSONResponse(status_code=502, content={"error": "Model service unavailable", "details": str(e)})
        return reply.to_dict()

    # --- ERC-8004 ---

    @app.get("/api/agent/info", dependencies=[Depends(rl_standard)])
    async def agent_info():
        info = await run_in_threadpool(services.agent_info)
        if info is None:
            return JSONResponse(status_code=404, content={"error": "Agent not registered or ERC8004 not configured"})
        return info

    @app.get("/api/agent/agent-card.json", dependencies=[Depends(rl_standard)])
    async def agent_card():
        card = await run_in_threadpool(services.agent_card)
        if card is None:
            return JSONResponse(status_code=404, content={"error": "Agent card not available"})
        return card

    @app.get("/api/agent/payments/{payer}", dependencies=[Depends(rl_standard)])
    async def agent_payments(payer: str):
        if not Web3.is_address(payer):
            raise HTTPException(status_code=400, detail="Invalid payer address")
        payments = await run_in_threadpool(services.payments_by, payer)
        if payments is None:
            return JSONResponse(status_code=404, content={"error": "Payment contract not configured"})
        return {"payer": Web3.to_checksum_address(payer), "count": len(payments), "payments": payments}

    # --- DISCOVERY ---

    @app.get("/api/tools")
    async def list_tools():
        return services.catalog.to_manifest()

    @app.get("/v1/x402/info")
    async def x402_info():
        """Returns gateway x402 configuration for agent/client discovery."""
        return {
            "x402_enabled": bool(services.payment_target),
            "network": settings.network_name,
            "chain_id": settings.chain_id,
            "pay_to": services.payment_target,
            "currency": settings.currency,
            "default_price_usd": settings.default_price_usd,
            "payment_header": "x-payment-tx",
            "tools": [tool.id for tool in services.catalog],
        }

    # --- PAID PROXY ---

    @app.api_route("/api/proxy", methods=["GET", "POST"], dependencies=[Depends(rl_standard)])
    async def paid_proxy(request: Request):
        target = request.headers.get("X-Target-Url")
        if not target:
            raise HTTPException(status_code=400, detail="X-Target-Url header required")
        target_url = resolve_proxy_target(target, settings.verifier_api_url)
        if target_url is None:
            raise HTTPException(status_code=400, detail="X-Target-Url must point at the verification API")

        path = httpx.URL(target_url).path
        tool = services.catalog.match_path(path)
        tx_ref = request.headers.get("X-Payment-Tx") or l402_from_header(request.headers.get("Authorization"))
        identity = ServiceIdentity(token=settings.verifier_service_token)

        decision = await run_in_threadpool(services.gate.check_payment, tool, tx_ref, identity)
        if not decision.allowed:
            details = services.gate.payment_details(decision, tool, endpoint=target_url)
            quote = decision.quote
            return JSONResponse(
                status_code=402,
                content=details,
                headers={
                    "WWW-Authenticate": (
                        f'L402 invoice="{services.payment_target}", price="{quote.amount_str} {quote.currency}"'
                    )
                },
            )

        body = None
        if request.method == "POST":
            try:
                body = await request.json()
            except ValueError:
                body = None
        params = dict(request.query_params)
        payment = PaymentContext(
            tx_hash=tx_ref,
            wallet=request.headers.get("x-wallet-address"),
            amount=request.headers.get("x-payment-amount"),
        )

        try:
            upstream = await run_in_threadpool(
                services.dispatcher.forward, request.method, target_url, identity, payment, params, body
            )
        except httpx.HTTPError as e:
            logger.error(f"❌ [Proxy] Forwarding failed: {e}")
            return JSONResponse(status_code=502, content={"error": "Upstream Service Unavailable"})

        logger.info(f"📨 [Proxy] Upstream responded with {upstream.status_code}")
        content = _payload(upstream)
        headers = {}

        if upstream.status_code < 400:
            args = dict(params)
            if isinstance(body, dict):
                args.update(body)
            tool_name = tool.id if tool else (path.rstrip("/").split("/")[-1] or "unknown-api")
            outcome = await run_in_threadpool(
                services.recorder.record, tool_name, args, content if content is not None else upstream.text, tx_ref
            )
            if outcome.proof_id:
                logger.info(f"🧾 [Proxy] Proof recorded: {outcome.proof_id}")
                headers["X-Validation-Proof"] = outcome.proof_id
                if isinstance(content, dict):
                    content["_proof"] = outcome.proof_id

        if content is None:
            return Response(
                content=upstream.content,
                status_code=upstream.status_code,
                media_type=upstream.headers.get("content-type"),
                headers=headers,
            )
        return JSONResponse(status_code=upstream.status_code, content=content, headers=headers)

    return app


if __name__ == "__main__":
    load_environment()
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(name)-12s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    app = create_app(build_services(settings))
    logger.info(f"🚀 x402 Agent Gateway starting on {settings.port} ({settings.environment})...")
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
