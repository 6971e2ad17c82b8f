import logging
import time
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import FastAPI, Request, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from audit_log import (
    AuditLogStore,
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    StorageUnavailable,
    sort_newest_first,
)
from config import Settings, settings
from pipeline import ClassificationPipeline
from policy import PolicyCache, PolicySummaryReader, summarize
from proxy import forward_request
from rules import Decision, RequestAttributes, RuleEvaluator
from schemas import DashboardResponse, DeniedResponse, ErrorResponse, HealthResponse, LogsResponse


# ======================================================
# App Setup
# ======================================================

app = FastAPI(title="Edge Gatekeeper")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("gatekeeper.worker")


# ======================================================
# CORS (allowed responses only)
# ======================================================

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Max-Age": "86400",
}

GATEWAY_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "TRACE"]


# ======================================================
# Request Context (Facts Only)
# ======================================================

class RequestContext(BaseModel):
    timestamp: str

    method: str
    path: str
    query_string: str

    ip: str
    country: Optional[str]
    user_agent: Optional[str]

    decision: str
    rule: Optional[str]
    reason: Optional[str]

    status_code: int
    latency_ms: int


# ======================================================
# Wiring
# ======================================================

def build_audit_store(cfg: Settings) -> AuditLogStore:
    if cfg.AUDIT_BACKEND == "memory":
        kv = InMemoryKeyValueStore()
    else:
        from redis_client import redis_client
        kv = RedisKeyValueStore(redis_client)

    return AuditLogStore(
        kv,
        ttl_seconds=cfg.AUDIT_LOG_TTL_SECONDS,
        timeout=cfg.AUDIT_STORE_TIMEOUT,
        prefix=cfg.AUDIT_LOG_PREFIX,
    )


def build_policy_reader(cfg: Settings) -> Optional[PolicySummaryReader]:
    if not cfg.CLOUDFLARE_ACCOUNT_ID or not cfg.CLOUDFLARE_API_TOKEN:
        return None
    return PolicySummaryReader(
        base_url=cfg.POLICY_API_BASE_URL,
        account_id=cfg.CLOUDFLARE_ACCOUNT_ID,
        api_token=cfg.CLOUDFLARE_API_TOKEN,
        timeout=cfg.POLICY_REFRESH_TIMEOUT,
    )


audit_store = build_audit_store(settings)
pipeline = ClassificationPipeline(RuleEvaluator(settings.rule_config()), audit_store)
policy_cache = PolicyCache(build_policy_reader(settings))


def get_settings() -> Settings:
    return settings


def get_audit_store() -> AuditLogStore:
    return audit_store


def get_pipeline() -> ClassificationPipeline:
    return pipeline


def get_policy_cache() -> PolicyCache:
    return policy_cache


def get_upstream_client() -> Optional[httpx.AsyncClient]:
    # None: forward_request opens a client per request
    return None


# ======================================================
# Lifecycle
# ======================================================

@app.on_event("startup")
async def startup():
    policy_cache.start_background_refresh()


@app.on_event("shutdown")
async def shutdown():
    await policy_cache.stop()


# ======================================================
# Health
# ======================================================

@app.get("/health", response_model=HealthResponse)
def health_check():
    return {"status": "ok"}


# ======================================================
# Dashboard data (read-only)
# ======================================================

@app.get(
    "/_gatekeeper/logs",
    response_model=LogsResponse,
    responses={503: {"model": ErrorResponse}},
)
async def recent_logs(
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    store: AuditLogStore = Depends(get_audit_store),
    cfg: Settings = Depends(get_settings),
):
    try:
        records = await store.list_recent(limit or cfg.DASHBOARD_LOG_LIMIT)
    except StorageUnavailable as e:
        logger.error(f"Log listing failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit log store unavailable",
        )

    return {"logs": sort_newest_first(records)}


@app.get("/_gatekeeper/dashboard", response_model=DashboardResponse)
async def dashboard(
    store: AuditLogStore = Depends(get_audit_store),
    cache: PolicyCache = Depends(get_policy_cache),
    cfg: Settings = Depends(get_settings),
):
    rules, loaded, policy_error = cache.snapshot()

    logs_available = True
    try:
        records = await store.list_recent(cfg.DASHBOARD_LOG_LIMIT)
    except StorageUnavailable as e:
        logger.warning(f"Dashboard rendered without logs: {e}")
        records = []
        logs_available = False

    return {
        "rules": rules,
        "summary": summarize(rules),
        "logs": sort_newest_first(records),
        "policy_available": loaded and policy_error is None,
        "policy_error": policy_error,
        "logs_available": logs_available,
        "generated_at": datetime.now(timezone.utc),
    }


# ======================================================
# Gateway (ALL REAL TRAFFIC)
# ======================================================

@app.api_route("/{path:path}", methods=GATEWAY_METHODS)
async def gateway(
    path: str,
    request: Request,
    pipeline: ClassificationPipeline = Depends(get_pipeline),
    cfg: Settings = Depends(get_settings),
    upstream_client: Optional[httpx.AsyncClient] = Depends(get_upstream_client),
):
    start_time = time.monotonic()
    attrs = extract_attributes(request, cfg)

    verdict = await pipeline.handle(attrs)

    if verdict.decision == Decision.DENY:
        log_request(attrs, verdict.decision.value, verdict.rule, verdict.reason, verdict.status_code, start_time)

        headers = {}
        if verdict.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            headers["Allow"] = ", ".join(sorted(pipeline.evaluator.config.allowed_methods))

        return JSONResponse(
            status_code=verdict.status_code,
            content=DeniedResponse(detail=verdict.reason, rule=verdict.rule).model_dump(),
            headers=headers,
        )

    # --------------------------------------------------
    # Forward to Upstream (Transparent)
    # --------------------------------------------------

    if cfg.UPSTREAM_BASE_URL:
        upstream_url = f"{cfg.UPSTREAM_BASE_URL.rstrip('/')}/{path}"
        try:
            response = await forward_request(
                request=request,
                upstream_url=upstream_url,
                client_ip=attrs.source_ip,
                client=upstream_client,
            )
        except HTTPException as e:
            log_request(attrs, Decision.ALLOW.value, None, "Upstream error", e.status_code, start_time)
            raise
    else:
        response = JSONResponse(content={"status": "allowed"})

    log_request(attrs, Decision.ALLOW.value, None, None, response.status_code, start_time)

    for k, v in CORS_HEADERS.items():
        response.headers.setdefault(k, v)

    return response


# ======================================================
# Utils
# ======================================================

def extract_attributes(request: Request, cfg: Settings) -> RequestAttributes:
    """
    Map transport facts onto rule inputs. Edge headers take precedence
    over the socket peer.
    """
    client_ip = request.headers.get(cfg.CLIENT_IP_HEADER)
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    query = request.url.query

    return RequestAttributes(
        source_ip=client_ip,
        country=request.headers.get(cfg.COUNTRY_HEADER),
        user_agent=request.headers.get("user-agent"),
        method=request.method,
        path=request.url.path,
        query_string=f"?{query}" if query else "",
    )


def log_request(
    attrs: RequestAttributes,
    decision: str,
    rule: Optional[str],
    reason: Optional[str],
    status_code: int,
    start_time: float,
) -> None:
    ctx = RequestContext(
        timestamp=datetime.now(timezone.utc).isoformat(),
        method=attrs.method,
        path=attrs.path,
        query_string=attrs.query_string,
        ip=attrs.source_ip,
        country=attrs.country,
        user_agent=attrs.user_agent,
        decision=decision,
        rule=rule,
        reason=reason,
        status_code=status_code,
        latency_ms=int((time.monotonic() - start_time) * 1000),
    )
    logger.info(ctx.model_dump_json())
