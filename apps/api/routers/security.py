"""Security router: ban status, ban administration and input validation.

Endpoints:
- GET /api/ban-status - Ban status for the calling client (fails open)
- GET /api/admin/bans - Ban, tracking and abuse stats for an identity
- POST /api/admin/bans - Create a ban (idempotent)
- DELETE /api/admin/bans - Remove active bans
- POST /api/validate-rules - Validate custom debate rules
- POST /api/debate/validate - Validate and sanitize a full debate config
"""

import asyncio
import json
import logging
import math
from dataclasses import replace
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field

from guardrails.audit_logger import SecurityAuditLog, get_audit_log
from guardrails.validate_input import (
    DebateConfigInput,
    InputValidator,
    get_input_validator,
)
from middleware.admin_auth import verify_admin
from middleware.rate_limit import RateLimiter, RateLimitType, get_rate_limiter
from services.abuse_models import BanDuration, BanReason, BanType, IPBan
from services.abuse_store import AbuseStoreError
from services.abuse_tracker import AbuseTracker, get_abuse_tracker
from services.ip_hash import (
    SecurityContext,
    extract_security_context,
    get_client_ip,
    get_client_metadata,
    hash_ip,
    hash_prefix,
    is_valid_ip_hash,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["security"])

DEBATE_ENDPOINT = "/api/debate"

BAN_REASON_MESSAGES = {
    BanReason.CONTENT_FILTER_VIOLATION: "Multiple content policy violations",
    BanReason.PROMPT_INJECTION: "Attempted prompt injection attacks",
    BanReason.RATE_LIMIT_ABUSE: "Excessive rate limit violations",
    BanReason.SPAM: "Spam activity detected",
    BanReason.HARASSMENT: "Harassment or abusive behavior",
    BanReason.ILLEGAL_CONTENT: "Illegal content submission",
    BanReason.BOT_ACTIVITY: "Automated bot activity detected",
    BanReason.MANUAL: "Policy violation",
}


# ==================== Dependencies ====================


def _from_state(request: Request, name: str, fallback):
    """Instance wired by the app lifespan, else the process-wide default."""
    value = getattr(request.app.state, name, None)
    return fallback() if value is None else value


def get_tracker(request: Request) -> AbuseTracker:
    return _from_state(request, "abuse_tracker", get_abuse_tracker)


def get_validator(request: Request) -> InputValidator:
    return _from_state(request, "input_validator", get_input_validator)


def get_limiter(request: Request) -> RateLimiter:
    return _from_state(request, "rate_limiter", get_rate_limiter)


def get_audit(request: Request) -> SecurityAuditLog:
    return _from_state(request, "audit_log", get_audit_log)


def request_context(request: Request) -> SecurityContext:
    """Security context with the same client IP the rate limiter sees."""
    return replace(extract_security_context(request.headers), ip=get_client_ip(request.headers))


# ==================== Request/Response Models ====================


class BanStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_banned: bool = Field(alias="isBanned")
    ban_type: Optional[BanType] = Field(None, alias="banType")
    reason: Optional[str] = None
    expires_at: Optional[str] = Field(None, alias="expiresAt")
    remaining_ms: Optional[int] = Field(None, alias="remainingMs")


class CreateBanInput(BaseModel):
    """Request body for creating a ban. Either ``ip`` or ``ipHash`` is required."""

    model_config = ConfigDict(populate_by_name=True)

    ip: Optional[str] = None
    ip_hash: Optional[str] = Field(None, alias="ipHash")
    reason: BanReason
    ban_type: Optional[BanType] = Field(None, alias="banType")
    duration: Optional[BanDuration] = None
    description: Optional[str] = Field(None, max_length=500)


class CreateBanResponse(BaseModel):
    success: bool
    ban: IPBan


class ValidateRulesInput(BaseModel):
    rules: list[str]


def banned_message(remaining_ms: Optional[int]) -> str:
    """User-facing suspension message; temporary bans say when to retry."""
    if remaining_ms:
        minutes = math.ceil(remaining_ms / 1000 / 60)
        return f"Your access has been temporarily suspended. Please try again in {minutes} minutes."
    return "Your access has been permanently suspended due to policy violations."


def _resolve_target_hash(ip: Optional[str], ip_hash: Optional[str]) -> str:
    if ip:
        return hash_ip(ip)
    if ip_hash:
        if not is_valid_ip_hash(ip_hash):
            raise HTTPException(status_code=400, detail="ipHash must be a 64-character hex SHA-256 digest")
        return ip_hash
    raise HTTPException(status_code=400, detail="Either ipHash or ip parameter required")


# ==================== Public Endpoints ====================


@router.get("/ban-status", response_model=BanStatusResponse, response_model_exclude_none=True)
async def ban_status(
    request: Request,
    tracker: AbuseTracker = Depends(get_tracker),
) -> BanStatusResponse:
    """Ban status for the calling client. Any failure reports not banned."""
    try:
        ip_hash = hash_ip(get_client_ip(request.headers))
        ban_check = await tracker.check_ban(ip_hash)
    except Exception as e:
        logger.error(f"Ban status check error, failing open: {e}")
        return BanStatusResponse(is_banned=False)

    if not ban_check.is_banned or ban_check.ban is None:
        return BanStatusResponse(is_banned=False)

    ban = ban_check.ban
    return BanStatusResponse(
        is_banned=True,
        ban_type=ban.ban_type,
        reason=BAN_REASON_MESSAGES.get(ban.reason, "Terms of Service violation"),
        expires_at=ban.expires_at.isoformat() if ban.expires_at else None,
        remaining_ms=ban_check.remaining_ms,
    )


@router.post("/validate-rules")
async def validate_rules(
    body: ValidateRulesInput,
    request: Request,
    validator: InputValidator = Depends(get_validator),
) -> dict[str, Any]:
    """Validate custom debate rules. Returns 400 with errors when invalid."""
    result = await validator.validate_custom_rules(body.rules, request_context(request))
    payload = {
        "valid": result.valid,
        "rules": json.loads(result.sanitized_value) if result.sanitized_value else [],
        "errors": result.errors,
        "blocked": result.blocked,
        "block_reason": result.block_reason.value if result.block_reason else None,
    }
    if not result.valid:
        raise HTTPException(status_code=400, detail=payload)
    return payload


@router.post("/debate/validate")
async def validate_debate_config(
    body: DebateConfigInput,
    request: Request,
    response: Response,
    validator: InputValidator = Depends(get_validator),
    limiter: RateLimiter = Depends(get_limiter),
    tracker: AbuseTracker = Depends(get_tracker),
    audit_log: SecurityAuditLog = Depends(get_audit),
) -> dict[str, Any]:
    """Validate and sanitize a debate configuration before creation.

    Gated by the debate-creation rate limit and the caller's ban status.
    """
    context = request_context(request)
    ip_hash = hash_ip(context.ip)

    limit = await limiter.check_rate_limit(ip_hash, RateLimitType.DEBATE_CREATION)
    rate_headers = RateLimiter.headers_for(limit)
    response.headers.update(rate_headers)

    if not limit.allowed:
        logger.warning(f"Debate creation limit exceeded for {hash_prefix(ip_hash)}")
        audit_log.log_rate_limit_violation(
            context, DEBATE_ENDPOINT, RateLimitType.DEBATE_CREATION.value, limit.count, limit.limit
        )
        await tracker.record_rate_limit_hit(ip_hash, DEBATE_ENDPOINT)
        raise HTTPException(
            status_code=429,
            detail="Debate creation limit exceeded. Try again later.",
            headers=rate_headers,
        )

    # Checks the ban, logs bypass attempts and records the visit
    country = get_client_metadata(request.headers).get("country")
    visit = await tracker.track_visit(context.ip, context.user_agent, country)
    if visit.is_banned:
        logger.warning(f"Banned client {hash_prefix(ip_hash)} attempted to create a debate")
        raise HTTPException(
            status_code=403,
            detail=banned_message(visit.remaining_ms),
            headers=rate_headers,
        )

    result = await validator.validate_and_sanitize_debate_config(body, context)
    if not result.valid:
        raise HTTPException(
            status_code=400,
            detail={
                "valid": False,
                "errors": result.errors,
                "blocked": result.blocked,
                "block_reason": result.block_reason.value if result.block_reason else None,
            },
            headers=rate_headers,
        )

    await tracker.increment_debate_count(ip_hash)
    return {"valid": True, "config": result.sanitized_config}


# ==================== Admin Endpoints ====================


@router.get("/admin/bans")
async def get_ban_details(
    ip: Optional[str] = Query(None),
    ip_hash: Optional[str] = Query(None, alias="ipHash"),
    tracker: AbuseTracker = Depends(get_tracker),
    _admin: str = Depends(verify_admin),
) -> dict[str, Any]:
    """Ban check, tracking record and abuse stats for an identity."""
    target = _resolve_target_hash(ip, ip_hash)
    ban_check, tracking, stats = await asyncio.gather(
        tracker.check_ban(target),
        tracker.get_tracking_record(target),
        tracker.get_abuse_stats_for_ip(target),
    )
    return {
        "ip_hash": target,
        "ban": ban_check.model_dump(mode="json"),
        "tracking": tracking.model_dump(mode="json") if tracking else None,
        "stats": stats,
    }


@router.post("/admin/bans", response_model=CreateBanResponse)
async def create_ban(
    body: CreateBanInput,
    tracker: AbuseTracker = Depends(get_tracker),
    _admin: str = Depends(verify_admin),
) -> CreateBanResponse:
    """Ban an identity. Returns the existing ban if one is already active."""
    target = _resolve_target_hash(body.ip, body.ip_hash)
    try:
        ban = await tracker.ban_ip(
            target,
            body.reason,
            ban_type=body.ban_type,
            duration=body.duration,
            description=body.description,
            created_by="admin",
        )
    except AbuseStoreError as e:
        logger.error(f"Ban creation error for {hash_prefix(target)}: {e}")
        raise HTTPException(status_code=500, detail="Failed to create ban")
    return CreateBanResponse(success=True, ban=ban)


@router.delete("/admin/bans")
async def delete_ban(
    ip: Optional[str] = Query(None),
    ip_hash: Optional[str] = Query(None, alias="ipHash"),
    tracker: AbuseTracker = Depends(get_tracker),
    _admin: str = Depends(verify_admin),
) -> dict[str, Any]:
    """Deactivate every active ban for an identity."""
    target = _resolve_target_hash(ip, ip_hash)
    try:
        removed = await tracker.unban_ip(target)
    except AbuseStoreError as e:
        logger.error(f"Ban removal error for {hash_prefix(target)}: {e}")
        raise HTTPException(status_code=500, detail="Failed to remove ban")
    return {"success": True, "removed": removed}
