"""
Maintenance and API-key admission gate.

Every non-exempt request is admitted only when the workshop's API key (stored in
MaintenanceSettings) validates against the external key service and maintenance mode is off.
Validation results are cached briefly; a recent success keeps the service open for a grace
period while the validator is unreachable. Without a usable result the gate fails closed.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import httpx
import structlog
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..auth.security import peek_role
from ..config import settings
from ..errors import UpstreamUnavailable
from ..models.models import MaintenanceSettings

log = structlog.get_logger(__name__)

EXEMPT_PATHS = {"/", "/health", "/maintenance/settings/public", "/metrics", "/docs", "/redoc", "/openapi.json"}
EXEMPT_PREFIXES = ("/auth/",)

NO_KEY_MESSAGE = "Service is not configured. Please contact the administrator."
INVALID_KEY_MESSAGE = "Service is temporarily unavailable. Please contact the administrator."


def is_exempt(path: str) -> bool:
    return path in EXEMPT_PATHS or path == "/auth" or path.startswith(EXEMPT_PREFIXES)


@dataclass
class _CachedResult:
    valid: bool
    checked_at: float


class ApiKeyValidationCache:
    """Per-process validation results, owned by whoever constructs the gate."""

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        grace_period_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = settings.api_key_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.grace_period_seconds = settings.api_key_grace_period_seconds if grace_period_seconds is None else grace_period_seconds
        self.clock = clock
        self._results: Dict[str, _CachedResult] = {}
        self._last_success: Dict[str, float] = {}

    def fresh(self, api_key: str) -> Optional[bool]:
        """Cached result for the key if it is younger than the TTL."""
        cached = self._results.get(api_key)
        if cached and self.clock() - cached.checked_at < self.ttl_seconds:
            return cached.valid
        return None

    def store(self, api_key: str, valid: bool) -> None:
        now = self.clock()
        self._results[api_key] = _CachedResult(valid=valid, checked_at=now)
        if valid:
            self._last_success[api_key] = now
        else:
            self._last_success.pop(api_key, None)

    def store_grace(self, api_key: str) -> None:
        """Trust the key for one TTL while the validator is down. The last success is left as is."""
        self._results[api_key] = _CachedResult(valid=True, checked_at=self.clock())

    def within_grace(self, api_key: str) -> bool:
        last = self._last_success.get(api_key)
        return last is not None and self.clock() - last < self.grace_period_seconds

    def clear(self) -> None:
        self._results.clear()
        self._last_success.clear()


class ApiKeyValidator:
    """Client for the external key validation service."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.api_key_validator_url
        self.timeout = settings.api_key_timeout_seconds if timeout is None else timeout
        self.transport = transport

    async def validate(self, api_key: str) -> bool:
        """
        Ask the validation service whether a key is valid.

        Returns:
            True only for a successful response carrying {"valid": true}

        Raises:
            UpstreamUnavailable: Network error, timeout, 5xx or unreadable body
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json={"apiKey": api_key})
        except httpx.HTTPError as e:
            raise UpstreamUnavailable("API key validator unreachable", {"error": str(e)}) from e
        if response.status_code >= 500:
            raise UpstreamUnavailable("API key validator failed", {"status_code": response.status_code})
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamUnavailable("API key validator returned an unreadable response") from e
        return response.is_success and isinstance(data, dict) and data.get("valid") is True


def _as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ApiKeyGate:
    """
    Admission decisions for the maintenance middleware.

    Args:
        session_factory: Callable returning a new Session
        validator: External key validator
        cache: Validation cache; a fresh one is created when omitted
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        validator: Optional[ApiKeyValidator] = None,
        cache: Optional[ApiKeyValidationCache] = None,
    ):
        self.session_factory = session_factory
        self.validator = validator or ApiKeyValidator()
        self.cache = cache or ApiKeyValidationCache()

    def _load_settings(self) -> Optional[dict]:
        db = self.session_factory()
        try:
            row = db.query(MaintenanceSettings).filter(MaintenanceSettings.id == 1).first()
            if row is None:
                return None
            return {
                "is_under_maintenance": bool(row.is_under_maintenance),
                "maintenance_message": row.maintenance_message,
                "api_key": row.api_key,
                "last_validation_at": _as_naive_utc(row.last_api_key_validation_at),
                "last_validation_success": row.last_api_key_validation_success,
            }
        finally:
            db.close()

    def _persist_result(self, api_key: str, valid: bool) -> None:
        db = self.session_factory()
        try:
            row = db.query(MaintenanceSettings).filter(MaintenanceSettings.id == 1).first()
            # Skip if the key was replaced while we were validating
            if row is not None and row.api_key == api_key:
                row.last_api_key_validation_at = datetime.utcnow()
                row.last_api_key_validation_success = valid
                db.commit()
        except Exception as e:
            db.rollback()
            log.error("api_key_result_persist_failed", error=str(e))
        finally:
            db.close()

    def _persisted_success_in_grace(self, state: dict) -> bool:
        last_at = state.get("last_validation_at")
        if not state.get("last_validation_success") or last_at is None:
            return False
        return datetime.utcnow() - last_at < timedelta(seconds=self.cache.grace_period_seconds)

    async def key_is_valid(self, state: dict) -> bool:
        api_key = state.get("api_key")
        if not api_key:
            return False

        cached = self.cache.fresh(api_key)
        if cached is not None:
            return cached

        try:
            valid = await self.validator.validate(api_key)
        except UpstreamUnavailable as e:
            if self.cache.within_grace(api_key) or self._persisted_success_in_grace(state):
                log.warning("api_key_validator_unavailable_grace", error=e.message)
                self.cache.store_grace(api_key)
                return True
            log.error("api_key_validator_unavailable", error=e.message)
            return False

        self.cache.store(api_key, valid)
        await run_in_threadpool(self._persist_result, api_key, valid)
        if not valid:
            log.warning("api_key_invalid")
        return valid

    async def admit(self, request: Request) -> Optional[dict]:
        """
        Decide whether a request may proceed.

        Returns:
            None to admit, or the 503 response body to reject with
        """
        try:
            state = await run_in_threadpool(self._load_settings)
        except Exception as e:
            log.error("maintenance_settings_unavailable", error=str(e))
            state = None

        if not state or not state.get("api_key"):
            return _rejection(NO_KEY_MESSAGE)

        if state["is_under_maintenance"] and not _is_admin(request):
            return _rejection(state["maintenance_message"])

        if not await self.key_is_valid(state):
            return _rejection(INVALID_KEY_MESSAGE)
        return None


def _is_admin(request: Request) -> bool:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return peek_role(token) == "administrator"


def _rejection(message: str) -> dict:
    return {
        "error": "Service Unavailable",
        "message": message,
        "is_under_maintenance": True,
    }


class MaintenanceGate(BaseHTTPMiddleware):
    """Rejects non-exempt requests with 503 unless the ApiKeyGate in app.state admits them."""

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or is_exempt(request.url.path):
            return await call_next(request)
        gate: ApiKeyGate = request.app.state.api_key_gate
        rejection = await gate.admit(request)
        if rejection is not None:
            return JSONResponse(status_code=503, content=rejection)
        return await call_next(request)
