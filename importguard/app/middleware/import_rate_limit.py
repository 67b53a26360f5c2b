"""Import rate limiting middleware.

Gates import endpoints with the distributed ImportRateLimiter:
- the limiter is consulted before the route runs;
- a denial becomes a 429 with rate limit headers and retry guidance;
- a store failure becomes a generic 500, never a pass-through;
- counters are incremented only after the route returned successfully.
"""

from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from importguard.app.core.config import settings
from importguard.app.core.logging import get_log_context, get_logger
from importguard.app.exceptions import RateLimitStoreError
from importguard.app.services.import_rate_limit import ImportRateLimiter, RateLimitResult

logger = get_logger(__name__)

UserIdResolver = Callable[[Request], Optional[str]]


def default_user_id_resolver(request: Request) -> Optional[str]:
    """Read the user ID set on request.state by the auth layer."""
    user_id = getattr(request.state, "user_id", None)
    if user_id is None or user_id == "":
        return None
    return str(user_id)


def rate_limit_exceeded_response(result: RateLimitResult) -> JSONResponse:
    """Build the 429 response for a denied import."""
    return JSONResponse(
        status_code=429,
        content=result.to_error_body(),
        headers=result.to_headers(),
    )


def internal_error_response(message: str = "Failed to check rate limit") -> JSONResponse:
    """Build the generic 500 response; carries no rate limit semantics."""
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": message,
            "error": {"code": "INTERNAL_ERROR"},
        },
    )


def unauthorized_response() -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={
            "success": False,
            "message": "Unauthorized",
            "error": {"code": "UNAUTHORIZED"},
        },
    )


class ImportRateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce import rate limits on selected routes.

    Limits are applied per user, per client IP and per target wallet. The
    wallet comes from the ``walletId`` query parameter so the request body
    is never consumed here; without it the wallet dimension is skipped.
    """

    def __init__(
        self,
        app,
        limiter: Optional[ImportRateLimiter] = None,
        paths: Optional[Iterable[str]] = None,
        methods: Iterable[str] = ("POST",),
        user_id_resolver: UserIdResolver = default_user_id_resolver,
        trust_forwarded_for: Optional[bool] = None,
        enabled: Optional[bool] = None,
    ):
        """Initialize the middleware.

        Args:
            app: ASGI application
            limiter: Limiter to use; defaults to app.state.import_rate_limiter
            paths: Guarded path prefixes (defaults from settings)
            methods: Guarded HTTP methods
            user_id_resolver: Extracts the authenticated user ID from a request
            trust_forwarded_for: Use the first X-Forwarded-For hop as client IP
            enabled: Turn enforcement on/off (defaults from settings)
        """
        super().__init__(app)
        self._limiter = limiter
        self.paths = tuple(paths if paths is not None else settings.import_rate_limit_paths)
        self.methods = frozenset(m.upper() for m in methods)
        self.user_id_resolver = user_id_resolver
        self.trust_forwarded_for = (
            settings.trust_forwarded_for if trust_forwarded_for is None else trust_forwarded_for
        )
        self.enabled = settings.import_rate_limit_enabled if enabled is None else enabled

    def _applies(self, request: Request) -> bool:
        if not self.enabled or request.method.upper() not in self.methods:
            return False
        path = request.url.path
        return any(path == prefix or path.startswith(prefix.rstrip("/") + "/") for prefix in self.paths)

    def _get_limiter(self, request: Request) -> Optional[ImportRateLimiter]:
        if self._limiter is not None:
            return self._limiter
        return getattr(request.app.state, "import_rate_limiter", None)

    def _get_client_ip(self, request: Request) -> str:
        if self.trust_forwarded_for:
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                client_ip = forwarded.split(",")[0].strip()
                if client_ip:
                    return client_ip
        return request.client.host if request.client else "unknown"

    @staticmethod
    def _get_wallet_id(request: Request) -> Optional[int]:
        raw = request.query_params.get("walletId")
        if not raw:
            return None
        try:
            wallet_id = int(raw)
        except ValueError:
            return None
        return wallet_id if wallet_id > 0 else None

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with import rate limiting."""
        if not self._applies(request):
            return await call_next(request)

        limiter = self._get_limiter(request)
        if limiter is None:
            logger.error("import_rate_limit.not_configured", extra={"path": request.url.path})
            return internal_error_response()

        user_id = self.user_id_resolver(request)
        if user_id is None:
            return unauthorized_response()

        client_ip = self._get_client_ip(request)
        wallet_id = self._get_wallet_id(request)

        try:
            result = await limiter.check_rate_limit(user_id, client_ip, wallet_id)
        except RateLimitStoreError as e:
            logger.error(
                "import_rate_limit.check_failed",
                extra=get_log_context(
                    user_id=user_id,
                    client_ip=client_ip,
                    path=request.url.path,
                    method=request.method,
                    error=str(e),
                ),
            )
            return internal_error_response()

        if not result.allowed:
            return rate_limit_exceeded_response(result)

        response = await call_next(request)

        response.headers.update(result.to_headers())

        # Failed imports never consume a slot
        if response.status_code < 400:
            try:
                await limiter.increment_counters(user_id, client_ip, wallet_id)
            except RateLimitStoreError as e:
                # The import already happened; the limiter under-counts it.
                logger.error(
                    "import_rate_limit.increment_failed",
                    extra=get_log_context(
                        user_id=user_id,
                        client_ip=client_ip,
                        wallet_id=None if wallet_id is None else str(wallet_id),
                        path=request.url.path,
                        status_code=response.status_code,
                        error=str(e),
                    ),
                )

        return response
