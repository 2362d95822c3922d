"""
FastAPI/Starlette middleware that gates AI endpoints on credits.

Flow:
  1. Before request: `check_credits` for the usage type and estimated units
     sent in headers. A denial short-circuits with HTTP 402 and the reason.
  2. Request is executed.
  3. After response: read the actual usage (a `TokenUsage`-shaped object)
     from the JSON body and charge it with `deduct_credits_from_usage`.
  Nothing is held between the two steps, so an aborted request costs nothing.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional, Sequence

from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import InsufficientCreditsError
from ..models.catalog import UsageType
from ..models.credits import TokenUsage
from ..services.credit_service import CreditService


logger = logging.getLogger(__name__)


def _get_nested(data: dict, key_path: str) -> Optional[Any]:
    """Get a value using dot-notation key path, e.g. 'result.usage'."""
    current: Any = data
    for key in key_path.strip().split("."):
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current


class CreditGuardMiddleware(BaseHTTPMiddleware):
    """
    - The pre-check is read-only and uses the fixed per-unit estimates.
    - The deduction uses the real usage from the response body.
    - Responses without a usage object, and non-2xx responses, are passed
      through without charging.
    """

    def __init__(
        self,
        app: Any,
        credit_service: CreditService,
        *,
        path_prefix: str = "/api",
        user_id_header: str = "X-User-Id",
        usage_type_header: str = "X-Usage-Type",
        estimated_units_header: str = "X-Estimated-Units",
        default_usage_type: UsageType = UsageType.TEXT_CHAT,
        response_usage_key: str = "usage",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.credit_service = credit_service
        self.path_prefix = path_prefix.rstrip("/")
        self.user_id_header = user_id_header
        self.usage_type_header = usage_type_header
        self.estimated_units_header = estimated_units_header
        self.default_usage_type = default_usage_type
        self.response_usage_key = response_usage_key
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    def _usage_type(self, request: Request) -> UsageType:
        raw = request.headers.get(self.usage_type_header)
        if not raw:
            return self.default_usage_type
        try:
            return UsageType(raw.upper())
        except ValueError:
            return self.default_usage_type

    def _estimated_units(self, request: Request) -> float:
        try:
            return max(float(request.headers.get(self.estimated_units_header, "1")), 0)
        except ValueError:
            return 1

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Missing user identification ({self.user_id_header} header)."},
            )

        check = await self.credit_service.check_credits(
            user_id, self._usage_type(request), self._estimated_units(request)
        )
        if not check.allowed:
            return JSONResponse(
                status_code=402,
                content={
                    "detail": check.reason,
                    "code": "INSUFFICIENT_CREDITS",
                    "credits_required": check.credits_required,
                    "credits_available": check.credits_available,
                    "trial_days_remaining": check.trial_days_remaining,
                },
            )

        response = await call_next(request)
        if response.status_code >= 400:
            return response

        body_bytes = b"".join([chunk async for chunk in response.body_iterator])
        headers = dict(response.headers)
        headers.pop("content-length", None)

        try:
            data = json.loads(body_bytes) if body_bytes else None
            raw = _get_nested(data, self.response_usage_key) if isinstance(data, dict) else None
            if raw is not None:
                usage = TokenUsage.model_validate(raw)
                result = await self.credit_service.deduct_credits_from_usage(
                    user_id=user_id,
                    usage=usage,
                    reference_id=request.headers.get("X-Request-Id"),
                    reference_type="api",
                    description=f"{request.method} {request.url.path}",
                    correlation_id=request.headers.get("X-Request-Id"),
                )
                headers["X-Credits-Deducted"] = str(result.credits)
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning(
                "Credit middleware: could not read usage from response: %s",
                exc,
                extra={"path": request.url.path, "user_id": user_id},
            )
        except InsufficientCreditsError as exc:
            # Work was already delivered; the shortfall is audited by the ledger.
            logger.warning(
                "Credit middleware: usage of %s credits exceeded balance %s for %s",
                exc.required,
                exc.available,
                user_id,
            )
            headers["X-Credits-Deducted"] = "0"

        return Response(
            content=body_bytes,
            status_code=response.status_code,
            headers=headers,
            media_type=getattr(response, "media_type", None),
        )
