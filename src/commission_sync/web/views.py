"""
Views for the reconciliation endpoint.
"""

import json
import logging
import math
from decimal import Decimal
from pathlib import Path
from typing import Any

from django.conf import settings
from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from ..config import Config, load_config
from ..schemas.report import RunParams
from ..services import ReconciliationService
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def _load_config() -> Config:
    """Load application configuration."""
    return load_config(Path(settings.COMMISSION_SYNC_CONFIG))


def _get_service(config: Config) -> ReconciliationService:
    """Build a reconciliation service scoped to one request."""
    return ReconciliationService.from_config(config)


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def parse_run_params(body: Any, defaults: RunParams) -> RunParams:
    """
    Validate the JSON body of a reconcile request.

    Missing keys take the defaults; unknown keys are ignored.

    Raises:
        ValueError: With a message suitable for a 400 response
    """
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")

    params = RunParams(
        dry_run=defaults.dry_run,
        tolerance_value=defaults.tolerance_value,
        tolerance_days=defaults.tolerance_days,
        lookup_draft_orders=defaults.lookup_draft_orders,
    )

    for key in ("dry_run", "lookup_draft_orders"):
        if key in body and body[key] is not None:
            if not isinstance(body[key], bool):
                raise ValueError(f"{key} must be a boolean")
            setattr(params, key, body[key])

    if body.get("tolerance_value") is not None:
        value = body["tolerance_value"]
        if not _is_number(value) or value < 0:
            raise ValueError("tolerance_value must be a non-negative number")
        params.tolerance_value = Decimal(str(value))

    if body.get("tolerance_days") is not None:
        days = body["tolerance_days"]
        if not _is_number(days) or days < 0:
            raise ValueError("tolerance_days must be a non-negative number")
        params.tolerance_days = days

    return params


@csrf_exempt
@require_http_methods(["POST"])
def reconcile(request: HttpRequest) -> JsonResponse:
    """Run a reconciliation and return the full report."""
    try:
        config = _load_config()
        service = _get_service(config)
    except Exception as e:
        logger.exception("Could not initialise reconciliation")
        return JsonResponse({"success": False, "error": str(e)}, status=500)

    try:
        body = json.loads(request.body or b"{}")
        params = parse_run_params(body, service.default_params())
    except ValueError as e:
        return JsonResponse({"success": False, "error": str(e)}, status=400)

    try:
        report = service.run(params)
    except Exception as e:
        logger.exception("Reconciliation failed")
        return JsonResponse({"success": False, "error": str(e)}, status=500)

    return JsonResponse(report.to_dict(), json_dumps_params={"ensure_ascii": False})


@require_http_methods(["GET"])
def status(request: HttpRequest) -> JsonResponse:
    """Reconciliation backlog statistics."""
    try:
        config = _load_config()
        stats = StateStore(config.state_db_path).get_stats(config.reconciliation.released_status)
    except Exception as e:
        logger.exception("Could not read status")
        return JsonResponse({"success": False, "error": str(e)}, status=500)
    return JsonResponse({"success": True, **stats})
