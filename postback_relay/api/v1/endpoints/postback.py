"""
Postback intake endpoints (payment gateway callbacks).

Query parameters and body are merged (body wins). Ignored, duplicate and
fallback outcomes answer 200 so gateways do not retry; only malformed input
gets a 400.
"""
import json
from typing import Any, Dict
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from postback_relay.api.deps import get_pipeline
from postback_relay.exceptions import ValidationError
from postback_relay.models.db.enums import PipelineOutcome
from postback_relay.models.schemas.base import PostbackResponse
from postback_relay.services.postback_pipeline import PipelineResult, PostbackPipeline
from postback_relay.utils import get_logger
from postback_relay.utils.observability import ensure_request_id

router = APIRouter()
logger = get_logger(__name__)

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


async def _read_body(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type == "application/json":
        raw = await request.body()
        if not raw.strip():
            return {}
        try:
            payload = json.loads(raw)
        except ValueError as e:
            raise ValidationError("Malformed JSON body", [{"field": "body", "message": str(e), "type": "json_invalid"}]) from e
        if not isinstance(payload, dict):
            raise ValidationError("JSON body must be an object", [{"field": "body", "message": "expected object", "type": "dict_type"}])
        return payload
    if content_type in FORM_CONTENT_TYPES:
        form = await request.form()
        return {k: v for k, v in form.items() if isinstance(v, str)}
    return {}


def _to_response(result: PipelineResult, request_id: str) -> JSONResponse:
    data: Dict[str, Any] = dict(result.details)
    if result.delivery is not None:
        data["broadcast"] = result.delivery.as_dict()
    if result.error is not None and result.outcome == PipelineOutcome.FAILED:
        data["error"] = str(result.error)

    body = PostbackResponse(
        success=result.outcome != PipelineOutcome.FAILED,
        message=result.message,
        request_id=request_id,
        outcome=result.outcome.value,
        reason=result.reason,
        identifier=result.identifier,
        data=data or None,
    )
    status_code = 400 if result.is_validation_failure else 200
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.api_route(
    "",
    methods=["GET", "POST"],
    response_model=PostbackResponse,
    summary="Receive a payment gateway postback"
)
async def receive_postback(
    request: Request,
    pipeline: PostbackPipeline = Depends(get_pipeline)
) -> JSONResponse:
    """Run one postback through validation, dedup, attribution and delivery."""
    request_id = getattr(request.state, "request_id", None) or ensure_request_id(request.headers)
    params: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        params.update(await _read_body(request))

    logger.info(
        "Postback received",
        method=request.method,
        identifier=params.get("subid") or params.get("identifier"),
        status=params.get("status"),
        request_id=request_id
    )
    result = await pipeline.process(params, request_id=request_id)
    return _to_response(result, request_id)
