"""Natural-language query route."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from sparkset.routes.deps import envelope_response, get_query_service, require_api_token
from sparkset.services.query_errors import (
    build_internal_query_error_response,
    build_query_validation_error_response,
)
from sparkset.services.query_service import QueryService
from sparkset.services.runtime import log_event
from sparkset.services.settings import QUERY_DEFAULT_LIMIT, QUERY_REQUEST_LIMIT_MAX, QUERY_REQUEST_QUESTION_MAX_LENGTH

router = APIRouter(prefix="/api/query", tags=["query"], dependencies=[Depends(require_api_token)])
logger = logging.getLogger("query_route")


class QueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(..., min_length=1, max_length=QUERY_REQUEST_QUESTION_MAX_LENGTH)
    datasource: Optional[int] = Field(None, gt=0)
    ai_provider: Optional[int] = Field(None, gt=0, alias="aiProvider")
    limit: Optional[int] = Field(None, ge=1, le=QUERY_REQUEST_LIMIT_MAX)


class QueryResponse(BaseModel):
    sql: str
    rows: List[Dict[str, Any]]
    summary: Optional[str] = None
    rowCount: int
    hasResult: bool
    datasourceId: Optional[int] = None
    aiProviderId: Optional[int] = None
    limit: Optional[int] = None
    reply: str
    metadata: Dict[str, Any]


@router.post("", response_model=QueryResponse)
async def run_query(req: QueryRequest, service: QueryService = Depends(get_query_service)):
    question = req.question.strip()
    if not question:
        return envelope_response(build_query_validation_error_response(["question: must not be blank"]))
    try:
        result = await service.run(
            question,
            datasource_id=req.datasource,
            ai_provider_id=req.ai_provider,
            limit=req.limit or QUERY_DEFAULT_LIMIT,
        )
    except Exception as exc:
        envelope = build_internal_query_error_response(exc)
        log_event(
            logger,
            logging.ERROR if envelope.status >= 500 else logging.WARNING,
            "query_failed",
            status=envelope.status,
            code=envelope.code,
            error=str(exc)[:300],
        )
        return envelope_response(envelope)
    return result.to_response()
