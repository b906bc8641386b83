"""Action execution and action SQL drafting routes."""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from sparkset.routes.deps import envelope_response, get_action_executor, get_action_sql_generator, require_api_token
from sparkset.services.action_generator import ActionSqlGenerator
from sparkset.services.actions import ActionExecutor
from sparkset.services.models import ActionContext
from sparkset.services.query_errors import build_internal_query_error_response
from sparkset.services.runtime import log_event

router = APIRouter(prefix="/api/actions", tags=["actions"], dependencies=[Depends(require_api_token)])
logger = logging.getLogger("actions_route")


class ExecuteActionRequest(BaseModel):
    type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    actionId: Optional[int] = None


@router.post("/execute")
async def execute_action(req: ExecuteActionRequest, executor: ActionExecutor = Depends(get_action_executor)):
    ctx = ActionContext(type=req.type, payload=req.payload, parameters=req.parameters, action_id=req.actionId)
    result = await executor.run(ctx)
    if not result.success:
        envelope = build_internal_query_error_response(result.error)
        log_event(
            logger,
            logging.ERROR if envelope.status >= 500 else logging.WARNING,
            "action_request_failed",
            action_type=req.type,
            action_id=req.actionId,
            status=envelope.status,
            code=envelope.code,
        )
        return envelope_response(envelope)
    return {"success": True, "actionId": result.action_id, "data": result.data}


class GenerateActionSqlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    datasource_id: int = Field(..., gt=0, alias="datasourceId")
    ai_provider_id: Optional[int] = Field(None, gt=0, alias="aiProviderId")


@router.post("/generate-sql")
async def generate_action_sql(
    req: GenerateActionSqlRequest, generator: ActionSqlGenerator = Depends(get_action_sql_generator)
):
    try:
        result = await generator.generate(
            req.name.strip(), req.description, req.datasource_id, ai_provider_id=req.ai_provider_id
        )
    except Exception as exc:
        envelope = build_internal_query_error_response(exc)
        log_event(
            logger,
            logging.ERROR if envelope.status >= 500 else logging.WARNING,
            "action_sql_failed",
            status=envelope.status,
            code=envelope.code,
            error=str(exc)[:300],
        )
        return envelope_response(envelope)
    return result.to_dict()
