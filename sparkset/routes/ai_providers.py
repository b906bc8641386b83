"""AI provider connectivity check."""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from sparkset.routes.deps import require_api_token
from sparkset.services.ai_probe import probe_provider_connection

router = APIRouter(prefix="/api/ai-providers", tags=["ai-providers"], dependencies=[Depends(require_api_token)])


class ProbeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(..., min_length=1)
    api_key: Optional[str] = Field(None, alias="apiKey")
    base_url: Optional[str] = Field(None, alias="baseURL")


@router.post("/test")
async def test_provider(req: ProbeRequest):
    result = await probe_provider_connection(req.type, api_key=req.api_key, base_url=req.base_url)
    return result.to_dict()
