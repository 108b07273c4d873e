"""Template rendering route for message personalization.

Endpoints:
    POST /v1/templates/render    Resolve {{entity.field|modifiers}} against supplied records
"""

from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from jobflow.api.auth import require_identity
from jobflow.templating.entity import render_entity_template

router = APIRouter(prefix="/templates", tags=["templates"], dependencies=[Depends(require_identity)])


class RenderTemplateRequest(BaseModel):
    text: str
    records: dict[str, Optional[dict[str, Any]]] = Field(
        default_factory=dict,
        description="Entity name (contact, case, appt) -> record fields",
    )
    strict: bool = False


@router.post("/render")
async def render_template(request: RenderTemplateRequest):
    """Render a template; returns status, text and unresolved placeholders."""
    result = render_entity_template(request.text, request.records, strict=request.strict)
    return asdict(result)
