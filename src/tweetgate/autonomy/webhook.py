"""Inbound decision webhook.

A reviewer tool (spreadsheet script, Make/Zapier scenario, chat bot) can POST a
decision here instead of waiting for the next poll. Delivery is best effort:
the poller still reconciles every decision written to the store.
"""

from __future__ import annotations

import logging
from typing import Any, List, Literal, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .approval_queue import ApprovalQueueManager
from .errors import NotFoundError, ValidationError


logger = logging.getLogger("tweetgate.autonomy")


class ApprovalResponseData(BaseModel):
    approval_id: str = Field(min_length=1)
    approved: bool
    modified_content: Optional[str] = None
    reason: Optional[str] = None
    reviewer: Optional[str] = None

    @field_validator("approval_id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("approval_id must not be blank")
        return value

    @field_validator("approved", mode="before")
    @classmethod
    def _coerce_approved(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            return value.strip().lower() == "true"
        raise ValueError("approved must be a boolean or 'true'/'false'")


class ApprovalWebhookPayload(BaseModel):
    type: Literal["approval_response"]
    data: ApprovalResponseData


def _error_details(error: PydanticValidationError) -> List[str]:
    details: List[str] = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        details.append(f"{location}: {item.get('msg', 'invalid')}")
    return details


def parse_decision_payload(body: Any) -> ApprovalWebhookPayload:
    try:
        return ApprovalWebhookPayload.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError("Invalid approval payload", _error_details(e)) from e


def create_webhook_app(manager: ApprovalQueueManager) -> FastAPI:
    app = FastAPI(title="tweetgate approval webhook")

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/webhook/approval")
    async def approval_webhook(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            logger.warning("Webhook rejected reason=invalid_json")
            return JSONResponse(status_code=400, content={"success": False, "error": "Invalid JSON body", "details": []})

        try:
            payload = parse_decision_payload(body)
        except ValidationError as e:
            logger.warning("Webhook rejected reason=invalid_payload details=%s", e.details)
            return JSONResponse(status_code=400, content={"success": False, "error": str(e), "details": e.details})

        data = payload.data
        try:
            outcome = await manager.handle_decision(
                data.approval_id,
                data.approved,
                modified_content=data.modified_content,
                reason=data.reason,
                reviewer=data.reviewer or "",
            )
        except NotFoundError as e:
            return JSONResponse(status_code=404, content={"success": False, "error": str(e)})
        except Exception as e:
            logger.exception("Webhook decision failed approval_id=%s error=%s", data.approval_id, e)
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": "Internal server error", "message": str(e)},
            )

        return JSONResponse(
            status_code=200,
            content={
                "success": True,
                "message": outcome.message,
                "status": outcome.status.value if outcome.status else None,
                "changed": outcome.changed,
            },
        )

    return app


def build_webhook_server(app: FastAPI, host: str, port: int) -> uvicorn.Server:
    config = uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
    return uvicorn.Server(config)
