"""HTTP ingress for step signals and transaction inspection."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .contracts import ErrorInfo, StepAction, StepSignal, TransactionReport
from .engine import WorkflowEngine
from .errors import (
    InvalidSignalError,
    NotFoundError,
    StepConflictError,
    TransactionNotFoundError,
    ValidationError,
    WorkflowDefinitionError,
    WorkflowError,
)

logger = logging.getLogger(__name__)


class StepSuccessBody(BaseModel):
    transaction_id: str
    step_id: str
    action: StepAction = StepAction.INVOKE
    response: Any = None
    compensate_input: Any = None


class StepFailureBody(BaseModel):
    transaction_id: str
    step_id: str
    action: StepAction = StepAction.INVOKE
    response: Any = None
    error: Optional[ErrorInfo] = None


class RunBody(BaseModel):
    input: Any = None
    transaction_id: Optional[str] = None


def status_for(exc: WorkflowError) -> int:
    """HTTP status for a classified error."""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, StepConflictError):
        return 409
    if isinstance(exc, (InvalidSignalError, ValidationError, WorkflowDefinitionError)):
        return 422
    return 500


def _error_body(exc: WorkflowError) -> dict:
    return {"error": type(exc).__name__, "message": exc.message, "step_id": exc.step_id}


def setup_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def malformed_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "error": "MalformedRequest",
                "message": "Request body is malformed",
                "details": [
                    {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]}
                    for e in exc.errors()
                ],
            },
        )

    @app.exception_handler(WorkflowError)
    async def workflow_error(request: Request, exc: WorkflowError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({status}): {exc}")
        return JSONResponse(status_code=status, content=_error_body(exc))

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"error": "InternalError", "message": "Internal server error"},
        )


def create_app(engine: WorkflowEngine) -> FastAPI:
    app = FastAPI(title="ledgerflow")
    app.state.engine = engine
    setup_exception_handlers(app)

    @app.post("/workflows-executions/{workflow_id}/steps/success")
    async def step_success(workflow_id: str, body: StepSuccessBody) -> TransactionReport:
        provided = body.model_fields_set
        if body.action == StepAction.INVOKE and "response" not in provided:
            raise InvalidSignalError("An invoke success signal must carry 'response'")
        if body.action == StepAction.COMPENSATE and "compensate_input" not in provided:
            raise InvalidSignalError("A compensate success signal must carry 'compensate_input'")
        return await engine.signal(
            StepSignal(
                workflow_id=workflow_id,
                transaction_id=body.transaction_id,
                step_id=body.step_id,
                action=body.action,
                outcome="success",
                response=body.response,
                compensate_input=body.compensate_input,
            )
        )

    @app.post("/workflows-executions/{workflow_id}/steps/failure")
    async def step_failure(workflow_id: str, body: StepFailureBody) -> TransactionReport:
        return await engine.signal(
            StepSignal(
                workflow_id=workflow_id,
                transaction_id=body.transaction_id,
                step_id=body.step_id,
                action=body.action,
                outcome="failure",
                response=body.response,
                error=body.error,
            )
        )

    @app.post("/workflows-executions/{workflow_id}/run")
    async def run_workflow(workflow_id: str, body: RunBody) -> TransactionReport:
        return await engine.run(workflow_id, body.input, transaction_id=body.transaction_id)

    @app.get("/workflows-executions/{workflow_id}/{transaction_id}")
    async def get_transaction(workflow_id: str, transaction_id: str) -> TransactionReport:
        report = await engine.get_report(transaction_id)
        if report.workflow_id != workflow_id:
            raise TransactionNotFoundError(
                f"Transaction {transaction_id} not found for workflow {workflow_id}"
            )
        return report

    return app


__all__ = ["create_app", "setup_exception_handlers", "status_for"]
