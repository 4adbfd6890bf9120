import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .assistant_client import AssistantClient
from .config import AppSettings, load_settings
from .errors import ValidationError
from .pharmacies import ToolInvoker
from .run_orchestrator import RunOrchestrator
from .schemas import ID_PATTERN, SendMessageResponse


logger = logging.getLogger("uvicorn.error")

MESSAGE_REQUIRED = "El mensaje es obligatorio."
INVALID_THREAD_ID = "El identificador de conversación no es válido."
INTERNAL_ERROR = "Error interno del servidor"
MISSING_API_KEY = "OPENAI_API_KEY is not configured; refusing to start."


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_assistant_client(request: Request) -> AssistantClient:
    return request.app.state.assistant_client


def get_orchestrator(request: Request) -> RunOrchestrator:
    return request.app.state.orchestrator


def parse_send_message(payload: Any) -> tuple[str, Optional[str]]:
    if not isinstance(payload, dict):
        raise ValidationError(MESSAGE_REQUIRED)
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        raise ValidationError(MESSAGE_REQUIRED)
    thread_id = payload.get("threadId")
    if thread_id is not None and not isinstance(thread_id, str):
        raise ValidationError(INVALID_THREAD_ID)
    if thread_id is not None:
        thread_id = thread_id.strip() or None
    if thread_id is not None and not ID_PATTERN.fullmatch(thread_id):
        raise ValidationError(INVALID_THREAD_ID)
    return message.strip(), thread_id


def parse_identifier(value: str, label: str) -> str:
    if not ID_PATTERN.fullmatch(value):
        raise ValidationError(f"{label} is not a valid identifier")
    return value


router = APIRouter()


@router.post("/api/sendMessage")
@router.post("/api/createThreadAndRun")
async def send_message(
    request: Request,
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    try:
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        message, thread_id = parse_send_message(payload)
        result = await orchestrator.run_turn(message, thread_id=thread_id)
    except ValidationError as exc:
        logger.info("Rejected sendMessage payload: %s", exc)
        return JSONResponse(status_code=400, content={"assistant": str(exc)})
    except Exception:
        logger.exception("sendMessage failed")
        return JSONResponse(status_code=500, content={"assistant": INTERNAL_ERROR})
    return SendMessageResponse(assistant=result.reply, threadId=result.thread_id)


@router.get("/api/retrieveRun")
async def retrieve_run(
    threadId: str,
    runId: str,
    client: AssistantClient = Depends(get_assistant_client),
):
    try:
        thread_id = parse_identifier(threadId, "threadId")
        run_id = parse_identifier(runId, "runId")
        return await client.retrieve_run_raw(thread_id, run_id)
    except ValidationError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)})
    except Exception:
        logger.exception("retrieveRun failed for thread %s run %s", threadId, runId)
        return JSONResponse(status_code=500, content={"error": "Error en retrieveRun"})


@router.get("/api/listMessages")
async def list_messages(
    threadId: str,
    client: AssistantClient = Depends(get_assistant_client),
):
    try:
        return await client.list_messages_raw(parse_identifier(threadId, "threadId"))
    except ValidationError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)})
    except Exception:
        logger.exception("listMessages failed for thread %s", threadId)
        return JSONResponse(status_code=500, content={"error": "Error en listMessages"})


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)) -> Dict[str, Any]:
    return {"settings": settings.to_safe_dict()}


def create_app(
    settings: AppSettings,
    *,
    assistant_client: Optional[AssistantClient] = None,
    tool_invoker: Optional[ToolInvoker] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            if not settings.assistant_api.api_key:
                logger.error(MISSING_API_KEY)
                raise RuntimeError(MISSING_API_KEY)
            yield
        finally:
            await app.state.assistant_client.close()
            await app.state.tool_invoker.close()

    app = FastAPI(title="Pharmacy Chat Assistant", lifespan=lifespan)
    app.state.settings = settings
    app.state.assistant_client = assistant_client or AssistantClient(settings.assistant_api)
    app.state.tool_invoker = tool_invoker or ToolInvoker(settings.geoserver)
    app.state.orchestrator = RunOrchestrator(
        app.state.assistant_client,
        app.state.tool_invoker,
        settings.polling,
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import sys

    import uvicorn

    settings = app.state.settings
    if not settings.assistant_api.api_key:
        logger.error(MISSING_API_KEY)
        sys.exit(1)
    reload_enabled = os.getenv("PHARMACY_CHAT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "pharmacy_chat.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
