import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import AssistantApiConfig
from .errors import RemoteApiError, ValidationError
from .schemas import ID_PATTERN, Message, Run, ToolOutput


logger = logging.getLogger("uvicorn.error")

API_PREFIX = "/api/AssistantOpenAiV2/v2"


def _user_message(content: str) -> Dict[str, Any]:
    return {"role": "user", "content": content, "attachments": [], "metadata": {}}


def _require_text(value: Optional[str], label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required")
    return value


def _path_id(value: Optional[str], label: str) -> str:
    _require_text(value, label)
    if not ID_PATTERN.fullmatch(value):
        raise ValidationError(f"{label} is not a valid identifier")
    return value


class AssistantClient:
    """Client for the municipal assistant API (thread/run lifecycle)."""

    def __init__(self, config: AssistantApiConfig):
        self.config = config
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["OpenAi-ApiKey"] = config.api_key
        # One pool for every concurrent turn instead of a connection per request.
        self.client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers=headers,
            timeout=config.timeout_s,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    async def create_thread_and_run(self, message: str) -> Run:
        _require_text(message, "message")
        payload = {
            "assistant_id": self.config.assistant_id,
            "thread": {"messages": [_user_message(message)], "metadata": {}},
        }
        data = await self._request("POST", f"{API_PREFIX}/CreateThreadAndRun", json=payload)
        return Run.model_validate(data)

    async def create_run(self, thread_id: str, message: str) -> Run:
        thread_id = _path_id(thread_id, "threadId")
        _require_text(message, "message")
        payload = {
            "assistant_id": self.config.assistant_id,
            "additional_messages": [_user_message(message)],
        }
        data = await self._request("POST", f"{API_PREFIX}/CreateRun/{thread_id}", json=payload)
        return Run.model_validate(data)

    async def retrieve_run(self, thread_id: str, run_id: str) -> Run:
        return Run.model_validate(await self.retrieve_run_raw(thread_id, run_id))

    async def retrieve_run_raw(self, thread_id: str, run_id: str) -> Any:
        thread_id = _path_id(thread_id, "threadId")
        run_id = _path_id(run_id, "runId")
        return await self._request("GET", f"{API_PREFIX}/RetrieveRun/{thread_id}/{run_id}")

    async def list_messages(self, thread_id: str) -> List[Message]:
        data = await self.list_messages_raw(thread_id)
        items = data.get("data") if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise RemoteApiError("Unexpected message list shape", body=data)
        return [Message.model_validate(item) for item in items if isinstance(item, dict)]

    async def list_messages_raw(self, thread_id: str) -> Any:
        thread_id = _path_id(thread_id, "threadId")
        # "ListMesage" is the upstream spelling.
        return await self._request("GET", f"{API_PREFIX}/ListMesage/{thread_id}")

    async def submit_tool_outputs(self, thread_id: str, run_id: str, tool_outputs: List[ToolOutput]) -> Run:
        thread_id = _path_id(thread_id, "threadId")
        run_id = _path_id(run_id, "runId")
        payload = {"tool_outputs": [out.model_dump() for out in tool_outputs]}
        data = await self._request(
            "POST",
            f"{API_PREFIX}/SubmitToolOutputs/{thread_id}/{run_id}",
            json=payload,
        )
        return Run.model_validate(data)

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        """Send one request and map every failure to RemoteApiError."""
        try:
            resp = await self.client.request(method, path, json=json)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            logger.warning("Assistant API %s %s -> HTTP %s: %s", method, path, e.response.status_code, detail)
            raise RemoteApiError(
                f"{method} {path} failed with HTTP {e.response.status_code}",
                status_code=e.response.status_code,
                body=detail,
            ) from e
        except httpx.RequestError as e:
            logger.warning("Assistant API %s %s request failed: %s", method, path, e)
            raise RemoteApiError(f"{method} {path} request failed", body=str(e)) from e
        except ValueError as e:
            raise RemoteApiError(f"{method} {path} returned invalid JSON", status_code=resp.status_code, body=resp.text) from e

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
