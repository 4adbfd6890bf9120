import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar

from .config import PollingConfig
from .errors import OrchestrationError, RunCancelled, RunDeadlineExceeded
from .schemas import Message, Run, ToolCall, ToolOutput


logger = logging.getLogger("uvicorn.error")

NO_RESPONSE_REPLY = "No se encontró respuesta del asistente."
RUN_FAILED_REPLY = "El asistente no pudo completar la respuesta. Intenta de nuevo."
TOOL_FAILED_OUTPUT = "No se pudo ejecutar la herramienta solicitada."

T = TypeVar("T")


class RunClient(Protocol):
    async def create_thread_and_run(self, message: str) -> Run: ...

    async def create_run(self, thread_id: str, message: str) -> Run: ...

    async def retrieve_run(self, thread_id: str, run_id: str) -> Run: ...

    async def list_messages(self, thread_id: str) -> List[Message]: ...

    async def submit_tool_outputs(self, thread_id: str, run_id: str, tool_outputs: List[ToolOutput]) -> Run: ...


class ToolRunner(Protocol):
    async def invoke(self, tool_call: ToolCall) -> str: ...


@dataclass
class TurnResult:
    reply: str
    thread_id: str
    run_id: str
    status: Optional[str] = None


def _part_text(part: Dict[str, Any]) -> Optional[str]:
    text = part.get("text")
    if isinstance(text, dict):
        value = text.get("value")
    else:
        value = text
    return value if isinstance(value, str) and value else None


def extract_reply(messages: List[Message]) -> str:
    """Pick the newest assistant message and return its display text.

    History order from the API is not trusted; the newest message is chosen by
    created_at, and the first one seen wins a tie.
    """
    latest: Optional[Message] = None
    for message in messages:
        if message.role != "assistant":
            continue
        if latest is None or (message.created_at or 0) > (latest.created_at or 0):
            latest = message
    if latest is None:
        return NO_RESPONSE_REPLY
    content = latest.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                text = _part_text(part)
                if text is not None:
                    return text
                break
    return json.dumps(content, indent=2, ensure_ascii=False)


class RunOrchestrator:
    """Drive one conversation turn from run creation to the final reply.

    Starting -> Polling -> (ServicingTool -> Polling)* -> Terminal. Only the
    first tool call of each required action is serviced; the rest of the batch
    is logged and left unanswered.
    """

    def __init__(self, client: RunClient, tool_invoker: ToolRunner, polling: Optional[PollingConfig] = None):
        self.client = client
        self.tool_invoker = tool_invoker
        self.polling = polling or PollingConfig()

    async def run_turn(
        self,
        message: str,
        thread_id: Optional[str] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> TurnResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.polling.deadline_s

        if thread_id:
            creation = self.client.create_run(thread_id, message)
        else:
            creation = self.client.create_thread_and_run(message)
        run = await self._bounded(creation, deadline, stop_event, "(pending)")
        resolved_thread = run.resolved_thread_id or thread_id
        run_id = run.id
        if not resolved_thread or not run_id:
            raise OrchestrationError(f"missing identifiers (thread_id={resolved_thread!r}, run_id={run_id!r})")
        thread_id = resolved_thread
        logger.info("Thread %s run %s started (%s)", thread_id, run_id, run.status)

        while True:
            self._check(deadline, stop_event, run_id)
            tool_calls = run.pending_tool_calls
            if tool_calls:
                run = await self._service_tool_call(thread_id, run_id, tool_calls, deadline, stop_event)
                run_id = run.id or run_id
                logger.info("Thread %s run %s resumed after tool output (%s)", thread_id, run_id, run.status)
                continue
            if run.is_terminal:
                break
            await self._wait(deadline, stop_event, run_id)
            run = await self._bounded(self.client.retrieve_run(thread_id, run_id), deadline, stop_event, run_id)
            logger.info("Thread %s run %s status %s", thread_id, run_id, run.status)

        if run.status != "completed":
            logger.warning("Thread %s run %s finished with status %s", thread_id, run_id, run.status)
            if self.polling.report_failed_runs:
                return TurnResult(reply=RUN_FAILED_REPLY, thread_id=thread_id, run_id=run_id, status=run.status)
        messages = await self._bounded(self.client.list_messages(thread_id), deadline, stop_event, run_id)
        return TurnResult(reply=extract_reply(messages), thread_id=thread_id, run_id=run_id, status=run.status)

    async def _service_tool_call(
        self,
        thread_id: str,
        run_id: str,
        tool_calls: List[ToolCall],
        deadline: float,
        stop_event: Optional[asyncio.Event],
    ) -> Run:
        tool_call = tool_calls[0]
        if len(tool_calls) > 1:
            logger.info(
                "Run %s requested %d tool calls; servicing only %s",
                run_id,
                len(tool_calls),
                tool_call.id,
            )
        logger.info("Run %s requests tool %s (call %s)", run_id, tool_call.name, tool_call.id)
        try:
            output = await self._bounded(self.tool_invoker.invoke(tool_call), deadline, stop_event, run_id)
        except OrchestrationError:
            raise
        except Exception as exc:
            logger.warning("Tool call %s raised: %s", tool_call.id, exc)
            output = TOOL_FAILED_OUTPUT
        outputs = [ToolOutput(tool_call_id=tool_call.id, output=output)]
        return await self._bounded(
            self.client.submit_tool_outputs(thread_id, run_id, outputs),
            deadline,
            stop_event,
            run_id,
        )

    def _check(self, deadline: float, stop_event: Optional[asyncio.Event], run_id: str) -> float:
        if stop_event is not None and stop_event.is_set():
            raise RunCancelled(f"run {run_id} cancelled by caller")
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise RunDeadlineExceeded(f"run {run_id} exceeded {self.polling.deadline_s}s deadline")
        return remaining

    async def _bounded(
        self,
        call: Awaitable[T],
        deadline: float,
        stop_event: Optional[asyncio.Event],
        run_id: str,
    ) -> T:
        """Await one remote or tool call, abandoning it at the deadline or on stop."""
        try:
            remaining = self._check(deadline, stop_event, run_id)
        except OrchestrationError:
            if asyncio.iscoroutine(call):
                call.close()
            raise
        task = asyncio.ensure_future(call)
        waiters = {task}
        stopper = None
        if stop_event is not None:
            stopper = asyncio.ensure_future(stop_event.wait())
            waiters.add(stopper)
        try:
            done, _ = await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [w for w in waiters if not w.done()]
            for waiter in pending:
                waiter.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        if task in done:
            return task.result()
        if stopper is not None and stopper in done:
            raise RunCancelled(f"run {run_id} cancelled by caller")
        raise RunDeadlineExceeded(f"run {run_id} exceeded {self.polling.deadline_s}s deadline")

    async def _wait(self, deadline: float, stop_event: Optional[asyncio.Event], run_id: str) -> None:
        """Sleep one poll interval, honouring the turn deadline and stop token."""
        remaining = self._check(deadline, stop_event, run_id)
        await self._bounded(asyncio.sleep(min(self.polling.interval_s, remaining)), deadline, stop_event, run_id)
