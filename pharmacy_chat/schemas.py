import re
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


TERMINAL_STATUSES = {"completed", "failed", "cancelled", "expired", "incomplete"}
# Thread and run ids travel as URL path segments upstream.
ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


class ToolFunction(BaseModel):
    name: str = ""
    arguments: Union[str, Dict[str, Any]] = "{}"

    model_config = {"extra": "allow"}


class ToolCall(BaseModel):
    id: str
    type: str = "function"
    function: ToolFunction = Field(default_factory=ToolFunction)

    model_config = {"extra": "allow"}

    @property
    def name(self) -> str:
        return self.function.name


class SubmitToolOutputsAction(BaseModel):
    tool_calls: List[ToolCall] = Field(default_factory=list)


class RequiredAction(BaseModel):
    type: str = "submit_tool_outputs"
    submit_tool_outputs: SubmitToolOutputsAction = Field(default_factory=SubmitToolOutputsAction)

    model_config = {"extra": "allow"}

    @property
    def tool_calls(self) -> List[ToolCall]:
        if self.type != "submit_tool_outputs":
            return []
        return self.submit_tool_outputs.tool_calls


class ThreadRef(BaseModel):
    id: Optional[str] = None

    model_config = {"extra": "allow"}


class Run(BaseModel):
    id: Optional[str] = None
    thread_id: Optional[str] = None
    thread: Optional[ThreadRef] = None
    status: Optional[str] = None
    required_action: Optional[RequiredAction] = None

    model_config = {"extra": "allow"}

    @property
    def resolved_thread_id(self) -> Optional[str]:
        if self.thread_id:
            return self.thread_id
        if self.thread and self.thread.id:
            return self.thread.id
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def pending_tool_calls(self) -> List[ToolCall]:
        if self.status != "requires_action" or self.required_action is None:
            return []
        return self.required_action.tool_calls


class ToolOutput(BaseModel):
    tool_call_id: str
    output: str


class Message(BaseModel):
    id: Optional[str] = None
    role: str = ""
    created_at: Optional[int] = None
    content: Union[str, List[Dict[str, Any]], None] = None

    model_config = {"extra": "allow"}


class SendMessageResponse(BaseModel):
    assistant: str
    threadId: str
