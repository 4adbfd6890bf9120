import json

import httpx
import pytest
import respx
from httpx import Response

from pharmacy_chat.assistant_client import AssistantClient
from pharmacy_chat.config import AssistantApiConfig
from pharmacy_chat.errors import RemoteApiError, ValidationError
from pharmacy_chat.schemas import ToolOutput


BASE = "http://assistant.test/DesarrolloApi/api/AssistantOpenAiV2/v2"


def make_client() -> AssistantClient:
    return AssistantClient(
        AssistantApiConfig(base_url="http://assistant.test/DesarrolloApi/", api_key="test-key", assistant_id="asst_test")
    )


@pytest.mark.asyncio
async def test_create_thread_and_run_payload_and_headers():
    client = make_client()
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, json={"id": "run_1", "thread_id": "thread_1", "status": "queued"})

            respx_mock.post(f"{BASE}/CreateThreadAndRun").mock(side_effect=handler)
            run = await client.create_thread_and_run("Hola")
            assert run.id == "run_1"
            assert run.resolved_thread_id == "thread_1"
            assert captured["headers"]["OpenAi-ApiKey"] == "test-key"
            payload = captured["json"]
            assert payload["assistant_id"] == "asst_test"
            message = payload["thread"]["messages"][0]
            assert message == {"role": "user", "content": "Hola", "attachments": [], "metadata": {}}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_create_run_appends_message_to_existing_thread():
    client = make_client()
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"id": "run_2", "thread_id": "thread_1", "status": "queued"})

            respx_mock.post(f"{BASE}/CreateRun/thread_1").mock(side_effect=handler)
            run = await client.create_run("thread_1", "¿Y mañana?")
            assert run.id == "run_2"
            assert captured["json"]["assistant_id"] == "asst_test"
            assert captured["json"]["additional_messages"][0]["content"] == "¿Y mañana?"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_creation_rejects_blank_input_without_network():
    client = make_client()
    try:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.post(url__startswith=BASE)
            with pytest.raises(ValidationError):
                await client.create_thread_and_run("   ")
            with pytest.raises(ValidationError):
                await client.create_run("", "hola")
            assert not route.called
    finally:
        await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("bad_id", ["../../../Admin/DeleteAll?x=", "..", "thread 1", "a/b", "x#frag"])
async def test_path_identifiers_are_validated_before_any_request(bad_id):
    client = make_client()
    try:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.route(host="assistant.test")
            with pytest.raises(ValidationError):
                await client.create_run(bad_id, "hola")
            with pytest.raises(ValidationError):
                await client.retrieve_run_raw("thread_1", bad_id)
            with pytest.raises(ValidationError):
                await client.list_messages_raw(bad_id)
            with pytest.raises(ValidationError):
                await client.submit_tool_outputs(bad_id, "run_1", [ToolOutput(tool_call_id="x", output="y")])
            assert not route.called
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_retrieve_run_parses_required_action():
    client = make_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(f"{BASE}/RetrieveRun/thread_1/run_1").mock(
                return_value=Response(
                    200,
                    json={
                        "id": "run_1",
                        "thread_id": "thread_1",
                        "status": "requires_action",
                        "required_action": {
                            "type": "submit_tool_outputs",
                            "submit_tool_outputs": {
                                "tool_calls": [
                                    {"id": "call_a", "type": "function", "function": {"name": "Farmacias", "arguments": "{}"}}
                                ]
                            },
                        },
                    },
                )
            )
            run = await client.retrieve_run("thread_1", "run_1")
            assert [c.id for c in run.pending_tool_calls] == ["call_a"]
            assert run.pending_tool_calls[0].name == "Farmacias"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_list_messages_accepts_data_envelope_and_bare_list():
    client = make_client()
    message = {"role": "assistant", "created_at": 3, "content": "hola"}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.get(f"{BASE}/ListMesage/thread_1")
            route.side_effect = [
                Response(200, json={"object": "list", "data": [message]}),
                Response(200, json=[message]),
            ]
            first = await client.list_messages("thread_1")
            second = await client.list_messages("thread_1")
            assert first[0].content == "hola"
            assert second[0].created_at == 3
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_submit_tool_outputs_payload():
    client = make_client()
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"id": "run_2", "thread_id": "thread_1", "status": "queued"})

            respx_mock.post(f"{BASE}/SubmitToolOutputs/thread_1/run_1").mock(side_effect=handler)
            run = await client.submit_tool_outputs(
                "thread_1", "run_1", [ToolOutput(tool_call_id="call_a", output="<ol></ol>")]
            )
            assert run.id == "run_2"
            assert captured["json"] == {"tool_outputs": [{"tool_call_id": "call_a", "output": "<ol></ol>"}]}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_http_error_maps_to_remote_api_error():
    client = make_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(f"{BASE}/SubmitToolOutputs/thread_1/run_1").mock(
                return_value=Response(400, json={"error": "no outstanding tool call"})
            )
            with pytest.raises(RemoteApiError) as excinfo:
                await client.submit_tool_outputs("thread_1", "run_1", [ToolOutput(tool_call_id="x", output="y")])
            assert excinfo.value.status_code == 400
            assert excinfo.value.body == {"error": "no outstanding tool call"}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_transport_error_maps_to_remote_api_error():
    client = make_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(f"{BASE}/RetrieveRun/thread_1/run_1").mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(RemoteApiError) as excinfo:
                await client.retrieve_run("thread_1", "run_1")
            assert excinfo.value.status_code is None
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_non_json_body_maps_to_remote_api_error():
    client = make_client()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(f"{BASE}/ListMesage/thread_1").mock(return_value=Response(200, text="<html>oops</html>"))
            with pytest.raises(RemoteApiError) as excinfo:
                await client.list_messages("thread_1")
            assert excinfo.value.status_code == 200
    finally:
        await client.close()
