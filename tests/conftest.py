import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from pharmacy_chat.config import AppSettings, AssistantApiConfig, GeoServerConfig, PollingConfig
from pharmacy_chat.main import create_app
from tests.fakes import FakeAssistantClient, FakeToolInvoker


def make_settings(**overrides) -> AppSettings:
    settings = AppSettings(
        assistant_api=AssistantApiConfig(
            base_url="http://assistant.test/DesarrolloApi",
            api_key="test-key",
            assistant_id="asst_test",
            timeout_s=5,
        ),
        polling=PollingConfig(interval_s=0.0, deadline_s=5.0),
        geoserver=GeoServerConfig(url="http://geo.test/ows?service=WFS", timeout_s=5),
        host="127.0.0.1",
        port=3000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory():
    def _factory(
        *,
        fake_client: FakeAssistantClient | None = None,
        fake_tools: FakeToolInvoker | None = None,
        **settings_overrides,
    ):
        settings = make_settings(**settings_overrides)
        assistant_client = fake_client or FakeAssistantClient()
        tool_invoker = fake_tools or FakeToolInvoker()
        app = create_app(settings, assistant_client=assistant_client, tool_invoker=tool_invoker)
        return app, assistant_client, tool_invoker

    return _factory


@pytest.fixture
async def client(app_factory):
    app, assistant_client, tool_invoker = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_client = assistant_client  # type: ignore[attr-defined]
            http_client.fake_tools = tool_invoker  # type: ignore[attr-defined]
            yield http_client
