import html
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .config import GeoServerConfig
from .schemas import ToolCall


logger = logging.getLogger("uvicorn.error")

NO_RESULTS_HTML = "<p>No se encontraron farmacias.</p>"
LOOKUP_FAILED_TEXT = "No se pudo obtener la lista de farmacias en este momento."
UNSUPPORTED_TOOL_TEXT = "Herramienta no soportada: {name}"
NO_DATA = "Sin datos"

ToolHandler = Callable[[ToolCall], Awaitable[str]]


def _field(props: Dict[str, Any], key: str, default: str = "") -> str:
    value = props.get(key)
    if value is None or value == "":
        return default
    return str(value).strip()


def render_pharmacies(data: Any) -> str:
    """Render a GeoJSON FeatureCollection of pharmacies as an HTML ordered list."""
    features = data.get("features") if isinstance(data, dict) else None
    if not isinstance(features, list) or not features:
        return NO_RESULTS_HTML
    items = []
    for feature in features:
        props = feature.get("properties") if isinstance(feature, dict) else None
        if not isinstance(props, dict):
            props = {}
        name = _field(props, "nombretitu", "Sin nombre")
        street = " ".join(p for p in (_field(props, "tipovia"), _field(props, "nombrevia")) if p)
        number = _field(props, "numpol")
        address = ", ".join(p for p in (street, number) if p) or NO_DATA
        hours = _field(props, "horario", "Horario no disponible")
        phone = _field(props, "telefono", "Sin teléfono")
        items.append(
            "<li>"
            f"<strong>{html.escape(name)}</strong><br/>"
            f"<strong>Dirección:</strong> {html.escape(address)}<br/>"
            f"<strong>Horario:</strong> {html.escape(hours)}<br/>"
            f"<strong>Teléfono:</strong> {html.escape(phone)}"
            "</li>"
        )
    return "<ol>" + "".join(items) + "</ol>"


class PharmacyLookup:
    """Read-only query against the city GeoServer pharmacy layer."""

    def __init__(self, config: GeoServerConfig):
        self.url = config.url
        self.client = httpx.AsyncClient(timeout=config.timeout_s, follow_redirects=True)

    async def __call__(self, tool_call: ToolCall) -> str:
        # The layer URL is fixed; tool arguments are not applied as filters.
        resp = await self.client.get(self.url)
        resp.raise_for_status()
        return render_pharmacies(resp.json())

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class ToolInvoker:
    """Dispatch tool calls by name; always returns text, never raises."""

    def __init__(self, config: GeoServerConfig, pharmacy_lookup: Optional[PharmacyLookup] = None):
        self.pharmacy_lookup = pharmacy_lookup or PharmacyLookup(config)
        self.handlers: Dict[str, ToolHandler] = {
            name.strip().lower(): self.pharmacy_lookup for name in config.tool_names if name.strip()
        }

    async def invoke(self, tool_call: ToolCall) -> str:
        name = (tool_call.name or "").strip().lower()
        handler = self.handlers.get(name)
        if handler is None:
            logger.warning("Tool call %s requested unsupported tool %r", tool_call.id, tool_call.name)
            return UNSUPPORTED_TOOL_TEXT.format(name=tool_call.name or "?")
        try:
            return await handler(tool_call)
        except Exception as exc:
            logger.warning("Tool %s failed for call %s: %s", name, tool_call.id, exc)
            return LOOKUP_FAILED_TEXT

    async def close(self) -> None:
        await self.pharmacy_lookup.close()
