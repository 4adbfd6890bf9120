import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "PHARMACY_CHAT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_API_BASE_URL = "https://aplicaciones05.ayto-caceres.es/DesarrolloApi"
DEFAULT_ASSISTANT_ID = "asst_LaCKtLYCXbB6lHslfYtS9cES"
DEFAULT_GEOSERVER_URL = (
    "https://ide.caceres.es/geoserver/toponimia/ows?service=WFS&version=1.0.0"
    "&request=GetFeature&typeName=toponimia%3Afarmacias&maxFeatures=50"
    "&outputFormat=application%2Fjson"
)


class AssistantApiConfig(BaseModel):
    base_url: str = DEFAULT_API_BASE_URL
    api_key: Optional[str] = None
    assistant_id: str = DEFAULT_ASSISTANT_ID
    timeout_s: float = 60.0


class PollingConfig(BaseModel):
    interval_s: float = 1.0
    # Upper bound for one turn; the remote run lifetime is not trusted to end the loop.
    deadline_s: float = 300.0
    report_failed_runs: bool = False


class GeoServerConfig(BaseModel):
    url: str = DEFAULT_GEOSERVER_URL
    timeout_s: float = 15.0
    tool_names: List[str] = Field(default_factory=lambda: ["farmacias"])


class AppSettings(BaseModel):
    assistant_api: AssistantApiConfig = Field(default_factory=AssistantApiConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    geoserver: GeoServerConfig = Field(default_factory=GeoServerConfig)
    host: str = "0.0.0.0"
    port: int = 3000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data["assistant_api"].get("api_key"):
            data["assistant_api"]["api_key"] = "********"
        return data


# env var -> (section, field, caster); section None means a top-level field
_ENV_FIELDS = {
    "ASSISTANT_API_BASE_URL": ("assistant_api", "base_url", str),
    "OPENAI_API_KEY": ("assistant_api", "api_key", str),
    "ASSISTANT_ID": ("assistant_api", "assistant_id", str),
    "ASSISTANT_TIMEOUT_S": ("assistant_api", "timeout_s", float),
    "POLL_INTERVAL_S": ("polling", "interval_s", float),
    "RUN_DEADLINE_S": ("polling", "deadline_s", float),
    "REPORT_FAILED_RUNS": ("polling", "report_failed_runs", None),
    "GEOSERVER_URL": ("geoserver", "url", str),
    "GEOSERVER_TIMEOUT_S": ("geoserver", "timeout_s", float),
    "HOST": (None, "host", str),
    "PORT": (None, "port", int),
}


def _load_from_env() -> dict:
    load_dotenv()
    data: Dict[str, Any] = {}
    for env_key, (section, key, caster) in _ENV_FIELDS.items():
        raw = os.getenv(env_key)
        if raw in (None, ""):
            continue
        if caster is None:
            value: Any = str(raw).strip().lower() in ENV_OVERRIDE_TRUE
        else:
            value = caster(raw)
        if section is None:
            data[key] = value
        else:
            data.setdefault(section, {})[key] = value
    return data


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge one level of nested sections; override wins per field."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = _merge(file_data, env_data)
    else:
        merged = _merge(env_data, file_data)
    env_key = (env_data.get("assistant_api") or {}).get("api_key")
    api_section = merged.get("assistant_api")
    if env_key and isinstance(api_section, dict) and not api_section.get("api_key"):
        api_section["api_key"] = env_key
    return AppSettings(**merged)
