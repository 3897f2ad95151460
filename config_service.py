import json
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel

DEFAULT_CONFIG_PATH = os.environ.get("CONFIG_PATH", os.path.join(os.getcwd(), "config.json"))

_cache: Optional[Dict[str, Any]] = None


class Settings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8001
    max_upload_mb: int = 500  # streaming endpoints
    max_simple_upload_mb: int = 10  # buffered /upload
    run_script_default_target: str = "./tmp"
    upload_default_target: str = "./uploads"
    archive_extension: str = ".zip"
    log_file: str = os.path.join(os.getcwd(), "log.txt")
    log_stream_endpoint: Optional[str] = None
    auth_header: Dict[str, str] = {}


# env var -> settings field
_ENV_OVERRIDES = {
    "DEPLOY_HOST": "host",
    "DEPLOY_PORT": "port",
    "DEPLOY_MAX_UPLOAD_MB": "max_upload_mb",
    "DEPLOY_MAX_SIMPLE_UPLOAD_MB": "max_simple_upload_mb",
    "DEPLOY_RUN_TARGET": "run_script_default_target",
    "DEPLOY_UPLOAD_TARGET": "upload_default_target",
    "DEPLOY_LOG_FILE": "log_file",
}


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    global _cache
    if _cache is not None:
        return _cache
    cfg_path = path or DEFAULT_CONFIG_PATH
    if not os.path.exists(cfg_path):
        _cache = {}
        return _cache
    try:
        with open(cfg_path, "r") as f:
            _cache = json.load(f)
    except (OSError, ValueError):
        _cache = {}
    if not isinstance(_cache, dict):
        _cache = {}
    return _cache


def reset_cache() -> None:
    global _cache
    _cache = None


def get_settings(path: Optional[str] = None) -> Settings:
    """Settings from the JSON config file, with DEPLOY_* environment variables taking precedence."""
    cfg = dict(load_config(path))
    for env_name, field in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            cfg[field] = value
    if not isinstance(cfg.get("auth_header", {}), dict):
        cfg.pop("auth_header")
    known = {k: v for k, v in cfg.items() if k in Settings.model_fields}
    return Settings(**known)


def get_log_endpoint(settings: Optional[Settings] = None) -> Optional[str]:
    # Expected key in config: { "log_stream_endpoint": "https://api.example.com/logs" }
    return (settings or get_settings()).log_stream_endpoint


def get_auth_header(settings: Optional[Settings] = None) -> Dict[str, str]:
    # Optional: { "auth_header": {"Authorization": "Bearer <token>"} }
    return dict((settings or get_settings()).auth_header or {})
