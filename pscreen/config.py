"""
Configuration for pscreen.

Values are layered: built-in defaults, then the first JSON config file found,
then PSCREEN_* environment variables (a local .env is loaded first).
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Sequence

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

BROWSERS = ("chromium", "firefox", "webkit")

CONFIG_FILENAME = ".pscreen.json"

def default_config_paths() -> List[Path]:
    return [
        Path.cwd() / CONFIG_FILENAME,
        Path.home() / CONFIG_FILENAME,
        Path("/etc/pscreen/config.json"),
    ]

# ---------- sections ----------

class ScreenshotSettings(BaseModel):
    output_dir: str = "results"
    width: int = Field(1280, ge=1, le=4000)
    height: int = Field(720, ge=1, le=4000)
    full_page: bool = True
    browser: Literal["chromium", "firefox", "webkit"] = "chromium"
    timeout_ms: int = Field(30000, ge=1000, le=120000)
    scroll_delay_ms: int = Field(500, ge=0, le=10000)


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: Optional[int] = Field(None, ge=1, le=65535)
    port_range_start: int = Field(9000, ge=1, le=65535)
    port_range_end: int = Field(9010, ge=1, le=65535)

    @model_validator(mode="after")
    def _check_range(self):
        if self.port_range_end < self.port_range_start:
            raise ValueError("port_range_end must not be below port_range_start")
        return self


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file: Optional[str] = None
    max_bytes: int = Field(10 * 1024 * 1024, ge=1024)
    backup_count: int = Field(5, ge=0)


class AutomationSettings(BaseModel):
    retries: int = Field(3, ge=1, le=20)
    backoff_seconds: float = Field(1.0, ge=0)
    parallel: int = Field(1, ge=1, le=32)
    continue_on_error: bool = False


class ExternalIpSettings(BaseModel):
    services: List[str] = Field(default_factory=lambda: [
        "https://api.ipify.org?format=json",
        "https://httpbin.org/ip",
        "https://jsonip.com",
    ])
    cache_ttl: float = Field(300.0, ge=0, description="Seconds a resolved IP stays cached.")
    fallback_ip: str = "127.0.0.1"
    timeout: float = Field(5.0, gt=0)


class SecuritySettings(BaseModel):
    cors_enabled: bool = True
    cors_origin: str = "*"
    csp_enabled: bool = True
    csp: str = (
        "default-src 'self'; script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; img-src 'self' data: https:"
    )


class Config(BaseModel):
    screenshot: ScreenshotSettings = Field(default_factory=ScreenshotSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    automation: AutomationSettings = Field(default_factory=AutomationSettings)
    external_ip: ExternalIpSettings = Field(default_factory=ExternalIpSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    def get(self, dotted: str) -> Any:
        """Look up a dotted key such as 'screenshot.width'."""
        node: Any = self.model_dump()
        for part in dotted.split("."):
            if not isinstance(node, dict) or part not in node:
                raise KeyError(dotted)
            node = node[part]
        return node

# ---------- loading ----------

# env var -> (section, key)
ENV_OVERRIDES = {
    "PSCREEN_OUTPUT_DIR": ("screenshot", "output_dir"),
    "PSCREEN_WIDTH": ("screenshot", "width"),
    "PSCREEN_HEIGHT": ("screenshot", "height"),
    "PSCREEN_FULL_PAGE": ("screenshot", "full_page"),
    "PSCREEN_BROWSER": ("screenshot", "browser"),
    "PSCREEN_TIMEOUT": ("screenshot", "timeout_ms"),
    "PSCREEN_HOST": ("server", "host"),
    "PSCREEN_PORT": ("server", "port"),
    "PSCREEN_LOG_LEVEL": ("logging", "level"),
    "PSCREEN_LOG_FILE": ("logging", "file"),
    "PSCREEN_RETRIES": ("automation", "retries"),
    "PSCREEN_PARALLEL": ("automation", "parallel"),
    "PSCREEN_CONTINUE_ON_ERROR": ("automation", "continue_on_error"),
}

def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result

def _read_config_file(paths: Sequence[Path]) -> Dict[str, Any]:
    for path in paths:
        if not path.is_file():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Could not parse config file %s: %s", path, e)
            continue
        if not isinstance(data, dict):
            logger.warning("Ignoring config file %s: top level is not an object", path)
            continue
        logger.debug("Loaded configuration from %s", path)
        return data
    return {}

def _env_overrides(environ) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for var, (section, key) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        if key == "level":
            raw = raw.upper()
        out.setdefault(section, {})[key] = raw
    return out

def describe_validation_error(error: ValidationError) -> str:
    """All failing fields in one message, e.g. "width: Input should be greater than or equal to 1"."""
    return ", ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in error.errors()
    )

def load_config(config_file: Optional[str] = None, environ=None, search_paths=None,
                dotenv: bool = True) -> Config:
    if dotenv:
        load_dotenv(find_dotenv(usecwd=True))
    environ = os.environ if environ is None else environ

    if config_file:
        path = Path(config_file)
        if not path.is_file():
            raise ConfigError(f"Config file not found: {config_file}")
        paths = [path]
    else:
        paths = list(search_paths) if search_paths is not None else default_config_paths()

    data = _merge(_read_config_file(paths), _env_overrides(environ))
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {describe_validation_error(e)}") from e

def sample_config() -> Dict[str, Any]:
    return {
        "screenshot": {
            "output_dir": "./results",
            "width": 1280,
            "height": 720,
            "full_page": True,
            "browser": "chromium",
            "timeout_ms": 30000,
        },
        "server": {"host": "0.0.0.0", "port_range_start": 9000, "port_range_end": 9010},
        "logging": {"level": "INFO", "file": None},
        "automation": {"retries": 3, "parallel": 1, "continue_on_error": False},
    }

def write_sample_config(path: Path) -> Path:
    if path.exists():
        raise ConfigError(f"Refusing to overwrite existing config file: {path}")
    path.write_text(json.dumps(sample_config(), indent=2) + "\n", encoding="utf-8")
    return path
