"""
Configuration Management System
Handles proxy, server and system-proxy settings from the environment,
an optional .env file and config/default.yaml overrides
"""

import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
import structlog

logger = structlog.get_logger()

DEFAULT_CONFIG_FILE = Path("config/default.yaml")


class ProxyConfig(BaseSettings):
    """Capture proxy configuration"""

    # Listener settings
    listen_host: str = Field("127.0.0.1")
    base_port: int = Field(8081, ge=1, le=65535)
    max_port: int = Field(65535, ge=1, le=65535)

    # mitmproxy certificate store (CA is generated there on first start)
    confdir: Path = Field(Path("data/certs"))
    ssl_insecure: bool = Field(False)  # Validate upstream certs
    # "lazy" keeps held requests from opening an origin connection
    connection_strategy: str = Field("lazy")

    # Lifecycle
    startup_timeout_seconds: float = Field(10.0, gt=0)
    shutdown_timeout_seconds: float = Field(5.0, gt=0)
    start_attempts: int = Field(3, ge=1)

    # Intercept hold behaviour
    hold_timeout_seconds: Optional[float] = Field(None, gt=0)  # None waits forever
    hold_timeout_action: str = Field("forward")
    drop_action: str = Field("respond")
    drop_status_code: int = Field(502, ge=100, le=599)
    release_held_on_disable: bool = Field(True)

    @field_validator("connection_strategy")
    @classmethod
    def validate_connection_strategy(cls, v):
        if v not in ("lazy", "eager"):
            raise ValueError("connection_strategy must be 'lazy' or 'eager'")
        return v

    @field_validator("hold_timeout_action")
    @classmethod
    def validate_timeout_action(cls, v):
        if v not in ("forward", "drop"):
            raise ValueError("hold_timeout_action must be 'forward' or 'drop'")
        return v

    @field_validator("drop_action")
    @classmethod
    def validate_drop_action(cls, v):
        if v not in ("kill", "respond"):
            raise ValueError("drop_action must be 'kill' or 'respond'")
        return v

    model_config = {
        "env_prefix": "PROXY_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore"
    }


class ServerConfig(BaseSettings):
    """Control API and logging settings"""

    host: str = Field("127.0.0.1")
    port: int = Field(8000, ge=1, le=65535)
    cors_origins: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]
    )
    log_level: str = Field("INFO")
    log_dir: Path = Field(Path("logs"))

    model_config = {
        "env_prefix": "TRAFFICLENS_",
        "env_file": ".env",
        "extra": "ignore"
    }


class SystemProxyConfig(BaseSettings):
    """Settings for testing an upstream proxy before applying it"""

    probe_url: str = Field("https://www.gstatic.com/generate_204")
    timeout_seconds: float = Field(10.0, gt=0)

    model_config = {
        "env_prefix": "SYSTEM_PROXY_",
        "env_file": ".env",
        "extra": "ignore"
    }


class ApplicationConfig:
    """
    Main configuration class that combines all config sections
    This is what the rest of the application will use
    """

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = config_file or DEFAULT_CONFIG_FILE

        # Load custom configuration from YAML if it exists
        self.custom_config = self._load_custom_config()

        self.proxy = ProxyConfig(**self.custom_config.get("proxy", {}))
        self.server = ServerConfig(**self.custom_config.get("server", {}))
        self.system_proxy = SystemProxyConfig(**self.custom_config.get("system_proxy", {}))

        # Ensure required directories exist
        self._ensure_directories()

    def _load_custom_config(self) -> Dict[str, Any]:
        """Load user-defined configuration from YAML files"""
        if self.config_file.exists():
            with open(self.config_file, 'r') as f:
                return yaml.safe_load(f) or {}
        return {}

    def _ensure_directories(self):
        """Ensure required directories exist for certificates and logs"""
        directories = [
            self.proxy.confdir,
            self.server.log_dir,
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

        logger.debug("Ensured required directories exist")
