"""
System Proxy Settings

Tests an upstream proxy and applies it to (or clears it from) the process
environment, so outbound HTTP clients that honour HTTP(S)_PROXY pick it up.
"""

import os
import time
from typing import Dict, Optional

import aiohttp
import structlog

logger = structlog.get_logger()

SUPPORTED_TYPES = ("http", "https")
PROXY_ENV_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "http_proxy", "https_proxy")


class SystemProxyManager:
    """Test, set and clear the process-wide outbound proxy"""

    def __init__(self, config):
        """
        Args:
            config: SystemProxyConfig section of the application configuration
        """
        self.config = config
        self.logger = logger.bind(component="system_proxy")
        self.active_url: Optional[str] = None
        self._saved_env: Optional[Dict[str, Optional[str]]] = None

    @staticmethod
    def _validate(proxy: dict) -> Optional[str]:
        url = (proxy or {}).get("url")
        proxy_type = (proxy or {}).get("type", "http")
        if not url:
            return "Proxy URL is required"
        if proxy_type not in SUPPORTED_TYPES:
            return f"Unsupported proxy type: {proxy_type}"
        return None

    @staticmethod
    def _normalize(proxy: dict) -> str:
        url = proxy["url"]
        if "://" not in url:
            url = f"{proxy.get('type', 'http')}://{url}"
        return url

    async def test_proxy(self, proxy: dict) -> dict:
        """
        Send one request through the proxy

        Returns:
            {success, statusCode, latencyMs, error}
        """
        error = self._validate(proxy)
        if error:
            return {"success": False, "statusCode": None, "latencyMs": None, "error": error}

        url = self._normalize(proxy)
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        started = time.monotonic()

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.config.probe_url, proxy=url) as response:
                    latency_ms = int((time.monotonic() - started) * 1000)
                    self.logger.info("Proxy test completed", proxy=url, status=response.status, latency_ms=latency_ms)
                    return {
                        "success": response.status < 500,
                        "statusCode": response.status,
                        "latencyMs": latency_ms,
                        "error": None,
                    }
        except Exception as e:
            self.logger.warning("Proxy test failed", proxy=url, error=str(e) or type(e).__name__)
            return {
                "success": False,
                "statusCode": None,
                "latencyMs": None,
                "error": str(e) or type(e).__name__,
            }

    def set_proxy(self, proxy: dict) -> dict:
        """Route outbound traffic of this process through ``proxy``"""
        error = self._validate(proxy)
        if error:
            return {"success": False, "url": None, "error": error}

        url = self._normalize(proxy)
        if self._saved_env is None:
            self._saved_env = {name: os.environ.get(name) for name in PROXY_ENV_VARS}

        for name in PROXY_ENV_VARS:
            os.environ[name] = url
        self.active_url = url

        self.logger.info("System proxy set", proxy=url)
        return {"success": True, "url": url, "error": None}

    def clear_proxy(self) -> dict:
        """Restore the proxy environment as it was before set_proxy()"""
        if self._saved_env is not None:
            for name, value in self._saved_env.items():
                if value is None:
                    os.environ.pop(name, None)
                else:
                    os.environ[name] = value
            self._saved_env = None

        if self.active_url:
            self.logger.info("System proxy cleared", proxy=self.active_url)
        self.active_url = None
        return {"success": True}

    def get_status(self) -> dict:
        return {"active": self.active_url is not None, "url": self.active_url}
