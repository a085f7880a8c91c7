"""
Main application entry point
Initializes the capture proxy control API and starts the web server
"""

import argparse
import asyncio
import sys
from contextlib import asynccontextmanager
from typing import Optional
import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from trafficlens.core.config import ApplicationConfig
from trafficlens.core.logging import configure_logging
from trafficlens.proxy.engine import ProxyEngine
from trafficlens.proxy.ports import DEFAULT_BASE_PORT
from trafficlens.proxy.registry import SessionRegistry
from trafficlens.proxy.system import SystemProxyManager
from trafficlens.api.routes import router as proxy_router
from trafficlens.api.websocket_routes import router as ws_router
from trafficlens.api.websocket import WebSocketManager
from trafficlens.cli.capture import find_port_command, run_capture_command

logger = structlog.get_logger()

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    config: ApplicationConfig = app.state.config

    # Startup
    configure_logging(config.server.log_level, str(config.server.log_dir))
    logger.info("Starting TrafficLens", base_port=config.proxy.base_port)

    ws_manager: WebSocketManager = app.state.ws_manager
    ws_manager.bind_loop(asyncio.get_running_loop())

    app.state.registry = SessionRegistry(
        config.proxy,
        ws_manager,
        engine_factory=app.state.engine_factory
    )
    app.state.registry.init()
    app.state.system_proxy = SystemProxyManager(config.system_proxy)

    logger.info("TrafficLens initialized successfully")

    yield

    # Shutdown
    logger.info("Shutting down TrafficLens")

    await app.state.registry.shutdown_async()
    app.state.system_proxy.clear_proxy()

    logger.info("TrafficLens shutdown complete")


def create_app(config: Optional[ApplicationConfig] = None, engine_factory=ProxyEngine) -> FastAPI:
    """Build the FastAPI application"""
    config = config or ApplicationConfig()

    app = FastAPI(
        title="TrafficLens",
        description="HTTP/HTTPS capture proxy with live traffic streaming",
        version=VERSION,
        lifespan=lifespan
    )
    app.state.config = config
    app.state.engine_factory = engine_factory
    app.state.ws_manager = WebSocketManager()
    app.state.registry = None
    app.state.system_proxy = None

    # Configure CORS - Allow the UI to access the API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routers
    app.include_router(proxy_router)
    app.include_router(ws_router, tags=["websocket"])

    @app.get("/")
    async def root():
        """Root endpoint - service status"""
        registry = app.state.registry
        return {
            "service": "TrafficLens",
            "status": "operational",
            "version": VERSION,
            "sessions": len(registry.list_sessions()) if registry else 0
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring"""
        return {
            "status": "healthy",
            "registry": "initialized" if app.state.registry else "not_initialized",
            "websocket_connections": app.state.ws_manager.get_connection_count()
        }

    return app


app = create_app()


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="TrafficLens capture proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                          Start the control API server
  python main.py --capture                Capture on port 8081 and print traffic
  python main.py --capture 9000           Capture on port 9000 (or the next free one)
  python main.py --capture --show-bodies  Also print body previews
  python main.py --find-port 8081         Print the first free port from 8081
        """
    )

    # Capture Options
    parser.add_argument(
        "--capture",
        nargs="?",
        type=int,
        const=DEFAULT_BASE_PORT,
        metavar="PORT",
        help=f"Run a foreground capture proxy (default port: {DEFAULT_BASE_PORT})"
    )

    parser.add_argument(
        "--show-bodies",
        action="store_true",
        help="Print body previews while capturing"
    )

    parser.add_argument(
        "--find-port",
        type=int,
        metavar="START",
        help="Print the first available port at or above START"
    )

    # Server Options
    parser.add_argument(
        "--host",
        default=None,
        help="Host to bind the web server (default: from configuration)"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind the web server (default: from configuration)"
    )

    parser.add_argument(
        "--no-reload",
        action="store_true",
        help="Disable hot reload (useful for production)"
    )

    return parser.parse_args(argv)


def run_cli_command(args) -> Optional[int]:
    """Execute CLI commands"""
    if args.find_port is not None:
        return find_port_command(args.find_port)
    elif args.capture is not None:
        return run_capture_command(args.capture, show_bodies=args.show_bodies)

    return None


if __name__ == "__main__":
    # Parse command line arguments
    args = parse_arguments()

    # Check if this is a CLI command
    if args.find_port is not None or args.capture is not None:
        server_config = app.state.config.server
        configure_logging(server_config.log_level, str(server_config.log_dir))
        sys.exit(run_cli_command(args) or 0)

    # Otherwise, run the web server
    server_config = app.state.config.server
    uvicorn.run(
        "main:app",
        host=args.host or server_config.host,
        port=args.port or server_config.port,
        reload=not args.no_reload,
        log_config=None  # Use our custom logging configuration
    )
