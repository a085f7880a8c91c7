"""
Foreground Capture CLI
Runs the default capture proxy in the terminal and prints traffic as it flows
"""

import queue
from typing import Optional
import structlog
from rich.console import Console
from rich.errors import MarkupError
from rich.markup import escape
from rich.panel import Panel

from trafficlens.core.config import ApplicationConfig
from trafficlens.proxy.events import QueueEventSink
from trafficlens.proxy.exceptions import NoPortAvailable, PortAllocationFailed, ProxyStartError
from trafficlens.proxy.exchange import REQUEST, REQUEST_BODY, RESPONSE, RESPONSE_BODY
from trafficlens.proxy.ports import PortAllocator
from trafficlens.proxy.registry import SessionRegistry

logger = structlog.get_logger()
console = Console()

POLL_SECONDS = 0.5
PREVIEW_CHARS = 200


def _status_style(status_code: int) -> str:
    if status_code == 0 or status_code >= 500:
        return "red"
    if status_code >= 400:
        return "yellow"
    if status_code >= 300:
        return "cyan"
    return "green"


def render_event(channel: str, payload: dict, show_bodies: bool = False) -> Optional[str]:
    """Format one event as a rich markup line (None to skip it)"""
    request_id = payload.get("id", "")[:8]

    if channel == REQUEST:
        return f"[dim]{request_id}[/dim] [bold blue]→ {escape(payload['method'])}[/bold blue] {escape(payload['url'])}"

    if channel == RESPONSE:
        status = payload["statusCode"]
        style = _status_style(status)
        return f"[dim]{request_id}[/dim] [{style}]← {status or 'ERR'}[/{style}] {escape(payload['url'])}"

    if channel == RESPONSE_BODY:
        kind = "binary" if payload["isBinary"] else (payload["contentType"] or "text")
        line = f"[dim]{request_id}[/dim]   [magenta]{payload['size']}[/magenta] {escape(kind)}"
        if show_bodies and not payload["isBinary"]:
            line += f"\n[dim]{escape(payload['body'][:PREVIEW_CHARS])}[/dim]"
        return line

    if channel == REQUEST_BODY and show_bodies:
        return f"[dim]{request_id}   body: {escape(payload['body'][:PREVIEW_CHARS])}[/dim]"

    return None


def run_capture_command(port: int, show_bodies: bool = False) -> int:
    """CLI command that captures traffic until interrupted"""
    config = ApplicationConfig()
    sink = QueueEventSink()
    registry = SessionRegistry(config.proxy, sink)
    registry.init()

    try:
        bound = registry.start_default(port)
    except (PortAllocationFailed, ProxyStartError) as e:
        console.print(f"[bold red]Could not start proxy:[/bold red] {e}")
        return 1

    console.print(Panel(
        f"Listening on [bold]{config.proxy.listen_host}:{bound}[/bold]\n"
        f"CA certificate: {config.proxy.confdir}/mitmproxy-ca-cert.pem\n"
        "Press Ctrl+C to stop",
        title="TrafficLens capture",
        border_style="blue"
    ))
    if bound != port:
        console.print(f"[yellow]Port {port} was busy, using {bound} instead[/yellow]")

    try:
        while True:
            try:
                channel, payload, _ = sink.get(timeout=POLL_SECONDS)
            except queue.Empty:
                continue
            line = render_event(channel, payload, show_bodies)
            if not line:
                continue
            try:
                console.print(line)
            except MarkupError as e:
                logger.warning("Could not render event", channel=channel, error=str(e))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping capture...[/yellow]")
    finally:
        registry.shutdown()

    return 0


def find_port_command(start_port: int) -> int:
    """CLI command that prints the first free port at or above start_port"""
    config = ApplicationConfig()
    allocator = PortAllocator(host=config.proxy.listen_host, max_port=config.proxy.max_port)
    try:
        port = allocator.find_available_port(start_port)
    except NoPortAvailable as e:
        console.print(f"[bold red]{e}[/bold red]")
        return 1

    console.print(port)
    return 0
