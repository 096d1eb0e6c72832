"""
main.py — obs-switcher application entrypoint.

CLI:
  python run.py serve             start the HTTP/WS bridge
  python run.py init-config       create a default config.yaml
  python run.py check             test OBS connectivity
  python run.py status            connect and print connection status
  python run.py scenes            list scenes (current one marked)
  python run.py switch NAME       switch program scene
  python run.py mute [audio|mic|INPUT]   toggle mute
  python run.py watch             stream OBS notifications until Ctrl-C
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from obs_switcher import __version__
from obs_switcher.config import APISettings, OBSSettings, Settings, reload_settings
from obs_switcher.core import ConnectionManager, OBSClient, OBSError

console = Console()
app = typer.Typer(name="obs-switcher", help="OBS scene switcher & mute control")

ConfigOpt = typer.Option(None, "--config", "-c", help="Path to config.yaml")
HostOpt = typer.Option(None, "--obs-host", help="OBS WebSocket host")
PortOpt = typer.Option(None, "--obs-port", help="OBS WebSocket port")
PasswordOpt = typer.Option(None, "--obs-password", help="OBS WebSocket password")


def setup_logging(level: str = "info") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def load_obs_settings(
    config: Optional[Path],
    host: Optional[str] = None,
    port: Optional[int] = None,
    password: Optional[str] = None,
) -> OBSSettings:
    """Settings from env/YAML with CLI flags on top.

    Flags go through the same validation as the file; a bad value raises
    pydantic.ValidationError (a ValueError).
    """
    settings = reload_settings(config)
    overrides = {k: v for k, v in {"host": host, "port": port, "password": password}.items() if v is not None}
    return OBSSettings.model_validate({**settings.obs.model_dump(), **overrides})


async def _connected_client(obs_settings: OBSSettings) -> OBSClient:
    manager = ConnectionManager(obs_settings)
    result = await manager.start()
    if not result.success:
        console.print(f"[red]✗ Could not connect to OBS at {obs_settings.host}:{obs_settings.port}[/red] — {result.error}")
        raise typer.Exit(1)
    return manager.client


async def build_and_run(settings: Settings) -> None:
    setup_logging(settings.api.log_level)
    log = logging.getLogger("obs_switcher")

    console.rule(f"[bold blue]obs-switcher v{__version__}[/bold blue]")

    # 1. OBS client (initial connection is non-fatal)
    manager = ConnectionManager(settings.obs)
    result = await manager.start()

    # 2. API
    from obs_switcher.api import create_app
    fast_app = create_app(manager, settings.api)

    obs_state = "connected" if result.success else f"not connected ({result.error})"
    console.print(f"\n[green]✓ OBS[/green]       {settings.obs.host}:{settings.obs.port} ({obs_state})")
    console.print(f"[green]✓ API[/green]       http://{settings.api.host}:{settings.api.port}")
    console.print(f"[green]✓ WS[/green]        ws://{settings.api.host}:{settings.api.port}/ws")
    if settings.api.api_key:
        console.print("[green]✓ Auth[/green]      API key set — Bearer token required")
    else:
        console.print("[yellow]⚠ Auth[/yellow]      No API key set — open access (fine for localhost)")
    console.print(f"[green]✓ Docs[/green]      http://{settings.api.host}:{settings.api.port}/docs\n")

    config = uvicorn.Config(
        fast_app,
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.api.log_level,
        loop="asyncio",
    )
    server = uvicorn.Server(config)

    loop = asyncio.get_running_loop()

    def shutdown():
        log.info("Shutdown signal received.")
        server.should_exit = True

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown)
        except NotImplementedError:
            pass  # Windows

    try:
        await server.serve()
    finally:
        await manager.shutdown()


# ──────────────────────────────────────────────────────────────────────────────
# CLI commands
# ──────────────────────────────────────────────────────────────────────────────

@app.command()
def serve(
    config: Optional[Path] = ConfigOpt,
    host: Optional[str] = typer.Option(None, "--host", help="API bind host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="API port"),
    obs_host: Optional[str] = HostOpt,
    obs_port: Optional[int] = PortOpt,
    obs_password: Optional[str] = PasswordOpt,
):
    """Start the HTTP/WebSocket bridge."""
    settings = reload_settings(config)
    obs_overrides = {k: v for k, v in {"host": obs_host, "port": obs_port, "password": obs_password}.items() if v is not None}
    settings.obs = OBSSettings.model_validate({**settings.obs.model_dump(), **obs_overrides})
    api_overrides = {k: v for k, v in {"host": host, "port": port}.items() if v is not None}
    settings.api = APISettings.model_validate({**settings.api.model_dump(), **api_overrides})
    asyncio.run(build_and_run(settings))


@app.command("init-config")
def init_config(
    output: Path = typer.Option(Path("config.yaml"), "--output", "-o"),
):
    """Generate a default config.yaml."""
    s = Settings.load()
    s.to_yaml(output)
    console.print(f"[green]✓[/green] Config written to [bold]{output}[/bold]")


@app.command("check")
def check_obs(
    config: Optional[Path] = ConfigOpt,
    host: Optional[str] = HostOpt,
    port: Optional[int] = PortOpt,
    password: Optional[str] = PasswordOpt,
):
    """Test OBS WebSocket connectivity."""
    obs_settings = load_obs_settings(config, host, port, password)

    async def _check():
        client = await _connected_client(obs_settings)
        async with client:
            version = await client.get_version()
            console.print("[green]✓ Connected to OBS[/green]")
            console.print(f"  OBS version:       {version.get('obs_version')}")
            console.print(f"  WebSocket version: {version.get('obs_web_socket_version')}")
            console.print(f"  RPC version:       {client.get_status()['rpc_version']}")
            console.print(f"  Platform:          {version.get('platform')}")
            scenes = await client.get_scene_list()
            console.print(f"  Scenes ({len(scenes)}): {', '.join(s.name for s in scenes)}")
            inputs = await client.get_input_list()
            console.print(f"  Inputs ({len(inputs)}): {', '.join(i.name for i in inputs)}")
    asyncio.run(_check())


@app.command("status")
def status_cmd(
    config: Optional[Path] = ConfigOpt,
    host: Optional[str] = HostOpt,
    port: Optional[int] = PortOpt,
    password: Optional[str] = PasswordOpt,
):
    """Connect once and print the connection status."""
    obs_settings = load_obs_settings(config, host, port, password)

    async def _status():
        manager = ConnectionManager(obs_settings)
        await manager.start()
        table = Table(title="OBS connection", show_header=False)
        for key, value in manager.client.get_status().items():
            table.add_row(key, str(value))
        console.print(table)
        await manager.shutdown()
    asyncio.run(_status())


@app.command("scenes")
def list_scenes_cmd(
    config: Optional[Path] = ConfigOpt,
    host: Optional[str] = HostOpt,
    port: Optional[int] = PortOpt,
    password: Optional[str] = PasswordOpt,
):
    """Print the scene list; the program scene is marked."""
    obs_settings = load_obs_settings(config, host, port, password)

    async def _scenes():
        async with await _connected_client(obs_settings) as client:
            scenes = await client.get_scene_list()
        table = Table(title="OBS Scenes", show_header=True)
        table.add_column("#", style="dim")
        table.add_column("Scene", style="cyan")
        table.add_column("Live", style="green")
        for i, scene in enumerate(scenes):
            table.add_row(str(i), scene.name, "●" if scene.is_current else "")
        console.print(table)
    asyncio.run(_scenes())


@app.command("switch")
def switch_scene_cmd(
    scene_name: str = typer.Argument(..., help="Scene to put on program"),
    config: Optional[Path] = ConfigOpt,
    host: Optional[str] = HostOpt,
    port: Optional[int] = PortOpt,
    password: Optional[str] = PasswordOpt,
):
    """Switch the program scene."""
    obs_settings = load_obs_settings(config, host, port, password)

    async def _switch():
        async with await _connected_client(obs_settings) as client:
            try:
                await client.set_current_scene(scene_name)
            except (OBSError, ValueError) as e:
                console.print(f"[red]✗ {e}[/red]")
                raise typer.Exit(1)
        console.print(f"[green]✓[/green] Switched to [bold]{scene_name}[/bold]")
    asyncio.run(_switch())


@app.command("mute")
def mute_cmd(
    target: str = typer.Argument("audio", help="'audio', 'mic', or an exact input name"),
    config: Optional[Path] = ConfigOpt,
    host: Optional[str] = HostOpt,
    port: Optional[int] = PortOpt,
    password: Optional[str] = PasswordOpt,
):
    """Toggle mute on desktop audio, the microphone, or a named input."""
    obs_settings = load_obs_settings(config, host, port, password)

    async def _mute():
        async with await _connected_client(obs_settings) as client:
            try:
                if target == "audio":
                    result = await client.toggle_audio_mute()
                elif target == "mic":
                    result = await client.toggle_mic_mute()
                else:
                    result = {"input": target, "muted": await client.toggle_input_mute(target)}
            except OBSError as e:
                console.print(f"[red]✗ {e}[/red]")
                raise typer.Exit(1)
        state = "[red]muted[/red]" if result["muted"] else "[green]live[/green]"
        console.print(f"{result['input']}: {state}")
    asyncio.run(_mute())


@app.command("watch")
def watch_cmd(
    config: Optional[Path] = ConfigOpt,
    host: Optional[str] = HostOpt,
    port: Optional[int] = PortOpt,
    password: Optional[str] = PasswordOpt,
):
    """Print scene, input, mute and connection notifications until Ctrl-C."""
    obs_settings = load_obs_settings(config, host, port, password)
    setup_logging("info")

    async def _watch():
        client = await _connected_client(obs_settings)
        stop = asyncio.Event()

        def printer(label: str):
            def _print(*args):
                console.print(f"[cyan]{label}[/cyan] " + " ".join(str(a) for a in args))
            return _print

        client.on_scene_changed(printer("scene"))
        client.on_scene_added(printer("scene+"))
        client.on_scene_removed(printer("scene-"))
        client.on_scene_renamed(printer("scene→"))
        client.on_input_added(printer("input+"))
        client.on_input_removed(printer("input-"))
        client.on_input_renamed(printer("input→"))
        client.on_mute_changed(printer("mute"))
        client.on_connection_changed(printer("connected"))
        client.on_reconnecting(printer("reconnect"))

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass  # Windows
        console.print("[dim]Watching OBS — Ctrl-C to stop[/dim]")
        async with client:
            await stop.wait()
    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    app()
