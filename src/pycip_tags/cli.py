#!/usr/bin/env python3
"""Command-line interface for pycip-tags using Typer."""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from . import __version__
from .client import CIPClient
from .config import DEFAULT_PORT, ControllerConfig
from .errors import (
    AddressError,
    CIPServiceError,
    MalformedFrameError,
    SessionStateError,
    TransportError,
    TypeMismatchError,
    UnknownTagError,
    UnsupportedTypeError,
)

app = typer.Typer(
    name="pycip",
    help="Read, write and poll Logix controller tags over EtherNet/IP.",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)

# Exit code 2: the request itself is wrong; 3: the controller or network refused it
USAGE_ERRORS = (AddressError, TypeMismatchError, UnknownTagError, UnsupportedTypeError)
CONTROLLER_ERRORS = (TransportError, CIPServiceError, SessionStateError, MalformedFrameError)

# ============================================================================
# Shared options and helpers
# ============================================================================

HostOption = Annotated[
    Optional[str],
    typer.Option("--host", "-h", help="Controller hostname or IP address", envvar="PYCIP_HOST"),
]
PortOption = Annotated[
    int,
    typer.Option("--port", "-p", help="EtherNet/IP TCP port", envvar="PYCIP_PORT"),
]
SlotOption = Annotated[
    int,
    typer.Option("--slot", "-s", help="Backplane slot of the controller", envvar="PYCIP_SLOT"),
]
DirectOption = Annotated[
    bool,
    typer.Option("--direct", help="Send requests straight to the module (no backplane routing)"),
]
TimeoutOption = Annotated[
    float,
    typer.Option("--timeout", "-t", help="Response timeout in seconds", envvar="PYCIP_TIMEOUT"),
]
ProgramOption = Annotated[
    Optional[str],
    typer.Option("--program", help="Program scope for tag paths", envvar="PYCIP_PROGRAM"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbose flag."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s" if not verbose else "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def create_client(
    host: Optional[str],
    port: int,
    slot: int,
    direct: bool,
    timeout: float,
) -> CIPClient:
    """Create and return a CIPClient instance."""
    if not host:
        typer.echo("Error: --host is required for this command", err=True)
        raise typer.Exit(2)
    try:
        config = ControllerConfig(port=port, timeout=timeout, slot=None if direct else slot)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    return CIPClient(host, config)


def parse_bool(value: str) -> bool:
    """Parse boolean value from string."""
    v = value.lower().strip()
    if v in ("true", "1", "on", "yes"):
        return True
    if v in ("false", "0", "off", "no"):
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def parse_value(value: str) -> Any:
    """
    Turn a command-line value into a tag value.

    true/false/on/off/yes/no are booleans, 0x.. is hex, anything JSON can parse
    (numbers, lists, objects) is taken as JSON, and the rest is a plain string.
    """
    v = value.strip()
    if v.lower() in ("true", "false", "on", "off", "yes", "no"):
        return parse_bool(v)
    if v.lower().startswith(("0x", "-0x")):
        try:
            return int(v, 16)
        except ValueError:
            return value
    try:
        return json.loads(v)
    except ValueError:
        return value


def format_value(value: Any) -> str:
    """Format value for display."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def _exit_on(e: Exception, verbose: bool) -> None:
    if isinstance(e, USAGE_ERRORS):
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    if isinstance(e, CONTROLLER_ERRORS):
        typer.echo(f"Error: Connection/CIP error: {e}", err=True)
        raise typer.Exit(3)
    typer.echo(f"Error: Unexpected error: {e}", err=True)
    if verbose:
        import traceback
        traceback.print_exc()
    raise typer.Exit(4)


# ============================================================================
# Commands
# ============================================================================


@app.command()
def info(
    host: HostOption = None,
    port: PortOption = DEFAULT_PORT,
    slot: SlotOption = 0,
    direct: DirectOption = False,
    timeout: TimeoutOption = 5.0,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Show package version and optionally test connectivity.

    Without --host: shows local metadata only.
    With --host: registers a session and uploads the controller symbol table.
    """
    setup_logging(verbose)

    info_data: dict[str, Any] = {"version": __version__}

    if host:
        client = create_client(host, port, slot, direct, timeout)
        try:
            with client:
                symbols = client.directory.symbols()
                info_data["connectivity"] = {
                    "status": "connected",
                    "host": host,
                    "port": port,
                    "session": f"0x{client.session.session_id:08X}",
                    "symbols": len(symbols),
                }
        except CONTROLLER_ERRORS as e:
            info_data["connectivity"] = {
                "status": "failed",
                "host": host,
                "port": port,
                "error": str(e),
            }

    if json_output:
        typer.echo(json.dumps(info_data, indent=2))
    else:
        typer.echo(f"pycip-tags version: {info_data['version']}")
        if "connectivity" in info_data:
            conn = info_data["connectivity"]
            if conn["status"] == "connected":
                typer.echo(f"Connectivity: OK ({host}:{port}, session {conn['session']}, {conn['symbols']} symbols)")
            else:
                typer.echo(f"Connectivity: FAILED ({host}:{port}) - {conn['error']}")


@app.command()
def read(
    tag: Annotated[str, typer.Argument(help="Tag path to read (e.g., Counter, Recipe[2].Name)")],
    host: HostOption = None,
    port: PortOption = DEFAULT_PORT,
    slot: SlotOption = 0,
    direct: DirectOption = False,
    timeout: TimeoutOption = 5.0,
    program: ProgramOption = None,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
    count: Annotated[Optional[int], typer.Option("--count", "-n", help="Number of array elements to read")] = None,
) -> None:
    """
    Read a single tag from the controller.

    Arrays print as JSON lists and structures as JSON objects.
    """
    setup_logging(verbose)

    client = create_client(host, port, slot, direct, timeout)
    try:
        with client:
            value = client.read(tag, program=program, array_size=count)
    except Exception as e:
        _exit_on(e, verbose)

    if json_output:
        typer.echo(json.dumps({"tag": tag, "value": value}))
    else:
        typer.echo(format_value(value))


@app.command()
def write(
    tag: Annotated[str, typer.Argument(help="Tag path to write")],
    value: Annotated[str, typer.Argument(help="Value (bool: true/false/on/off; int: decimal or 0x hex; JSON list/object; or text)")],
    host: HostOption = None,
    port: PortOption = DEFAULT_PORT,
    slot: SlotOption = 0,
    direct: DirectOption = False,
    timeout: TimeoutOption = 5.0,
    program: ProgramOption = None,
    verbose: VerboseOption = False,
    as_string: Annotated[bool, typer.Option("--string", help="Write the value as text without parsing it")] = False,
) -> None:
    """
    Write a value to a single tag.

    The value is checked against the tag's type before anything is sent.
    """
    setup_logging(verbose)

    parsed = value if as_string else parse_value(value)
    client = create_client(host, port, slot, direct, timeout)
    try:
        with client:
            client.write(tag, parsed, program=program)
    except Exception as e:
        _exit_on(e, verbose)
    typer.echo(f"OK: Wrote {tag} = {format_value(parsed)}")


@app.command()
def explain(
    tag: Annotated[str, typer.Argument(help="Tag path to explain (e.g., Program:Main.Recipe[1].Name)")],
    program: ProgramOption = None,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Show how a tag path is parsed and the request path that would be sent.

    Does not require a connection.
    """
    setup_logging(verbose)

    try:
        info = CIPClient("localhost").explain(tag, program=program)
    except Exception as e:
        _exit_on(e, verbose)

    if json_output:
        typer.echo(json.dumps(info, indent=2))
    else:
        typer.echo(f"Path:            {info['path']}")
        typer.echo(f"Program:         {info['program'] or '-'}")
        typer.echo(f"Base symbol:     {info['base']}")
        typer.echo(f"Segments:        {' '.join(info['segments']) or '-'}")
        typer.echo(f"Request path:    {info['request_path']}")


@app.command(name="read-many")
def read_many(
    tags: Annotated[list[str], typer.Argument(help="Tag paths to read (space-separated)")],
    host: HostOption = None,
    port: PortOption = DEFAULT_PORT,
    slot: SlotOption = 0,
    direct: DirectOption = False,
    timeout: TimeoutOption = 5.0,
    program: ProgramOption = None,
    verbose: VerboseOption = False,
) -> None:
    """
    Read several tags, packed into as few requests as possible.

    Prints a JSON object of tag -> value.
    """
    setup_logging(verbose)

    client = create_client(host, port, slot, direct, timeout)
    try:
        with client:
            results = client.read_many(tags, program=program)
    except Exception as e:
        _exit_on(e, verbose)
    typer.echo(json.dumps(results, indent=2))


@app.command()
def poll(
    tags: Annotated[list[str], typer.Argument(help="Tag paths to poll")],
    host: HostOption = None,
    port: PortOption = DEFAULT_PORT,
    slot: SlotOption = 0,
    direct: DirectOption = False,
    timeout: TimeoutOption = 5.0,
    program: ProgramOption = None,
    verbose: VerboseOption = False,
    interval: Annotated[float, typer.Option("--interval", "-i", help="Polling interval in seconds")] = 1.0,
    once: Annotated[bool, typer.Option("--once", help="Poll once and exit")] = False,
    format: Annotated[str, typer.Option("--format", "-f", help="Output format: text, json, csv")] = "text",
) -> None:
    """
    Continuously poll tags at the given interval.

    Outputs format:
    - text: timestamp + name=value pairs (default)
    - json: NDJSON with {"timestamp": "...", "values": {...}} per line
    - csv: tag paths as columns, one row per poll cycle

    Press Ctrl+C to stop.
    """
    setup_logging(verbose)

    if format not in ("text", "json", "csv"):
        typer.echo(f"Error: Invalid format '{format}'. Must be text, json, or csv.", err=True)
        raise typer.Exit(2)

    if interval <= 0:
        typer.echo(f"Error: Interval must be positive, got {interval}", err=True)
        raise typer.Exit(2)

    client = create_client(host, port, slot, direct, timeout)

    if format == "csv":
        typer.echo("timestamp," + ",".join(tags))

    try:
        with client:
            while True:
                results = client.read_many(tags, program=program)
                timestamp = datetime.now(timezone.utc).isoformat()

                if format == "text":
                    pairs = " ".join(f"{t}={format_value(results[t])}" for t in tags)
                    typer.echo(f"{timestamp} {pairs}")
                elif format == "json":
                    typer.echo(json.dumps({"timestamp": timestamp, "values": results}))
                else:
                    typer.echo(timestamp + "," + ",".join(format_value(results[t]) for t in tags))

                if once:
                    break
                time.sleep(interval)
    except KeyboardInterrupt:
        typer.echo("\nStopped by user", err=True)
        raise typer.Exit(0)
    except Exception as e:
        _exit_on(e, verbose)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"pycip-tags {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version and exit"),
    ] = None,
) -> None:
    """pycip - Logix controller tag access over EtherNet/IP."""
    pass


if __name__ == "__main__":
    app()
