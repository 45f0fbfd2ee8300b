"""Synapse RPC CLI.

Usage:
    synapse-rpc serve                               # Demo server on 127.0.0.1:4096
    synapse-rpc serve --app myapp.server:server     # Serve a Server, app or app factory
    synapse-rpc health                              # Check server health

    synapse-rpc call Greeting SayHello '{"name": {"en": "Ada"}}'
    synapse-rpc watch Todo WatchTodos '{"filter": "all"}' --limit 5

    synapse-rpc schema                              # List procedures
    synapse-rpc schema --format json                # Procedures with JSON Schemas
    synapse-rpc codegen -o rpc_client.py            # Typed accessor module

Client commands use --schema module:attr (default: the demo schema) and
--url (default: SYNAPSE_RPC_API_URL or http://127.0.0.1:4096).
"""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import os
import sys
from typing import Any

import click
import httpx

from .config import ClientConfig
from .errors import RPCError
from .schema import APISchema, MethodKind, Procedure

# Output format options
FORMAT_TABLE = "table"
FORMAT_JSON = "json"

DEMO_APP = "synapse_rpc.demo:create_demo_app"
DEMO_SCHEMA = "synapse_rpc.demo:api_schema"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def load_object(target: str) -> Any:
    """Import `module:attr` (attr may be dotted)."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise click.BadParameter(f"Expected 'module:attr', got '{target}'")
    try:
        obj: Any = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(f"Cannot import module '{module_name}': {e}") from e
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as e:
            raise click.BadParameter(f"Module '{module_name}' has no attribute '{attr}'") from e
    return obj


def load_schema(target: str) -> APISchema:
    schema = load_object(target)
    if callable(schema) and not isinstance(schema, APISchema):
        schema = schema()
    if not isinstance(schema, APISchema):
        raise click.BadParameter(f"'{target}' is not an APISchema")
    return schema


def parse_payload(raw: str | None) -> Any:
    if raw is None:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Payload is not valid JSON: {e}") from e


def echo_json(value: Any) -> None:
    click.echo(json.dumps(value, indent=2, ensure_ascii=False, default=str))


def _client_config(url: str | None) -> ClientConfig:
    config = ClientConfig.from_env()
    if url:
        config.base_url = url.rstrip("/")
    return config


@click.group()
@click.option(
    "--log-level",
    envvar="SYNAPSE_RPC_LOG_LEVEL",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level",
)
def main(log_level: str) -> None:
    """Synapse RPC - typed multi-mode RPC over HTTP, SSE and WebSocket."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT, stream=sys.stderr)


# =============================================================================
# Server Commands
# =============================================================================


@main.command()
@click.option("--app", "target", default=DEMO_APP, help="Server, app or app factory (module:attr)")
@click.option("--host", envvar="SYNAPSE_RPC_HOST", default="127.0.0.1", help="Host to bind to")
@click.option("--port", envvar="SYNAPSE_RPC_PORT", default=4096, help="Port to bind to")
@click.option("--prefix", envvar="SYNAPSE_RPC_API_PREFIX", default="/_api", help="API path prefix")
@click.option(
    "--keepalive",
    envvar="SYNAPSE_RPC_KEEPALIVE",
    default=15.0,
    help="Seconds between SSE keep-alive comments",
)
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(target: str, host: str, port: int, prefix: str, keepalive: float, reload: bool) -> None:
    """Run a server.

    The target may be a Server, a Starlette app, or a zero-argument factory
    returning either. Apps built from the environment pick up --prefix and
    --keepalive.
    """
    import uvicorn

    from .app import Server

    # Pass settings via environment for app factories
    os.environ["SYNAPSE_RPC_API_PREFIX"] = prefix
    os.environ["SYNAPSE_RPC_KEEPALIVE"] = str(keepalive)

    obj = load_object(target)
    is_factory = callable(obj) and not isinstance(obj, Server) and not hasattr(obj, "router")

    click.echo(f"Starting Synapse RPC on http://{host}:{port}{prefix}", err=True)
    click.echo("Press Ctrl+C to stop", err=True)

    if reload:
        uvicorn.run(target, factory=is_factory, host=host, port=port, reload=True)
        return

    app = obj() if is_factory else obj
    if isinstance(app, Server):
        app = app.app
    uvicorn.run(app, host=host, port=port)


@main.command()
@click.option("--url", help="Server URL")
def health(url: str | None) -> None:
    """Check server health."""
    config = _client_config(url)

    async def check() -> None:
        try:
            async with httpx.AsyncClient(base_url=config.base_url) as client:
                response = await client.get("/health")
        except httpx.ConnectError:
            click.echo(f"Cannot connect to server at {config.base_url}", err=True)
            sys.exit(1)
        if response.status_code != 200:
            click.echo(f"Server returned {response.status_code}", err=True)
            sys.exit(1)
        click.echo(f"Server is healthy: {response.json()}")

    asyncio.run(check())


# =============================================================================
# Client Commands
# =============================================================================


def _dump(procedure: Procedure, value: Any) -> Any:
    return procedure.output.dump(value)


@main.command()
@click.argument("service")
@click.argument("procedure")
@click.argument("payload", required=False)
@click.option("--schema", "schema_target", default=DEMO_SCHEMA, help="API schema (module:attr)")
@click.option("--url", help="Server URL")
@click.option("--header", "-H", "headers", multiple=True, help="Extra header, 'Name: value'")
def call(
    service: str,
    procedure: str,
    payload: str | None,
    schema_target: str,
    url: str | None,
    headers: tuple[str, ...],
) -> None:
    """Call a QUERY or MUTATION procedure and print its output.

    Examples:

        synapse-rpc call Todo CreateTodo '{"title": "Write docs"}'

        synapse-rpc call Todo GetTodos '{"limit": 10}'
    """
    from .sdk import RPCClient

    schema = load_schema(schema_target)
    config = _client_config(url)
    config.headers.update(_parse_headers(headers))
    proc = _lookup(schema, service, procedure)
    if not proc.method.is_one_shot:
        raise click.UsageError(f"{service}.{procedure} is a {proc.method.value}; use 'watch'")
    args = parse_payload(payload)

    async def run() -> Any:
        async with RPCClient(schema, config) as client:
            return await client.call(service, procedure, args)

    try:
        result = asyncio.run(run())
    except RPCError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    echo_json(_dump(proc, result))


@main.command()
@click.argument("service")
@click.argument("procedure")
@click.argument("payload", required=False)
@click.option("--schema", "schema_target", default=DEMO_SCHEMA, help="API schema (module:attr)")
@click.option("--url", help="Server URL")
@click.option("--limit", "-n", type=int, help="Stop after this many events")
def watch(
    service: str,
    procedure: str,
    payload: str | None,
    schema_target: str,
    url: str | None,
    limit: int | None,
) -> None:
    """Subscribe to a SUBSCRIPTION procedure and print events as JSON lines.

    Examples:

        synapse-rpc watch Todo WatchTodos '{"filter": "pending"}'

        synapse-rpc watch Greeting StreamedName '{"name": "Ada"}' -n 3
    """
    from .sdk import RPCClient

    schema = load_schema(schema_target)
    config = _client_config(url)
    proc = _lookup(schema, service, procedure)
    if proc.method != MethodKind.SUBSCRIPTION:
        raise click.UsageError(f"{service}.{procedure} is not a subscription")
    args = parse_payload(payload)

    async def run() -> None:
        async with RPCClient(schema, config) as client:
            stream = client.subscribe(
                service,
                procedure,
                args,
                on_error=lambda error: click.echo(f"Error: {error}", err=True),
            )
            count = 0
            async with stream:
                async for event in stream:
                    click.echo(json.dumps(_dump(proc, event), ensure_ascii=False))
                    count += 1
                    if limit is not None and count >= limit:
                        break

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo("\nStopped", err=True)
    except RPCError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


# =============================================================================
# Schema Commands
# =============================================================================


@main.command("schema")
@click.option("--schema", "schema_target", default=DEMO_SCHEMA, help="API schema (module:attr)")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
def schema_command(schema_target: str, output_format: str) -> None:
    """Show the procedures declared by a schema."""
    schema = load_schema(schema_target)

    if output_format == FORMAT_JSON:
        echo_json(
            {
                service.name: {
                    procedure.name: {
                        "method": procedure.method.value,
                        "description": procedure.description,
                        "input": procedure.input.json_schema(),
                        "output": procedure.output.json_schema(),
                    }
                    for procedure in service
                }
                for service in schema
            }
        )
        return

    click.echo(f"{'Service':<15} {'Procedure':<20} {'Method':<14} {'Description'}")
    click.echo("-" * 80)
    total = 0
    for service in schema:
        for procedure in service:
            click.echo(
                f"{service.name:<15} {procedure.name:<20} {procedure.method.value:<14} "
                f"{procedure.description}"
            )
            total += 1
    click.echo(f"\nTotal: {total} procedure(s)")


@main.command()
@click.option("--schema", "schema_target", default=DEMO_SCHEMA, help="API schema (module:attr)")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write to file")
@click.option("--class-name", default="APIClient", help="Name of the generated entry class")
def codegen(schema_target: str, output: str | None, class_name: str) -> None:
    """Generate a typed accessor module for a schema."""
    from .codegen import render_client_module

    schema = load_schema(schema_target)
    source = render_client_module(schema, source=schema_target, class_name=class_name)
    if output is None:
        click.echo(source, nl=False)
        return
    with open(output, "w") as f:
        f.write(source)
    click.echo(f"Wrote {output}", err=True)


def _lookup(schema: APISchema, service: str, procedure: str) -> Procedure:
    try:
        return schema.lookup(service, procedure)
    except RPCError as e:
        raise click.UsageError(str(e)) from e


def _parse_headers(headers: tuple[str, ...]) -> dict[str, str]:
    parsed = {}
    for header in headers:
        name, sep, value = header.partition(":")
        if not sep:
            raise click.BadParameter(f"Header must be 'Name: value', got '{header}'")
        parsed[name.strip()] = value.strip()
    return parsed


if __name__ == "__main__":
    main()
