#!/usr/bin/env python3
"""
CLI tool for tether.

Provides a kubectl-like interface for applying, listing and deleting objects
in the PostgreSQL object store, and for running the controller manager.
"""

import asyncio
import json
import os
from typing import Any, Awaitable, Callable, Dict, List

import click
import yaml
from tabulate import tabulate

from config import DatabaseConfig, load_bindings, register_bindings
from db import DatabaseStore
from errors import TetherError, is_not_found
from objects import (
    TYPE_READY,
    TYPE_SYNCED,
    Object,
    ObjectKey,
    ResourceKind,
    Scheme,
    new_scheme,
)
from store import Store


def build_scheme() -> Scheme:
    """Return a scheme with the built-in kinds and any configured bindings."""
    scheme = new_scheme()
    bindings_file = os.getenv("BINDINGS_FILE", "")
    if bindings_file:
        register_bindings(scheme, load_bindings(bindings_file))
    return scheme


async def open_database_store(scheme: Scheme) -> Store:
    """Connect to the database named by the DB_* environment variables."""
    db_config = DatabaseConfig.from_env()
    store = DatabaseStore(
        scheme,
        host=db_config.host,
        port=db_config.port,
        database=db_config.database,
        user=db_config.user,
        password=db_config.password,
        min_pool_size=1,
        max_pool_size=2,
    )
    await store.connect()
    return store


def resolve_kind(scheme: Scheme, name: str) -> ResourceKind:
    """
    Find a registered kind by name.

    Accepts the kind name (case-insensitive) or its fully qualified form,
    e.g. ``Secret`` or ``Secret.v1``.
    """
    matches = [
        k
        for k in scheme.kinds()
        if name == str(k) or name.lower() == k.kind.lower()
    ]
    if not matches:
        raise click.BadParameter(f"unknown kind '{name}'", param_hint="KIND")
    if len(matches) > 1:
        names = ", ".join(str(k) for k in matches)
        raise click.BadParameter(
            f"kind '{name}' is ambiguous ({names})", param_hint="KIND"
        )
    return matches[0]


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into a copy of base; nested mappings are merged."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def object_from_document(scheme: Scheme, doc: Dict[str, Any]) -> Object:
    """
    Build an object from a decoded YAML or JSON document.

    Documents are validated in JSON mode, so byte fields such as secret data
    are read as base64, matching the output of ``get -o json``.
    """
    kind = ResourceKind.from_api_version(doc.get("api_version", ""), doc.get("kind", ""))
    return scheme.model_for(kind).model_validate_json(json.dumps(doc, default=str))


def _condition_status(obj: Object, condition_type: str) -> str:
    status = getattr(obj, "status", None)
    if status is None or not hasattr(status, "get_condition"):
        return ""
    return status.get_condition(condition_type).status.value


def object_row(obj: Object) -> List[str]:
    """Summarize an object as a table row."""
    status = getattr(obj, "status", None)
    phase = getattr(status, "binding_phase", None)
    return [
        obj.metadata.namespace,
        obj.metadata.name,
        _condition_status(obj, TYPE_READY),
        _condition_status(obj, TYPE_SYNCED),
        phase.value if phase is not None else "",
        obj.metadata.creation_timestamp.strftime("%Y-%m-%d %H:%M:%S")
        if obj.metadata.creation_timestamp
        else "",
    ]


TABLE_HEADERS = ["NAMESPACE", "NAME", "READY", "SYNCED", "PHASE", "CREATED"]


def _run(ctx: click.Context, operation: Callable[[Store], Awaitable[Any]]) -> Any:
    """Open the store, run an operation against it and close the store."""

    async def run():
        store = await ctx.obj["open_store"](ctx.obj["scheme"])
        try:
            return await operation(store)
        finally:
            await store.close()

    try:
        return asyncio.run(run())
    except TetherError as e:
        raise click.ClickException(str(e))


@click.group()
@click.pass_context
def cli(ctx):
    """tether CLI - kubectl-like interface for claims and managed resources"""
    ctx.ensure_object(dict)
    ctx.obj.setdefault("open_store", open_database_store)
    if "scheme" not in ctx.obj:
        ctx.obj["scheme"] = build_scheme()


@cli.command()
def run():
    """Run the controller manager"""
    from main import main

    asyncio.run(main())


@cli.command()
@click.pass_context
def migrate(ctx):
    """Apply pending database migrations"""

    async def operation(store):
        await store.initialize_schema()

    _run(ctx, operation)
    click.echo("Database schema is up to date")


@cli.command()
@click.option(
    "--filename",
    "-f",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
    help="YAML or JSON file holding one or more objects",
)
@click.pass_context
def apply(ctx, filename):
    """Create or update objects from a YAML/JSON file"""
    scheme = ctx.obj["scheme"]

    with open(filename, "r") as f:
        documents = [d for d in yaml.safe_load_all(f) if d]

    for doc in documents:
        if not isinstance(doc, dict):
            raise click.ClickException(f"{filename}: expected a mapping per document")
        try:
            object_from_document(scheme, doc)
        except KeyError as e:
            raise click.ClickException(str(e.args[0]))
        except ValueError as e:
            raise click.ClickException(f"{filename}: {e}")

    async def operation(store):
        results = []
        for doc in documents:
            obj = object_from_document(scheme, doc)
            try:
                existing = await store.get(obj.resource_kind, obj.key)
            except Exception as e:
                if not is_not_found(e):
                    raise
                await store.create(obj)
                results.append((obj, "created"))
                continue

            merged = object_from_document(
                scheme, deep_merge(existing.model_dump(mode="json"), doc)
            )
            merged.metadata.resource_version = existing.metadata.resource_version
            await store.update(merged)
            results.append((merged, "configured"))
        return results

    for obj, action in _run(ctx, operation):
        click.echo(f"{obj.kind.lower()}/{obj.metadata.name} {action}")


@cli.command()
@click.argument("kind")
@click.option("--namespace", "-n", default=None, help="Only list this namespace")
@click.option(
    "--selector", "-l", default=None, help="Label selector, e.g. key=value,key2=value2"
)
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.pass_context
def get(ctx, kind, namespace, selector, output):
    """List objects of a kind"""
    resource_kind = resolve_kind(ctx.obj["scheme"], kind)

    match_labels = None
    if selector:
        try:
            match_labels = dict(pair.split("=", 1) for pair in selector.split(","))
        except ValueError:
            raise click.BadParameter(
                "expected key=value pairs", param_hint="--selector"
            )

    objects = _run(
        ctx,
        lambda store: store.list(
            resource_kind, namespace=namespace, match_labels=match_labels
        ),
    )

    if output == "json":
        click.echo(json.dumps([o.model_dump(mode="json") for o in objects], indent=2))
        return
    if output == "yaml":
        click.echo(
            yaml.safe_dump_all(
                [o.model_dump(mode="json") for o in objects], default_flow_style=False
            )
        )
        return

    if not objects:
        click.echo(f"No {resource_kind.kind} objects found")
        return
    rows = [object_row(o) for o in objects]
    click.echo(tabulate(rows, headers=TABLE_HEADERS, tablefmt="simple"))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--namespace", "-n", default="", help="Namespace of the object")
@click.pass_context
def delete(ctx, kind, name, namespace):
    """Delete an object"""
    resource_kind = resolve_kind(ctx.obj["scheme"], kind)
    key = ObjectKey(namespace=namespace, name=name)

    async def operation(store):
        obj = await store.get(resource_kind, key)
        await store.delete(obj)
        return obj

    obj = _run(ctx, operation)
    if obj.metadata.deletion_timestamp is not None:
        click.echo(f"{resource_kind.kind.lower()}/{name} marked for deletion")
    else:
        click.echo(f"{resource_kind.kind.lower()}/{name} deleted")


@cli.command()
@click.pass_context
def kinds(ctx):
    """List the kinds known to the CLI"""
    rows = [[k.kind, k.api_version] for k in ctx.obj["scheme"].kinds()]
    click.echo(tabulate(rows, headers=["KIND", "API VERSION"], tablefmt="simple"))


if __name__ == "__main__":
    cli()
