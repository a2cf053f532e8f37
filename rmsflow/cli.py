"""Command line interface for rmsflow administration."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer

from rmsflow import catalog
from rmsflow.audit import RequestAuditContext
from rmsflow.config import load_config
from rmsflow.db import NotificationLogDB
from rmsflow.errors import RmsFlowError
from rmsflow.notifiers import get_notifier
from rmsflow.paging import PageRequest, SortDirection, SortSpec
from rmsflow.store import Store, get_store
from rmsflow.workflow import (
    AuthState,
    Decision,
    EntityView,
    MakerCheckerService,
    WorkflowSummaryService,
)

T = TypeVar("T")

app = typer.Typer(help="CLI for rmsflow maker-checker administration")

# Command groups
db_app = typer.Typer(help="Commands for managing the backing store")
entity_app = typer.Typer(help="Commands for reading entity records")
workflow_app = typer.Typer(help="Commands for the maker-checker workflow")

app.add_typer(db_app, name="db")
app.add_typer(entity_app, name="entity")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main() -> None:
    """rmsflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(factory: Callable[[Store], Awaitable[T]]) -> T:
    """Run ``factory(store)`` and release pooled connections afterwards.

    Domain and configuration errors are reported and exit with status 1.
    """
    try:
        store = get_store()
        catalog.install(store)
    except ValueError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def runner() -> T:
        try:
            return await factory(store)
        finally:
            await store.dispose()

    try:
        return asyncio.run(runner())
    except (RmsFlowError, ValueError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _entity(name: str):
    try:
        return catalog.get_entity(name)
    except ValueError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_key(pairs: List[str]) -> Dict[str, Any]:
    key: Dict[str, Any] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            typer.secho(f"Expected KEY=VALUE, got {pair!r}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        key[name] = value
    return key


def _format_view(view: EntityView, pending: bool = False) -> str:
    data = view.effective if pending else view.data
    wf = view.workflow
    fields = ", ".join(f"{k}={v}" for k, v in data.model_dump().items())
    action = wf.action_type.name if wf.action_type else "-"
    return f"{fields}\t{wf.auth_state.name}\t{action}\t{wf.maker_id or '-'}"


@db_app.command("init")
def db_init() -> None:
    """
    Create entity tables and the notification log.

    Example:
        RMSFLOW_DATABASE_URL=sqlite+aiosqlite:///rms.db rmsflow db init
    """
    _run(lambda store: store.init_schema())
    typer.echo("Schema initialized")


@entity_app.command("list")
def entity_list(
    entity: str,
    page: int = typer.Option(1, help="Page number (starting at 1)"),
    size: int = typer.Option(10, help="Page size (1-100)"),
    search: Optional[str] = typer.Option(None, help="Search text"),
    sort: Optional[str] = typer.Option(None, help="Sort column"),
    desc: bool = typer.Option(False, help="Sort descending"),
) -> None:
    """
    List active records with their authorized values.

    Example:
        rmsflow entity list exchange --page 2 --size 20
    """
    definition = _entity(entity)
    sort_spec = (
        SortSpec(column=sort, direction=SortDirection.DESC if desc else SortDirection.ASC)
        if sort
        else None
    )

    async def action(store: Store):
        service = MakerCheckerService(store, definition)
        return await service.list(
            PageRequest(page_number=page, page_size=size), sort=sort_spec, search_text=search
        )

    result = _run(action)
    if not result.items:
        typer.echo("No records found")
        return
    for view in result.items:
        typer.echo(_format_view(view))
    typer.echo(
        f"Page {result.page_number}/{max(result.total_pages, 1)} "
        f"({result.total_count} records)"
    )


@entity_app.command("show")
def entity_show(entity: str, key: List[str] = typer.Argument(..., help="KEY=VALUE pairs")) -> None:
    """
    Show one record, including any pending change.

    Example:
        rmsflow entity show client_stock branch_code=001 client_code=C1 stock_code=1155
    """
    definition = _entity(entity)
    key_values = _parse_key(key)

    async def action(store: Store):
        return await MakerCheckerService(store, definition).get(key_values)

    view = _run(action)
    wf = view.workflow
    typer.echo(f"{definition.name}: {wf.auth_state.name}")
    for name, value in view.data.model_dump().items():
        typer.echo(f"  {name}: {value}")
    if view.pending is not None:
        typer.echo("Pending:")
        for name, value in view.pending.model_dump().items():
            typer.echo(f"  {name}: {value}")
    typer.echo(f"Maker: {wf.maker_id or '-'} at {wf.action_dt or '-'} from {wf.ip_address or '-'}")
    if wf.auth_id:
        typer.echo(f"Checker: {wf.auth_id} at {wf.auth_dt}")
    if wf.remarks:
        typer.echo(f"Remarks: {wf.remarks}")


@workflow_app.command("summary")
def workflow_summary(
    maker: Optional[str] = typer.Option(None, help="Only count changes made by this maker"),
) -> None:
    """
    Show unauthorized and denied counts per entity.

    Example:
        rmsflow workflow summary
        # Output: Unauthorized: 3
        #           exchange: 2
        #           client_stock: 1
        #         Denied: 0
    """

    async def action(store: Store):
        service = WorkflowSummaryService(store, catalog.ENTITIES.values())
        return await service.summary(maker)

    summary = _run(action)
    typer.echo(f"Unauthorized: {summary.total_unauthorized}")
    for item in summary.unauthorized_items:
        typer.echo(f"  {item.module}: {item.total_records}")
    typer.echo(f"Denied: {summary.total_denied}")
    for item in summary.denied_items:
        typer.echo(f"  {item.module}: {item.total_records}")


@workflow_app.command("pending")
def workflow_pending(
    entity: str,
    denied: bool = typer.Option(False, help="Show denied records instead"),
    maker: Optional[str] = typer.Option(None, help="Only records made by this maker"),
    page: int = typer.Option(1),
    size: int = typer.Option(10),
) -> None:
    """
    List records waiting for a checker, showing their pending values.

    Example:
        rmsflow workflow pending exchange
        rmsflow workflow pending exchange --denied
    """
    definition = _entity(entity)
    state = AuthState.DENIED if denied else AuthState.UNAUTHORIZED

    async def action(store: Store):
        service = MakerCheckerService(store, definition)
        return await service.list_workflow(
            state, PageRequest(page_number=page, page_size=size), maker_id=maker
        )

    result = _run(action)
    if not result.items:
        typer.echo("No records found")
        return
    for view in result.items:
        typer.echo(_format_view(view, pending=True))


@workflow_app.command("authorize")
def workflow_authorize(
    entity: str,
    key: List[str] = typer.Argument(..., help="KEY=VALUE pairs"),
    approve: bool = typer.Option(True, "--approve/--deny", help="Checker decision"),
    remarks: Optional[str] = typer.Option(None, help="Remarks (required to deny)"),
    actor: str = typer.Option(..., help="Checker user id"),
    origin: str = typer.Option("127.0.0.1", help="Checker network address"),
) -> None:
    """
    Approve or deny a pending change.

    Example:
        rmsflow workflow authorize exchange xchg_code=XKLS --actor checker1
        rmsflow workflow authorize exchange xchg_code=XKLS --deny --remarks "wrong prefix" --actor checker1
    """
    definition = _entity(entity)
    key_values = _parse_key(key)
    decision = Decision.APPROVE if approve else Decision.DENY
    audit = RequestAuditContext(actor_id=actor, origin_address=origin)

    async def action(store: Store):
        notifier = get_notifier()
        service = MakerCheckerService(store, definition, notifier=notifier)
        try:
            return await service.authorize(key_values, decision, audit, remarks=remarks)
        finally:
            if notifier is not None:
                await notifier.close()

    result = _run(action)
    typer.echo(f"{definition.name} {'-'.join(str(v) for v in result.key.values())}: {result.state.name}")
    if result.notification is not None:
        status = "sent" if result.notification.success else "FAILED"
        typer.echo(f"Downstream notification {status}: {result.notification.message}")


@workflow_app.command("notifications")
def workflow_notifications(
    failed: bool = typer.Option(False, help="Only show failed deliveries"),
) -> None:
    """
    List downstream notification attempts recorded after authorizations.

    Example:
        rmsflow workflow notifications --failed
    """

    async def action(store: Store):
        return await NotificationLogDB(store.engine).list_entries(failed_only=failed)

    entries = _run(action)
    if not entries:
        typer.echo("No notifications found")
        return
    for entry in entries:
        status = "OK" if entry.success else "FAILED"
        keys = "-".join(str(v) for v in entry.entity_keys.values())
        typer.echo(
            f"{entry.attempted_at}\t{entry.entity}\t{keys}\t{entry.change_kind}\t{status}"
            + (f"\t{entry.message}" if entry.message else "")
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
