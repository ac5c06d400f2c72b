"""recallkv CLI."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import click

from recallkv.config import Config
from recallkv.core import MemoryCore
from recallkv.exceptions import RecallError
from recallkv.logging_config import setup_logging
from recallkv.types import ContextType, RelationshipType, WorkflowStatus


IN_PROCESS_BACKENDS = {"memory", "inmemory", "local"}


def _get_core(ctx: click.Context) -> MemoryCore:
    config = Config()
    if ctx.obj.get("workspace"):
        config.workspace_id = ctx.obj["workspace"]
    # Each command is its own process, so state must live in a server.
    config.storage.backend = ctx.obj.get("storage") or "redis"
    kv = ctx.obj.get("kv")
    if kv is None and config.storage.backend.strip().lower() in IN_PROCESS_BACKENDS:
        raise click.ClickException(
            f"Storage backend '{config.storage.backend}' does not persist between commands; "
            "use --storage redis (or valkey)."
        )
    return MemoryCore(config, kv=kv)


def _run(ctx: click.Context, fn: Callable[[MemoryCore], Awaitable[Any]]) -> Any:
    async def _go() -> Any:
        core = _get_core(ctx)
        try:
            return await fn(core)
        finally:
            await core.close()

    try:
        return asyncio.run(_go())
    except RecallError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option("--workspace", "-w", envvar="RECALLKV_WORKSPACE", default=None, help="Workspace id")
@click.option("--storage", envvar="RECALLKV_STORAGE", default=None,
              help="redis | valkey (default: redis)")
@click.pass_context
def main(ctx: click.Context, workspace: str | None, storage: str | None) -> None:
    """recallkv: agent memory over a key-value store."""
    ctx.ensure_object(dict)
    ctx.obj["workspace"] = workspace
    ctx.obj["storage"] = storage
    setup_logging()


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show workspace status."""
    st = _run(ctx, lambda core: core.status())
    click.echo("recallkv status")
    click.echo(f"  Workspace:     {st['workspace_id']} ({st['workspace_mode']})")
    click.echo(f"  Storage:       {st['storage']} ({'ok' if st['storage_ok'] else 'unreachable'})")
    click.echo(f"  Memories:      {st['memories']}")
    click.echo(f"  Embedded:      {st['embedded']}")
    click.echo(f"  Important:     {st['important']}")
    click.echo(f"  Relationships: {st['relationships']}")
    active = st["active_workflow"]
    click.echo(f"  Workflow:      {active['name'] + ' [' + active['id'] + ']' if active else 'none'}")


@main.command()
@click.argument("content")
@click.option("--type", "-t", "context_type", default=ContextType.INFORMATION.value,
              type=click.Choice([c.value for c in ContextType]), help="Context type")
@click.option("--importance", "-i", default=5, type=click.IntRange(1, 10), help="Importance 1-10")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--global", "is_global", is_flag=True, help="Store in the global scope")
@click.option("--category", default=None, help="Category name")
@click.pass_context
def remember(ctx: click.Context, content: str, context_type: str, importance: int,
             tags: tuple[str, ...], is_global: bool, category: str | None) -> None:
    """Store a memory (linked to the active workflow, if any)."""
    entry = _run(ctx, lambda core: core.remember(
        content,
        context_type=context_type,
        importance=importance,
        tags=list(tags),
        is_global=is_global,
        category=category,
    ))
    click.echo(entry.id)


@main.command()
@click.argument("memory_id")
@click.pass_context
def forget(ctx: click.Context, memory_id: str) -> None:
    """Delete a memory with every index entry and edge that names it."""
    if not _run(ctx, lambda core: core.forget(memory_id)):
        raise click.ClickException(f"memory not found: {memory_id}")
    click.echo(f"Deleted {memory_id}")


@main.command()
@click.argument("memory_id")
@click.pass_context
def show(ctx: click.Context, memory_id: str) -> None:
    """Print one memory."""
    entry = _run(ctx, lambda core: core.store.require_memory(memory_id))
    click.echo(f"ID:         {entry.id}")
    click.echo(f"Type:       {entry.context_type.value}")
    click.echo(f"Importance: {entry.importance}")
    click.echo(f"Tags:       {', '.join(entry.tags) or '-'}")
    click.echo(f"Scope:      {'global' if entry.is_global else entry.workspace_id}")
    click.echo(f"Embedding:  {len(entry.embedding) if entry.embedding else 0} dims")
    click.echo("")
    click.echo(entry.content)


@main.command()
@click.argument("from_id")
@click.argument("to_id")
@click.option("--type", "-t", "relationship_type", default=RelationshipType.RELATES_TO.value,
              type=click.Choice([r.value for r in RelationshipType]), help="Relationship type")
@click.pass_context
def link(ctx: click.Context, from_id: str, to_id: str, relationship_type: str) -> None:
    """Create a relationship FROM_ID -> TO_ID."""
    rel = _run(ctx, lambda core: core.graph.create_relationship(from_id, to_id, relationship_type))
    click.echo(rel.id)


@main.command()
@click.argument("relationship_id")
@click.pass_context
def unlink(ctx: click.Context, relationship_id: str) -> None:
    """Delete a relationship."""
    if not _run(ctx, lambda core: core.graph.delete_relationship(relationship_id)):
        raise click.ClickException(f"relationship not found: {relationship_id}")
    click.echo(f"Deleted {relationship_id}")


@main.command()
@click.argument("memory_id")
@click.option("--depth", "-d", default=1, type=int, help="Traversal depth")
@click.option("--direction", default="both", type=click.Choice(["out", "in", "both"]))
@click.pass_context
def related(ctx: click.Context, memory_id: str, depth: int, direction: str) -> None:
    """List memories reachable from MEMORY_ID."""
    results = _run(ctx, lambda core: core.graph.get_related_memories(
        memory_id, depth=depth, direction=direction,
    ))
    if not results:
        click.echo("No related memories.")
    for r in results:
        preview = r.memory.content[:80].replace("\n", " ")
        click.echo(f"  [{r.depth}] {r.memory.id} ({r.relationship.relationship_type.value}) {preview}")


@main.command(name="graph")
@click.argument("memory_id")
@click.option("--depth", "-d", default=2, type=int, help="Traversal depth")
@click.option("--max-nodes", "-n", default=50, type=int, help="Node ceiling")
@click.pass_context
def graph_cmd(ctx: click.Context, memory_id: str, depth: int, max_nodes: int) -> None:
    """Show the subgraph around a memory."""
    graph = _run(ctx, lambda core: core.graph.get_memory_graph(
        memory_id, max_depth=depth, max_nodes=max_nodes,
    ))
    click.echo(f"Root: {graph.root_memory_id}")
    click.echo(f"Nodes: {graph.total_nodes} (max depth reached: {graph.max_depth_reached})")
    click.echo(f"Edges: {len(graph.edges)}")
    for e in graph.edges[:20]:
        click.echo(f"  {e.from_memory_id} -[{e.relationship_type.value}]-> {e.to_memory_id}")


@main.command(name="consolidate")
@click.option("--force", is_flag=True, help="Run even below the memory count threshold")
@click.option("--threshold", default=None, type=float, help="Similarity threshold")
@click.option("--keep", "keep_ids", multiple=True, help="Memory id to retain (repeatable)")
@click.option("--dry-run", is_flag=True, help="Only list proposed clusters")
@click.pass_context
def consolidate_cmd(ctx: click.Context, force: bool, threshold: float | None,
                    keep_ids: tuple[str, ...], dry_run: bool) -> None:
    """Merge near-duplicate memories."""
    if dry_run:
        proposals = _run(ctx, lambda core: core.consolidation.find_clusters(threshold=threshold))
        click.echo(f"{len(proposals)} cluster(s) proposed")
        for p in proposals:
            click.echo(f"  keep {p.retained_id} <- {', '.join(p.discarded_ids)} (sim {p.similarity:.3f})")
        return
    result = _run(ctx, lambda core: core.consolidation.consolidate(
        force=force, threshold=threshold, keep_ids=list(keep_ids),
    ))
    click.echo(result.report)


# --- workflows ---

@main.group()
def workflow() -> None:
    """Workflow lifecycle."""


def _echo_workflow(info) -> None:
    click.echo(f"{info.id}  {info.status.value:<9}  {info.memory_count:>3} memories  {info.name}")


@workflow.command(name="start")
@click.argument("name")
@click.option("--description", "-d", default=None)
@click.pass_context
def workflow_start(ctx: click.Context, name: str, description: str | None) -> None:
    info = _run(ctx, lambda core: core.workflows.start(name, description))
    _echo_workflow(info)


@workflow.command(name="pause")
@click.argument("workflow_id", required=False)
@click.pass_context
def workflow_pause(ctx: click.Context, workflow_id: str | None) -> None:
    info = _run(ctx, lambda core: core.workflows.pause(workflow_id))
    _echo_workflow(info)


@workflow.command(name="resume")
@click.argument("workflow_id")
@click.pass_context
def workflow_resume(ctx: click.Context, workflow_id: str) -> None:
    info = _run(ctx, lambda core: core.workflows.resume(workflow_id))
    _echo_workflow(info)


@workflow.command(name="complete")
@click.argument("workflow_id", required=False)
@click.option("--summary", "-s", default=None)
@click.pass_context
def workflow_complete(ctx: click.Context, workflow_id: str | None, summary: str | None) -> None:
    info = _run(ctx, lambda core: core.workflows.complete(workflow_id, summary))
    _echo_workflow(info)
    if info.summary:
        click.echo(info.summary)


@workflow.command(name="list")
@click.option("--status", default=None, type=click.Choice([s.value for s in WorkflowStatus]))
@click.option("--limit", "-l", default=20, type=int)
@click.pass_context
def workflow_list(ctx: click.Context, status: str | None, limit: int) -> None:
    items = _run(ctx, lambda core: core.workflows.list_workflows(status=status, limit=limit))
    if not items:
        click.echo("No workflows.")
    for info in items:
        _echo_workflow(info)


@workflow.command(name="show")
@click.pass_context
def workflow_show(ctx: click.Context) -> None:
    """Print the active workflow context block."""
    text = _run(ctx, lambda core: core.workflows.get_active_workflow_context())
    click.echo(text or "No active workflow.")


@workflow.command(name="link")
@click.argument("workflow_id")
@click.argument("memory_id")
@click.pass_context
def workflow_link(ctx: click.Context, workflow_id: str, memory_id: str) -> None:
    _run(ctx, lambda core: core.workflows.link_memory(workflow_id, memory_id))
    click.echo(f"Linked {memory_id} to {workflow_id}")


if __name__ == "__main__":
    main()
