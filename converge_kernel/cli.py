"""
convergectl — operator CLI for the converge kernel.

Talks to a running kernel API over HTTP. Exit codes follow the kernel's
error taxonomy: 0 on success, the error's ``exit_code`` otherwise
(``diff`` exits with the drift code when desired and live state differ).
"""

import json
from urllib.parse import quote

import click
import httpx

from converge_kernel.errors import DriftError, KernelError
from converge_kernel.source.manifests import DirectorySource

DEFAULT_SERVER = "http://127.0.0.1:8080"


def _unit_path(unit_id: str, suffix: str = "") -> str:
    return f"/units/{quote(unit_id, safe='/')}{suffix}"


def _request(ctx, method: str, path: str, **kwargs):
    """Call the API; report kernel errors and exit with their code."""
    client = ctx.obj["client"]
    try:
        response = client.request(method, path, **kwargs)
    except httpx.HTTPError as e:
        click.echo(f"✗ Cannot reach {ctx.obj['server']}: {e}", err=True)
        raise SystemExit(1)

    if response.status_code >= 400:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        error = payload.get("error", f"HTTP {response.status_code}")
        detail = payload.get("detail", response.text)
        click.echo(f"✗ {error}: {detail}", err=True)
        raise SystemExit(payload.get("exit_code", 1) if isinstance(payload, dict) else 1)
    return response.json()


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True))


def _status_line(status: dict) -> str:
    return (
        f"{status['wave']:>4}  {status['phase']:<9} {status['sync_status']:<10} "
        f"{status['observed_status']:<11} {status['id']}  {status['message']}"
    )


@click.group()
@click.option(
    "--server",
    envvar="CONVERGE_SERVER",
    default=DEFAULT_SERVER,
    show_default=True,
    help="Kernel API base URL.",
)
@click.pass_context
def main(ctx, server):
    """
    convergectl - operate a converge kernel.

    Inspect unit status, force syncs and deletions, diff desired vs live
    state and push manifests.
    """
    ctx.ensure_object(dict)
    ctx.obj["server"] = server
    if "client" not in ctx.obj:
        ctx.obj["client"] = httpx.Client(base_url=server, timeout=60.0)


@main.command()
@click.argument("unit", required=False)
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON.")
@click.pass_context
def status(ctx, unit, as_json):
    """Show every unit, or one UNIT in detail."""
    if unit:
        data = _request(ctx, "GET", _unit_path(unit))
        if as_json:
            _echo_json(data)
            return
        s = data["status"]
        click.echo(f"Unit:        {s['id']}")
        click.echo(f"Kind:        {s['kind']}")
        click.echo(f"Wave:        {s['wave']}")
        click.echo(f"Phase:       {s['phase']}")
        click.echo(f"Sync:        {s['sync_status']}")
        click.echo(f"Observed:    {s['observed_status']}")
        click.echo(f"Applied:     {s['last_applied_hash'] or '-'}")
        click.echo(f"Transition:  {s['last_transition_time'] or '-'}")
        click.echo(f"Message:     {s['message']}")
        if data.get("depends_on"):
            click.echo(f"Depends on:  {', '.join(data['depends_on'])}")
        return

    units = _request(ctx, "GET", "/units")
    if as_json:
        _echo_json(units)
        return
    if not units:
        click.echo("No units.")
        return
    click.echo(f"{'WAVE':>4}  {'PHASE':<9} {'SYNC':<10} {'OBSERVED':<11} UNIT")
    for s in units:
        click.echo(_status_line(s))


@main.command()
@click.argument("unit")
@click.pass_context
def sync(ctx, unit):
    """Force a re-apply of UNIT."""
    data = _request(ctx, "POST", _unit_path(unit, "/sync"))
    s = data["unit"]
    click.echo(f"✓ Sync requested for {s['id']}: {s['phase']} ({s['message']})")


@main.command()
@click.argument("unit")
@click.option(
    "--force",
    is_flag=True,
    help="Remove from the store without waiting for the external delete.",
)
@click.pass_context
def delete(ctx, unit, force):
    """Delete UNIT and everything that depends on it."""
    data = _request(ctx, "POST", _unit_path(unit, "/delete"), params={"force": force})
    s = data["unit"]
    click.echo(f"✓ {s['id']}: {s['phase']} ({s['message']})")
    for affected in data["affected"]:
        if affected != s["id"]:
            click.echo(f"  also deleting {affected}")


@main.command()
@click.argument("unit")
@click.pass_context
def diff(ctx, unit):
    """Show desired vs live state of UNIT."""
    data = _request(ctx, "GET", _unit_path(unit, "/diff"))
    if data["in_sync"]:
        click.echo(f"✓ {unit} is in sync")
        return
    if not data["exists"]:
        click.echo(f"✗ {unit}: live object is missing")
    else:
        click.echo(f"✗ {unit} differs at:")
        for path in data["differences"]:
            click.echo(f"  {path}")
    click.echo("--- desired")
    _echo_json(data["desired"])
    click.echo("+++ live")
    _echo_json(data["live"])
    raise SystemExit(DriftError.exit_code)


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--commit", help="Commit id to record (defaults to the content digest).")
@click.pass_context
def ingest(ctx, path, commit):
    """Push the manifests under PATH as a new source revision."""
    try:
        documents, digest = DirectorySource(path).read()
    except KernelError as e:
        click.echo(f"✗ {type(e).__name__}: {e}", err=True)
        raise SystemExit(e.exit_code)
    revision = _request(ctx, "POST", "/source/ingest", json={
        "documents": [d.model_dump(mode="json") for d in documents],
        "commit": commit or digest[:12],
    })
    click.echo(
        f"✓ Revision {revision['id']} ({revision['commit']}): "
        f"{len(revision['resource_keys'])} resources, {len(revision['removed_keys'])} removed"
    )


@main.command()
@click.option("--limit", default=20, show_default=True)
@click.pass_context
def revisions(ctx, limit):
    """List recent source revisions."""
    for r in _request(ctx, "GET", "/revisions", params={"limit": limit}):
        rollback = f" (rollback of {r['rollback_of']})" if r.get("rollback_of") else ""
        click.echo(f"{r['id']:>5}  {r['commit']}  {r['ingested_at']}{rollback}")


@main.command()
@click.argument("revision_id", type=int)
@click.pass_context
def rollback(ctx, revision_id):
    """Re-apply the documents of REVISION_ID as a new revision."""
    revision = _request(ctx, "POST", f"/revisions/{revision_id}/rollback")
    click.echo(f"✓ Rolled back to {revision_id} as revision {revision['id']}")


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, show_default=True, type=int)
@click.option("--config", "config_path", type=click.Path(), help="Kernel config YAML.")
def serve(host, port, config_path):
    """Run the kernel API with the scheduler and source poller."""
    import uvicorn

    from converge_kernel.api.app import create_app
    from converge_kernel.config import load_config
    from converge_kernel.logging_setup import configure_logging

    try:
        config = load_config(config_path)
    except KernelError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(e.exit_code)
    configure_logging(config.log_level)
    app = create_app(config=config, background=True)
    uvicorn.run(app, host=host, port=port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
