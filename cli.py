# cli.py
import functools
import logging
import sys

import click

from client import Client
from errors import JobServerError
from matrix import parse_params
from storage import DEFAULT_DB, Storage


def handle_errors(f):
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except JobServerError as e:
            click.echo(f"❌ {type(e).__name__}: {e.detail}", err=True)
            sys.exit(1)
    return wrapper


def _client():
    return click.get_current_context().find_root().obj


def _job_line(j, long=False):
    cls = j.get("cls") or ",".join(j.get("classes", []))
    line = f"{j['jid']} | {j['kind']} | class={cls} | state={j['state']} | machine={j.get('machine') or '-'}"
    if j.get("matrix") is not None:
        line += f" | matrix={j['matrix']}"
    cmd = j["cmd"] if long or len(j["cmd"]) <= 60 else j["cmd"][:57] + "..."
    line += f" | {cmd}"
    if long:
        if j.get("variables"):
            line += " | " + " ".join(f"{k}={v}" for k, v in j["variables"].items())
        if j.get("error"):
            line += f" | error={j['error']}"
        for path in j.get("results") or []:
            line += f"\n    → {path}"
    return line


@click.group()
@click.option("--url", envvar="JOBSERVER_URL", default=None, help="Server URL (default http://127.0.0.1:3030)")
@click.pass_context
def cli(ctx, url):
    """jobserver - schedule experiment jobs onto remote machines"""
    ctx.obj = Client(url)


# ---------------- Server ----------------
@cli.command()
@click.option("--host", default="127.0.0.1", help="Interface to listen on")
@click.option("--port", default=3030, type=int, help="Port to listen on")
@click.option("--db", default=DEFAULT_DB, help="SQLite file holding the event log and config")
@click.option("--driver", default=None, help="Driver command prefixed to every job (uses config if set)")
@click.option("--transport", type=click.Choice(["ssh", "local"]), default=None, help="Remote execution transport (uses config if set)")
@click.option("--results-dir", default=None, help="Local directory for job output and artifacts (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Scheduler idle polling interval in seconds (uses config if set)")
@click.option("--log-level", default="INFO", help="Logging level")
def serve(host, port, db, driver, transport, results_dir, poll_interval, log_level):
    """Run the job server: replay the log, then schedule and serve requests"""
    import uvicorn
    from scheduler import Scheduler
    from server import create_app

    logging.basicConfig(
        level=log_level.upper(),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s")

    storage = Storage(db)
    scheduler = Scheduler.from_storage(
        storage,
        driver=driver,
        transport=transport,
        results_dir=results_dir,
        poll_interval=poll_interval)
    requeued = scheduler.recover()
    if requeued:
        click.echo(f"♻️ Requeued {len(requeued)} job(s) that were running: {', '.join(map(str, requeued))}")

    click.echo(f"🚀 Job server listening on http://{host}:{port} (db={db})")
    uvicorn.run(create_app(scheduler), host=host, port=port, log_level=log_level.lower())


@cli.command()
@handle_errors
def ping():
    """Check that the server is up"""
    _client().ping()
    click.echo("✅ Server is up.")


# ---------------- Machines ----------------
@cli.group()
def machine():
    """Operations on the pool of machines"""
    pass

@machine.command("add")
@click.argument("addr")
@click.argument("classes", nargs=-1, required=True)
@click.option("--user", default=None, help="SSH user for this machine")
@click.option("--key", "key_filename", default=None, help="SSH private key for this machine")
@handle_errors
def machine_add(addr, classes, user, key_filename):
    """Make ADDR available in the given CLASSES"""
    m = _client().add_machine(addr, classes, user=user, key_filename=key_filename)
    click.echo(f"✅ Machine {m['addr']} added to {', '.join(m['classes'])} ({m['state']}).")

@machine.command("rm")
@click.argument("addr")
@click.option("--force", is_flag=True, help="Remove even if a job is in flight")
@handle_errors
def machine_rm(addr, force):
    """Remove ADDR from the pool"""
    _client().remove_machine(addr, force=force)
    click.echo(f"🗑 Machine {addr} removed.")

@machine.command("ls")
@click.option("--cls", default=None, help="Only machines in this class")
@handle_errors
def machine_ls(cls):
    """List machines"""
    rows = _client().machines(cls)
    if not rows:
        click.echo("No machines found.")
        return
    for m in rows:
        job = m["job"] if m["job"] is not None else "-"
        err = f" | error={m['error']}" if m["error"] else ""
        click.echo(f"{m['addr']} | classes={','.join(m['classes']) or '-'} | state={m['state']} | job={job}{err}")

@machine.command("setup")
@click.argument("addr")
@click.argument("cmds", nargs=-1, required=True)
@click.option("--class", "classes", multiple=True, help="Class(es) to join once setup succeeds")
@handle_errors
def machine_setup(addr, cmds, classes):
    """Run setup CMDS on ADDR in order, then make it available"""
    jid = _client().setup_machine(addr, cmds, classes)
    click.echo(f"✅ Setup pipeline {jid} created for {addr} ({len(cmds)} step(s)).")


# ---------------- Variables ----------------
@cli.group()
def var():
    """Variables substituted into job commands as {NAME}"""
    pass

@var.command("set")
@click.argument("name")
@click.argument("value")
@handle_errors
def var_set(name, value):
    """Set variable NAME to VALUE"""
    _client().set_var(name, value)
    click.echo(f"🛠️ {name}={value}")

@var.command("ls")
@handle_errors
def var_ls():
    """List variables"""
    variables = _client().vars()
    if not variables:
        click.echo("No variables set.")
        return
    for name, value in sorted(variables.items()):
        click.echo(f"{name}={value}")


# ---------------- Jobs ----------------
@cli.group()
def job():
    """Operations on jobs"""
    pass

@job.command("add")
@click.argument("cls")
@click.argument("cmd")
@click.option("--cp-results", default=None, help="Local directory to copy results into")
@handle_errors
def job_add(cls, cmd, cp_results):
    """Enqueue CMD to run on a machine of class CLS"""
    jid = _client().add_job(cls, cmd, cp_results)
    click.echo(f"✅ Job {jid} enqueued (class={cls}).")

@job.command("ls")
@click.option("--state", default=None, help="Filter by state (waiting, running, done, failed, canceled)")
@click.option("--cls", default=None, help="Filter by class")
@click.option("--long", is_flag=True, help="Show variables, errors and results")
@handle_errors
def job_ls(state, cls, long):
    """List jobs"""
    rows = _client().jobs(state=state, cls=cls)
    if not rows:
        click.echo("No jobs found.")
        return
    for j in rows:
        click.echo(_job_line(j, long))

@job.command("stat")
@click.argument("jid", type=int)
@handle_errors
def job_stat(jid):
    """Show details of a single job"""
    j = _client().status(jid)
    click.echo(f"🔎 Job {j['jid']} ({j['kind']})")
    click.echo(f"  Command: {j['cmd']}")
    click.echo(f"  Class: {j.get('cls') or ','.join(j.get('classes', [])) or '-'}")
    click.echo(f"  State: {j['state']}")
    click.echo(f"  Machine: {j.get('machine') or '-'}")
    click.echo(f"  Created: {j['created_at']}")
    click.echo(f"  Started: {j['started_at'] or '-'}")
    click.echo(f"  Finished: {j['finished_at'] or '-'}")
    click.echo(f"  Exit code: {j['exit_code'] if j['exit_code'] is not None else '-'}")
    click.echo(f"  Error: {j['error'] or '-'}")
    if j.get("variables"):
        click.echo("  Variables: " + " ".join(f"{k}={v}" for k, v in j["variables"].items()))
    for path in j.get("results") or []:
        click.echo(f"  Result: {path}")
    click.echo(f"  Output: {j['output']}")

@job.command("log")
@click.argument("jid", type=int)
@handle_errors
def job_log(jid):
    """Print the captured output of a job"""
    click.echo(_client().output(jid) or "(no output)", nl=False)

@job.command("cancel")
@click.argument("jids", nargs=-1, type=int, required=True)
@handle_errors
def job_cancel(jids):
    """Cancel waiting job(s)"""
    for jid in jids:
        _client().cancel(jid)
        click.echo(f"🛑 Job {jid} canceled.")

@job.command("rm")
@click.argument("jids", nargs=-1, type=int, required=True)
@handle_errors
def job_rm(jids):
    """Cancel waiting job(s) or delete finished ones"""
    client = _client()
    for jid in jids:
        if client.status(jid)["state"] == "waiting":
            client.cancel(jid)
            click.echo(f"🛑 Job {jid} canceled.")
        else:
            client.delete(jid)
            click.echo(f"🗑 Job {jid} deleted.")

@job.command("clone")
@click.argument("jids", nargs=-1, type=int, required=True)
@handle_errors
def job_clone(jids):
    """Enqueue a copy of job(s)"""
    for jid in jids:
        new = _client().clone(jid)
        click.echo(f"✅ Job {jid} cloned as {new}.")


# ---------------- Matrices ----------------
@cli.group()
def matrix():
    """Operations on job matrices"""
    pass

@matrix.command("add")
@click.argument("cls")
@click.argument("cmd")
@click.argument("variables", nargs=-1, required=True)
@click.option("--cp-results", default=None, help="Local directory to copy results into")
@handle_errors
def matrix_add(cls, cmd, variables, cp_results):
    """Enqueue CMD once per combination of KEY=VALUE1,VALUE2,... VARIABLES"""
    r = _client().add_matrix(cls, cmd, parse_params(variables), cp_results)
    click.echo(f"✅ Matrix {r['id']} enqueued {len(r['jobs'])} job(s): {', '.join(map(str, r['jobs']))}")

@matrix.command("stat")
@click.argument("mid", type=int)
@click.option("--long", is_flag=True, help="Show variables, errors and results")
@handle_errors
def matrix_stat(mid, long):
    """Show a matrix and the state of its jobs"""
    m = _client().matrix(mid)
    click.echo(f"🔎 Matrix {m['id']} (class={m['cls']})")
    click.echo(f"  Command: {m['cmd']}")
    for key, values in m["params"].items():
        click.echo(f"  {key}: {', '.join(values)}")
    for j in m["jobs"]:
        click.echo("  " + _job_line(j, long))


# ---------------- Config management ----------------
@cli.group()
def config():
    """Server configuration, read when the server starts"""
    pass

@config.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--db", default=DEFAULT_DB, help="SQLite file of the server")
def config_set(key, value, db):
    """Set a config key to a value"""
    Storage(db).set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")

@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.option("--db", default=DEFAULT_DB, help="SQLite file of the server")
def config_get(key, default, db):
    """Get a config key"""
    value = Storage(db).get_config(key, default=default)
    if value is None:
        click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")

@config.command("list")
@click.option("--db", default=DEFAULT_DB, help="SQLite file of the server")
def config_list(db):
    """List all config keys"""
    rows = Storage(db).config_items()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
