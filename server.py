# server.py
from contextlib import asynccontextmanager
from html import escape
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, JSONResponse
from pydantic import BaseModel, Field

from errors import JobServerError
from matrix import JobTemplate


class MachineIn(BaseModel):
    addr: str
    classes: List[str] = Field(default_factory=list)
    user: Optional[str] = None
    key_filename: Optional[str] = None


class SetupIn(BaseModel):
    cmds: List[str]
    classes: List[str] = Field(default_factory=list)
    user: Optional[str] = None
    key_filename: Optional[str] = None


class VarIn(BaseModel):
    value: str


class JobIn(BaseModel):
    cls: str
    cmd: str
    cp_results: Optional[str] = None


class MatrixIn(BaseModel):
    cls: str
    cmd: str
    # Each value is either a fixed value or a list of candidates
    params: Dict[str, Any] = Field(default_factory=dict)
    cp_results: Optional[str] = None


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{title}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def create_app(scheduler, run_loop=True) -> FastAPI:
    """HTTP front for ``scheduler``; one request maps to one scheduler call."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_loop:
            scheduler.start()
        try:
            yield
        finally:
            if run_loop:
                scheduler.stop()

    app = FastAPI(title="jobserver", lifespan=lifespan)
    app.state.scheduler = scheduler

    @app.exception_handler(JobServerError)
    async def jobserver_error(request: Request, exc: JobServerError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/ping")
    def ping():
        return {"ok": True}

    # ---------- Machines ----------
    @app.get("/machines")
    def list_machines(cls: Optional[str] = None):
        return scheduler.list_machines(cls)

    @app.post("/machines")
    def add_machine(body: MachineIn):
        return scheduler.add_machine(body.addr, body.classes, user=body.user, key_filename=body.key_filename)

    @app.delete("/machines/{addr}")
    def remove_machine(addr: str, force: bool = False):
        return scheduler.remove_machine(addr, force=force)

    @app.post("/machines/{addr}/setup")
    def setup_machine(addr: str, body: SetupIn):
        jid = scheduler.setup_machine(addr, body.cmds, body.classes, user=body.user, key_filename=body.key_filename)
        return {"jid": jid}

    # ---------- Variables ----------
    @app.get("/vars")
    def list_vars():
        return scheduler.list_vars()

    @app.put("/vars/{name}")
    def set_var(name: str, body: VarIn):
        scheduler.set_var(name, body.value)
        return {"ok": True}

    # ---------- Jobs ----------
    @app.get("/jobs")
    def list_jobs(state: Optional[str] = None, cls: Optional[str] = None, kind: Optional[str] = None):
        return scheduler.list_jobs(state=state, cls=cls, kind=kind)

    @app.post("/jobs")
    def add_job(body: JobIn):
        return {"jid": scheduler.enqueue(body.cls, body.cmd, body.cp_results)}

    @app.get("/jobs/{jid}")
    def job_status(jid: int):
        return scheduler.status(jid)

    @app.get("/jobs/{jid}/output", response_class=PlainTextResponse)
    def job_output(jid: int):
        return PlainTextResponse(scheduler.output(jid), media_type="text/plain")

    @app.post("/jobs/{jid}/cancel")
    def cancel_job(jid: int):
        return scheduler.cancel(jid)

    @app.post("/jobs/{jid}/clone")
    def clone_job(jid: int):
        return {"jid": scheduler.clone(jid)}

    @app.delete("/jobs/{jid}")
    def delete_job(jid: int):
        return scheduler.delete(jid)

    # ---------- Matrices ----------
    @app.post("/matrices")
    def add_matrix(body: MatrixIn):
        template = JobTemplate(cmd=body.cmd, cls=body.cls, params=body.params, cp_results=body.cp_results)
        mid, jids = scheduler.enqueue_matrix(template)
        return {"id": mid, "jobs": jids}

    @app.get("/matrices/{mid}")
    def matrix_status(mid: int):
        return scheduler.matrix_status(mid)

    # ---------- Overview ----------
    @app.get("/", response_class=HTMLResponse)
    def home():
        machines = scheduler.list_machines()
        jobs = scheduler.list_jobs()

        body = """
        <h2>Machines</h2>
        <table>
          <tr><th>Address</th><th>Classes</th><th>State</th><th>Job</th><th>Error</th></tr>
        """
        for m in machines:
            job = m['job'] if m['job'] is not None else '-'
            body += (f"<tr><td>{escape(m['addr'])}</td><td>{escape(', '.join(m['classes']))}</td>"
                     f"<td>{m['state']}</td><td>{job}</td><td>{escape(m['error'] or '-')}</td></tr>")
        body += "</table>"
        if not machines:
            body += "<p class='muted'>No machines registered.</p>"

        body += """
        <h2>Jobs</h2>
        <table>
          <tr><th>ID</th><th>Kind</th><th>Class</th><th>Command</th><th>State</th><th>Machine</th><th>Error</th></tr>
        """
        for j in reversed(jobs[-100:]):
            cls = j.get('cls') or ', '.join(j.get('classes', []))
            machine = j.get('machine') or '-'
            body += (f"<tr><td>{j['jid']}</td><td>{j['kind']}</td><td>{escape(cls)}</td>"
                     f"<td>{escape(j['cmd'])}</td><td>{j['state']}</td><td>{escape(machine)}</td>"
                     f"<td>{escape(j['error'] or '-')}</td></tr>")
        body += "</table>"
        return page("Job Server", body)

    return app
