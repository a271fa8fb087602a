# client.py
import os
from urllib.parse import quote

import requests

from errors import JobServerError, TransportFailure, from_dict

DEFAULT_URL = "http://127.0.0.1:3030"


class Client:
    """Thin requests wrapper over the server's HTTP API.

    Server-side errors come back as the same ``errors`` classes.
    """

    def __init__(self, url=None, timeout=30):
        self.url = (url or os.environ.get("JOBSERVER_URL") or DEFAULT_URL).rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def _request(self, method, path, **kwargs):
        try:
            r = self.session.request(method, self.url + path, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportFailure(f"Unable to reach server at {self.url}: {e}") from e
        if r.status_code >= 400:
            try:
                raise from_dict(r.json())
            except ValueError:
                raise JobServerError(f"{r.status_code}: {r.text}") from None
        if r.headers.get("content-type", "").startswith("application/json"):
            return r.json()
        return r.text

    def ping(self):
        return self._request("GET", "/ping")

    # ---------------- Machines ----------------
    def machines(self, cls=None):
        return self._request("GET", "/machines", params={"cls": cls} if cls else None)

    def add_machine(self, addr, classes, user=None, key_filename=None):
        body = {"addr": addr, "classes": list(classes), "user": user, "key_filename": key_filename}
        return self._request("POST", "/machines", json=body)

    def remove_machine(self, addr, force=False):
        return self._request("DELETE", f"/machines/{quote(addr, safe=':')}", params={"force": str(force).lower()})

    def setup_machine(self, addr, cmds, classes=()):
        body = {"cmds": list(cmds), "classes": list(classes)}
        return self._request("POST", f"/machines/{quote(addr, safe=':')}/setup", json=body)["jid"]

    # ---------------- Variables ----------------
    def vars(self):
        return self._request("GET", "/vars")

    def set_var(self, name, value):
        return self._request("PUT", f"/vars/{quote(name)}", json={"value": value})

    # ---------------- Jobs ----------------
    def jobs(self, state=None, cls=None, kind=None):
        params = {k: v for k, v in (("state", state), ("cls", cls), ("kind", kind)) if v}
        return self._request("GET", "/jobs", params=params)

    def add_job(self, cls, cmd, cp_results=None):
        return self._request("POST", "/jobs", json={"cls": cls, "cmd": cmd, "cp_results": cp_results})["jid"]

    def status(self, jid):
        return self._request("GET", f"/jobs/{int(jid)}")

    def output(self, jid):
        return self._request("GET", f"/jobs/{int(jid)}/output")

    def cancel(self, jid):
        return self._request("POST", f"/jobs/{int(jid)}/cancel")

    def clone(self, jid):
        return self._request("POST", f"/jobs/{int(jid)}/clone")["jid"]

    def delete(self, jid):
        return self._request("DELETE", f"/jobs/{int(jid)}")

    # ---------------- Matrices ----------------
    def add_matrix(self, cls, cmd, params, cp_results=None):
        body = {"cls": cls, "cmd": cmd, "params": params, "cp_results": cp_results}
        return self._request("POST", "/matrices", json=body)

    def matrix(self, mid):
        return self._request("GET", f"/matrices/{int(mid)}")
