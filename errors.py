# errors.py
class JobServerError(Exception):
    status_code = 500

    def __init__(self, detail=""):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self):
        return {"error": type(self).__name__, "detail": self.detail}


class InvalidState(JobServerError):
    """Operation not legal for the current job or machine state."""
    status_code = 409


class MachineBusy(JobServerError):
    status_code = 409


class NoCompatibleMachine(JobServerError):
    """Informational only: the job stays waiting."""


class TransportFailure(JobServerError):
    status_code = 502

    def __init__(self, detail="", unreachable=True):
        super().__init__(detail)
        self.unreachable = unreachable


class DriverFailure(JobServerError):
    status_code = 500

    def __init__(self, detail="", exit_code=None):
        super().__init__(detail)
        self.exit_code = exit_code


class InvalidRequest(JobServerError):
    status_code = 400


class NoSuchJob(JobServerError):
    status_code = 404


class NoSuchMachine(JobServerError):
    status_code = 404


class NoSuchMatrix(JobServerError):
    status_code = 404


ERRORS = {cls.__name__: cls for cls in (
    JobServerError, InvalidState, MachineBusy, NoCompatibleMachine, TransportFailure,
    DriverFailure, InvalidRequest, NoSuchJob, NoSuchMachine, NoSuchMatrix,
)}


def from_dict(data, default=JobServerError):
    cls = ERRORS.get(data.get("error"), default)
    return cls(data.get("detail", ""))
