from errors import JobServerError, MachineBusy, NoCompatibleMachine, TransportFailure, from_dict


def test_errors_round_trip_by_name():
    e = from_dict(MachineBusy("m1 is busy").to_dict())
    assert isinstance(e, MachineBusy)
    assert e.detail == "m1 is busy"
    assert e.status_code == 409
    assert type(from_dict({"error": "Bogus", "detail": "x"})) is JobServerError


def test_informational_error_has_no_success_status():
    assert NoCompatibleMachine.status_code == JobServerError.status_code
    assert TransportFailure("down").unreachable is True
