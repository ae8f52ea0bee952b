from langcenter.errors import DomainError, SchedulingConflict, WithinCancellationWindow


def test_errors_carry_a_stable_code():
    err = SchedulingConflict("Time slot is not available", details={"date": "2030-03-10"})
    assert isinstance(err, DomainError)
    assert err.to_dict() == {
        "success": False,
        "code": "SchedulingConflict",
        "message": "Time slot is not available",
        "details": {"date": "2030-03-10"},
    }


def test_code_can_be_overridden():
    err = WithinCancellationWindow("Too late", code="CANCELLATION_WINDOW")
    assert err.code == "CANCELLATION_WINDOW"
    assert err.details == {}
    assert str(err) == "Too late"
