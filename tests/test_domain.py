# tests/test_domain.py
import pytest

from app.core.dispatch.domain import (
    AcceptOutcome,
    AcceptOutcomeCode,
    Actor,
    ActorRole,
    RepairReport,
    RequestStatus,
    ServiceRequest,
    generate_otp,
    otp_matches,
)


def _request(status: RequestStatus = RequestStatus.OPEN) -> ServiceRequest:
    return ServiceRequest(
        id="req-1",
        customer_id="customer-1",
        category="plumbing",
        latitude=19.076,
        longitude=72.8777,
        estimated_price=50_000,
        status=status,
    )


class TestOtp:
    def test_six_digits(self):
        for _ in range(50):
            otp = generate_otp()
            assert len(otp) == 6
            assert otp.isdigit()

    def test_matches_with_whitespace(self):
        assert otp_matches("012345", " 012345 ") is True

    @pytest.mark.parametrize("expected, supplied", [
        ("012345", "012346"),
        ("012345", ""),
        (None, "012345"),
        ("012345", None),
    ])
    def test_mismatch(self, expected, supplied):
        assert otp_matches(expected, supplied) is False


class TestServiceRequest:
    @pytest.mark.parametrize("status, terminal", [
        (RequestStatus.OPEN, False),
        (RequestStatus.ASSIGNED, False),
        (RequestStatus.IN_PROGRESS, False),
        (RequestStatus.COMPLETED, True),
        (RequestStatus.CANCELLED, True),
    ])
    def test_is_terminal(self, status, terminal):
        assert _request(status).is_terminal is terminal

    def test_coordinates(self):
        coords = _request().coordinates
        assert (coords.latitude, coords.longitude) == (19.076, 72.8777)


class TestActor:
    def test_system_actor(self):
        actor = Actor.system()
        assert actor.is_system
        assert not actor.is_admin

    def test_role_values(self):
        assert ActorRole("helper") is ActorRole.HELPER


def test_accept_outcome_accepted():
    assert AcceptOutcome(AcceptOutcomeCode.ASSIGNED_OK).accepted
    assert not AcceptOutcome(AcceptOutcomeCode.ALREADY_ON_JOB).accepted


def test_repair_report_total():
    report = RepairReport(notifications_accepted=1, notifications_expired=2, helpers_released=3)
    assert report.total == 6
