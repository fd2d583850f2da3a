import pytest

from racekit import db, services
from racekit.errors import UpdateFailed
from racekit.scanner import (
    CameraPermission,
    CameraUnavailable,
    InvalidTransition,
    NoCamera,
    ScanSession,
    ScanState,
)


class FakeHandle:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakeCamera:
    def __init__(self, granted=True, fail_open=False):
        self.granted = granted
        self.fail_open = fail_open
        self.handles = []

    def check_camera_permission(self):
        return CameraPermission(granted=self.granted, reason=None if self.granted else "Camera permission denied")

    def open_camera_session(self):
        if self.fail_open:
            raise CameraUnavailable("Camera is busy")
        h = FakeHandle()
        self.handles.append(h)
        return h


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _payload(reg):
    return services.build_registration_payload(reg)


def test_full_camera_flow(session, seeded):
    camera, clock = FakeCamera(), FakeClock()
    station = ScanSession.for_db(session, camera=camera, clock=clock, done_reset_seconds=3)
    assert station.state == ScanState.IDLE

    assert station.start_scanning() is True
    assert station.state == ScanState.SCANNING
    assert station.mode == "camera"

    found = station.on_decoded(_payload(seeded["jane"]))
    assert found is not None
    assert station.state == ScanState.REVIEWING
    assert camera.handles[0].closed
    assert station.notice == "Payment not confirmed (status: pending)"

    reg = station.submit_claim("Mary", "Sister")
    assert reg.kit_claimed is True
    assert reg.claimed_by == "Mary"
    assert station.state == ScanState.DONE

    clock.now += 2.9
    assert station.poll() == ScanState.DONE
    clock.now += 0.2
    assert station.poll() == ScanState.IDLE
    assert station.current is None
    assert station.result is None


def test_permission_denied_falls_back_to_manual(session, seeded):
    station = ScanSession.for_db(session, camera=FakeCamera(granted=False))
    assert station.start_scanning() is False
    assert station.state == ScanState.SCANNING
    assert station.mode == "manual"
    assert station.error == "Camera permission denied"

    station.on_decoded(_payload(seeded["john"]))
    assert station.state == ScanState.REVIEWING
    assert station.error is None


def test_camera_open_failure_falls_back_to_manual(session, seeded):
    station = ScanSession.for_db(session, camera=FakeCamera(fail_open=True))
    assert station.start_scanning() is False
    assert station.mode == "manual"
    assert station.error == "Camera is busy"


def test_default_station_has_no_camera(session, seeded):
    station = ScanSession.for_db(session)
    assert isinstance(station.camera, NoCamera)
    assert station.start_scanning() is False
    assert station.mode == "manual"


def test_unknown_code_stays_scanning_and_reopens_camera(session, seeded):
    camera = FakeCamera()
    station = ScanSession.for_db(session, camera=camera)
    station.start_scanning()
    assert station.on_decoded("CogFamRun2025|FR2025999999|Nobody|3K|800|M") is None
    assert station.state == ScanState.SCANNING
    assert station.error == "Registration not found for this code"
    assert len(camera.handles) == 2
    assert camera.handles[0].closed and not camera.handles[1].closed


def test_lookup_error_not_replaced_by_camera_failure(session, seeded):
    camera = FakeCamera()
    station = ScanSession.for_db(session, camera=camera)
    station.start_scanning()
    camera.fail_open = True
    assert station.on_decoded("CogFamRun2025|FR2025999999|Nobody|3K|800|M") is None
    assert station.state == ScanState.SCANNING
    assert station.mode == "manual"
    assert station.error == "Registration not found for this code"


def test_malformed_manual_entry(session, seeded):
    station = ScanSession.for_db(session)
    station.start_manual_entry()
    assert station.on_decoded("random text") is None
    assert station.state == ScanState.SCANNING
    assert station.error == "Invalid QR Code - not in the correct format"


def test_frame_errors_are_quiet(session, seeded):
    station = ScanSession.for_db(session, camera=FakeCamera())
    station.start_scanning()
    for _ in range(5):
        station.on_frame_error(ValueError("no code in frame"))
    assert station.frame_errors == 5
    assert station.error is None
    assert station.state == ScanState.SCANNING


def test_blank_claimer_makes_no_call():
    calls = []
    reg = type("Reg", (), {"id": 1, "claimed_by": None, "claim_notes": None, "claim_version": 0})()
    found = type("Found", (), {"registration": reg, "warnings": []})()
    station = ScanSession(
        lookup=lambda text: found,
        claim=lambda *a: calls.append(a),
        unclaim=lambda *a: calls.append(a),
    )
    station.start_manual_entry()
    station.on_decoded("anything")
    assert station.submit_claim("   ") is None
    assert calls == []
    assert station.state == ScanState.REVIEWING
    assert station.error == "Claimer name is required to claim a kit"


def test_failed_submit_resets_to_idle():
    reg = type("Reg", (), {"id": 1, "claimed_by": None, "claim_notes": None, "claim_version": 0})()
    found = type("Found", (), {"registration": reg, "warnings": []})()

    def claim(*a):
        raise UpdateFailed("Error updating kit claim status: disk I/O error")

    station = ScanSession(lookup=lambda text: found, claim=claim, unclaim=claim)
    station.start_manual_entry()
    station.on_decoded("anything")
    assert station.submit_claim("Mary") is None
    assert station.state == ScanState.IDLE
    assert station.error == "Error updating kit claim status: disk I/O error"


def test_unexpected_submit_error_propagates():
    reg = type("Reg", (), {"id": 1, "claimed_by": None, "claim_notes": None, "claim_version": 0})()
    found = type("Found", (), {"registration": reg, "warnings": []})()

    def claim(*a):
        raise RuntimeError("boom")

    station = ScanSession(lookup=lambda text: found, claim=claim, unclaim=claim)
    station.start_manual_entry()
    station.on_decoded("anything")
    with pytest.raises(RuntimeError):
        station.submit_claim("Mary")
    assert station.state == ScanState.REVIEWING


def test_review_prefills_existing_claim(session, seeded):
    jane = seeded["jane"]
    services.claim_kit(session, jane.id, claimed_by="Mary", claim_notes="Sister")
    station = ScanSession.for_db(session)
    station.start_manual_entry()
    station.on_decoded(_payload(jane))
    assert station.claimer_name == "Mary"
    assert station.claim_notes == "Sister"
    assert "Kit already claimed by Mary" in station.notice


def test_unclaim_from_review(session, seeded):
    jane = seeded["jane"]
    services.claim_kit(session, jane.id, claimed_by="Mary", claim_notes="Sister")
    station = ScanSession.for_db(session)
    station.start_manual_entry()
    station.on_decoded(_payload(jane))
    reg = station.submit_unclaim()
    assert reg.kit_claimed is False
    assert reg.claimed_at is None
    assert reg.claim_notes.endswith("Previous notes: Sister")
    assert station.state == ScanState.DONE


def test_version_checked_station_reports_conflict(session, seeded):
    jane = seeded["jane"]
    station = ScanSession.for_db(session, check_version=True)
    station.start_manual_entry()
    station.on_decoded(_payload(jane))
    # another station claims it in the meantime
    other = db.new_session()
    try:
        services.claim_kit(other, jane.id, claimed_by="Paul")
    finally:
        other.close()
    assert station.submit_claim("Mary") is None
    assert station.state == ScanState.IDLE
    assert "changed by someone else" in station.error


def test_rescan_sees_claim_from_another_desk(session, seeded):
    jane = seeded["jane"]
    station = ScanSession.for_db(session)
    station.start_manual_entry()
    assert station.on_decoded(_payload(jane)).registration.kit_claimed is False
    station.cancel()

    other = db.new_session()
    try:
        services.claim_kit(other, jane.id, claimed_by="Other desk")
    finally:
        other.close()

    station.start_manual_entry()
    found = station.on_decoded(_payload(jane))
    assert found.registration.kit_claimed is True
    assert found.registration.claimed_by == "Other desk"
    assert station.claimer_name == "Other desk"
    assert any(w.startswith("Kit already claimed by Other desk") for w in found.warnings)


def test_cancel_closes_camera(session, seeded):
    camera = FakeCamera()
    station = ScanSession.for_db(session, camera=camera)
    station.start_scanning()
    station.cancel()
    assert station.state == ScanState.IDLE
    assert camera.handles[0].closed


def test_scan_another_keeps_mode(session, seeded):
    clock = FakeClock()
    station = ScanSession.for_db(session, clock=clock)
    station.start_manual_entry()
    station.on_decoded(_payload(seeded["john"]))
    station.submit_claim("John")
    assert station.state == ScanState.DONE
    assert station.scan_another() is False
    assert station.state == ScanState.SCANNING
    assert station.mode == "manual"


def test_invalid_transitions(session, seeded):
    station = ScanSession.for_db(session)
    with pytest.raises(InvalidTransition):
        station.on_decoded("x")
    with pytest.raises(InvalidTransition):
        station.submit_claim("Mary")
    station.start_manual_entry()
    with pytest.raises(InvalidTransition):
        station.start_scanning()
