"""Kit distribution station workflow.

One ``ScanSession`` drives a single operator station::

    idle -> scanning -> reviewing -> submitting -> done -> idle

``scanning`` covers both camera capture and manual text entry. A failed
lookup keeps the station in ``scanning``; a failed submit drops it back to
``idle``. Nothing is retried automatically, the operator scans again.

Camera access goes through a ``CameraCapability`` so the workflow never
touches device or browser state directly.
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from sqlalchemy.orm import Session

from . import models, services
from .errors import KitClaimError
from .services import RegistrationLookup
from .settings import settings

logger = logging.getLogger(__name__)


class ScanState(str, enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    REVIEWING = "reviewing"
    SUBMITTING = "submitting"
    DONE = "done"


class InvalidTransition(RuntimeError):
    pass


class CameraUnavailable(Exception):
    pass


@dataclass(frozen=True)
class CameraPermission:
    granted: bool
    reason: Optional[str] = None


class CameraHandle(Protocol):
    def close(self) -> None: ...


class CameraCapability(Protocol):
    def check_camera_permission(self) -> CameraPermission: ...

    def open_camera_session(self) -> CameraHandle: ...


class NoCamera:
    """Capability for stations without a usable camera."""

    def __init__(self, reason: str = "No camera available"):
        self.reason = reason

    def check_camera_permission(self) -> CameraPermission:
        return CameraPermission(granted=False, reason=self.reason)

    def open_camera_session(self) -> CameraHandle:
        raise CameraUnavailable(self.reason)


LookupFn = Callable[[str], RegistrationLookup]
ClaimFn = Callable[[int, str, Optional[str], Optional[int]], models.Registration]
UnclaimFn = Callable[[int, Optional[str], Optional[int]], models.Registration]


class ScanSession:
    def __init__(
        self,
        lookup: LookupFn,
        claim: ClaimFn,
        unclaim: UnclaimFn,
        camera: Optional[CameraCapability] = None,
        clock: Callable[[], float] = time.monotonic,
        done_reset_seconds: Optional[float] = None,
        check_version: bool = False,
    ):
        self._lookup = lookup
        self._claim = claim
        self._unclaim = unclaim
        self.camera = camera or NoCamera()
        self.clock = clock
        # last write wins unless the station opts into version checks
        self.check_version = check_version
        self.done_reset_seconds = (
            settings.RACEKIT_DONE_RESET_SECONDS if done_reset_seconds is None else done_reset_seconds
        )

        self.state = ScanState.IDLE
        self.mode: Optional[str] = None  # "camera" | "manual"
        self.error: Optional[str] = None
        self.notice: Optional[str] = None
        self.current: Optional[RegistrationLookup] = None
        self.result: Optional[models.Registration] = None
        self.claimer_name = ""
        self.claim_notes = ""
        self.frame_errors = 0
        self._handle: Optional[CameraHandle] = None
        self._done_at: Optional[float] = None

    @classmethod
    def for_db(cls, session: Session, camera: Optional[CameraCapability] = None, **kwargs) -> "ScanSession":
        return cls(
            lookup=lambda text: services.lookup_registration(session, text),
            claim=lambda pk, by, notes, version: services.claim_kit(
                session, pk, claimed_by=by, claim_notes=notes, expected_version=version
            ),
            unclaim=lambda pk, notes, version: services.unclaim_kit(
                session, pk, previous_notes=notes, expected_version=version
            ),
            camera=camera,
            **kwargs,
        )

    # ---------------------------
    # helpers
    # ---------------------------

    def _require(self, *states: ScanState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidTransition(f"Not allowed in state {self.state.value} (expected {allowed})")

    def _close_camera(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()

    def _reset(self) -> None:
        self._close_camera()
        self.state = ScanState.IDLE
        self.error = None
        self.notice = None
        self.current = None
        self.result = None
        self.claimer_name = ""
        self.claim_notes = ""
        self.frame_errors = 0
        self._done_at = None

    def _open_camera(self) -> bool:
        permission = self.camera.check_camera_permission()
        if not permission.granted:
            self.mode = "manual"
            self.error = permission.reason or "Camera permission denied"
            logger.info("Camera unavailable, falling back to manual entry: %s", self.error)
            return False
        try:
            self._handle = self.camera.open_camera_session()
        except CameraUnavailable as e:
            self.mode = "manual"
            self.error = str(e) or "Camera could not be started"
            logger.info("Camera session failed, falling back to manual entry: %s", self.error)
            return False
        self.mode = "camera"
        return True

    # ---------------------------
    # transitions
    # ---------------------------

    def start_scanning(self) -> bool:
        """Enter ``scanning`` with the camera. Returns False if it fell back to manual entry."""
        self._require(ScanState.IDLE)
        self._reset()
        self.state = ScanState.SCANNING
        return self._open_camera()

    def start_manual_entry(self) -> None:
        self._require(ScanState.IDLE)
        self._reset()
        self.mode = "manual"
        self.state = ScanState.SCANNING

    def on_frame_error(self, exc: Optional[BaseException] = None) -> None:
        # fires for every frame without a readable code; stay quiet
        if self.state != ScanState.SCANNING:
            return
        self.frame_errors += 1
        logger.debug("QR frame decode failed: %s", exc)

    def on_decoded(self, text: str) -> Optional[RegistrationLookup]:
        """Feed scanned or typed text; moves to ``reviewing`` on a successful lookup."""
        self._require(ScanState.SCANNING)
        self._close_camera()
        self.error = None
        try:
            found = self._lookup(text)
        except KitClaimError as e:
            logger.info("Lookup failed (%s): %s", e.code, e.message)
            if self.mode == "camera":
                self._open_camera()
            # the lookup error wins over a camera failure message
            self.error = e.message
            return None

        self.current = found
        self.claimer_name = found.registration.claimed_by or ""
        self.claim_notes = found.registration.claim_notes or ""
        self.notice = "; ".join(found.warnings) or None
        self.state = ScanState.REVIEWING
        return found

    def _submit(self, action: Callable[[], models.Registration]) -> Optional[models.Registration]:
        self.state = ScanState.SUBMITTING
        try:
            reg = action()
        except KitClaimError as e:
            logger.warning("Kit claim submit failed (%s): %s", e.code, e.message)
            self._reset()
            self.error = e.message
            return None
        except Exception:
            self.state = ScanState.REVIEWING
            raise
        self.result = reg
        self.error = None
        self.state = ScanState.DONE
        self._done_at = self.clock()
        return reg

    def submit_claim(self, claimer_name: Optional[str] = None, claim_notes: Optional[str] = None) -> Optional[models.Registration]:
        self._require(ScanState.REVIEWING)
        if claimer_name is not None:
            self.claimer_name = claimer_name
        if claim_notes is not None:
            self.claim_notes = claim_notes
        if not self.claimer_name.strip():
            self.error = "Claimer name is required to claim a kit"
            return None
        reg = self.current.registration
        version = reg.claim_version if self.check_version else None
        return self._submit(lambda: self._claim(reg.id, self.claimer_name, self.claim_notes or None, version))

    def submit_unclaim(self) -> Optional[models.Registration]:
        self._require(ScanState.REVIEWING)
        reg = self.current.registration
        version = reg.claim_version if self.check_version else None
        return self._submit(lambda: self._unclaim(reg.id, self.claim_notes or None, version))

    def cancel(self) -> None:
        if self.state == ScanState.SUBMITTING:
            raise InvalidTransition("A request is in flight")
        self._reset()

    def scan_another(self) -> bool:
        self._require(ScanState.DONE, ScanState.IDLE)
        mode = self.mode
        self._reset()
        if mode == "manual":
            self.start_manual_entry()
            return False
        return self.start_scanning()

    def poll(self) -> ScanState:
        """Return to ``idle`` once a ``done`` confirmation has been shown long enough."""
        if self.state == ScanState.DONE and self._done_at is not None:
            if self.clock() - self._done_at >= self.done_reset_seconds:
                self._reset()
        return self.state
