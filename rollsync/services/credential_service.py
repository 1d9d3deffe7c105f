"""Rotating scan credentials and their QR rendering."""
import base64
import io
import json
import logging
import secrets
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import qrcode

from rollsync.services.errors import CredentialExpired, CredentialUnknown
from rollsync.services.session_machine import Phase, SessionStateMachine
from rollsync.services.scheduler import Clock, utc_now

logger = logging.getLogger(__name__)

QR_PAYLOAD_VERSION = '1.0'


@dataclass(frozen=True)
class ScanCredential:
    """A time-boxed token students present to mark presence."""
    session_id: str
    token: str
    issued_at: datetime
    valid_from: datetime
    valid_until: datetime
    sequence: int

    def is_valid_at(self, moment: datetime) -> bool:
        return self.valid_from <= moment <= self.valid_until

    def qr_payload(self) -> str:
        """JSON string encoded into the QR image."""
        return json.dumps({
            'session_id': self.session_id,
            'token': self.token,
            'expires': self.valid_until.isoformat(),
            'version': QR_PAYLOAD_VERSION,
        }, separators=(',', ':'))

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            'session_id': self.session_id,
            'token': self.token,
            'issued_at': self.issued_at.isoformat(),
            'valid_from': self.valid_from.isoformat(),
            'valid_until': self.valid_until.isoformat(),
            'sequence': self.sequence,
        }


def render_qr_image(payload: str) -> str:
    """Render ``payload`` as a base64 PNG data URI."""
    qr = qrcode.QRCode(
        version=None,  # Auto-determine size
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=10,
        border=4,
    )
    qr.add_data(payload)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffered = io.BytesIO()
    img.save(buffered, format="PNG")
    img_str = base64.b64encode(buffered.getvalue()).decode()

    return f"data:image/png;base64,{img_str}"


def parse_qr_payload(payload: str) -> Dict:
    """Extract session id and token from a scanned QR string.

    A bare token (not JSON) is accepted as-is so clients may send just the token.
    """
    try:
        data = json.loads(payload)
    except (TypeError, ValueError):
        return {'session_id': None, 'token': payload}
    if not isinstance(data, dict) or not data.get('token'):
        raise CredentialUnknown("Invalid QR code format")
    return {'session_id': data.get('session_id'), 'token': data['token']}


class CredentialRotator:
    """
    Issues and validates scan credentials for one session.

    Each credential stays valid for ``interval * (1 + grace_ratio)`` seconds,
    so the previous credential overlaps the next one by the grace margin and
    an in-flight scan is not rejected at the rotation boundary.
    """

    def __init__(
        self,
        machine: SessionStateMachine,
        interval: float = 5,
        grace_ratio: float = 0.4,
        retention: float = 60,
        clock: Clock = utc_now,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if grace_ratio < 0:
            raise ValueError("grace_ratio must not be negative")
        self.machine = machine
        self.interval = interval
        self.grace_ratio = grace_ratio
        self.retention = timedelta(seconds=retention)
        self.clock = clock
        self._credentials: 'OrderedDict[str, ScanCredential]' = OrderedDict()
        self.issued_count = 0

    @property
    def validity(self) -> timedelta:
        return timedelta(seconds=self.interval * (1 + self.grace_ratio))

    @property
    def grace(self) -> timedelta:
        return timedelta(seconds=self.interval * self.grace_ratio)

    def issue(self, session_id: str = None) -> ScanCredential:
        """Issue a fresh credential; only allowed while the session is Active."""
        with self.machine.lock:
            self._check_session(session_id)
            self.machine.require_phase(Phase.ACTIVE, action='issuing credentials')
            now = self.clock()
            self.issued_count += 1
            credential = ScanCredential(
                session_id=self.machine.session_id,
                token=secrets.token_urlsafe(32),
                issued_at=now,
                valid_from=now,
                valid_until=now + self.validity,
                sequence=self.issued_count,
            )
            self._credentials[credential.token] = credential
            self._prune(now)
            logger.debug("Session %s: issued credential #%s", credential.session_id, credential.sequence)
            return credential

    def validate(self, token: str, session_id: str = None, now: datetime = None) -> ScanCredential:
        """Return the credential for ``token`` or raise why it cannot be accepted."""
        with self.machine.lock:
            self._check_session(session_id)
            self.machine.require_phase(Phase.ACTIVE, action='scanning')
            now = now or self.clock()
            credential = self._credentials.get(token) if token else None
            if credential is None:
                raise CredentialUnknown(session_id=self.machine.session_id)
            if not credential.is_valid_at(now):
                raise CredentialExpired(
                    session_id=self.machine.session_id,
                    valid_until=credential.valid_until.isoformat(),
                )
            return credential

    def current(self) -> Optional[ScanCredential]:
        """Newest credential that is still valid, if any."""
        with self.machine.lock:
            if not self.machine.is_active():
                return None
            now = self.clock()
            for credential in reversed(self._credentials.values()):
                if credential.is_valid_at(now):
                    return credential
            return None

    def active_credentials(self) -> List[ScanCredential]:
        with self.machine.lock:
            now = self.clock()
            return [c for c in self._credentials.values() if c.is_valid_at(now)]

    def purge(self) -> int:
        """Forget every credential, e.g. when the session ends."""
        with self.machine.lock:
            count = len(self._credentials)
            self._credentials.clear()
            return count

    def _prune(self, now: datetime) -> None:
        # Expired tokens are kept for a while so late scans report "expired", not "unknown".
        cutoff = now - self.retention
        while self._credentials:
            token, credential = next(iter(self._credentials.items()))
            if credential.valid_until >= cutoff:
                break
            del self._credentials[token]

    def _check_session(self, session_id: Optional[str]) -> None:
        if session_id is not None and session_id != self.machine.session_id:
            raise CredentialUnknown("Credential belongs to another session", session_id=session_id)
