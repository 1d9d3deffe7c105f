"""Final attendance report built when a session ends."""
import io
from datetime import datetime
from typing import Any, Dict, List

import pandas as pd

from rollsync.services.broadcaster import present_percentage
from rollsync.services.presence_ledger import PresenceEntry, PresenceStatus, SessionStats
from rollsync.services.session_machine import AttendanceSession, SessionType


ROLL_WIDTH = 2


def roll_key(student_key: str) -> str:
    """Numeric keys padded to the roll width ('5' -> '05'); anything else as-is."""
    key = str(student_key).strip()
    if key.isdigit():
        return str(int(key)).zfill(ROLL_WIDTH)
    return key


def roll_numbers(total: int) -> List[str]:
    """Roll numbers 01..NN for a roll-call session."""
    return [roll_key(i) for i in range(1, total + 1)]


def _roll_order(key: str):
    return (0, int(key), key) if key.isdigit() else (1, 0, key)


class ReportService:
    """Builds and exports end-of-session attendance reports."""

    @staticmethod
    def build_report(
        session: AttendanceSession,
        entries: Dict[str, PresenceEntry],
        stats: SessionStats,
        credentials_issued: int,
        ended_at: datetime,
    ) -> Dict[str, Any]:
        """Summarise a session from its final ledger state."""
        if session.session_type is SessionType.ROLL:
            normalize, order = roll_key, _roll_order
            expected = set(roll_numbers(session.denominator))
        else:
            normalize, order = str, None
            expected = set()
        present = sorted({normalize(k) for k, e in entries.items() if e.status is PresenceStatus.PRESENT}, key=order)
        expected.update(normalize(k) for k in entries)
        absent = sorted(expected.difference(present), key=order)

        started = session.active_at or session.created_at
        duration = round((ended_at - started).total_seconds() / 60) if started else 0

        return {
            'session_id': session.id,
            'section': session.section,
            'session_type': session.session_type.value,
            'total_enrolled': session.denominator,
            'total_joined': sum(1 for e in entries.values() if e.joined),
            'total_present': len(present),
            'present_percentage': present_percentage(len(present), session.denominator),
            'present': present,
            'absent': absent,
            'duration_minutes': duration,
            'credentials_issued': credentials_issued,
            'stats': stats.to_dict(),
            'ended_at': ended_at.isoformat(),
        }

    @staticmethod
    def report_to_csv(report: Dict[str, Any]) -> str:
        """One row per student: key and final status."""
        rows = [{'student_key': key, 'status': 'present'} for key in report['present']]
        rows += [{'student_key': key, 'status': 'absent'} for key in report['absent']]
        df = pd.DataFrame(rows, columns=['student_key', 'status'])
        df = df.sort_values('student_key', kind='stable')

        output = io.StringIO()
        df.to_csv(output, index=False, encoding='utf-8-sig')
        return output.getvalue()
