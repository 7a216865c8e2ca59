from __future__ import annotations

import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from presence.errors import ConcurrencyConflict, DependencyError, DuplicateKeyError
from presence.models import AttendanceRecord, AttendanceStatus, ClockStatus, DayType, UserRole
from presence.store import AttendanceStore, RecordFilter

from presence_fixtures import add_user, make_engine, make_session_factory


def _record(user_id: int, date_key: str, **fields) -> AttendanceRecord:  # type: ignore[no-untyped-def]
    values = {
        "day_type": DayType.WORKDAY,
        "attendance_status": AttendanceStatus.PRESENT,
        "clock_status": ClockStatus.CLOCKED_OUT,
    }
    values.update(fields)
    return AttendanceRecord(user_id=user_id, date=date_key, **values)


class AttendanceStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.session = make_session_factory(self.engine)()
        self.store = AttendanceStore(self.session)
        self.user = add_user(self.session, "Thandi Mokoena")

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_create_if_absent_rejects_duplicate_user_date(self) -> None:
        self.store.create_if_absent(_record(self.user.id, "2026-03-03"))
        with self.assertRaises(DuplicateKeyError) as exc:
            self.store.create_if_absent(_record(self.user.id, "2026-03-03"))
        self.assertEqual(exc.exception.date_key, "2026-03-03")
        self.assertEqual(self.store.count(RecordFilter(user_id=self.user.id)), 1)

    def test_update_if_matches_applies_patch_when_expected_state_holds(self) -> None:
        record = self.store.create_if_absent(_record(self.user.id, "2026-03-03"))
        clock_in = datetime(2026, 3, 3, 6, 0, tzinfo=timezone.utc)

        updated = self.store.update_if_matches(
            record.id,
            expected={"clock_in": None, "is_closed": False},
            patch={"clock_in": clock_in, "clock_status": ClockStatus.CLOCKED_IN},
        )

        self.assertEqual(updated.clock_in, clock_in)
        self.assertEqual(updated.clock_status, ClockStatus.CLOCKED_IN)

    def test_update_if_matches_raises_conflict_on_stale_state(self) -> None:
        record = self.store.create_if_absent(_record(self.user.id, "2026-03-03", is_closed=True))
        with self.assertRaises(ConcurrencyConflict) as exc:
            self.store.update_if_matches(record.id, expected={"is_closed": False}, patch={"duration_ms": 5})
        self.assertEqual(exc.exception.record_id, record.id)
        self.assertEqual(self.store.get(record.id).duration_ms, 0)

    def test_update_if_matches_compares_instants(self) -> None:
        break_in = datetime(2026, 3, 3, 10, 0, tzinfo=timezone.utc)
        record = self.store.create_if_absent(
            _record(self.user.id, "2026-03-03", break_in=break_in, clock_status=ClockStatus.ON_BREAK)
        )
        updated = self.store.update_if_matches(
            record.id,
            expected={"break_in": break_in, "clock_status": ClockStatus.ON_BREAK},
            patch={"clock_status": ClockStatus.CLOCKED_IN},
        )
        self.assertEqual(updated.clock_status, ClockStatus.CLOCKED_IN)

    def test_claim_notification_is_one_shot(self) -> None:
        record = self.store.create_if_absent(_record(self.user.id, "2026-03-03"))
        self.assertTrue(self.store.claim_notification(record.id, "break_ended"))
        self.assertFalse(self.store.claim_notification(record.id, "break_ended"))
        self.assertTrue(self.store.claim_notification(record.id, "break_almost_over"))
        self.assertEqual(self.store.fired_notifications(record.id), {"break_ended", "break_almost_over"})

    def test_find_many_filters_open_sessions(self) -> None:
        other = add_user(self.session, "Sipho Ndlovu")
        self.store.create_if_absent(
            _record(
                self.user.id,
                "2026-03-03",
                clock_in=datetime(2026, 3, 3, 6, 0, tzinfo=timezone.utc),
                clock_status=ClockStatus.CLOCKED_IN,
            )
        )
        self.store.create_if_absent(
            _record(other.id, "2026-03-03", attendance_status=AttendanceStatus.ABSENT, is_closed=True)
        )

        open_records = self.store.find_many(RecordFilter(open_only=True, has_clock_in=True))
        self.assertEqual([item.user_id for item in open_records], [self.user.id])

        absent = self.store.find_many(RecordFilter(attendance_status=AttendanceStatus.ABSENT))
        self.assertEqual([item.user_id for item in absent], [other.id])

    def test_find_many_orders_by_date_descending_and_paginates(self) -> None:
        for key in ("2026-03-02", "2026-03-04", "2026-03-03"):
            self.store.create_if_absent(_record(self.user.id, key))

        records = self.store.find_many(RecordFilter(user_id=self.user.id, limit=2))
        self.assertEqual([item.date for item in records], ["2026-03-04", "2026-03-03"])

        in_range = self.store.find_many(RecordFilter(start_date="2026-03-03", end_date="2026-03-04"))
        self.assertEqual(len(in_range), 2)

    def test_status_counts(self) -> None:
        self.store.create_if_absent(_record(self.user.id, "2026-03-02"))
        self.store.create_if_absent(_record(self.user.id, "2026-03-03", attendance_status=AttendanceStatus.ABSENT))
        self.store.create_if_absent(_record(self.user.id, "2026-03-04", attendance_status=AttendanceStatus.ABSENT))

        counts = self.store.status_counts(RecordFilter(user_id=self.user.id))
        self.assertEqual(counts, {AttendanceStatus.PRESENT: 1, AttendanceStatus.ABSENT: 2})

    def test_list_active_users_by_role(self) -> None:
        add_user(self.session, "Inactive", is_active=False)
        admin = add_user(self.session, "Admin", role=UserRole.ADMIN)

        self.assertEqual([user.id for user in self.store.list_active_users()], [self.user.id])
        self.assertEqual([user.id for user in self.store.list_admins()], [admin.id])

    def test_connectivity_errors_become_dependency_errors(self) -> None:
        error = OperationalError("SELECT 1", {}, Exception("connection refused"))
        with patch.object(self.session, "scalar", side_effect=error):
            with self.assertRaises(DependencyError) as exc:
                self.store.find(self.user.id, "2026-03-03")
        self.assertEqual(exc.exception.status_code, 503)


if __name__ == "__main__":
    unittest.main()
