import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from django.test import SimpleTestCase

from .services import (
    AlreadyClosedError,
    ConflictError,
    ConflictGuard,
    DecisionLevel,
    GhostSweeper,
    InMemoryTripStore,
    InMemoryVehicleDirectory,
    InvalidInputError,
    InvalidOdometerError,
    NotesMarker,
    NotFoundError,
    OdometerPolicy,
    TripLifecycle,
    TripRecord,
    any_of,
    exact_duplicate,
    missing_driver,
)
from .services.lifecycle import DEFAULT_FORCE_CLOSE_REASON
from .services.store import pick_open_trip

START = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


class StepClock:
    """Deterministic clock advancing one minute per reading."""

    def __init__(self, start=START):
        self.now = start

    def __call__(self):
        current = self.now
        self.now += timedelta(minutes=1)
        return current


def make_lifecycle(readings=None):
    store = InMemoryTripStore()
    vehicles = InMemoryVehicleDirectory(readings)
    return TripLifecycle(store, vehicles, clock=StepClock()), store, vehicles


class OdometerPolicyTests(SimpleTestCase):
    def setUp(self):
        self.policy = OdometerPolicy()

    def test_start_without_reference_is_ok(self):
        self.assertEqual(self.policy.validate_start(120).level, DecisionLevel.OK)

    def test_start_below_reference_warns(self):
        decision = self.policy.validate_start(100, 500)
        self.assertEqual(decision.level, DecisionLevel.WARN)
        self.assertFalse(decision.blocking)

    def test_zero_reference_never_warns(self):
        self.assertEqual(self.policy.validate_start(5, 0).level, DecisionLevel.OK)

    def test_start_must_be_positive(self):
        with self.assertRaises(InvalidInputError):
            self.policy.validate_start(0)
        with self.assertRaises(InvalidInputError):
            self.policy.validate_start(-10, 50)

    def test_non_numeric_readings_rejected(self):
        for value in ("100", None, True, float("nan"), float("inf")):
            with self.subTest(value=value), self.assertRaises(InvalidInputError):
                self.policy.validate_start(value)

    def test_decimal_reading_accepted(self):
        self.assertEqual(self.policy.validate_end(Decimal("150.5"), 100).level, DecisionLevel.OK)

    def test_end_below_start_blocks(self):
        decision = self.policy.validate_end(50, 100)
        self.assertEqual(decision.level, DecisionLevel.BLOCK)
        self.assertTrue(decision.blocking)

    def test_end_equal_to_start_is_ok(self):
        self.assertEqual(self.policy.validate_end(100, 100).level, DecisionLevel.OK)

    def test_audit_history_flags_backwards_start(self):
        trips = [
            TripRecord(id=1, vehicle_id=1, driver_id=1, started_at=START, start_odometer=100,
                       ended_at=START + timedelta(hours=1), end_odometer=180),
            TripRecord(id=2, vehicle_id=1, driver_id=1, started_at=START + timedelta(hours=2),
                       start_odometer=150),
        ]
        warnings = self.policy.audit_history(reversed(trips))
        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0].trip_id, 2)
        self.assertEqual(warnings[0].previous_trip_id, 1)
        self.assertEqual(warnings[0].previous_reading, 180)

    def test_audit_history_compares_against_highest_earlier_reading(self):
        def trip(trip_id, start, end, hours):
            started = START + timedelta(hours=hours)
            return TripRecord(id=trip_id, vehicle_id=1, driver_id=1, started_at=started,
                              start_odometer=start, ended_at=started + timedelta(minutes=30),
                              end_odometer=end)

        warnings = self.policy.audit_history(
            [trip(1, 100, 200, 0), trip(2, 50, 60, 1), trip(3, 60, 70, 2), trip(4, 210, 250, 3)]
        )

        self.assertEqual(
            [(w.trip_id, w.previous_trip_id, w.previous_reading) for w in warnings],
            [(2, 1, 200), (3, 1, 200)],
        )


class TripStoreTests(SimpleTestCase):
    def setUp(self):
        self.store = InMemoryTripStore()

    def _trip(self, **kwargs):
        values = dict(vehicle_id=1, driver_id=1, started_at=START, start_odometer=100)
        values.update(kwargs)
        return TripRecord(**values)

    def test_second_open_trip_rejected_by_store(self):
        first = self.store.create(self._trip())
        with self.assertRaises(ConflictError) as ctx:
            self.store.create(self._trip(started_at=START + timedelta(minutes=5)))
        self.assertEqual(ctx.exception.existing_trip.id, first.id)

    def test_override_trip_may_coexist(self):
        first = self.store.create(self._trip())
        self.store.create(self._trip(override_of=first.id))
        self.assertEqual(self.store.find_open_by_vehicle(1).id, first.id)

    def test_closed_trip_requires_end_not_below_start(self):
        trip = self.store.create(self._trip())
        with self.assertRaises(InvalidOdometerError):
            self.store.update(trip.id, {"ended_at": START + timedelta(hours=1), "end_odometer": 90})
        self.assertTrue(self.store.get(trip.id).is_open)

    def test_list_by_filter_orders_newest_first_and_filters_dates(self):
        old = self.store.create(
            self._trip(ended_at=START + timedelta(hours=1), end_odometer=110)
        )
        new = self.store.create(self._trip(started_at=START + timedelta(days=2), driver_id=2))
        self.assertEqual([t.id for t in self.store.list_by_filter(vehicle_id=1)], [new.id, old.id])
        self.assertEqual(
            [t.id for t in self.store.list_by_filter(date_from=date(2024, 3, 2))], [new.id]
        )
        self.assertEqual([t.id for t in self.store.list_by_filter(date_to=date(2024, 3, 1))], [old.id])
        self.assertEqual([t.id for t in self.store.list_open(driver_id=2)], [new.id])
        self.assertEqual(self.store.list_open(driver_id=1), [])

    def test_second_delete_fails(self):
        trip = self.store.create(self._trip())
        self.store.delete(trip.id)
        with self.assertRaises(NotFoundError):
            self.store.delete(trip.id)
        with self.assertRaises(NotFoundError):
            self.store.get(trip.id)

    def test_pick_open_trip_prefers_regular_trip(self):
        override = self._trip(id=2, override_of=1, started_at=START - timedelta(hours=1))
        regular = self._trip(id=1)
        self.assertEqual(pick_open_trip([override, regular]).id, 1)
        self.assertIsNone(pick_open_trip([]))


class ConflictGuardTests(SimpleTestCase):
    def test_reports_existing_open_trip(self):
        lifecycle, store, _ = make_lifecycle()
        first = lifecycle.open(1, 10, None, 100).trip
        guard = ConflictGuard(store)

        result = guard.check_before_open(1)
        self.assertTrue(result.conflict)
        self.assertFalse(result.overridden)
        self.assertEqual(result.existing_trip.id, first.id)
        self.assertEqual(result.audit_note(), "")

        overridden = guard.check_before_open(1, allow_override=True)
        self.assertTrue(overridden.overridden)
        self.assertIn(str(first.id), overridden.audit_note())

        self.assertFalse(guard.check_before_open(2).conflict)


class TripLifecycleTests(SimpleTestCase):
    def setUp(self):
        self.lifecycle, self.store, self.vehicles = make_lifecycle()

    def test_open_conflict_references_first_trip(self):
        first = self.lifecycle.open("ABC1234", 10, None, 50000).trip
        with self.assertRaises(ConflictError) as ctx:
            self.lifecycle.open("ABC1234", 11, None, 50010)
        self.assertEqual(ctx.exception.trip_id, first.id)
        self.assertEqual(ctx.exception.existing_trip.id, first.id)
        self.assertEqual(len(self.store.list_open()), 1)

    def test_open_with_override_records_overridden_trip(self):
        first = self.lifecycle.open("ABC1234", 10, None, 50000).trip
        outcome = self.lifecycle.open("ABC1234", 11, 99, 50010, allow_override=True)
        self.assertTrue(outcome.conflict.overridden)
        self.assertIn(str(first.id), outcome.trip.notes)
        self.assertEqual(outcome.trip.override_of, first.id)
        self.assertEqual(outcome.trip.supervisor_id, 99)
        self.assertEqual(len(self.store.list_open()), 2)
        self.assertEqual(self.store.find_open_by_vehicle("ABC1234").id, first.id)

    def test_close_below_start_leaves_trip_open(self):
        trip = self.lifecycle.open(1, 10, None, 100).trip
        with self.assertRaises(InvalidOdometerError):
            self.lifecycle.close(trip.id, 50)
        self.assertEqual(self.store.get(trip.id), trip)

    def test_open_below_reference_warns_but_creates(self):
        outcome = self.lifecycle.open(1, 10, None, 100, reference_last_odometer=500)
        self.assertEqual(outcome.odometer.level, DecisionLevel.WARN)
        self.assertEqual(outcome.warnings, ["candidate below last known reading"])
        self.assertTrue(self.store.get(outcome.trip.id).is_open)

    def test_open_reads_reference_from_vehicle_directory(self):
        lifecycle, _, _ = make_lifecycle({1: 500})
        self.assertEqual(lifecycle.open(1, 10, None, 100).odometer.level, DecisionLevel.WARN)

    def test_open_requires_vehicle_and_driver(self):
        with self.assertRaises(InvalidInputError):
            self.lifecycle.open(None, 10, None, 100)
        with self.assertRaises(InvalidInputError):
            self.lifecycle.open(1, None, None, 100)
        with self.assertRaises(InvalidInputError):
            self.lifecycle.open(1, 10, None, 0)
        self.assertEqual(self.store.list_open(), [])

    def test_close_records_end_and_vehicle_reading(self):
        trip = self.lifecycle.open(1, 10, None, 100, start_evidence_url="s3://start.jpg").trip
        closed = self.lifecycle.close(trip.id, 180, end_evidence_url="s3://end.jpg", notes="ok")
        self.assertFalse(closed.is_open)
        self.assertEqual(closed.end_odometer, 180)
        self.assertEqual(closed.distance, 80)
        self.assertGreater(closed.ended_at, closed.started_at)
        self.assertEqual(closed.start_evidence_url, "s3://start.jpg")
        self.assertEqual(closed.end_evidence_url, "s3://end.jpg")
        self.assertEqual(closed.notes, "ok")
        self.assertEqual(self.vehicles.last_known_odometer(1), 180)

    def test_second_close_fails_and_keeps_first_values(self):
        trip = self.lifecycle.open(1, 10, None, 100).trip
        closed = self.lifecycle.close(trip.id, 150)
        with self.assertRaises(AlreadyClosedError):
            self.lifecycle.close(trip.id, 200)
        self.assertEqual(self.store.get(trip.id), closed)

    def test_close_unknown_trip(self):
        with self.assertRaises(NotFoundError):
            self.lifecycle.close(404, 100)

    def test_force_close_appends_default_reason(self):
        trip = self.lifecycle.open(1, 10, None, 100, notes="left running").trip
        closed = self.lifecycle.force_close(trip.id, 120)
        self.assertEqual(closed.notes, f"left running\n{DEFAULT_FORCE_CLOSE_REASON}")
        self.assertEqual(self.vehicles.last_known_odometer(1), 120)

    def test_force_close_custom_reason_and_odometer_rule(self):
        trip = self.lifecycle.open(1, 10, None, 100).trip
        with self.assertRaises(InvalidOdometerError):
            self.lifecycle.force_close(trip.id, 99)
        closed = self.lifecycle.force_close(trip.id, 100, reason="driver unreachable")
        self.assertEqual(closed.notes, "driver unreachable")

    def test_vehicle_free_after_close(self):
        trip = self.lifecycle.open(1, 10, None, 100).trip
        self.lifecycle.close(trip.id, 150)
        self.assertEqual(self.lifecycle.open(1, 11, None, 150).odometer.level, DecisionLevel.OK)

    def test_amend_round_trip(self):
        trip = self.lifecycle.open(1, 10, None, 100, notes="n").trip
        closed = self.lifecycle.close(trip.id, 180)
        self.lifecycle.amend(trip.id, {"start_odometer": 120})
        self.assertEqual(self.store.get(trip.id), closed.with_changes(start_odometer=120.0))

    def test_amend_invalid_patch_changes_nothing(self):
        trip = self.lifecycle.open(1, 10, None, 100).trip
        closed = self.lifecycle.close(trip.id, 180)
        with self.assertRaises(InvalidOdometerError):
            self.lifecycle.amend(trip.id, {"notes": "fixed", "end_odometer": 50})
        self.assertEqual(self.store.get(trip.id), closed)

    def test_amend_rejects_reopening_and_unknown_fields(self):
        trip = self.lifecycle.open(1, 10, None, 100).trip
        self.lifecycle.close(trip.id, 180)
        with self.assertRaises(InvalidInputError):
            self.lifecycle.amend(trip.id, {"ended_at": None, "end_odometer": None})
        with self.assertRaises(InvalidInputError):
            self.lifecycle.amend(trip.id, {"override_of": 3})
        with self.assertRaises(InvalidInputError):
            self.lifecycle.amend(trip.id, {"driver_id": None})
        with self.assertRaises(InvalidInputError):
            self.lifecycle.amend(trip.id, {"ended_at": START - timedelta(days=1)})

    def test_amend_can_close_open_trip(self):
        trip = self.lifecycle.open(1, 10, None, 100).trip
        amended = self.lifecycle.amend(
            trip.id, {"ended_at": START + timedelta(hours=3), "end_odometer": 160}
        )
        self.assertFalse(amended.is_open)
        self.assertEqual(amended.distance, 60)

    def test_amend_moving_open_trip_onto_busy_vehicle_conflicts(self):
        busy = self.lifecycle.open(1, 10, None, 100).trip
        other = self.lifecycle.open(2, 11, None, 300).trip
        with self.assertRaises(ConflictError) as ctx:
            self.lifecycle.amend(other.id, {"vehicle_id": 1})
        self.assertEqual(ctx.exception.existing_trip.id, busy.id)
        self.assertEqual(self.store.get(other.id).vehicle_id, 2)

    def test_amend_moves_closed_trip(self):
        trip = self.lifecycle.open(2, 11, None, 300).trip
        self.lifecycle.close(trip.id, 320)
        self.lifecycle.open(1, 10, None, 100)
        self.assertEqual(self.lifecycle.amend(trip.id, {"vehicle_id": 1}).vehicle_id, 1)

    def test_amend_notes_keeps_override_line(self):
        first = self.lifecycle.open("ABC1234", 10, None, 50000).trip
        second = self.lifecycle.open("ABC1234", 11, None, 50010, allow_override=True).trip

        amended = self.lifecycle.amend(second.id, {"notes": "typo fixed"})

        self.assertTrue(amended.notes.startswith("typo fixed\n"))
        self.assertIn(f"open trip {first.id}", amended.notes)
        self.assertEqual(amended.override_of, first.id)
        cleared = self.lifecycle.amend(second.id, {"notes": ""})
        self.assertIn(f"open trip {first.id}", cleared.notes)
        for trip in self.store.list_open():
            if trip.override_of is not None:
                self.assertIn(f"open trip {trip.override_of}", trip.notes)

    def test_amend_moving_override_trip_onto_busy_vehicle_conflicts(self):
        self.lifecycle.open("A", 10, None, 100)
        override = self.lifecycle.open("A", 11, None, 110, allow_override=True).trip
        busy = self.lifecycle.open("B", 12, None, 300).trip

        with self.assertRaises(ConflictError) as ctx:
            self.lifecycle.amend(override.id, {"vehicle_id": "B"})

        self.assertEqual(ctx.exception.existing_trip.id, busy.id)
        self.assertEqual(self.store.get(override.id), override)
        self.assertEqual([t.id for t in self.store.list_open() if t.vehicle_id == "B"], [busy.id])

    def test_amend_moving_override_trip_onto_free_vehicle_makes_it_regular(self):
        first = self.lifecycle.open("A", 10, None, 100).trip
        override = self.lifecycle.open("A", 11, None, 110, allow_override=True).trip

        moved = self.lifecycle.amend(override.id, {"vehicle_id": "B"})

        self.assertEqual(moved.vehicle_id, "B")
        self.assertIsNone(moved.override_of)
        self.assertEqual(self.store.find_open_by_vehicle("A").id, first.id)
        with self.assertRaises(ConflictError):
            self.lifecycle.open("B", 12, None, 400)

    def test_amend_closing_open_trip_refreshes_vehicle_reading(self):
        trip = self.lifecycle.open(1, 10, None, 100).trip
        self.lifecycle.amend(trip.id, {"ended_at": START + timedelta(hours=3), "end_odometer": 160})
        self.assertEqual(self.vehicles.last_known_odometer(1), 160)

    def test_amend_closed_trip_leaves_vehicle_reading(self):
        trip = self.lifecycle.open(1, 10, None, 100).trip
        self.lifecycle.close(trip.id, 180)
        self.lifecycle.amend(trip.id, {"end_odometer": 175})
        self.assertEqual(self.vehicles.last_known_odometer(1), 180)

    def test_amend_without_effective_change_returns_current(self):
        trip = self.lifecycle.open(1, 10, None, 100).trip
        self.assertEqual(self.lifecycle.amend(trip.id, {"start_odometer": 100}), trip)

    def test_delete_is_permanent(self):
        trip = self.lifecycle.open(1, 10, None, 100).trip
        self.lifecycle.delete(trip.id)
        with self.assertRaises(NotFoundError):
            self.store.get(trip.id)
        with self.assertRaises(NotFoundError):
            self.lifecycle.delete(trip.id)
        self.assertIsNotNone(self.lifecycle.open(1, 10, None, 100).trip.id)

    def test_audit_coherence_reports_history_gaps(self):
        first = self.lifecycle.open(1, 10, None, 100).trip
        self.lifecycle.close(first.id, 200)
        second = self.lifecycle.open(1, 10, None, 150).trip
        warnings = self.lifecycle.audit_coherence(1)
        self.assertEqual([(w.trip_id, w.previous_trip_id) for w in warnings], [(second.id, first.id)])

    def test_concurrent_opens_yield_one_open_trip(self):
        barrier = threading.Barrier(8)
        results, errors = [], []

        def worker(driver_id):
            barrier.wait()
            try:
                results.append(self.lifecycle.open(1, driver_id, None, 100).trip)
            except ConflictError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), 7)
        self.assertTrue(all(e.existing_trip.id == results[0].id for e in errors))
        self.assertEqual(len(self.store.list_open()), 1)


class GhostSweeperTests(SimpleTestCase):
    def setUp(self):
        self.lifecycle, self.store, _ = make_lifecycle()

    def test_sweep_removes_only_flagged_trip(self):
        keep = self.lifecycle.open(1, 10, None, 100).trip
        self.lifecycle.close(keep.id, 150)
        ghost = self.lifecycle.open(1, 10, None, 150, notes="[AUTO] imported").trip
        sweeper = GhostSweeper(self.store, NotesMarker("[auto]"))

        result = sweeper.sweep(1)

        self.assertEqual(result.removed_count, 1)
        self.assertEqual(result.removed_ids, [ghost.id])
        self.assertEqual([t.id for t in self.store.list_by_filter(vehicle_id=1)], [keep.id])

    def test_sweep_is_scoped_to_vehicle(self):
        self.store.create(TripRecord(vehicle_id=1, driver_id=None, started_at=START, start_odometer=10))
        other = self.store.create(
            TripRecord(vehicle_id=2, driver_id=None, started_at=START, start_odometer=10)
        )
        result = GhostSweeper(self.store, missing_driver).sweep(1)
        self.assertEqual(result.removed_count, 1)
        self.assertEqual(self.store.get(other.id).vehicle_id, 2)

    def test_sweep_with_no_ghosts(self):
        self.lifecycle.open(1, 10, None, 100)
        result = GhostSweeper(self.store, missing_driver).sweep(1)
        self.assertEqual(result.removed_count, 0)
        self.assertEqual(result.removed_ids, [])

    def test_exact_duplicate_keeps_lowest_id(self):
        closed = dict(vehicle_id=1, driver_id=10, started_at=START, start_odometer=100,
                      ended_at=START + timedelta(hours=1), end_odometer=150)
        original = self.store.create(TripRecord(**closed))
        copy = self.store.create(TripRecord(**closed))
        sweeper = GhostSweeper(self.store, any_of(missing_driver, exact_duplicate))
        self.assertEqual([t.id for t in sweeper.find(1)], [copy.id])
        sweeper.sweep(1)
        self.assertEqual([t.id for t in self.store.list_by_filter(vehicle_id=1)], [original.id])

    def test_notes_marker_requires_text(self):
        with self.assertRaises(ValueError):
            NotesMarker("")
