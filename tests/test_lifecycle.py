import random
import threading
import unittest
from datetime import datetime, time, timedelta, timezone

from reservation_engine import (
    EngineSettings,
    InMemoryReservationStore,
    InvalidStateTransition,
    InvalidWindow,
    NotAuthorizedParty,
    OutsideAvailability,
    PersonalGoal,
    ReservationEngine,
    ReservationNotFound,
    Resource,
    ResourceNotFound,
    SlotConflict,
    WeeklyTemplate,
    credits_for_duration,
    has_time_overlap,
)
from reservation_engine.models import (
    GOAL_ACHIEVED,
    GOAL_IN_PROGRESS,
    GOAL_PLANNED,
    ROLE_PROVIDER,
    ROLE_REQUESTOR,
    STATUS_ACCEPTED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_REQUESTED,
)

NOW = datetime(2026, 2, 1, 12, 0)
OWNER_ID = 7
REQUESTOR_ID = 11
OTHER_REQUESTOR_ID = 12
RESOURCE_ID = 100


def at(hour: int, minute: int = 0, day: int = 23) -> datetime:
    return datetime(2026, 2, day, hour, minute)


class RecordingLedger:
    def __init__(self) -> None:
        self.calls: list[tuple[int, int]] = []

    def credit_user(self, user_id: int, amount: int) -> int:
        self.calls.append((user_id, amount))
        return sum(amount for uid, amount in self.calls if uid == user_id)


class LifecycleTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryReservationStore()
        self.store.save_resource(Resource(id=RESOURCE_ID, owner_id=OWNER_ID, name="Guitar lessons"))
        for weekday in range(7):
            self.store.save_weekly_template(WeeklyTemplate(RESOURCE_ID, weekday, time(8, 0), time(20, 0)))
        self.now = NOW
        self.engine = ReservationEngine(self.store, clock=lambda: self.now)

    def request(self, start: datetime, end: datetime, requestor_id: int = REQUESTOR_ID, title: str = "Lesson"):
        return self.engine.create(requestor_id, RESOURCE_ID, start, end, title)

    def notifications(self, kind: str, user_id: int | None = None):
        return [
            row
            for row in self.store.list_notifications()
            if row.kind == kind and (user_id is None or row.user_id == user_id)
        ]


class TestCreateAndAccept(LifecycleTestCase):
    def test_create_records_requested_reservation_and_notifies_provider(self) -> None:
        created = self.request(at(9), at(10))

        self.assertEqual(created.status, STATUS_REQUESTED)
        self.assertEqual(created.provider_id, OWNER_ID)
        self.assertEqual(created.created_at, NOW)
        self.assertFalse(created.requestor_confirmed)
        self.assertFalse(created.provider_confirmed)

        requested = self.notifications("reservation_requested")
        self.assertEqual(len(requested), 1)
        self.assertEqual(requested[0].user_id, OWNER_ID)
        self.assertEqual(requested[0].payload["link"], f"/reservations/{created.id}")
        self.assertEqual(requested[0].fire_at, NOW)

    def test_requested_reservations_may_overlap(self) -> None:
        first = self.request(at(9), at(10))
        second = self.request(at(9, 30), at(10, 30), requestor_id=OTHER_REQUESTOR_ID)

        self.assertNotEqual(first.id, second.id)
        self.assertEqual(len(self.engine.lifecycle.list_for_resource(RESOURCE_ID, [STATUS_REQUESTED])), 2)

    def test_create_rejections(self) -> None:
        with self.assertRaises(InvalidWindow):
            self.request(at(10), at(9))
        with self.assertRaises(OutsideAvailability):
            self.request(at(6), at(7))
        with self.assertRaises(ResourceNotFound):
            self.engine.create(REQUESTOR_ID, 999, at(9), at(10))
        with self.assertRaises(NotAuthorizedParty):
            self.engine.create(OWNER_ID, RESOURCE_ID, at(9), at(10))
        with self.assertRaises(InvalidWindow):
            self.request(at(9).replace(tzinfo=timezone.utc), at(10).replace(tzinfo=timezone.utc))
        with self.assertRaises(InvalidWindow):
            self.request(at(9), at(10).replace(tzinfo=timezone.utc))
        self.assertEqual(self.store.get_reservations_by_resource(RESOURCE_ID), [])

    def test_create_over_accepted_window_is_rejected(self) -> None:
        accepted = self.engine.accept(self.request(at(10), at(11)).id)

        with self.assertRaises(SlotConflict) as caught:
            self.request(at(10, 30), at(11, 30), requestor_id=OTHER_REQUESTOR_ID)
        self.assertEqual(caught.exception.conflicting_id, accepted.id)

    def test_accept_notifies_requestor_and_schedules_reminders(self) -> None:
        created = self.request(at(9), at(10))

        accepted = self.engine.accept(created.id, acting_user_id=OWNER_ID)

        self.assertEqual(accepted.status, STATUS_ACCEPTED)
        accepted_notices = self.notifications("reservation_accepted")
        self.assertEqual([row.user_id for row in accepted_notices], [REQUESTOR_ID])

        reminders = self.notifications("reservation_reminder")
        self.assertEqual(len(reminders), 4)
        self.assertEqual(
            sorted({row.fire_at for row in reminders}),
            [at(9) - timedelta(hours=24), at(9) - timedelta(hours=1)],
        )
        self.assertEqual({row.user_id for row in reminders}, {REQUESTOR_ID, OWNER_ID})

    def test_reminders_already_in_the_past_are_skipped(self) -> None:
        created = self.request(at(9), at(10))
        self.now = at(7)

        self.engine.accept(created.id)

        reminders = self.notifications("reservation_reminder")
        self.assertEqual({row.fire_at for row in reminders}, {at(8)})

    def test_only_provider_may_accept(self) -> None:
        created = self.request(at(9), at(10))

        with self.assertRaises(NotAuthorizedParty):
            self.engine.accept(created.id, acting_user_id=REQUESTOR_ID)
        self.assertEqual(self.engine.lifecycle.get(created.id).status, STATUS_REQUESTED)

    def test_accept_requires_requested_status(self) -> None:
        created = self.request(at(9), at(10))
        self.engine.accept(created.id)

        with self.assertRaises(InvalidStateTransition):
            self.engine.accept(created.id)

    def test_second_overlapping_accept_fails_and_stays_requested(self) -> None:
        first = self.request(at(9), at(10))
        second = self.request(at(9, 30), at(10, 30), requestor_id=OTHER_REQUESTOR_ID)

        self.engine.accept(first.id)
        with self.assertRaises(SlotConflict) as caught:
            self.engine.accept(second.id)

        self.assertEqual(caught.exception.conflicting_id, first.id)
        self.assertEqual(self.engine.lifecycle.get(second.id).status, STATUS_REQUESTED)

    def test_concurrent_overlapping_accepts_admit_exactly_one(self) -> None:
        first = self.request(at(9), at(10))
        second = self.request(at(9, 30), at(10, 30), requestor_id=OTHER_REQUESTOR_ID)
        barrier = threading.Barrier(2)
        outcomes: list[str] = []
        outcomes_lock = threading.Lock()

        def accept(reservation_id: int) -> None:
            barrier.wait()
            try:
                self.engine.accept(reservation_id)
                result = "accepted"
            except SlotConflict:
                result = "conflict"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=accept, args=(row.id,)) for row in (first, second)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(sorted(outcomes), ["accepted", "conflict"])
        self.assertEqual(len(self.engine.lifecycle.list_for_resource(RESOURCE_ID, [STATUS_ACCEPTED])), 1)

    def test_random_accept_order_never_produces_overlapping_accepted(self) -> None:
        rng = random.Random(20260223)
        for _ in range(5):
            self.setUp()
            created = []
            for index in range(12):
                start = at(8) + timedelta(minutes=15 * rng.randrange(0, 40))
                end = start + timedelta(minutes=15 * rng.randrange(1, 8))
                if end > at(20):
                    continue
                created.append(self.request(start, end, requestor_id=REQUESTOR_ID + index))
            rng.shuffle(created)
            for row in created:
                try:
                    self.engine.accept(row.id)
                except SlotConflict:
                    pass

            accepted = self.engine.lifecycle.list_for_resource(RESOURCE_ID, [STATUS_ACCEPTED])
            for index, left in enumerate(accepted):
                for right in accepted[index + 1 :]:
                    self.assertFalse(
                        has_time_overlap(left.window_start, left.window_end, right.window_start, right.window_end)
                    )

    def test_creating_while_another_thread_accepts(self) -> None:
        starts = [at(8) + timedelta(minutes=10 * step) for step in range(60)]
        creating_done = threading.Event()
        errors: list[Exception] = []

        def create_all() -> None:
            try:
                for index, start in enumerate(starts):
                    try:
                        self.request(start, start + timedelta(minutes=30), requestor_id=REQUESTOR_ID + index)
                    except SlotConflict:
                        pass
            except Exception as error:
                errors.append(error)
            finally:
                creating_done.set()

        def accept_pending() -> None:
            try:
                while True:
                    last_pass = creating_done.is_set()
                    for row in self.engine.lifecycle.list_for_resource(RESOURCE_ID, [STATUS_REQUESTED]):
                        self.engine.can_reserve(RESOURCE_ID, row.window_start, row.window_end)
                        try:
                            self.engine.accept(row.id)
                        except (SlotConflict, InvalidStateTransition):
                            pass
                    if last_pass:
                        break
            except Exception as error:
                errors.append(error)

        threads = [threading.Thread(target=create_all), threading.Thread(target=accept_pending)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(errors, [])
        accepted = self.engine.lifecycle.list_for_resource(RESOURCE_ID, [STATUS_ACCEPTED])
        self.assertTrue(accepted)
        for index, left in enumerate(accepted):
            for right in accepted[index + 1 :]:
                self.assertFalse(
                    has_time_overlap(left.window_start, left.window_end, right.window_start, right.window_end)
                )

    def test_resource_locks_are_dropped_once_released(self) -> None:
        reservation = self.engine.accept(self.request(at(9), at(10)).id)
        self.engine.cancel(reservation.id, acting_user_id=REQUESTOR_ID)

        self.assertEqual(len(self.engine.lifecycle._locks), 0)


class TestCompletion(LifecycleTestCase):
    def accepted(self, start: datetime = at(9), end: datetime = at(9, 50)):
        return self.engine.accept(self.request(start, end).id)

    def test_credit_blocks_round_up(self) -> None:
        self.assertEqual(credits_for_duration(50), 4)
        self.assertEqual(credits_for_duration(60), 4)
        self.assertEqual(credits_for_duration(61), 5)
        self.assertEqual(credits_for_duration(1), 1)
        self.assertEqual(credits_for_duration(0), 0)
        self.assertEqual(credits_for_duration(50, block_minutes=30), 2)

    def test_started_minute_counts_toward_credits(self) -> None:
        reservation = self.accepted(at(9), datetime(2026, 2, 23, 9, 45, 30))
        self.assertEqual(reservation.duration_minutes, 46)
        self.now = at(10)

        self.engine.confirm_completion(reservation.id, ROLE_PROVIDER, acting_user_id=OWNER_ID)
        self.engine.confirm_completion(reservation.id, ROLE_REQUESTOR, acting_user_id=REQUESTOR_ID)

        self.assertEqual(self.store.get_balance(REQUESTOR_ID), 4)
        self.assertEqual(self.store.get_balance(OWNER_ID), 4)

    def test_first_confirmation_does_not_complete(self) -> None:
        reservation = self.accepted()

        confirmed = self.engine.confirm_completion(reservation.id, ROLE_REQUESTOR, acting_user_id=REQUESTOR_ID)

        self.assertTrue(confirmed.requestor_confirmed)
        self.assertFalse(confirmed.provider_confirmed)
        self.assertEqual(confirmed.status, STATUS_ACCEPTED)
        self.assertEqual(self.store.get_balance(REQUESTOR_ID), 0)

    def test_both_confirmations_complete_and_credit_each_party(self) -> None:
        reservation = self.accepted()
        self.now = at(10)

        self.engine.confirm_completion(reservation.id, ROLE_PROVIDER, acting_user_id=OWNER_ID)
        completed = self.engine.confirm_completion(reservation.id, ROLE_REQUESTOR, acting_user_id=REQUESTOR_ID)

        self.assertEqual(completed.status, STATUS_COMPLETED)
        self.assertEqual(completed.completed_at, at(10))
        self.assertEqual(self.store.get_balance(REQUESTOR_ID), 4)
        self.assertEqual(self.store.get_balance(OWNER_ID), 4)

        earned = self.notifications("time_credits_earned")
        self.assertEqual({row.user_id for row in earned}, {REQUESTOR_ID, OWNER_ID})
        self.assertTrue(all(row.payload["credits"] == 4 for row in earned))
        self.assertEqual(len(self.notifications("reservation_completed")), 2)

        follow_ups = self.notifications("follow_up_reminder")
        self.assertEqual(len(follow_ups), 2)
        self.assertTrue(all(row.fire_at == at(10) + timedelta(hours=24) for row in follow_ups))

    def test_repeated_confirmation_is_idempotent(self) -> None:
        reservation = self.accepted()

        first = self.engine.confirm_completion(reservation.id, ROLE_REQUESTOR)
        again = self.engine.confirm_completion(reservation.id, ROLE_REQUESTOR)

        self.assertEqual(first, again)
        self.assertEqual(again.status, STATUS_ACCEPTED)

    def test_confirming_completed_reservation_is_rejected_without_double_credit(self) -> None:
        reservation = self.accepted()
        self.engine.confirm_completion(reservation.id, ROLE_REQUESTOR)
        self.engine.confirm_completion(reservation.id, ROLE_PROVIDER)

        with self.assertRaises(InvalidStateTransition):
            self.engine.confirm_completion(reservation.id, ROLE_PROVIDER)
        self.assertEqual(self.store.get_balance(OWNER_ID), 4)

    def test_confirm_rejections(self) -> None:
        reservation = self.accepted()
        pending = self.request(at(15), at(16), requestor_id=OTHER_REQUESTOR_ID)

        with self.assertRaises(ValueError):
            self.engine.confirm_completion(reservation.id, "observer")
        with self.assertRaises(NotAuthorizedParty):
            self.engine.confirm_completion(reservation.id, ROLE_PROVIDER, acting_user_id=REQUESTOR_ID)
        with self.assertRaises(InvalidStateTransition):
            self.engine.confirm_completion(pending.id, ROLE_REQUESTOR)
        with self.assertRaises(ReservationNotFound):
            self.engine.confirm_completion(999, ROLE_REQUESTOR)

    def test_completion_links_first_open_goal_of_requestor(self) -> None:
        planned = self.store.save_goal(PersonalGoal(REQUESTOR_ID, "Read music", status=GOAL_PLANNED))
        first_open = self.store.save_goal(PersonalGoal(REQUESTOR_ID, "Learn three chords", status=GOAL_IN_PROGRESS))
        second_open = self.store.save_goal(PersonalGoal(REQUESTOR_ID, "Play a song", status=GOAL_IN_PROGRESS))
        done = self.store.save_goal(PersonalGoal(REQUESTOR_ID, "Buy a guitar", status=GOAL_ACHIEVED))
        reservation = self.accepted()

        self.engine.confirm_completion(reservation.id, ROLE_REQUESTOR)
        self.engine.confirm_completion(reservation.id, ROLE_PROVIDER)

        goals = {goal.id: goal for goal in self.store.get_goals(REQUESTOR_ID)}
        self.assertEqual(goals[first_open.id].reservation_id, reservation.id)
        self.assertIsNone(goals[second_open.id].reservation_id)
        self.assertIsNone(goals[planned.id].reservation_id)
        self.assertIsNone(goals[done.id].reservation_id)

    def test_completion_without_open_goal_links_nothing(self) -> None:
        reservation = self.accepted()

        self.engine.confirm_completion(reservation.id, ROLE_REQUESTOR)
        completed = self.engine.confirm_completion(reservation.id, ROLE_PROVIDER)

        self.assertEqual(completed.status, STATUS_COMPLETED)
        self.assertEqual(self.store.get_goals(REQUESTOR_ID), [])

    def test_injected_ledger_receives_credits(self) -> None:
        ledger = RecordingLedger()
        engine = ReservationEngine(
            self.store,
            settings=EngineSettings(credit_block_minutes=30),
            clock=lambda: self.now,
            ledger=ledger,
        )
        reservation = engine.accept(engine.create(REQUESTOR_ID, RESOURCE_ID, at(9), at(9, 50)).id)

        engine.confirm_completion(reservation.id, ROLE_REQUESTOR)
        engine.confirm_completion(reservation.id, ROLE_PROVIDER)

        self.assertEqual(sorted(ledger.calls), [(OWNER_ID, 2), (REQUESTOR_ID, 2)])
        self.assertEqual(self.store.get_balance(REQUESTOR_ID), 0)


class TestCancelAndReschedule(LifecycleTestCase):
    def test_cancel_by_requestor_notifies_provider_and_frees_window(self) -> None:
        reservation = self.engine.accept(self.request(at(9), at(10)).id)

        cancelled = self.engine.cancel(reservation.id, reason="Sick", acting_user_id=REQUESTOR_ID)

        self.assertEqual(cancelled.status, STATUS_CANCELLED)
        self.assertEqual(cancelled.cancel_reason, "Sick")
        self.assertEqual(cancelled.cancelled_at, NOW)
        self.assertEqual([row.user_id for row in self.notifications("reservation_cancelled")], [OWNER_ID])
        self.assertIn("Reason: Sick", self.notifications("reservation_cancelled")[0].payload["message"])
        self.assertTrue(self.engine.can_reserve(RESOURCE_ID, at(9), at(10)))

    def test_system_cancel_notifies_both_parties(self) -> None:
        reservation = self.request(at(9), at(10))

        self.engine.cancel(reservation.id)

        self.assertEqual(
            sorted(row.user_id for row in self.notifications("reservation_cancelled")),
            [OWNER_ID, REQUESTOR_ID],
        )

    def test_cancel_rejections(self) -> None:
        reservation = self.request(at(9), at(10))

        with self.assertRaises(NotAuthorizedParty):
            self.engine.cancel(reservation.id, acting_user_id=OTHER_REQUESTOR_ID)

        self.engine.cancel(reservation.id)
        with self.assertRaises(InvalidStateTransition):
            self.engine.cancel(reservation.id)
        with self.assertRaises(ReservationNotFound):
            self.engine.cancel(999)

    def test_completed_reservation_cannot_be_cancelled(self) -> None:
        reservation = self.engine.accept(self.request(at(9), at(10)).id)
        self.engine.confirm_completion(reservation.id, ROLE_REQUESTOR)
        self.engine.confirm_completion(reservation.id, ROLE_PROVIDER)

        with self.assertRaises(InvalidStateTransition):
            self.engine.cancel(reservation.id)

    def test_reschedule_may_overlap_its_own_window(self) -> None:
        reservation = self.engine.accept(self.request(at(9), at(10)).id)

        moved = self.engine.reschedule(reservation.id, at(9, 30), at(10, 30), acting_user_id=REQUESTOR_ID)

        self.assertEqual((moved.window_start, moved.window_end), (at(9, 30), at(10, 30)))
        self.assertEqual(moved.status, STATUS_ACCEPTED)
        self.assertFalse(self.engine.can_reserve(RESOURCE_ID, at(10), at(10, 15)))
        self.assertTrue(self.engine.can_reserve(RESOURCE_ID, at(9), at(9, 30)))

    def test_reschedule_into_other_accepted_window_is_rejected(self) -> None:
        mine = self.engine.accept(self.request(at(9), at(10)).id)
        theirs = self.engine.accept(self.request(at(11), at(12), requestor_id=OTHER_REQUESTOR_ID).id)

        with self.assertRaises(SlotConflict) as caught:
            self.engine.reschedule(mine.id, at(11, 30), at(12, 30))

        self.assertEqual(caught.exception.conflicting_id, theirs.id)
        self.assertEqual(self.engine.lifecycle.get(mine.id).window_start, at(9))

    def test_reschedule_rejections(self) -> None:
        reservation = self.request(at(9), at(10))

        with self.assertRaises(InvalidWindow):
            self.engine.reschedule(reservation.id, at(10), at(9))
        with self.assertRaises(OutsideAvailability):
            self.engine.reschedule(reservation.id, at(21), at(22))
        with self.assertRaises(NotAuthorizedParty):
            self.engine.reschedule(reservation.id, at(11), at(12), acting_user_id=OTHER_REQUESTOR_ID)


if __name__ == "__main__":
    unittest.main()
