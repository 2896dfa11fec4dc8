from __future__ import annotations

import threading
import unittest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import select, update

from app.models import AssigneeType, CheckIn, PrincipalRole, TaskInstance, TaskStatus, TaskTransfer
from app.services import task_lifecycle_service
from app.services.geofence_service import Coordinate
from app.services.notification_service import set_event_publisher
from app.services.task_errors import (
    InvalidTransition,
    LocationRequired,
    NotHolder,
    OutsideGeofence,
    PhotosIncomplete,
)
from app.services.task_instantiation_service import ensure_instance
from app.services.task_lifecycle_service import (
    cancel,
    claim,
    complete,
    list_instances,
    serialize_instance,
    start,
    transfer,
    upload_photo,
)
from tests.support import INSIDE, OUTSIDE, SqliteDatabase, actor_for, add_principal, add_store, add_template, utc

AT_40_METERS = Coordinate(latitude=33.00036, longitude=-86.0)
INSIDE_POINT = Coordinate(*INSIDE)
OUTSIDE_POINT = Coordinate(*OUTSIDE)


def now() -> datetime:
    return datetime.now(tz=timezone.utc)


class TaskLifecycleServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.database = SqliteDatabase()
        self.events = []
        set_event_publisher(self.events.append)
        with self.database.Session() as db:
            store = add_store(db, radius_m=50)
            self.store_id = store.id
            self.open_store_id = add_store(db, name='Warehouse', geofenced=False).id
            self.other_store_id = add_store(db, name='Uptown').id
            self.employee = actor_for(add_principal(db, username='employee1', store_id=store.id))
            self.coworker = actor_for(add_principal(db, username='employee2', store_id=store.id))
            self.outsider = actor_for(add_principal(db, username='uptown1', store_id=self.other_store_id))
            self.manager = actor_for(add_principal(db, username='manager', role=PrincipalRole.MANAGER))
            self.template_id = add_template(db, title='Clean Floor', photo_required=True, photo_count=1).id
            db.commit()

    def tearDown(self) -> None:
        set_event_publisher(None)
        self.database.close()

    def _instance(self, db, *, store_id=None, at=None, template_id=None) -> TaskInstance:
        return ensure_instance(
            db,
            template_id=template_id or self.template_id,
            store_id=store_id or self.store_id,
            at=at or now(),
        )

    def _upload(self, db, task_id, actor, coordinate=INSIDE_POINT):
        return upload_photo(
            db,
            task_id=task_id,
            actor=actor,
            content_ref=f'photo-{task_id}-{actor.id}.jpg',
            filename='floor.jpg',
            content_type='image/jpeg',
            size_bytes=1024,
            coordinate=coordinate,
        )

    def test_daily_photo_task_walkthrough(self) -> None:
        with self.database.Session() as db:
            first = self._instance(db)
            db.commit()
            self.assertEqual(first.status, TaskStatus.AVAILABLE)

            claimed = claim(db, task_id=first.id, actor=self.employee, coordinate=AT_40_METERS)
            db.commit()
            self.assertEqual(claimed.status, TaskStatus.CLAIMED)
            self.assertEqual(claimed.claimed_by, self.employee.id)
            self.assertIsNotNone(claimed.claimed_at)

            with self.assertRaises(PhotosIncomplete) as ctx:
                complete(db, task_id=first.id, actor=self.employee, coordinate=AT_40_METERS)
            self.assertEqual(str(ctx.exception), '0 of 1 required photos uploaded')
            db.rollback()

            self._upload(db, first.id, self.employee, AT_40_METERS)
            done = complete(db, task_id=first.id, actor=self.employee, coordinate=AT_40_METERS)
            db.commit()
            self.assertEqual(done.status, TaskStatus.COMPLETED)
            self.assertEqual(done.completed_by, self.employee.id)
            self.assertEqual(done.photos_uploaded, 1)

            second = self._instance(db, at=now() + timedelta(days=1))
            db.commit()
            self.assertNotEqual(second.id, first.id)
            self.assertEqual(second.status, TaskStatus.AVAILABLE)

        self.assertEqual(
            [event.event_type for event in self.events],
            ['task.created', 'task.claimed', 'task.photo_uploaded', 'task.completed', 'task.created'],
        )

    def test_claim_requires_location_at_geofenced_store(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            with self.assertRaises(LocationRequired):
                claim(db, task_id=instance.id, actor=self.employee)

    def test_claim_outside_geofence_reports_distance(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            with self.assertRaises(OutsideGeofence) as ctx:
                claim(db, task_id=instance.id, actor=self.employee, coordinate=OUTSIDE_POINT)

            self.assertAlmostEqual(ctx.exception.details['distance_m'], 222.4, delta=2.0)
            self.assertEqual(ctx.exception.details['radius_m'], 50.0)
            self.assertEqual(db.get(TaskInstance, instance.id).status, TaskStatus.AVAILABLE)

    def test_manager_bypasses_geofence(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            claimed = claim(db, task_id=instance.id, actor=self.manager)
            self.assertEqual(claimed.claimed_by, self.manager.id)

    def test_unfenced_store_needs_no_location(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db, store_id=self.open_store_id)
            self.employee.store_id = self.open_store_id
            claimed = claim(db, task_id=instance.id, actor=self.employee)
            self.assertEqual(claimed.status, TaskStatus.CLAIMED)

    def test_claim_records_implicit_checkin(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            db.commit()

            checkin = db.execute(select(CheckIn).where(CheckIn.principal_id == self.employee.id)).scalar_one()
            self.assertEqual(checkin.store_id, self.store_id)
            self.assertEqual(checkin.source, 'GEOFENCE')

    def test_other_store_employee_cannot_claim(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            with self.assertRaises(NotHolder):
                claim(db, task_id=instance.id, actor=self.outsider, coordinate=INSIDE_POINT)

    def test_second_claim_is_rejected(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            db.commit()

            with self.assertRaises(InvalidTransition):
                claim(db, task_id=instance.id, actor=self.coworker, coordinate=INSIDE_POINT)

    def test_claim_loses_to_concurrent_writer(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db, store_id=self.open_store_id)
            db.commit()
        task_id = instance.id
        self.employee.store_id = self.open_store_id
        real_check = task_lifecycle_service._ensure_may_claim

        def check_then_race(actor, row):
            real_check(actor, row)
            with self.database.Session() as competitor:
                competitor.execute(
                    update(TaskInstance)
                    .where(TaskInstance.id == task_id)
                    .values(status=TaskStatus.CLAIMED, claimed_by=self.coworker.id, claimed_at=now())
                )
                competitor.commit()

        with patch('app.services.task_lifecycle_service._ensure_may_claim', side_effect=check_then_race):
            with self.database.Session() as db:
                with self.assertRaises(InvalidTransition):
                    claim(db, task_id=task_id, actor=self.employee)
                db.rollback()
                self.assertEqual(task_lifecycle_service.get_instance(db, task_id).claimed_by, self.coworker.id)

    def test_concurrent_claims_have_one_winner(self) -> None:
        database = SqliteDatabase(serialized=True)
        self.addCleanup(database.close)
        with database.Session() as db:
            store_id = add_store(db, geofenced=False).id
            actors = [actor_for(add_principal(db, username=f'crew{index}', store_id=store_id)) for index in range(6)]
            task_id = ensure_instance(db, template_id=add_template(db).id, store_id=store_id, at=now()).id
            db.commit()

        barrier = threading.Barrier(len(actors))
        winners = []
        losers = []
        unexpected = []

        def worker(actor) -> None:
            barrier.wait()
            try:
                with database.Session() as db:
                    claim(db, task_id=task_id, actor=actor)
                    db.commit()
                winners.append(actor.id)
            except InvalidTransition:
                losers.append(actor.id)
            except Exception as exc:
                unexpected.append(exc)

        threads = [threading.Thread(target=worker, args=(actor,)) for actor in actors]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(unexpected, [])
        self.assertEqual(len(winners), 1)
        self.assertEqual(len(losers), len(actors) - 1)
        with database.Session() as db:
            self.assertEqual(task_lifecycle_service.get_instance(db, task_id).claimed_by, winners[0])

    def test_start_is_holder_only(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)

            with self.assertRaises(NotHolder):
                start(db, task_id=instance.id, actor=self.coworker)
            started = start(db, task_id=instance.id, actor=self.employee)
            self.assertEqual(started.status, TaskStatus.IN_PROGRESS)
            self.assertIsNotNone(started.started_at)
            with self.assertRaises(InvalidTransition):
                start(db, task_id=instance.id, actor=self.employee)

    def test_only_holder_completes(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            self._upload(db, instance.id, self.employee)

            with self.assertRaises(NotHolder):
                complete(db, task_id=instance.id, actor=self.coworker, coordinate=INSIDE_POINT)
            with self.assertRaises(NotHolder):
                self._upload(db, instance.id, self.coworker)

    def test_complete_requires_claim(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            with self.assertRaises(InvalidTransition):
                complete(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)

    def test_complete_checks_geofence(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            self._upload(db, instance.id, self.employee)

            with self.assertRaises(OutsideGeofence):
                complete(db, task_id=instance.id, actor=self.employee, coordinate=OUTSIDE_POINT)

    def test_photo_count_gate(self) -> None:
        with self.database.Session() as db:
            template = add_template(db, title='Shelf Faces', photo_required=True, photo_count=2)
            instance = self._instance(db, template_id=template.id)
            claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            self._upload(db, instance.id, self.employee)

            with self.assertRaises(PhotosIncomplete) as ctx:
                complete(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            self.assertEqual(ctx.exception.details, {'uploaded': 1, 'required': 2})

            self._upload(db, instance.id, self.employee)
            done = complete(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            self.assertEqual(done.status, TaskStatus.COMPLETED)

    def test_completed_task_rejects_everything(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            self._upload(db, instance.id, self.employee)
            complete(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            db.commit()

            with self.assertRaises(InvalidTransition):
                complete(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            with self.assertRaises(InvalidTransition):
                self._upload(db, instance.id, self.employee)
            with self.assertRaises(InvalidTransition):
                claim(db, task_id=instance.id, actor=self.coworker, coordinate=INSIDE_POINT)
            with self.assertRaises(InvalidTransition):
                cancel(db, task_id=instance.id, actor=self.manager)

    def test_actual_duration_measured_from_claim(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            db.execute(
                update(TaskInstance)
                .where(TaskInstance.id == instance.id)
                .values(claimed_at=now() - timedelta(minutes=25))
            )
            self._upload(db, instance.id, self.employee)
            done = complete(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)

            self.assertEqual(done.actual_duration_minutes, 25)

    def test_transfer_moves_holder_and_keeps_status(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            start(db, task_id=instance.id, actor=self.employee)

            moved = transfer(
                db,
                task_id=instance.id,
                actor=self.employee,
                from_principal_id=self.employee.id,
                to_principal_id=self.coworker.id,
                reason='Shift ended',
            )
            db.commit()

            self.assertEqual(moved.claimed_by, self.coworker.id)
            self.assertEqual(moved.status, TaskStatus.IN_PROGRESS)
            record = db.execute(select(TaskTransfer).where(TaskTransfer.task_id == instance.id)).scalar_one()
            self.assertEqual(record.from_principal_id, self.employee.id)
            self.assertEqual(record.reason, 'Shift ended')

            self._upload(db, instance.id, self.coworker)
            with self.assertRaises(NotHolder):
                complete(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            done = complete(db, task_id=instance.id, actor=self.coworker, coordinate=INSIDE_POINT)
            self.assertEqual(done.completed_by, self.coworker.id)

    def test_transfer_guards(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            with self.assertRaises(NotHolder):
                transfer(
                    db,
                    task_id=instance.id,
                    actor=self.employee,
                    from_principal_id=self.employee.id,
                    to_principal_id=self.coworker.id,
                )

            claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            with self.assertRaises(NotHolder):
                transfer(
                    db,
                    task_id=instance.id,
                    actor=self.coworker,
                    from_principal_id=self.employee.id,
                    to_principal_id=self.coworker.id,
                )
            with self.assertRaises(NotHolder):
                transfer(
                    db,
                    task_id=instance.id,
                    actor=self.employee,
                    from_principal_id=self.employee.id,
                    to_principal_id=self.outsider.id,
                )

            moved = transfer(
                db,
                task_id=instance.id,
                actor=self.manager,
                from_principal_id=self.employee.id,
                to_principal_id=self.coworker.id,
            )
            self.assertEqual(moved.claimed_by, self.coworker.id)

    def test_force_complete_is_administrative(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            with self.assertRaises(InvalidTransition):
                complete(db, task_id=instance.id, actor=self.employee, force_complete=True, coordinate=INSIDE_POINT)

            done = complete(
                db,
                task_id=instance.id,
                actor=self.manager,
                force_complete=True,
                override_photo_requirement=True,
            )
            self.assertEqual(done.status, TaskStatus.COMPLETED)
            self.assertEqual(done.completed_by, self.manager.id)

    def test_photo_override_needs_capability(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            with self.assertRaises(PhotosIncomplete):
                complete(
                    db,
                    task_id=instance.id,
                    actor=self.employee,
                    coordinate=INSIDE_POINT,
                    override_photo_requirement=True,
                )

            managed = self._instance(db, template_id=add_template(db, title='Cooler', photo_required=True, photo_count=1).id)
            claim(db, task_id=managed.id, actor=self.manager)
            done = complete(db, task_id=managed.id, actor=self.manager, override_photo_requirement=True)
            self.assertEqual(done.status, TaskStatus.COMPLETED)
            self.assertEqual(done.photos_uploaded, 0)

    def test_cancel_is_administrative(self) -> None:
        with self.database.Session() as db:
            instance = self._instance(db)
            with self.assertRaises(NotHolder):
                cancel(db, task_id=instance.id, actor=self.employee)

            cancelled = cancel(db, task_id=instance.id, actor=self.manager, reason='Store closed')
            self.assertEqual(cancelled.status, TaskStatus.CANCELLED)
            self.assertIsNotNone(cancelled.cancelled_at)
            with self.assertRaises(InvalidTransition):
                claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)

    def test_specific_assignee_claims_pending_task(self) -> None:
        with self.database.Session() as db:
            template = add_template(
                db,
                title='Count Till',
                photo_required=False,
                assignee_type=AssigneeType.SPECIFIC_EMPLOYEE,
                assignee_id=self.coworker.id,
            )
            instance = self._instance(db, template_id=template.id)
            self.assertEqual(instance.status, TaskStatus.PENDING)

            with self.assertRaises(NotHolder):
                claim(db, task_id=instance.id, actor=self.employee, coordinate=INSIDE_POINT)
            claimed = claim(db, task_id=instance.id, actor=self.coworker, coordinate=INSIDE_POINT)
            self.assertEqual(claimed.status, TaskStatus.CLAIMED)

    def test_overdue_is_derived_on_read(self) -> None:
        with self.database.Session() as db:
            stale = self._instance(db, at=utc(2024, 3, 5, 9, 0))
            fresh = self._instance(db, template_id=add_template(db, title='Restock').id)
            db.commit()

            self.assertEqual(stale.status, TaskStatus.AVAILABLE)
            self.assertEqual(serialize_instance(stale)['status'], 'OVERDUE')
            self.assertEqual(serialize_instance(fresh)['status'], 'AVAILABLE')

            overdue_ids = [row.id for row in list_instances(db, store_id=self.store_id, status=TaskStatus.OVERDUE)]
            available_ids = [row.id for row in list_instances(db, store_id=self.store_id, status=TaskStatus.AVAILABLE)]
            self.assertEqual(overdue_ids, [stale.id])
            self.assertEqual(available_ids, [fresh.id])

            claimed = claim(db, task_id=stale.id, actor=self.employee, coordinate=INSIDE_POINT)
            self.assertEqual(claimed.status, TaskStatus.CLAIMED)

    def test_date_filter_uses_store_local_day(self) -> None:
        with self.database.Session() as db:
            pacific_id = add_store(db, name='Coastal', geofenced=False, timezone_name='America/Los_Angeles').id
            evening = self._instance(db, store_id=pacific_id, at=utc(2024, 3, 6, 4, 0))
            db.commit()

            self.assertEqual(evening.period_key, 'D:2024-03-05')
            on_local_day = list_instances(db, store_id=pacific_id, on_date=date(2024, 3, 5), now=utc(2024, 3, 5, 20, 0))
            on_utc_day = list_instances(db, store_id=pacific_id, on_date=date(2024, 3, 6), now=utc(2024, 3, 5, 20, 0))
            self.assertEqual([row.id for row in on_local_day], [evening.id])
            self.assertEqual(on_utc_day, [])


if __name__ == '__main__':
    unittest.main()
