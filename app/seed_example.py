from decimal import Decimal

from sqlalchemy import select

from app.db import SessionLocal, engine
from app.models import (
    AssignmentEntityType,
    Base,
    Principal,
    PrincipalRole,
    RecurrenceType,
    Store,
    StoreAssignment,
    TaskList,
    TaskTemplate,
)


def seed() -> None:
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        store = db.execute(select(Store).where(Store.name == 'Downtown')).scalar_one_or_none()
        if not store:
            store = Store(
                name='Downtown',
                timezone='America/Chicago',
                latitude=Decimal('33.0'),
                longitude=Decimal('-86.0'),
                geofence_radius_m=50,
                active=True,
            )
            db.add(store)
            db.flush()

        opening = db.execute(select(TaskList).where(TaskList.name == 'Opening')).scalar_one_or_none()
        if not opening:
            opening = TaskList(name='Opening', recurrence_type=RecurrenceType.DAILY, active=True)
            db.add(opening)
            db.flush()
            db.add(StoreAssignment(entity_type=AssignmentEntityType.LIST, entity_id=opening.id, store_id=store.id))

        templates = [
            ('Clean Floor', RecurrenceType.DAILY, True, 2, 30),
            ('Restock Front Shelves', RecurrenceType.DAILY, False, 0, 20),
            ('Deep Clean Cooler', RecurrenceType.WEEKLY, True, 1, 60),
        ]
        for position, (title, recurrence, photo_required, photo_count, minutes) in enumerate(templates, start=1):
            existing = db.execute(
                select(TaskTemplate).where(TaskTemplate.list_id == opening.id, TaskTemplate.title == title)
            ).scalar_one_or_none()
            if existing:
                continue
            db.add(
                TaskTemplate(
                    list_id=opening.id,
                    title=title,
                    recurrence_type=recurrence,
                    photo_required=photo_required,
                    photo_count=photo_count,
                    estimated_duration_minutes=minutes,
                    position=position,
                    active=True,
                )
            )

        for username, role, store_id in [
            ('manager', PrincipalRole.MANAGER, None),
            ('employee1', PrincipalRole.EMPLOYEE, store.id),
            ('employee2', PrincipalRole.EMPLOYEE, store.id),
        ]:
            principal = db.execute(select(Principal).where(Principal.username == username)).scalar_one_or_none()
            if not principal:
                db.add(Principal(username=username, role=role, store_id=store_id, active=True))

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
