import uuid

import pytest
from sqlalchemy import select, func, update
from sqlalchemy.exc import InvalidRequestError

from returns_engine.core.errors import InvalidTransitionError, NotFoundError, StaleStateError
from returns_engine.models import ReturnEvent, ReturnRequest, TimelineImmutableError
from returns_engine.services.return_state_machine import ReturnStatus, get_allowed_transitions
from returns_engine.services.return_store import ReturnRequestStore, generate_return_number
from returns_engine.services.timeline_service import TimelineRecorder

from tests.conftest import ADMIN, CUSTOMER, make_return_data


INSPECTION_WALK = [
    ReturnStatus.AWAITING_RETURN,
    ReturnStatus.RECEIVED,
    ReturnStatus.INSPECTING,
    ReturnStatus.INSPECTION_PASSED,
]


class ExplodingRecorder(TimelineRecorder):
    async def record(self, *args, **kwargs):
        raise RuntimeError("timeline unavailable")


async def count_events(session_factory, return_id):
    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(ReturnEvent).where(ReturnEvent.return_id == return_id)
        )
        return result.scalar()


def test_generate_return_number():
    number = generate_return_number("RMA")
    assert number.startswith("RMA-")
    assert len(number.split("-")[2]) == 6


async def test_get_unknown_return(db):
    with pytest.raises(NotFoundError):
        await ReturnRequestStore(db).get(uuid.uuid4())


async def test_status_and_event_commit_together(service, db, session_factory):
    detail = await service.create_return(make_return_data(), CUSTOMER)
    store = ReturnRequestStore(db, recorder=ExplodingRecorder(db))
    request = await store.get(detail.id)

    with pytest.raises(RuntimeError):
        await store.apply_transition(request, ReturnStatus.APPROVED, ADMIN, changes={"customer_ships": True})

    async with session_factory() as session:
        stored = await session.get(ReturnRequest, detail.id)
        assert stored.status == ReturnStatus.PENDING
        assert stored.customer_ships is False
    assert await count_events(session_factory, detail.id) == 1


async def test_apply_transition_rejects_unknown_fields(service, db):
    detail = await service.create_return(make_return_data(), CUSTOMER)
    store = ReturnRequestStore(db)
    request = await store.get(detail.id)

    with pytest.raises(ValueError):
        await store.apply_transition(request, ReturnStatus.APPROVED, ADMIN, changes={"order_total": 1})


async def test_expected_status_checked_at_commit(service, db):
    detail = await service.create_return(make_return_data(), CUSTOMER)
    store = ReturnRequestStore(db)
    request = await store.get(detail.id)

    with pytest.raises(StaleStateError):
        await store.apply_transition(
            request, ReturnStatus.APPROVED, ADMIN, expected_status=ReturnStatus.MORE_INFO_NEEDED
        )


async def walk(store, request, statuses):
    for status in statuses:
        await store.apply_transition(request, status, ADMIN)


async def test_link_fields_are_set_once(service, db, session_factory):
    detail = await service.create_return(make_return_data(requested_action="replacement"), CUSTOMER)
    store = ReturnRequestStore(db)
    request = await store.get(detail.id)
    await store.apply_transition(request, ReturnStatus.APPROVED, ADMIN, changes={"customer_ships": True})
    await walk(store, request, INSPECTION_WALK)
    await store.apply_transition(
        request,
        ReturnStatus.REPLACEMENT_INITIATED,
        ADMIN,
        changes={"replacement_order_id": "REPL-1", "replacement_status": "created"},
    )

    with pytest.raises(InvalidTransitionError):
        await store.apply_transition(request, ReturnStatus.REFUND_INITIATED, ADMIN, changes={"refund_id": "RFD-1"})

    async with session_factory() as session:
        stored = await session.get(ReturnRequest, detail.id)
        assert stored.refund_id is None
        assert stored.replacement_order_id == "REPL-1"


async def test_link_outside_inspection_passed_is_rejected(service, db, session_factory):
    detail = await service.create_return(make_return_data(), CUSTOMER)
    store = ReturnRequestStore(db)
    request = await store.get(detail.id)
    await store.apply_transition(request, ReturnStatus.APPROVED, ADMIN, changes={"customer_ships": True})
    await walk(store, request, INSPECTION_WALK[:-1] + [ReturnStatus.INSPECTION_FAILED])

    with pytest.raises(InvalidTransitionError):
        await store.apply_transition(request, ReturnStatus.COMPLETED, ADMIN, changes={"refund_id": "RFD-1"})

    async with session_factory() as session:
        stored = await session.get(ReturnRequest, detail.id)
        assert stored.status == ReturnStatus.INSPECTION_FAILED
        assert stored.refund_id is None


async def force_status(session_factory, return_id, status):
    async with session_factory() as session:
        await session.execute(update(ReturnRequest).where(ReturnRequest.id == return_id).values(status=status))
        await session.commit()


@pytest.mark.parametrize("from_status", ReturnStatus.all())
async def test_apply_transition_rejects_edges_outside_the_table(from_status, service, session_factory):
    detail = await service.create_return(make_return_data(), CUSTOMER)
    await force_status(session_factory, detail.id, from_status)
    allowed = set(get_allowed_transitions(from_status))
    illegal = [s for s in ReturnStatus.all() if s not in allowed]
    events_before = await count_events(session_factory, detail.id)

    for target in illegal:
        async with session_factory() as session:
            store = ReturnRequestStore(session)
            request = await store.get(detail.id)
            with pytest.raises(InvalidTransitionError):
                await store.apply_transition(request, target, ADMIN)

    async with session_factory() as session:
        stored = await session.get(ReturnRequest, detail.id)
        assert stored.status == from_status
    assert await count_events(session_factory, detail.id) == events_before


async def test_stale_version_is_stale_state(service, session_factory):
    detail = await service.create_return(make_return_data(), CUSTOMER)

    async with session_factory() as first, session_factory() as second:
        first_store, second_store = ReturnRequestStore(first), ReturnRequestStore(second)
        first_copy = await first_store.get(detail.id)
        second_copy = await second_store.get(detail.id)
        await first.commit()
        await second.commit()

        await first_store.apply_transition(first_copy, ReturnStatus.APPROVED, ADMIN, changes={"customer_ships": True})
        with pytest.raises(StaleStateError):
            await second_store.apply_transition(
                second_copy, ReturnStatus.REJECTED, ADMIN, changes={"rejection_reason": "late"}
            )

    async with session_factory() as session:
        stored = await session.get(ReturnRequest, detail.id)
        assert stored.status == ReturnStatus.APPROVED
    assert await count_events(session_factory, detail.id) == 2


async def test_timeline_events_are_write_once(service, db):
    detail = await service.create_return(make_return_data(), CUSTOMER)
    result = await db.execute(select(ReturnEvent).where(ReturnEvent.return_id == detail.id))
    entry = result.scalar_one()

    entry.notes = "rewritten"
    with pytest.raises(TimelineImmutableError):
        await db.flush()
    await db.rollback()

    result = await db.execute(select(ReturnEvent).where(ReturnEvent.return_id == detail.id))
    entry = result.scalar_one()
    await db.delete(entry)
    with pytest.raises(TimelineImmutableError):
        await db.flush()
    await db.rollback()


async def test_events_listed_newest_first(service, db):
    detail = await service.create_return(make_return_data(), CUSTOMER)
    await service.approve(detail.id, ADMIN, customer_ships=True)
    await service.update_status(detail.id, ReturnStatus.AWAITING_RETURN, ADMIN)

    events = await ReturnRequestStore(db).list_events(detail.id)
    assert [e.event_type for e in events] == ["status_change", "approved", "created"]
    assert events[0].previous_status == ReturnStatus.APPROVED
    assert events[0].new_status == ReturnStatus.AWAITING_RETURN


async def test_get_by_number(service, db):
    detail = await service.create_return(make_return_data(), CUSTOMER)

    found = await ReturnRequestStore(db).get_by_number(detail.return_number)
    assert found.id == detail.id

    with pytest.raises(NotFoundError):
        await ReturnRequestStore(db).get_by_number("RET-000000-NOPE00")


async def test_timeline_is_never_lazy_loaded(service, db):
    detail = await service.create_return(make_return_data(), CUSTOMER)
    request = await ReturnRequestStore(db).get(detail.id)

    with pytest.raises(InvalidRequestError):
        request.events

    events = await ReturnRequestStore(db).list_events(detail.id)
    assert [e.event_type for e in events] == ["created"]
