import asyncio
from decimal import Decimal

from sqlalchemy import select

from returns_engine.core.errors import StaleStateError
from returns_engine.models import ReturnEvent, ReturnRequest
from returns_engine.services.collaborators import Collaborators
from returns_engine.services.return_service import ReturnService
from returns_engine.services.return_state_machine import ReturnStatus

from tests.conftest import (
    ADMIN,
    CUSTOMER,
    FINANCE,
    SUPPORT,
    BarrierRBACService,
    advance_to_inspection_passed,
    make_return_data,
)


async def run_racing(session_factory, collaborators, publisher, operation):
    """Run `operation` twice in separate sessions; both pass validation before either commits."""
    racing = Collaborators(
        payment=collaborators.payment,
        orders=collaborators.orders,
        rbac=BarrierRBACService(parties=2),
        shipping=collaborators.shipping,
    )

    async def attempt():
        async with session_factory() as session:
            return await operation(ReturnService(session, racing, publisher))

    return await asyncio.gather(attempt(), attempt(), return_exceptions=True)


async def event_types(session_factory, return_id):
    async with session_factory() as session:
        result = await session.execute(
            select(ReturnEvent.event_type).where(ReturnEvent.return_id == return_id)
        )
        return list(result.scalars().all())


async def test_concurrent_approvals_commit_once(service, session_factory, collaborators, publisher):
    detail = await service.create_return(make_return_data(), CUSTOMER)

    results = await run_racing(
        session_factory,
        collaborators,
        publisher,
        lambda svc: svc.approve(detail.id, SUPPORT, customer_ships=True),
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], StaleStateError)
    assert successes[0].status == ReturnStatus.APPROVED

    assert (await event_types(session_factory, detail.id)).count("approved") == 1


async def test_approve_and_reject_race_has_one_winner(service, session_factory, collaborators, publisher):
    detail = await service.create_return(make_return_data(), CUSTOMER)

    started = []

    async def approve_or_reject(svc):
        started.append(svc)
        if len(started) == 1:
            return await svc.approve(detail.id, SUPPORT, customer_ships=True)
        return await svc.reject(detail.id, ADMIN, notes="Duplicate request")

    results = await run_racing(session_factory, collaborators, publisher, approve_or_reject)

    assert sum(isinstance(r, StaleStateError) for r in results) == 1
    winner = next(r for r in results if not isinstance(r, Exception))

    async with session_factory() as session:
        stored = await session.get(ReturnRequest, detail.id)
        assert stored.status == winner.status
        assert stored.version == 2

    types = await event_types(session_factory, detail.id)
    assert sorted(types) == sorted(["created", "approved" if winner.status == ReturnStatus.APPROVED else "rejected"])


async def test_concurrent_refunds_link_one_refund(service, session_factory, collaborators, publisher, payment):
    detail = await service.create_return(make_return_data(), CUSTOMER)
    await advance_to_inspection_passed(service, detail.id)

    results = await run_racing(
        session_factory,
        collaborators,
        publisher,
        lambda svc: svc.initiate_refund(detail.id, FINANCE, amount=Decimal("40.00")),
    )

    assert sum(isinstance(r, StaleStateError) for r in results) == 1
    winner = next(r for r in results if not isinstance(r, Exception))
    assert winner.status == ReturnStatus.REFUND_INITIATED

    async with session_factory() as session:
        stored = await session.get(ReturnRequest, detail.id)
        assert stored.refund_id == winner.refund.refund_id

    assert (await event_types(session_factory, detail.id)).count("refund_initiated") == 1
    # The losing call reached the payment service; the orphaned refund is logged for reconciliation
    assert len(payment.calls) == 2
