"""Two-party recalculation of approved payroll batches."""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_batch.calculators.types import BatchRunSummary
from payroll_batch.config import Settings, get_settings
from payroll_batch.exceptions import ConcurrencyConflict, StateError
from payroll_batch.models import PayrollBatch, RecalculationRequest
from payroll_batch.models.base import ensure_utc, utcnow
from payroll_batch.services.batch_service import BatchService, ProgressCallback
from payroll_batch.services.snapshot_store import PRE_RECALCULATION, HistorySnapshotStore
from payroll_batch.services.state_machine import BatchAction, BatchStateMachine

logger = logging.getLogger(__name__)


class RecalculationCoordinator:
    """Request → grant → recalculate, with the grant given by a different person.

    A batch has at most one active request (pending, or granted and not yet
    consumed). A grant is consumed exactly once and expires after
    ``RECALCULATION_GRANT_TTL_HOURS``.
    """

    def __init__(
        self,
        session: AsyncSession,
        batch_service: BatchService | None = None,
        snapshot_store: HistorySnapshotStore | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.batch_service = batch_service or BatchService(session, self.settings)
        self.snapshot_store = snapshot_store or HistorySnapshotStore(session)

    async def get_active_request(self, batch_id: UUID) -> RecalculationRequest | None:
        """Pending request, or granted one that is neither consumed nor expired."""
        request = await self._latest_unconsumed(batch_id)
        if request is not None and self._is_expired(request):
            return None
        return request

    async def _latest_unconsumed(self, batch_id: UUID) -> RecalculationRequest | None:
        result = await self.session.execute(
            select(RecalculationRequest)
            .where(
                RecalculationRequest.batch_id == batch_id,
                RecalculationRequest.status.in_(("pending", "granted")),
                RecalculationRequest.consumed_at.is_(None),
            )
            .order_by(RecalculationRequest.requested_at.desc())
        )
        return result.scalars().first()

    @staticmethod
    def _is_expired(request: RecalculationRequest) -> bool:
        return (
            request.status == "granted"
            and request.expires_at is not None
            and ensure_utc(request.expires_at) <= utcnow()
        )

    async def list_requests(self, batch_id: UUID) -> list[RecalculationRequest]:
        result = await self.session.execute(
            select(RecalculationRequest)
            .where(RecalculationRequest.batch_id == batch_id)
            .order_by(RecalculationRequest.requested_at)
        )
        return list(result.scalars().all())

    async def request_recalculation(
        self,
        batch_id: UUID,
        requester_id: UUID,
        reason: str,
    ) -> RecalculationRequest:
        """Open a pending request on an approved or frozen batch.

        Raises ConcurrencyConflict when another session opened a request
        after this one checked.
        """
        batch = await self.batch_service.get_batch(batch_id)
        action = BatchAction.REQUEST_RECALCULATION.value
        if not BatchStateMachine.can_request_recalculation(batch.status):
            raise StateError(batch.status, action)
        if not reason or not reason.strip():
            raise StateError(batch.status, action, "a reason is required")
        if await self.get_active_request(batch_id) is not None:
            raise StateError(batch.status, action, "an active recalculation request already exists")

        request = RecalculationRequest(
            batch_id=batch_id,
            requester_id=requester_id,
            reason=reason.strip(),
            status="pending",
            requested_at=utcnow(),
        )
        self.session.add(request)
        await self.session.flush()

        # Claim the batch's request slot. A pointer left by an expired grant
        # may be replaced; anything else means another request got in first.
        previous = batch.active_request_id
        slot_free = (
            PayrollBatch.active_request_id.is_(None)
            if previous is None
            else PayrollBatch.active_request_id == previous
        )
        result = await self.session.execute(
            update(PayrollBatch)
            .where(PayrollBatch.batch_id == batch_id, slot_free)
            .values(active_request_id=request.request_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict(
                batch_id, batch.status, "another recalculation request is active"
            )
        batch.active_request_id = request.request_id
        await self.batch_service.record_audit(
            batch_id,
            "recalculation_requested",
            requester_id,
            batch.status,
            batch.status,
            {"request_id": str(request.request_id), "reason": request.reason},
        )
        await self.session.flush()
        logger.info("Recalculation requested for batch %s by %s", batch.batch_number, requester_id)
        return request

    async def grant_recalculation(
        self,
        batch_id: UUID,
        granter_id: UUID,
        reason: str | None = None,
    ) -> RecalculationRequest:
        """Grant the pending request. The granter must not be the requester."""
        batch = await self.batch_service.get_batch(batch_id)
        request = await self._pending_request(batch, "grant recalculation for")
        if request.requester_id == granter_id:
            raise StateError(
                batch.status,
                "grant recalculation for",
                "the requester cannot grant their own request",
            )

        now = utcnow()
        request.status = "granted"
        request.granter_id = granter_id
        request.granted_at = now
        request.decision_reason = reason
        request.expires_at = now + timedelta(hours=self.settings.recalculation_grant_ttl_hours)
        await self.batch_service.record_audit(
            batch_id,
            "recalculation_granted",
            granter_id,
            batch.status,
            batch.status,
            {"request_id": str(request.request_id)},
        )
        await self.session.flush()
        logger.info("Recalculation granted for batch %s by %s", batch.batch_number, granter_id)
        return request

    async def deny_recalculation(
        self,
        batch_id: UUID,
        granter_id: UUID,
        reason: str,
    ) -> RecalculationRequest:
        """Deny the pending request and clear it from the batch."""
        batch = await self.batch_service.get_batch(batch_id)
        request = await self._pending_request(batch, "deny recalculation for")

        request.status = "denied"
        request.granter_id = granter_id
        request.decision_reason = reason
        batch.active_request_id = None
        await self.batch_service.record_audit(
            batch_id,
            "recalculation_denied",
            granter_id,
            batch.status,
            batch.status,
            {"request_id": str(request.request_id), "reason": reason},
        )
        await self.session.flush()
        logger.info("Recalculation denied for batch %s", batch.batch_number)
        return request

    async def recalculate(
        self,
        batch_id: UUID,
        actor_id: UUID,
        progress: ProgressCallback | None = None,
    ) -> BatchRunSummary:
        """Consume the grant, snapshot the batch and recompute every employee.

        Ends in ``calculated``. Raises StateError without a valid grant and
        ConcurrencyConflict when the grant was consumed concurrently.
        """
        batch = await self.batch_service.get_batch(batch_id)
        BatchStateMachine.next_status(batch.status, BatchAction.RECALCULATE)

        request = await self._latest_unconsumed(batch_id)
        if request is None or request.status != "granted":
            raise StateError(batch.status, BatchAction.RECALCULATE.value, "no granted request")
        if self._is_expired(request):
            raise StateError(batch.status, BatchAction.RECALCULATE.value, "the grant has expired")

        now = utcnow()
        result = await self.session.execute(
            update(RecalculationRequest)
            .where(
                RecalculationRequest.request_id == request.request_id,
                RecalculationRequest.status == "granted",
                RecalculationRequest.consumed_at.is_(None),
            )
            .values(consumed_at=now, consumed_by=actor_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict(request.request_id, "granted", "grant already consumed")
        request.consumed_at = now
        request.consumed_by = actor_id

        snapshot_id = await self.snapshot_store.capture(batch, PRE_RECALCULATION, actor_id)
        config = await self.batch_service.config_service.get_active()
        await self.batch_service.transition(
            batch,
            BatchAction.RECALCULATE,
            actor_id,
            details={
                "request_id": str(request.request_id),
                "snapshot_id": str(snapshot_id),
                "config_version": config.version,
            },
            config_version=config.version,
            active_request_id=None,
            approved_at=None,
            approved_by=None,
            frozen_at=None,
            frozen_by=None,
            failures_acknowledged_by=None,
        )
        await self.batch_service.checkpoint()

        return await self.batch_service.execute_calculation(batch, config, actor_id, progress)

    async def _pending_request(self, batch: PayrollBatch, action: str) -> RecalculationRequest:
        request = await self.get_active_request(batch.batch_id)
        if request is None or request.status != "pending":
            raise StateError(batch.status, action, "no pending recalculation request")
        return request

