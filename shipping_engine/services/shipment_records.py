"""
Shipment creation record stores

Every creation attempt is written PENDING before the vendor is called and
moved to a final state afterwards:

    PENDING -> COMPLETED             tracking id issued
    PENDING -> VENDOR_ORDER_CREATED  vendor kept an order but no shipment/AWB
    PENDING -> FAILED                nothing exists vendor-side

Records in VENDOR_ORDER_CREATED (and PENDING ones whose process died) are
the stranded orders reconciliation must look at. Nothing here compensates
automatically.
"""
import itertools
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipping_engine.core.utils import utcnow
from shipping_engine.models.shipment_record import CreationState, ShipmentCreationRecord
from shipping_engine.modules.shipping.providers.base import ShipmentResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreationRecord:
    """Detached view of one creation attempt."""
    id: int
    order_id: str
    provider_id: str
    state: CreationState
    service_id: Optional[str] = None
    is_return: bool = False
    vendor_order_id: Optional[str] = None
    vendor_shipment_id: Optional[str] = None
    tracking_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def outcome_state(response: ShipmentResponse) -> CreationState:
    """Final state implied by a creation response."""
    if response.partial:
        return CreationState.VENDOR_ORDER_CREATED
    if response.success:
        # Booked without an AWB: the vendor holds something we cannot track
        return CreationState.COMPLETED if response.tracking_id else CreationState.VENDOR_ORDER_CREATED
    return CreationState.FAILED


class ShipmentRecordStore(Protocol):
    async def start(
        self, order_id: str, provider_id: str, service_id: Optional[str], is_return: bool = False
    ) -> CreationRecord:
        ...

    async def finish(self, record_id: int, response: ShipmentResponse) -> Optional[CreationRecord]:
        ...

    async def get(self, record_id: int) -> Optional[CreationRecord]:
        ...

    async def list_stranded(self) -> List[CreationRecord]:
        ...

    async def list_for_order(self, order_id: str) -> List[CreationRecord]:
        ...


STRANDED_STATES = (CreationState.PENDING, CreationState.VENDOR_ORDER_CREATED)


class InMemoryShipmentRecordStore:
    """Process-local store for tests and single-instance deployments."""

    def __init__(self):
        self._records: Dict[int, CreationRecord] = {}
        self._ids = itertools.count(1)

    async def start(self, order_id, provider_id, service_id, is_return=False) -> CreationRecord:
        now = utcnow()
        record = CreationRecord(
            id=next(self._ids),
            order_id=order_id,
            provider_id=provider_id,
            service_id=service_id,
            is_return=is_return,
            state=CreationState.PENDING,
            created_at=now,
            updated_at=now,
        )
        self._records[record.id] = record
        return record

    async def finish(self, record_id, response) -> Optional[CreationRecord]:
        record = self._records.get(record_id)
        if record is None:
            logger.warning(f"Creation record {record_id} not found")
            return None
        record = replace(
            record,
            state=outcome_state(response),
            vendor_order_id=response.vendor_order_id,
            vendor_shipment_id=response.shipment_id,
            tracking_id=response.tracking_id,
            error_code=response.error,
            error_message=None if response.success else response.message,
            updated_at=utcnow(),
        )
        self._records[record_id] = record
        return record

    async def get(self, record_id) -> Optional[CreationRecord]:
        return self._records.get(record_id)

    async def list_stranded(self) -> List[CreationRecord]:
        return [r for r in self._records.values() if r.state in STRANDED_STATES]

    async def list_for_order(self, order_id) -> List[CreationRecord]:
        return [r for r in self._records.values() if r.order_id == order_id]


class SQLAlchemyShipmentRecordStore:
    """Durable store on the shipment_creation_records table."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _to_record(row: ShipmentCreationRecord) -> CreationRecord:
        return CreationRecord(
            id=row.id,
            order_id=row.order_id,
            provider_id=row.provider_id,
            service_id=row.service_id,
            is_return=bool(row.is_return),
            state=row.state,
            vendor_order_id=row.vendor_order_id,
            vendor_shipment_id=row.vendor_shipment_id,
            tracking_id=row.tracking_id,
            error_code=row.error_code,
            error_message=row.error_message,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def start(self, order_id, provider_id, service_id, is_return=False) -> CreationRecord:
        async with self.session_factory() as session:
            row = ShipmentCreationRecord(
                order_id=order_id,
                provider_id=provider_id,
                service_id=service_id,
                is_return=is_return,
                state=CreationState.PENDING,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return self._to_record(row)

    async def finish(self, record_id, response) -> Optional[CreationRecord]:
        async with self.session_factory() as session:
            row = await session.get(ShipmentCreationRecord, record_id)
            if row is None:
                logger.warning(f"Creation record {record_id} not found")
                return None
            row.state = outcome_state(response)
            row.vendor_order_id = response.vendor_order_id
            row.vendor_shipment_id = response.shipment_id
            row.tracking_id = response.tracking_id
            row.error_code = response.error
            row.error_message = None if response.success else response.message
            row.vendor_response = {
                "success": response.success,
                "message": response.message,
                "carrier_name": response.carrier_name,
                "label_url": response.label_url,
            }
            await session.commit()
            await session.refresh(row)
            return self._to_record(row)

    async def get(self, record_id) -> Optional[CreationRecord]:
        async with self.session_factory() as session:
            row = await session.get(ShipmentCreationRecord, record_id)
            return self._to_record(row) if row else None

    async def list_stranded(self) -> List[CreationRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ShipmentCreationRecord)
                .where(ShipmentCreationRecord.state.in_(STRANDED_STATES))
                .order_by(ShipmentCreationRecord.created_at)
            )
            return [self._to_record(row) for row in result.scalars().all()]

    async def list_for_order(self, order_id) -> List[CreationRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ShipmentCreationRecord)
                .where(ShipmentCreationRecord.order_id == order_id)
                .order_by(ShipmentCreationRecord.id)
            )
            return [self._to_record(row) for row in result.scalars().all()]
