"""
Batch Fulfillment Driver

Runs the orchestrator over many orders, one at a time, spaced by a
PacedSequencer (max 1 concurrent, BATCH_FULFILLMENT_PACING_MS between
orders). Never fan out: parallel calls on one Shiprocket session get
burst-rate rejected and can lock the account.

Each order's failure is recorded in the ledger and the loop moves on. The
batch itself never raises for an individual order and is never rolled back.
"""
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import FulfillmentBaseError
from shiprocket_fulfillment.core.pacing import PacedSequencer
from shiprocket_fulfillment.schemas.order import OrderSnapshot
from shiprocket_fulfillment.services.fulfillment import FulfillmentOrchestrator, FulfillmentState
from shiprocket_fulfillment.services.stores import OrderStore

logger = logging.getLogger(__name__)


@dataclass
class BatchEntry:
    order_id: str
    order_label: str
    success: bool
    message: str
    state: FulfillmentState = FulfillmentState.NOT_SHIPPED
    skipped: bool = False
    tracking_number: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class BatchResult:
    """Per-order ledger, updated as each order finishes."""
    total: int = 0
    completed: int = 0
    failed: int = 0
    entries: List[BatchEntry] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.completed - self.failed

    @property
    def is_finished(self) -> bool:
        return self.completed >= self.total

    def record(self, entry: BatchEntry) -> None:
        self.entries.append(entry)
        self.completed += 1
        if not entry.success:
            self.failed += 1


ProgressCallback = Callable[[BatchResult], Any]


class BatchFulfillmentDriver:
    """
    Sequential batch fulfillment.

    Usage:
        driver = BatchFulfillmentDriver(orchestrator, order_store)
        result = await driver.run_batch(order_ids)
    """

    def __init__(
        self,
        orchestrator: FulfillmentOrchestrator,
        order_store: OrderStore,
        pacer: Optional[PacedSequencer] = None,
    ):
        self.orchestrator = orchestrator
        self.order_store = order_store
        self.pacer = pacer or PacedSequencer(settings.BATCH_FULFILLMENT_PACING_MS / 1000)

    async def select_eligible(self, order_ids: Sequence[str]) -> List[OrderSnapshot]:
        """Pending/processing orders without a tracking number, in the given order."""
        eligible = []
        seen = set()
        for order_id in order_ids:
            if order_id in seen:
                continue
            seen.add(order_id)

            try:
                order = await self.order_store.get_order(order_id)
            except Exception as e:
                logger.error(f"Could not load order {order_id} for batch: {e}")
                continue

            if order is None:
                logger.warning(f"Order {order_id} not found, excluded from batch")
            elif not order.is_batch_eligible:
                logger.info(f"Order {order.label} not eligible (status={order.status}), excluded from batch")
            else:
                eligible.append(order)
        return eligible

    async def _process(self, order: OrderSnapshot, courier_override: Optional[int]) -> BatchEntry:
        try:
            result = await self.orchestrator.fulfill_order(order.id, courier_company_id=courier_override)
        except FulfillmentBaseError as e:
            logger.error(f"Batch: order {order.label} failed [{e.code}]: {e.message}")
            return BatchEntry(
                order_id=order.id,
                order_label=order.label,
                success=False,
                message=e.message,
                state=FulfillmentState.FAILED,
                error_code=e.code,
            )
        except Exception as e:
            logger.error(f"Batch: order {order.label} failed unexpectedly: {e}")
            return BatchEntry(
                order_id=order.id,
                order_label=order.label,
                success=False,
                message=str(e) or e.__class__.__name__,
                state=FulfillmentState.FAILED,
                error_code="UNEXPECTED_ERROR",
            )

        return BatchEntry(
            order_id=order.id,
            order_label=order.label,
            success=True,
            message=result.message,
            state=result.state,
            skipped=result.skipped,
            tracking_number=result.tracking_number,
        )

    async def run_batch(
        self,
        order_ids: Sequence[str],
        courier_override: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """
        Fulfill orders sequentially.

        Args:
            order_ids: Candidate order ids; ineligible ones are dropped up front
            courier_override: Courier company id applied to every order
            on_progress: Called with the result after each order (may be async)
        """
        orders = await self.select_eligible(order_ids)
        result = BatchResult(total=len(orders))
        logger.info(f"Batch fulfillment started: {result.total} eligible of {len(order_ids)} requested")

        for order in orders:
            async with self.pacer:
                entry = await self._process(order, courier_override)
            result.record(entry)

            if on_progress is not None:
                try:
                    outcome = on_progress(result)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as e:
                    logger.error(f"Batch progress callback failed after order {entry.order_label}: {e}")

        logger.info(
            f"Batch fulfillment finished: {result.completed} processed, "
            f"{result.succeeded} succeeded, {result.failed} failed"
        )
        return result
