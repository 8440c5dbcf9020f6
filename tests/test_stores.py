"""
Tests for the SQL-backed order and settings stores.
"""
import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError, PendingRollbackError

from shiprocket_fulfillment.core.config import settings
from shiprocket_fulfillment.core.exceptions import OrderWriteFailedError
from shiprocket_fulfillment.core.pacing import PacedSequencer
from shiprocket_fulfillment.models.order import Order, OrderItem
from shiprocket_fulfillment.models.store_settings import StoreSetting
from shiprocket_fulfillment.schemas.order import ShippingUpdate
from shiprocket_fulfillment.services.batch_fulfillment import BatchFulfillmentDriver
from shiprocket_fulfillment.services.fulfillment import FulfillmentOrchestrator
from shiprocket_fulfillment.services.stores import SqlOrderStore, SqlSettingsStore
from shiprocket_fulfillment.services.token_cache import TokenCache


def result_with(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def commit_error() -> OperationalError:
    return OperationalError("COMMIT", None, RuntimeError("deadlock detected"))


def make_order_row(order_id: str = "order-1", order_number: str = "ORD-1001") -> Order:
    order = Order(
        id=order_id,
        order_number=order_number,
        status="pending",
        email="buyer@example.com",
        payment_method="cod",
        subtotal=Decimal("999.00"),
        total_amount=Decimal("1049.00"),
        shipping_address={"firstName": "Asha", "streetAddress": "12 MG Road", "city": "Mumbai",
                          "state": "Maharashtra", "postalCode": 400050},
    )
    order.items = [
        OrderItem(id=1, order_id=order_id, product_id="p-1", name="Comic A", sku=None,
                  price=Decimal("999.00"), quantity=1, weight=None),
    ]
    return order


class TestSqlOrderStore:

    @pytest.mark.asyncio
    async def test_get_order_maps_row(self, mock_db):
        mock_db.execute.return_value = result_with(make_order_row())

        snapshot = await SqlOrderStore(mock_db).get_order("order-1")

        assert snapshot.id == "order-1"
        assert snapshot.label == "ORD-1001"
        assert snapshot.subtotal == 999.0
        assert snapshot.shipping_address.street == "12 MG Road"
        assert snapshot.shipping_address.postal_code == "400050"
        assert snapshot.items[0].product_id == "p-1"
        assert snapshot.items[0].weight is None
        assert snapshot.tracking_number is None

    @pytest.mark.asyncio
    async def test_get_missing_order(self, mock_db):
        mock_db.execute.return_value = result_with(None)

        assert await SqlOrderStore(mock_db).get_order("nope") is None

    @pytest.mark.asyncio
    async def test_update_order_shipping(self, mock_db):
        row = make_order_row()
        mock_db.execute.return_value = result_with(row)

        await SqlOrderStore(mock_db).update_order_shipping("order-1", ShippingUpdate(
            status="shipped",
            tracking_number="AWB123",
            provider_order_id="5001",
            provider_shipment_id="7001",
            awb_code="AWB123",
            courier_name="Xpressbees",
        ))

        assert row.status == "shipped"
        assert row.tracking_number == "AWB123"
        assert row.shiprocket_order_id == 5001
        assert row.shiprocket_shipment_id == 7001
        assert row.shipping_method == "Xpressbees"
        assert row.shipped_at is not None
        assert json.loads(row.notes) == {
            "automated": True,
            "shiprocket_order_id": "5001",
            "shiprocket_shipment_id": "7001",
            "courier": "Xpressbees",
            "awb": "AWB123",
        }
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pending_update_has_no_shipped_at(self, mock_db):
        row = make_order_row()
        mock_db.execute.return_value = result_with(row)

        await SqlOrderStore(mock_db).update_order_shipping("order-1", ShippingUpdate(
            status="processing", tracking_number="SR-7001", provider_order_id="5001", provider_shipment_id="7001",
        ))

        assert row.status == "processing"
        assert row.shipped_at is None

    @pytest.mark.asyncio
    async def test_update_missing_order_raises(self, mock_db):
        mock_db.execute.return_value = result_with(None)

        with pytest.raises(LookupError):
            await SqlOrderStore(mock_db).update_order_shipping(
                "nope", ShippingUpdate(status="shipped", tracking_number="AWB")
            )
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back_and_raises(self, mock_db):
        mock_db.execute.return_value = result_with(make_order_row())
        mock_db.commit.side_effect = commit_error()

        with pytest.raises(OperationalError):
            await SqlOrderStore(mock_db).update_order_shipping(
                "order-1", ShippingUpdate(status="shipped", tracking_number="AWB123")
            )
        mock_db.rollback.assert_awaited_once()


class TestSqlSettingsStore:

    @pytest.mark.asyncio
    async def test_get_returns_value(self, mock_db):
        mock_db.execute.return_value = result_with(StoreSetting(key="shiprocket_auth", value={"token": "abc"}))

        assert await SqlSettingsStore(mock_db).get("shiprocket_auth") == {"token": "abc"}

    @pytest.mark.asyncio
    async def test_get_missing(self, mock_db):
        mock_db.execute.return_value = result_with(None)

        assert await SqlSettingsStore(mock_db).get("shiprocket_auth") is None

    @pytest.mark.asyncio
    async def test_upsert_updates_existing(self, mock_db):
        setting = StoreSetting(key="shiprocket_auth", value={"token": "old"})
        mock_db.execute.return_value = result_with(setting)

        await SqlSettingsStore(mock_db).upsert("shiprocket_auth", {"token": "new"})

        assert setting.value == {"token": "new"}
        mock_db.add.assert_not_called()
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_upsert_inserts_new(self, mock_db):
        mock_db.execute.return_value = result_with(None)

        await SqlSettingsStore(mock_db).upsert("shiprocket_auth", {"token": "new"})

        added = mock_db.add.call_args.args[0]
        assert isinstance(added, StoreSetting)
        assert added.key == "shiprocket_auth"
        assert added.value == {"token": "new"}

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back_and_raises(self, mock_db):
        mock_db.execute.return_value = result_with(None)
        mock_db.commit.side_effect = commit_error()

        with pytest.raises(OperationalError):
            await SqlSettingsStore(mock_db).upsert("shiprocket_auth", {"token": "new"})
        mock_db.rollback.assert_awaited_once()


class SharedSession:
    """
    Stand-in for one AsyncSession shared by both stores.

    Like the real session, it refuses every statement after a failed commit
    until rollback() is called.
    """

    def __init__(self, rows=(), fail_commit_for=()):
        self.rows = {row.id: row for row in rows}
        self.settings = {}
        self.fail_commit_for = set(fail_commit_for)
        self.needs_rollback = False
        self.last_key = None
        self.pending = []
        self.commits = 0
        self.rollbacks = 0

    async def execute(self, statement):
        if self.needs_rollback:
            raise PendingRollbackError("This Session's transaction has been rolled back due to a previous exception during flush.")
        self.last_key = statement.whereclause.right.value
        if statement.column_descriptions[0]["entity"] is Order:
            return result_with(self.rows.get(self.last_key))
        return result_with(self.settings.get(self.last_key))

    def add(self, instance):
        self.pending.append(instance)

    async def commit(self):
        if self.needs_rollback:
            raise PendingRollbackError("Can't reconnect until invalid transaction is rolled back.")
        if self.last_key in self.fail_commit_for:
            self.fail_commit_for.discard(self.last_key)
            self.needs_rollback = True
            raise commit_error()
        for instance in self.pending:
            self.settings[instance.key] = instance
        self.pending = []
        self.commits += 1

    async def rollback(self):
        self.needs_rollback = False
        self.pending = []
        self.rollbacks += 1


class TestSharedSessionRecovery:

    @pytest.mark.asyncio
    async def test_failed_write_back_does_not_poison_later_orders(self, mock_shiprocket_client, token_cache):
        rows = [make_order_row(f"order-{n}", f"ORD-100{n}") for n in range(1, 4)]
        session = SharedSession(rows, fail_commit_for={"order-1"})
        store = SqlOrderStore(session)
        orchestrator = FulfillmentOrchestrator(mock_shiprocket_client, token_cache, store)
        driver = BatchFulfillmentDriver(orchestrator, store, pacer=PacedSequencer(0))

        result = await driver.run_batch(["order-1", "order-2", "order-3"])

        assert result.failed == 0
        assert [entry.success for entry in result.entries] == [True, True, True]
        assert session.rollbacks == 1
        assert session.rows["order-2"].tracking_number == "AWB123456"
        assert session.rows["order-3"].tracking_number == "AWB123456"
        assert mock_shiprocket_client.create_shipment.await_count == 3

    @pytest.mark.asyncio
    async def test_write_back_failure_is_reported_for_that_order(self, mock_shiprocket_client, token_cache):
        session = SharedSession([make_order_row()], fail_commit_for={"order-1"})
        orchestrator = FulfillmentOrchestrator(mock_shiprocket_client, token_cache, SqlOrderStore(session))

        result = await orchestrator.fulfill_order("order-1")

        assert result.awb_code == "AWB123456"
        assert isinstance(result.warnings[0], OrderWriteFailedError)
        assert not session.needs_rollback

    @pytest.mark.asyncio
    async def test_failed_token_write_does_not_block_order_write(self, mock_shiprocket_client, clock):
        key = settings.SHIPROCKET_TOKEN_SETTINGS_KEY
        session = SharedSession([make_order_row()], fail_commit_for={key})
        cache = TokenCache(mock_shiprocket_client, SqlSettingsStore(session), clock=clock)
        orchestrator = FulfillmentOrchestrator(mock_shiprocket_client, cache, SqlOrderStore(session))

        result = await orchestrator.fulfill_order("order-1")

        assert result.warnings == []
        assert session.rollbacks == 1
        assert key not in session.settings
        assert session.rows["order-1"].status == "shipped"
        assert session.rows["order-1"].tracking_number == "AWB123456"
        mock_shiprocket_client.authenticate.assert_awaited_once()
