"""Tests for the in-memory store's transaction semantics."""

import asyncio

import pytest

from storefront.schemas.domain import OrderStatus, StatusHistoryEntry

from .conftest import make_snapshot


@pytest.fixture
def order(committer, customer):
    snapshot = make_snapshot([("tee", None, 1, 500)], payment_method="COD")
    return asyncio.run(committer.commit_cash_on_delivery(customer, snapshot))


class TestRollback:
    def test_rollback_keeps_interleaved_commit(self, store, order):
        async def scenario():
            with pytest.raises(RuntimeError):
                async with store.transaction() as failing:
                    await failing.update_order(order.id, tracking_number="TRKROLLEDBACK")
                    await failing.append_status_history(
                        order.id, StatusHistoryEntry(status=order.status, note="rolled back")
                    )

                    async with store.transaction() as other:
                        await other.update_order(
                            order.id, expected_statuses=[OrderStatus.CONFIRMED], status=OrderStatus.CANCELLED
                        )
                        await other.append_status_history(
                            order.id, StatusHistoryEntry(status=OrderStatus.CANCELLED, note="Cancelled")
                        )

                    raise RuntimeError("handler failed")

        asyncio.run(scenario())

        final = store.orders[order.id]
        notes = [h.note for h in final.status_history]
        assert final.status == OrderStatus.CANCELLED
        assert final.tracking_number == order.tracking_number
        assert "rolled back" not in notes
        assert notes[-1] == "Cancelled"

    def test_rollback_reverts_own_fields(self, store, order):
        async def scenario():
            with pytest.raises(RuntimeError):
                async with store.transaction() as uow:
                    await uow.update_order(order.id, status=OrderStatus.PROCESSING)
                    raise RuntimeError("boom")

        asyncio.run(scenario())
        assert store.orders[order.id].status == OrderStatus.CONFIRMED

    def test_coupon_lock_released_on_exit(self, store):
        async def scenario():
            async with store.transaction() as uow:
                await uow.lock_coupon("cpn-flat")
                assert store.coupon_holders["cpn-flat"] is uow
            with pytest.raises(RuntimeError):
                async with store.transaction() as uow:
                    await uow.lock_coupon("cpn-flat")
                    raise RuntimeError("boom")

        asyncio.run(scenario())
        assert store.coupon_holders == {}
