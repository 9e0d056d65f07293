"""Tests for stock reservation, restore and availability reads."""

import asyncio

import pytest

from storefront.errors import InsufficientStockError, ProductUnavailableError, UnitNotFoundError
from storefront.schemas.domain import StockItem, StockUnitRef

TEE = StockUnitRef(product_id="tee")
JACKET_M = StockUnitRef(product_id="jacket", variant_id="jacket-m")
JACKET_L = StockUnitRef(product_id="jacket", variant_id="jacket-l")


def item(ref: StockUnitRef, quantity: int) -> StockItem:
    return StockItem(product_id=ref.product_id, variant_id=ref.variant_id, quantity=quantity)


class TestReserve:
    def test_reserve_decrements_and_prices_each_unit(self, ledger, store):
        reserved = asyncio.run(ledger.reserve([item(TEE, 2), item(JACKET_M, 1)]))

        assert [r.key for r in reserved] == ["tee", "jacket:jacket-m"]
        assert reserved[0].price == 500
        assert reserved[1].price == 1800
        assert reserved[1].product_name == "Denim Jacket (M - Blue)"
        assert store.available(TEE) == 8
        assert store.available(JACKET_M) == 2

    def test_variant_price_overrides_product_price(self, ledger):
        reserved = asyncio.run(ledger.reserve([item(JACKET_L, 1)]))
        assert reserved[0].price == 1900

    def test_insufficient_stock_leaves_no_partial_decrement(self, ledger, store):
        with pytest.raises(InsufficientStockError) as exc:
            asyncio.run(ledger.reserve([item(JACKET_M, 1), item(TEE, 11)]))

        assert exc.value.unit_ref == "tee"
        assert exc.value.requested == 11
        assert store.available(JACKET_M) == 3
        assert store.available(TEE) == 10

    def test_unknown_unit_rolls_back_earlier_units(self, ledger, store):
        with pytest.raises(UnitNotFoundError):
            asyncio.run(ledger.reserve([item(TEE, 2), item(StockUnitRef(product_id="unknown"), 1)]))
        assert store.available(TEE) == 10

    def test_variant_of_another_product_is_not_found(self, ledger):
        with pytest.raises(UnitNotFoundError):
            asyncio.run(ledger.reserve([item(StockUnitRef(product_id="tee", variant_id="jacket-m"), 1)]))

    def test_inactive_product_is_unavailable(self, ledger, store):
        with pytest.raises(ProductUnavailableError):
            asyncio.run(ledger.reserve([item(StockUnitRef(product_id="retired"), 1)]))
        assert store.products["retired"].stock_quantity == 50

    def test_reserve_inside_caller_transaction_rolls_back_with_it(self, ledger, store):
        async def scenario():
            async with store.transaction() as uow:
                await ledger.reserve([item(TEE, 3)], uow)
                assert store.available(TEE) == 7
                raise RuntimeError("order insert failed")

        with pytest.raises(RuntimeError):
            asyncio.run(scenario())
        assert store.available(TEE) == 10

    def test_failed_reserve_keeps_caller_transaction_usable(self, ledger, store):
        async def scenario():
            async with store.transaction() as uow:
                await ledger.reserve([item(TEE, 1)], uow)
                with pytest.raises(InsufficientStockError):
                    await ledger.reserve([item(JACKET_L, 2)], uow)

        asyncio.run(scenario())
        assert store.available(TEE) == 9
        assert store.available(JACKET_L) == 1


class TestConcurrentReserve:
    def test_no_oversell_under_contention(self, ledger, store):
        async def scenario():
            return await asyncio.gather(
                *[ledger.reserve([item(JACKET_M, 2)]) for _ in range(5)],
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, InsufficientStockError)]
        assert len(winners) == 1
        assert len(losers) == 4
        assert store.available(JACKET_M) == 1

    def test_overlapping_multi_unit_reservations(self, ledger, store):
        async def scenario():
            return await asyncio.gather(
                ledger.reserve([item(TEE, 6), item(JACKET_M, 1)]),
                ledger.reserve([item(JACKET_M, 1), item(TEE, 6)]),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        assert sum(1 for r in results if isinstance(r, InsufficientStockError)) == 1
        assert store.available(TEE) == 4
        assert store.available(JACKET_M) == 2


class TestRestore:
    def test_restore_increments(self, ledger, store):
        asyncio.run(ledger.restore([item(TEE, 4), item(JACKET_L, 1)]))
        assert store.available(TEE) == 14
        assert store.available(JACKET_L) == 2

    def test_restore_skips_deleted_unit(self, ledger, store):
        del store.variants["jacket-l"]
        asyncio.run(ledger.restore([item(JACKET_L, 1), item(TEE, 1)]))
        assert store.available(TEE) == 11


class TestAvailability:
    def test_all_available(self, ledger):
        result = asyncio.run(ledger.check_availability([item(TEE, 10), item(JACKET_M, 3)]))
        assert result.valid is True

    def test_reports_first_short_item(self, ledger, store):
        result = asyncio.run(ledger.check_availability([item(TEE, 1), item(JACKET_L, 2)]))

        assert result.valid is False
        assert result.message == "Insufficient stock for Denim Jacket (L). Available: 1, Requested: 2"
        assert result.available_quantity == 1
        assert result.requested_quantity == 2
        assert store.available(TEE) == 10

    def test_missing_product(self, ledger):
        result = asyncio.run(ledger.check_availability([item(StockUnitRef(product_id="ghost"), 1)]))
        assert result.valid is False
        assert result.message == "Product not found: ghost"

    def test_low_stock_report(self, ledger):
        report = asyncio.run(ledger.low_stock())

        assert [p["id"] for p in report["products"]] == ["jacket"]
        assert {v["id"] for v in report["variants"]} == {"jacket-m", "jacket-l"}

    def test_stock_info(self, ledger):
        info = asyncio.run(ledger.stock_info(["jacket", "retired"], ["jacket-l"]))

        assert len(info["products"]) == 1
        assert {v["id"] for v in info["products"][0]["variants"]} == {"jacket-m", "jacket-l"}
        assert info["variants"] == [
            {"id": "jacket-l", "size": "L", "color": None, "stock": 1, "product_name": "Denim Jacket"}
        ]
