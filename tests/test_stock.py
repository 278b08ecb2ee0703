"""Tests for live stock reads."""

import asyncio

import pytest

from cartengine.errors import StockUnavailableError, TransientStoreError
from cartengine.models import CartLineItem
from cartengine.stock import StockLedger


def line(product_id, size, quantity, color=None):
    return CartLineItem.create(
        product_id=product_id, size=size, quantity=quantity, unit_price=100, color=color
    )


class TestAvailable:
    def test_reads_stock(self, store):
        ledger = StockLedger(store)
        assert asyncio.run(ledger.available("runner", 9)) == 5

    def test_missing_row_is_zero(self, store):
        ledger = StockLedger(store)
        assert asyncio.run(ledger.available("runner", 13)) == 0

    def test_sees_out_of_band_changes(self, store):
        ledger = StockLedger(store)
        assert asyncio.run(ledger.available("runner", 9)) == 5
        store.set_stock("runner", 9, 2)
        assert asyncio.run(ledger.available("runner", 9)) == 2

    def test_read_failure_is_never_unlimited(self, flaky):
        flaky.fail_on.add("fetch_stock")
        ledger = StockLedger(flaky)
        with pytest.raises(StockUnavailableError) as exc_info:
            asyncio.run(ledger.available("runner", 9))
        assert isinstance(exc_info.value, TransientStoreError)
        assert exc_info.value.context()["product_id"] == "runner"


class TestCheck:
    def test_all_in_stock(self, store):
        ledger = StockLedger(store)
        lines = [line("runner", 9, 5), line("trail", 9, 1)]
        assert asyncio.run(ledger.check(lines)) == []

    def test_reports_every_oversubscribed_line(self, store):
        ledger = StockLedger(store)
        lines = [line("runner", 9, 6), line("trail", 11, 1), line("trail", 9, 1)]
        issues = asyncio.run(ledger.check(lines))
        assert [(i.product_id, i.size) for i in issues] == [("runner", 9), ("trail", 11)]
        assert issues[0].kind == "insufficient"
        assert issues[1].kind == "sold_out"

    def test_colors_share_size_stock(self, store):
        ledger = StockLedger(store)
        lines = [line("runner", 10, 1), line("runner", 10, 1, color="Red")]
        issues = asyncio.run(ledger.check(lines))
        assert len(issues) == 2
        assert all(i.requested == 2 and i.available == 1 for i in issues)
