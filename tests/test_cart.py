"""Tests for the inventory-aware cart."""

import asyncio
from decimal import Decimal

import pytest

from cartengine.cart import CartRegistry
from cartengine.errors import (
    CouponRejectedError,
    LineItemNotFoundError,
    MissingIdentityError,
    MutationAbandonedError,
    StockExceededError,
    StockUnavailableError,
    TransientStoreError,
)
from cartengine.models import CartLineItem, RejectionReason, ShippingMethod


def item(product_id="runner", size=9, quantity=1, price="100", color=None):
    return CartLineItem.create(
        product_id=product_id, size=size, quantity=quantity, unit_price=price, color=color
    )


async def wait_for_call(backend, name):
    while name not in backend.calls:
        await asyncio.sleep(0.01)


def loaded(make_cart, backend, user_id="shopper-1"):
    cart = make_cart(backend, user_id)
    asyncio.run(cart.load())
    return cart


class TestIdentity:
    def test_requires_user(self, store, make_cart):
        with pytest.raises(MissingIdentityError):
            make_cart(store, user_id=None)


class TestAddItem:
    def test_add_persists_line(self, store, make_cart):
        cart = loaded(make_cart, store)
        result = asyncio.run(cart.add_item(item(quantity=2)))

        assert result.line.stock_snapshot == 5
        assert cart.item_count == 2

        reloaded = loaded(make_cart, store)
        assert len(reloaded.lines) == 1
        assert reloaded.lines[0].quantity == 2
        assert reloaded.lines[0].name == "Road Runner"

    def test_same_key_merges(self, store, make_cart):
        cart = loaded(make_cart, store)
        first = asyncio.run(cart.add_item(item(quantity=2)))
        second = asyncio.run(cart.add_item(item(quantity=2)))

        assert len(cart.lines) == 1
        assert second.line.id == first.line.id
        assert second.line.quantity == 4
        assert loaded(make_cart, store).lines[0].quantity == 4

    def test_different_color_is_separate_line(self, store, make_cart):
        cart = loaded(make_cart, store)
        asyncio.run(cart.add_item(item()))
        asyncio.run(cart.add_item(item(color="Red")))
        assert len(cart.lines) == 2

    def test_exceeding_stock_rejected(self, store, make_cart):
        cart = loaded(make_cart, store)
        with pytest.raises(StockExceededError) as exc_info:
            asyncio.run(cart.add_item(item(quantity=6)))
        assert exc_info.value.available == 5
        assert cart.lines == ()
        assert loaded(make_cart, store).lines == ()

    def test_merge_counts_existing_quantity(self, store, make_cart):
        cart = loaded(make_cart, store)
        asyncio.run(cart.add_item(item(quantity=3)))
        with pytest.raises(StockExceededError) as exc_info:
            asyncio.run(cart.add_item(item(quantity=3)))
        assert exc_info.value.requested == 6
        assert cart.lines[0].quantity == 3

    def test_sold_out_size(self, store, make_cart):
        cart = loaded(make_cart, store)
        with pytest.raises(StockExceededError) as exc_info:
            asyncio.run(cart.add_item(item(product_id="trail", size=11)))
        assert exc_info.value.available == 0

    def test_zero_quantity_rejected(self, store, make_cart):
        cart = loaded(make_cart, store)
        with pytest.raises(ValueError):
            asyncio.run(cart.add_item(item(quantity=0)))


class TestUpdateQuantity:
    def test_update_above_stock_keeps_quantity(self, store, make_cart):
        cart = loaded(make_cart, store)
        line = asyncio.run(cart.add_item(item(quantity=3))).line

        with pytest.raises(StockExceededError) as exc_info:
            asyncio.run(cart.update_quantity(line.id, 6))
        assert exc_info.value.available == 5
        assert cart.get_line(line.id).quantity == 3
        assert loaded(make_cart, store).lines[0].quantity == 3

    def test_update_within_stock(self, store, make_cart):
        cart = loaded(make_cart, store)
        line = asyncio.run(cart.add_item(item(quantity=1))).line
        asyncio.run(cart.update_quantity(line.id, 5))
        assert loaded(make_cart, store).lines[0].quantity == 5

    def test_below_one_clamps_to_one(self, store, make_cart):
        cart = loaded(make_cart, store)
        line = asyncio.run(cart.add_item(item(quantity=3))).line
        result = asyncio.run(cart.update_quantity(line.id, 0))
        assert result.line.quantity == 1

    def test_unknown_line(self, store, make_cart):
        cart = loaded(make_cart, store)
        with pytest.raises(LineItemNotFoundError):
            asyncio.run(cart.update_quantity("nope", 2))


class TestRemoveAndClear:
    def test_remove_item(self, store, make_cart):
        cart = loaded(make_cart, store)
        line = asyncio.run(cart.add_item(item())).line
        asyncio.run(cart.remove_item(line.id))
        assert cart.lines == ()
        assert loaded(make_cart, store).lines == ()

    def test_remove_unknown_line(self, store, make_cart):
        cart = loaded(make_cart, store)
        with pytest.raises(LineItemNotFoundError):
            asyncio.run(cart.remove_item("nope"))

    def test_clear_removes_lines_and_coupon(self, store, make_cart):
        cart = loaded(make_cart, store)
        asyncio.run(cart.add_item(item(quantity=3)))
        asyncio.run(cart.add_item(item(product_id="trail", quantity=1, price="1000")))
        asyncio.run(cart.apply_coupon("SAVE10"))

        asyncio.run(cart.clear())
        assert cart.lines == ()
        assert cart.applied_coupon is None
        assert loaded(make_cart, store).lines == ()

    def test_clear_leaves_other_shoppers_alone(self, store, make_cart):
        mine = loaded(make_cart, store)
        theirs = loaded(make_cart, store, user_id="shopper-2")
        asyncio.run(mine.add_item(item()))
        asyncio.run(theirs.add_item(item()))

        asyncio.run(mine.clear())
        assert len(loaded(make_cart, store, user_id="shopper-2").lines) == 1


class TestRollback:
    def test_failed_insert_restores_cart(self, flaky, make_cart):
        cart = loaded(make_cart, flaky)
        flaky.fail_on.add("insert_cart_item")
        with pytest.raises(TransientStoreError):
            asyncio.run(cart.add_item(item(quantity=2)))
        assert cart.lines == ()

    def test_failed_update_restores_previous_quantity(self, flaky, make_cart):
        cart = loaded(make_cart, flaky)
        line = asyncio.run(cart.add_item(item(quantity=2))).line
        flaky.fail_on.add("update_cart_item_quantity")

        with pytest.raises(TransientStoreError):
            asyncio.run(cart.update_quantity(line.id, 4))
        assert cart.get_line(line.id).quantity == 2

    def test_failed_remove_restores_line_in_place(self, flaky, make_cart):
        cart = loaded(make_cart, flaky)
        first = asyncio.run(cart.add_item(item(size=9))).line
        asyncio.run(cart.add_item(item(size=10)))
        flaky.fail_on.add("delete_cart_item")

        with pytest.raises(TransientStoreError):
            asyncio.run(cart.remove_item(first.id))
        assert [line.size for line in cart.lines] == [9, 10]

    def test_failed_clear_restores_everything(self, flaky, make_cart):
        cart = loaded(make_cart, flaky)
        asyncio.run(cart.add_item(item(size=9)))
        asyncio.run(cart.add_item(item(size=10)))
        flaky.fail_on.add("delete_cart_items")

        with pytest.raises(TransientStoreError):
            asyncio.run(cart.clear())
        assert len(cart.lines) == 2

    def test_stock_read_failure_blocks_mutation(self, flaky, make_cart):
        cart = loaded(make_cart, flaky)
        flaky.fail_on.add("fetch_stock")
        with pytest.raises(StockUnavailableError):
            asyncio.run(cart.add_item(item()))
        assert "insert_cart_item" not in flaky.calls

    def test_rollback_does_not_undo_other_keys(self, flaky, make_cart):
        cart = loaded(make_cart, flaky)
        kept = asyncio.run(cart.add_item(item(size=9, quantity=1))).line

        async def scenario():
            gate = asyncio.Event()
            flaky.hold["update_cart_item_quantity"] = gate
            update = asyncio.create_task(cart.update_quantity(kept.id, 2))
            await wait_for_call(flaky, "update_cart_item_quantity")

            flaky.fail_on.add("insert_cart_item")
            with pytest.raises(TransientStoreError):
                await cart.add_item(item(size=10))

            gate.set()
            await update

        asyncio.run(scenario())
        assert [(line.size, line.quantity) for line in cart.lines] == [(9, 2)]


class TestConcurrency:
    def test_same_key_adds_are_serialized(self, store, make_cart):
        cart = loaded(make_cart, store)

        async def scenario():
            return await asyncio.gather(
                cart.add_item(item(quantity=3)),
                cart.add_item(item(quantity=3)),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], StockExceededError)
        assert len(cart.lines) == 1
        assert cart.lines[0].quantity == 3

    def test_cancelled_write_is_rolled_back(self, flaky, make_cart):
        cart = loaded(make_cart, flaky)

        async def scenario():
            flaky.hold["insert_cart_item"] = asyncio.Event()
            task = asyncio.create_task(cart.add_item(item()))
            await wait_for_call(flaky, "insert_cart_item")
            assert len(cart.lines) == 1
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert cart.lines == ()

    def test_closed_cart_rejects_mutations(self, store, make_cart):
        cart = loaded(make_cart, store)
        cart.close()
        assert cart.closed
        with pytest.raises(MutationAbandonedError):
            asyncio.run(cart.add_item(item()))
        assert loaded(make_cart, store).lines == ()

    def test_close_during_write(self, flaky, make_cart):
        cart = loaded(make_cart, flaky)
        line = asyncio.run(cart.add_item(item(quantity=1))).line

        async def scenario():
            gate = asyncio.Event()
            flaky.hold["update_cart_item_quantity"] = gate
            update = asyncio.create_task(cart.update_quantity(line.id, 3))
            await wait_for_call(flaky, "update_cart_item_quantity")
            cart.close()
            gate.set()
            with pytest.raises(MutationAbandonedError):
                await update

        asyncio.run(scenario())
        assert cart.lines[0].quantity == 1
        # The write had already been sent; the next session sees it
        assert loaded(make_cart, flaky).lines[0].quantity == 3

    def test_clear_includes_line_added_while_waiting(self, flaky, make_cart):
        cart = loaded(make_cart, flaky)
        first = asyncio.run(cart.add_item(item(size=9))).line
        flaky.calls.clear()

        async def scenario():
            gate = asyncio.Event()
            flaky.hold["update_cart_item_quantity"] = gate
            update = asyncio.create_task(cart.update_quantity(first.id, 2))
            await wait_for_call(flaky, "update_cart_item_quantity")

            clear = asyncio.create_task(cart.clear())
            await asyncio.sleep(0.02)
            add = asyncio.create_task(cart.add_item(item(product_id="trail", size=9)))
            await asyncio.sleep(0.02)
            # The new line waits for the clear instead of racing it
            assert "insert_cart_item" not in flaky.calls

            gate.set()
            await asyncio.gather(update, clear, add)

        asyncio.run(scenario())
        remote = asyncio.run(flaky.fetch_cart_with_stock("shopper-1"))
        assert sorted(row["id"] for row in remote) == sorted(line.id for line in cart.lines)
        assert [line.product_id for line in cart.lines] == ["trail"]

    def test_load_waits_for_in_flight_insert(self, flaky, make_cart):
        cart = loaded(make_cart, flaky)

        async def scenario():
            gate = asyncio.Event()
            flaky.hold["insert_cart_item"] = gate
            add = asyncio.create_task(cart.add_item(item(quantity=2)))
            await wait_for_call(flaky, "insert_cart_item")
            reload = asyncio.create_task(cart.load())
            await asyncio.sleep(0.02)
            assert not reload.done()
            gate.set()
            await asyncio.gather(add, reload)

        asyncio.run(scenario())
        assert [line.quantity for line in cart.lines] == [2]


class TestCartRegistry:
    def test_one_cart_per_shopper(self, store):
        registry = CartRegistry(store)
        assert registry.get("shopper-1") is registry.get("shopper-1")
        assert registry.get("shopper-2") is not registry.get("shopper-1")
        assert len(registry) == 2

    def test_closed_cart_is_replaced(self, store):
        registry = CartRegistry(store)
        cart = registry.get("shopper-1")
        cart.close()
        assert registry.get("shopper-1") is not cart

    def test_requires_identity(self, store):
        with pytest.raises(MissingIdentityError):
            CartRegistry(store).get(None)

    def test_shared_cart_merges_concurrent_adds(self, store):
        registry = CartRegistry(store)

        async def request():
            cart = registry.get("shopper-1")
            await cart.load()
            await cart.add_item(item(quantity=1))

        async def scenario():
            await request()
            await asyncio.gather(request(), request())

        asyncio.run(scenario())
        rows = asyncio.run(store.fetch_cart_with_stock("shopper-1"))
        assert [row["quantity"] for row in rows] == [3]


class TestViews:
    def test_hydration_reports_oversubscribed_lines(self, store, make_cart):
        cart = loaded(make_cart, store)
        asyncio.run(cart.add_item(item(quantity=3)))
        store.set_stock("runner", 9, 1)

        reloaded = loaded(make_cart, store)
        issues = reloaded.stock_issues()
        assert len(issues) == 1
        assert issues[0].available == 1
        assert issues[0].kind == "insufficient"
        # Never silently adjusted
        assert reloaded.lines[0].quantity == 3

    def test_totals_with_coupon(self, store, make_cart):
        cart = loaded(make_cart, store)
        asyncio.run(cart.add_item(item(product_id="trail", quantity=2, price="1000")))
        applied = asyncio.run(cart.apply_coupon("save10"))

        assert applied.discount_amount == Decimal("200")
        totals = cart.totals()
        assert totals.subtotal == Decimal("2000")
        assert totals.shipping == Decimal("0")
        assert totals.total == Decimal("1800")

    def test_express_shipping(self, store, make_cart):
        cart = loaded(make_cart, store)
        asyncio.run(cart.add_item(item(product_id="trail", quantity=1, price="1000")))
        assert cart.totals(ShippingMethod.EXPRESS).shipping == Decimal("15")

    def test_coupon_rebinds_to_new_subtotal(self, store, make_cart):
        cart = loaded(make_cart, store)
        line = asyncio.run(cart.add_item(item(product_id="trail", quantity=2, price="1000"))).line
        asyncio.run(cart.apply_coupon("SAVE10"))
        asyncio.run(cart.update_quantity(line.id, 1))
        assert cart.applied_coupon.discount_amount == Decimal("100")
        assert cart.totals().discount == Decimal("100")

    def test_rejected_coupon_keeps_previous(self, store, make_cart):
        cart = loaded(make_cart, store)
        asyncio.run(cart.add_item(item(quantity=1)))
        asyncio.run(cart.apply_coupon("SAVE10"))
        with pytest.raises(CouponRejectedError) as exc_info:
            asyncio.run(cart.apply_coupon("MIN250"))
        assert exc_info.value.reason is RejectionReason.BELOW_MINIMUM_SPEND
        assert cart.applied_coupon.code == "SAVE10"

    def test_remove_coupon(self, store, make_cart):
        cart = loaded(make_cart, store)
        asyncio.run(cart.add_item(item(quantity=1)))
        asyncio.run(cart.apply_coupon("SAVE10"))
        cart.remove_coupon()
        assert cart.totals().discount == Decimal("0")
