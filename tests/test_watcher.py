"""Tests for the restock watcher."""

import itertools
import threading
import time

import pytest

from stockcart.errors import OutOfStockError
from stockcart.models import WishlistEntry
from stockcart.notifier import AUTO_CART, RESTOCK
from stockcart.watcher import RestockWatcher


def flag(stores, user_id, product_id, variant_id=None, auto_add=False, notify=False):
    """Put a wishlist entry that is waiting for restock."""

    def apply(customer):
        customer.name = user_id.title()
        customer.email = f"{user_id}@example.com"
        customer.wishlist.append(
            WishlistEntry(
                product_id=product_id,
                variant_id=variant_id,
                auto_add_to_cart=auto_add,
                notify_on_restock=notify,
                was_out_of_stock=True,
            )
        )

    stores.customers.update(user_id, apply)


@pytest.fixture
def watcher(stores, ledger, cart_service, notifier):
    return RestockWatcher(stores.customers, ledger, cart_service, notifier=notifier)


class FailingCarts:
    """Cart service stand-in whose add_item always fails."""

    def __init__(self, error):
        self.error = error

    def add_item(self, user_id, product_id, quantity=1, variant_id=None):
        raise self.error


class TestSweep:
    def test_restocked_entry_is_auto_added(self, watcher, stores, cart_service, notifier):
        flag(stores, "u1", "creatine", auto_add=True)
        stores.catalog.adjust_stock("creatine", None, 2)

        report = watcher.sweep()

        assert report.users_processed == 1
        assert report.entries_restocked == 1
        assert stores.customers.get("u1").find_entry("creatine") is None
        assert cart_service.get_cart("u1").find_line("creatine").quantity == 1
        assert [kind for kind, _ in notifier.sent] == [AUTO_CART]
        assert notifier.sent[0][1]["items"][0]["product_id"] == "creatine"

    def test_still_unavailable_entry_stays_flagged(self, watcher, stores, notifier):
        flag(stores, "u1", "creatine", auto_add=True, notify=True)

        report = watcher.sweep()

        assert report.entries_restocked == 0
        assert stores.customers.get("u1").find_entry("creatine").was_out_of_stock is True
        assert notifier.sent == []

    def test_restock_notification_clears_flag(self, watcher, stores, notifier):
        flag(stores, "u1", "gainer", "van", notify=True)
        stores.catalog.adjust_stock("gainer", "van", 4)

        report = watcher.sweep()

        entry = stores.customers.get("u1").find_entry("gainer", "van")
        assert entry.was_out_of_stock is False
        assert report.notifications_sent == 1
        kind, payload = notifier.sent[0]
        assert kind == RESTOCK
        assert payload["user"] == {"id": "u1", "name": "U1", "email": "u1@example.com"}
        assert payload["items"] == [
            {
                "product_id": "gainer",
                "variant_id": "van",
                "name": "Mass Gainer",
                "variant": "Vanilla",
            }
        ]

    def test_sweep_is_idempotent_once_cleared(self, watcher, stores, notifier):
        flag(stores, "u1", "creatine", notify=True)
        stores.catalog.adjust_stock("creatine", None, 1)

        watcher.sweep()
        second = watcher.sweep()

        assert second.users_processed == 0
        assert len(notifier.sent) == 1

    def test_auto_add_failure_is_reported(self, stores, ledger, notifier):
        watcher = RestockWatcher(
            stores.customers, ledger, FailingCarts(OutOfStockError("creatine")), notifier=notifier
        )
        flag(stores, "u1", "creatine", auto_add=True)
        flag(stores, "u1", "bcaa", notify=True)
        stores.catalog.adjust_stock("creatine", None, 1)

        report = watcher.sweep()

        customer = stores.customers.get("u1")
        assert customer.find_entry("creatine").was_out_of_stock is False
        assert customer.find_entry("bcaa").was_out_of_stock is False
        assert report.auto_add_failed[0]["error_type"] == "OutOfStockError"
        assert report.errors == []
        kinds = {kind: payload for kind, payload in notifier.sent}
        assert AUTO_CART not in kinds
        assert kinds[RESTOCK]["items"][0]["product_id"] == "bcaa"

    def test_partial_auto_add_lists_failures(self, stores, ledger, cart_service, notifier):
        class Carts:
            def add_item(self, user_id, product_id, quantity=1, variant_id=None):
                if product_id == "creatine":
                    raise OutOfStockError(product_id)
                return cart_service.add_item(user_id, product_id, quantity, variant_id)

        watcher = RestockWatcher(stores.customers, ledger, Carts(), notifier=notifier)
        flag(stores, "u1", "creatine", auto_add=True)
        flag(stores, "u1", "bcaa", auto_add=True)
        stores.catalog.adjust_stock("creatine", None, 1)

        watcher.sweep()

        kinds = {kind: payload for kind, payload in notifier.sent}
        assert [i["product_id"] for i in kinds[AUTO_CART]["items"]] == ["bcaa"]
        assert kinds[AUTO_CART]["failed"][0]["product_id"] == "creatine"

    def test_one_failing_user_does_not_stop_the_sweep(self, stores, ledger, cart_service, notifier):
        class Carts:
            def add_item(self, user_id, product_id, quantity=1, variant_id=None):
                if user_id == "bad":
                    raise RuntimeError("boom")
                return cart_service.add_item(user_id, product_id, quantity, variant_id)

        watcher = RestockWatcher(stores.customers, ledger, Carts(), notifier=notifier)
        flag(stores, "bad", "creatine", auto_add=True)
        flag(stores, "good", "creatine", auto_add=True)
        stores.catalog.adjust_stock("creatine", None, 5)

        report = watcher.sweep()

        assert report.users_processed == 1
        assert len(report.errors) == 1
        assert report.errors[0].startswith("bad:")
        assert stores.customers.get("good").find_entry("creatine") is None
        assert stores.customers.get("bad").find_entry("creatine").was_out_of_stock is True

    def test_notifier_failure_is_logged(self, stores, ledger, cart_service):
        class BrokenNotifier:
            def notify(self, kind, payload):
                raise ConnectionError("smtp down")

        watcher = RestockWatcher(stores.customers, ledger, cart_service, notifier=BrokenNotifier())
        flag(stores, "u1", "creatine", notify=True)
        stores.catalog.adjust_stock("creatine", None, 1)

        report = watcher.sweep()

        assert report.users_processed == 1
        assert report.notifications_sent == 0
        assert stores.customers.get("u1").find_entry("creatine").was_out_of_stock is False


class TestScheduling:
    def test_overlapping_sweep_is_skipped(self, stores, ledger, cart_service):
        entered = threading.Event()
        release = threading.Event()

        class BlockingNotifier:
            def notify(self, kind, payload):
                entered.set()
                release.wait(5)

        watcher = RestockWatcher(stores.customers, ledger, cart_service, BlockingNotifier())
        flag(stores, "u1", "creatine", notify=True)
        stores.catalog.adjust_stock("creatine", None, 1)

        first = threading.Thread(target=watcher.sweep)
        first.start()
        try:
            assert entered.wait(5)
            skipped = watcher.sweep()
        finally:
            release.set()
            first.join(5)

        assert skipped.skipped is True
        assert skipped.users_processed == 0
        assert watcher.last_report.users_processed == 1

    def test_time_budget_leaves_users_for_next_sweep(self, stores, ledger, cart_service, notifier):
        ticks = itertools.chain([0.0, 0.0], itertools.repeat(10.0))
        watcher = RestockWatcher(
            stores.customers,
            ledger,
            cart_service,
            notifier=notifier,
            time_budget_seconds=5,
            clock=lambda: next(ticks),
        )
        for user_id in ("u1", "u2", "u3"):
            flag(stores, user_id, "creatine", notify=True)
        stores.catalog.adjust_stock("creatine", None, 3)

        report = watcher.sweep()

        assert report.users_processed == 1
        assert report.users_pending == 2
        assert report.budget_exhausted is True
        assert len(stores.customers.list_with_flagged_wishlist()) == 2

    def test_start_and_stop(self, watcher, stores):
        flag(stores, "u1", "creatine", notify=True)
        watcher.interval_seconds = 60

        watcher.start()
        watcher.start()
        try:
            deadline = time.monotonic() + 5
            while watcher.last_report is None and time.monotonic() < deadline:
                time.sleep(0.01)
            status = watcher.status()
        finally:
            watcher.stop(timeout=5)

        assert status["running"] is True
        assert status["last_sweep_at"] is not None
        assert status["next_sweep_at"] is not None
        assert status["last_report"]["users_processed"] == 1
        assert watcher.running is False
        assert watcher.status()["next_sweep_at"] is None

    def test_status_before_first_sweep(self, watcher):
        status = watcher.status()

        assert status["running"] is False
        assert status["last_report"] is None
        assert status["interval_seconds"] == 300
