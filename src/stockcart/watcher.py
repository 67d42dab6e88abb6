"""Restock watcher: periodic sweep over wishlist entries waiting for stock."""

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .cart import CartService
from .errors import StockcartError
from .ledger import StockLedger
from .models import Customer, SweepReport, WishlistEntry, _format_time, _utc_now
from .notifier import AUTO_CART, RESTOCK, LogNotifier, Notifier
from .observability import get_logger
from .store import CustomerRepository

logger = get_logger("watcher")


class RestockWatcher:
    """Detects wishlist entries whose product came back in stock and acts on them.

    A sweep never overlaps with another sweep: a sweep requested while one is
    still running is skipped, not queued. When a sweep runs past its time
    budget it finishes the current user and leaves the rest for the next one.
    """

    def __init__(
        self,
        customers: CustomerRepository,
        ledger: StockLedger,
        carts: CartService,
        notifier: Notifier | None = None,
        interval_seconds: float = 300.0,
        time_budget_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.customers = customers
        self.ledger = ledger
        self.carts = carts
        self.notifier = notifier or LogNotifier()
        self.interval_seconds = interval_seconds
        self.time_budget_seconds = time_budget_seconds
        self.clock = clock

        self._sweep_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._state_lock = threading.Lock()
        self.last_report: SweepReport | None = None
        self.last_sweep_at: datetime | None = None

    # --- Sweep ---

    def sweep(self) -> SweepReport:
        """Run one sweep now, or skip it if another sweep is in progress."""
        if not self._sweep_lock.acquire(blocking=False):
            logger.info("sweep_skipped", reason="previous sweep still running")
            now = _utc_now()
            return SweepReport(started_at=now, finished_at=now, skipped=True)

        report = SweepReport(started_at=_utc_now())
        try:
            self._run_sweep(report)
        except Exception as e:
            logger.exception("sweep_failed")
            report.errors.append(f"sweep: {e}")
        finally:
            report.finished_at = _utc_now()
            with self._state_lock:
                self.last_report = report
                self.last_sweep_at = datetime.now(timezone.utc)
            self._sweep_lock.release()

        logger.info(
            "sweep_finished",
            users_processed=report.users_processed,
            users_pending=report.users_pending,
            entries_restocked=report.entries_restocked,
            auto_added=len(report.auto_added),
            auto_add_failed=len(report.auto_add_failed),
            notifications_sent=report.notifications_sent,
            errors=len(report.errors),
        )
        return report

    def _run_sweep(self, report: SweepReport) -> None:
        deadline = self.clock() + self.time_budget_seconds
        customers = self.customers.list_with_flagged_wishlist()
        logger.info("sweep_started", users=len(customers))

        for index, customer in enumerate(customers):
            if self.clock() >= deadline:
                report.users_pending = len(customers) - index
                logger.warning(
                    "sweep_budget_exhausted",
                    budget_seconds=self.time_budget_seconds,
                    users_pending=report.users_pending,
                )
                break
            try:
                self._process_user(customer, report)
            except Exception as e:
                logger.exception("sweep_user_failed", user_id=customer.id)
                report.errors.append(f"{customer.id}: {e}")
                continue
            report.users_processed += 1

    def _process_user(self, customer: Customer, report: SweepReport) -> None:
        restocked: list[tuple[WishlistEntry, dict[str, Any]]] = []
        for entry in customer.wishlist:
            if not entry.was_out_of_stock:
                continue
            product = self.ledger.find_product(entry.product_id)
            if product is None:
                continue
            if self.ledger.available_stock(product, entry.variant_id) == 0:
                continue
            variant = product.get_variant(entry.variant_id) if entry.variant_id else None
            item = {
                "product_id": product.id,
                "variant_id": entry.variant_id,
                "name": product.name,
                "variant": variant.name if variant else None,
            }
            restocked.append((entry, item))

        if not restocked:
            return

        cleared: set[tuple[str, str | None]] = set()
        removed: set[tuple[str, str | None]] = set()
        added: list[dict[str, Any]] = []
        failed: list[dict[str, Any]] = []
        to_notify: list[dict[str, Any]] = []

        for entry, item in restocked:
            report.entries_restocked += 1
            cleared.add(entry.key)
            if entry.auto_add_to_cart:
                try:
                    self.carts.add_item(customer.id, entry.product_id, 1, entry.variant_id)
                except StockcartError as e:
                    logger.warning(
                        "auto_add_failed",
                        user_id=customer.id,
                        product_id=entry.product_id,
                        variant_id=entry.variant_id,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    failed.append({**item, "reason": str(e), "error_type": type(e).__name__})
                else:
                    removed.add(entry.key)
                    added.append(item)
            if entry.notify_on_restock:
                to_notify.append(item)

        def apply(fresh: Customer) -> None:
            for e in fresh.wishlist:
                if e.key in cleared:
                    e.was_out_of_stock = False
            fresh.wishlist = [e for e in fresh.wishlist if e.key not in removed]

        # One write per user, after all of the user's entries
        self.customers.update(customer.id, apply)

        report.auto_added.extend({"user_id": customer.id, **item} for item in added)
        report.auto_add_failed.extend({"user_id": customer.id, **item} for item in failed)

        user = {"id": customer.id, "name": customer.name, "email": customer.email}
        if to_notify:
            self._send(report, RESTOCK, {"user": user, "items": to_notify})
        if added:
            self._send(report, AUTO_CART, {"user": user, "items": added, "failed": failed})

    def _send(self, report: SweepReport, kind: str, payload: dict[str, Any]) -> None:
        try:
            self.notifier.notify(kind, payload)
        except Exception:
            logger.exception("notification_failed", kind=kind, user_id=payload["user"]["id"])
            return
        report.notifications_sent += 1

    # --- Scheduling ---

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start sweeping in a background thread; the first sweep runs immediately."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_forever, name="restock-watcher", daemon=True
        )
        self._thread.start()
        logger.info("watcher_started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: float | None = None) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("watcher_stopped")

    def run_forever(self) -> None:
        """Sweep every interval until stop() is called."""
        while not self._stop_event.is_set():
            self.sweep()
            self._stop_event.wait(self.interval_seconds)

    def status(self) -> dict[str, Any]:
        with self._state_lock:
            last = self.last_sweep_at
            report = self.last_report
        next_sweep = None
        if self.running and last is not None:
            next_sweep = _format_time(last + timedelta(seconds=self.interval_seconds))
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "time_budget_seconds": self.time_budget_seconds,
            "last_sweep_at": _format_time(last) if last else None,
            "next_sweep_at": next_sweep,
            "last_report": report.to_dict() if report else None,
        }
