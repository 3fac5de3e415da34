from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

from settlement.core.config import Settings, get_settings
from settlement.core.errors import DocumentStoreError
from settlement.domain import outcomes
from settlement.domain.outcomes import StepOutcome
from settlement.domain.types import Order, OrderItem, StockMovement
from settlement.ledger.store import DocumentStore, now_iso, where

logger = logging.getLogger(__name__)

VINYL_MOVEMENTS = "vinyl-stock-movements"
MERCH_MOVEMENTS = "merch-stock-movements"

Direction = Literal["sell", "return"]


def _normalize(value: str) -> str:
    return re.sub(r"\s", "-", value.lower())


def variant_key_for(size: str | None, color: str | None) -> str:
    return f"{_normalize(size or 'onesize')}_{_normalize(color or 'default')}"


def resolve_variant_key(variant_stock: dict[str, Any], size: str | None, color: str | None) -> str | None:
    """Pick the variant a cart line refers to.

    Exact size+color key first, then the product's only variant, then any
    variant with the same size.
    """
    key = variant_key_for(size, color)
    if key in variant_stock:
        return key
    keys = list(variant_stock)
    if len(keys) == 1:
        return keys[0]
    size_prefix = f"{_normalize(size or 'onesize')}_"
    for candidate in keys:
        if candidate.startswith(size_prefix):
            return candidate
    return None


def stock_flags(variant_stock: dict[str, Any], low_stock_threshold: int) -> dict[str, Any]:
    total = sum(int(v.get("stock") or 0) for v in variant_stock.values())
    sold = sum(int(v.get("sold") or 0) for v in variant_stock.values())
    return {
        "totalStock": total,
        "soldStock": sold,
        "isLowStock": 0 < total <= low_stock_threshold,
        "isOutOfStock": total == 0,
    }


def apply_quantity(previous: int, quantity: int, direction: Direction) -> int:
    if direction == "sell":
        return max(0, previous - quantity)
    return max(0, previous + quantity)


@dataclass
class StockChange:
    item_ref: str
    previous_stock: int
    new_stock: int

    @property
    def delta(self) -> int:
        return self.new_stock - self.previous_stock


class StockLedger:
    """Inventory counters for physical items plus their append-only movement log."""

    def __init__(self, store: DocumentStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()

    def decrement(self, item: OrderItem, order_id: str, order_number: str) -> StepOutcome:
        return self._adjust(item, order_id, order_number, "sell")

    def refund(self, item: OrderItem, order_id: str, order_number: str) -> StepOutcome:
        return self._adjust(item, order_id, order_number, "return")

    def decrement_order(self, order: Order, only_missing: bool = False) -> list[StepOutcome]:
        results = []
        for item in order.items:
            if not item.is_physical:
                continue
            if only_missing and self.has_movement(item, order.id, "sell"):
                results.append(outcomes.skipped("stock", "already decremented", ref=item.id))
                continue
            results.append(self.decrement(item, order.id, order.order_number))
        return results

    def refund_order(self, order: Order) -> list[StepOutcome]:
        return [
            self.refund(item, order.id, order.order_number)
            for item in order.items
            if item.is_physical
        ]

    def _adjust(self, item: OrderItem, order_id: str, order_number: str, direction: Direction) -> StepOutcome:
        try:
            if item.listing_id:
                change = self._adjust_listing(item, order_id, order_number, direction)
            elif item.type == "merch":
                change = self._adjust_merch(item, order_id, order_number, direction)
            elif item.type == "vinyl":
                change = self._adjust_release(item, order_id, order_number, direction)
            else:
                return outcomes.skipped("stock", "not a stocked item", ref=item.id)
        except DocumentStoreError as exc:
            logger.error("stock %s failed for item=%s order=%s: %s", direction, item.id, order_number, exc)
            return outcomes.degraded("stock", str(exc), ref=item.id)

        if change is None:
            return outcomes.skipped("stock", "no stock record", ref=item.id)
        logger.info(
            "stock %s item=%s order=%s %s -> %s",
            direction,
            change.item_ref,
            order_number,
            change.previous_stock,
            change.new_stock,
        )
        return outcomes.ok("stock", f"{change.previous_stock}->{change.new_stock}", ref=change.item_ref)

    def _record(
        self,
        collection: str,
        change: StockChange,
        item: OrderItem,
        order_id: str,
        order_number: str,
        direction: Direction,
        extra: dict[str, Any],
    ) -> None:
        movement = StockMovement(
            item_ref=change.item_ref,
            type=direction,
            quantity=item.quantity,
            stock_delta=change.delta,
            previous_stock=change.previous_stock,
            new_stock=change.new_stock,
            order_id=order_id,
            order_number=order_number,
            notes=f"Order {order_number}" if direction == "sell" else f"Order cancelled - {order_number}",
            created_at=now_iso(),
        )
        doc = movement.to_doc()
        doc.update(extra)
        self.store.add(collection, doc)

    def _adjust_release(self, item: OrderItem, order_id: str, order_number: str, direction: Direction) -> StockChange | None:
        release_id = item.release_id or item.product_id
        if not release_id:
            return None
        release = self.store.get("releases", release_id)
        if release is None or release.get("vinylStock") is None:
            return None

        previous = int(release.get("vinylStock") or 0)
        new = apply_quantity(previous, item.quantity, direction)
        sold = int(release.get("vinylSold") or 0)
        sold = sold + item.quantity if direction == "sell" else max(0, sold - item.quantity)
        self.store.update(
            "releases",
            release_id,
            {"vinylStock": new, "vinylSold": sold, "updatedAt": now_iso()},
        )
        change = StockChange(item_ref=release_id, previous_stock=previous, new_stock=new)
        self._record(
            VINYL_MOVEMENTS,
            change,
            item,
            order_id,
            order_number,
            direction,
            {"releaseId": release_id, "releaseName": item.name or release.get("releaseName")},
        )
        return change

    def _adjust_merch(self, item: OrderItem, order_id: str, order_number: str, direction: Direction) -> StockChange | None:
        if not item.product_id:
            return None
        product = self.store.get("merch", item.product_id)
        if product is None:
            return None
        variant_stock = dict(product.get("variantStock") or {})
        variant_key = resolve_variant_key(variant_stock, item.size, item.color)
        if variant_key is None:
            logger.warning("no variant for product=%s size=%s color=%s", item.product_id, item.size, item.color)
            return None

        variant = dict(variant_stock[variant_key] or {})
        previous = int(variant.get("stock") or 0)
        new = apply_quantity(previous, item.quantity, direction)
        sold = int(variant.get("sold") or 0)
        variant["stock"] = new
        variant["sold"] = sold + item.quantity if direction == "sell" else max(0, sold - item.quantity)
        variant_stock[variant_key] = variant

        threshold = int(product.get("lowStockThreshold") or self.settings.low_stock_threshold)
        changes = {"variantStock": variant_stock, "updatedAt": now_iso()}
        changes.update(stock_flags(variant_stock, threshold))
        self.store.update("merch", item.product_id, changes)

        change = StockChange(
            item_ref=f"{item.product_id}:{variant_key}",
            previous_stock=previous,
            new_stock=new,
        )
        self._record(
            MERCH_MOVEMENTS,
            change,
            item,
            order_id,
            order_number,
            direction,
            {
                "productId": item.product_id,
                "productName": item.name,
                "variantKey": variant_key,
                "sku": product.get("sku"),
            },
        )
        return change

    def _adjust_listing(self, item: OrderItem, order_id: str, order_number: str, direction: Direction) -> StockChange | None:
        listing_id = item.listing_id
        listing = self.store.get("vinylListings", listing_id)
        if listing is None:
            return None

        previous = 0 if listing.get("status") == "sold" else 1
        now = now_iso()
        if direction == "sell":
            new = 0
            self.store.update(
                "vinylListings",
                listing_id,
                {
                    "status": "sold",
                    "soldAt": now,
                    "soldOrderId": order_id,
                    "soldOrderNumber": order_number,
                    "updatedAt": now,
                },
            )
        else:
            new = 1
            self.store.update(
                "vinylListings",
                listing_id,
                {"status": "active", "soldAt": None, "soldOrderId": None, "soldOrderNumber": None, "updatedAt": now},
            )

        change = StockChange(item_ref=f"listing:{listing_id}", previous_stock=previous, new_stock=new)
        self._record(VINYL_MOVEMENTS, change, item, order_id, order_number, direction, {"listingId": listing_id})
        return change

    def item_ref_for(self, item: OrderItem) -> str | None:
        if item.listing_id:
            return f"listing:{item.listing_id}"
        if item.type == "vinyl":
            return item.release_id or item.product_id
        if item.type == "merch" and item.product_id:
            product = self.store.get("merch", item.product_id)
            if product is None:
                return None
            key = resolve_variant_key(product.get("variantStock") or {}, item.size, item.color)
            return f"{item.product_id}:{key}" if key else None
        return None

    @staticmethod
    def movement_collection(item: OrderItem) -> str:
        return MERCH_MOVEMENTS if item.type == "merch" and not item.listing_id else VINYL_MOVEMENTS

    def current_stock(self, item: OrderItem) -> int | None:
        if item.listing_id:
            listing = self.store.get("vinylListings", item.listing_id)
            return None if listing is None else (0 if listing.get("status") == "sold" else 1)
        if item.type == "vinyl":
            release = self.store.get("releases", item.release_id or item.product_id or "")
            if release is None or release.get("vinylStock") is None:
                return None
            return int(release["vinylStock"])
        if item.type == "merch" and item.product_id:
            product = self.store.get("merch", item.product_id)
            if product is None:
                return None
            variant_stock = product.get("variantStock") or {}
            key = resolve_variant_key(variant_stock, item.size, item.color)
            return int((variant_stock.get(key) or {}).get("stock") or 0) if key else None
        return None

    def has_movement(self, item: OrderItem, order_id: str, direction: Direction) -> bool:
        item_ref = self.item_ref_for(item)
        if item_ref is None:
            return False
        collection = self.movement_collection(item)
        rows = self.store.query(
            collection,
            [where("itemRef", "EQUAL", item_ref), where("orderId", "EQUAL", order_id), where("type", "EQUAL", direction)],
            limit=1,
        )
        return bool(rows)

    def movements_for(self, item_ref: str, collection: str) -> list[dict[str, Any]]:
        return self.store.query(collection, [where("itemRef", "EQUAL", item_ref)], order_by="createdAt")
