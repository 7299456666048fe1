"""
Order lifecycle: pricing, stock reservation, the status state machine with
its timeline, and order / shop statistics.

Functions take the database handle explicitly. Business-rule failures raise
OrderError subclasses; the API layer maps them to HTTP responses.
"""

import logging
import random
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from schemas import Order, OrderCreate, OrderItem, Pricing, ProductSnapshot, TimelineEntry

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("confirmed", "cancelled"),
    "confirmed": ("preparing", "cancelled"),
    "preparing": ("shipped", "cancelled"),
    "shipped": ("delivered",),
    "delivered": ("refunded",),
    "cancelled": (),
    "refunded": (),
}
CANCELLABLE_STATUSES = ("pending", "confirmed", "preparing")
NON_REVENUE_STATUSES = ("cancelled", "refunded")

ORDER_NUMBER_ATTEMPTS = 5


# -------------------- Errors --------------------

class OrderError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ProductUnavailable(OrderError):
    """A product in the order is missing, inactive or its shop is closed."""


class MixedShops(OrderError):
    """Items from more than one shop in a single order."""


class InsufficientStock(OrderError):
    pass


class InvalidStatusTransition(OrderError):
    pass


class StatusConflict(OrderError):
    """Another request changed the order status first."""

    status_code = 409


# -------------------- Pricing --------------------

def compute_pricing(items: Iterable[OrderItem], discount: float = 0.0) -> Pricing:
    subtotal = round(sum(i.price * i.quantity for i in items), 2)
    shipping_cost = round(config.SHIPPING_COST, 2)
    tax = round(subtotal * config.TAX_RATE, 2)
    total = round(subtotal + shipping_cost + tax - discount, 2)
    return Pricing(subtotal=subtotal, shipping_cost=shipping_cost, tax=tax, discount=discount, total=total)


def generate_order_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ART{now:%y%m%d}{random.randint(0, 9999):04d}"


# -------------------- Stock --------------------

def reserve_stock(db, lines: List[Tuple[str, int, str]]) -> None:
    """Decrement stock for (product_id, quantity, name) lines, all or nothing.

    Each decrement only matches while enough stock is left, so concurrent
    orders cannot push stock below zero.
    """
    reserved = []
    for product_id, quantity, name in lines:
        res = db["product"].update_one(
            {"_id": ObjectId(product_id), "is_active": True, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}},
        )
        if res.modified_count == 0:
            release_stock(db, [(pid, qty) for pid, qty, _ in reserved])
            logger.warning("Stock reservation failed for product %s (wanted %d)", product_id, quantity)
            raise InsufficientStock(f"Insufficient stock for product {name}")
        reserved.append((product_id, quantity, name))


def release_stock(db, lines: Iterable[Tuple[str, int]]) -> None:
    for product_id, quantity in lines:
        db["product"].update_one({"_id": ObjectId(product_id)}, {"$inc": {"stock": quantity}})
        logger.info("Released %d unit(s) of product %s", quantity, product_id)


# -------------------- Placement --------------------

def _load_products(db, payload: OrderCreate) -> List[dict]:
    products = []
    for item in payload.items:
        product = db["product"].find_one({"_id": ObjectId(item.product_id)})
        if not product or not product.get("is_active", False):
            raise ProductUnavailable(f"Product {item.product_id} not found or inactive")
        if product.get("stock", 0) < item.quantity:
            raise InsufficientStock(f"Insufficient stock for product {product['name']}")
        products.append(product)
    return products


def place_order(db, user_id: str, payload: OrderCreate, idempotency_key: Optional[str] = None) -> Tuple[dict, bool]:
    """Create an order and reserve its stock.

    Returns (order document, created). When the caller already placed an
    order with the same idempotency key, that order is returned with
    created=False and no stock is touched.
    """
    if idempotency_key:
        existing = db["order"].find_one({"user_id": user_id, "idempotency_key": idempotency_key})
        if existing:
            return existing, False

    products = _load_products(db, payload)
    shop_ids = {p["shop_id"] for p in products}
    if len(shop_ids) > 1:
        raise MixedShops("All items in an order must come from the same shop")
    shop_id = shop_ids.pop()
    shop = db["shop"].find_one({"_id": ObjectId(shop_id)})
    if not shop or not shop.get("is_active", False):
        raise ProductUnavailable(f"Shop {shop_id} is not available")

    items = []
    for item, product in zip(payload.items, products):
        images = product.get("images") or []
        items.append(OrderItem(
            product_id=str(product["_id"]),
            quantity=item.quantity,
            price=float(product["price"]),
            product_snapshot=ProductSnapshot(
                name=product["name"],
                image=images[0]["url"] if images else "",
                shop_name=shop["name"],
            ),
        ))
    pricing = compute_pricing(items)

    lines = [(i.product_id, i.quantity, i.product_snapshot.name) for i in items]
    reserve_stock(db, lines)

    now = datetime.now(timezone.utc)
    order = Order(
        order_number=generate_order_number(now),
        user_id=user_id,
        shop_id=shop_id,
        items=items,
        shipping_address=payload.shipping_address,
        billing_address=payload.billing_address,
        pricing=pricing,
        payment_method=payload.payment_method,
        notes={"customer_notes": payload.notes.customer_notes if payload.notes else ""},
        timeline=[TimelineEntry(status="pending", timestamp=now, note="Order placed", updated_by=user_id)],
        idempotency_key=idempotency_key,
        created_at=now,
        updated_at=now,
    )
    doc = order.model_dump()

    try:
        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            try:
                doc["_id"] = db["order"].insert_one(dict(doc)).inserted_id
                break
            except DuplicateKeyError:
                if idempotency_key:
                    existing = db["order"].find_one({"user_id": user_id, "idempotency_key": idempotency_key})
                    if existing:
                        release_stock(db, [(pid, qty) for pid, qty, _ in lines])
                        return existing, False
                if attempt == ORDER_NUMBER_ATTEMPTS - 1:
                    raise
                doc["order_number"] = generate_order_number()
    except Exception:
        release_stock(db, [(pid, qty) for pid, qty, _ in lines])
        raise

    logger.info("Order %s placed by user %s at shop %s (total %.2f)",
                doc["order_number"], user_id, shop_id, pricing.total)

    if shop.get("settings", {}).get("auto_accept_orders"):
        # the order already exists; a failed auto-accept leaves it pending
        try:
            doc = transition(db, doc, "confirmed", shop["owner_id"], note="Order automatically accepted by shop")
        except OrderError as e:
            logger.warning("Auto-accept of order %s failed: %s", doc["order_number"], e.message)
    return doc, True


# -------------------- Status --------------------

def transition(db, order: dict, new_status: str, actor_id: Optional[str], note: Optional[str] = None) -> dict:
    current = order["status"]
    if new_status not in TRANSITIONS.get(current, ()):
        raise InvalidStatusTransition(f"Cannot change order status from {current} to {new_status}")

    now = datetime.now(timezone.utc)
    entry = TimelineEntry(
        status=new_status,
        timestamp=now,
        note=note or f"Order status changed to {new_status}",
        updated_by=actor_id,
    )
    update = {"status": new_status, "updated_at": now}
    if new_status == "delivered" and order.get("payment_method") == "cash_on_delivery":
        update["payment_status"] = "paid"
    elif new_status == "refunded":
        update["payment_status"] = "refunded"

    # matching on the old status keeps two writers from both applying a change
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": update, "$push": {"timeline": entry.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise StatusConflict("Order status changed concurrently")

    logger.info("Order %s: %s -> %s by %s", updated.get("order_number"), current, new_status, actor_id)

    if new_status == "cancelled":
        release_stock(db, [(i["product_id"], i["quantity"]) for i in updated["items"]])
    elif new_status == "delivered":
        for i in updated["items"]:
            db["product"].update_one({"_id": ObjectId(i["product_id"])}, {"$inc": {"total_sales": i["quantity"]}})
        refresh_shop_stats(db, updated["shop_id"])
    elif new_status == "refunded":
        for i in updated["items"]:
            db["product"].update_one({"_id": ObjectId(i["product_id"])}, {"$inc": {"total_sales": -i["quantity"]}})
        refresh_shop_stats(db, updated["shop_id"])
    return updated


def cancel(db, order: dict, actor_id: str, note: str = "Order cancelled by customer") -> dict:
    if order["status"] not in CANCELLABLE_STATUSES:
        raise InvalidStatusTransition("Order cannot be cancelled at this stage")
    return transition(db, order, "cancelled", actor_id, note=note)


# -------------------- Statistics --------------------

def order_stats(db, shop_id: Optional[str] = None, user_id: Optional[str] = None) -> dict:
    match = {}
    if shop_id:
        match["shop_id"] = shop_id
    if user_id:
        match["user_id"] = user_id

    pipeline = [
        {"$match": match},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "revenue": {"$sum": "$pricing.total"}}},
    ]
    rows = list(db["order"].aggregate(pipeline))
    by_status = {row["_id"]: row["count"] for row in rows}
    counted = [row for row in rows if row["_id"] not in NON_REVENUE_STATUSES]
    revenue_orders = sum(row["count"] for row in counted)
    revenue = round(sum(row["revenue"] for row in counted), 2)

    return {
        "total_orders": sum(by_status.values()),
        "total_revenue": revenue,
        "pending_orders": by_status.get("pending", 0),
        "delivered_orders": by_status.get("delivered", 0),
        "average_order_value": round(revenue / revenue_orders, 2) if revenue_orders else 0.0,
        "by_status": by_status,
    }


def refresh_shop_stats(db, shop_id: str) -> dict:
    """Recompute a shop's product count, delivered sales and revenue."""
    total_products = db["product"].count_documents({"shop_id": shop_id, "is_active": True})
    delivered = list(db["order"].find({"shop_id": shop_id, "status": "delivered"}, {"pricing": 1}))
    stats = {
        "total_products": total_products,
        "total_sales": len(delivered),
        "total_revenue": round(sum(float(o["pricing"]["total"]) for o in delivered), 2),
    }
    db["shop"].update_one(
        {"_id": ObjectId(shop_id)},
        {"$set": {"stats": stats, "updated_at": datetime.now(timezone.utc)}},
    )
    logger.info("Shop %s stats refreshed: %s", shop_id, stats)
    return stats
