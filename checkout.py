"""
Checkout: turn cart lines into one order per farmer.

Prices, product names and owners always come from the stored products, so the
client cannot choose what it pays.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from schemas import CartLine, Order, OrderItem, Product, User

DELIVERY_DAYS = 2


class CheckoutError(ValueError):
    pass


def price_lines(lines: List[CartLine], products: Dict[str, Product]) -> List[Tuple[str, OrderItem]]:
    """Resolve cart lines against stored products as (farmer_id, item) pairs."""
    priced = []
    for line in lines:
        product = products.get(line.product_id)
        if product is None or not product.is_active:
            raise CheckoutError(f"Product not available: {line.product_id}")
        if line.farmer_id is not None and line.farmer_id != product.farmer_id:
            raise CheckoutError(f"Product {line.product_id} does not belong to farmer {line.farmer_id}")
        item = OrderItem(
            product_id=product.id,
            product_name=product.name,
            quantity=line.quantity,
            price=product.price,
        )
        priced.append((product.farmer_id, item))
    return priced


def partition_by_farmer(priced: List[Tuple[str, OrderItem]]) -> Dict[str, List[OrderItem]]:
    partitions: Dict[str, List[OrderItem]] = {}
    for farmer_id, item in priced:
        partitions.setdefault(farmer_id, []).append(item)
    return partitions


def order_total(items: List[OrderItem]) -> float:
    return round(sum(i.price * i.quantity for i in items), 2)


def build_order(
    customer: User,
    farmer_id: str,
    items: List[OrderItem],
    delivery_address: str,
    customer_name: Optional[str] = None,
    customer_phone: Optional[str] = None,
    notes: Optional[str] = None,
    estimated_delivery: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Order:
    now = now or datetime.now(timezone.utc)
    return Order(
        id=uuid.uuid4().hex,
        customer_id=customer.id,
        customer_name=customer_name or customer.name,
        customer_phone=customer_phone or customer.phone or "",
        farmer_id=farmer_id,
        items=items,
        total=order_total(items),
        status="pending",
        delivery_address=delivery_address,
        estimated_delivery=estimated_delivery or now + timedelta(days=DELIVERY_DAYS),
        notes=notes,
        created_at=now,
    )


def build_orders(
    customer: User,
    priced: List[Tuple[str, OrderItem]],
    delivery_address: str,
    customer_name: Optional[str] = None,
    customer_phone: Optional[str] = None,
    notes: Optional[str] = None,
) -> List[Order]:
    now = datetime.now(timezone.utc)
    return [
        build_order(customer, farmer_id, items, delivery_address, customer_name, customer_phone, notes, now=now)
        for farmer_id, items in partition_by_farmer(priced).items()
    ]
