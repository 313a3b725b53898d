"""
Product recommendations.

Scores each candidate on distance, quality, price against its category average
and freshness, then keeps the best few. Everything here is pure; callers load
the products.
"""

from collections import defaultdict
from math import asin, cos, radians, sin, sqrt
from typing import Dict, List, Optional

from schemas import Location, Product, Recommendation

EARTH_RADIUS_KM = 6371.0
MAX_RECOMMENDATIONS = 5

WEIGHTS = {
    "distance": 0.30,
    "quality": 0.25,
    "price": 0.25,
    "freshness": 0.20,
}

# (sub-score, cutoff, phrase), checked in order
REASONS = [
    ("distance", 80, "Close to you."),
    ("quality", 85, "High quality rating."),
    ("price", 75, "Great price."),
    ("freshness", 90, "Very fresh."),
]
DEFAULT_REASON = "Good overall value."


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance (km)."""
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * asin(min(1.0, sqrt(a)))


def distance_score(origin: Location, location: Location) -> float:
    km = haversine_km(origin.lat, origin.lng, location.lat, location.lng)
    return max(0.0, 100 - km * 2)


def quality_score(product: Product) -> float:
    return product.quality.rating / 5 * 100


def price_score(price: float, average: float) -> float:
    if average == 0:
        # every candidate in the category is free
        return 100.0
    return max(0.0, 100 - (price - average) / average * 100)


def category_averages(products: List[Product]) -> Dict[str, float]:
    totals: Dict[str, List[float]] = defaultdict(list)
    for p in products:
        totals[p.category].append(p.price)
    return {category: sum(prices) / len(prices) for category, prices in totals.items()}


def build_reason(scores: Dict[str, float]) -> str:
    phrases = [phrase for key, cutoff, phrase in REASONS if scores[key] > cutoff]
    return " ".join(phrases) if phrases else DEFAULT_REASON


def score_product(product: Product, origin: Location, average: float) -> Recommendation:
    scores = {
        "distance": distance_score(origin, product.location),
        "quality": quality_score(product),
        "price": price_score(product.price, average),
        "freshness": float(product.quality.freshness),
    }
    total = sum(scores[key] * weight for key, weight in WEIGHTS.items())
    savings = max(0.0, average - product.price)
    return Recommendation(
        product_id=product.id,
        score=total,
        reason=build_reason(scores),
        savings=savings if savings > 0 else None,
        quality_bonus=product.quality.rating if scores["quality"] > 85 else None,
    )


def rank(
    products: List[Product],
    origin: Location,
    category: Optional[str] = None,
    limit: int = MAX_RECOMMENDATIONS,
) -> List[Recommendation]:
    candidates = [p for p in products if p.is_active and (category is None or p.category == category)]
    if not candidates:
        return []
    averages = category_averages(candidates)
    scored = [score_product(p, origin, averages[p.category]) for p in candidates]
    scored.sort(key=lambda r: r.score, reverse=True)
    return scored[:limit]
