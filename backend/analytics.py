"""Dashboard aggregation over the products and sales collections.

All timestamps are naive UTC, matching what PyMongo hands back, and sales
are bucketed by their UTC calendar day.  Revenue sums are plain floats.
"""

from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId

from security import Principal

LOW_STOCK_THRESHOLD = 10
REVENUE_WINDOW_DAYS = 30
RECENT_WINDOW_DAYS = 7
TOP_PRODUCTS_LIMIT = 5
UNKNOWN_PRODUCT_NAME = "Unknown Product"


class AuthorizationError(Exception):
    """Raised when the caller lacks the admin capability."""


def require_admin(principal: Optional[Principal]) -> Principal:
    if principal is None or not principal.is_admin:
        raise AuthorizationError("Admin access required")
    return principal


def bucket_sales_by_day(sales: List[Dict]) -> List[Dict]:
    buckets: Dict[str, Dict] = {}
    for sale in sales:
        sale_date = sale.get("date")
        if not isinstance(sale_date, datetime):
            continue
        day = sale_date.date().isoformat()
        bucket = buckets.setdefault(day, {"date": day, "sales": 0, "revenue": 0.0})
        bucket["sales"] += int(sale.get("quantity", 0) or 0)
        bucket["revenue"] += float(sale.get("total_amount", 0) or 0)

    return [buckets[day] for day in sorted(buckets)]


def category_distribution(database) -> List[Dict]:
    pipeline = [
        {"$group": {"_id": "$category", "count": {"$sum": 1}}},
        {"$project": {"category": "$_id", "count": 1, "_id": 0}},
        {"$sort": OrderedDict([("count", -1), ("category", 1)])},
    ]
    return [
        {"category": row.get("category"), "count": row.get("count", 0)}
        for row in database.products.aggregate(pipeline)
    ]


def resolve_product_name(database, product_id) -> str:
    try:
        object_id = ObjectId(str(product_id))
    except (InvalidId, TypeError):
        return UNKNOWN_PRODUCT_NAME

    product = database.products.find_one({"_id": object_id}, {"name": 1})
    if not product:
        return UNKNOWN_PRODUCT_NAME
    return product.get("name") or UNKNOWN_PRODUCT_NAME


def top_products(database, since: datetime, limit: int = TOP_PRODUCTS_LIMIT) -> List[Dict]:
    pipeline = [
        {"$match": {"date": {"$gte": since}}},
        {
            "$group": {
                "_id": "$product_id",
                "sales": {"$sum": "$quantity"},
                "revenue": {"$sum": "$total_amount"},
            }
        },
        {"$sort": {"revenue": -1}},
        {"$limit": limit},
    ]

    # One lookup per product; bounded by the limit above.
    results = []
    for row in database.sales.aggregate(pipeline):
        results.append(
            {
                "id": str(row.get("_id")),
                "name": resolve_product_name(database, row.get("_id")),
                "sales": row.get("sales", 0),
                "revenue": float(row.get("revenue", 0) or 0),
            }
        )
    return results


def build_dashboard_summary(
    database, principal: Optional[Principal], now: Optional[datetime] = None
) -> Dict:
    """Compute the dashboard payload as of ``now`` (naive UTC).

    Raises ``AuthorizationError`` for non-admin principals.  Database errors
    propagate unchanged so the caller can fail the whole request.
    """
    require_admin(principal)
    now = now or datetime.utcnow()
    revenue_since = now - timedelta(days=REVENUE_WINDOW_DAYS)
    recent_since = now - timedelta(days=RECENT_WINDOW_DAYS)

    total_products = database.products.count_documents({})
    low_stock_products = database.products.count_documents(
        {"stock": {"$lt": LOW_STOCK_THRESHOLD}}
    )

    window_sales = list(database.sales.find({"date": {"$gte": revenue_since}}))
    total_revenue = sum(float(sale.get("total_amount", 0) or 0) for sale in window_sales)

    recent_sales = database.sales.count_documents({"date": {"$gte": recent_since}})

    return {
        "totalProducts": total_products,
        "totalRevenue": total_revenue,
        "lowStockProducts": low_stock_products,
        "recentSales": recent_sales,
        "salesData": bucket_sales_by_day(window_sales),
        "categoryDistribution": category_distribution(database),
        "topProducts": top_products(database, revenue_since),
    }
