import logging
from typing import Tuple

from bson import ObjectId
from pymongo.database import Database

from database import now

logger = logging.getLogger(__name__)


def recompute_product_rating(db: Database, product_id: str) -> Tuple[float, int]:
    """Rewrite a product's `ratings` (mean) and `number_of_reviews` from its reviews.

    A full recompute over the product's reviews. It is not atomic with the
    review write that triggered it; a failure in between leaves the
    aggregate stale until the next review write.
    """
    pipeline = [
        {"$match": {"product_id": product_id}},
        {"$group": {"_id": "$product_id", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]
    agg = list(db["review"].aggregate(pipeline))
    if agg:
        ratings, count = float(agg[0]["avg"]), int(agg[0]["count"])
    else:
        ratings, count = 0.0, 0
    db["product"].update_one(
        {"_id": ObjectId(product_id)},
        {"$set": {"ratings": ratings, "number_of_reviews": count, "updated_at": now()}},
    )
    logger.debug("Product %s rating recomputed: %.2f over %d reviews", product_id, ratings, count)
    return ratings, count
