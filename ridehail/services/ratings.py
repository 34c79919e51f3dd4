"""
Running-average rating aggregation with compare-and-swap
"""

import logging
from typing import Type

from mongoengine import Document

from ridehail.services.ride_store import store_errors

logger = logging.getLogger(__name__)

DEFAULT_RATING = 5.0


def next_average(old_average: float, old_count: int, new_rating: float) -> float:
    return (old_average * old_count + new_rating) / (old_count + 1)


async def aggregate_rating(
    model: Type[Document], pk: str, new_rating: int, attempts: int = 5
) -> bool:
    """
    Fold one rating into `model.rating` / `model.total_ratings`.

    The write only lands if both fields still hold the values that were
    read, so two simultaneous ratings cannot overwrite each other; the
    loser re-reads and tries again.
    """
    for attempt in range(1, attempts + 1):
        with store_errors("update rating"):
            doc = model.objects(pk=pk).only("rating", "total_ratings").first()
            if doc is None:
                logger.warning(f"Cannot aggregate rating, {model.__name__} {pk} not found")
                return False

            count = doc.total_ratings or 0
            average = doc.rating if doc.rating is not None else DEFAULT_RATING
            updated = model.objects(
                pk=pk, rating=doc.rating, total_ratings=doc.total_ratings
            ).update_one(
                set__rating=next_average(average, count, new_rating),
                set__total_ratings=count + 1,
            )

        if updated:
            return True
        logger.debug(f"Rating CAS lost for {model.__name__} {pk} (attempt {attempt})")

    logger.error(f"Gave up aggregating rating for {model.__name__} {pk}")
    return False
