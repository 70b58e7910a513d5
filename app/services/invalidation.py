import logging

from app.cache import CacheGateway, CacheUnavailable

logger = logging.getLogger(__name__)


class InvalidationCoordinator:
    """
    Clears cached listing pages after an article mutation has committed.

    Must be awaited after the database commit and before the mutation's
    response is returned.  A cache failure here never undoes the committed
    write: it is logged as a warning and the request carries on.
    """

    def __init__(self, gateway: CacheGateway) -> None:
        self.gateway = gateway

    async def on_article_mutated(self) -> bool:
        """Return True when the listing cache was invalidated."""
        try:
            await self.gateway.invalidate()
        except CacheUnavailable as exc:
            logger.warning("Listing cache invalidation failed, stale pages expire by TTL: %s", exc)
            return False
        return True
