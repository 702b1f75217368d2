"""
Plan Catalog lookup.

WHAT: Resolves a provider price id or a plan slug to the plan's slug and
complete limits block.

WHY: Every subscription event needs the price -> plan mapping, but the
catalog changes rarely. Hitting the database for each event would put
catalog I/O on the hot path of the reconciler, so positive lookups are
cached in-process with a TTL.

HOW: Price ids are tried first, then slugs. Misses are not cached, so a
plan added to the catalog is picked up on the next event.
"""

import logging
import time
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from partner_access.core.config import settings
from partner_access.dao.plan import SubscriptionPlanDAO
from partner_access.schemas.entitlement import PlanLimits

logger = logging.getLogger(__name__)


class ResolvedPlan(BaseModel):
    """A catalog plan reduced to what a snapshot copies."""

    model_config = ConfigDict(frozen=True)

    slug: str
    limits: PlanLimits


class PlanCatalog:
    """
    Cached plan lookup.

    Attributes:
        ttl_seconds: Lifetime of a cached entry
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else settings.PLAN_CATALOG_CACHE_TTL_SECONDS
        )
        self._clock = clock
        self._cache: Dict[str, Tuple[float, ResolvedPlan]] = {}

    async def resolve_plan(self, price_or_slug: Optional[str]) -> Optional[ResolvedPlan]:
        """
        Resolve a price id or slug to a plan.

        Args:
            price_or_slug: Provider price id (price_xxx) or plan slug

        Returns:
            ResolvedPlan, or None if nothing active matches
        """
        if not price_or_slug:
            return None

        cached = self._cache.get(price_or_slug)
        if cached is not None:
            expires_at, plan = cached
            if self._clock() < expires_at:
                return plan
            del self._cache[price_or_slug]

        plan = await self._load(price_or_slug)
        if plan is None:
            logger.info("Plan not found in catalog", extra={"plan_ref": price_or_slug})
            return None

        self._cache[price_or_slug] = (self._clock() + self.ttl_seconds, plan)
        return plan

    def invalidate(self, price_or_slug: Optional[str] = None) -> None:
        """Drop one cached entry, or the whole cache."""
        if price_or_slug is None:
            self._cache.clear()
        else:
            self._cache.pop(price_or_slug, None)

    async def _load(self, price_or_slug: str) -> Optional[ResolvedPlan]:
        async with self._session_factory() as session:
            dao = SubscriptionPlanDAO(session)
            plan = await dao.get_active_by_price_id(price_or_slug)
            if plan is None:
                plan = await dao.get_active_by_slug(price_or_slug)
            if plan is None:
                return None
            return ResolvedPlan(slug=plan.slug, limits=PlanLimits.model_validate(plan))
