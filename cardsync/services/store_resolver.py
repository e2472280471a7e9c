# cardsync/services/store_resolver.py
import logging
import re
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.models.shopify_store import ShopifyStore

logger = logging.getLogger(__name__)

MYSHOPIFY_DOMAIN = re.compile(r"^([^.]+)\.myshopify\.com$", re.IGNORECASE)


def normalize_domain(shop_domain: Optional[str]) -> Optional[str]:
    if not shop_domain:
        return None
    domain = shop_domain.strip().lower()
    domain = re.sub(r"^https?://", "", domain)
    return domain.rstrip("/") or None


async def get_store(db: AsyncSession, store_key: str) -> Optional[ShopifyStore]:
    result = await db.execute(select(ShopifyStore).where(ShopifyStore.key == store_key))
    return result.scalar_one_or_none()


async def resolve_store(db: AsyncSession, shop_domain: Optional[str]) -> Optional[ShopifyStore]:
    """
    Map the X-Shopify-Shop-Domain header onto a configured, active store.

    Exact domain match first; otherwise the `<key>.myshopify.com` prefix is
    tried as a store key. Returns None when nothing matches.
    """
    domain = normalize_domain(shop_domain)
    if not domain:
        return None

    result = await db.execute(
        select(ShopifyStore).where(
            func.lower(ShopifyStore.domain) == domain,
            ShopifyStore.is_active.is_(True),
        )
    )
    store = result.scalar_one_or_none()
    if store:
        return store

    match = MYSHOPIFY_DOMAIN.match(domain)
    if match:
        store = await get_store(db, match.group(1))
        if store and store.is_active:
            logger.debug("Resolved %s to store %s by domain prefix", domain, store.key)
            return store

    return None
