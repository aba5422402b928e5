"""Catalog lookups backed by memory or PostgreSQL."""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterable, Iterator, Optional, Protocol, Sequence, Tuple

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..db import managed_connection
from .defaults import (
    DEFAULT_ADDON_PACK_PRICES,
    DEFAULT_ADDON_PACKS,
    DEFAULT_BUNDLE_PRICES,
    DEFAULT_BUNDLES,
    DEFAULT_MODULE_PRICES,
    DEFAULT_MODULES,
    DEFAULT_TIER_PRICES,
    DEFAULT_TIERS,
)
from .models import (
    AddonPack,
    AddonPackPrice,
    BundlePrice,
    MarketplaceModule,
    ModuleBundle,
    ModulePrice,
    SubscriptionTier,
    TierPrice,
)


class CatalogRepository(Protocol):
    """Read operations over the marketplace catalog."""

    def list_tiers(self) -> Sequence[SubscriptionTier]:
        ...

    def get_tier(self, tier_id: str) -> Optional[SubscriptionTier]:
        ...

    def get_tier_price(self, tier_id: str, currency: str) -> Optional[TierPrice]:
        ...

    def list_addon_packs(self) -> Sequence[AddonPack]:
        ...

    def get_addon_pack_price(self, pack_id: str, tier_id: str, currency: str) -> Optional[AddonPackPrice]:
        ...

    def list_modules(self) -> Sequence[MarketplaceModule]:
        ...

    def get_module(self, module_id: str) -> Optional[MarketplaceModule]:
        ...

    def get_module_price(self, module_id: str, currency: str) -> Optional[ModulePrice]:
        ...

    def list_bundles(self) -> Sequence[ModuleBundle]:
        ...

    def get_bundle(self, bundle_id: str) -> Optional[ModuleBundle]:
        ...

    def get_bundle_price(self, bundle_id: str, currency: str) -> Optional[BundlePrice]:
        ...


class InMemoryCatalog:
    """Catalog held in memory, seeded with the default marketplace data."""

    def __init__(
        self,
        *,
        tiers: Iterable[SubscriptionTier] = DEFAULT_TIERS,
        tier_prices: Iterable[TierPrice] = DEFAULT_TIER_PRICES,
        addon_packs: Iterable[AddonPack] = DEFAULT_ADDON_PACKS,
        addon_pack_prices: Iterable[AddonPackPrice] = DEFAULT_ADDON_PACK_PRICES,
        modules: Iterable[MarketplaceModule] = DEFAULT_MODULES,
        module_prices: Iterable[ModulePrice] = DEFAULT_MODULE_PRICES,
        bundles: Iterable[ModuleBundle] = DEFAULT_BUNDLES,
        bundle_prices: Iterable[BundlePrice] = DEFAULT_BUNDLE_PRICES,
    ) -> None:
        self._tiers: Dict[str, SubscriptionTier] = {tier.id: tier for tier in tiers}
        self._tier_prices: Dict[Tuple[str, str], TierPrice] = {
            (price.tier_id, price.currency): price for price in tier_prices
        }
        self._packs: Dict[str, AddonPack] = {pack.id: pack for pack in addon_packs}
        self._pack_prices: Dict[Tuple[str, str, str], AddonPackPrice] = {
            (price.pack_id, price.tier_id, price.currency): price for price in addon_pack_prices
        }
        self._modules: Dict[str, MarketplaceModule] = {module.id: module for module in modules}
        self._module_prices: Dict[Tuple[str, str], ModulePrice] = {
            (price.module_id, price.currency): price for price in module_prices
        }
        self._bundles: Dict[str, ModuleBundle] = {bundle.id: bundle for bundle in bundles}
        self._bundle_prices: Dict[Tuple[str, str], BundlePrice] = {
            (price.bundle_id, price.currency): price for price in bundle_prices
        }

    def list_tiers(self) -> Sequence[SubscriptionTier]:
        return sorted(self._tiers.values(), key=lambda tier: tier.tier_order)

    def get_tier(self, tier_id: str) -> Optional[SubscriptionTier]:
        return self._tiers.get(tier_id)

    def get_tier_price(self, tier_id: str, currency: str) -> Optional[TierPrice]:
        return self._tier_prices.get((tier_id, currency.upper()))

    def list_addon_packs(self) -> Sequence[AddonPack]:
        return sorted(self._packs.values(), key=lambda pack: pack.pack_order)

    def get_addon_pack_price(self, pack_id: str, tier_id: str, currency: str) -> Optional[AddonPackPrice]:
        return self._pack_prices.get((pack_id, tier_id, currency.upper()))

    def list_modules(self) -> Sequence[MarketplaceModule]:
        return list(self._modules.values())

    def get_module(self, module_id: str) -> Optional[MarketplaceModule]:
        return self._modules.get(module_id)

    def get_module_price(self, module_id: str, currency: str) -> Optional[ModulePrice]:
        return self._module_prices.get((module_id, currency.upper()))

    def list_bundles(self) -> Sequence[ModuleBundle]:
        return list(self._bundles.values())

    def get_bundle(self, bundle_id: str) -> Optional[ModuleBundle]:
        return self._bundles.get(bundle_id)

    def get_bundle_price(self, bundle_id: str, currency: str) -> Optional[BundlePrice]:
        return self._bundle_prices.get((bundle_id, currency.upper()))

    def set_bundle_modules(self, bundle_id: str, module_ids: Iterable[str]) -> ModuleBundle:
        """Replace the module membership of a bundle (admin catalog edit)."""

        bundle = self._bundles.get(bundle_id)
        if bundle is None:
            raise LookupError("Bundle not found")
        updated = replace(bundle, module_ids=tuple(module_ids))
        self._bundles[bundle_id] = updated
        return updated


def _row_to_tier(row: dict) -> SubscriptionTier:
    return SubscriptionTier(
        id=str(row["id"]),
        code=row["code"],
        name=row["name"],
        tier_order=int(row["tier_order"]),
        included_inspections=int(row["included_inspections"]),
        base_price_monthly=int(row["base_price_monthly"]),
        base_price_annual=int(row["base_price_annual"]),
        is_active=bool(row["is_active"]),
        requires_custom_pricing=bool(row.get("requires_custom_pricing")),
    )


def _row_to_module(row: dict) -> MarketplaceModule:
    return MarketplaceModule(
        id=str(row["id"]),
        module_key=row["module_key"],
        name=row["name"],
        is_available_globally=bool(row["is_available_globally"]),
        default_enabled=bool(row.get("default_enabled")),
    )


def _row_to_bundle(row: dict) -> ModuleBundle:
    discount = row.get("discount_percentage")
    return ModuleBundle(
        id=str(row["id"]),
        name=row["name"],
        module_ids=tuple(str(module_id) for module_id in (row.get("module_ids") or []) if module_id),
        is_active=bool(row["is_active"]),
        discount_percentage=float(discount) if discount is not None else None,
    )


_BUNDLE_SELECT = """
    SELECT b.id, b.name, b.is_active, b.discount_percentage,
           ARRAY_REMOVE(ARRAY_AGG(j.module_id::text), NULL) AS module_ids
    FROM module_bundles b
    LEFT JOIN bundle_modules_junction j ON j.bundle_id = b.id
"""


class PostgresCatalogRepository:
    """Catalog reader over the marketplace tables."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def list_tiers(self) -> Sequence[SubscriptionTier]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM subscription_tiers ORDER BY tier_order ASC")
            return [_row_to_tier(row) for row in cursor.fetchall()]

    def get_tier(self, tier_id: str) -> Optional[SubscriptionTier]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM subscription_tiers WHERE id = %s LIMIT 1", (tier_id,))
            row = cursor.fetchone()
            return _row_to_tier(row) if row else None

    def get_tier_price(self, tier_id: str, currency: str) -> Optional[TierPrice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT tier_id, currency_code, price_monthly, price_annual
                FROM tier_pricing
                WHERE tier_id = %s AND currency_code = %s
                ORDER BY last_updated DESC
                LIMIT 1
                """,
                (tier_id, currency.upper()),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return TierPrice(
                tier_id=str(row["tier_id"]),
                currency=row["currency_code"],
                price_monthly=int(row["price_monthly"]),
                price_annual=int(row["price_annual"]),
            )

    def list_addon_packs(self) -> Sequence[AddonPack]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM addon_pack_config ORDER BY pack_order ASC")
            return [
                AddonPack(
                    id=str(row["id"]),
                    name=row["name"],
                    inspection_quantity=int(row["inspection_quantity"]),
                    pack_order=int(row["pack_order"]),
                    is_active=bool(row["is_active"]),
                )
                for row in cursor.fetchall()
            ]

    def get_addon_pack_price(self, pack_id: str, tier_id: str, currency: str) -> Optional[AddonPackPrice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT pack_id, tier_id, currency_code, price_per_inspection, total_pack_price
                FROM addon_pack_pricing
                WHERE pack_id = %s AND tier_id = %s AND currency_code = %s
                LIMIT 1
                """,
                (pack_id, tier_id, currency.upper()),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return AddonPackPrice(
                pack_id=str(row["pack_id"]),
                tier_id=str(row["tier_id"]),
                currency=row["currency_code"],
                price_per_inspection=int(row["price_per_inspection"]),
                total_pack_price=int(row["total_pack_price"]),
            )

    def list_modules(self) -> Sequence[MarketplaceModule]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM marketplace_modules ORDER BY display_order ASC")
            return [_row_to_module(row) for row in cursor.fetchall()]

    def get_module(self, module_id: str) -> Optional[MarketplaceModule]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM marketplace_modules WHERE id = %s LIMIT 1", (module_id,))
            row = cursor.fetchone()
            return _row_to_module(row) if row else None

    def get_module_price(self, module_id: str, currency: str) -> Optional[ModulePrice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT module_id, currency_code, price_monthly, price_annual
                FROM module_pricing
                WHERE module_id = %s AND currency_code = %s
                ORDER BY last_updated DESC
                LIMIT 1
                """,
                (module_id, currency.upper()),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return ModulePrice(
                module_id=str(row["module_id"]),
                currency=row["currency_code"],
                price_monthly=int(row["price_monthly"]),
                price_annual=int(row["price_annual"]),
            )

    def list_bundles(self) -> Sequence[ModuleBundle]:
        with self._cursor() as cursor:
            cursor.execute(_BUNDLE_SELECT + " GROUP BY b.id ORDER BY b.created_at ASC")
            return [_row_to_bundle(row) for row in cursor.fetchall()]

    def get_bundle(self, bundle_id: str) -> Optional[ModuleBundle]:
        with self._cursor() as cursor:
            cursor.execute(_BUNDLE_SELECT + " WHERE b.id = %s GROUP BY b.id", (bundle_id,))
            row = cursor.fetchone()
            return _row_to_bundle(row) if row else None

    def get_bundle_price(self, bundle_id: str, currency: str) -> Optional[BundlePrice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT bundle_id, currency_code, price_monthly, price_annual
                FROM bundle_pricing
                WHERE bundle_id = %s AND currency_code = %s
                ORDER BY last_updated DESC
                LIMIT 1
                """,
                (bundle_id, currency.upper()),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return BundlePrice(
                bundle_id=str(row["bundle_id"]),
                currency=row["currency_code"],
                price_monthly=int(row["price_monthly"]),
                price_annual=int(row["price_annual"]),
            )


__all__ = ["CatalogRepository", "InMemoryCatalog", "PostgresCatalogRepository"]
