from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from loguru import logger

from .config import CallPolicy, TitleMatchPolicy
from .normalize import normalize_identifier
from .pipeline_types import CatalogVariant, CollaboratorError, MatchType, Outcome
from .ports import CatalogLookup
from .resilience import guarded_call


@dataclass(frozen=True)
class IdentifierMatch:
    variant: CatalogVariant
    match_type: MatchType
    confidence: float


@dataclass
class IdentifierLookup:
    hit: Optional[IdentifierMatch] = None
    outcome: Outcome = field(default_factory=Outcome.ok)


class DeterministicMatcher:
    """
    Exact SKU / barcode lookup, checked in that order.

    SKU is the seller's own key and is trusted fully; barcodes get a
    slightly lower confidence because they are sometimes reused or
    mistyped. The first identifier with a hit wins. A lookup that fails
    is logged and skipped, so the next identifier (and then the title)
    still gets its turn; the lookup is then marked degraded.
    """

    def __init__(
        self,
        catalog: CatalogLookup,
        policy: Optional[TitleMatchPolicy] = None,
        calls: Optional[CallPolicy] = None,
    ):
        self.catalog = catalog
        self.policy = policy or TitleMatchPolicy()
        self.calls = calls or CallPolicy()

    async def match(
        self,
        scope: str,
        sku: Optional[str] = None,
        barcode: Optional[str] = None,
    ) -> IdentifierLookup:
        sku = normalize_identifier(sku)
        barcode = normalize_identifier(barcode)
        errors: List[str] = []

        def finish(hit: Optional[IdentifierMatch] = None) -> IdentifierLookup:
            if errors:
                return IdentifierLookup(hit, Outcome.degraded("identifier_lookup", "; ".join(errors)))
            return IdentifierLookup(hit)

        if sku:
            try:
                variant = await guarded_call(
                    "catalog.find_by_sku",
                    lambda: self.catalog.find_by_sku(scope, sku),
                    self.calls,
                )
            except CollaboratorError as e:
                logger.warning("SKU lookup failed for {}, trying next identifier: {}", sku, e)
                errors.append(str(e))
                variant = None
            if variant is not None:
                logger.debug("SKU hit {} -> variant {}", sku, variant.variant_id)
                return finish(IdentifierMatch(variant, MatchType.SKU, self.policy.sku_confidence))

        if barcode:
            try:
                variant = await guarded_call(
                    "catalog.find_by_barcode",
                    lambda: self.catalog.find_by_barcode(scope, barcode),
                    self.calls,
                )
            except CollaboratorError as e:
                logger.warning("Barcode lookup failed for {}: {}", barcode, e)
                errors.append(str(e))
                variant = None
            if variant is not None:
                logger.debug("Barcode hit {} -> variant {}", barcode, variant.variant_id)
                return finish(IdentifierMatch(variant, MatchType.BARCODE, self.policy.barcode_confidence))

        return finish()
