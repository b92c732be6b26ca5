"""
Pass-1 signal collection

Turns every evidence source into Signals: the static MCC, vendor and keyword
tables, active learned/manual rule versions, and learned vendor embeddings.
A failing source is logged and skipped, except embedding format errors which
mean the stored vectors are corrupt and must surface.
"""
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from ledgerlens.common.metrics import SIGNAL_SOURCE_FAILURES
from ledgerlens.domain.categorization.caches import OrgScopedCache
from ledgerlens.domain.categorization.embeddings import EmbeddingMatcher
from ledgerlens.domain.categorization.exceptions import EmbeddingFormatError
from ledgerlens.domain.categorization.repositories import RuleVersionRepository
from ledgerlens.domain.categorization.rules.keywords import KeywordMatcher, keyword_matcher as default_keyword_matcher
from ledgerlens.domain.categorization.rules.mcc import MCCStrength, MCCTable, mcc_table as default_mcc_table
from ledgerlens.domain.categorization.rules.vendors import (
    VendorMatcher,
    VendorMatchType,
    normalize_vendor_name,
    vendor_matcher as default_vendor_matcher,
)
from ledgerlens.domain.categorization.schemas import (
    EmbeddingSearchHit,
    NormalizedTransaction,
    RuleType,
    RuleVersion,
    Signal,
    SignalSource,
    SignalStrength,
)
from ledgerlens.domain.categorization.taxonomy import Taxonomy, taxonomy as default_taxonomy

logger = structlog.get_logger()

HIGH_SIMILARITY = 0.92

RULE_VERSION_SOURCES = {
    RuleType.MCC: (SignalSource.MCC, SignalStrength.EXACT),
    RuleType.VENDOR: (SignalSource.VENDOR, SignalStrength.STRONG),
    RuleType.KEYWORD: (SignalSource.KEYWORD, SignalStrength.MEDIUM),
}

VENDOR_STRENGTHS = {
    VendorMatchType.EXACT: SignalStrength.EXACT,
    VendorMatchType.PREFIX: SignalStrength.STRONG,
    VendorMatchType.SUFFIX: SignalStrength.STRONG,
    VendorMatchType.CONTAINS: SignalStrength.STRONG,
    VendorMatchType.REGEX: SignalStrength.MEDIUM,
}


def rule_version_matches(version: RuleVersion, transaction: NormalizedTransaction) -> bool:
    """
    Does a stored rule fire on a transaction?

    mcc rules compare codes, vendor rules look for the normalized identifier
    inside the normalized merchant, keyword rules look inside the description.
    Embedding rules cannot be evaluated without the embedding service.
    """
    if version.rule_type == RuleType.MCC:
        return bool(transaction.mcc) and transaction.mcc.strip() == version.rule_identifier.strip()
    if version.rule_type == RuleType.VENDOR:
        needle = normalize_vendor_name(version.rule_identifier)
        merchant = normalize_vendor_name(transaction.merchant_name)
        return bool(needle) and needle in merchant
    if version.rule_type == RuleType.KEYWORD:
        needle = version.rule_identifier.strip().lower()
        return bool(needle) and needle in (transaction.description or "").lower()
    return False


class RuleEngine:
    """
    Collects Pass-1 signals for a transaction.

    Usage:
        engine = RuleEngine(rule_repository=repo, embedding_matcher=matcher)
        signals = await engine.collect_signals(transaction)
    """

    def __init__(
        self,
        mcc_table: MCCTable = None,
        vendor_matcher: VendorMatcher = None,
        keyword_matcher: KeywordMatcher = None,
        rule_repository: Optional[RuleVersionRepository] = None,
        embedding_matcher: Optional[EmbeddingMatcher] = None,
        taxonomy: Taxonomy = None,
        cache_ttl_seconds: float = 300.0,
    ):
        self.mcc_table = mcc_table or default_mcc_table
        self.vendor_matcher = vendor_matcher or default_vendor_matcher
        self.keyword_matcher = keyword_matcher or default_keyword_matcher
        self.rule_repository = rule_repository
        self.embedding_matcher = embedding_matcher
        self.taxonomy = taxonomy or default_taxonomy
        self._rule_cache: OrgScopedCache[List[RuleVersion]] = OrgScopedCache(
            "active_rules",
            self._load_active_rules,
            ttl_seconds=cache_ttl_seconds,
        )

    async def _load_active_rules(self, org_id: str) -> List[RuleVersion]:
        return await self.rule_repository.list_active(org_id)

    async def refresh_rules(self, org_id: Optional[str]) -> None:
        """Reload active rule versions after a promotion or rollback."""
        if self.rule_repository is None:
            return
        if org_id is None:
            self._rule_cache.clear()
        else:
            await self._rule_cache.refresh(org_id)

    def _signal(self, source, slug, strength, confidence, evidence_key, rationale) -> Signal:
        category = self.taxonomy.require_slug(slug)
        return Signal(
            source=source,
            category_id=category.id,
            category_name=category.name,
            strength=strength,
            confidence=max(0.0, min(1.0, confidence)),
            evidence_key=evidence_key,
            rationale=rationale,
        )

    def mcc_signals(self, transaction: NormalizedTransaction) -> List[Signal]:
        mapping = self.mcc_table.lookup(transaction.mcc)
        if mapping is None:
            return []
        strength = SignalStrength.EXACT if mapping.strength == MCCStrength.EXACT else SignalStrength.STRONG
        return [self._signal(
            SignalSource.MCC,
            mapping.category_slug,
            strength,
            mapping.base_confidence,
            f"mcc:{transaction.mcc.strip()}",
            f"MCC {transaction.mcc.strip()} ({mapping.strength.value}) -> {mapping.category_name}",
        )]

    def vendor_signals(self, transaction: NormalizedTransaction) -> List[Signal]:
        match = self.vendor_matcher.match(transaction.merchant_name)
        if match is None:
            return []
        conflicts = self.vendor_matcher.conflicts_for(transaction.merchant_name)
        if conflicts:
            logger.info(
                "vendor_pattern_conflict",
                transaction_id=transaction.id,
                merchant=transaction.merchant_name,
                patterns=[p.pattern for p in conflicts],
            )
        return [self._signal(
            SignalSource.VENDOR,
            match.pattern.category_slug,
            VENDOR_STRENGTHS[match.match_type],
            match.confidence,
            f"vendor:{match.pattern.pattern}",
            f"Vendor '{match.pattern.pattern}' ({match.match_type.value}) -> {match.pattern.category_name}",
        )]

    def keyword_signals(self, transaction: NormalizedTransaction) -> List[Signal]:
        match = self.keyword_matcher.best_match(transaction.description)
        if match is None:
            return []
        return [self._signal(
            SignalSource.KEYWORD,
            match.category_slug,
            SignalStrength.MEDIUM,
            match.confidence,
            f"keyword:{'+'.join(match.matched_keywords)}",
            "; ".join(match.rationale),
        )]

    async def rule_version_signals(self, transaction: NormalizedTransaction) -> List[Signal]:
        if self.rule_repository is None:
            return []
        signals = []
        for version in await self._rule_cache.get(transaction.org_id):
            if version.rule_type not in RULE_VERSION_SOURCES:
                continue
            if not rule_version_matches(version, transaction):
                continue
            category = self.taxonomy.get_by_id(version.category_id)
            if category is None:
                logger.warning("rule_version_unknown_category", rule_version_id=version.id, category_id=version.category_id)
                continue
            source, strength = RULE_VERSION_SOURCES[version.rule_type]
            scope = "org" if version.org_id else "global"
            signals.append(Signal(
                source=source,
                category_id=category.id,
                category_name=category.name,
                strength=strength,
                confidence=version.confidence,
                evidence_key=f"rule:{version.rule_type.value}:{version.rule_identifier}:v{version.version}",
                rationale=f"{scope} {version.source.value} rule v{version.version} -> {category.name}",
            ))
        return signals

    async def embedding_hits(self, transaction: NormalizedTransaction) -> List[EmbeddingSearchHit]:
        if self.embedding_matcher is None or self.embedding_matcher.client is None:
            return []
        text = transaction.merchant_name or transaction.description
        if not text:
            return []
        return await self.embedding_matcher.search_text(transaction.org_id, text)

    def embedding_signals(self, hits: List[EmbeddingSearchHit]) -> List[Signal]:
        """One signal per category, from its most similar learned vendor."""
        best: Dict[str, EmbeddingSearchHit] = {}
        for hit in hits:
            current = best.get(hit.category_id)
            if current is None or hit.similarity > current.similarity:
                best[hit.category_id] = hit

        signals = []
        for hit in best.values():
            category = self.taxonomy.get_by_id(hit.category_id)
            if category is None:
                continue
            strength = SignalStrength.MEDIUM if hit.similarity >= HIGH_SIMILARITY else SignalStrength.WEAK
            signals.append(Signal(
                source=SignalSource.EMBEDDING,
                category_id=category.id,
                category_name=category.name,
                strength=strength,
                confidence=max(0.0, min(1.0, hit.similarity * hit.confidence)),
                evidence_key=f"embedding:{hit.vendor}",
                rationale=f"Similar to learned vendor '{hit.vendor}' ({hit.similarity:.2f}) -> {category.name}",
            ))
        return signals

    def _source_failed(self, name: str, transaction: NormalizedTransaction) -> None:
        logger.warning("signal_source_failed", source=name, transaction_id=transaction.id, exc_info=True)
        SIGNAL_SOURCE_FAILURES.labels(source=name).inc()

    def _lookup(self, name: str, transaction: NormalizedTransaction, lookup: Callable[[NormalizedTransaction], List[Signal]]) -> List[Signal]:
        try:
            return lookup(transaction)
        except Exception:
            self._source_failed(name, transaction)
            return []

    async def _guarded(self, name: str, transaction: NormalizedTransaction, collect: Callable[[], Awaitable[list]]) -> list:
        try:
            return await collect()
        except EmbeddingFormatError:
            raise
        except Exception:
            self._source_failed(name, transaction)
            return []

    async def collect(self, transaction: NormalizedTransaction, include_embeddings: bool = True):
        """
        Gather every signal plus the raw embedding hits for match tracking.

        Returns:
            (signals, embedding hits)
        """
        signals: List[Signal] = []
        signals += self._lookup("mcc", transaction, self.mcc_signals)
        signals += self._lookup("vendor", transaction, self.vendor_signals)
        signals += self._lookup("keyword", transaction, self.keyword_signals)
        signals += await self._guarded("rule_version", transaction, lambda: self.rule_version_signals(transaction))
        hits = []
        if include_embeddings:
            hits = await self._guarded("embedding", transaction, lambda: self.embedding_hits(transaction))
        signals += self.embedding_signals(hits)

        logger.debug(
            "signals_collected",
            transaction_id=transaction.id,
            count=len(signals),
            sources=sorted({s.source.value for s in signals}),
        )
        return signals, hits

    async def collect_signals(self, transaction: NormalizedTransaction) -> List[Signal]:
        signals, _ = await self.collect(transaction)
        return signals
