"""
Archtivy Matches — Match Scorer & Aggregator

Scores every (project, candidate product) pair from the stored image
signals and upserts one tiered, explained ``MatchRecord`` per pair:

  embedding   max cosine similarity over all image pairs with non-zero
              embeddings, scaled to 0–100
  attribute   mean per-kind Jaccard overlap of the pair whose tags agree
              best (ties go to the lowest image ids); independent of the
              embedding ranking, so a higher similarity never lowers it
  taxonomy    best taxonomy agreement between the candidate and the
              other products already manually linked to the project

  combined = Σ wᵢ·sᵢ / Σ wᵢ   over the applicable signals
             (default weights 0.5 / 0.3 / 0.2; embedding always applies)

A manual project ↔ product link is a floor override: the score is raised
to at least 85 and the tier is ``verified``.  Otherwise:

  score ≥ 70 → strong,  score ≥ 55 → likely,  else possible.

Candidates are scored concurrently (bounded by a semaphore), each in its
own database session.  A failure for one candidate is reported as
``"<product_id>: <message>"`` and never aborts the others.  One deadline
covers the whole call, project lookups included.

When no candidate list is given, candidates are discovered from the
stored product signals: the nearest product images of every project
image, plus the products manually linked to the project.
``compute_all_matches`` recomputes a list of projects (by default every
project with stored signals) one after another.  Existing rows are never
deleted.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from archtivy_matches.config import Settings, get_settings
from archtivy_matches.database import get_session_factory
from archtivy_matches.models.image_signal import ImageSignal
from archtivy_matches.schemas.listing import TaxonomyFields
from archtivy_matches.schemas.match import ComputeMatchesResult, RebuildMatchesResult
from archtivy_matches.services.listing_store import (
    ListingNotFoundError,
    ListingStore,
    ListingStoreError,
)
from archtivy_matches.services.match_store import MatchStore
from archtivy_matches.services.signal_store import ImageSignalStore
from archtivy_matches.services.taxonomy import taxonomy_score

logger = structlog.get_logger("archtivy.matching_service")

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

MATCH_MIN_SCORE = 40
LIKELY_MIN_SCORE = 55
STRONG_MIN_SCORE = 70
MANUAL_LINK_FLOOR_SCORE = 85
EVIDENCE_IMAGE_LIMIT = 5
CANDIDATE_NEIGHBOURS = 50

MANUAL_LINK_REASON_SCORE = 100
MANUAL_LINK_MATCH = "manual_link"

_SIMILARITY_EPSILON = 1e-9


# ──────────────────────────────────────────────────────────────────────────────
# Pure scoring helpers
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PairSimilarity:
    project_image_id: str
    product_image_id: str
    similarity: float
    project_attrs: dict = field(default_factory=dict, compare=False)
    product_attrs: dict = field(default_factory=dict, compare=False)

    @property
    def label(self) -> str:
        return f"{self.project_image_id}:{self.product_image_id}"


@dataclass(frozen=True)
class ScoringWeights:
    embedding: float = 0.5
    attribute: float = 0.3
    taxonomy: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoringWeights":
        return cls(
            embedding=settings.EMBEDDING_WEIGHT,
            attribute=settings.ATTRIBUTE_WEIGHT,
            taxonomy=settings.TAXONOMY_WEIGHT,
        )


@dataclass
class ScoredMatch:
    score: int
    tier: str
    reasons: list[dict]
    evidence_image_ids: list[str]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_score(value: float) -> int:
    return max(0, min(100, round_half_up(value)))


def _is_zero(vector: Sequence[float] | None) -> bool:
    return not vector or not any(vector)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product of two L2-normalized vectors, clamped to [-1, 1]."""
    value = float(np.dot(np.asarray(a, dtype=np.float64), np.asarray(b, dtype=np.float64)))
    return max(-1.0, min(1.0, value))


def pair_similarities(
    project_signals: Iterable[ImageSignal],
    product_signals: Iterable[ImageSignal],
) -> list[PairSimilarity]:
    """All image pairs with non-zero embeddings, strongest first.

    Ties are broken by project image id, then product image id, so the
    order is fully deterministic.
    """
    project_usable = [s for s in project_signals if not _is_zero(s.embedding)]
    product_usable = [s for s in product_signals if not _is_zero(s.embedding)]

    pairs = [
        PairSimilarity(
            project_image_id=proj.image_id,
            product_image_id=prod.image_id,
            similarity=cosine_similarity(proj.embedding, prod.embedding),
            project_attrs=proj.attrs or {},
            product_attrs=prod.attrs or {},
        )
        for proj in project_usable
        for prod in product_usable
    ]
    pairs.sort(key=lambda p: (-p.similarity, p.project_image_id, p.product_image_id))
    return pairs


def embedding_subscore(pairs: Sequence[PairSimilarity]) -> tuple[int, list[str]]:
    """Scaled best similarity plus every pair achieving it."""
    if not pairs:
        return 0, []
    best = pairs[0].similarity
    best_pairs = [p.label for p in pairs if abs(p.similarity - best) <= _SIMILARITY_EPSILON]
    return clamp_score(max(0.0, best) * 100.0), best_pairs


def attribute_overlap(
    attrs_a: dict[str, list[str]],
    attrs_b: dict[str, list[str]],
) -> tuple[int | None, list[str]]:
    """Mean per-kind Jaccard overlap (0–100) and the shared ``kind:tag``s.

    Returns ``(None, [])`` when no attribute kind is present on both sides.
    """
    ratios: list[float] = []
    shared: list[str] = []
    for kind in sorted(set(attrs_a or {}) & set(attrs_b or {})):
        tags_a = {str(t).lower() for t in attrs_a[kind] or []}
        tags_b = {str(t).lower() for t in attrs_b[kind] or []}
        if not tags_a or not tags_b:
            continue
        common = tags_a & tags_b
        ratios.append(len(common) / len(tags_a | tags_b))
        shared.extend(f"{kind}:{tag}" for tag in sorted(common))

    if not ratios:
        return None, []
    return clamp_score(sum(ratios) / len(ratios) * 100.0), shared


def best_attribute_overlap(pairs: Sequence[PairSimilarity]) -> tuple[int | None, list[str]]:
    """Highest ``attribute_overlap`` over all usable pairs.

    Ties go to the lowest (project image id, product image id), so the
    result depends on which pairs exist, never on their similarities.
    """
    best: tuple[int | None, list[str]] = (None, [])
    for pair in sorted(pairs, key=lambda p: (p.project_image_id, p.product_image_id)):
        score, matches = attribute_overlap(pair.project_attrs, pair.product_attrs)
        if score is not None and (best[0] is None or score > best[0]):
            best = (score, matches)
    return best


def linked_taxonomy_subscore(
    candidate: TaxonomyFields | None,
    linked: dict[str, TaxonomyFields],
) -> tuple[int | None, list[str]]:
    """Best taxonomy agreement against the project's linked products."""
    if candidate is None or candidate.is_empty:
        return None, []
    scored = {
        product_id: taxonomy_score(fields, candidate)
        for product_id, fields in linked.items()
        if fields is not None and not fields.is_empty
    }
    if not scored:
        return None, []
    best = max(scored.values())
    return best, sorted(pid for pid, value in scored.items() if value == best)


def combine_scores(
    embedding: int,
    attribute: int | None,
    taxonomy: int | None,
    weights: ScoringWeights,
) -> int:
    """Weighted mean over the applicable signals.

    Inapplicable signals (``None``) drop out and the remaining weights are
    renormalised, so a missing signal never drags the score down.
    """
    terms = [(weights.embedding, embedding)]
    if attribute is not None:
        terms.append((weights.attribute, attribute))
    if taxonomy is not None:
        terms.append((weights.taxonomy, taxonomy))

    total_weight = sum(w for w, _ in terms if w > 0)
    if total_weight <= 0:
        return clamp_score(embedding)
    return clamp_score(sum(w * s for w, s in terms if w > 0) / total_weight)


def tier_for_score(score: int, manual_link: bool = False) -> str:
    if manual_link:
        return "verified"
    if score >= STRONG_MIN_SCORE:
        return "strong"
    if score >= LIKELY_MIN_SCORE:
        return "likely"
    return "possible"


def select_evidence(
    pairs: Sequence[PairSimilarity],
    limit: int = EVIDENCE_IMAGE_LIMIT,
) -> list[str]:
    evidence: dict[str, None] = {}
    for pair in pairs:
        for image_id in (pair.project_image_id, pair.product_image_id):
            if len(evidence) >= limit:
                return list(evidence)
            evidence.setdefault(image_id, None)
    return list(evidence)


def discover_candidates(
    project_signals: Iterable[ImageSignal],
    product_signals: Iterable[ImageSignal],
    top_k: int = CANDIDATE_NEIGHBOURS,
) -> list[str]:
    """Product listings owning a nearest neighbour of any project image.

    For each project image the ``top_k`` most similar product images are
    kept.  Listings are returned by their best similarity, then by id.
    """
    project_usable = sorted(
        (s for s in project_signals if not _is_zero(s.embedding)),
        key=lambda s: s.image_id,
    )
    product_usable = sorted(
        (s for s in product_signals if s.listing_id and not _is_zero(s.embedding)),
        key=lambda s: (s.listing_id, s.image_id),
    )
    if not project_usable or not product_usable or top_k <= 0:
        return []

    queries = np.asarray([s.embedding for s in project_usable], dtype=np.float64)
    index = np.asarray([s.embedding for s in product_usable], dtype=np.float64)
    similarities = np.clip(queries @ index.T, -1.0, 1.0)

    best: dict[str, float] = {}
    for row in similarities:
        for col in np.argsort(-row, kind="stable")[:top_k]:
            listing_id = product_usable[col].listing_id
            similarity = float(row[col])
            if listing_id not in best or similarity > best[listing_id]:
                best[listing_id] = similarity
    return sorted(best, key=lambda listing_id: (-best[listing_id], listing_id))


def score_candidate(
    project_signals: Sequence[ImageSignal],
    product_signals: Sequence[ImageSignal],
    candidate_taxonomy: TaxonomyFields | None,
    linked_taxonomies: dict[str, TaxonomyFields],
    manual_link: bool,
    weights: ScoringWeights,
) -> ScoredMatch:
    """Score one (project, product) pair from its signals.

    Parameters
    ----------
    project_signals, product_signals:
        Stored image signals for each side.
    candidate_taxonomy:
        The candidate product's taxonomy fields, if any.
    linked_taxonomies:
        Taxonomy fields of the other products already linked to the
        project, keyed by product id.  The candidate itself must not be
        among them.
    manual_link:
        Whether a curated project ↔ product link exists.
    weights:
        Signal weights before renormalisation.

    Returns
    -------
    ScoredMatch
        Score, tier, ordered reasons and evidence image ids.
    """
    pairs = pair_similarities(project_signals, product_signals)

    emb_score, emb_matches = embedding_subscore(pairs)
    reasons: list[dict] = [{"type": "embedding", "score": emb_score, "matches": emb_matches}]

    attr_score, attr_matches = best_attribute_overlap(pairs)
    if attr_score is not None:
        reasons.append({"type": "attribute", "score": attr_score, "matches": attr_matches})

    tax_score, tax_matches = linked_taxonomy_subscore(candidate_taxonomy, linked_taxonomies)
    if tax_score is not None:
        reasons.append({"type": "taxonomy", "score": tax_score, "matches": tax_matches})

    score = combine_scores(emb_score, attr_score, tax_score, weights)
    if manual_link:
        score = max(score, MANUAL_LINK_FLOOR_SCORE)
        reasons.append(
            {
                "type": "frequency",
                "score": MANUAL_LINK_REASON_SCORE,
                "matches": [MANUAL_LINK_MATCH],
            }
        )

    return ScoredMatch(
        score=score,
        tier=tier_for_score(score, manual_link),
        reasons=reasons,
        evidence_image_ids=select_evidence(pairs),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Service
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class _ProjectContext:
    signals: list[ImageSignal]
    linked_taxonomies: dict[str, TaxonomyFields]
    discovered: list[str] = field(default_factory=list)


class MatchingService:
    """Computes and persists matches for one project at a time.

    Dependencies are injected at construction so that the service can be
    tested with fakes and shared by the API and the CLI.
    """

    def __init__(
        self,
        listing_store: ListingStore,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        signal_store: ImageSignalStore | None = None,
        match_store: MatchStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.listing_store = listing_store
        self.session_factory = session_factory or get_session_factory()
        self.signal_store = signal_store or ImageSignalStore(settings.EMBEDDING_DIM)
        self.match_store = match_store or MatchStore()

        self.weights = ScoringWeights.from_settings(settings)
        self.max_concurrency = settings.MATCH_MAX_CONCURRENCY
        self.default_timeout = settings.MATCH_TIMEOUT_SECONDS

        logger.info(
            "matching_service_initialised",
            w_embedding=self.weights.embedding,
            w_attribute=self.weights.attribute,
            w_taxonomy=self.weights.taxonomy,
            max_concurrency=self.max_concurrency,
        )

    # ── Public API ────────────────────────────────────────────────────────

    async def compute_and_upsert_matches(
        self,
        project_id: str,
        product_ids: Iterable[str] | None = None,
        timeout: float | None = None,
    ) -> ComputeMatchesResult:
        """Score and upsert every distinct candidate product for a project.

        Parameters
        ----------
        project_id:
            The project whose images are compared.
        product_ids:
            Candidate products.  Duplicates are collapsed; every distinct
            id is attempted exactly once.  ``None`` discovers candidates
            from the stored product signals and the project's manual
            links; an empty collection does nothing.
        timeout:
            Seconds for the whole call (default ``MATCH_TIMEOUT_SECONDS``),
            project lookups included.  Candidates still running when it
            expires are cancelled and reported as timed out.

        Returns
        -------
        ComputeMatchesResult
            Count of upserted rows and one error string per failed
            candidate.  A project-level failure during discovery is
            reported once as ``"<project_id>: <message>"``.
        """
        if not project_id or not project_id.strip():
            raise ValueError("project_id must be a non-empty string")
        if isinstance(product_ids, str):
            raise ValueError("product_ids must be a collection of ids, not a string")
        timeout = self.default_timeout if timeout is None else timeout
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        timed_out = f"timed out after {timeout:g}s"

        candidates: list[str] | None = None
        if product_ids is not None:
            candidates = list(dict.fromkeys(pid for pid in product_ids if pid))
        log = logger.bind(project_id=project_id)
        log.info(
            "compute_matches_start",
            candidates=len(candidates) if candidates is not None else "discover",
        )

        if candidates is not None and not candidates:
            return ComputeMatchesResult(upserted=0, errors=[])

        try:
            context = await asyncio.wait_for(
                self._load_project_context(project_id, discover=candidates is None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            log.warning("project_context_timeout", timeout=timeout)
            return self._fail_all(project_id, candidates, timed_out)
        except ListingStoreError as exc:
            log.warning("project_context_unavailable", error=str(exc))
            return self._fail_all(project_id, candidates, str(exc))

        if candidates is None:
            candidates = context.discovered
            log.info("candidates_discovered", candidates=len(candidates))
            if not candidates:
                return ComputeMatchesResult(upserted=0, errors=[])

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(pid: str) -> str | None:
            async with semaphore:
                return await self._process_candidate(project_id, pid, context)

        tasks = {asyncio.create_task(_bounded(pid)): pid for pid in candidates}
        done, pending = await asyncio.wait(
            tasks.keys(), timeout=max(0.0, deadline - loop.time())
        )

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        upserted = 0
        failures: dict[str, str] = {}
        for task, pid in tasks.items():
            if task in pending:
                failures[pid] = f"{pid}: {timed_out}"
            elif task.exception() is not None:
                failures[pid] = f"{pid}: {task.exception()}"
            elif task.result() is not None:
                failures[pid] = task.result()
            else:
                upserted += 1

        errors = [failures[pid] for pid in candidates if pid in failures]
        log.info("compute_matches_complete", upserted=upserted, errors=len(errors))
        return ComputeMatchesResult(upserted=upserted, errors=errors)

    async def compute_all_matches(
        self,
        project_ids: Iterable[str] | None = None,
        timeout: float | None = None,
    ) -> RebuildMatchesResult:
        """Recompute matches for many projects, one project at a time.

        Each project runs ``compute_and_upsert_matches`` with discovered
        candidates and its own ``timeout``.  ``project_ids=None`` takes
        every project that has stored image signals.  Candidate errors are
        reported as ``"<project_id>/<product_id>: <message>"``; a failing
        project never stops the rest.
        """
        if isinstance(project_ids, str):
            raise ValueError("project_ids must be a collection of ids, not a string")
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")

        if project_ids is None:
            async with self.session_factory() as db_session:
                project_ids = await self.signal_store.list_listing_ids(db_session, "project")
        projects = list(dict.fromkeys(pid for pid in project_ids if pid and pid.strip()))
        logger.info("rebuild_matches_start", projects=len(projects))

        upserted = 0
        errors: list[str] = []
        for project_id in projects:
            try:
                result = await self.compute_and_upsert_matches(project_id, timeout=timeout)
            except Exception as exc:
                logger.error("rebuild_project_failed", project_id=project_id, error=str(exc))
                errors.append(f"{project_id}: {exc}")
                continue
            upserted += result.upserted
            for error in result.errors:
                if error.startswith(f"{project_id}: "):
                    errors.append(error)
                else:
                    errors.append(f"{project_id}/{error}")

        logger.info(
            "rebuild_matches_complete",
            projects=len(projects),
            upserted=upserted,
            errors=len(errors),
        )
        return RebuildMatchesResult(
            projects_processed=len(projects),
            upserted=upserted,
            errors=errors,
        )

    # ── Internal helpers ──────────────────────────────────────────────────

    @staticmethod
    def _fail_all(
        project_id: str,
        candidates: list[str] | None,
        message: str,
    ) -> ComputeMatchesResult:
        if candidates is None:
            errors = [f"{project_id}: {message}"]
        else:
            errors = [f"{pid}: {message}" for pid in candidates]
        return ComputeMatchesResult(upserted=0, errors=errors)

    async def _load_project_context(
        self,
        project_id: str,
        discover: bool = False,
    ) -> _ProjectContext:
        images = await self.listing_store.list_project_images(project_id)
        linked_ids = list(dict.fromkeys(await self.listing_store.list_linked_products(project_id)))

        fields = await asyncio.gather(
            *(self.listing_store.get_taxonomy_fields(linked_id) for linked_id in linked_ids)
        )
        linked_taxonomies = {
            linked_id: value
            for linked_id, value in zip(linked_ids, fields)
            if value is not None
        }

        async with self.session_factory() as db_session:
            signals = await self.signal_store.get_signals(
                db_session, [img.image_id for img in images], source="project"
            )
            product_signals = (
                await self.signal_store.get_listing_signals(db_session, "product")
                if discover
                else []
            )

        discovered: list[str] = []
        if discover:
            discovered = discover_candidates(signals, product_signals)
            seen = set(discovered)
            discovered.extend(pid for pid in linked_ids if pid not in seen)

        logger.debug(
            "project_context_loaded",
            project_id=project_id,
            images=len(images),
            signals=len(signals),
            linked_products=len(linked_taxonomies),
            discovered=len(discovered),
        )
        return _ProjectContext(
            signals=signals,
            linked_taxonomies=linked_taxonomies,
            discovered=discovered,
        )

    async def _process_candidate(
        self,
        project_id: str,
        product_id: str,
        context: _ProjectContext,
    ) -> str | None:
        """Score and upsert one candidate; return an error string on failure."""
        log = logger.bind(project_id=project_id, product_id=product_id)
        try:
            images = await self.listing_store.list_product_images(product_id)
            taxonomy = await self.listing_store.get_taxonomy_fields(product_id)
            manual_link = await self.listing_store.get_manual_link(project_id, product_id)
        except ListingNotFoundError as exc:
            log.warning("candidate_not_found", error=str(exc))
            return f"{product_id}: {exc}"
        except ListingStoreError as exc:
            log.warning("candidate_listing_error", error=str(exc))
            return f"{product_id}: {exc}"

        # A linked candidate is never compared with its own taxonomy.
        linked_taxonomies = {
            linked_id: value
            for linked_id, value in context.linked_taxonomies.items()
            if linked_id != product_id
        }

        try:
            async with self.session_factory() as db_session:
                product_signals = await self.signal_store.get_signals(
                    db_session, [img.image_id for img in images], source="product"
                )
                scored = score_candidate(
                    context.signals,
                    product_signals,
                    taxonomy,
                    linked_taxonomies,
                    manual_link,
                    self.weights,
                )
                await self.match_store.upsert_match(
                    db_session,
                    project_id,
                    product_id,
                    scored.score,
                    scored.tier,
                    scored.reasons,
                    scored.evidence_image_ids,
                )
                await db_session.commit()
        except Exception as exc:
            log.error("candidate_upsert_failed", error=str(exc))
            return f"{product_id}: {exc}"

        log.debug("candidate_scored", score=scored.score, tier=scored.tier)
        return None
