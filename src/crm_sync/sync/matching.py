"""Opportunity status/stage mapping and fuzzy deal matching.

Free-text deal status and stage values are mapped onto the closed local
taxonomies by keyword. Deals without an explicit link are matched against
existing opportunities of the same company with a weighted similarity
score over title tokens, amount, stage and status.

The thresholds were tuned empirically and live in MatchingThresholds so
they can be overridden from settings without touching the scoring code.
"""

from __future__ import annotations

import re
from typing import Sequence

from pydantic import BaseModel

from src.crm_sync.config import Settings
from src.crm_sync.sync.normalizers import normalize_text
from src.crm_sync.sync.schemas import OpportunityRead, OpportunityStage, OpportunityStatus

# ── Status / Stage Mapping ──────────────────────────────────────────────────

_STATUS_KEYWORDS: list[tuple[OpportunityStatus, tuple[str, ...]]] = [
    (OpportunityStatus.WON, ("won", "ganh", "success")),
    (OpportunityStatus.LOST, ("lost", "perd", "cancel")),
    (OpportunityStatus.ON_HOLD, ("hold", "espera", "pause")),
]

_STAGE_KEYWORDS: list[tuple[OpportunityStage, tuple[str, ...]]] = [
    (OpportunityStage.PROPOSTA, ("propost", "proposal")),
    (OpportunityStage.QUALIFICACAO, ("qualif",)),
    (OpportunityStage.FOLLOW_UP, ("follow",)),
    (OpportunityStage.STAND_BY, ("stand", "espera")),
    (OpportunityStage.GANHO, ("ganh", "won")),
    (OpportunityStage.PERDIDO, ("perd", "lost")),
]


def map_opportunity_status(value: object) -> OpportunityStatus:
    normalized = normalize_text(value)
    for status, keywords in _STATUS_KEYWORDS:
        if any(keyword in normalized for keyword in keywords):
            return status
    return OpportunityStatus.OPEN


def map_opportunity_stage(value: object, status: OpportunityStatus) -> OpportunityStage:
    """Map a free-text stage onto the funnel.

    Won and lost deals are forced into the matching terminal stage; text
    without a known keyword lands in the first stage.
    """
    if status == OpportunityStatus.WON:
        return OpportunityStage.GANHO
    if status == OpportunityStatus.LOST:
        return OpportunityStage.PERDIDO

    normalized = normalize_text(value)
    for stage, keywords in _STAGE_KEYWORDS:
        if any(keyword in normalized for keyword in keywords):
            return stage
    return OpportunityStage.LEAD


# ── Thresholds ──────────────────────────────────────────────────────────────


class MatchingThresholds(BaseModel):
    """Weights and acceptance thresholds for fuzzy opportunity matching."""

    title_weight: float = 0.74
    amount_weight: float = 0.14
    stage_weight: float = 0.08
    status_weight: float = 0.04
    containment_factor: float = 0.92
    code_bonus: float = 0.18

    min_score: float = 0.74
    stage_assisted_score: float = 0.64
    stage_assisted_title: float = 0.6
    title_only_title: float = 0.82
    title_only_amount: float = 0.55
    ambiguity_gap: float = 0.06

    @classmethod
    def from_settings(cls, settings: Settings) -> MatchingThresholds:
        return cls(
            min_score=settings.OPPORTUNITY_MATCH_MIN_SCORE,
            stage_assisted_score=settings.OPPORTUNITY_MATCH_STAGE_ASSISTED_SCORE,
            ambiguity_gap=settings.OPPORTUNITY_MATCH_AMBIGUITY_GAP,
        )


class MatchScore(BaseModel):
    title: float
    amount: float
    stage_match: bool
    status_match: bool
    score: float


class MatchDecision(BaseModel):
    """Accepted fuzzy match: the winning opportunity and the rule that accepted it."""

    opportunity_id: str
    rule: str
    score: MatchScore
    runner_up_score: float | None = None


# ── Scoring ─────────────────────────────────────────────────────────────────

STOPWORDS = frozenset({
    "a", "o", "as", "os", "de", "da", "do", "das", "dos", "e", "em", "no", "na",
    "para", "por", "com", "um", "uma", "the", "of", "and", "for", "to", "in",
})


def title_tokens(title: object) -> set[str]:
    """Accent/case-normalized word tokens without stopwords."""
    words = re.split(r"[^a-z0-9]+", normalize_text(title))
    return {word for word in words if word and word not in STOPWORDS}


def _is_code_token(token: str) -> bool:
    return len(token) >= 3 and bool(re.search(r"[a-z]", token)) and bool(re.search(r"\d", token))


def title_score(
    left: object,
    right: object,
    thresholds: MatchingThresholds | None = None,
) -> float:
    """Similarity of two titles in [0, 1].

    max(Dice coefficient, containment ratio x 0.92) plus up to 0.18 for
    shared product-code tokens such as "v700" or "mx3051".
    """
    thresholds = thresholds or MatchingThresholds()
    a = title_tokens(left)
    b = title_tokens(right)
    if not a or not b:
        return 0.0

    shared = a & b
    dice = 2 * len(shared) / (len(a) + len(b))
    containment = len(shared) / min(len(a), len(b)) * thresholds.containment_factor
    base = max(dice, containment)

    codes_a = {token for token in a if _is_code_token(token)}
    codes_b = {token for token in b if _is_code_token(token)}
    bonus = 0.0
    if codes_a and codes_b:
        bonus = thresholds.code_bonus * len(codes_a & codes_b) / max(len(codes_a), len(codes_b))

    return min(1.0, base + bonus)


def amount_score(left: float | None, right: float | None) -> float:
    if not left or not right or left <= 0 or right <= 0:
        return 0.0
    return min(left, right) / max(left, right)


def score_candidate(
    title: str,
    amount: float,
    stage: OpportunityStage,
    status: OpportunityStatus,
    candidate: OpportunityRead,
    thresholds: MatchingThresholds | None = None,
) -> MatchScore:
    thresholds = thresholds or MatchingThresholds()
    title_part = title_score(title, candidate.title, thresholds)
    amount_part = amount_score(amount, candidate.estimated_value)
    stage_match = candidate.stage == stage
    status_match = candidate.status == status

    combined = (
        title_part * thresholds.title_weight
        + amount_part * thresholds.amount_weight
        + (thresholds.stage_weight if stage_match else 0.0)
        + (thresholds.status_weight if status_match else 0.0)
    )
    return MatchScore(
        title=title_part,
        amount=amount_part,
        stage_match=stage_match,
        status_match=status_match,
        score=min(1.0, combined),
    )


def acceptance_rule(score: MatchScore, thresholds: MatchingThresholds) -> str | None:
    """Name of the first rule accepting score, or None."""
    if score.score >= thresholds.min_score:
        return "score"
    if (
        score.score >= thresholds.stage_assisted_score
        and score.stage_match
        and score.title >= thresholds.stage_assisted_title
    ):
        return "stage_assisted"
    if score.title >= thresholds.title_only_title and score.amount >= thresholds.title_only_amount:
        return "title_amount"
    return None


def select_best_match(
    title: str,
    amount: float,
    stage: OpportunityStage,
    status: OpportunityStatus,
    candidates: Sequence[OpportunityRead],
    thresholds: MatchingThresholds | None = None,
) -> MatchDecision | None:
    """Pick the best-scoring candidate, or None when nothing is accepted.

    A winner whose runner-up scores within the ambiguity gap is rejected so
    that two similar opportunities are never merged by guesswork.

    Args:
        title: Incoming deal title.
        amount: Incoming deal amount.
        stage: Mapped incoming stage.
        status: Mapped incoming status.
        candidates: Existing opportunities of the same company.
        thresholds: Tuned constants; defaults when omitted.

    Returns:
        MatchDecision for the accepted candidate, or None.
    """
    thresholds = thresholds or MatchingThresholds()
    if not candidates or not title_tokens(title):
        return None

    scored = sorted(
        (
            (score_candidate(title, amount, stage, status, candidate, thresholds), candidate)
            for candidate in candidates
        ),
        key=lambda pair: pair[0].score,
        reverse=True,
    )
    best_score, best = scored[0]
    rule = acceptance_rule(best_score, thresholds)
    if rule is None:
        return None

    runner_up = scored[1][0].score if len(scored) > 1 else None
    if runner_up is not None and best_score.score - runner_up < thresholds.ambiguity_gap:
        return None

    return MatchDecision(
        opportunity_id=best.id,
        rule=rule,
        score=best_score,
        runner_up_score=runner_up,
    )
