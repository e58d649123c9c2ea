"""Unit tests for status/stage mapping and fuzzy opportunity matching.

Includes golden examples for the tuned similarity thresholds: a re-keyed
"Canon imagePRESS V700" proposal must match its existing opportunity and an
unrelated supplies deal must not.
"""

from __future__ import annotations

from src.crm_sync.config import Settings
from src.crm_sync.sync.matching import (
    MatchingThresholds,
    amount_score,
    map_opportunity_stage,
    map_opportunity_status,
    score_candidate,
    select_best_match,
    title_score,
    title_tokens,
)
from src.crm_sync.sync.schemas import OpportunityRead, OpportunityStage, OpportunityStatus


def _make_opportunity(**overrides) -> OpportunityRead:
    defaults = {
        "id": "opp-1",
        "company_id": "company-1",
        "title": "Canon imagePRESS V700 — Proposta",
        "stage": OpportunityStage.PROPOSTA,
        "status": OpportunityStatus.OPEN,
        "estimated_value": 125900.0,
    }
    defaults.update(overrides)
    return OpportunityRead(**defaults)


# ── Mapping ────────────────────────────────────────────────────────────────


class TestStatusMapping:
    def test_keywords(self):
        assert map_opportunity_status("Won") == OpportunityStatus.WON
        assert map_opportunity_status("Ganha") == OpportunityStatus.WON
        assert map_opportunity_status("Perdida") == OpportunityStatus.LOST
        assert map_opportunity_status("cancelled") == OpportunityStatus.LOST
        assert map_opportunity_status("Em espera") == OpportunityStatus.ON_HOLD
        assert map_opportunity_status("ongoing") == OpportunityStatus.OPEN
        assert map_opportunity_status(None) == OpportunityStatus.OPEN


class TestStageMapping:
    def test_keywords(self):
        open_ = OpportunityStatus.OPEN
        assert map_opportunity_stage("Proposta enviada", open_) == OpportunityStage.PROPOSTA
        assert map_opportunity_stage("Qualificação", open_) == OpportunityStage.QUALIFICACAO
        assert map_opportunity_stage("Follow-up", open_) == OpportunityStage.FOLLOW_UP
        assert map_opportunity_stage("Stand by", open_) == OpportunityStage.STAND_BY
        assert map_opportunity_stage("Contato inicial", open_) == OpportunityStage.LEAD
        assert map_opportunity_stage("", open_) == OpportunityStage.LEAD

    def test_terminal_status_forces_terminal_stage(self):
        assert (
            map_opportunity_stage("Proposta", OpportunityStatus.WON) == OpportunityStage.GANHO
        )
        assert (
            map_opportunity_stage("Proposta", OpportunityStatus.LOST) == OpportunityStage.PERDIDO
        )


# ── Scoring ────────────────────────────────────────────────────────────────


class TestScoring:
    def test_tokens_drop_stopwords_and_accents(self):
        assert title_tokens("Impressão de Etiquetas para a Gráfica") == {
            "impressao",
            "etiquetas",
            "grafica",
        }

    def test_identical_token_sets_score_one(self):
        assert title_score("Canon imagePRESS V700 — Proposta", "Canon imagePRESS V700 Proposta") == 1.0

    def test_disjoint_titles_score_zero(self):
        assert title_score("Suprimentos Toner", "Canon imagePRESS V700 — Proposta") == 0.0

    def test_containment_is_discounted(self):
        score = title_score("Canon imagePRESS", "Canon imagePRESS V700 Proposta")
        assert 0.9 <= score < 0.93

    def test_shared_code_token_adds_bonus(self):
        without_code = title_score("Locacao impressora", "Locacao impressora contrato anual")
        with_code = title_score("Locacao MX3051", "Locacao MX3051 contrato anual")
        assert with_code > without_code

    def test_amount_score(self):
        assert amount_score(125000, 125900) > 0.99
        assert amount_score(0, 125900) == 0.0
        assert amount_score(None, 10) == 0.0
        assert amount_score(50, 100) == 0.5


# ── Golden Matching Examples ───────────────────────────────────────────────


class TestGoldenMatching:
    """Tuned thresholds must keep these concrete outcomes."""

    def test_rekeyed_proposal_matches(self):
        existing = _make_opportunity()
        score = score_candidate(
            "Canon imagePRESS V700 Proposta",
            125000.0,
            OpportunityStage.PROPOSTA,
            OpportunityStatus.OPEN,
            existing,
        )
        assert score.title >= 0.9
        assert score.amount >= 0.99
        assert score.stage_match
        assert score.score >= 0.74

        decision = select_best_match(
            "Canon imagePRESS V700 Proposta",
            125000.0,
            OpportunityStage.PROPOSTA,
            OpportunityStatus.OPEN,
            [existing],
        )
        assert decision is not None
        assert decision.opportunity_id == "opp-1"
        assert decision.rule == "score"

    def test_unrelated_supplies_deal_does_not_match(self):
        decision = select_best_match(
            "Suprimentos Toner",
            500.0,
            OpportunityStage.PROPOSTA,
            OpportunityStatus.OPEN,
            [_make_opportunity()],
        )
        assert decision is None

    def test_stage_assisted_rule(self):
        existing = _make_opportunity(
            title="Canon imagePRESS V700 locacao anual",
            estimated_value=0.0,
        )
        decision = select_best_match(
            "Canon V700 Proposta",
            0.0,
            OpportunityStage.PROPOSTA,
            OpportunityStatus.OPEN,
            [existing],
        )
        assert decision is not None
        assert decision.rule == "stage_assisted"

    def test_ambiguous_candidates_are_rejected(self):
        first = _make_opportunity(id="opp-1")
        second = _make_opportunity(id="opp-2")
        decision = select_best_match(
            "Canon imagePRESS V700 Proposta",
            125000.0,
            OpportunityStage.PROPOSTA,
            OpportunityStatus.OPEN,
            [first, second],
        )
        assert decision is None

    def test_clear_winner_beats_runner_up(self):
        winner = _make_opportunity(id="opp-1")
        other = _make_opportunity(id="opp-2", title="Suprimentos Toner", estimated_value=500.0)
        decision = select_best_match(
            "Canon imagePRESS V700 Proposta",
            125000.0,
            OpportunityStage.PROPOSTA,
            OpportunityStatus.OPEN,
            [other, winner],
        )
        assert decision is not None
        assert decision.opportunity_id == "opp-1"
        assert decision.runner_up_score is not None

    def test_no_candidates(self):
        assert (
            select_best_match(
                "Canon", 1.0, OpportunityStage.LEAD, OpportunityStatus.OPEN, []
            )
            is None
        )


class TestThresholdsFromSettings:
    def test_overrides_flow_from_settings(self):
        settings = Settings(
            _env_file=None,
            OPPORTUNITY_MATCH_MIN_SCORE=0.9,
            OPPORTUNITY_MATCH_STAGE_ASSISTED_SCORE=0.8,
            OPPORTUNITY_MATCH_AMBIGUITY_GAP=0.1,
        )
        thresholds = MatchingThresholds.from_settings(settings)
        assert thresholds.min_score == 0.9
        assert thresholds.stage_assisted_score == 0.8
        assert thresholds.ambiguity_gap == 0.1
        assert thresholds.title_weight == 0.74
