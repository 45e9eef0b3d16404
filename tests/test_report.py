from __future__ import annotations

from fruit_freshness.inference.labels import decode_scores
from fruit_freshness.report import confidence_band, result_card


def test_fresh_card() -> None:
    card = result_card(decode_scores([0.0, 0.0, 0.87, 0.0, 0.0, 0.13]))
    assert card.badge == "FRESH"
    assert card.advice == "Good to eat!"
    assert card.fruit == "Oranges"
    assert card.confidence_pct == 87
    assert card.confidence_band == "high"
    assert card.lines()[0] == "Oranges: FRESH"


def test_rotten_degraded_card() -> None:
    card = result_card(decode_scores([0.0, 0.0, 0.0, 0.65, 0.0, 0.35], degraded=True))
    assert card.badge == "ROTTEN"
    assert card.advice == "Consider discarding"
    assert card.fruit == "Apples"
    assert card.confidence_band == "medium"
    assert any("degraded" in ln for ln in card.lines())


def test_confidence_bands() -> None:
    assert confidence_band(0.8) == "high"
    assert confidence_band(0.79) == "medium"
    assert confidence_band(0.6) == "medium"
    assert confidence_band(0.59) == "low"
