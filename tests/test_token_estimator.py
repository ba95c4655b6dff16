"""Tests for token estimation and budget tracking."""

import pytest

from gigwatch_agent.token_estimator import TokenBudget, estimate_tokens


def test_estimate_empty_text():
    assert estimate_tokens("") == 0


def test_estimate_latin_text_rounds_up_per_four_chars():
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("hello world") == 3  # 11 chars -> ceil(11/4)


def test_estimate_cjk_counts_one_per_char():
    assert estimate_tokens("你好世界") == 4


def test_estimate_mixed_text():
    # 2 CJK chars + 5 other chars ("abc, ") -> 2 + ceil(5/4)
    assert estimate_tokens("abc, 你好") == 4


def test_cost_adds_overhead_to_estimate():
    assert TokenBudget.cost("hello world") == 3
    assert TokenBudget.cost("hello world", 12) == 15
    assert TokenBudget.cost("", 64) == 64


def test_budget_charges_and_reports_overflow():
    budget = TokenBudget(limit=100)
    assert budget.fits(100)
    assert not budget.fits(101)

    budget.charge(60)
    assert budget.used == 60
    assert budget.fits(40)
    assert not budget.fits(41)
    assert budget.overflow == 0

    budget.charge(50)
    assert budget.used == 110
    assert budget.overflow == 10


def test_budget_requires_positive_limit():
    with pytest.raises(ValueError, match="limit must be positive"):
        TokenBudget(limit=0)

    with pytest.raises(ValueError, match="limit must be positive"):
        TokenBudget(limit=-1)
