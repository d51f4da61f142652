import pytest

from categorizer import (
    OTHERS,
    auto_categorize,
    canonical_category_name,
    resolve_category,
)


def test_auto_categorize_matches_merchant_keywords() -> None:
    assert auto_categorize("UBER *TRIP", None) == "Transport"
    assert auto_categorize(None, "NETFLIX.COM") == "Entertainment"
    assert auto_categorize("Drogaria Sao Paulo", None) == "Health"


def test_auto_categorize_first_table_entry_wins() -> None:
    # "ifood" (Food) is listed before "shopping" (Shopping).
    assert auto_categorize("ifood", "shopping center") == "Food"


def test_auto_categorize_returns_none_without_text_or_match() -> None:
    assert auto_categorize(None, None) is None
    assert auto_categorize("  ", "") is None
    assert auto_categorize("Zzz", "Qqq") is None


def test_resolve_category_prefers_stored_category() -> None:
    assert resolve_category("Groceries", "Uber", None) == "Groceries"
    assert resolve_category(None, "Uber", None) == "Transport"
    assert resolve_category("", "Zzz", "Qqq") == OTHERS


def test_resolve_category_is_deterministic() -> None:
    first = resolve_category(None, "Spotify", "Assinatura mensal")
    second = resolve_category(None, "Spotify", "Assinatura mensal")
    assert first == second == "Entertainment"


def test_canonical_category_name_matches_case_insensitively() -> None:
    assert canonical_category_name("food") == "Food"
    assert canonical_category_name("  TRAVEL ") == "Travel"


def test_canonical_category_name_fixes_single_typo() -> None:
    assert canonical_category_name("Fod") == "Food"
    assert canonical_category_name("Transprt") == "Transport"


def test_canonical_category_name_keeps_unknown_or_ambiguous_input() -> None:
    assert canonical_category_name(" Pets ") == "Pets"
    assert canonical_category_name("Tar", known=["Car", "Bar"]) == "Tar"


def test_canonical_category_name_rejects_blank() -> None:
    with pytest.raises(ValueError):
        canonical_category_name("   ")
