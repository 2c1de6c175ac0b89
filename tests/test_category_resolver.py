from statement_import.categories import category_names, resolve_category
from statement_import.models import Category

CATS = [
    Category(id="c-delivery", name="Food Delivery"),
    Category(id="c-food", name="Food"),
    Category(id="c-transport", name="Transport"),
]


def test_exact_match_beats_substring_match():
    # "Food Delivery" comes first and contains "Food", but exact wins.
    assert resolve_category("Food", CATS) == "c-food"


def test_exact_match_is_case_insensitive_and_trimmed():
    assert resolve_category("  transport ", CATS) == "c-transport"


def test_substring_either_direction_first_in_list_order():
    # Suggestion contains a category name.
    assert resolve_category("Public Transport Pass", CATS) == "c-transport"
    # Category name contains the suggestion; first match in list order wins.
    assert resolve_category("deliv", CATS) == "c-delivery"
    assert resolve_category("foo", CATS) == "c-delivery"


def test_no_suggestion_or_no_match_is_uncategorized():
    assert resolve_category(None, CATS) is None
    assert resolve_category("   ", CATS) is None
    assert resolve_category("Rent", CATS) is None
    assert resolve_category("Food", []) is None


def test_category_names_skips_blank_names():
    cats = [*CATS, Category(id="c-blank", name="  ")]
    assert category_names(cats) == ["Food Delivery", "Food", "Transport"]
