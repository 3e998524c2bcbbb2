from factmemory.utils.normalization import clean_name, normalize_name, unique_preserving_order


def test_clean_name_keeps_case_and_trims():
    assert clean_name("  Holly!  ") == "Holly"
    assert clean_name("New   York") == "New York"
    assert clean_name("") == ""


def test_normalize_name_is_case_insensitive():
    assert normalize_name(" holly") == normalize_name("HOLLY") == "holly"


def test_unique_preserving_order_keeps_first_spelling():
    assert unique_preserving_order(["Holly", "Benny", "holly"]) == ["Holly", "Benny"]
