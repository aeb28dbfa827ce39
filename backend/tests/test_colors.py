import pytest

from doya_banner.colors import (
    MIN_SUB_DISTANCE,
    color_distance,
    colorful_first,
    expand_hex,
    is_near_neutral_hex,
    normalize_css_color_to_hex,
    select_sub_colors,
)


@pytest.mark.parametrize("hx", ["#FFFFFF", "#000000", "#F8F8F8", "#808080", "#7A7F80"])
def test_neutral_colors(hx):
    assert is_near_neutral_hex(hx)


@pytest.mark.parametrize("hx", ["#FF0000", "#0057FF", "#1A73E8"])
def test_saturated_colors_are_not_neutral(hx):
    assert not is_near_neutral_hex(hx)


def test_normalize_css_color():
    assert normalize_css_color_to_hex("#abc") == "#AABBCC"
    assert normalize_css_color_to_hex(" #1a73e8 ") == "#1A73E8"
    assert normalize_css_color_to_hex("rgb(26, 115, 232)") == "#1A73E8"
    assert normalize_css_color_to_hex("rgba(255,0,0,0.05)") is None
    assert normalize_css_color_to_hex("transparent") is None
    assert expand_hex("#12345") is None


def test_color_distance_invalid_input():
    assert color_distance("#FF0000", "red") == 999.0
    assert color_distance("#000000", "#000000") == 0


def test_colorful_first_keeps_order_within_groups():
    assert colorful_first(["#FFFFFF", "#FF0000", "#000000", "#0057FF"]) == ["#FF0000", "#0057FF", "#FFFFFF", "#000000"]


def test_sub_colors_keep_distance():
    main = "#1A73E8"
    ranked = ["#1B74E9", "#FF0000", "#FE0101", "#00AA55", "#FFCC00", "#0A0A0A"]
    subs = select_sub_colors(main, ranked)
    assert subs == ["#FF0000", "#00AA55", "#FFCC00"]
    for i, s in enumerate(subs):
        assert color_distance(main, s) >= MIN_SUB_DISTANCE
        for other in subs[i + 1:]:
            assert color_distance(s, other) >= MIN_SUB_DISTANCE


def test_sub_colors_skip_neutrals_until_two_accents():
    subs = select_sub_colors("#1A73E8", ["#FFFFFF", "#FF0000", "#00AA55", "#000000"])
    assert subs[:2] == ["#FF0000", "#00AA55"]
    assert subs[2] == "#000000"


def test_sub_colors_neutral_backfill():
    # only one accent: neutrals are admitted in the backfill pass
    subs = select_sub_colors("#1A73E8", ["#FFFFFF", "#FF0000", "#FEFEFE"])
    assert subs[0] == "#FF0000"
    assert "#FFFFFF" in subs
    assert all(color_distance("#1A73E8", s) >= MIN_SUB_DISTANCE for s in subs)
