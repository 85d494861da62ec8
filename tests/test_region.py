"""Unit tests for evidence.services.region — context choice and crop clamping."""

import pytest

from evidence.schemas.capture import Viewport
from evidence.services.region import (
    RegionCalculator,
    RegionLimits,
    choose_context,
    clamp_region,
    container_score,
    is_card_grid,
)

from tests.conftest import FakePage

VIEWPORT = Viewport(width=1440, height=900)
LIMITS = RegionLimits(padding=40, min_width=300, max_width=1200, min_height=200, max_height=800)


def _rect(x, y, w, h):
    return {"x": x, "y": y, "width": w, "height": h}


class TestCardGrid:
    def test_similar_siblings_are_a_grid(self):
        children = [_rect(0, 0, 400, 300), _rect(420, 0, 400, 300), _rect(840, 0, 410, 290)]
        assert is_card_grid(children)

    def test_one_large_child_is_not_a_grid(self):
        assert not is_card_grid([_rect(0, 0, 400, 300), _rect(0, 300, 400, 20)])

    def test_small_children_never_count(self):
        # Inline links / icons repeat in size but are not cards
        children = [_rect(i * 30, 0, 24, 24) for i in range(10)]
        assert not is_card_grid(children)

    def test_dissimilar_children(self):
        assert not is_card_grid([_rect(0, 0, 400, 300), _rect(0, 0, 900, 600)])


class TestContainerScore:
    def test_card_and_article_rank_highest(self):
        assert container_score("div", "product-card", _rect(0, 0, 300, 300)) == 10
        assert container_score("article", "", _rect(0, 0, 300, 300)) == 10

    def test_hero_and_banner(self):
        assert container_score("div", "Hero", _rect(0, 0, 300, 300)) == 8

    def test_section_and_container(self):
        assert container_score("section", "", _rect(0, 0, 300, 300)) == 5
        assert container_score("section", "", _rect(0, 0, 300, 700)) == 0
        assert container_score("div", "container", _rect(0, 0, 300, 400)) == 3

    def test_generic(self):
        assert container_score("div", "", _rect(0, 0, 300, 300)) == 0


class TestChooseContext:
    def test_card_grid_scenario_picks_section(self):
        """<p> in <section> in a grid <div> with three same-sized sibling divs."""
        p = _rect(100, 200, 380, 40)
        section = _rect(90, 150, 400, 300)
        siblings = [_rect(510, 150, 400, 300), _rect(930, 150, 400, 300), _rect(90, 470, 400, 300)]
        ancestors = [
            {"tag": "section", "classes": "", "rect": section, "children": [p]},
            {"tag": "div", "classes": "grid", "rect": _rect(50, 100, 1300, 700), "children": [section] + siblings},
        ]
        choice = choose_context(p, ancestors)
        assert choice is not None
        assert choice.tag == "section"
        assert choice.depth == 0

    def test_oversized_ancestor_rejected(self):
        el = _rect(0, 0, 300, 100)
        ancestors = [{"tag": "article", "classes": "", "rect": _rect(0, 0, 1400, 2000), "children": []}]
        assert choose_context(el, ancestors) is None

    def test_much_larger_ancestor_scores_zero(self):
        el = _rect(0, 0, 50, 20)
        ancestors = [{"tag": "article", "classes": "", "rect": _rect(0, 0, 600, 400), "children": []}]
        assert choose_context(el, ancestors) is None

    def test_tight_ancestor_gets_bonus(self):
        el = _rect(0, 0, 300, 100)
        ancestors = [
            {"tag": "section", "classes": "", "rect": _rect(0, 0, 320, 120), "children": []},
            {"tag": "section", "classes": "", "rect": _rect(0, 0, 500, 300), "children": []},
        ]
        choice = choose_context(el, ancestors)
        assert choice.score == 7
        assert choice.depth == 0

    def test_depth_is_bounded(self):
        el = _rect(0, 0, 300, 100)
        filler = {"tag": "div", "classes": "", "rect": _rect(0, 0, 600, 200), "children": []}
        card = {"tag": "div", "classes": "card", "rect": _rect(0, 0, 320, 120), "children": []}
        assert choose_context(el, [filler] * 5 + [card], max_depth=5) is None


class TestClampRegion:
    def test_padding_applied(self):
        region = clamp_region(_rect(100, 100, 400, 300), VIEWPORT, LIMITS)
        assert (region.x, region.y, region.width, region.height) == (60, 60, 480, 380)

    def test_minimums_enforced(self):
        region = clamp_region(_rect(500, 400, 10, 10), VIEWPORT, LIMITS)
        assert region.width == 300
        assert region.height == 200

    def test_maximums_enforced(self):
        region = clamp_region(_rect(0, 0, 1400, 900), VIEWPORT, LIMITS)
        assert region.width == 1200
        assert region.height == 800

    @pytest.mark.parametrize(
        "rect",
        [
            _rect(1430, 890, 5, 5),
            _rect(-50, -80, 200, 100),
            _rect(0, 0, 1440, 900),
            _rect(1200, 10, 600, 1200),
            _rect(720, 450, 0, 0),
        ],
    )
    def test_never_exceeds_viewport_or_undercuts_minimums(self, rect):
        region = clamp_region(rect, VIEWPORT, LIMITS)
        assert region.x >= 0 and region.y >= 0
        assert region.right <= VIEWPORT.width
        assert region.bottom <= VIEWPORT.height
        assert region.width >= LIMITS.min_width
        assert region.height >= LIMITS.min_height

    def test_viewport_smaller_than_minimum_wins(self):
        tiny = Viewport(width=250, height=150)
        region = clamp_region(_rect(0, 0, 10, 10), tiny, LIMITS)
        assert region.width == 250
        assert region.height == 150


class TestRegionCalculator:
    def test_compute_uses_context(self):
        calc = RegionCalculator(limits=LIMITS)
        p = _rect(100, 200, 380, 40)
        ancestors = [{"tag": "article", "classes": "", "rect": _rect(90, 150, 400, 300), "children": [p]}]
        region, choice = calc.compute(p, ancestors, VIEWPORT)
        assert choice.tag == "article"
        assert (region.x, region.y, region.width, region.height) == (50, 110, 480, 380)

    def test_compute_without_context_crops_element(self):
        calc = RegionCalculator(limits=LIMITS)
        region, choice = calc.compute(_rect(100, 100, 400, 300), [], VIEWPORT)
        assert choice is None
        assert region.width == 480

    @pytest.mark.asyncio
    async def test_region_for_missing_target_is_whole_viewport(self, fake_page: FakePage):
        region, choice = await RegionCalculator(limits=LIMITS).region_for_target(fake_page)
        assert choice is None
        assert (region.width, region.height) == (VIEWPORT.width, VIEWPORT.height)
