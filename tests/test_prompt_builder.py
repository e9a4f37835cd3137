import pytest

from bulkvideo.pipeline import prompt_builder as pb
from bulkvideo.pipeline.prompt_builder import (
    CATEGORY_DIRECTIVES,
    PRODUCT_DIRECTIVES,
    build_motion_prompt,
    build_override_prompt,
    build_scene_prompt,
    extract_color_directive,
    image_aspect_ratio,
    optimize_prompt_length,
)
from bulkvideo.presets import ANIMATION_TEMPLATES, DEFAULT_ANIMATION_TEMPLATE, get_animation_prompt


@pytest.mark.parametrize("product_image_url", [None, "", "   "])
def test_blank_product_image_selects_category_framing(product_image_url):
    prompt = build_scene_prompt("Aurora headphones", product_image_url, "studio lighting", order=0)

    for directive in PRODUCT_DIRECTIVES:
        assert directive not in prompt
    for directive in CATEGORY_DIRECTIVES:
        assert directive in prompt


def test_product_image_selects_product_framing():
    prompt = build_scene_prompt("Aurora headphones", "https://cdn.example.com/a.png", "studio lighting", order=0)

    for directive in PRODUCT_DIRECTIVES:
        assert directive in prompt
    for directive in CATEGORY_DIRECTIVES:
        assert directive not in prompt


@pytest.mark.parametrize("style, color, phrase", [
    ("clean, HEX/000000", "black", "solid black background"),
    ("HEX#ff0000 backdrop", "red", "solid red background"),
    ("studio HEX/123456", "solid color", "solid color background"),
])
def test_hex_directives_become_color_names(style, color, phrase):
    cleaned, found = extract_color_directive(style)

    assert found == color
    assert "HEX" not in cleaned.upper()

    prompt = build_scene_prompt("Aurora", None, style, order=0)
    assert phrase in prompt
    assert "HEX" not in prompt


def test_no_color_directive():
    assert extract_color_directive("studio lighting") == ("studio lighting", None)


def test_super_minimalist_defaults_to_white_background():
    prompt = build_scene_prompt("Aurora headphones, by Acme", None, "super minimal", order=1)

    assert "solid white background" in prompt
    assert prompt.startswith("Aurora headphones")
    assert "Main content" not in prompt


def test_scene_types_cycle_with_order():
    first = build_scene_prompt("Aurora", None, "", order=0)
    again = build_scene_prompt("Aurora", None, "", order=len(pb.SCENE_TYPES))
    other = build_scene_prompt("Aurora", None, "", order=1)

    assert first == again
    assert first != other


def test_batch_name_added_only_when_not_in_text():
    assert "Brand/Project: Acme" in build_scene_prompt("Aurora", None, "", 0, batch_name="Acme")
    assert "Brand/Project" not in build_scene_prompt("Acme Aurora", None, "", 0, batch_name="Acme")


def test_prompt_length_is_capped():
    prompt = build_scene_prompt("word " * 2000, None, "studio", order=0)
    assert len(prompt) <= pb.MAX_PROMPT_CHARS

    assert optimize_prompt_length("short prompt") == "short prompt"
    assert optimize_prompt_length("alpha beta gamma", max_chars=12) == "alpha beta"


@pytest.mark.parametrize("formats, ratio", [
    (["1080x1920"], "9:16"),
    (["1920x1080"], "16:9"),
    (["1080x1350"], "4:5"),
    (["1080x1080"], "1:1"),
    (["1080x1920", "1920x1080"], "1:1"),
    (["bogus"], "1:1"),
])
def test_image_aspect_ratio(formats, ratio):
    assert image_aspect_ratio(formats) == ratio


def test_motion_prompt_pools():
    assert build_motion_prompt("super minimal", is_product=True) in pb.SUPER_MINIMAL_MOTIONS
    assert build_motion_prompt("clean studio", is_product=True) in pb.MINIMAL_PRODUCT_MOTIONS
    assert build_motion_prompt("luxury", is_product=True) in pb.PRODUCT_MOTIONS
    assert build_motion_prompt("luxury", is_product=False) in pb.SCENE_MOTIONS


def test_motion_template_wins():
    template_id = next(iter(ANIMATION_TEMPLATES))
    assert build_motion_prompt("luxury", True, template_id=template_id) == ANIMATION_TEMPLATES[template_id]["prompt"]

    with pytest.raises(ValueError):
        build_motion_prompt("luxury", True, template_id="does-not-exist")


def test_animation_prompt_falls_back_to_default_template():
    default = ANIMATION_TEMPLATES[DEFAULT_ANIMATION_TEMPLATE]["prompt"]
    assert get_animation_prompt("does-not-exist") == default
    assert get_animation_prompt(None) == default


def test_override_prompt_keeps_operator_text():
    prompt = build_override_prompt("  on a marble plinth ", "HEX/FFD700")

    assert prompt.startswith("on a marble plinth")
    assert "solid gold background" in prompt
