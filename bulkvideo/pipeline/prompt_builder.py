"""
Prompt heuristics for scene images and scene motion.

Everything here is pure: the same row, style and scene order always give the
same image prompt, so one scene's failure cannot leak into another's prompt.
Motion prompts pick from fixed pools with an unseeded random choice.
"""

import re
import random
from typing import Optional

from ..presets import combine_style_with_preset, enhance_prompt_with_style, get_animation_template

MAX_PROMPT_CHARS = 2800

# Product framing: only when a real product image reference is present
PRODUCT_DIRECTIVES = (
    "Product photography focused",
    "faithful to the reference product's shape, colors and logo placement",
    "keep the product label and logo legible",
)

CATEGORY_DIRECTIVES = (
    "Generic category representation",
    "focus on the product type rather than a specific brand",
    "unbranded, no text overlays",
)

SCENE_TYPES = (
    "product in context",
    "close-up details",
    "lifestyle usage",
    "hero shot",
    "product advantages",
)

MINIMAL_SCENE_TYPES = (
    "product on solid background",
    "centered composition",
    "isolated product",
    "product showcase",
)

HEX_DIRECTIVE = re.compile(r"\bHEX\s*[/#]\s*([0-9A-Fa-f]{6})\b", re.IGNORECASE)

HEX_COLOR_NAMES = {
    "000000": "black",
    "FFFFFF": "white",
    "FF0000": "red",
    "00FF00": "bright green",
    "0000FF": "blue",
    "FFFF00": "yellow",
    "FFA500": "orange",
    "800080": "purple",
    "FFC0CB": "pink",
    "808080": "gray",
    "C0C0C0": "silver",
    "FFD700": "gold",
    "A52A2A": "brown",
    "F5F5DC": "beige",
    "000080": "navy blue",
    "008080": "teal",
}
UNKNOWN_COLOR = "solid color"
DEFAULT_BACKGROUND = "white"

SUPER_MINIMAL_MOTIONS = (
    "Static camera, simple side-to-side rotation of 30 degrees total, smooth and continuous",
    "Fixed camera, gentle left-to-right rotation, 15 degrees each direction",
    "Stationary view, slow horizontal rotation from -20 to +20 degrees",
    "No camera movement, product rotates side to side showing left and right profiles",
    "Fixed perspective, smooth pendulum rotation left to right, 25 degrees total",
)

MINIMAL_PRODUCT_MOTIONS = (
    "Subtle zoom in with gentle 10-degree tilt, product stays front-facing",
    "Gentle parallax effect with slight depth, product wobbles 15 degrees maximum",
    "Smooth 10-20 degree sway left to right with soft lighting shift",
    "Minimal camera drift with subtle focus pull, product tilts 10 degrees only",
    "Static shot with gentle lighting sweep, product slightly rocks 10-15 degrees",
)

PRODUCT_MOTIONS = (
    "Camera slowly moves 15 degrees, product tilts slightly maintaining front view",
    "Smooth zoom with product swaying 10-15 degrees to highlight features",
    "Cinematic dolly shot with product tilting 10 degrees, shallow depth",
    "Dynamic lighting shift as product gently wobbles 10-20 degrees",
    "Parallax movement with product rocking 15 degrees maximum, always front-facing",
)

SCENE_MOTIONS = (
    "Cinematic camera movement through the scene with smooth transitions",
    "Atmospheric effects with subtle particle movement and lighting changes",
    "Dynamic parallax with multiple depth layers creating immersive motion",
    "Sweeping camera pan revealing the full scene composition",
    "Ambient movement with natural elements like fabric, smoke, or water",
)

ASPECT_RATIOS = {
    "16:9": 16 / 9,
    "9:16": 9 / 16,
    "4:5": 4 / 5,
    "1:1": 1.0,
}


# ── Heuristics ───────────────────────────────────────────────────────────────

def is_category_image(product_image_url: Optional[str]) -> bool:
    """No usable product image reference → category framing."""
    return not product_image_url or not product_image_url.strip()


def is_super_minimalist(image_style: str, preset_id: Optional[str] = None) -> bool:
    style = (image_style or "").lower()
    return (
        preset_id == "super-minimalist"
        or "super minimal" in style
        or ("product only" in style and "solid" in style)
    )


def hex_to_color_name(hex_value: str) -> str:
    return HEX_COLOR_NAMES.get(hex_value.upper().lstrip("#"), UNKNOWN_COLOR)


def background_phrase(color: str) -> str:
    """'black' → 'solid black background'; the unknown-color phrase is used as is."""
    if color == UNKNOWN_COLOR:
        return f"{UNKNOWN_COLOR} background"
    return f"solid {color} background"


def extract_color_directive(image_style: str) -> tuple[str, Optional[str]]:
    """
    Pull a HEX/rrggbb or HEX#rrggbb token out of a style string.

    Returns the style with the token removed and the color phrase, or None
    when no directive is present. Hex codes never reach the prompt.
    """
    style = image_style or ""
    match = HEX_DIRECTIVE.search(style)
    if not match:
        return style.strip(), None
    cleaned = HEX_DIRECTIVE.sub("", style)
    cleaned = re.sub(r"\s*,\s*(,\s*)+", ", ", cleaned)
    cleaned = re.sub(r"\s{2,}", " ", cleaned).strip(" ,")
    return cleaned, hex_to_color_name(match.group(1))


def extract_product_name(text_content: str) -> str:
    """Leading product name: text before ' by ', a comma, period or dash."""
    text = (text_content or "").strip()
    match = re.match(r"^([^,.\-]+?)(?:\s+by\s+|,|\.|-|$)", text, re.IGNORECASE)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return " ".join(text.split()[:3])


def scene_type(order: int, minimal: bool = False) -> str:
    types = MINIMAL_SCENE_TYPES if minimal else SCENE_TYPES
    return types[order % len(types)]


def optimize_prompt_length(prompt: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    if len(prompt) <= max_chars:
        return prompt
    cut = prompt[:max_chars]
    if " " in cut:
        cut = cut[: cut.rfind(" ")]
    return cut.rstrip(" ,.;")


def image_aspect_ratio(formats: list[str]) -> str:
    """
    Aspect ratio for scene images. A single target format gets its closest
    supported ratio; several formats share a square master that crops well
    into any of them.
    """
    if len(formats) != 1:
        return "1:1"
    try:
        width, height = (int(v) for v in formats[0].lower().split("x"))
    except ValueError:
        return "1:1"
    if width <= 0 or height <= 0:
        return "1:1"
    ratio = width / height
    return min(ASPECT_RATIOS, key=lambda name: abs(ASPECT_RATIOS[name] - ratio))


# ── Prompt assembly ──────────────────────────────────────────────────────────

def build_scene_prompt(
    text_content: str,
    product_image_url: Optional[str],
    image_style: str,
    order: int,
    preset_id: Optional[str] = None,
    batch_name: Optional[str] = None,
    batch_description: Optional[str] = None,
    max_chars: int = MAX_PROMPT_CHARS,
) -> str:
    """
    Image generation prompt for one scene of one row.

    Args:
        text_content:      Row text (primary subject matter).
        product_image_url: Product image reference; blank selects category framing.
        image_style:       Free-text style, may carry a HEX color directive.
        order:             Scene order, selects the scene type.
        preset_id:         Optional style preset id.
        batch_name:        Used as brand context unless the text already names it.
        batch_description: Extra context.
    """
    category = is_category_image(product_image_url)
    style, color = extract_color_directive(image_style)
    minimal = is_super_minimalist(style, preset_id)
    text = (text_content or "").strip()

    if minimal:
        context = [extract_product_name(text) or "Product"]
    else:
        context = [f"Main content: {text}"] if text else ["Product"]
        if batch_name and batch_name.strip() and batch_name.lower() not in text.lower():
            context.append(f"Brand/Project: {batch_name.strip()}")
        if batch_description and batch_description.strip():
            context.append(f"Context: {batch_description.strip()}")

    parts = [". ".join(context), scene_type(order, minimal)]

    if minimal:
        parts.append(
            f"product only on {background_phrase(color or DEFAULT_BACKGROUND)}, no props, "
            "no environment, centered composition, clean studio lighting, ultra minimalist"
        )
    else:
        if style:
            parts.append(combine_style_with_preset(style, preset_id))
        if color:
            parts.append(background_phrase(color))

    parts.extend(CATEGORY_DIRECTIVES if category else PRODUCT_DIRECTIVES)
    return optimize_prompt_length(", ".join(parts), max_chars)


def build_override_prompt(
    prompt: str,
    image_style: str,
    preset_id: Optional[str] = None,
    product_type: Optional[str] = None,
) -> str:
    """Operator-supplied scene prompt, wrapped with the item's style."""
    style, color = extract_color_directive(image_style)
    if color:
        style = f"{style}, {background_phrase(color)}" if style else background_phrase(color)
    return optimize_prompt_length(enhance_prompt_with_style(prompt.strip(), style, preset_id, product_type))


def build_motion_prompt(
    image_style: str,
    is_product: bool,
    preset_id: Optional[str] = None,
    template_id: Optional[str] = None,
) -> str:
    """Animation prompt. Explicit template wins, otherwise a pool pick by style."""
    if template_id:
        return get_animation_template(template_id)["prompt"]

    if is_super_minimalist(image_style, preset_id):
        return random.choice(SUPER_MINIMAL_MOTIONS)

    style = (image_style or "").lower()
    minimal = any(word in style for word in ("minimal", "clean", "simple"))

    if minimal and is_product:
        return random.choice(MINIMAL_PRODUCT_MOTIONS)
    if is_product:
        return random.choice(PRODUCT_MOTIONS)
    return random.choice(SCENE_MOTIONS)


# ── Model-written prompts ────────────────────────────────────────────────────

MAX_MOTION_PROMPT_CHARS = 400

# First match wins, checked against the lowercased style
MOTION_STYLE_GUIDELINES = (
    (("minimal", "clean"), "MINIMALIST", (
        "Subtle, elegant movements only",
        "Prefer slow zooms or gentle parallax",
        "Simple product tilts of 10-15 degrees at most, or lighting shifts",
        "Emphasize stillness with minimal motion accents",
    )),
    (("luxury", "premium", "elegant"), "LUXURY/PREMIUM", (
        "Smooth, cinematic camera movements",
        "Subtle depth of field changes",
        "Graceful reveals or gentle tilts of 10-20 degrees at most",
        "Highlight premium details and textures",
    )),
    (("dynamic", "energetic", "vibrant"), "DYNAMIC/ENERGETIC", (
        "Bold camera movements, dynamic zooms and pans",
        "Energetic parallax, speed ramps",
        "Create visual excitement and momentum",
    )),
    (("lifestyle", "natural", "authentic"), "LIFESTYLE/NATURAL", (
        "Organic, handheld-style movements",
        "Ambient environmental motion, light flares or particles",
        "Keep movements fluid and lifelike",
    )),
    (("tech", "futuristic", "modern"), "TECH/MODERN", (
        "Precise, geometric camera movements",
        "Sleek product reveals, sharp clean transitions",
        "Emphasize technological sophistication",
    )),
    (("vintage", "retro", "classic"), "VINTAGE/RETRO", (
        "Nostalgic, film-style camera movements",
        "Subtle grain or light leak effects",
        "Emphasize warmth and character",
    )),
)

MOTION_RULES = (
    "Never rotate beyond 20 degrees in any direction",
    "The product always stays front-facing, never show its back or profile",
    "Prefer 'gentle tilt', 'subtle wobble', 'slight sway' over 'rotation' or 'turn'",
)

VISION_MINIMAL_MARKERS = ("product only", "solid color background", "solid background")

UNBRANDED_REQUIREMENTS = (
    "No logos, brand marks, company names or trademarks",
    "No text on the product itself",
    "Generic category representation, product type rather than a specific brand",
)

PRODUCT_REQUIREMENTS = (
    "Stay faithful to the reference product's shape, colors and logo placement",
)

COMMON_REQUIREMENTS = (
    "Never use HEX color codes, describe colors by name (e.g. 'vibrant green')",
    "Include only essential details about subject, lighting and composition",
)


def motion_style_guidelines(image_style: str) -> str:
    """Style block for a model-written motion prompt; empty when no style family matches."""
    style = (image_style or "").lower()
    for keywords, label, rules in MOTION_STYLE_GUIDELINES:
        if any(word in style for word in keywords):
            return f"STYLE REQUIREMENTS - {label}:\n" + "\n".join(f"- {rule}" for rule in rules)
    return ""


def vision_says_minimal(analysis: str) -> bool:
    """The still itself turned out to be a bare product shot."""
    text = (analysis or "").lower()
    return any(marker in text for marker in VISION_MINIMAL_MARKERS)


def refinement_requirements(is_category: bool) -> list[str]:
    """Hard requirements for a model-refined scene prompt."""
    framing = UNBRANDED_REQUIREMENTS if is_category else PRODUCT_REQUIREMENTS
    return [*framing, *COMMON_REQUIREMENTS]


def clean_model_prompt(text: str, max_chars: int) -> str:
    """Strip quotes and labels a model wraps around a prompt, then cap its length."""
    cleaned = re.sub(r"^\s*(animation|motion|image)?\s*prompt\s*:\s*", "", text or "", flags=re.IGNORECASE)
    cleaned = re.sub(r"\s+", " ", cleaned).strip().strip("\"'").strip()
    return optimize_prompt_length(cleaned, max_chars)
