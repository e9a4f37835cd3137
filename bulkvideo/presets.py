"""
Preset Library — image style presets and animation motion templates.
Users pick a look, we inject the actual generation prompt.
"""

from typing import Optional

STYLE_PRESETS = {
    # Product photography
    "super-minimalist": {
        "id": "super-minimalist",
        "name": "Super Minimalist",
        "category": "product",
        "base_prompt": (
            "Product only, solid color background, no props, centered composition, "
            "even lighting, ultra clean"
        ),
    },
    "minimalist-product": {
        "id": "minimalist-product",
        "name": "Minimalist Product",
        "category": "product",
        "base_prompt": (
            "Minimalist product photo, white background, soft shadows, centered product, "
            "clean aesthetic"
        ),
    },
    "luxury-product": {
        "id": "luxury-product",
        "name": "Luxury Premium",
        "category": "product",
        "base_prompt": (
            "Luxury product, dark background, dramatic lighting, premium materials, "
            "elegant composition"
        ),
    },
    "floating-product": {
        "id": "floating-product",
        "name": "Floating Product",
        "category": "product",
        "base_prompt": (
            "Floating product, mid-air suspension, clean background, soft shadows, "
            "modern presentation"
        ),
    },
    "gradient-backdrop": {
        "id": "gradient-backdrop",
        "name": "Gradient Backdrop",
        "category": "product",
        "base_prompt": (
            "Product on gradient background, smooth color transition, modern aesthetic, "
            "vibrant colors"
        ),
    },
    "hero-shot": {
        "id": "hero-shot",
        "name": "Epic Hero Shot",
        "category": "product",
        "base_prompt": (
            "Hero shot, dramatic lighting, low angle, cinematic style, high contrast, "
            "powerful presence"
        ),
    },
    # Lifestyle & context
    "lifestyle-context": {
        "id": "lifestyle-context",
        "name": "Lifestyle Context",
        "category": "lifestyle",
        "base_prompt": (
            "Product in lifestyle setting, natural environment, authentic context, "
            "natural lighting"
        ),
    },
    "flat-lay": {
        "id": "flat-lay",
        "name": "Flat Lay Arrangement",
        "category": "lifestyle",
        "base_prompt": (
            "Flat lay composition, top-down view, curated arrangement, complementary props, "
            "balanced layout"
        ),
    },
    "seasonal-holiday": {
        "id": "seasonal-holiday",
        "name": "Seasonal Holiday",
        "category": "lifestyle",
        "base_prompt": "Holiday product shot, festive decorations, warm atmosphere, seasonal colors",
    },
    "eco-natural": {
        "id": "eco-natural",
        "name": "Eco Natural",
        "category": "lifestyle",
        "base_prompt": (
            "Eco product shot, natural materials, earth tones, organic elements, sustainable style"
        ),
    },
    # Tech
    "tech-futuristic": {
        "id": "tech-futuristic",
        "name": "Tech Futuristic",
        "category": "tech",
        "base_prompt": (
            "Tech product, futuristic style, neon accents, dark background, holographic elements"
        ),
    },
    "neon-glow": {
        "id": "neon-glow",
        "name": "Neon Glow",
        "category": "tech",
        "base_prompt": "Neon glow product, vibrant colors, dark contrast, reflective surface, urban style",
    },
    # Abstract
    "abstract-artistic": {
        "id": "abstract-artistic",
        "name": "Abstract Artistic",
        "category": "abstract",
        "base_prompt": (
            "Abstract product art, creative angles, experimental lighting, artistic composition"
        ),
    },
    "geometric-modern": {
        "id": "geometric-modern",
        "name": "Geometric Modern",
        "category": "abstract",
        "base_prompt": (
            "Geometric product shot, clean lines, modern shapes, precise composition, shadow patterns"
        ),
    },
    # Fashion & beauty
    "fashion-editorial": {
        "id": "fashion-editorial",
        "name": "Fashion Editorial",
        "category": "fashion",
        "base_prompt": (
            "Fashion editorial style, sophisticated presentation, luxury aesthetic, perfect lighting"
        ),
    },
    "beauty-glamour": {
        "id": "beauty-glamour",
        "name": "Beauty Glamour",
        "category": "fashion",
        "base_prompt": (
            "Beauty glamour shot, soft lighting, luxurious setting, elegant composition, glossy finish"
        ),
    },
    # Food & beverage
    "food-appetizing": {
        "id": "food-appetizing",
        "name": "Appetizing Food",
        "category": "food",
        "base_prompt": "Food product shot, appetizing styling, warm lighting, fresh presentation",
    },
    "beverage-refreshing": {
        "id": "beverage-refreshing",
        "name": "Refreshing Beverage",
        "category": "food",
        "base_prompt": "Beverage shot, condensation drops, ice cubes, backlit glass, refreshing look",
    },
}


ANIMATION_TEMPLATES = {
    "side-to-side-20": {
        "name": "Gentle Side-to-Side (20°)",
        "prompt": "Stationary view, slow horizontal rotation from -20 to +20 degrees",
    },
    "side-to-side-30": {
        "name": "Medium Side-to-Side (30°)",
        "prompt": "Static camera, simple side-to-side rotation of 30 degrees total, smooth and continuous",
    },
    "pendulum-25": {
        "name": "Pendulum Swing (25°)",
        "prompt": "Fixed perspective, smooth pendulum rotation left to right, 25 degrees total",
    },
    "gentle-orbit": {
        "name": "Gentle Orbit",
        "prompt": "Camera slowly orbits around product, maintaining eye level, 45 degree arc",
    },
    "vertical-tilt": {
        "name": "Vertical Tilt (15°)",
        "prompt": "Fixed position, gentle vertical tilt from -15 to +15 degrees, showing top and bottom",
    },
    "zoom-in-slow": {
        "name": "Slow Zoom In",
        "prompt": "Stationary camera, slow zoom from 100% to 120%, focusing on product center",
    },
    "floating-gentle": {
        "name": "Gentle Float",
        "prompt": "Product gently floating up and down 5%, with subtle 10 degree rotation",
    },
    "360-spin": {
        "name": "Full 360° Spin",
        "prompt": "Fixed camera, product completes one full 360 degree rotation, steady speed",
    },
    "diagonal-pan": {
        "name": "Diagonal Pan",
        "prompt": "Camera pans diagonally from bottom-left to top-right, keeping product centered",
    },
    "static-subtle": {
        "name": "Almost Static",
        "prompt": "Minimal movement, only 5 degree wobble, product stays nearly still",
    },
}

DEFAULT_ANIMATION_TEMPLATE = "side-to-side-20"


def get_preset(preset_id: str) -> dict:
    """Get a style preset. Raises if preset not found."""
    preset = STYLE_PRESETS.get(preset_id)
    if not preset:
        raise ValueError(f"Unknown style preset: {preset_id}. Available: {list(STYLE_PRESETS.keys())}")
    return preset


def get_presets_by_category(category: str) -> list[dict]:
    return [p for p in STYLE_PRESETS.values() if p["category"] == category]


def get_animation_template(template_id: str) -> dict:
    template = ANIMATION_TEMPLATES.get(template_id)
    if not template:
        raise ValueError(
            f"Unknown animation template: {template_id}. Available: {list(ANIMATION_TEMPLATES.keys())}"
        )
    return template


def get_animation_prompt(template_id: Optional[str]) -> str:
    """Template prompt, or the default template's prompt for unknown ids."""
    template = ANIMATION_TEMPLATES.get(template_id or "") or ANIMATION_TEMPLATES[DEFAULT_ANIMATION_TEMPLATE]
    return template["prompt"]


def combine_style_with_preset(user_style: str, preset_id: Optional[str] = None) -> str:
    if not preset_id:
        return f"{user_style}, professional quality, sharp focus"
    preset = STYLE_PRESETS.get(preset_id)
    if not preset:
        return user_style
    return f"{preset['base_prompt']}, {user_style}"


def enhance_prompt_with_style(
    base_prompt: str,
    user_style: str,
    preset_id: Optional[str] = None,
    product_type: Optional[str] = None,
) -> str:
    style = combine_style_with_preset(user_style, preset_id)

    extra = ""
    if product_type:
        kind = product_type.lower()
        if "tech" in kind or "electronic" in kind:
            extra = ", tech aesthetic"
        elif "fashion" in kind or "clothing" in kind:
            extra = ", fashion style"
        elif "food" in kind or "beverage" in kind:
            extra = ", appetizing look"
        elif "beauty" in kind or "cosmetic" in kind:
            extra = ", beauty presentation"

    return f"{base_prompt}. Style: {style}{extra}. Commercial quality."
