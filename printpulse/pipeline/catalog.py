"""
Catalogs — fixed reference data for discovery and mockups.

Design styles bias trend discovery and design generation. Mockup variants
define the ordered batch the mockup stage runs for every design.
"""

from .models import DesignStyle, MockupVariant

DESIGN_STYLES = {
    "retro": DesignStyle(
        id="retro",
        name="Retro/Vintage",
        description="Designs inspired by the 1970s, 80s, and 90s.",
        elements=(
            "Wavy text, distressed graphics, muted or retro color palettes "
            "(mustard yellow, burnt orange, avocado green), groovy fonts."
        ),
    ),
    "minimalist": DesignStyle(
        id="minimalist",
        name="Minimalist/Typography",
        description="Simple, clean text-based designs that are easy to read.",
        elements=(
            "Short, witty, or sentimental phrases. Clean typography. High contrast. "
            "'Merry & Bright', 'In My Christmas Era'."
        ),
    ),
    "personalization": DesignStyle(
        id="personalization",
        name="Personalization",
        description="Designs that allow for custom names, dates, or family titles.",
        elements=(
            "Layouts with clear space for names like 'Mama Claus', 'Est. 2024'. "
            "Family crest styles."
        ),
    ),
    "humor": DesignStyle(
        id="humor",
        name="Niche Humor",
        description="Targeting specific groups or interests with a holiday twist.",
        elements=(
            "Puns, specific hobbies (nurses, teachers), funny holiday twists. "
            "'All I Want for Christmas is More Coffee'."
        ),
    ),
}

MOCKUP_VARIANTS = (
    MockupVariant(color="white", scene="folded neatly on a wooden table"),
    MockupVariant(color="black", scene="hanging on a minimal rack"),
    MockupVariant(color="heather grey", scene="worn by a smiling person in a coffee shop"),
    MockupVariant(color="navy", scene="flat lay with holiday decorations"),
    MockupVariant(color="red", scene="worn by a person outdoors"),
    MockupVariant(color="white", scene="close up on the print texture"),
    MockupVariant(color="black", scene="back view worn by model"),
    MockupVariant(color="forest green", scene="folded with jeans"),
    MockupVariant(color="maroon", scene="lifestyle shot at a party"),
)


def get_style(style_id: str) -> DesignStyle:
    """Look up a design style. Raises if the id is not in the catalog."""
    style = DESIGN_STYLES.get(style_id)
    if not style:
        raise ValueError(f"Unknown design style: {style_id}. Available: {list(DESIGN_STYLES.keys())}")
    return style


def list_styles() -> list[DesignStyle]:
    return list(DESIGN_STYLES.values())
