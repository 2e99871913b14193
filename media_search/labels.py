"""Label vocabulary, normalization and concept expansion.

Every label written to or looked up in a label index goes through
``normalize_label`` so raw and normalized forms never mix.
"""

SYNONYMS: dict[str, str] = {
    "seashore": "beach",
    "coast": "beach",
    "seaside": "beach",
    "ocean": "beach",
    "sea": "beach",
    "sundown": "sunset",
    "sunrise": "sunset",
    "dusk": "sunset",
    "dawn": "sunset",
    "meal": "food",
    "dish": "food",
    "restaurant": "food",
    "dinner": "food",
    "lunch": "food",
    "canine": "dog",
    "puppy": "dog",
    "feline": "cat",
    "kitty": "cat",
    "automobile": "car",
    "vehicle": "car",
    "building": "architecture",
    "structure": "architecture",
    "city": "architecture",
    "urban": "architecture",
}

# Query-side concepts mapped to labels the classifier actually emits.
CONCEPTS: dict[str, list[str]] = {
    "outdoor": ["sky", "nature", "landscape", "mountain", "beach", "forest", "grass", "water"],
    "travel": ["sky", "landscape", "mountain", "beach", "architecture", "landmark"],
    "trip": ["sky", "landscape", "mountain", "beach", "architecture", "landmark"],
    "vacation": ["beach", "pool", "resort", "landscape", "mountain", "water"],
    "nature": ["forest", "tree", "flower", "grass", "mountain", "water", "sky", "landscape"],
    "party": ["person", "crowd", "celebration"],
    "wedding": ["person", "dress", "flower", "celebration"],
    "night": ["dark", "light", "illumination"],
    "indoor": ["room", "interior", "furniture"],
    "portrait": ["person", "face"],
    "selfie": ["person", "face"],
}

# Zero-shot vocabulary for the visual classifier. Underscored names are
# prompted with spaces but stored as written.
CLASSIFIER_VOCABULARY: list[str] = [
    # scenery
    "beach", "sunset", "mountain", "forest", "tree", "flower", "grass", "water",
    "lake", "river", "waterfall", "snow", "sky", "cloud", "desert", "landscape",
    "field", "garden", "park", "island", "cave", "volcano",
    # built environment
    "architecture", "landmark", "bridge", "street", "road", "church", "castle",
    "tower", "ruins", "monument", "museum", "stadium", "harbor", "skyline",
    "pool", "resort", "hotel", "room", "interior", "furniture", "kitchen",
    "bedroom", "office", "shop", "market",
    # people
    "person", "face", "crowd", "child", "baby", "group", "dress", "celebration",
    "wedding", "concert", "sport", "dancing",
    # animals
    "dog", "cat", "bird", "horse", "cow", "sheep", "fish", "insect",
    # objects
    "food", "drink", "cake", "fruit", "car", "bicycle", "boat", "airplane",
    "train", "bus", "book", "guitar", "piano", "toy", "document", "text",
    # light
    "night", "dark", "light", "illumination", "fireworks", "candle",
    # screens
    "computer_screen", "monitor", "screenshot", "display",
]

PERSON_LABELS = {"person", "face", "crowd", "child", "baby", "group"}


def normalize_label(label: str) -> str:
    """Lowercase, trim, then map through the synonym table."""
    key = label.strip().lower()
    return SYNONYMS.get(key, key)


def expand_search_terms(terms: list[str]) -> list[str]:
    """Replace high-level concepts with concrete labels, normalized and de-duplicated.

    Order of first appearance is kept. Terms not in the concept table pass
    through normalization unchanged.
    """
    expanded: list[str] = []
    for term in terms:
        key = term.strip().lower()
        if not key:
            continue
        for label in CONCEPTS.get(key, [key]):
            normalized = normalize_label(label)
            if normalized not in expanded:
                expanded.append(normalized)
    return expanded
