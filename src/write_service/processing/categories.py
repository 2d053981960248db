"""
categories.py
Maps free-text NYC 311 complaint types onto our fixed categories.

Categories overlap lexically ("Construction Noise", "Air Conditioner Noise"),
so classification walks one ordered table of (category, predicate) rows and
the first predicate that matches wins. Adding a keyword or a category means
adding to RULES, never restructuring it.

Example:
    >>> classify("Noise - Residential")
    'noise'
    >>> classify("Construction Noise")
    'construction'
"""

from typing import Callable, List, Optional, Tuple

RATS = "rats"
NOISE = "noise"
PARKING = "parking"
TRASH = "trash"
HEAT_WATER = "heat_water"
CONSTRUCTION = "construction"
BUILDING = "building"
BIKES = "bikes"
OTHER = "other"

# Column order used by the aggregate tables and API payloads
CATEGORIES = (RATS, NOISE, PARKING, TRASH, HEAT_WATER, CONSTRUCTION, BUILDING, BIKES, OTHER)

CATEGORY_CONFIG = {
    RATS: {"label": "Rats", "description": "Rodent sightings"},
    NOISE: {"label": "Noise", "description": "Noise complaints"},
    PARKING: {"label": "Parking", "description": "Parking violations"},
    TRASH: {"label": "Trash", "description": "Sanitation issues"},
    HEAT_WATER: {"label": "Heat/Water", "description": "Utilities issues"},
    CONSTRUCTION: {"label": "Construction", "description": "Construction noise & permits"},
    BUILDING: {"label": "Building", "description": "Unsafe buildings & violations"},
    BIKES: {"label": "Bikes", "description": "Bike & scooter issues"},
    OTHER: {"label": "Other", "description": "Other complaints"},
}

Predicate = Callable[[str], bool]


def any_of(*keywords: str) -> Predicate:
    """Match when any keyword is a substring of the (lower-cased) text."""
    return lambda text: any(keyword in text for keyword in keywords)


def all_of(*predicates: Predicate) -> Predicate:
    return lambda text: all(predicate(text) for predicate in predicates)


def none_of(*keywords: str) -> Predicate:
    return lambda text: not any(keyword in text for keyword in keywords)


def either(*predicates: Predicate) -> Predicate:
    return lambda text: any(predicate(text) for predicate in predicates)


_AIR_CONDITIONING = any_of("air conditioner", "air conditioning")

RAT_RULE = any_of("rodent", "rat", "mouse", "mice")

# Checked before noise: "Noise - Construction", "After Hours Work"
CONSTRUCTION_RULE = any_of(
    "construction", "after hours", "building permit", "crane", "sidewalk shed",
    "scaffolding", "work permit", "demolition", "excavation",
)

BUILDING_RULE = any_of(
    "unsafe", "illegal conversion", "building condition", "elevator", "lead", "mold",
    "structural", "fire safety", "vacant building", "illegal apartment",
    "certificate of occupancy", "building violation", "hpd", "maintenance",
)

BIKE_RULE = any_of(
    "bike", "bicycle", "scooter", "e-bike", "ebike", "citibike", "citi bike", "revel",
    "blocked bike lane", "bike lane",
)

NOISE_RULE = either(
    any_of("noise", "loud", "barking", "music", "party"),
    all_of(any_of("alarm"), none_of("fire alarm")),
    any_of("siren"),
    all_of(_AIR_CONDITIONING, any_of("noise")),
    any_of("generator", "amplified"),
    all_of(any_of("vehicle"), any_of("horn", "car alarm")),
)

PARKING_RULE = either(
    any_of(
        "parking", "blocked driveway", "blocked hydrant", "blocked fire lane", "double parked",
        "posted parking", "illegal parking", "fire hydrant",
    ),
    all_of(any_of("hydrant"), none_of("catch basin")),
    all_of(any_of("vehicle"), any_of("blocked", "illegal", "parked"), none_of("abandoned")),
)

TRASH_RULE = either(
    any_of(
        "sanitation", "trash", "garbage", "litter", "dirty", "graffiti", "unsanitary",
        "dumping", "illegal dump", "missed collection", "derelict", "abandoned vehicle",
        "dead animal", "street condition", "overflowing", "receptacle", "sidewalk condition",
        "dumpster", "pothole", "street light", "streetlight", "tree", "broken glass",
        "broken bottle", "hazardous", "debris", "waste", "refuse", "collection", "bulk",
    ),
    all_of(any_of("furniture"), any_of("street")),
)

HEAT_WATER_RULE = either(
    any_of(
        "heat", "hot water", "water system", "water leak", "water main", "plumbing",
        "boiler", "radiator", "no heat", "sewer", "catch basin", "gas", "electric",
        "electrical", "power", "steam", "heating", "hvac",
    ),
    all_of(_AIR_CONDITIONING, none_of("noise")),
)

# Priority order matters: first match wins.
RULES: List[Tuple[str, Predicate]] = [
    (RATS, RAT_RULE),
    (CONSTRUCTION, CONSTRUCTION_RULE),
    (BUILDING, BUILDING_RULE),
    (BIKES, BIKE_RULE),
    (NOISE, NOISE_RULE),
    (PARKING, PARKING_RULE),
    (TRASH, TRASH_RULE),
    (HEAT_WATER, HEAT_WATER_RULE),
]


def classify(complaint_type: Optional[str]) -> str:
    """
    Return the category for a 311 complaint type.

    Never raises: missing or unmatched text is "other".
    """
    if not complaint_type:
        return OTHER

    text = str(complaint_type).lower()
    for category, predicate in RULES:
        if predicate(text):
            return category
    return OTHER


def is_category(value: str) -> bool:
    return value in CATEGORIES
