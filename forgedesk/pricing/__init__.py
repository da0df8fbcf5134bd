"""
ForgeDesk — Pricing
Price = round_half_up((tier base + add-ons not already included) × timeline multiplier).
Pure functions over the static PRICING_TIERS / FEATURE_ADDONS tables.
"""
import math

from forgedesk.config import PRICING_TIERS, FEATURE_ADDONS, TIMELINE_NAMES


def _tier(complexity: str) -> dict:
    tier = PRICING_TIERS.get(complexity)
    if tier is None:
        raise ValueError(f"Unknown complexity '{complexity}'. Must be one of: {list(PRICING_TIERS)}")
    return tier


def _timeline(tier: dict, timeline: str) -> dict:
    option = tier["timeline"].get(timeline)
    if option is None:
        raise ValueError(f"Unknown timeline '{timeline}'. Must be one of: {list(tier['timeline'])}")
    return option


def _round_half_up(amount: float) -> int:
    return int(math.floor(amount + 0.5))


def billable_addons(complexity: str, features: list) -> list:
    """Selected features that cost extra: known add-ons not in the tier's included list."""
    included = set(_tier(complexity)["includedFeatures"])
    seen, addons = set(), []
    for f in features or []:
        if f in FEATURE_ADDONS and f not in included and f not in seen:
            seen.add(f)
            addons.append(f)
    return addons


def compute_price(complexity: str, timeline: str, features: list) -> int:
    tier = _tier(complexity)
    multiplier = _timeline(tier, timeline)["multiplier"]
    addon_total = sum(FEATURE_ADDONS[f]["price"] for f in billable_addons(complexity, features))
    return _round_half_up((tier["basePrice"] + addon_total) * multiplier)


def is_timeline_available(complexity: str, timeline: str) -> bool:
    tier = PRICING_TIERS.get(complexity)
    if not tier or timeline not in tier["timeline"]:
        return False
    return tier["timeline"][timeline]["available"]


def validate_selection(complexity: str, timeline: str, features: list) -> None:
    """Raise ValueError if the tier/timeline/feature combination cannot be ordered."""
    tier = _tier(complexity)
    _timeline(tier, timeline)
    if not is_timeline_available(complexity, timeline):
        raise ValueError(f"Timeline '{timeline}' is not available for {complexity} apps")
    if len(set(features or [])) > tier["maxFeatures"]:
        raise ValueError(f"{complexity.capitalize()} apps support at most {tier['maxFeatures']} features")


def quote(complexity: str, timeline: str, features: list) -> dict:
    """Price breakdown for the order form."""
    validate_selection(complexity, timeline, features)
    tier = _tier(complexity)
    addons = billable_addons(complexity, features)
    return {
        "complexity": complexity,
        "timeline": timeline,
        "timelineName": TIMELINE_NAMES.get(timeline, timeline),
        "basePrice": tier["basePrice"],
        "multiplier": tier["timeline"][timeline]["multiplier"],
        "addons": [{"feature": f, "price": FEATURE_ADDONS[f]["price"]} for f in addons],
        "includedFeatures": list(tier["includedFeatures"]),
        "deliverables": list(tier["deliverables"]),
        "price": compute_price(complexity, timeline, features),
    }


def pricing_catalog() -> dict:
    return {
        "tiers": {
            name: {
                "basePrice": tier["basePrice"],
                "maxFeatures": tier["maxFeatures"],
                "includedFeatures": list(tier["includedFeatures"]),
                "deliverables": list(tier["deliverables"]),
                "timelines": {t: dict(opt, name=TIMELINE_NAMES.get(t, t))
                              for t, opt in tier["timeline"].items()},
            }
            for name, tier in PRICING_TIERS.items()
        },
        "addons": {name: dict(a) for name, a in FEATURE_ADDONS.items()},
    }
