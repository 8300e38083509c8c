"""Merge duplicate centers that appear in more than one dataset."""

from typing import Dict, List

from centermap.models import Center


def dedup_key(center: Center) -> str:
    return f"{(center.name or '').strip()}|{(center.address or '').strip()}".lower()


def quality_score(center: Center) -> float:
    score = 0.0
    if center.has_coordinates:
        score += 100
    if center.homepage_url:
        score += 5
    for value in (center.phone, center.address, center.intro, center.programs, center.apply_method):
        if value:
            score += 2
    score += len(center.meta_lines)
    score += min(3, len(center.extras) / 20)
    return score


def dedup(centers: List[Center]) -> List[Center]:
    """Keep the highest-scoring center per (name, address); ties keep the first one seen.

    Output order follows the first appearance of each key.
    """
    winners: Dict[str, Center] = {}
    for center in centers:
        key = dedup_key(center)
        current = winners.get(key)
        if current is None or quality_score(center) > quality_score(current):
            winners[key] = center
    return list(winners.values())
