"""Specialty inference rules and the known-bad row denylist.

Both encode domain knowledge that is incomplete by nature, so they are data:
the defaults below can be replaced by a JSON file (``CENTERMAP_RULES_PATH``)
shaped like::

    {
      "specialty_rules": {"counseling": [["미술", "미술치료"]], "child": [...]},
      "default_specialty": {"counseling": "심리상담", "child": "방과후돌봄"},
      "denylist": [{"name": "...", "phone_digits": "...", "address_contains": "..."}]
    }

Sections missing from the file keep their defaults.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)

SpecialtyRule = Tuple[Pattern[str], str]


@dataclass(frozen=True)
class DenyRule:
    """Drops a row whose name matches exactly and whose phone digits or address also match."""

    name: str
    phone_digits: Optional[str] = None
    address_contains: Optional[str] = None

    def matches(self, name: str, phone: str, address: str) -> bool:
        if name.strip() != self.name:
            return False
        digits = re.sub(r"\D", "", phone or "")
        collapsed = re.sub(r"\s+", " ", address or "").strip()
        if self.phone_digits and digits == self.phone_digits:
            return True
        return bool(self.address_contains) and self.address_contains in collapsed


def _rules(pairs: List[Tuple[str, str]]) -> List[SpecialtyRule]:
    return [(re.compile(pattern, re.IGNORECASE), tag) for pattern, tag in pairs]


DEFAULT_SPECIALTY_RULES: Dict[str, List[Tuple[str, str]]] = {
    "counseling": [
        ("미술", "미술치료"),
        ("놀이", "놀이치료"),
        ("언어", "언어치료"),
        ("발달", "발달검사"),
        ("가족", "가족치료"),
        ("부모", "부모상담"),
        ("ADHD|에이디에이치디", "ADHD"),
        ("감각", "감각통합"),
        ("인지", "인지치료"),
    ],
    "child": [
        ("방과|돌봄", "방과후돌봄"),
        ("학습|공부", "학습지원"),
        ("급식|식사|간식", "급식지원"),
        ("정서|상담|심리", "정서지원"),
        ("문화|체험", "문화체험"),
        ("진로", "진로체험"),
        ("발달", "발달검사"),
        ("언어", "언어재활"),
        ("놀이", "놀이활동"),
    ],
}

DEFAULT_SPECIALTY = {"counseling": "심리상담", "child": "방과후돌봄"}

DEFAULT_DENYLIST = (
    DenyRule(name="?라지역아동센터", phone_digits="0318753009", address_contains="평화로 449"),
)


@dataclass(frozen=True)
class NormalizerRules:
    specialty_rules: Dict[str, List[SpecialtyRule]] = field(
        default_factory=lambda: {kind: _rules(pairs) for kind, pairs in DEFAULT_SPECIALTY_RULES.items()}
    )
    default_specialty: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SPECIALTY))
    denylist: Tuple[DenyRule, ...] = DEFAULT_DENYLIST

    def infer_specialties(self, kind: str, text: str) -> List[str]:
        found: List[str] = []
        for pattern, tag in self.specialty_rules.get(kind, []):
            if pattern.search(text) and tag not in found:
                found.append(tag)
        return found

    def fallback_specialty(self, kind: str) -> str:
        return self.default_specialty.get(kind) or DEFAULT_SPECIALTY["counseling"]

    def is_denied(self, name: str, phone: str, address: str) -> bool:
        return any(rule.matches(name, phone, address) for rule in self.denylist)


def load_rules(path: Optional[str] = None) -> NormalizerRules:
    """Build rules from defaults, overridden section by section by the JSON file at ``path``."""
    if not path:
        return NormalizerRules()

    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    defaults = NormalizerRules()

    specialty_rules = dict(defaults.specialty_rules)
    for kind, pairs in (payload.get("specialty_rules") or {}).items():
        specialty_rules[kind] = _rules([(str(pattern), str(tag)) for pattern, tag in pairs])

    default_specialty = dict(defaults.default_specialty)
    default_specialty.update(payload.get("default_specialty") or {})

    denylist = defaults.denylist
    if "denylist" in payload:
        denylist = tuple(
            DenyRule(
                name=str(entry["name"]),
                phone_digits=entry.get("phone_digits"),
                address_contains=entry.get("address_contains"),
            )
            for entry in payload["denylist"]
        )

    logger.info("Loaded normalizer rules from %s", path)
    return NormalizerRules(
        specialty_rules=specialty_rules,
        default_specialty=default_specialty,
        denylist=denylist,
    )
