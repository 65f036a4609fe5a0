from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from config import settings
from request_context import get_request_id

log = logging.getLogger("pipeline")

TIME_SLOTS: Tuple[str, ...] = ("morning", "afternoon", "evening")
SLOT_START_TIMES: Dict[str, str] = {"morning": "09:00", "afternoon": "14:00", "evening": "19:00"}

FALLBACK_CATEGORY = "Lifestyle & Local"
DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "data" / "categories.yml"

# ----------------------------
# Domain objects
# ----------------------------

@dataclass(frozen=True)
class CategorySpec:
    name: str
    preferred_slot: str = "afternoon"
    typical_duration_hours: float = 2.0
    keywords: Tuple[str, ...] = ()

@dataclass(frozen=True)
class CategoryCatalog:
    categories: Tuple[CategorySpec, ...]
    aliases: Dict[str, str] = field(default_factory=dict)
    default: str = FALLBACK_CATEGORY

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.categories)

    def get(self, name: Optional[str]) -> Optional[CategorySpec]:
        for spec in self.categories:
            if name and spec.name.lower() == name.lower():
                return spec
        return None

# ----------------------------
# YAML loader
# ----------------------------

@functools.lru_cache(maxsize=8)
def load_catalog(path: Optional[str] = None) -> CategoryCatalog:
    target = Path(path or settings.CATEGORY_CATALOG_PATH or DEFAULT_CATALOG_PATH)
    try:
        with open(target, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        log.warning("Category catalog missing", extra={"request_id": get_request_id(), "path": str(target)})
        raw = {}

    specs = []
    for item in raw.get("categories") or []:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        slot = str(item.get("preferred_slot") or "afternoon").lower()
        if slot not in TIME_SLOTS:
            slot = "afternoon"
        try:
            hours = float(item.get("typical_duration_hours") or 2)
        except (TypeError, ValueError):
            hours = 2.0
        specs.append(
            CategorySpec(
                name=str(item["name"]),
                preferred_slot=slot,
                typical_duration_hours=hours,
                keywords=tuple(str(k).lower() for k in item.get("keywords") or ()),
            )
        )

    aliases = {str(k).strip().lower(): str(v) for k, v in (raw.get("aliases") or {}).items()}
    default = str(raw.get("default_category") or FALLBACK_CATEGORY)
    if not specs:
        specs = [CategorySpec(name=default)]
    return CategoryCatalog(categories=tuple(specs), aliases=aliases, default=default)

# ----------------------------
# Heuristics
# ----------------------------

def infer_category(text: str, catalog: Optional[CategoryCatalog] = None) -> str:
    """Pick the category whose keywords hit the text most often."""
    cat = catalog or load_catalog()
    t = (text or "").lower()
    best, best_hits = cat.default, 0
    for spec in cat.categories:
        hits = sum(1 for kw in spec.keywords if kw in t)
        if hits > best_hits:
            best, best_hits = spec.name, hits
    return best

def normalize_category(raw: object, name: str = "", description: str = "",
                       catalog: Optional[CategoryCatalog] = None) -> str:
    cat = catalog or load_catalog()
    if isinstance(raw, str) and raw.strip():
        label = raw.strip()
        spec = cat.get(label)
        if spec:
            return spec.name
        alias = cat.aliases.get(label.lower())
        if alias:
            return alias
    return infer_category(f"{name} {description}", cat)

def preferred_slot(name: str, description: str, category: str,
                   catalog: Optional[CategoryCatalog] = None) -> str:
    title = (name or "").lower()
    desc = (description or "").lower()
    if any(w in title for w in ("dinner", "night", "evening")) or "evening tour" in desc or "night tour" in desc:
        return "evening"
    if any(w in title for w in ("breakfast", "morning")) or "early morning" in desc or "sunrise" in desc:
        return "morning"
    spec = (catalog or load_catalog()).get(category)
    return spec.preferred_slot if spec else "afternoon"

def typical_duration_hours(category: str, catalog: Optional[CategoryCatalog] = None) -> float:
    spec = (catalog or load_catalog()).get(category)
    return spec.typical_duration_hours if spec else 2.0
