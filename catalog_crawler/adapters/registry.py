"""
Site registry: the single source of truth for site keys and categories.
"""
from typing import Dict, List, Type

from ..errors import ConfigurationError
from .apotea import ApoteaAdapter
from .base import SiteAdapter
from .kronans import KronansAdapter
from .template import TemplateAdapter

ADAPTERS: Dict[str, Type[SiteAdapter]] = {
    ApoteaAdapter.key: ApoteaAdapter,
    KronansAdapter.key: KronansAdapter,
    TemplateAdapter.key: TemplateAdapter,
}

SITE_CATEGORIES = {
    "pharmacy": {
        "name": "Pharmacy",
        "sites": ("apotea", "kronans"),
        "description": "Swedish pharmacy websites",
    },
    "template": {
        "name": "Template",
        "sites": ("_template",),
        "description": "Template for new adapters",
    },
}

DEFAULT_SITES = SITE_CATEGORIES["pharmacy"]["sites"]


def get_adapter(key: str) -> SiteAdapter:
    try:
        adapter_cls = ADAPTERS[key]
    except KeyError:
        raise ConfigurationError(
            f"Unknown site {key!r}; available: {', '.join(sorted(ADAPTERS))}"
        ) from None
    return adapter_cls()


def sites_in_category(category: str) -> List[str]:
    if category == "all":
        return [k for k in ADAPTERS if not k.startswith("_")]
    try:
        return list(SITE_CATEGORIES[category]["sites"])
    except KeyError:
        raise ConfigurationError(f"Unknown category {category!r}") from None
