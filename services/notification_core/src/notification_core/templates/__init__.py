from notification_core.templates.cache import CacheEntry, TierCache
from notification_core.templates.engine import TemplateCacheEngine, WarmEntry
from notification_core.templates.renderer import (
    InMemoryTemplateStore,
    TemplateDefinition,
    TemplateRenderer,
    TemplateStore,
)

__all__ = [
    "CacheEntry",
    "InMemoryTemplateStore",
    "TemplateCacheEngine",
    "TemplateDefinition",
    "TemplateRenderer",
    "TemplateStore",
    "TierCache",
    "WarmEntry",
]
