"""Jinja2 template rendering backed by the template cache."""

import hashlib
import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from jinja2 import StrictUndefined, Template, meta
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, ConfigDict

from shared.enums import CacheTier, Channel

from notification_core.content import RenderedContent
from notification_core.errors import TemplateNotFound
from notification_core.templates.engine import TemplateCacheEngine

logger = logging.getLogger(__name__)

_text_env = SandboxedEnvironment(
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=False,
)
_html_env = SandboxedEnvironment(
    autoescape=True,
    undefined=StrictUndefined,
    keep_trailing_newline=False,
)


class TemplateDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    template_id: str
    channel: Channel
    body: str
    subject: str | None = None
    html: str | None = None
    version: int = 1
    cacheable: bool = True

    def sources(self) -> dict[str, str]:
        parts = {"subject": self.subject, "body": self.body, "html": self.html}
        return {part: source for part, source in parts.items() if source is not None}


class TemplateStore(Protocol):
    async def get(self, template_id: str, channel: Channel) -> TemplateDefinition | None: ...


class InMemoryTemplateStore:
    def __init__(self, definitions: Iterable[TemplateDefinition] = ()) -> None:
        self._definitions: dict[tuple[str, Channel], TemplateDefinition] = {}
        for definition in definitions:
            self.add(definition)

    def add(self, definition: TemplateDefinition) -> None:
        self._definitions[(definition.template_id, definition.channel)] = definition

    def remove(self, template_id: str, channel: Channel) -> None:
        self._definitions.pop((template_id, Channel(channel)), None)

    async def get(self, template_id: str, channel: Channel) -> TemplateDefinition | None:
        return self._definitions.get((template_id, Channel(channel)))


def template_tag(template_id: str) -> str:
    return f"template:{template_id}"


def context_digest(context: Mapping[str, Any]) -> str:
    encoded = json.dumps(context, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:16]


def _compile(part: str, source: str) -> Template:
    env = _html_env if part == "html" else _text_env
    return env.from_string(source)


class TemplateRenderer:
    """Renders stored templates through the four cache tiers.

    Raw definitions, compiled templates, rendered output (keyed by a digest
    of the context) and the variable sets of each template are cached
    separately.  Everything is tagged with the template id so
    :meth:`invalidate_template` drops all of it at once.
    """

    def __init__(self, cache: TemplateCacheEngine, store: TemplateStore) -> None:
        self._cache = cache
        self._store = store

    async def definition(self, template_id: str, channel: Channel) -> TemplateDefinition:
        channel = Channel(channel)
        definition = await self._cache.get_or_compute(
            CacheTier.RAW,
            f"{template_id}:{channel}",
            lambda: self._store.get(template_id, channel),
            dependencies=[template_tag(template_id)],
        )
        if definition is None:
            raise TemplateNotFound(template_id, channel)
        return definition

    async def _compiled(self, definition: TemplateDefinition, part: str) -> Template:
        source = definition.sources()[part]
        return await self._cache.get_or_compute(
            CacheTier.COMPILED,
            f"{definition.template_id}:{definition.channel}:v{definition.version}:{part}",
            lambda: _compile(part, source),
            dependencies=[template_tag(definition.template_id)],
        )

    async def render(
        self,
        template_id: str,
        channel: Channel,
        context: Mapping[str, Any],
        *,
        skip_cache: bool = False,
    ) -> RenderedContent:
        """Render the template for *channel* with *context*.

        Raises TemplateNotFound, or CacheComputeFailed wrapping the Jinja
        error when the template does not compile or a variable is missing.
        """
        definition = await self.definition(template_id, channel)

        async def _render() -> RenderedContent:
            rendered = {}
            for part in definition.sources():
                template = await self._compiled(definition, part)
                rendered[part] = template.render(dict(context))
            return RenderedContent(
                body=rendered["body"],
                subject=rendered.get("subject"),
                html=rendered.get("html"),
            )

        key = (
            f"{definition.template_id}:{definition.channel}:v{definition.version}"
            f":{context_digest(context)}"
        )
        content = await self._cache.get_or_compute(
            CacheTier.RENDERED,
            key,
            _render,
            dependencies=[template_tag(template_id)],
            skip_cache=skip_cache or not definition.cacheable,
        )
        logger.debug(
            "Template rendered",
            extra={"template_id": template_id, "channel": channel, "cache_key": key},
        )
        return content

    async def variables(self, template_id: str, channel: Channel) -> frozenset[str]:
        """Names of the context variables the template refers to."""
        definition = await self.definition(template_id, channel)

        def _collect() -> frozenset[str]:
            names: set[str] = set()
            for part, source in definition.sources().items():
                env = _html_env if part == "html" else _text_env
                names |= meta.find_undeclared_variables(env.parse(source))
            return frozenset(names)

        return await self._cache.get_or_compute(
            CacheTier.METADATA,
            f"{definition.template_id}:{definition.channel}:v{definition.version}:variables",
            _collect,
            dependencies=[template_tag(template_id)],
        )

    def invalidate_template(self, template_id: str) -> int:
        removed = self._cache.invalidate(tags=[template_tag(template_id)])
        logger.info(
            "Template invalidated",
            extra={"template_id": template_id, "removed": removed},
        )
        return removed

    async def warm(self, definitions: Iterable[TemplateDefinition]) -> int:
        """Cache definitions with their compiled parts and variable sets."""
        warmed = 0
        for definition in definitions:
            self._cache.set(
                CacheTier.RAW,
                f"{definition.template_id}:{definition.channel}",
                definition,
                dependencies=[template_tag(definition.template_id)],
            )
            for part in definition.sources():
                await self._compiled(definition, part)
            await self.variables(definition.template_id, definition.channel)
            warmed += 1
        logger.info("Templates warmed", extra={"templates": warmed})
        return warmed
