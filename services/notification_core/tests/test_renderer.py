"""Tests for Jinja2 template rendering through the cache."""

import pytest
from jinja2 import TemplateSyntaxError, UndefinedError

from shared.enums import CacheTier, Channel

from notification_core.errors import CacheComputeFailed, TemplateNotFound
from notification_core.templates import (
    InMemoryTemplateStore,
    TemplateDefinition,
    TemplateRenderer,
)

WELCOME = TemplateDefinition(
    template_id="welcome",
    channel=Channel.EMAIL,
    subject="Welcome {{ name }}",
    body="Hello {{ name }}, welcome!",
    html="<p>Hello {{ name }}</p>",
)
ORDER_SMS = TemplateDefinition(
    template_id="order",
    channel=Channel.SMS,
    body="Order #{{ order_id[:8] }} confirmed. Total: ${{ total_amount }}",
)


class CountingStore(InMemoryTemplateStore):
    def __init__(self, *definitions: TemplateDefinition) -> None:
        super().__init__(definitions)
        self.lookups = 0

    async def get(self, template_id, channel):
        self.lookups += 1
        return await super().get(template_id, channel)


@pytest.fixture()
def store() -> CountingStore:
    return CountingStore(WELCOME, ORDER_SMS)


@pytest.fixture()
def renderer(cache, store) -> TemplateRenderer:
    return TemplateRenderer(cache, store)


class TestRender:
    async def test_email_with_subject_and_body(self, renderer) -> None:
        content = await renderer.render("welcome", Channel.EMAIL, {"name": "Ann"})

        assert content.subject == "Welcome Ann"
        assert content.body == "Hello Ann, welcome!"
        assert content.html == "<p>Hello Ann</p>"

    async def test_sms_with_slicing(self, renderer) -> None:
        content = await renderer.render(
            "order",
            Channel.SMS,
            {"order_id": "550e8400-e29b-41d4-a716-446655440000", "total_amount": "99.99"},
        )

        assert content.body == "Order #550e8400 confirmed. Total: $99.99"
        assert content.subject is None

    async def test_html_escaped_text_not(self, renderer) -> None:
        content = await renderer.render("welcome", Channel.EMAIL, {"name": "<b>Ann</b>"})

        assert content.html == "<p>Hello &lt;b&gt;Ann&lt;/b&gt;</p>"
        assert content.body == "Hello <b>Ann</b>, welcome!"

    async def test_strict_undefined_raises_on_missing_variable(self, renderer) -> None:
        with pytest.raises(CacheComputeFailed) as exc_info:
            await renderer.render("welcome", Channel.EMAIL, {})

        assert isinstance(exc_info.value.original, UndefinedError)

    async def test_unknown_template(self, renderer) -> None:
        with pytest.raises(TemplateNotFound):
            await renderer.render("missing", Channel.EMAIL, {})

    async def test_wrong_channel_not_found(self, renderer) -> None:
        with pytest.raises(TemplateNotFound):
            await renderer.render("order", Channel.EMAIL, {})

    async def test_syntax_error_reported_by_compiled_tier(self, cache) -> None:
        broken = TemplateDefinition(
            template_id="broken", channel=Channel.SMS, body="Hello {{ name "
        )
        renderer = TemplateRenderer(cache, InMemoryTemplateStore([broken]))

        with pytest.raises(CacheComputeFailed) as exc_info:
            await renderer.render("broken", Channel.SMS, {"name": "Ann"})

        assert exc_info.value.tier == CacheTier.COMPILED
        assert isinstance(exc_info.value.original, TemplateSyntaxError)
        metrics = cache.get_metrics()
        assert metrics["compiled"]["compute_errors"] == 1
        assert metrics["rendered"]["compute_errors"] == 0


class TestCaching:
    async def test_same_context_served_from_cache(self, renderer, store, cache) -> None:
        first = await renderer.render("welcome", Channel.EMAIL, {"name": "Ann"})
        second = await renderer.render("welcome", Channel.EMAIL, {"name": "Ann"})

        assert first == second
        assert store.lookups == 1
        assert cache.get_metrics()["rendered"]["hits"] == 1

    async def test_different_context_rendered_separately(self, renderer, cache) -> None:
        await renderer.render("welcome", Channel.EMAIL, {"name": "Ann"})
        content = await renderer.render("welcome", Channel.EMAIL, {"name": "Bob"})

        assert content.body == "Hello Bob, welcome!"
        assert cache.get_metrics()["compiled"]["hits"] == 3

    async def test_skip_cache(self, renderer, cache) -> None:
        await renderer.render("welcome", Channel.EMAIL, {"name": "Ann"}, skip_cache=True)
        assert cache.get_metrics()["rendered"]["entries"] == 0

    async def test_non_cacheable_template_not_stored(self, cache) -> None:
        definition = TemplateDefinition(
            template_id="otp", channel=Channel.SMS, body="Code {{ code }}", cacheable=False
        )
        renderer = TemplateRenderer(cache, InMemoryTemplateStore([definition]))

        content = await renderer.render("otp", Channel.SMS, {"code": "1234"})

        assert content.body == "Code 1234"
        assert cache.get_metrics()["rendered"]["entries"] == 0

    async def test_invalidate_template_picks_up_new_version(self, renderer, store) -> None:
        await renderer.render("welcome", Channel.EMAIL, {"name": "Ann"})
        store.add(WELCOME.model_copy(update={"body": "Hi {{ name }}", "version": 2}))

        removed = renderer.invalidate_template("welcome")
        content = await renderer.render("welcome", Channel.EMAIL, {"name": "Ann"})

        assert removed == 5
        assert content.body == "Hi Ann"

    async def test_warm_serves_without_store(self, cache) -> None:
        store = CountingStore()
        renderer = TemplateRenderer(cache, store)

        assert await renderer.warm([WELCOME]) == 1
        content = await renderer.render("welcome", Channel.EMAIL, {"name": "Ann"})

        assert content.body == "Hello Ann, welcome!"
        assert store.lookups == 0
        assert cache.get(CacheTier.COMPILED, "welcome:email:v1:html") is not None


class TestVariables:
    async def test_collects_variables_of_every_part(self, renderer) -> None:
        assert await renderer.variables("welcome", Channel.EMAIL) == frozenset({"name"})
        assert await renderer.variables("order", Channel.SMS) == frozenset(
            {"order_id", "total_amount"}
        )
