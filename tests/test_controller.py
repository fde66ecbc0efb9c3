"""
Tests for key rotation, tier demotion and model fallback in the controller.
"""
import json

import pytest

from gemini_relay.circuit_breaker import CircuitBreaker
from gemini_relay.error_handler import (
    AllKeysModelError,
    AllKeysRateLimited,
    ModelsExhaustedError,
    RateLimitError,
    ResolutionError,
)
from gemini_relay.key_pool import KeyTier
from gemini_relay.schemas import Fragment, FragmentType

from tests.fixtures.upstream import (
    KEY_A,
    KEY_B,
    KEY_C,
    PREMIUM_1,
    PREMIUM_2,
    collect,
    ok,
    stalled,
    status,
)


def of_type(fragments, fragment_type):
    return [f for f in fragments if f.type is fragment_type]


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_end_to_end_single_delta(self, make_controller, fake_gemini):
        """Prompt "hello", no model, one key, one model without fallback."""
        fake_gemini.reply(KEY_A, ok("Hi"))
        controller = make_controller(regular=[KEY_A])

        fragments = await collect(controller.stream_generate("hello"))

        assert fragments == [Fragment.content_of("Hi")]
        assert fake_gemini.models_called() == ["gemini-1.5-flash-latest"]

    @pytest.mark.asyncio
    async def test_first_key_success_yields_exactly_the_upstream_deltas(
        self, make_controller, fake_gemini
    ):
        fake_gemini.reply(KEY_A, ok("The ", "quick ", "fox"))
        controller = make_controller()

        fragments = await collect(controller.stream_generate("hello"))

        assert [f.content for f in fragments] == ["The ", "quick ", "fox"]
        assert all(f.type is FragmentType.CONTENT for f in fragments)
        assert fake_gemini.keys_called() == [KEY_A]

    @pytest.mark.asyncio
    async def test_generate_joins_content(self, make_controller, fake_gemini):
        fake_gemini.reply(KEY_A, ok("a", "b", "c"))
        controller = make_controller()

        assert await controller.generate("hello") == "abc"


class TestKeyRotation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("k", [0, 1, 2])
    async def test_k_rate_limited_keys_emit_k_system_fragments(
        self, make_controller, fake_gemini, k
    ):
        keys = [KEY_A, KEY_B, KEY_C]
        for key in keys[:k]:
            fake_gemini.reply(key, status(429))
        fake_gemini.reply(keys[k], ok("done"))
        controller = make_controller(regular=keys)

        fragments = await collect(controller.stream_generate("hello"))

        first_content = next(
            i for i, f in enumerate(fragments) if f.type is FragmentType.CONTENT
        )
        assert len(of_type(fragments[:first_content], FragmentType.SYSTEM)) == k
        assert of_type(fragments, FragmentType.ERROR) == []
        assert controller.key_pool.cursor == k
        assert controller.key_pool.current() == keys[k]

    @pytest.mark.asyncio
    async def test_every_failure_class_rotates(self, make_controller, fake_gemini):
        fake_gemini.reply(KEY_A, status(400))
        fake_gemini.reply(KEY_B, status(500))
        fake_gemini.reply(KEY_C, ok("third time"))
        controller = make_controller()

        fragments = await collect(controller.stream_generate("hello"))

        assert fake_gemini.keys_called() == [KEY_A, KEY_B, KEY_C]
        assert fragments[-1] == Fragment.content_of("third time")
        assert len(of_type(fragments, FragmentType.SYSTEM)) == 2

    @pytest.mark.asyncio
    async def test_mid_stream_timeout_rotates_to_next_key(
        self, make_controller, fake_gemini
    ):
        fake_gemini.reply(KEY_A, stalled("partial"))
        fake_gemini.reply(KEY_B, ok("complete"))
        controller = make_controller(regular=[KEY_A, KEY_B])

        fragments = await collect(controller.stream_generate("hello"))

        assert [f.type for f in fragments] == [
            FragmentType.CONTENT,
            FragmentType.SYSTEM,
            FragmentType.CONTENT,
        ]
        assert fragments[0].content == "partial"
        assert fragments[2].content == "complete"

    @pytest.mark.asyncio
    async def test_transient_errors_do_not_rotate(self, make_controller, fake_gemini):
        fake_gemini.reply(KEY_A, status(503), status(503), ok("patience"))
        controller = make_controller()

        fragments = await collect(controller.stream_generate("hello"))

        assert fragments == [Fragment.content_of("patience")]
        assert fake_gemini.keys_called() == [KEY_A, KEY_A, KEY_A]

    @pytest.mark.asyncio
    async def test_system_fragments_never_expose_keys(self, make_controller, fake_gemini):
        fake_gemini.reply(KEY_A, status(429))
        controller = make_controller()

        fragments = await collect(controller.stream_generate("hello"))

        for fragment in fragments:
            for key in (KEY_A, KEY_B, KEY_C):
                assert key not in fragment.content


class TestTierDemotion:
    @pytest.mark.asyncio
    async def test_premium_exhaustion_demotes_to_regular(
        self, make_controller, fake_gemini
    ):
        fake_gemini.reply(PREMIUM_1, status(429))
        fake_gemini.reply(PREMIUM_2, status(429))
        fake_gemini.reply(KEY_A, ok("regular reply"))
        controller = make_controller(regular=[KEY_A, KEY_B], premium=[PREMIUM_1, PREMIUM_2])

        fragments = await collect(controller.stream_generate("hello"))

        assert fake_gemini.keys_called() == [PREMIUM_1, PREMIUM_2, KEY_A]
        assert fragments[-1] == Fragment.content_of("regular reply")
        assert any("premium" in f.content for f in of_type(fragments, FragmentType.SYSTEM))
        assert controller.key_pool.tier is KeyTier.REGULAR

    @pytest.mark.asyncio
    async def test_all_keys_in_both_tiers_rate_limited(self, make_controller, fake_gemini):
        fake_gemini.default = status(429)
        controller = make_controller(regular=[KEY_A, KEY_B], premium=[PREMIUM_1, PREMIUM_2])

        fragments = await collect(controller.stream_generate("hello"))

        errors = of_type(fragments, FragmentType.ERROR)
        assert len(errors) == 1
        assert fragments[-1] is errors[0]
        assert of_type(fragments, FragmentType.CONTENT) == []
        assert isinstance(errors[0].error, AllKeysRateLimited)
        assert sorted(fake_gemini.keys_called()) == sorted(
            [PREMIUM_1, PREMIUM_2, KEY_A, KEY_B]
        )

    @pytest.mark.asyncio
    async def test_generate_raises_terminal_error(self, make_controller, fake_gemini):
        fake_gemini.default = status(429)
        controller = make_controller()

        with pytest.raises(AllKeysRateLimited) as excinfo:
            await controller.generate("hello")

        # Three key failures plus the tier exhaustion note
        assert len(excinfo.value.failures) == 4


    @pytest.mark.asyncio
    async def test_demotion_by_another_request_mid_attempt(
        self, make_controller, fake_gemini, failure_log_dir
    ):
        controller = make_controller(regular=[KEY_A, KEY_B], premium=[PREMIUM_1, PREMIUM_2])

        def demoted_elsewhere(request):
            controller.key_pool.demote()
            return status(429)

        fake_gemini.reply(PREMIUM_1, demoted_elsewhere)
        fake_gemini.default = status(429)

        fragments = await collect(controller.stream_generate("hello"))

        # Each regular key is tried exactly once, starting from the first
        assert fake_gemini.keys_called() == [PREMIUM_1, KEY_A, KEY_B]
        switches = [
            f for f in of_type(fragments, FragmentType.SYSTEM)
            if f.content.startswith("All premium API keys failed")
        ]
        assert len(switches) == 1
        assert len(of_type(fragments, FragmentType.ERROR)) == 1

        lines = (failure_log_dir / "failures.log").read_text().splitlines()
        tiers = [json.loads(line)["key_tier"] for line in lines]
        assert tiers == ["premium", "regular", "regular"]


class TestModelFallback:
    @pytest.mark.asyncio
    async def test_falls_back_after_all_keys_fail(self, make_controller, fake_gemini):
        fake_gemini.default = status(400)
        for key in (KEY_A, KEY_B, KEY_C):
            fake_gemini.reply(key, ok("from pro"), model="gemini-1.5-pro")
        controller = make_controller(
            models={"gemini-1.5-flash-latest": "gemini-1.5-pro", "gemini-1.5-pro": ""}
        )

        fragments = await collect(
            controller.stream_generate("hello", model="gemini-1.5-flash-latest")
        )

        assert fragments[-1] == Fragment.content_of("from pro")
        assert any(
            "gemini-1.5-pro" in f.content for f in of_type(fragments, FragmentType.SYSTEM)
        )
        assert fake_gemini.models_called()[-1] == "gemini-1.5-pro"

    @pytest.mark.asyncio
    async def test_fallback_cycle_terminates(self, make_controller, fake_gemini):
        fake_gemini.default = status(400)
        controller = make_controller(
            models={"gemini-a": "gemini-b", "gemini-b": "gemini-a"},
            default_model="gemini-a",
        )

        fragments = await collect(controller.stream_generate("hello", model="gemini-a"))

        errors = of_type(fragments, FragmentType.ERROR)
        assert len(errors) == 1
        assert fragments[-1] is errors[0]
        assert set(fake_gemini.models_called()) == {"gemini-a", "gemini-b"}
        assert len(fake_gemini.calls) == 6
        assert isinstance(errors[0].error, AllKeysModelError)

    @pytest.mark.asyncio
    async def test_fallback_chain_is_capped_at_three_models(
        self, make_controller, fake_gemini
    ):
        fake_gemini.default = status(500)
        controller = make_controller(
            regular=[KEY_A],
            models={"m-1": "m-2", "m-2": "m-3", "m-3": "m-4", "m-4": ""},
            default_model="m-1",
        )

        fragments = await collect(controller.stream_generate("hello", model="m-1"))

        assert fake_gemini.models_called() == ["m-1", "m-2", "m-3"]
        assert fragments[-1].is_error
        assert isinstance(fragments[-1].error, ModelsExhaustedError)

    @pytest.mark.asyncio
    async def test_terminal_error_joins_every_failure(self, make_controller, fake_gemini):
        fake_gemini.reply(KEY_A, status(429))
        fake_gemini.reply(KEY_B, status(400))
        controller = make_controller(regular=[KEY_A, KEY_B])

        fragments = await collect(controller.stream_generate("hello"))

        error = fragments[-1]
        assert error.is_error
        assert "HTTP 429" in error.content
        assert "HTTP 400" in error.content
        assert "No fallback model is available." in error.content
        assert isinstance(error.error, ModelsExhaustedError)

    @pytest.mark.asyncio
    async def test_resolution_failure_is_a_single_error(self, make_controller, fake_gemini):
        controller = make_controller(models={"gemini-x": ""}, default_model="gemini-missing")

        fragments = await collect(controller.stream_generate("hello", model="nope"))

        assert len(fragments) == 1
        assert isinstance(fragments[0].error, ResolutionError)
        assert fake_gemini.calls == []


class TestCircuitBreakerIntegration:
    @pytest.mark.asyncio
    async def test_open_breaker_skips_upstream(self, make_controller, fake_gemini):
        fake_gemini.default = status(429)
        controller = make_controller(breaker=CircuitBreaker(max_requests=1))

        fragments = await collect(controller.stream_generate("hello"))

        assert len(fake_gemini.calls) == 1
        assert fragments[-1].is_error
        assert "Circuit breaker is open" in fragments[-1].content
        assert isinstance(fragments[-1].error, AllKeysRateLimited)


class TestFailureLogging:
    @pytest.mark.asyncio
    async def test_failures_are_logged_with_masked_keys(
        self, make_controller, fake_gemini, failure_log_dir
    ):
        fake_gemini.reply(KEY_A, status(429))
        fake_gemini.reply(KEY_B, ok("fine"))
        controller = make_controller()

        await collect(controller.stream_generate("hello"))

        lines = (failure_log_dir / "failures.log").read_text().splitlines()
        record = json.loads(lines[0])
        assert record["api_key_ending"] == f"...{KEY_A[-6:]}"
        assert record["status_code"] == 429
        assert record["failure_class"] == "rate_limit"
        assert record["key_tier"] == "regular"
        assert KEY_A not in lines[0]


class TestUploadDocument:
    @pytest.mark.asyncio
    async def test_rotates_on_rate_limit(self, make_controller):
        controller = make_controller()
        seen = []

        async def upload(credential, data, file_name, mime_type, display_name):
            seen.append(credential)
            if credential == KEY_A:
                raise RateLimitError("File upload rate limit reached (HTTP 429)", 429)
            return "https://files/xyz"

        controller.executor.upload_document = upload

        assert await controller.upload_document(b"x", "a.pdf", "application/pdf") == (
            "https://files/xyz"
        )
        assert seen == [KEY_A, KEY_B]

    @pytest.mark.asyncio
    async def test_all_keys_limited(self, make_controller):
        controller = make_controller()

        async def upload(*args):
            raise RateLimitError("File upload rate limit reached (HTTP 429)", 429)

        controller.executor.upload_document = upload

        with pytest.raises(AllKeysRateLimited):
            await controller.upload_document(b"x", "a.pdf", "application/pdf")
