import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError

from bookingflow.errors import StepDefinitionError
from bookingflow.steps import (
    FlowStep,
    PostCondition,
    StepAction,
    StepExecutor,
    StepOutcome,
    StepResult,
    click,
    evaluate,
    fill,
    select,
    wait_for_selector,
)

from fakes import FakeElement, FakePage, FakeSite


def _executor(**kwargs):
    return StepExecutor(poll_interval=0.005, **kwargs)


class TestFlowStepDefinition:
    def test_zero_timeout_is_rejected(self):
        with pytest.raises(StepDefinitionError):
            click("next", "#next-btn", timeout_ms=0)

    def test_negative_retries_are_rejected(self):
        with pytest.raises(StepDefinitionError):
            click("next", "#next-btn", retries=-1)

    def test_boolean_timeout_is_not_an_integer(self):
        with pytest.raises(StepDefinitionError):
            click("next", "#next-btn", timeout_ms=True)

    def test_non_evaluate_step_needs_target(self):
        with pytest.raises(StepDefinitionError):
            FlowStep(name="nothing", action=StepAction.CLICK)

    def test_select_index_must_be_numeric(self):
        with pytest.raises(StepDefinitionError):
            select("slot", "#booking-time", "index:first")

    def test_camel_case_action_is_accepted(self):
        step = FlowStep(name="wait", action="waitForSelector", target="#booking")
        assert step.action is StepAction.WAIT_FOR_SELECTOR

    def test_unknown_action_is_rejected(self):
        with pytest.raises(StepDefinitionError):
            FlowStep(name="hover", action="hover", target="#booking")

    def test_steps_are_immutable(self):
        step = click("next", "#next-btn")
        with pytest.raises(AttributeError):
            step.retries = 3

    def test_candidates_keep_declared_order(self):
        step = click("service", "#a", fallbacks=("#b", "#c"))
        assert step.candidates == ("#a", "#b", "#c")
        assert "index 0" in step.note

    def test_dict_round_trip(self):
        step = fill(
            "contact",
            "#contact-info",
            fields=(("#client-name", "Jane Doe"),),
            advance="#next-btn",
            expect=PostCondition.visible("#payment-info"),
            retries=2,
        )
        assert FlowStep.from_dict(step.to_dict()) == step


class TestRetries:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("retries", [0, 1, 3])
    async def test_missing_selector_makes_retries_plus_one_attempts(self, retries):
        page = FakePage(FakeSite())
        step = click("missing", "#nope", retries=retries, timeout_ms=20, backoff_ms=0)

        result = await _executor().execute(page, step)

        assert result.outcome is StepOutcome.FAILED
        assert result.error_kind == "SelectorNotFound"
        assert result.attempts == retries + 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("retries", [0, 2])
    async def test_intercepted_click_is_retried_then_fails(self, retries):
        site = FakeSite().add("#next-btn", FakeElement(click_error="element is intercepted by overlay"))
        page = FakePage(site)
        step = click("next", "#next-btn", retries=retries, timeout_ms=200, backoff_ms=0)

        result = await _executor().execute(page, step)

        clicks = [action for action in site.actions if action[0] == "click"]
        assert result.error_kind == "ActionTimeout"
        assert result.attempts == retries + 1
        assert len(clicks) == retries + 1

    @pytest.mark.asyncio
    async def test_selector_that_appears_later_passes_on_retry(self):
        site = FakeSite()
        page = FakePage(site)
        step = click("late", "#late", retries=5, timeout_ms=30, backoff_ms=0)

        async def reveal():
            await asyncio.sleep(0.04)
            site.add("#late")

        result, _ = await asyncio.gather(_executor().execute(page, step), reveal())

        assert result.passed
        assert result.attempts >= 2

    @pytest.mark.asyncio
    async def test_evaluation_error_is_not_retried(self):
        site = FakeSite()
        site.scripts["() => window.selectPaymentMethod('cash')"] = PlaywrightError("selectPaymentMethod is not defined")
        step = evaluate("call", "() => window.selectPaymentMethod('cash')", retries=3, timeout_ms=100, backoff_ms=0)

        result = await _executor().execute(FakePage(site), step)

        assert result.error_kind == "EvaluationError"
        assert result.attempts == 1
        assert "not defined" in result.error

    @pytest.mark.asyncio
    async def test_failed_post_condition_is_unexpected_state(self):
        site = FakeSite().add("#new-booking-btn")
        step = click(
            "open-modal",
            "#new-booking-btn",
            expect=PostCondition.visible("#new-booking-modal"),
            retries=3,
            timeout_ms=30,
            backoff_ms=0,
        )

        result = await _executor().execute(FakePage(site), step)

        assert result.error_kind == "UnexpectedState"
        assert result.attempts == 1
        assert "#new-booking-modal" in result.error


class TestActions:
    @pytest.mark.asyncio
    async def test_first_match_wins_when_selector_matches_many(self):
        site = FakeSite().add(".calendar-day.available", FakeElement(label="18"), FakeElement(label="19"))
        step = click("date", ".calendar-day.available", timeout_ms=100)

        result = await _executor().execute(FakePage(site), step)

        assert result.passed
        assert site.actions == [("click", ".calendar-day.available", "18")]

    @pytest.mark.asyncio
    async def test_fallback_selector_used_when_target_is_absent(self):
        site = FakeSite().add('[data-service="90min"]')
        step = click("service", '[data-service-type="90min_massage"]', fallbacks=('[data-service="90min"]',), timeout_ms=100)

        result = await _executor().execute(FakePage(site), step)

        assert result.passed
        assert site.actions[0][1] == '[data-service="90min"]'

    @pytest.mark.asyncio
    async def test_form_fill_and_advance(self):
        site = FakeSite()
        for selector in ("#contact-info", "#client-name", "#client-email", "#next-btn"):
            site.add(selector)
        site.on_click["#next-btn"] = lambda s: s.add("#payment-info")
        step = fill(
            "contact",
            "#contact-info",
            fields=(("#client-name", "Jane Doe"), ("#client-email", "jane@x.com")),
            advance="#next-btn",
            expect=PostCondition.visible("#payment-info"),
            timeout_ms=200,
        )

        result = await _executor().execute(FakePage(site), step)

        assert result.passed
        assert site.actions == [
            ("fill", "#client-name", "Jane Doe"),
            ("fill", "#client-email", "jane@x.com"),
            ("click", "#next-btn", "#next-btn"),
        ]

    @pytest.mark.asyncio
    async def test_select_by_index_waits_for_options(self):
        site = FakeSite().add("#booking-time")
        step = select(
            "slot",
            "#booking-time",
            "index:1",
            wait_for='#booking-time option:not([value=""])',
            timeout_ms=30,
            backoff_ms=0,
        )

        result = await _executor().execute(FakePage(site), step)
        assert result.error_kind == "SelectorNotFound"
        assert 'option:not([value=""])' in result.error

        site.add('#booking-time option:not([value=""])')
        result = await _executor().execute(FakePage(site), step)
        assert result.passed
        assert site.elements["#booking-time"][0].selected == 1

    @pytest.mark.asyncio
    async def test_wait_for_selector_waits_until_visible(self):
        element = FakeElement(visible=False)
        site = FakeSite().add("#thank-you-content", element)
        step = wait_for_selector("thanks", "#thank-you-content", timeout_ms=500)

        async def show():
            await asyncio.sleep(0.02)
            element.visible = True

        result, _ = await asyncio.gather(_executor().execute(FakePage(site), step), show())
        assert result.passed

    @pytest.mark.asyncio
    async def test_script_returning_false_is_unexpected_state(self):
        site = FakeSite()
        site.scripts["() => document.querySelectorAll('.error').length === 0"] = False
        step = evaluate("no-errors", "() => document.querySelectorAll('.error').length === 0", timeout_ms=100)

        result = await _executor().execute(FakePage(site), step)
        assert result.error_kind == "UnexpectedState"

    @pytest.mark.asyncio
    async def test_text_post_condition(self):
        site = FakeSite().add("#confirm-booking-btn")
        site.on_click["#confirm-booking-btn"] = lambda s: s.add(
            "#booking-status", FakeElement(text="Booking confirmed!")
        )
        step = click(
            "confirm",
            "#confirm-booking-btn",
            expect=PostCondition.text_contains("#booking-status", "confirmed"),
            timeout_ms=200,
        )

        result = await _executor().execute(FakePage(site), step)
        assert result.passed


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_event_aborts_in_flight_attempt(self):
        from bookingflow.errors import FlowAborted

        cancel = asyncio.Event()
        step = click("never", "#never", timeout_ms=5_000)

        async def cancel_soon():
            await asyncio.sleep(0.02)
            cancel.set()

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(FlowAborted):
            await asyncio.gather(_executor(cancel_event=cancel).execute(FakePage(), step), cancel_soon())
        assert loop.time() - started < 1.0


def test_skipped_result_has_no_duration():
    result = StepResult.skipped(click("next", "#next-btn"), "previous step failed")
    assert result.outcome is StepOutcome.SKIPPED
    assert result.duration_ms == 0
    assert result.attempts == 0
