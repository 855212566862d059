"""Tests for HandlerRegistry and the StepHandler protocol."""

import threading

import pytest

from pyconductor import (
    ConfigurationError,
    CycleDetectedError,
    FunctionHandler,
    HandlerRegistry,
    StepContext,
    StepHandler,
    StepState,
    StepTemplate,
    TaskTemplate,
    UnknownHandlerError,
)


class ChargeCard:
    async def execute(self, context: StepContext):
        return {"charged": True}


def test_class_handler_registered_as_is():
    registry = HandlerRegistry()
    handler = ChargeCard()

    assert registry.register_handler("charge", handler) is handler
    assert registry.get_handler("charge") is handler
    assert isinstance(handler, StepHandler)


def test_plain_callable_wrapped():
    registry = HandlerRegistry()

    resolved = registry.register_handler("fetch", lambda ctx: {"rows": 1})

    assert isinstance(resolved, FunctionHandler)
    assert isinstance(resolved, StepHandler)
    assert registry.has_handler("fetch")


@pytest.mark.asyncio
async def test_function_handler_accepts_sync_and_async(snapshot_factory):
    snapshot = snapshot_factory(["a"])
    context = StepContext(snapshot, snapshot.steps, snapshot.steps[0])

    async def async_fn(ctx):
        return ctx.step.name

    assert await FunctionHandler(lambda ctx: 42).execute(context) == 42
    assert await FunctionHandler(async_fn).execute(context) == "a"


def test_decorator_defaults_to_function_name():
    registry = HandlerRegistry()

    @registry.handler()
    async def validate_order(ctx):
        return None

    @registry.handler("ship")
    def ship_it(ctx):
        return None

    assert registry.handler_names() == ["ship", "validate_order"]
    assert validate_order.__name__ == "validate_order"


def test_unknown_handler_lookup():
    with pytest.raises(UnknownHandlerError) as exc_info:
        HandlerRegistry().get_handler("missing")

    assert exc_info.value.handler_name == "missing"


@pytest.mark.parametrize("name,handler", [("", lambda ctx: None), ("x", 42)])
def test_invalid_registrations_rejected(name, handler):
    with pytest.raises(ConfigurationError):
        HandlerRegistry().register_handler(name, handler)


def test_template_with_unregistered_handler_fails_at_registration():
    registry = HandlerRegistry()
    registry.register_handler("a", lambda ctx: None)
    template = TaskTemplate("flow", [StepTemplate("a"), StepTemplate("b", depends_on=("a",))])

    with pytest.raises(UnknownHandlerError) as exc_info:
        registry.register_template(template)

    assert exc_info.value.step_name == "b"
    assert "flow" not in registry


def test_cyclic_template_fails_at_registration():
    registry = HandlerRegistry()
    for name in ("a", "b"):
        registry.register_handler(name, lambda ctx: None)
    template = TaskTemplate(
        "loop",
        [StepTemplate("a", depends_on=("b",)), StepTemplate("b", depends_on=("a",))],
    )

    with pytest.raises(CycleDetectedError):
        registry.register_template(template)
    assert len(registry) == 0


def test_template_unknown_dependency_rejected():
    registry = HandlerRegistry()
    registry.register_handler("a", lambda ctx: None)

    with pytest.raises(ConfigurationError, match="unknown step 'nope'"):
        registry.register_template(TaskTemplate("t", [StepTemplate("a", depends_on=("nope",))]))


def test_explicit_handler_name_on_step():
    registry = HandlerRegistry()
    registry.register_handler("http_call", lambda ctx: None)

    template = registry.register_template(
        TaskTemplate("t", [StepTemplate("fetch_users", handler="http_call")])
    )

    assert registry.get_template("t") is template
    assert template.handler_names() == ["http_call"]


def test_unknown_template_lookup():
    with pytest.raises(ConfigurationError, match="No task template"):
        HandlerRegistry().get_template("nothing")


def test_template_validation():
    with pytest.raises(ConfigurationError):
        TaskTemplate("empty", [])
    with pytest.raises(ConfigurationError):
        StepTemplate("")
    with pytest.raises(ConfigurationError):
        StepTemplate("a", retry_limit=-1)


@pytest.mark.parametrize("limit", [0, -1])
def test_step_template_requires_one_attempt(limit):
    """A step allowed zero attempts could never run, leaving its task pending forever."""
    with pytest.raises(ConfigurationError, match="retry_limit must be >= 1"):
        StepTemplate("charge_card", retry_limit=limit)


def test_single_attempt_step_template_registers():
    registry = HandlerRegistry()
    registry.register_handler("charge_card", ChargeCard())

    template = TaskTemplate("checkout", [StepTemplate("charge_card", retry_limit=1)])
    registry.register_template(template)

    assert registry.get_template("checkout").step("charge_card").retry_limit == 1


@pytest.mark.concurrency
def test_registration_from_many_threads():
    registry = HandlerRegistry()

    def register(i: int):
        for j in range(50):
            registry.register_handler(f"h{i}_{j}", lambda ctx: None)

    threads = [threading.Thread(target=register, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(registry.handler_names()) == 8 * 50


def test_registries_are_independent():
    first, second = HandlerRegistry(), HandlerRegistry()
    first.register_handler("only_here", lambda ctx: None)

    assert not second.has_handler("only_here")


def test_step_context_parent_results(snapshot_factory):
    snapshot = snapshot_factory(
        ["fetch", "load"],
        [("fetch", "load")],
        fetch={"status": StepState.COMPLETE, "results": {"rows": 42}},
    )
    context = StepContext(snapshot, snapshot.steps, snapshot.step_by_name("load"))

    assert context.parent_results() == {"fetch": {"rows": 42}}
    assert context.task.task_id == "task-1"
