"""Tool registry, @tool decorator, sandbox timeout race, and executor pipeline."""

import asyncio
import time

import pytest

from agentpay.exceptions import (
    ParameterValidationError, StepTimeoutError, ToolError, ToolNotFoundError,
)
from agentpay.tools.executor import ToolExecutor
from agentpay.tools.plugin import get_registered_tools, register_decorated_tools, tool
from agentpay.tools.registry import Tool, ToolRegistry
from agentpay.tools.sandbox import Sandbox
from agentpay.types import (
    ExecutionContext, ParameterType, ParameterValidation, ToolCategory, ToolDefinition,
    ToolParameter,
)

from conftest import simple_tool


@pytest.fixture
def context():
    return ExecutionContext(
        execution_id="exec_test", agent_id="agent-1", tenant_id="tenant-1", initiator_id="user-1",
    )


def _schema_tool(validate=None):
    async def charge(params, context):
        return {"charged": params["amount"]}

    return Tool(
        definition=ToolDefinition(
            name="charge",
            category=ToolCategory.PAYMENT,
            parameters=[
                ToolParameter(name="amount", type=ParameterType.NUMBER, required=True,
                              validation=ParameterValidation(min=1, max=1000)),
                ToolParameter(name="currency", type=ParameterType.STRING, default="USD",
                              validation=ParameterValidation(enum=["USD", "EUR"])),
                ToolParameter(name="reference", type=ParameterType.STRING,
                              validation=ParameterValidation(pattern=r"INV-\d+", max=10)),
                ToolParameter(name="tags", type=ParameterType.ARRAY, default=[]),
            ],
        ),
        execute=charge,
        validate=validate,
    )


# ── Registry ──────────────────────────────────────────────────────────────────


class TestRegistry:

    def test_register_and_lookup(self):
        reg = ToolRegistry()
        reg.register(_schema_tool())
        assert "charge" in reg
        assert len(reg) == 1
        assert reg.get("charge").name == "charge"
        assert reg.categories() == [ToolCategory.PAYMENT]
        assert [d.name for d in reg.list_by_category(ToolCategory.PAYMENT)] == ["charge"]

    def test_require_unknown_raises(self):
        with pytest.raises(ToolNotFoundError) as exc_info:
            ToolRegistry().require("nope")
        assert exc_info.value.tool_name == "nope"

    def test_register_rejects_nameless_and_non_callable(self):
        reg = ToolRegistry()
        with pytest.raises(ValueError):
            reg.register(Tool(definition=ToolDefinition(name=""), execute=lambda p, c: None))
        with pytest.raises(ValueError):
            reg.register(Tool(definition=ToolDefinition(name="x"), execute="not callable"))

    def test_reregister_replaces(self):
        reg = ToolRegistry()
        reg.register(simple_tool("t", lambda p, c: 1))
        reg.register(simple_tool("t", lambda p, c: 2))
        assert len(reg) == 1
        assert reg.get("t").execute({}, None) == 2

    def test_remove(self):
        reg = ToolRegistry()
        reg.register(simple_tool("t", lambda p, c: 1))
        assert reg.remove("t") is True
        assert reg.remove("t") is False

    def test_apply_defaults_copies(self):
        reg = ToolRegistry()
        reg.register(_schema_tool())
        first = reg.apply_defaults("charge", {"amount": 5})
        assert first == {"amount": 5, "currency": "USD", "tags": []}
        first["tags"].append("mutated")
        assert reg.apply_defaults("charge", {"amount": 5})["tags"] == []


class TestParameterValidation:

    @pytest.fixture
    def reg(self):
        reg = ToolRegistry()
        reg.register(_schema_tool())
        return reg

    def test_valid(self, reg):
        assert reg.validate_parameters("charge", {"amount": 10, "currency": "EUR"}) == (True, [])

    def test_required(self, reg):
        valid, errors = reg.validate_parameters("charge", {})
        assert not valid
        assert errors == ["Parameter 'amount' is required"]

    def test_type(self, reg):
        _, errors = reg.validate_parameters("charge", {"amount": "10"})
        assert errors == ["Parameter 'amount' must be of type number"]

    def test_bool_is_not_a_number(self, reg):
        _, errors = reg.validate_parameters("charge", {"amount": True})
        assert errors == ["Parameter 'amount' must be of type number"]

    def test_range(self, reg):
        _, errors = reg.validate_parameters("charge", {"amount": 5000})
        assert errors == ["Parameter 'amount' must be <= 1000.0"]

    def test_enum(self, reg):
        _, errors = reg.validate_parameters("charge", {"amount": 5, "currency": "GBP"})
        assert errors == ["Parameter 'currency' must be one of ['USD', 'EUR']"]

    def test_pattern_and_length(self, reg):
        _, errors = reg.validate_parameters("charge", {"amount": 5, "reference": "INV-123456789"})
        assert errors == ["Parameter 'reference' must be <= 10.0 (length)"]
        _, errors = reg.validate_parameters("charge", {"amount": 5, "reference": "REF-1"})
        assert errors == [r"Parameter 'reference' does not match pattern INV-\d+"]

    def test_tool_validate_runs_only_after_generic_checks(self):
        seen = []

        def validate(params):
            seen.append(params)
            return ["amount must be even"] if params["amount"] % 2 else []

        reg = ToolRegistry()
        reg.register(_schema_tool(validate=validate))
        assert reg.validate_parameters("charge", {})[1] == ["Parameter 'amount' is required"]
        assert seen == []
        assert reg.validate_parameters("charge", {"amount": 3}) == (False, ["amount must be even"])

    @pytest.mark.asyncio
    async def test_execute_refuses_invalid_params(self, reg, context):
        with pytest.raises(ParameterValidationError) as exc_info:
            await reg.execute("charge", {"amount": -1}, context)
        assert exc_info.value.violations == ["Parameter 'amount' must be >= 1.0"]

    @pytest.mark.asyncio
    async def test_execute_runs_tool(self, reg, context):
        assert await reg.execute("charge", {"amount": 7}, context) == {"charged": 7}


# ── Decorator ─────────────────────────────────────────────────────────────────


class TestToolDecorator:

    def test_decorator_records_tool(self):
        @tool(
            name="refund_card",
            category=ToolCategory.PAYMENT,
            parameters=[{"name": "amount", "type": "number", "required": True}],
            requires_approval=True,
        )
        async def refund_card(params, context):
            """Refund a card charge."""
            return {"refunded": params["amount"]}

        entry = get_registered_tools()["refund_card"]
        assert refund_card._agentpay_tool is entry
        assert entry.definition.description == "Refund a card charge."
        assert entry.definition.parameters[0].type == ParameterType.NUMBER
        assert entry.definition.requires_approval is True

    def test_name_defaults_to_function_name(self):
        @tool()
        def lookup_rate(params, context):
            return 1.1

        assert "lookup_rate" in get_registered_tools()

    def test_register_decorated_tools_subset(self):
        reg = ToolRegistry()
        count = register_decorated_tools(reg, names=["manual_trigger"])
        assert count == 1
        assert "manual_trigger" in reg


# ── Sandbox ───────────────────────────────────────────────────────────────────


class TestSandbox:

    @pytest.mark.asyncio
    async def test_async_result(self, context):
        async def fn(params, ctx):
            return params["x"] * 2

        assert await Sandbox().run(fn, {"x": 21}, context, 1000) == 42

    @pytest.mark.asyncio
    async def test_sync_function_runs_in_executor(self, context):
        def fn(params, ctx):
            return ctx.execution_id

        assert await Sandbox().run(fn, {}, context, 1000) == "exec_test"

    @pytest.mark.asyncio
    async def test_timeout_does_not_wait_for_tool(self, context):
        async def slow(params, ctx):
            await asyncio.sleep(5)

        start = time.monotonic()
        with pytest.raises(StepTimeoutError) as exc_info:
            await Sandbox().run(slow, {}, context, 50, tool_name="slow", step_id="s1")
        assert time.monotonic() - start < 1
        assert str(exc_info.value) == "Step 's1' timed out after 50ms"
        assert exc_info.value.timeout_ms == 50

    @pytest.mark.asyncio
    async def test_foreign_exception_is_wrapped(self, context):
        async def broken(params, ctx):
            raise KeyError("card")

        with pytest.raises(ToolError) as exc_info:
            await Sandbox().run(broken, {}, context, 1000, tool_name="broken")
        assert exc_info.value.tool_name == "broken"
        assert isinstance(exc_info.value.__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_tool_error_passes_through(self, context):
        async def declined(params, ctx):
            raise ToolError("card declined", tool_name="charge")

        with pytest.raises(ToolError, match="card declined"):
            await Sandbox().run(declined, {}, context, 1000)


# ── Executor ──────────────────────────────────────────────────────────────────


class TestExecutor:

    @pytest.mark.asyncio
    async def test_success(self, context):
        reg = ToolRegistry()
        reg.register(_schema_tool())
        output, error = await ToolExecutor(reg).execute("charge", {"amount": 3}, context, 1000)
        assert output == {"charged": 3}
        assert error is None

    @pytest.mark.asyncio
    async def test_invalid_params_returned_as_error(self, context):
        reg = ToolRegistry()
        reg.register(_schema_tool())
        output, error = await ToolExecutor(reg).execute("charge", {}, context, 1000)
        assert output is None
        assert isinstance(error, ParameterValidationError)

    @pytest.mark.asyncio
    async def test_tool_failure_returned_as_error(self, registry, context):
        output, error = await ToolExecutor(registry).execute("boom", {}, context, 1000)
        assert output is None
        assert "boom failed" in str(error)

    @pytest.mark.asyncio
    async def test_unknown_tool_raises(self, context):
        with pytest.raises(ToolNotFoundError):
            await ToolExecutor(ToolRegistry()).execute("ghost", {}, context, 1000)
