"""Orchestrator turn loop scenarios against a scripted provider."""
from __future__ import annotations

import asyncio
import gc
import json
import unittest

from src.agentic_runtime.errors import ProviderRequestError, ProviderTransportError
from src.agentic_runtime.loop import (
    CANCELLED_MESSAGE,
    INVALID_TOOL_NAME,
    PROVIDER_ERROR_MESSAGE,
    TIMEOUT_MESSAGE,
    Orchestrator,
    TurnOptions,
    TurnState,
)
from src.agentic_runtime.models import (
    AgentProfile,
    MessageDraft,
    NormalizedResponse,
    ToolCallRequest,
    serialize_context,
)
from src.agentic_runtime.registry import ToolRegistry
from src.agentic_runtime.tools import CalculatorTool, FunctionTool

from tests.support import ScriptedProvider, calls, new_history, payload_of, text


async def _sleepy(**_: object) -> str:
    await asyncio.sleep(5)
    return "never"


class LoopTestCase(unittest.IsolatedAsyncioTestCase):
    system_prompt: str | None = None

    async def asyncSetUp(self) -> None:
        self.history = new_history()
        self.registry = ToolRegistry(
            [
                CalculatorTool(),
                FunctionTool("sleepy", "Takes forever", _sleepy),
            ]
        )
        self.agents = {"default": AgentProfile(id="default", model="scripted", system_prompt=self.system_prompt)}

    async def asyncTearDown(self) -> None:
        self.history.close()

    def orchestrator(self, script: list, **options: object) -> tuple[Orchestrator, ScriptedProvider]:
        provider = ScriptedProvider(script)
        orchestrator = Orchestrator(
            self.history,
            self.registry,
            provider=provider,
            agents=self.agents,
            options=TurnOptions(**options),
        )
        return orchestrator, provider

    async def context(self, session_id: str = "s1"):
        return await self.history.reconstruct_context(session_id)


class TestTurnScenarios(LoopTestCase):
    async def test_calculator_scenario_with_commentary(self) -> None:
        orchestrator, provider = self.orchestrator(
            [
                calls(("calculator", {"expression": "2 + 2"}, "call_1")),
                text("The calculator returned 4."),
                text("2 + 2 = 4."),
            ]
        )
        outcome = await orchestrator.run_turn("s1", "What is 2 + 2?")

        self.assertEqual(outcome.state, TurnState.DONE)
        self.assertEqual(outcome.final_content, "2 + 2 = 4.")
        self.assertEqual(outcome.appended, [1, 2, 3, 4, 5])
        messages = await self.context()
        self.assertEqual([m.role for m in messages], ["user", "assistant", "tool", "assistant", "assistant"])
        self.assertEqual(messages[1].tool_calls[0].name, "calculator")
        self.assertIsNone(messages[1].content)
        self.assertEqual((messages[2].tool_call_id, messages[2].tool_name), ("call_1", "calculator"))
        self.assertEqual(payload_of(messages[2])["result"], 4)
        self.assertTrue(messages[3].is_comment)
        self.assertFalse(messages[4].is_comment)

        # Tools are offered on tool rounds and withheld for the comment.
        self.assertEqual([c.tool_names for c in provider.calls], [["calculator", "sleepy"], None, ["calculator", "sleepy"]])

    async def test_replayed_history_matches_every_provider_payload(self) -> None:
        orchestrator, provider = self.orchestrator(
            [
                calls(("calculator", {"expression": "6*7"}, "a"), ("calculator", {"expression": "1+1"}, "b")),
                text("First result is in."),
                text("Second result is in."),
                text("42 and 2."),
            ]
        )
        await orchestrator.run_turn("s1", "Compute 6*7 and 1+1")
        messages = await self.context()
        for call in provider.calls:
            prefix = messages[: len(call.messages)]
            self.assertEqual(call.payload, serialize_context(prefix))
        # Each tool result directly follows the assistant message carrying its call.
        for index, message in enumerate(messages):
            if message.role == "tool":
                self.assertEqual(messages[index - 1].tool_calls[0].id, message.tool_call_id)

    async def test_turn_without_tool_calls_terminates_immediately(self) -> None:
        orchestrator, provider = self.orchestrator([text("Hello!")])
        outcome = await orchestrator.run_turn("s1", "Hi")
        self.assertEqual(outcome.state, TurnState.DONE)
        self.assertEqual(outcome.rounds, 1)
        self.assertEqual(len(provider.calls), 1)
        self.assertEqual([m.role for m in await self.context()], ["user", "assistant"])

    async def test_tool_timeout_produces_error_result_and_turn_completes(self) -> None:
        orchestrator, _ = self.orchestrator(
            [calls(("sleepy", {}, "call_s")), text("That tool timed out."), text("Sorry, no answer.")],
            tool_timeout=0.05,
        )
        outcome = await orchestrator.run_turn("s1", "Run the slow tool")
        self.assertEqual(outcome.state, TurnState.DONE)
        tool_message = (await self.context())[2]
        payload = payload_of(tool_message)
        self.assertEqual(tool_message.tool_name, "sleepy")
        self.assertIn("timed out", payload["error"])
        self.assertTrue(payload["timeout"])

    async def test_loop_stops_at_max_rounds(self) -> None:
        script = [calls(("calculator", {"expression": f"{i}+1"}, f"c{i}")) for i in range(3)]
        orchestrator, provider = self.orchestrator(script, max_rounds=3, commentary=False)
        outcome = await orchestrator.run_turn("s1", "Keep calculating")

        self.assertEqual(outcome.state, TurnState.ABORTED)
        self.assertEqual(outcome.abort_reason, "max_rounds")
        self.assertEqual(outcome.rounds, 3)
        self.assertEqual(len(provider.calls), 3)
        messages = await self.context()
        self.assertEqual(messages[-1].role, "assistant")
        self.assertIn("Turn limit reached", messages[-1].content)
        self.assertEqual(sum(1 for m in messages if m.role == "tool"), 3)
        self.assertEqual(await self.history.pending_tool_calls("s1"), [])

    async def test_loop_stops_at_max_rounds_with_commentary(self) -> None:
        script = []
        for i in range(3):
            script += [calls(("calculator", {"expression": f"{i}*2"}, f"c{i}")), text(f"Result {i} noted.")]
        orchestrator, provider = self.orchestrator(script, max_rounds=3)
        outcome = await orchestrator.run_turn("s1", "Keep calculating")

        self.assertEqual(outcome.state, TurnState.ABORTED)
        self.assertEqual(outcome.abort_reason, "max_rounds")
        self.assertEqual(outcome.rounds, 3)
        offering = [c for c in provider.calls if c.tool_names is not None]
        self.assertEqual(len(offering), 3)
        self.assertEqual(len(provider.calls), 6)
        messages = await self.context()
        self.assertEqual(sum(1 for m in messages if m.is_comment), 3)
        self.assertIn("Turn limit reached", messages[-1].content)

    async def test_tool_invalidated_mid_turn_is_not_offered_again(self) -> None:
        def break_sleepy(messages, tools):
            self.registry.register(FunctionTool("sleepy", "", _sleepy), replace=True)
            return calls(("calculator", {"expression": "1+1"}, "c1"))

        orchestrator, provider = self.orchestrator([break_sleepy, text("2")], commentary=False)
        outcome = await orchestrator.run_turn("s1", "Add")

        self.assertEqual(outcome.state, TurnState.DONE)
        self.assertEqual(provider.calls[0].tool_names, ["calculator", "sleepy"])
        self.assertEqual(provider.calls[1].tool_names, ["calculator"])

    async def test_unserializable_tool_results_do_not_abort_the_turn(self) -> None:
        self.registry.register(FunctionTool("tuple_keys", "Returns a dict keyed by tuples", lambda: {(1, 2): 3}))
        orchestrator, _ = self.orchestrator(
            [
                calls(("tuple_keys", {}, "t1"), ("calculator", {"expression": "(10**100)**50"}, "t2")),
                text("Neither result was usable."),
            ],
            commentary=False,
        )
        outcome = await orchestrator.run_turn("s1", "Try both")

        self.assertEqual(outcome.state, TurnState.DONE)
        tool_messages = [m for m in await self.context() if m.role == "tool"]
        self.assertIn("not JSON-serializable", payload_of(tool_messages[0])["error"])
        self.assertIn("too large", payload_of(tool_messages[1])["error"])

    async def test_call_ids_reused_by_the_provider_are_replaced(self) -> None:
        orchestrator, _ = self.orchestrator(
            [
                calls(("calculator", {"expression": "1+1"}, "call_0")),
                calls(("calculator", {"expression": "2+2"}, "call_0")),
                text("2 and 4."),
                calls(("calculator", {"expression": "3+3"}, "call_0")),
                text("6."),
            ],
            commentary=False,
        )
        self.assertEqual((await orchestrator.run_turn("s1", "Add twice")).state, TurnState.DONE)
        self.assertEqual((await orchestrator.run_turn("s1", "Once more")).state, TurnState.DONE)

        messages = await self.context()
        call_ids = [tc.id for m in messages for tc in m.tool_calls]
        self.assertEqual(len(call_ids), 3)
        self.assertEqual(len(set(call_ids)), 3)
        self.assertEqual(call_ids[0], "call_0")
        for index, message in enumerate(messages):
            if message.role != "tool":
                continue
            owners = [
                m.sequence_number
                for m in messages[:index]
                if m.role == "assistant" and any(tc.id == message.tool_call_id for tc in m.tool_calls)
            ]
            self.assertEqual(len(owners), 1, message.tool_call_id)


    async def test_unknown_and_malformed_calls_become_error_results(self) -> None:
        orchestrator, _ = self.orchestrator(
            [
                NormalizedResponse(
                    tool_calls=[
                        ToolCallRequest(id="x", name="does_not_exist", arguments_json="{}"),
                        ToolCallRequest(id="y", name="calculator", arguments_json='{"expression": '),
                        ToolCallRequest(id="y", name="  ", arguments_json="{}"),
                    ],
                    finish_reason="tool_calls",
                ),
                text("All three failed."),
            ],
            commentary=False,
        )
        outcome = await orchestrator.run_turn("s1", "Try things")
        self.assertEqual(outcome.state, TurnState.DONE)
        messages = await self.context()
        call_ids = [c.id for c in messages[1].tool_calls]
        self.assertEqual(len(set(call_ids)), 3)
        self.assertEqual(messages[1].tool_calls[2].name, INVALID_TOOL_NAME)
        tool_messages = [m for m in messages if m.role == "tool"]
        self.assertEqual(len(tool_messages), 3)
        self.assertIn("Unknown tool", payload_of(tool_messages[0])["error"])
        self.assertIn("not valid JSON", payload_of(tool_messages[1])["error"])
        self.assertIn("Unknown tool", payload_of(tool_messages[2])["error"])

    async def test_invalid_definitions_are_neither_offered_nor_executed(self) -> None:
        executed = []
        self.registry.register(FunctionTool("undocumented", "", lambda: executed.append(True)))
        orchestrator, provider = self.orchestrator(
            [calls(("undocumented", {}, "u")), text("ok")],
            commentary=False,
        )
        await orchestrator.run_turn("s1", "Use the undocumented tool")
        self.assertNotIn("undocumented", provider.calls[0].tool_names)
        self.assertEqual(executed, [])
        self.assertIn("Unknown tool", payload_of((await self.context())[2])["error"])

    async def test_duplicate_calls_are_not_executed_twice(self) -> None:
        runs = []

        def record(expression: str) -> int:
            runs.append(expression)
            return len(runs)

        self.registry.register(
            FunctionTool(
                "record",
                "Records its input",
                record,
                {"type": "object", "properties": {"expression": {"type": "string"}}, "required": ["expression"]},
            )
        )
        orchestrator, _ = self.orchestrator(
            [
                NormalizedResponse(
                    tool_calls=[
                        ToolCallRequest(id="a", name="record", arguments_json='{"expression": "1+1"}'),
                        ToolCallRequest(id="b", name="record", arguments_json='{ "expression":"1+1" }'),
                    ],
                    finish_reason="tool_calls",
                ),
                text("Done."),
            ],
            commentary=False,
        )
        await orchestrator.run_turn("s1", "Record twice")
        self.assertEqual(runs, ["1+1"])
        duplicate = payload_of((await self.context())[3])
        self.assertEqual(duplicate["duplicate_of"], "a")

    async def test_empty_comment_is_skipped(self) -> None:
        orchestrator, _ = self.orchestrator(
            [calls(("calculator", {"expression": "1"}, "c")), text(""), text("1")],
        )
        await orchestrator.run_turn("s1", "One")
        self.assertEqual([m.role for m in await self.context()], ["user", "assistant", "tool", "assistant"])

    async def test_tool_calls_in_a_comment_are_ignored(self) -> None:
        comment = NormalizedResponse(
            content="Checking again.",
            tool_calls=[ToolCallRequest(id="z", name="calculator", arguments_json="{}")],
            finish_reason="tool_calls",
        )
        orchestrator, _ = self.orchestrator(
            [calls(("calculator", {"expression": "1"}, "c")), comment, text("1")],
        )
        outcome = await orchestrator.run_turn("s1", "One")
        self.assertEqual(outcome.state, TurnState.DONE)
        messages = await self.context()
        self.assertEqual(messages[3].content, "Checking again.")
        self.assertEqual(messages[3].tool_calls, ())


class TestFailures(LoopTestCase):
    async def test_provider_failure_aborts_with_one_message(self) -> None:
        orchestrator, _ = self.orchestrator([ProviderTransportError("unreachable")])
        outcome = await orchestrator.run_turn("s1", "Hi")
        self.assertEqual(outcome.state, TurnState.ABORTED)
        self.assertTrue(outcome.abort_reason.startswith("provider_error"))
        messages = await self.context()
        self.assertEqual([m.role for m in messages], ["user", "assistant"])
        self.assertEqual(messages[-1].content, PROVIDER_ERROR_MESSAGE)

    async def test_provider_failure_during_comment_closes_the_round(self) -> None:
        orchestrator, _ = self.orchestrator(
            [
                calls(("calculator", {"expression": "1"}, "a"), ("calculator", {"expression": "2"}, "b")),
                ProviderRequestError("bad request", status_code=400),
            ]
        )
        outcome = await orchestrator.run_turn("s1", "Two sums")
        self.assertEqual(outcome.state, TurnState.ABORTED)
        messages = await self.context()
        self.assertEqual([m.role for m in messages], ["user", "assistant", "tool", "assistant"])
        self.assertEqual(await self.history.pending_tool_calls("s1"), [])

    async def test_model_error_finish_aborts(self) -> None:
        orchestrator, _ = self.orchestrator([NormalizedResponse(content=None, finish_reason="error")])
        outcome = await orchestrator.run_turn("s1", "Hi")
        self.assertEqual(outcome.state, TurnState.ABORTED)
        self.assertEqual(outcome.abort_reason, "model_error")

    async def test_turn_deadline_aborts(self) -> None:
        async def slow_provider(messages, tools):
            await asyncio.sleep(5)
            return text("too late")

        orchestrator, _ = self.orchestrator([slow_provider], turn_timeout=0.1)
        outcome = await orchestrator.run_turn("s1", "Hi")
        self.assertEqual(outcome.state, TurnState.ABORTED)
        self.assertEqual(outcome.abort_reason, "turn_timeout")
        self.assertEqual((await self.context())[-1].content, TIMEOUT_MESSAGE)

    async def test_cancellation_keeps_history_and_closes_pending_calls(self) -> None:
        cancel = asyncio.Event()

        def cancel_after_answer(messages, tools):
            cancel.set()
            return calls(("calculator", {"expression": "1"}, "a"), ("calculator", {"expression": "2"}, "b"))

        orchestrator, provider = self.orchestrator([cancel_after_answer], commentary=False)
        outcome = await orchestrator.run_turn("s1", "Go", cancel_event=cancel)

        self.assertEqual(outcome.state, TurnState.ABORTED)
        self.assertEqual(outcome.abort_reason, "cancelled")
        self.assertEqual(len(provider.calls), 1)
        messages = await self.context()
        self.assertEqual([m.role for m in messages], ["user", "assistant", "tool", "tool", "assistant"])
        self.assertEqual([m.tool_call_id for m in messages[2:4]], ["a", "b"])
        self.assertTrue(all("error" in payload_of(m) for m in messages[2:4]))
        self.assertEqual(messages[-1].content, CANCELLED_MESSAGE)

    async def test_cancel_before_start_records_only_the_user_message(self) -> None:
        cancel = asyncio.Event()
        cancel.set()
        orchestrator, provider = self.orchestrator([])
        outcome = await orchestrator.run_turn("s1", "Never mind", cancel_event=cancel)
        self.assertEqual(outcome.state, TurnState.ABORTED)
        self.assertEqual(provider.calls, [])
        self.assertEqual([m.role for m in await self.context()], ["user", "assistant"])

    async def test_dangling_calls_from_an_earlier_turn_are_closed(self) -> None:
        await self.history.ensure_session("s1", "default")
        await self.history.append("s1", MessageDraft.user("earlier"))
        await self.history.append(
            "s1",
            MessageDraft.tool_calls_request([ToolCallRequest(id="old", name="calculator", arguments_json="{}")]),
        )
        orchestrator, _ = self.orchestrator([text("Fresh start.")])
        outcome = await orchestrator.run_turn("s1", "Again")
        self.assertEqual(outcome.state, TurnState.DONE)
        messages = await self.context()
        self.assertEqual([m.role for m in messages], ["user", "assistant", "tool", "user", "assistant"])
        self.assertEqual(messages[2].tool_call_id, "old")


class TestSessions(LoopTestCase):
    system_prompt = "You are terse."

    async def test_system_prompt_is_added_once(self) -> None:
        orchestrator, provider = self.orchestrator([text("One."), text("Two.")])
        await orchestrator.run_turn("s1", "First")
        await orchestrator.run_turn("s1", "Second")
        messages = await self.context()
        self.assertEqual([m.role for m in messages], ["system", "user", "assistant", "user", "assistant"])
        self.assertEqual(json.loads(provider.calls[1].payload)[0]["content"], "You are terse.")

    async def test_concurrent_turns_on_one_session_are_serialized(self) -> None:
        orchestrator, _ = self.orchestrator([text("A"), text("B")])
        await asyncio.gather(
            orchestrator.run_turn("s1", "first"),
            orchestrator.run_turn("s1", "second"),
        )
        roles = [m.role for m in await self.context()]
        self.assertEqual(roles, ["system", "user", "assistant", "user", "assistant"])

    async def test_sessions_are_independent(self) -> None:
        orchestrator, _ = self.orchestrator([text("A"), text("B")])
        await asyncio.gather(
            orchestrator.run_turn("s1", "first"),
            orchestrator.run_turn("s2", "second"),
        )
        self.assertEqual(len(await self.context("s1")), 3)
        self.assertEqual(len(await self.context("s2")), 3)

    async def test_turn_locks_are_dropped_after_use(self) -> None:
        orchestrator, _ = self.orchestrator([text("A"), text("B")])
        await asyncio.gather(
            orchestrator.run_turn("s1", "first"),
            orchestrator.run_turn("s1", "second"),
        )
        gc.collect()
        self.assertEqual(len(orchestrator._turn_locks), 0)
        self.assertEqual(len(self.history._session_locks), 0)


class TestMetrics(LoopTestCase):
    async def test_tool_and_turn_counters(self) -> None:
        orchestrator, _ = self.orchestrator(
            [
                NormalizedResponse(
                    tool_calls=[
                        ToolCallRequest(id="a", name="calculator", arguments_json='{"expression": "2+2"}'),
                        ToolCallRequest(id="b", name="calculator", arguments_json='{"expression": "2+2"}'),
                        ToolCallRequest(id="c", name="missing", arguments_json="{}"),
                    ],
                    finish_reason="tool_calls",
                ),
                text("4."),
                ProviderTransportError("unreachable"),
            ],
            commentary=False,
        )
        self.assertEqual(orchestrator.metrics().turns, 0)
        await orchestrator.run_turn("s1", "2+2 twice, then something unknown")
        await orchestrator.run_turn("s2", "Hello?")

        metrics = orchestrator.metrics()
        self.assertEqual((metrics.turns, metrics.completed_turns, metrics.aborted_turns), (2, 1, 1))
        self.assertEqual(
            (metrics.tool_calls, metrics.successful_tool_calls, metrics.failed_tool_calls),
            (2, 1, 1),
        )
        self.assertEqual(metrics.duplicate_tool_calls, 1)
        self.assertAlmostEqual(metrics.tool_success_rate, 0.5)
        self.assertGreaterEqual(metrics.avg_tool_duration_ms, 0.0)
        self.assertGreaterEqual(metrics.avg_turn_duration_ms, 0.0)

    async def test_metrics_snapshot_is_detached(self) -> None:
        orchestrator, _ = self.orchestrator([text("One."), text("Two.")])
        await orchestrator.run_turn("s1", "First")
        snapshot = orchestrator.metrics()
        await orchestrator.run_turn("s1", "Second")
        self.assertEqual(snapshot.turns, 1)
        self.assertEqual(orchestrator.metrics().turns, 2)


if __name__ == "__main__":
    unittest.main()
