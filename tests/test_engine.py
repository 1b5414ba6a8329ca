"""
End-to-end tests for OrchestrationEngine with a scripted gateway.
"""

import asyncio
import json

import pytest

from conftest import FakeGateway
from teamflow.agents.profiles import AgentProfile
from teamflow.credit_ledger import LedgerConfig
from teamflow.engine import EngineConfig, OrchestrationEngine, create_engine
from teamflow.errors import PlanInvalid, PlanNotFound, WorkflowStateError
from teamflow.plan import PlanStatus, StepStatus

NOW = 1_750_000_000.0

TEAM = [
    AgentProfile(agent_id="writer", name="Writer", role="technical writer"),
    AgentProfile(agent_id="coder", name="Coder", role="smart contract engineer", skills=["solidity"]),
    AgentProfile(agent_id="reviewer", name="Reviewer", role="auditor"),
]

TOKEN_PLAN = json.dumps([
    {"description": "Write the ERC-20 contract", "agent": "coder"},
    {"description": "Write unit tests", "agent": "coder", "depends_on": [1]},
    {"description": "Document the contract", "agent": "writer", "depends_on": [1]},
    {"description": "Deploy to testnet", "agent": "coder", "depends_on": [2, 3]},
])


def make_engine(gateway=None, persistence=None, initial_grant=20, **config):
    engine_config = EngineConfig(
        agents=list(TEAM),
        ledger=LedgerConfig(initial_grant=initial_grant, daily_allowance=0),
        **config,
    )
    gateway = gateway or FakeGateway()
    return OrchestrationEngine(engine_config, persistence=persistence, gateway=gateway, clock=lambda: NOW)


def complex_gateway():
    return FakeGateway().script("classify", "COMPLEX").script("decompose", TOKEN_PLAN)


class TestSubmitTask:
    @pytest.mark.asyncio
    async def test_token_contract_end_to_end(self):
        engine = make_engine(complex_gateway())
        await engine.start()

        status = await engine.submit_task("alice", "c1", "build and deploy a token contract")

        assert status.status == PlanStatus.COMPLETED
        assert [s.assigned_agent for s in status.steps] == ["coder", "coder", "writer", "coder"]
        assert await engine.balance("alice") == 16
        window = await engine.conversations.get_window("c1", "alice")
        assert window[0].participant == "user"
        assert window[0].content == "build and deploy a token contract"
        await engine.stop()

    @pytest.mark.asyncio
    async def test_one_open_plan_per_conversation(self):
        engine = make_engine(complex_gateway())

        draft = await engine.submit_task("alice", "c1", "build and deploy a token contract", start=False)
        assert draft.status == PlanStatus.DRAFT

        with pytest.raises(WorkflowStateError):
            await engine.submit_task("alice", "c1", "something else entirely")

        other = await engine.submit_task("alice", "c2", "build and deploy a token contract")
        assert other.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_plans_are_private_to_their_user(self):
        engine = make_engine(complex_gateway())
        status = await engine.submit_task("alice", "c1", "build and deploy a token contract", start=False)

        with pytest.raises(PlanNotFound):
            await engine.status("bob", status.plan_id)
        with pytest.raises(PlanNotFound):
            await engine.continue_workflow("bob", status.plan_id)

    @pytest.mark.asyncio
    async def test_invalid_task_leaves_no_plan(self):
        engine = make_engine()

        with pytest.raises(PlanInvalid):
            await engine.submit_task("alice", "c1", "")

        assert engine.executor.open_plan_id("c1") is None

    @pytest.mark.asyncio
    async def test_simple_task_runs_on_default_agent(self):
        engine = make_engine(FakeGateway().script("classify", "SIMPLE").script("step:1", "42"))

        status = await engine.submit_task("alice", "c1", "what is six times seven?")

        assert status.status == PlanStatus.COMPLETED
        assert status.steps[0].assigned_agent == "writer"
        assert status.final_output == "42"


class TestContinueAndRefine:
    @pytest.mark.asyncio
    async def test_continue_after_top_up(self):
        engine = make_engine(complex_gateway(), initial_grant=2)

        failed = await engine.submit_task("alice", "c1", "build and deploy a token contract")
        assert failed.status == PlanStatus.FAILED
        assert any((s.error or "").startswith("InsufficientCredit") for s in failed.steps)
        assert failed.step(1).status == StepStatus.SUCCEEDED

        await engine.top_up("alice", 10)
        rerun = await engine.continue_workflow("alice", failed.plan_id, wait=True)

        assert rerun.plan_id != failed.plan_id
        assert rerun.status == PlanStatus.COMPLETED
        assert rerun.step(1).output == failed.step(1).output
        assert await engine.balance("alice") == 8

    @pytest.mark.asyncio
    async def test_continue_completed_plan_rejected(self):
        engine = make_engine(complex_gateway())
        done = await engine.submit_task("alice", "c1", "build and deploy a token contract")

        with pytest.raises(WorkflowStateError):
            await engine.continue_workflow("alice", done.plan_id)

    @pytest.mark.asyncio
    async def test_refine_draft_in_place(self):
        gateway = complex_gateway().script("refine", json.dumps([
            {"index": 2, "description": "Write fuzz tests", "agent": "coder", "depends_on": [1]},
        ]))
        engine = make_engine(gateway)
        draft = await engine.submit_task("alice", "c1", "build and deploy a token contract", start=False)

        revised = await engine.refine("alice", draft.plan_id, "step 2 should use fuzzing")

        assert revised.plan_id == draft.plan_id
        assert revised.revision == 1
        assert revised.step(2).description == "Write fuzz tests"
        window = await engine.conversations.get_window("c1", "alice")
        assert window[-1].content == "step 2 should use fuzzing"

        final = await engine.continue_workflow("alice", draft.plan_id, wait=True)
        assert final.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_refine_finished_plan_creates_new_draft(self):
        gateway = complex_gateway().script("refine", json.dumps([
            {"index": 5, "description": "Write a migration guide", "agent": "writer", "depends_on": [4]},
        ]))
        engine = make_engine(gateway)
        done = await engine.submit_task("alice", "c1", "build and deploy a token contract")

        successor = await engine.refine("alice", done.plan_id, "also add a migration guide")

        assert successor.plan_id != done.plan_id
        assert successor.status == PlanStatus.DRAFT
        assert successor.step(1).status == StepStatus.SUCCEEDED
        assert successor.step(5).status == StepStatus.PENDING

        final = await engine.continue_workflow("alice", successor.plan_id, wait=True)
        assert final.status == PlanStatus.COMPLETED
        assert len(gateway.calls_for("step:1")) == 1

    @pytest.mark.asyncio
    async def test_pause_then_complete(self):
        gate = asyncio.Event()

        async def slow(call):
            await gate.wait()
            return "done"

        engine = make_engine(complex_gateway().script("step", slow))
        running = await engine.submit_task("alice", "c1", "build and deploy a token contract", wait=False)

        paused = await engine.pause("alice", running.plan_id)
        assert paused.status == PlanStatus.PAUSED

        gate.set()
        await engine.wait("alice", running.plan_id)
        completed = await engine.complete("alice", running.plan_id)
        assert completed.status == PlanStatus.COMPLETED
        assert engine.executor.open_plan_id("c1") is None


class TestEngineServices:
    @pytest.mark.asyncio
    async def test_route_and_broadcast_are_charged(self):
        engine = make_engine()

        reply = await engine.route("alice", "user", "coder", "c1", "hello")
        replies = await engine.broadcast("alice", "coder", "c1", "status update")

        assert reply == "route done"
        assert sorted(replies) == ["reviewer", "writer"]
        assert await engine.balance("alice") == 17

    @pytest.mark.asyncio
    async def test_clear_history(self):
        engine = make_engine()
        await engine.route("alice", "user", "coder", "c1", "hello")

        assert await engine.clear_history("alice") == 2
        assert await engine.conversations.get_window("c1", "alice") == []

    @pytest.mark.asyncio
    async def test_credit_history(self):
        engine = make_engine()
        await engine.top_up("alice", 5)

        history = await engine.credit_history("alice")

        assert [(e.reason, e.amount) for e in history] == [("initial_grant", 20), ("top_up", 5)]

    @pytest.mark.asyncio
    async def test_statistics(self):
        engine = make_engine(complex_gateway())
        await engine.submit_task("alice", "c1", "build and deploy a token contract")

        stats = engine.get_statistics()

        assert stats["gateway"]["state"] == "closed"
        assert stats["executor"]["plans_loaded"] == 1
        assert stats["metrics"]["agents"]["coder"]["total_steps"] == 3
        assert stats["metrics"]["agents"]["writer"]["successful_steps"] == 1

    def test_config_from_environment(self):
        config = EngineConfig.from_environment({
            "TEAMFLOW_DB_PATH": "/tmp/teamflow.db",
            "ANTHROPIC_API_KEY": "sk-test",
            "TEAMFLOW_MODEL": "claude-test",
            "TEAMFLOW_MAX_RETRIES": "5",
            "TEAMFLOW_TIMEOUT": "12.5",
            "TEAMFLOW_MAX_CONCURRENT": "2",
            "TEAMFLOW_STEP_COST": "3",
            "TEAMFLOW_INITIAL_CREDITS": "50",
            "TEAMFLOW_DAILY_CREDITS": "10",
        })

        assert config.db_path == "/tmp/teamflow.db"
        assert config.gateway.api_key == "sk-test"
        assert config.gateway.model == "claude-test"
        assert config.gateway.max_retries == 5
        assert config.gateway.timeout_seconds == 12.5
        assert config.executor.max_concurrent == 2
        assert config.executor.step_cost == 3
        assert config.ledger.initial_grant == 50
        assert config.ledger.daily_allowance == 10

    def test_config_defaults(self):
        config = EngineConfig.from_environment({})

        assert config.db_path is None
        assert config.gateway.api_key is None
        assert config.executor.max_concurrent == 4
        assert config.ledger.initial_grant == 20


class TestRestart:
    @pytest.mark.asyncio
    async def test_interrupted_plan_resumes_after_restart(self, tmp_path):
        db_path = str(tmp_path / "teamflow.db")

        async def hang(call):
            await asyncio.sleep(10)
            return "never"

        first = await create_engine(
            config=EngineConfig(agents=list(TEAM), ledger=LedgerConfig(initial_grant=20, daily_allowance=0)),
            db_path=db_path,
            gateway=FakeGateway().script("classify", "SIMPLE").script("step", hang),
            clock=lambda: NOW,
        )
        running = await first.submit_task("alice", "c1", "explain token standards", wait=False)
        for _ in range(500):
            if first.gateway.calls_for("step"):
                break
            await asyncio.sleep(0.001)
        await first.stop()

        second = await create_engine(
            config=EngineConfig(agents=list(TEAM), ledger=LedgerConfig(initial_grant=20, daily_allowance=0)),
            db_path=db_path,
            gateway=FakeGateway().script("step", "ERC-20 and ERC-721"),
            clock=lambda: NOW,
        )

        recovered = await second.status("alice", running.plan_id)
        assert recovered.status == PlanStatus.PAUSED
        assert recovered.step(1).status == StepStatus.PENDING

        with pytest.raises(WorkflowStateError):
            await second.submit_task("alice", "c1", "another task")

        final = await second.resume("alice", running.plan_id, wait=True)
        assert final.status == PlanStatus.COMPLETED
        assert final.final_output == "ERC-20 and ERC-721"
        assert await second.balance("alice") == 18
        await second.stop()
