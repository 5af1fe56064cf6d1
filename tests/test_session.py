import json

import pytest

from conftest import FakeDriver
from pagepilot.config import RunnerConfig
from pagepilot.errors import OracleResponseError, PagePilotError
from pagepilot.schemas import Operation, Plan, PlaybookReference, StepResult, Verdict
from pagepilot.session import TaskRunner, format_batch_feedback, normalize_url
from pagepilot.storage import PlaybookStore

START = "https://shop.example.com/"
DOMAIN = "shop.example.com"


class ScriptedOracle:
    def __init__(self, *plans):
        self._plans = list(plans)
        self.observations = []

    async def decide(self, observation):
        self.observations.append(observation)
        plan = self._plans.pop(0)
        if isinstance(plan, Exception):
            raise plan
        return plan


def _config(tmp_path, **overrides):
    config = RunnerConfig(data_dir=tmp_path, goal_timeout_s=30, settle_timeout_ms=50, settle_quiet_ms=10)
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


@pytest.mark.asyncio
async def test_clean_batch_is_recorded_and_saved(tmp_path):
    driver = FakeDriver(
        url=START,
        present={"#q", "#go"},
        elements=[{"selector": "#q", "tag": "input", "text": "Search", "x": 720, "y": 90}],
    )
    oracle = ScriptedOracle(
        Plan(
            thought="search",
            sequence_name="search cats",
            items=[
                Operation(type="type", selector="#q", text="cats"),
                Operation(type="click", selector="#go"),
            ],
        ),
        Plan(thought="finished", items=[Verdict(type="done", reason="results shown")]),
    )
    store = PlaybookStore(data_dir=tmp_path)
    result = await TaskRunner(driver, oracle, store, config=_config(tmp_path)).run("find cats", START)

    assert result.status == "completed"
    assert result.reason == "results shown"
    assert result.actions == 2
    playbook = store.find(DOMAIN, "search cats")
    assert playbook is not None
    assert playbook.operations[0].position.rel_x == pytest.approx(0.5)
    assert 'selector=#q' in oracle.observations[0].elements_summary
    assert oracle.observations[1].playbook_summary.startswith("STORED PLAYBOOKS")
    assert "OK: click \"#go\"" in oracle.observations[1].feedback

    saved = json.loads((tmp_path / DOMAIN / "playbooks.json").read_text(encoding="utf-8"))
    assert [p["name"] for p in saved["playbooks"]][0] == "search cats"


@pytest.mark.asyncio
async def test_single_step_batches_are_stitched_at_task_end(tmp_path):
    driver = FakeDriver(url=START, present={"#menu", "#item"})
    oracle = ScriptedOracle(
        Plan(thought="open", items=[Operation(type="click", selector="#menu")]),
        Plan(thought="pick", items=[Operation(type="click", selector="#item")]),
        Plan(thought="done", items=[Verdict(type="done")]),
    )
    store = PlaybookStore(data_dir=tmp_path)
    await TaskRunner(driver, oracle, store, config=_config(tmp_path)).run("pick item", START)

    playbooks = store.get_playbooks(DOMAIN)
    assert len(playbooks) == 1
    assert playbooks[0].name == 'click "#menu" → click "#item"'
    assert playbooks[0].page_path == "/"
    assert (tmp_path / DOMAIN / "playbooks.json").exists()


@pytest.mark.asyncio
async def test_failed_verdict_and_bad_response_recovery(tmp_path):
    driver = FakeDriver(url=START)
    oracle = ScriptedOracle(
        OracleResponseError("No JSON found in oracle response"),
        Plan(thought="give up", items=[Verdict(type="failed", reason="captcha")]),
    )
    result = await TaskRunner(driver, oracle, PlaybookStore(data_dir=tmp_path), config=_config(tmp_path)).run(
        "anything", START
    )
    assert result.status == "failed"
    assert result.reason == "captcha"
    assert "could not be used" in oracle.observations[1].feedback


@pytest.mark.asyncio
async def test_transient_oracle_error_is_retried_after_a_pause(tmp_path):
    driver = FakeDriver(url=START)
    oracle = ScriptedOracle(
        RuntimeError("503 UNAVAILABLE"),
        Plan(thought="done", items=[Verdict(type="done", reason="ok")]),
    )
    result = await TaskRunner(driver, oracle, config=_config(tmp_path)).run("g", START)
    assert result.status == "completed"
    assert ("wait", 2000) in driver.calls
    assert "503 UNAVAILABLE" in oracle.observations[1].feedback
    assert any("Oracle error: 503 UNAVAILABLE" in line for line in result.transcript)


@pytest.mark.asyncio
async def test_search_with_enter_is_recorded_as_one_playbook(tmp_path):
    driver = FakeDriver(url=START, present={"#q"})
    oracle = ScriptedOracle(
        Plan(
            thought="search",
            items=[Operation(type="type", selector="#q", text="cats"), Operation(type="press", key="Enter")],
        ),
        Plan(thought="done", items=[Verdict(type="done")]),
    )
    store = PlaybookStore(data_dir=tmp_path)
    await TaskRunner(driver, oracle, store, config=_config(tmp_path)).run("g", START)
    recorded = store.find(DOMAIN, 'type "cats" → press Enter')
    assert recorded is not None
    assert [op.type for op in recorded.operations] == ["type", "press"]


@pytest.mark.asyncio
async def test_bare_host_start_url_is_normalized(tmp_path):
    driver = FakeDriver(url=START, present={"#a", "#b"})
    oracle = ScriptedOracle(
        Plan(thought="go", items=[Operation(type="click", selector="#a"), Operation(type="click", selector="#b"), Verdict(type="done")]),
    )
    store = PlaybookStore(data_dir=tmp_path)
    await TaskRunner(driver, oracle, store, config=_config(tmp_path)).run("g", "shop.example.com/deals")
    assert len(store.get_playbooks(DOMAIN)) == 1
    assert (tmp_path / DOMAIN / "playbooks.json").exists()


def test_start_url_without_host_is_rejected():
    assert normalize_url(" example.com/foo ") == "https://example.com/foo"
    assert normalize_url("http://example.com") == "http://example.com"
    with pytest.raises(PagePilotError):
        normalize_url("")


@pytest.mark.asyncio
async def test_bailed_batch_is_not_recorded_and_feeds_back(tmp_path):
    driver = FakeDriver(url=START, present={"#a"})
    oracle = ScriptedOracle(
        Plan(thought="try", items=[Operation(type="click", selector="#a"), Operation(type="click", selector="#missing")]),
        Plan(thought="stop", items=[Verdict(type="done")]),
    )
    store = PlaybookStore(data_dir=tmp_path)
    await TaskRunner(driver, oracle, store, config=_config(tmp_path)).run("g", START)
    assert store.get_playbooks(DOMAIN) == []
    assert "Batch stopped early: next target missing: #missing" in oracle.observations[1].feedback


@pytest.mark.asyncio
async def test_replays_stored_playbook_from_previous_run(tmp_path):
    driver = FakeDriver(url=START, present={"#q", "#go"})
    first = ScriptedOracle(
        Plan(
            thought="search",
            sequence_name="search",
            items=[Operation(type="type", selector="#q", text="cats"), Operation(type="click", selector="#go")],
        ),
        Plan(thought="done", items=[Verdict(type="done")]),
    )
    await TaskRunner(driver, first, PlaybookStore(data_dir=tmp_path), config=_config(tmp_path)).run("g", START)

    store = PlaybookStore(data_dir=tmp_path)
    second = ScriptedOracle(
        Plan(thought="reuse", items=[PlaybookReference(playbook="search"), Verdict(type="done")]),
    )
    result = await TaskRunner(driver, second, store, config=_config(tmp_path)).run("g", START)
    assert result.status == "completed"
    assert '"search"' in second.observations[0].playbook_summary
    assert store.find(DOMAIN, "search").success_count == 2


@pytest.mark.asyncio
async def test_playbooks_disabled_skips_store(tmp_path):
    driver = FakeDriver(url=START, present={"#a", "#b"})
    oracle = ScriptedOracle(
        Plan(thought="go", items=[Operation(type="click", selector="#a"), Operation(type="click", selector="#b"), Verdict(type="done")]),
    )
    store = PlaybookStore(data_dir=tmp_path)
    await TaskRunner(driver, oracle, store, config=_config(tmp_path, playbooks_enabled=False)).run("g", START)
    assert store.get_playbooks(DOMAIN) == []
    assert oracle.observations[0].playbook_summary is None
    assert not (tmp_path / DOMAIN).exists()


@pytest.mark.asyncio
async def test_timeout_is_reported(tmp_path):
    driver = FakeDriver(url=START)
    oracle = ScriptedOracle()
    result = await TaskRunner(driver, oracle, config=_config(tmp_path, goal_timeout_s=0)).run("g", START)
    assert result.status == "timeout"
    assert result.reason == "Goal timeout exceeded"


def test_feedback_formatting():
    text = format_batch_feedback(
        [StepResult(description="click #a", success=True), StepResult(description="click #b", success=False, error="boom")],
        "action failed: boom",
    )
    assert text.splitlines() == [
        "OK: click #a",
        "FAILED: click #b (boom)",
        "Batch stopped early: action failed: boom",
    ]
    assert format_batch_feedback([], None) == "No actions were executed."
