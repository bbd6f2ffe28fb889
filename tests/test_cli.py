"""Tests for the autoheal command line."""

import sys
import types

import pytest
import yaml

from autoheal.__main__ import build_runner, load_capability, main
from autoheal.config.autoheal import AutoHealConfig
from autoheal.exceptions import CapabilityImportError, ConfigError
from autoheal.healing import LLMDiagnosticAdvisor
from autoheal.invoker import ToolOutcome


@pytest.fixture
def driver_module(monkeypatch, capability):
    """Importable module ``fake_driver`` exposing the scripted capability."""
    module = types.ModuleType("fake_driver")
    module.create = lambda: capability
    module.instance = capability
    module.not_a_capability = lambda: object()
    monkeypatch.setitem(sys.modules, "fake_driver", module)
    return module


def write_files(tmp_path, config: str) -> tuple[str, str]:
    config_path = tmp_path / "config.yml"
    config_path.write_text(config, encoding="utf-8")
    plan_path = tmp_path / "plan.yml"
    plan_path.write_text(
        "task_id: login\n"
        "goal: Log in\n"
        "steps:\n"
        "  - step_number: 1\n"
        "    action: {type: navigate, value: 'https://example.com/login'}\n"
        "    retry_config: {max_retries: 0, delay_ms: 0}\n"
        "  - step_number: 2\n"
        "    action:\n"
        "      type: click\n"
        "      target: {strategy: text, value: Sign in}\n"
        "    retry_config: {max_retries: 0, delay_ms: 0}\n",
        encoding="utf-8",
    )
    return str(config_path), str(plan_path)


class TestLoadCapability:
    def test_factory_is_called(self, driver_module, capability):
        assert load_capability("fake_driver:create") is capability

    def test_instance_is_returned(self, driver_module, capability):
        assert load_capability("fake_driver:instance") is capability

    @pytest.mark.parametrize("path", ["fake_driver", "fake_driver:missing", "no_such_module_xyz:create"])
    def test_errors(self, driver_module, path):
        with pytest.raises(CapabilityImportError):
            load_capability(path)


class TestBuildRunner:
    def test_without_chat_model(self, capability):
        runner = build_runner(AutoHealConfig(), capability)
        assert runner.healer.advisor is None
        assert runner.executor.state is None
        assert runner.max_heal_rounds == 3

    def test_with_chat_model(self, capability):
        config = AutoHealConfig.model_validate({
            "chat_llm": {"type": "openai", "model": "gpt-4o", "api_key": "key"},
            "healing": {"max_heal_rounds": 1},
        })
        runner = build_runner(config, capability)
        assert isinstance(runner.healer.advisor, LLMDiagnosticAdvisor)
        assert runner.max_heal_rounds == 1

    def test_rejects_non_capability(self):
        with pytest.raises(ConfigError):
            build_runner(AutoHealConfig(), object())


class TestMain:
    def test_analyze(self, capsys):
        assert main(["analyze", "Element not found: #login"]) == 0
        output = yaml.safe_load(capsys.readouterr().out)

        assert output["error_type"] == "element_not_found"
        assert output["healable"] is True
        assert output["strategies"][0]["name"] == "Try Alternative Selector"

    def test_analyze_with_type(self, capsys):
        main(["analyze", "waited too long", "--type", "TimeoutError"])
        assert yaml.safe_load(capsys.readouterr().out)["error_type"] == "timeout"

    def test_run_heals_plan(self, tmp_path, capsys, driver_module, capability):
        capability.script("text=Sign in", ToolOutcome(success=False, error="Element not found"))
        config_path, plan_path = write_files(
            tmp_path, f"capability: fake_driver:create\ntrace_dir: {tmp_path / 'traces'}\n")

        assert main(["run", "--config", config_path, plan_path]) == 0
        summary = yaml.safe_load(capsys.readouterr().out)

        assert summary["status"] == "completed"
        assert summary["statistics"]["healed_steps"] == 1
        assert [s["healed"] for s in summary["steps"]] == [False, True]
        assert summary["healing_history"][0]["strategy"] == "Try Alternative Selector"
        assert capability.tools_called[0] == "navigate"
        assert len(list((tmp_path / "traces").glob("trace_task_*.yaml"))) == 1

    def test_run_failure_exit_code(self, tmp_path, capsys, driver_module, capability):
        capability.script("text=Sign in", ToolOutcome(success=False, error="401 Unauthorized"))
        config_path, plan_path = write_files(tmp_path, "capability: fake_driver:create\n")

        assert main(["run", "--config", config_path, plan_path]) == 1
        summary = yaml.safe_load(capsys.readouterr().out)
        assert summary["status"] == "failed"
        assert summary["error"] == "Step 2 failed: 401 Unauthorized"

    def test_run_without_capability(self, tmp_path):
        config_path, plan_path = write_files(tmp_path, "language: en\n")
        assert main(["run", "--config", config_path, plan_path]) == 2

    def test_run_missing_plan(self, tmp_path):
        config_path, _ = write_files(tmp_path, "capability: fake_driver:create\n")
        with pytest.raises(SystemExit):
            main(["run", "--config", config_path, str(tmp_path / "missing.yml")])
