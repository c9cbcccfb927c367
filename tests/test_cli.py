"""CLI commands driven through Typer's test runner."""

import asyncio
import json

import pytest
import yaml
from typer.testing import CliRunner

from agentpay.cli.commands.run import parse_vars
from agentpay.cli.main import app
from agentpay.core.mandates import MandateChain
from agentpay.core.signing import MandateSigner
from agentpay.version import __version__

from conftest import payment_content

runner = CliRunner()

REFUND_FLOW = {
    "agent_id": "refund-flow",
    "variables": {"amount": 50},
    "steps": [
        {
            "id": "start", "type": "TRIGGER", "name": "Start", "tool_type": "manual_trigger",
            "connections": {"success_step_id": "check"},
        },
        {
            "id": "check", "type": "CONDITION", "name": "Large refund?", "tool_type": "condition",
            "parameters": {"expression": "amount > 100"},
            "connections": {"conditions": [{"expression": "amount > 100", "next_step_id": "notify"}]},
        },
        {
            "id": "notify", "type": "ACTION", "name": "Notify ops", "tool_type": "send_email",
            "parameters": {"to": "ops@example.com", "subject": "Large refund", "body": "Check it"},
        },
    ],
}


@pytest.fixture
def graph_file(tmp_path):
    path = tmp_path / "refund_flow.yaml"
    path.write_text(yaml.safe_dump(REFUND_FLOW))
    return path


def _write(tmp_path, name, document):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(document))
    return path


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_validate_valid_graph(graph_file):
    result = runner.invoke(app, ["validate", str(graph_file)])
    assert result.exit_code == 0
    assert "VALID" in result.output


def test_validate_reports_errors(tmp_path):
    broken = dict(REFUND_FLOW, steps=[
        dict(REFUND_FLOW["steps"][0], connections={"success_step_id": "nowhere"}),
        dict(REFUND_FLOW["steps"][2], tool_type="teleport"),
    ])
    result = runner.invoke(app, ["validate", str(_write(tmp_path, "broken.yaml", broken))])
    assert result.exit_code == 1
    assert "INVALID" in result.output
    assert "nowhere" in result.output
    assert "teleport" in result.output


def test_validate_missing_file(tmp_path):
    result = runner.invoke(app, ["validate", str(tmp_path / "absent.yaml")])
    assert result.exit_code == 1
    assert "File not found" in result.output


@pytest.mark.parametrize("command", ["validate", "plan"])
def test_malformed_yaml_is_reported(tmp_path, command):
    path = tmp_path / "bad.yaml"
    path.write_text("steps: [unclosed\n")
    result = runner.invoke(app, [command, str(path)])
    assert result.exit_code == 1
    assert "Error" in result.output


def test_plan_lists_reachable_steps(graph_file):
    result = runner.invoke(app, ["plan", str(graph_file)])
    assert result.exit_code == 0
    for step_id in ("start", "check", "notify"):
        assert step_id in result.output


def test_run_completes(graph_file):
    result = runner.invoke(app, ["run", str(graph_file), "--var", "amount=500"])
    assert result.exit_code == 0, result.output
    assert "COMPLETED" in result.output
    assert "notify" in result.output


def test_run_json_output(graph_file):
    result = runner.invoke(app, ["run", str(graph_file), "--json", "--tenant", "acme"])
    assert result.exit_code == 0, result.output
    assert '"status": "COMPLETED"' in result.output


def test_run_gated_step_exits_nonzero(tmp_path):
    document = {
        "agent_id": "payout",
        "steps": [
            {"id": "start", "type": "TRIGGER", "name": "Start", "tool_type": "manual_trigger",
             "connections": {"success_step_id": "approve"}},
            {"id": "approve", "type": "APPROVAL", "name": "Approve", "tool_type": "approval"},
        ],
    }
    result = runner.invoke(app, ["run", str(_write(tmp_path, "payout.yaml", document))])
    assert result.exit_code == 1
    assert "FAILED" in result.output
    assert "mandate_not_approved" in result.output


def test_run_rejects_malformed_var(graph_file):
    result = runner.invoke(app, ["run", str(graph_file), "--var", "oops"])
    assert result.exit_code != 0


def test_parse_vars_keeps_scalar_types():
    assert parse_vars(["amount=42", "ok=true", "who=ann", "empty="]) == {
        "amount": 42, "ok": True, "who": "ann", "empty": "",
    }


def test_tools_lists_builtins():
    result = runner.invoke(app, ["tools"])
    assert result.exit_code == 0
    for name in ("http_request", "send_email", "condition", "approval"):
        assert name in result.output


# ── verify ────────────────────────────────────────────────────────────────────


@pytest.fixture
def mandate_file(tmp_path):
    chain = MandateChain(signer=MandateSigner.generate())
    mandate = asyncio.run(chain.create(payment_content(), creator_id="user-1"))
    path = tmp_path / f"{mandate.mandate_id}.json"
    path.write_text(mandate.model_dump_json())
    return path


def test_verify_intact_mandate(mandate_file):
    result = runner.invoke(app, ["verify", str(mandate_file), "--signatures"])
    assert result.exit_code == 0, result.output
    assert "Mandate verified" in result.output


def test_verify_detects_tampering(mandate_file):
    document = json.loads(mandate_file.read_text())
    document["content"]["transaction"]["amount"]["value"] = 1_000_000
    mandate_file.write_text(json.dumps(document))

    result = runner.invoke(app, ["verify", str(mandate_file)])
    assert result.exit_code == 1
    assert "failed verification" in result.output


def test_verify_requires_signatures_when_asked(tmp_path):
    mandate = asyncio.run(MandateChain().create(payment_content(), creator_id="user-1"))
    path = tmp_path / "unsigned.json"
    path.write_text(mandate.model_dump_json())

    assert runner.invoke(app, ["verify", str(path)]).exit_code == 0
    result = runner.invoke(app, ["verify", str(path), "--signatures"])
    assert result.exit_code == 1
    assert "no signatures attached" in result.output


def test_verify_malformed_yaml(tmp_path):
    path = tmp_path / "mandate.yaml"
    path.write_text("mandate_id: [unclosed\n")
    result = runner.invoke(app, ["verify", str(path)])
    assert result.exit_code == 1
    assert "Error" in result.output
