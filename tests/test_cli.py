import json

import httpx
import respx

import provisioner_cli

API = "http://api.test"


def _write_plan(tmp_path, document):
    path = tmp_path / "plan.json"
    path.write_text(json.dumps(document))
    return str(path)


def test_local_validate_accepts_planner_response(tmp_path, capsys):
    plan_file = _write_plan(
        tmp_path,
        {
            "plan": {
                "steps": [
                    {"order": 2, "type": "add_column", "dependsOn": [1]},
                    {"order": 1, "type": "create_workbook"},
                ]
            }
        },
    )
    assert provisioner_cli.main(["plans", "validate", plan_file, "--local"]) == 0
    assert "Execution order: [1, 2]" in capsys.readouterr().out


def test_local_validate_reports_cycle(tmp_path, capsys):
    plan_file = _write_plan(
        tmp_path,
        {
            "steps": [
                {"order": 1, "type": "add_column", "dependsOn": [2]},
                {"order": 2, "type": "add_column", "dependsOn": [1]},
            ]
        },
    )
    assert provisioner_cli.main(["plans", "validate", plan_file, "--local"]) == 1
    assert "Invalid plan (cycle_detected)" in capsys.readouterr().out


@respx.mock
def test_submit_prints_table_and_warnings(capsys):
    respx.post(f"{API}/api/records/r1/submit").mock(
        return_value=httpx.Response(
            200,
            json={"status": "submitted", "table_id": "t1", "warnings": ["populate: HTTP 500: boom"]},
        )
    )
    assert provisioner_cli.main(["--base-url", API, "records", "submit", "r1"]) == 0
    out = capsys.readouterr().out
    assert "Submitted: table t1" in out
    assert "warning: populate: HTTP 500: boom" in out


@respx.mock
def test_submit_failure_returns_nonzero(capsys):
    respx.post(f"{API}/api/records/r1/submit").mock(
        return_value=httpx.Response(200, json={"status": "failed", "phase": "preview", "error": "no matches"})
    )
    assert provisioner_cli.main(["--base-url", API, "records", "submit", "r1"]) == 1
    assert "Failed in preview: no matches" in capsys.readouterr().out

    respx.post(f"{API}/api/records/r2/submit").mock(
        return_value=httpx.Response(409, json={"detail": "Record r2 is failed"})
    )
    assert provisioner_cli.main(["--base-url", API, "records", "submit", "r2"]) == 1
    assert "HTTP 409 Record r2 is failed" in capsys.readouterr().out


@respx.mock
def test_run_and_wait_prints_steps(tmp_path, capsys):
    plan_file = _write_plan(tmp_path, {"steps": [{"order": 1, "type": "create_workbook"}]})
    start = respx.post(f"{API}/api/plans/run").mock(
        return_value=httpx.Response(200, json={"run_id": "run_1", "status": "running"})
    )
    respx.get(f"{API}/api/runs/run_1").mock(
        return_value=httpx.Response(
            200,
            json={
                "run_id": "run_1",
                "status": "completed",
                "steps": [{"order": 1, "state": "succeeded", "warnings": []}],
            },
        )
    )

    assert provisioner_cli.main(["--base-url", API, "plans", "run", plan_file, "--fail-fast", "--wait"]) == 0
    sent = json.loads(start.calls.last.request.content)
    assert sent == {"plan": {"steps": [{"order": 1, "type": "create_workbook"}]}, "fail_fast": True}
    out = capsys.readouterr().out
    assert "Run run_1: completed" in out
    assert "[1] succeeded" in out


def test_no_command_prints_help(capsys):
    assert provisioner_cli.main([]) == 1
    assert "usage" in capsys.readouterr().out
