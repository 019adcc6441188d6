import argparse
import json
import sys
import time
from pathlib import Path
from typing import List, Optional

import httpx

from provisioner.errors import PlanValidationError
from provisioner.validator import parse_plan, topological_order, validate_plan


DEFAULT_API_BASE = "http://127.0.0.1:8000"
RUNNING_STATUSES = {"running"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _load_plan(path: str) -> dict:
    data = json.loads(Path(path).read_text())
    # Planner responses wrap the plan in {"plan": {...}}.
    if isinstance(data, dict) and isinstance(data.get("plan"), dict):
        return data["plan"]
    return data


def _print_record(record: dict) -> None:
    print(f"{record.get('id')}  {record.get('client')}  status={record.get('status')}")
    for key in ("provider_task_id", "provider_table_id", "provider_workbook_id", "provider_source_id", "match_count"):
        if record.get(key) is not None:
            print(f"  {key}: {record[key]}")
    if record.get("error_message"):
        print(f"  error: {record['error_message']}")


def _print_run(run: dict) -> None:
    print(f"Run {run.get('run_id')}: {run.get('status')}")
    for step in run.get("steps") or []:
        line = f"  [{step.get('order')}] {step.get('state')}"
        if step.get("error"):
            line += f" - {step['error']}"
        print(line)
        for warning in step.get("warnings") or []:
            print(f"      warning: {warning}")


def _error_detail(resp: httpx.Response) -> str:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        return resp.text[:200]
    if isinstance(detail, dict):
        return detail.get("message") or json.dumps(detail)
    return str(detail)


def run_records_submit(args: argparse.Namespace) -> int:
    params = {"reuse_preview": "true"} if args.reuse_preview else {}
    with httpx.Client() as client:
        resp = client.post(
            _join_url(args.base_url, f"/api/records/{args.record_id}/submit"),
            params=params,
            timeout=args.timeout,
        )
        if resp.status_code >= 400:
            print(f"Submit failed: HTTP {resp.status_code} {_error_detail(resp)}")
            return 1
        result = resp.json()
    if result.get("status") == "submitted":
        suffix = " (already submitted)" if result.get("already_submitted") else ""
        print(f"Submitted: table {result.get('table_id')}{suffix}")
        for warning in result.get("warnings") or []:
            print(f"  warning: {warning}")
        return 0
    print(f"Failed in {result.get('phase')}: {result.get('error')}")
    return 1


def run_records_show(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/records/{args.record_id}"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch record: HTTP {resp.status_code}")
            return 1
        _print_record(resp.json())
    return 0


def run_plans_validate(args: argparse.Namespace) -> int:
    plan_doc = _load_plan(args.file)
    if args.local:
        try:
            plan = parse_plan(plan_doc)
            validate_plan(plan)
        except PlanValidationError as exc:
            print(f"Invalid plan ({exc.kind}): {exc}")
            return 1
        print(f"Plan OK. Execution order: {topological_order(plan)}")
        return 0
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/plans/validate"), json=plan_doc, timeout=10)
        if resp.status_code >= 400:
            print(f"Invalid plan: {_error_detail(resp)}")
            return 1
        print(f"Plan OK. Execution order: {resp.json().get('order')}")
    return 0


def _poll_run(client: httpx.Client, base: str, run_id: str, timeout_s: int) -> Optional[dict]:
    start = time.time()
    while time.time() - start < timeout_s:
        resp = client.get(_join_url(base, f"/api/runs/{run_id}"), timeout=10)
        resp.raise_for_status()
        run = resp.json()
        if run.get("status") not in RUNNING_STATUSES:
            return run
        time.sleep(2)
    print("Timed out waiting for the run to finish.")
    return None


def run_plans_run(args: argparse.Namespace) -> int:
    payload = {"plan": _load_plan(args.file), "fail_fast": True if args.fail_fast else None}
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/plans/run"), json=payload, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to start run: HTTP {resp.status_code} {_error_detail(resp)}")
            return 1
        run_id = resp.json().get("run_id")
        print(f"Started run {run_id}")
        if not args.wait:
            return 0
        run = _poll_run(client, args.base_url, run_id, args.timeout)
    if not run:
        return 1
    _print_run(run)
    return 0 if run.get("status") == "completed" else 1


def run_runs_show(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/runs/{args.run_id}"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch run: HTTP {resp.status_code}")
            return 1
        _print_run(resp.json())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Enrichment table provisioner CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    records = subparsers.add_parser("records", help="Execution records")
    records_sub = records.add_subparsers(dest="records_cmd")
    submit = records_sub.add_parser("submit", help="Provision the table for a record")
    submit.add_argument("record_id")
    submit.add_argument("--reuse-preview", action="store_true", help="Skip the preview if one already succeeded")
    submit.add_argument("--timeout", type=int, default=300, help="Request timeout seconds")
    show = records_sub.add_parser("show", help="Show a record")
    show.add_argument("record_id")

    plans = subparsers.add_parser("plans", help="Execution plans")
    plans_sub = plans.add_subparsers(dest="plans_cmd")
    validate = plans_sub.add_parser("validate", help="Validate a plan file")
    validate.add_argument("file")
    validate.add_argument("--local", action="store_true", help="Validate without contacting the API")
    run = plans_sub.add_parser("run", help="Run a plan file")
    run.add_argument("file")
    run.add_argument("--fail-fast", action="store_true", help="Stop dispatching after the first failure")
    run.add_argument("--wait", action="store_true", help="Wait for the run to finish")
    run.add_argument("--timeout", type=int, default=900, help="Max wait seconds")

    runs = subparsers.add_parser("runs", help="Plan runs")
    runs_sub = runs.add_subparsers(dest="runs_cmd")
    runs_show = runs_sub.add_parser("show", help="Show a plan run")
    runs_show.add_argument("run_id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "records" and args.records_cmd == "submit":
        return run_records_submit(args)
    if args.command == "records" and args.records_cmd == "show":
        return run_records_show(args)
    if args.command == "plans" and args.plans_cmd == "validate":
        return run_plans_validate(args)
    if args.command == "plans" and args.plans_cmd == "run":
        return run_plans_run(args)
    if args.command == "runs" and args.runs_cmd == "show":
        return run_runs_show(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
