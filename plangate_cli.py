import argparse
import sys
from typing import Any, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _format_step(idx: int, step: Dict[str, Any]) -> str:
    target = f" -> {step['target']}" if step.get("target") else ""
    return f"{idx}. {step.get('description')} ({step.get('tool')}: {step.get('operation')}{target})"


def _print_plan(plan: Dict[str, Any]) -> None:
    print(f"# {plan.get('title')}")
    print()
    print(f"- ID: {plan.get('id')}")
    print(f"- Status: {plan.get('status')}")
    print(f"- Version: {plan.get('version')}")
    print(f"- Created: {plan.get('created_at')}")
    print(f"- Tools: {', '.join(plan.get('tools_required') or [])}")
    if plan.get("executor_model"):
        print(f"- Executor model: {plan['executor_model']}")
    if plan.get("result_summary"):
        print(f"- Result: {plan['result_summary']}")
    print()
    print("## Steps")
    for idx, step in enumerate(plan.get("steps") or [], start=1):
        print(_format_step(idx, step))
    if plan.get("context"):
        print()
        print("## Context")
        print(plan["context"])


def _error_text(resp: httpx.Response) -> str:
    try:
        detail = resp.json().get("detail")
    except ValueError:
        return f"HTTP {resp.status_code}"
    if isinstance(detail, dict):
        return detail.get("message") or f"HTTP {resp.status_code}"
    return str(detail or f"HTTP {resp.status_code}")


def run_list(args: argparse.Namespace) -> int:
    params = {"status": args.status} if args.status else None
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/plans"), params=params, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list plans: {_error_text(resp)}")
            return 1
        plans = resp.json().get("plans") or []
    if not plans:
        print("No plans found.")
        return 0
    for plan in plans:
        stale = " (stale)" if plan.get("stale") else ""
        print(
            f"{plan['id']} [{plan['status']}] {plan['title']} "
            f"({len(plan.get('steps') or [])} steps, v{plan['version']}){stale}"
        )
    return 0


def run_show(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/plans/{args.plan_id}"), timeout=10)
        if resp.status_code >= 400:
            print(f"Plan {args.plan_id}: {_error_text(resp)}")
            return 1
        _print_plan(resp.json()["plan"])
    return 0


def _post_action(args: argparse.Namespace, action: str, payload: Dict[str, Any]) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, f"/api/plans/{args.plan_id}/{action}"), json=payload, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to {action}: {_error_text(resp)}")
            return 1
        plan = resp.json()["plan"]
    print(f"Plan {plan['id']} {plan['status']} (v{plan['version']}).")
    return 0


def run_approve(args: argparse.Namespace) -> int:
    payload = {"expected_version": args.expected_version} if args.expected_version is not None else {}
    return _post_action(args, "approve", payload)


def run_reject(args: argparse.Namespace) -> int:
    return _post_action(args, "reject", {"feedback": args.feedback} if args.feedback else {})


def run_cancel(args: argparse.Namespace) -> int:
    return _post_action(args, "cancel", {"reason": args.reason} if args.reason else {})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="plangate CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    plans = subparsers.add_parser("plans", help="Plan review")
    plans_sub = plans.add_subparsers(dest="plans_cmd")

    list_cmd = plans_sub.add_parser("list", help="List plans")
    list_cmd.add_argument("--status", help="Comma-separated statuses to include")

    show = plans_sub.add_parser("show", help="Show one plan")
    show.add_argument("plan_id")

    approve = plans_sub.add_parser("approve", help="Approve a proposed plan")
    approve.add_argument("plan_id")
    approve.add_argument("--expected-version", type=int, default=None, help="Fail if the plan moved past this version")

    reject = plans_sub.add_parser("reject", help="Reject a proposed plan")
    reject.add_argument("plan_id")
    reject.add_argument("--feedback", help="Why, for the next proposal")

    cancel = plans_sub.add_parser("cancel", help="Cancel a plan that has not finished")
    cancel.add_argument("plan_id")
    cancel.add_argument("--reason")

    return parser


COMMANDS = {
    "list": run_list,
    "show": run_show,
    "approve": run_approve,
    "reject": run_reject,
    "cancel": run_cancel,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "plans" and args.plans_cmd in COMMANDS:
        return COMMANDS[args.plans_cmd](args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
