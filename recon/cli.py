"""Operator CLI for the reconciliation controller.

Example:
    recon --url http://localhost:8080 status
    recon plan
    recon pause && recon approve
    recon join worker-1

Every command except `bootstrap` talks to a running controller's REST API.
`bootstrap` runs the bring-up sequence in-process from a config file.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import requests

DEFAULT_URL = "http://localhost:8080"


class ApiClient:
    """Thin requests wrapper around the controller API."""

    def __init__(self, base_url: str, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def call(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self.session.request(method, f"{self.base_url}{path}", json=body, timeout=self.timeout)
        try:
            data = response.json()
        except ValueError:
            data = {"error": response.text.strip()}
        if response.status_code >= 400:
            message = data.get("error", response.reason) if isinstance(data, dict) else response.reason
            raise SystemExit(f"{method} {path} -> {response.status_code}: {message}")
        return data


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _print_plan(plan: Dict[str, Any]) -> None:
    actions = plan.get("actions", [])
    print(f"{plan.get('plan_id')} @ {plan.get('revision')}: {len(actions)} actions")
    for action in actions:
        print(
            f"  {action['type']:<7} {action['workload']:<24} "
            f"gen {action['from_generation']} -> {action['to_generation']} "
            f"r={action['replicas']}  ({action['reason']})"
        )
    for name in plan.get("orphans", []):
        print(f"  orphan  {name}")
    for entry in plan.get("blocked", []):
        print(f"  blocked {entry['workload']}: {entry['reason']}")


def _print_report(report: Optional[Dict[str, Any]]) -> None:
    if not report:
        print("nothing applied")
        return
    print(f"{report['plan_id']}: {report['status']}")
    for result in report.get("results", []):
        line = f"  {result['status']:<10} {result['action']['type']:<7} {result['action']['workload']}"
        if result.get("error"):
            line += f"  {result['error']}"
        print(line)


def _bootstrap(args: argparse.Namespace) -> int:
    from recon.config import load_config
    from recon.controller import Controller

    cfg = load_config(args.config)
    logging.basicConfig(level=getattr(logging, cfg.log_level, logging.INFO), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    controller = Controller.from_config(cfg)
    summary = controller.bootstrap(join=not args.skip_join, charts=not args.skip_charts, start_watcher=False)
    _print(summary)
    report = summary.get("report")
    return 1 if report and report["status"] in ("failed", "degraded") else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="recon", description="Reconciliation controller CLI")
    parser.add_argument("--url", default=os.environ.get("RECON_API_URL", DEFAULT_URL), help="controller API base URL")
    parser.add_argument("--timeout", type=float, default=120.0, help="request timeout in seconds")
    parser.add_argument("--json", action="store_true", help="print raw JSON responses")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="controller and watcher status")
    plan = sub.add_parser("plan", help="show the pending or last plan")
    plan.add_argument("--fresh", action="store_true", help="compute a new plan now")
    sync = sub.add_parser("sync", help="diff and apply now")
    sync.add_argument("--dry-run", action="store_true")
    sync.add_argument("--prune", action="store_true", default=None)
    approve = sub.add_parser("approve", help="apply the pending plan")
    approve.add_argument("plan_id", nargs="?")
    sub.add_parser("pause", help="pause self-heal")
    sub.add_parser("resume", help="resume self-heal")
    sub.add_parser("nodes", help="list topology nodes")
    join = sub.add_parser("join", help="issue a join token for a node")
    join.add_argument("node_id")
    complete = sub.add_parser("complete", help="complete a node join")
    complete.add_argument("node_id")
    complete.add_argument("token")
    decommission = sub.add_parser("decommission", help="mark a node decommissioned")
    decommission.add_argument("node_id")
    sub.add_parser("applied", help="show applied workload state")
    sub.add_parser("report", help="show the last apply report")

    bootstrap = sub.add_parser("bootstrap", help="run the bring-up sequence in-process")
    bootstrap.add_argument("--config", default=None, help="config file (default $RECON_CONFIG or recon.yaml)")
    bootstrap.add_argument("--skip-join", action="store_true")
    bootstrap.add_argument("--skip-charts", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "bootstrap":
        return _bootstrap(args)

    api = ApiClient(args.url, timeout=args.timeout)
    try:
        if args.command == "status":
            data = api.call("GET", "/status")
        elif args.command == "plan":
            data = api.call("GET", "/plan?fresh=1" if args.fresh else "/plan")
            if not args.json:
                _print_plan(data)
                return 0
        elif args.command == "sync":
            data = api.call("POST", "/sync", {"dry_run": args.dry_run, "prune": args.prune})
            if not args.json:
                _print_plan(data["plan"])
                _print_report(data["report"])
                return 1 if data["report"] and data["report"]["status"] in ("failed", "degraded") else 0
        elif args.command == "approve":
            data = api.call("POST", "/plan/approve", {"plan_id": args.plan_id})
            if not args.json:
                _print_report(data)
                return 1 if data["status"] in ("failed", "degraded") else 0
        elif args.command == "pause":
            data = api.call("POST", "/self-heal/pause")
        elif args.command == "resume":
            data = api.call("POST", "/self-heal/resume")
        elif args.command == "nodes":
            data = api.call("GET", "/nodes")
            if not args.json:
                for node in data["nodes"]:
                    flag = " (decommissioned)" if node["decommissioned"] else ""
                    print(f"{node['node_id']:<20} {node['role']:<10} {node['join_state']}{flag}")
                return 0
        elif args.command == "join":
            data = api.call("POST", f"/nodes/{args.node_id}/join")
            if not args.json:
                print(data["join_command"])
                return 0
        elif args.command == "complete":
            data = api.call("POST", f"/nodes/{args.node_id}/complete", {"token": args.token})
        elif args.command == "decommission":
            data = api.call("POST", f"/nodes/{args.node_id}/decommission")
        elif args.command == "applied":
            data = api.call("GET", "/applied")
        else:
            data = api.call("GET", "/report")
            if not args.json:
                _print_report(data)
                return 0
    except requests.RequestException as e:
        print(f"cannot reach controller at {args.url}: {e}", file=sys.stderr)
        return 2
    _print(data)
    return 0


if __name__ == "__main__":
    sys.exit(main())
