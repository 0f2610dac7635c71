#!/usr/bin/env python3
"""
Fleet Controller CLI

Host-side client for the fleet controller API. CI calls `deploy` with the
freshly pushed image; operators use the rest.

Usage:
    python deploy/deployctl.py deploy --version v2 --artifact registry/app:v2 --wait
    python deploy/deployctl.py status [PLAN_ID]      # Show a plan (default: latest)
    python deploy/deployctl.py cancel PLAN_ID        # Abort and roll back a plan
    python deploy/deployctl.py history               # Show recent rollouts
    python deploy/deployctl.py fleet                 # Show groups and instances
"""

import argparse
import os
import sys
import time

import requests


class ControllerError(Exception):
    """Raised when the controller rejects a request or is unreachable."""
    pass


class ControllerClient:
    def __init__(self, base_url: str, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.session.request(
                method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise ControllerError(f"Controller unreachable at {self.base_url}: {e}")
        try:
            body = response.json()
        except ValueError:
            raise ControllerError(f"Non-JSON response ({response.status_code}): {response.text[:200]}")
        if response.status_code >= 400:
            raise ControllerError(body.get("error", f"HTTP {response.status_code}"))
        return body

    def start_rollout(self, version: str, artifact: str) -> dict:
        return self._request(
            "POST", "/rollouts", json={"target_version": version, "artifact_ref": artifact}
        )

    def status(self, plan_id: str) -> dict:
        return self._request("GET", f"/rollouts/{plan_id}")

    def history(self) -> list[dict]:
        return self._request("GET", "/rollouts")["rollouts"]

    def cancel(self, plan_id: str, reason: str) -> dict:
        return self._request("POST", f"/rollouts/{plan_id}/cancel", json={"reason": reason})

    def fleet(self) -> dict:
        return self._request("GET", "/fleet")

    def wait(self, plan_id: str, poll_interval: float = 5, timeout: float = 3600) -> dict:
        start = time.time()
        last_state = None
        while time.time() - start < timeout:
            status = self.status(plan_id)
            if status["state"] != last_state:
                weights = ", ".join(f"{g}={w}%" for g, w in status["weights"].items())
                print(f"  [{round(time.time() - start, 1)}s] {status['state']} ({weights})")
                last_state = status["state"]
            if status["outcome"] != "in_progress":
                return status
            time.sleep(poll_interval)
        raise ControllerError(f"Plan {plan_id} still running after {timeout}s")


def print_plan(status: dict) -> None:
    print(f"\n{'=' * 50}")
    print(f"  Rollout {status['plan_id']}")
    print(f"{'=' * 50}")
    print(f"  Version:   {status['target_version']} ({status['artifact_ref']})")
    print(f"  Groups:    {status['source_group']} -> {status['target_group']} "
          f"x{status['desired_count']}")
    print(f"  State:     {status['state']}")
    print(f"  Outcome:   {status['outcome']}")
    if status.get("reason"):
        print(f"  Reason:    {status['reason']}")
    if status.get("weights"):
        print("  Weights:   " + ", ".join(f"{g}={w}%" for g, w in status["weights"].items()))
    if status["steps"]:
        print("  Steps:")
        for step in status["steps"]:
            print(f"    {step['weight']:>3}%  {step['outcome']}")
    print(f"{'=' * 50}\n")


def print_history(plans: list[dict]) -> None:
    if not plans:
        print("No rollout history.")
        return

    print(f"\n{'=' * 70}")
    print(f"  Rollout History (last {len(plans)} entries)")
    print(f"{'=' * 70}")
    for i, plan in enumerate(plans, 1):
        status = {"succeeded": "OK", "failed": "FAILED"}.get(plan["outcome"], "RUNNING")
        reason = f" - {plan['reason']}" if plan.get("reason") else ""
        print(
            f"  {i}. [{status}] {plan['source_group']} -> {plan['target_group']} "
            f"| {plan['target_version']} | {plan['plan_id']}{reason}"
        )
    print(f"{'=' * 70}\n")


def print_fleet(fleet: dict) -> None:
    print(f"\n{'=' * 50}")
    print("  Fleet")
    print(f"{'=' * 50}")
    for name, group in fleet["groups"].items():
        print(
            f"  {name:<6} weight={group['weight']:>3}%  desired={group['desired_count']}  "
            f"healthy={group['healthy']}  version={group['version'] or '-'}"
        )
        for inst in group["instances"]:
            print(f"    {inst['id']:<14} {inst['status']:<10} {inst['lifecycle']:<12} {inst['address']}")
    print(f"{'=' * 50}\n")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Fleet Controller CLI")
    parser.add_argument(
        "--url",
        default=os.environ.get("FLEET_CONTROLLER_URL", "http://localhost:8080"),
        help="Controller base URL (default: $FLEET_CONTROLLER_URL or http://localhost:8080)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Start a blue-green rollout")
    deploy.add_argument("--version", required=True)
    deploy.add_argument("--artifact", required=True)
    deploy.add_argument("--wait", action="store_true", help="Block until the plan finishes")
    deploy.add_argument("--poll-interval", type=float, default=5)

    status = sub.add_parser("status", help="Show a rollout plan")
    status.add_argument("plan_id", nargs="?")

    cancel = sub.add_parser("cancel", help="Abort a rollout and roll back")
    cancel.add_argument("plan_id")
    cancel.add_argument("--reason", default="operator request")

    sub.add_parser("history", help="Show recent rollouts")
    sub.add_parser("fleet", help="Show groups and instances")

    args = parser.parse_args(argv)
    client = ControllerClient(args.url)

    try:
        if args.command == "deploy":
            plan = client.start_rollout(args.version, args.artifact)
            print(f"Rollout {plan['plan_id']} accepted: {plan['source_group']} -> {plan['target_group']}")
            if args.wait:
                plan = client.wait(plan["plan_id"], poll_interval=args.poll_interval)
                print_plan(plan)
                return 0 if plan["outcome"] == "succeeded" else 1
        elif args.command == "status":
            plan_id = args.plan_id
            if plan_id is None:
                plans = client.history()
                if not plans:
                    print("No rollout history.")
                    return 0
                plan_id = plans[0]["plan_id"]
            print_plan(client.status(plan_id))
        elif args.command == "cancel":
            print_plan(client.cancel(args.plan_id, args.reason))
        elif args.command == "history":
            print_history(client.history())
        elif args.command == "fleet":
            print_fleet(client.fleet())
    except ControllerError as e:
        print(f"\nController error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
