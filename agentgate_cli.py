import argparse
import sys
import uuid
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _headers(args: argparse.Namespace) -> dict:
    return {"X-Webhook-Secret": args.secret} if args.secret else {}


def _print_outcome(data: dict) -> None:
    status = data.get("status")
    reply = data.get("reply") or data.get("message")
    if status in ("duplicate", "busy"):
        print(f"[{status}] event was not processed.")
    elif reply:
        print(reply)
    result = data.get("result") or {}
    if isinstance(result, dict) and result.get("pending_actions"):
        print("")
        print("Pending approval:")
        for action in result["pending_actions"]:
            print(f"- {action.get('tool_name')} ({action.get('id')})")


def run_send(args: argparse.Namespace) -> int:
    payload = {
        "event_id": args.event_id or uuid.uuid4().hex,
        "conversation_id": args.conversation,
        "text": " ".join(args.text),
    }
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/webhook"), json=payload, headers=_headers(args), timeout=300)
        if resp.status_code >= 400:
            print(f"Failed to send message: HTTP {resp.status_code}")
            return 1
        _print_outcome(resp.json())
    return 0


def run_decision(args: argparse.Namespace) -> int:
    path = f"/api/conversations/{args.conversation}/{args.command}"
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, path), timeout=120)
        if resp.status_code >= 400:
            print(f"Failed to {args.command}: HTTP {resp.status_code}")
            return 1
        _print_outcome(resp.json())
    return 0


def run_pending(args: argparse.Namespace) -> int:
    path = f"/api/conversations/{args.conversation}/pending-actions"
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, path), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch pending actions: HTTP {resp.status_code}")
            return 1
        actions = resp.json().get("pending_actions") or []
    if not actions:
        print("No pending actions.")
        return 0
    for action in actions:
        print(f"- {action.get('tool_name')} ({action.get('id')}) input={action.get('input')}")
    return 0


def run_task(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, f"/api/tasks/{args.name}"), timeout=600)
        if resp.status_code == 404:
            print(f"Unknown task: {args.name}")
            return 1
        if resp.status_code >= 400:
            print(f"Task failed: HTTP {resp.status_code}")
            return 1
        result = resp.json().get("result") or {}
    print(result.get("text") or "(No response)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Agentgate CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--secret", default=None, help="Webhook secret, if the server requires one")
    subparsers = parser.add_subparsers(dest="command")

    send = subparsers.add_parser("send", help="Send a message to a conversation")
    send.add_argument("--conversation", "-c", default="cli", help="Conversation id")
    send.add_argument("--event-id", default=None, help="Delivery id (random when omitted)")
    send.add_argument("text", nargs="+", help="Message text")

    for name, help_text in (("approve", "Approve the newest pending action"), ("reject", "Reject it")):
        decision = subparsers.add_parser(name, help=help_text)
        decision.add_argument("--conversation", "-c", default="cli", help="Conversation id")

    pending = subparsers.add_parser("pending", help="List pending actions")
    pending.add_argument("--conversation", "-c", default="cli", help="Conversation id")

    task = subparsers.add_parser("task", help="Run a scheduled task now")
    task.add_argument("name", help="Task name (morning, evening, weekly)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "send":
        return run_send(args)
    if args.command in ("approve", "reject"):
        return run_decision(args)
    if args.command == "pending":
        return run_pending(args)
    if args.command == "task":
        return run_task(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
