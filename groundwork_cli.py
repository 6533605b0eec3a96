import argparse
import json
import sys
import uuid
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_result(data: dict) -> None:
    clarification = data.get("clarification") or {}
    if clarification.get("needed"):
        print(f"? {clarification.get('question') or data.get('response')}")
        print(f"(reply with: groundwork ask --session {data.get('sessionId')} \"...\")")
        return
    plan = data.get("plan") or {}
    steps = plan.get("steps") or []
    if steps:
        print("Plan:")
        for idx, step in enumerate(steps, start=1):
            print(f"  {idx}. {step}")
    for item in data.get("tool_results") or []:
        result = item.get("result")
        failed = isinstance(result, dict) and "error" in result
        print(f"  [{'error' if failed else 'ok'}] {item.get('tool')}")
    if data.get("error"):
        print(f"Error: {data['error']}")
    print()
    print(data.get("response", ""))


def run_ask(args: argparse.Namespace) -> int:
    session_id = args.session or uuid.uuid4().hex
    with httpx.Client() as client:
        resp = client.post(
            _join_url(args.base_url, f"/api/chat/{session_id}"),
            json={"query": " ".join(args.query)},
            timeout=args.timeout,
        )
        if resp.status_code >= 400:
            print(f"Request failed: HTTP {resp.status_code} {resp.text}")
            return 1
        data = resp.json()
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        print(f"session: {data.get('sessionId')}")
        _print_result(data)
    return 0 if not data.get("error") else 2


def run_history(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/sessions/{args.session}"), timeout=10)
        if resp.status_code == 404:
            print("Session not found.")
            return 1
        if resp.status_code >= 400:
            print(f"Failed to fetch session: HTTP {resp.status_code}")
            return 1
        session = resp.json().get("session") or {}
    if session.get("awaiting_clarification"):
        print("(awaiting clarification)")
    for message in session.get("transcript") or []:
        print(f"{message.get('role')}: {message.get('content')}")
    return 0


def run_audit(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(
            _join_url(args.base_url, f"/api/sessions/{args.session}/audit"),
            params={"limit": args.limit},
            timeout=10,
        )
        if resp.status_code >= 400:
            print(f"Failed to fetch audit trail: HTTP {resp.status_code}")
            return 1
        events = resp.json().get("events") or []
    if not events:
        print("No audit events.")
    for event in events:
        duration = f" {event['duration_ms']}ms" if event.get("duration_ms") is not None else ""
        error = f" ({event['error_message']})" if event.get("error_message") else ""
        print(f"{event.get('timestamp')} {event.get('status'):<7} {event.get('kind')}{duration}{error}")
    return 0


def run_add_knowledge(args: argparse.Namespace) -> int:
    content = args.content
    if args.file:
        with open(args.file, "r", encoding="utf-8") as fh:
            content = fh.read()
    if not content:
        print("Provide --content or --file.")
        return 1
    payload = {"title": args.title, "content": content, "source_url": args.source_url, "tags": args.tags}
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/knowledge"), json=payload, timeout=60)
        if resp.status_code >= 400:
            print(f"Failed to add knowledge: HTTP {resp.status_code} {resp.text}")
            return 1
        print(f"Added curated knowledge #{resp.json().get('id')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Groundwork CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Send a question to a session")
    ask.add_argument("--session", help="Session id (a new one is generated when omitted)")
    ask.add_argument("--timeout", type=float, default=300, help="Request timeout in seconds")
    ask.add_argument("--json", action="store_true", help="Print the raw JSON result")
    ask.add_argument("query", nargs="+", help="Question text")

    history = subparsers.add_parser("history", help="Show a session transcript")
    history.add_argument("session", help="Session id")

    audit = subparsers.add_parser("audit", help="Show a session audit trail")
    audit.add_argument("session", help="Session id")
    audit.add_argument("--limit", type=int, default=200, help="Max events")

    knowledge = subparsers.add_parser("add-knowledge", help="Add a curated knowledge record")
    knowledge.add_argument("title", help="Record title")
    knowledge.add_argument("--content", help="Record text")
    knowledge.add_argument("--file", help="Read record text from a file")
    knowledge.add_argument("--source-url", help="Source URL")
    knowledge.add_argument("--tags", help="Comma-separated tags")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "ask":
            return run_ask(args)
        if args.command == "history":
            return run_history(args)
        if args.command == "audit":
            return run_audit(args)
        if args.command == "add-knowledge":
            return run_add_knowledge(args)
    except httpx.RequestError as exc:
        print(f"Could not reach {args.base_url}: {exc}")
        return 1
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
