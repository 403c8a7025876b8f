import argparse
import json
import sys
import time
from typing import Any, Callable, Dict, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
DEFAULT_WAIT_SEC = 20
DEFAULT_INTERVAL_S = 2.5
TERMINAL = ("completed", "error")


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


class PollGeneration:
    """Caller-held monotonic token scoping which run's polls are still live.

    Starting a new run advances the token; loops holding an older value stop
    on their next check, and replies echoing an older value are dropped.
    """

    def __init__(self) -> None:
        self.current = 0

    def advance(self) -> int:
        self.current += 1
        return self.current

    def is_current(self, token: int) -> bool:
        return token == self.current


def _describe(data: Dict[str, Any]) -> str:
    status = data.get("status") or "unknown"
    diag = data.get("diagnostics") or {}
    if status == "stuck" and diag:
        return f"stuck: queued {diag.get('elapsedSeconds')}s (estimate {diag.get('estimateSeconds')}s)"
    if status == "error":
        return f"error: {data.get('error') or 'run failed'}"
    return status


def _print_result(data: Dict[str, Any]) -> None:
    normalized = data.get("normalized") or {}
    text = normalized.get("text") or ((data.get("result") or {}).get("output") or {}).get("text") or ""
    print(text)
    citations = normalized.get("citations") or []
    if citations:
        print("\nSources:")
        for idx, cite in enumerate(citations, start=1):
            title = cite.get("title")
            print(f"[{idx}] {title} - {cite.get('url')}" if title else f"[{idx}] {cite.get('url')}")


def watch_run(
    client: httpx.Client,
    base: str,
    run_id: str,
    generations: PollGeneration,
    token: int,
    wait_sec: int = DEFAULT_WAIT_SEC,
    timeout_s: float = 900,
    abandon_stuck: bool = False,
    sleep: Callable[[float], None] = time.sleep,
    on_update: Optional[Callable[[Dict[str, Any]], None]] = None,
) -> Optional[Dict[str, Any]]:
    """Poll ``GET /runs`` until a terminal reply.

    Returns the last reply body, or ``None`` when the generation moved on and
    the run was abandoned.
    """
    start = time.monotonic()
    last: Dict[str, Any] = {"runId": run_id, "status": "queued"}
    while time.monotonic() - start < timeout_s:
        if not generations.is_current(token):
            return None
        params = {"runId": run_id, "waitSec": wait_sec, "generation": token}
        try:
            resp = client.get(_join_url(base, "/runs"), params=params, timeout=wait_sec + 15)
        except httpx.RequestError:
            # Network blips keep the loop alive.
            sleep(DEFAULT_INTERVAL_S)
            continue
        if not generations.is_current(token):
            return None
        if resp.status_code not in (200, 202):
            try:
                detail = resp.json()
            except ValueError:
                detail = resp.text
            return {"runId": run_id, "status": "error", "error": f"HTTP {resp.status_code}: {detail}"}
        data = resp.json()
        reply_gen = data.get("generation")
        if reply_gen is not None and reply_gen != token:
            return None
        last = data
        if on_update:
            on_update(data)
        status = data.get("status")
        if status in TERMINAL:
            return data
        if status == "stuck" and abandon_stuck:
            return data
        sleep(float(data.get("retryAfterSeconds") or DEFAULT_INTERVAL_S))
    return last


def _post_json(client: httpx.Client, base: str, path: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    resp = client.post(_join_url(base, path), json=payload, timeout=90)
    if resp.status_code >= 400:
        print(f"Request to {path} failed: HTTP {resp.status_code} {resp.text}")
        return None
    return resp.json()


def run_compose(args: argparse.Namespace) -> int:
    payload = {
        "prompt": args.prompt,
        "businessContext": args.business_context,
        "companyBlock": args.company_block,
        "processor": args.processor,
    }
    with httpx.Client() as client:
        data = _post_json(client, args.base_url, "/compose", payload)
    if data is None:
        return 1
    print(json.dumps(data, indent=2, ensure_ascii=False))
    return 0


def _watch_and_report(client: httpx.Client, args: argparse.Namespace, run_id: str, generations: PollGeneration) -> int:
    token = generations.advance()
    data = watch_run(
        client,
        args.base_url,
        run_id,
        generations,
        token,
        wait_sec=args.wait,
        timeout_s=args.timeout,
        abandon_stuck=args.abandon_stuck,
        on_update=lambda d: print(f"{run_id}: {_describe(d)}"),
    )
    if data is None:
        print("Run superseded; stopped polling.")
        return 1
    if data.get("status") == "completed":
        _print_result(data)
        return 0
    if data.get("status") not in TERMINAL and data.get("status") != "stuck":
        print("Timed out waiting for the run to finish.")
    return 1


def run_create(args: argparse.Namespace) -> int:
    payload = {
        "companyName": args.company,
        "website": args.website,
        "orgNumber": args.org_number,
        "processor": args.processor,
        "prompt": args.prompt,
    }
    with httpx.Client() as client:
        data = _post_json(client, args.base_url, "/runs", payload)
    if data is None:
        return 1
    print(data.get("runId"))
    return 0


def run_poll(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        return _watch_and_report(client, args, args.run_id, PollGeneration())


def run_research(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        composed = _post_json(
            client,
            args.base_url,
            "/compose",
            {
                "prompt": args.prompt,
                "businessContext": args.business_context,
                "companyBlock": args.company_block,
                "processor": args.processor,
            },
        )
        if composed is None:
            return 1
        print(f"Composed with {composed.get('model')}")
        created = _post_json(
            client,
            args.base_url,
            "/runs",
            {
                "companyName": args.company,
                "processor": args.processor,
                "input": composed.get("input"),
                "outputSchema": composed.get("outputSchema"),
            },
        )
        if created is None:
            return 1
        run_id = created.get("runId")
        print(f"Run {run_id} queued")
        return _watch_and_report(client, args, run_id, PollGeneration())


def _add_watch_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--wait", type=int, default=DEFAULT_WAIT_SEC, help="Long-poll seconds per request")
    parser.add_argument("--timeout", type=int, default=900, help="Max total wait seconds")
    parser.add_argument("--abandon-stuck", action="store_true", help="Stop when the run is reported stuck")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Hugin research CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    compose = subparsers.add_parser("compose", help="Compose a research task from a prompt")
    compose.add_argument("prompt")
    compose.add_argument("--business-context")
    compose.add_argument("--company-block")
    compose.add_argument("--processor", choices=["lite", "base", "core", "pro", "ultra"])

    create = subparsers.add_parser("create", help="Create a research run")
    create.add_argument("company")
    create.add_argument("--website")
    create.add_argument("--org-number")
    create.add_argument("--prompt")
    create.add_argument("--processor", choices=["lite", "base", "core", "pro", "ultra"])

    poll = subparsers.add_parser("poll", help="Poll a run until it finishes")
    poll.add_argument("run_id")
    _add_watch_args(poll)

    research = subparsers.add_parser("research", help="Compose, create and watch a run")
    research.add_argument("company")
    research.add_argument("prompt")
    research.add_argument("--business-context")
    research.add_argument("--company-block")
    research.add_argument("--processor", choices=["lite", "base", "core", "pro", "ultra"])
    _add_watch_args(research)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handlers = {
        "compose": run_compose,
        "create": run_create,
        "poll": run_poll,
        "research": run_research,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
