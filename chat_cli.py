import argparse
import sys
from typing import List, Optional, Tuple

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:3000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def send_turn(
    client: httpx.Client,
    base: str,
    message: str,
    thread_id: Optional[str],
    timeout_s: float,
) -> Tuple[bool, str, Optional[str]]:
    """Send one message; return (ok, reply text, thread id for the next turn)."""
    payload = {"message": message}
    if thread_id:
        payload["threadId"] = thread_id
    resp = client.post(_join_url(base, "/api/sendMessage"), json=payload, timeout=timeout_s)
    try:
        data = resp.json()
    except ValueError:
        data = {}
    reply = str(data.get("assistant") or f"HTTP {resp.status_code}")
    if resp.status_code >= 400:
        return False, reply, thread_id
    return True, reply, data.get("threadId") or thread_id


def run_chat(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    thread_id = args.thread_id
    with httpx.Client() as client:
        if args.message:
            ok, reply, thread_id = send_turn(client, base, " ".join(args.message), thread_id, args.timeout)
            print(reply)
            if thread_id:
                print(f"[threadId: {thread_id}]", file=sys.stderr)
            return 0 if ok else 1
        print("Escribe tu mensaje (Ctrl+D para salir).")
        for line in sys.stdin:
            text = line.strip()
            if not text:
                continue
            try:
                ok, reply, thread_id = send_turn(client, base, text, thread_id, args.timeout)
            except httpx.HTTPError as exc:
                print(f"HTTP error: {exc}", file=sys.stderr)
                continue
            print(f"> {reply}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pharmacy assistant chat CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--thread-id", default=None, help="Continue an existing conversation")
    parser.add_argument("--timeout", type=float, default=330.0, help="Max seconds per turn")
    parser.add_argument("message", nargs="*", help="Send a single message and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return run_chat(args)


if __name__ == "__main__":
    sys.exit(main())
