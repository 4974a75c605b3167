from __future__ import annotations

import argparse
import json
import os
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _show(r: requests.Response) -> int:
    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return 0 if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="edgeorch agent CLI")
    p.add_argument("--api", default=os.getenv("EDGE_API_URL", "http://localhost:8000"), help="API base URL")
    p.add_argument("--user", default=os.getenv("EDGE_API_USER", "admin"))
    p.add_argument("--password", default=os.getenv("EDGE_API_PASSWORD", "change-me"))
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("health", help="Driver health and last reconciliation")
    sub.add_parser("state", help="Show the target state")
    sub.add_parser("current", help="Show the observed state")

    s_apply = sub.add_parser("apply", help="Set the target state from a JSON file ('-' for stdin)")
    s_apply.add_argument("file")

    sub.add_parser("reconcile", help="Run a reconciliation pass now")
    sub.add_parser("services", help="List services")

    for action in ("start", "stop", "restart"):
        s_act = sub.add_parser(action, help=f"{action.capitalize()} every service of an app")
        s_act.add_argument("app_id", type=int)

    s_logs = sub.add_parser("logs", help="Print service logs")
    s_logs.add_argument("service_id", help="Container id (docker) or deployment name (k3s)")
    s_logs.add_argument("--tail", type=int, default=100)
    s_logs.add_argument("-f", "--follow", action="store_true")

    s_met = sub.add_parser("metrics", help="Resource usage")
    s_met.add_argument("--service-id")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password)

    if args.cmd == "health":
        return _show(requests.get(f"{base}/health", timeout=10))

    if args.cmd == "state":
        return _show(requests.get(f"{base}/state/target", auth=auth, timeout=10))

    if args.cmd == "current":
        return _show(requests.get(f"{base}/state/current", auth=auth, timeout=30))

    if args.cmd == "apply":
        if args.file == "-":
            payload = json.load(sys.stdin)
        else:
            with open(args.file, "r", encoding="utf-8") as f:
                payload = json.load(f)
        return _show(requests.put(f"{base}/state/target", json=payload, auth=auth, timeout=30))

    if args.cmd == "reconcile":
        return _show(requests.post(f"{base}/reconcile", auth=auth, timeout=600))

    if args.cmd == "services":
        return _show(requests.get(f"{base}/services", auth=auth, timeout=30))

    if args.cmd in {"start", "stop", "restart"}:
        return _show(requests.post(f"{base}/apps/{args.app_id}/{args.cmd}", auth=auth, timeout=120))

    if args.cmd == "logs":
        params = {"tail": args.tail, "follow": str(args.follow).lower()}
        with requests.get(
            f"{base}/services/{args.service_id}/logs",
            params=params,
            auth=auth,
            stream=True,
            timeout=None if args.follow else 30,
        ) as r:
            if not r.ok:
                return _show(r)
            for line in r.iter_lines(decode_unicode=True):
                print(line)
        return 0

    if args.cmd == "metrics":
        params = {"service_id": args.service_id} if args.service_id else None
        return _show(requests.get(f"{base}/metrics", params=params, auth=auth, timeout=30))

    if args.cmd == "events":
        return _show(requests.get(f"{base}/events", params={"limit": args.limit}, auth=auth, timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
