from __future__ import annotations

import argparse
import json
import os
import sys

import requests

PREFIX = "/internal/postgrest"


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Tenant Gateway Manager CLI")
    p.add_argument("--api", default=os.getenv("GWM_API", "http://localhost:9000"), help="API base URL")
    p.add_argument("--key", default=os.getenv("GWM_INTERNAL_API_KEY"), help="Internal API key (X-Internal-Key)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list", help="List running gateways")

    s_spawn = sub.add_parser("spawn", help="Spawn or converge a project's gateway")
    s_spawn.add_argument("project_id")
    s_spawn.add_argument(
        "--authenticator-password",
        default=os.getenv("GWM_AUTHENTICATOR_PASSWORD"),
        help="Registered in the PgBouncer userlist for <project>_authenticator",
    )

    s_destroy = sub.add_parser("destroy", help="Tear down a project's gateway and pool entries")
    s_destroy.add_argument("project_id")

    s_reload = sub.add_parser("reload", help="Send SIGHUP to a running gateway")
    s_reload.add_argument("project_id")

    s_status = sub.add_parser("status", help="Show observed state of a project's gateway")
    s_status.add_argument("project_id")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--project-id", default=None)

    args = p.parse_args(argv)

    if not args.key:
        print("error: --key or GWM_INTERNAL_API_KEY is required", file=sys.stderr)
        return 2

    base = args.api.rstrip("/")
    headers = {"X-Internal-Key": args.key}

    if args.cmd == "list":
        r = requests.get(f"{base}{PREFIX}", headers=headers, timeout=10)
    elif args.cmd == "spawn":
        payload = {"projectId": args.project_id}
        if args.authenticator_password:
            payload["authenticatorPassword"] = args.authenticator_password
        # Spawn waits for the gateway healthcheck.
        r = requests.post(f"{base}{PREFIX}/spawn", json=payload, headers=headers, timeout=120)
    elif args.cmd == "destroy":
        r = requests.delete(f"{base}{PREFIX}/{args.project_id}", headers=headers, timeout=30)
    elif args.cmd == "reload":
        r = requests.post(f"{base}{PREFIX}/{args.project_id}/restart", headers=headers, timeout=30)
    elif args.cmd == "status":
        r = requests.get(f"{base}{PREFIX}/{args.project_id}", headers=headers, timeout=10)
    elif args.cmd == "events":
        params = {"limit": args.limit}
        if args.project_id:
            params["projectId"] = args.project_id
        r = requests.get(f"{base}/internal/events", params=params, headers=headers, timeout=10)
    else:
        return 2

    _print(r.json())
    return 0 if r.ok else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
