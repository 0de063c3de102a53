"""SkyGate CLI entrypoint.

Usage:
    python -m skygate                  # Start the server
    python -m skygate --self-check     # Check configuration before deploying
    python -m skygate --print-routes   # Show the active route table
    python -m skygate --version        # Print version
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from collections.abc import Mapping
from typing import Any

import httpx

from skygate.config import GatewayConfig
from skygate.credentials import resolve_credential
from skygate.routes import RouteTableError, load_route_table

DEFAULT_BASE_URL = "http://localhost:3001"


def _check(required: bool, ok: bool, detail: str, hint: str) -> dict[str, Any]:
    if ok:
        status = "pass"
    else:
        status = "fail" if required else "warn"
    return {"required": required, "status": status, "detail": detail, "hint": hint}


def collect_checks(
    env: Mapping[str, str],
    base_url: str | None = None,
) -> dict[str, dict[str, Any]]:
    """Inspect the environment the gateway would start with."""
    checks: dict[str, dict[str, Any]] = {}
    config = GatewayConfig.from_env(env)

    python_ok = sys.version_info >= (3, 12)
    checks["python_version"] = _check(
        True,
        python_ok,
        f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        "Install Python 3.12+." if not python_ok else "Detected supported Python version.",
    )

    policy = config.origin_policy
    origins_ok = config.environment == "development" or bool(policy.trusted_origins)
    checks["origin_policy"] = _check(
        True,
        origins_ok,
        f"environment={config.environment}, trusted_origins={sorted(policy.trusted_origins)}",
        "Set ALLOWED_ORIGINS or FRONTEND_URL; production trusts no origin otherwise."
        if not origins_ok
        else "Origin policy configured.",
    )

    credential = resolve_credential(env)
    checks["credential"] = _check(
        False,
        credential.available,
        f"mode={credential.kind}, project_id={credential.project_id}",
        "Set FIREBASE_SERVICE_ACCOUNT_KEY or FIREBASE_PROJECT_ID to enable stored "
        "payment settings and payment status."
        if not credential.available
        else "Operator credential resolved.",
    )

    try:
        routes = load_route_table(config)
        checks["route_table"] = _check(
            True,
            True,
            f"{len(routes)} routes ({config.routes_path or 'built-in'})",
            "Route table loaded.",
        )
    except RouteTableError as exc:
        checks["route_table"] = _check(True, False, str(exc), "Fix SKYGATE_ROUTES_PATH.")

    checks["n8n_api_key"] = _check(
        False,
        config.n8n.api_key is not None,
        "set" if config.n8n.api_key else "not set",
        "Set N8N_API_KEY if the workflow webhooks require it."
        if config.n8n.api_key is None
        else "Workflow API key configured.",
    )

    panel = config.panel
    checks["panel"] = _check(
        False,
        bool(panel.host and (panel.has_login or panel.api_token)),
        f"host={'set' if panel.host else 'not set'}, login={panel.has_login}",
        "Set XUI_HOST and XUI_USERNAME/XUI_PASSWORD (or XUI_API_TOKEN) to enable /api/xui."
        if not (panel.host and (panel.has_login or panel.api_token))
        else "Panel access configured.",
    )

    if base_url:
        server_ok = False
        server_detail = f"Could not reach {base_url}/health"
        try:
            with httpx.Client(timeout=2.0) as client:
                response = client.get(f"{base_url}/health")
            if response.status_code == 200:
                payload = response.json()
                server_ok = True
                server_detail = (
                    f"status={payload.get('status')}, credential={payload.get('credential')}"
                )
            else:
                server_detail = f"HTTP {response.status_code}"
        except httpx.HTTPError as exc:
            server_detail = str(exc)
        checks["gateway_health"] = _check(
            False,
            server_ok,
            server_detail,
            "Start the gateway with `python -m skygate` and re-run self-check."
            if not server_ok
            else "Gateway health endpoint reachable.",
        )
    return checks


def run_self_check(
    env: Mapping[str, str] | None = None,
    base_url: str | None = None,
    output_json: bool = False,
) -> int:
    """Run configuration diagnostics and print actionable guidance."""
    checks = collect_checks(os.environ if env is None else env, base_url)
    required_failed = [
        name for name, check in checks.items() if check["required"] and check["status"] == "fail"
    ]
    warnings = [name for name, check in checks.items() if check["status"] == "warn"]
    status = "pass" if not required_failed else "fail"

    if output_json:
        print(
            json.dumps(
                {
                    "status": status,
                    "required_failed": required_failed,
                    "warnings": warnings,
                    "checks": checks,
                },
                indent=2,
            )
        )
    else:
        print("SkyGate Self-Check")
        print("")
        for name, check in checks.items():
            print(f"{name}: {check['status']} | {check['detail']}")
            print(f"  hint: {check['hint']}")
        print("")
        print(f"overall: {status}")
        if required_failed:
            print(f"required failures: {', '.join(required_failed)}")
        if warnings:
            print(f"warnings: {', '.join(warnings)}")

    return 0 if status == "pass" else 1


def print_routes(env: Mapping[str, str] | None = None) -> int:
    config = GatewayConfig.from_env(os.environ if env is None else env)
    try:
        routes = load_route_table(config)
    except RouteTableError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(routes.describe(), indent=2))
    return 0


def main() -> None:
    """CLI entrypoint."""
    from skygate import __version__

    parser = argparse.ArgumentParser(
        prog="skygate",
        description="SkyGate: secure forwarding gateway for the VPN subscription service",
    )
    parser.add_argument("--version", "-v", action="version", version=f"SkyGate {__version__}")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--self-check",
        action="store_true",
        help="Check configuration and print setup guidance",
    )
    mode_group.add_argument(
        "--print-routes",
        action="store_true",
        help="Print the active route table as JSON",
    )
    parser.add_argument(
        "--self-check-json",
        action="store_true",
        help="Print self-check results as JSON",
    )
    parser.add_argument(
        "--base-url",
        default=None,
        help=f"Also query a running gateway during self-check (e.g. {DEFAULT_BASE_URL})",
    )
    parser.add_argument(
        "--host", default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port", type=int, default=3001, help="Port to bind to (default: 3001)"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Worker processes to run (default: 1; set SKYGATE_REDIS_URL to share panel sessions)",
    )

    args = parser.parse_args()

    if args.self_check_json and not args.self_check:
        parser.error("--self-check-json requires --self-check")
    if args.workers < 1:
        parser.error("--workers must be at least 1")

    if args.self_check:
        sys.exit(run_self_check(base_url=args.base_url, output_json=args.self_check_json))
    elif args.print_routes:
        sys.exit(print_routes())
    else:
        import uvicorn

        uvicorn.run(
            "skygate.main:app",
            host=args.host,
            port=args.port,
            reload=False,
            workers=args.workers,
        )


if __name__ == "__main__":
    main()
