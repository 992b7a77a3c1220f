from __future__ import annotations

import argparse
import json
import logging
import sys
import threading

import uvicorn

from .app.bridge import HumanAuthBridge, RelayClient
from .app.device import AdbDevice
from .app.errors import DecisionPollFailure, TunnelError
from .app.executor import TaskExecutor
from .app.llm import build_decision_client
from .app.local_stack import LocalRelayStack
from .app.models import (
    GeoArtifactPayload,
    ResolveHumanAuthRequest,
    TaskResult,
    TextArtifactPayload,
)
from .app.storage import MarkdownSessionStore
from .app.tunnel import NgrokTunnel
from .config.settings import Settings, get_settings
from .main import create_app

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pocket-agent",
        description="Android automation agent with a human-authorization relay.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    relay = sub.add_parser("relay", help="Serve the human-auth relay in the foreground.")
    relay.add_argument("--host", default=None)
    relay.add_argument("--port", type=int, default=None)

    run = sub.add_parser("run", help="Run one task against the configured device.")
    run.add_argument("goal")
    run.add_argument("--max-steps", type=int, default=None)
    run.add_argument("--session-id", default=None)

    requests_cmd = sub.add_parser("requests", help="List human-auth requests on the relay.")
    requests_cmd.add_argument(
        "--status", choices=["pending", "approved", "rejected", "timeout"], default=None
    )

    approve = sub.add_parser("approve", help="Approve a pending request as the operator.")
    approve.add_argument("request_id")
    approve.add_argument("--note", default="")
    approve.add_argument("--text", default=None, help="Attach a text artifact.")
    approve.add_argument("--lat", type=float, default=None)
    approve.add_argument("--lon", type=float, default=None)

    reject = sub.add_parser("reject", help="Reject a pending request as the operator.")
    reject.add_argument("request_id")
    reject.add_argument("--note", default="")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if args.command == "relay":
        return _serve_relay(settings, host=args.host, port=args.port)
    if args.command == "run":
        return _run_task(settings, args.goal, max_steps=args.max_steps, session_id=args.session_id)
    if args.command == "requests":
        return _list_requests(settings, status=args.status)
    if args.command == "approve":
        return _override(settings, args.request_id, _approval_from_args(args))
    if args.command == "reject":
        return _override(
            settings, args.request_id, ResolveHumanAuthRequest(decision="reject", note=args.note)
        )
    raise AssertionError(f"unhandled command {args.command}")


def _serve_relay(settings: Settings, *, host: str | None, port: int | None) -> int:
    host = host or settings.relay_host
    port = settings.relay_port if port is None else port
    tunnel = None
    if settings.tunnel_provider == "ngrok":
        tunnel = NgrokTunnel.from_settings(settings, f"http://127.0.0.1:{port}")
    app = create_app(settings)
    if tunnel is not None:
        # ngrok can start before uvicorn binds; it forwards once the port is up.
        try:
            public_url = tunnel.start()
        except TunnelError as exc:
            print(f"Tunnel failed: {exc}", file=sys.stderr)
            return 1
        print(f"Public relay URL: {public_url}")
        print("Set POCKET_AGENT_RELAY_PUBLIC_BASE_URL on agents to use it in approval links.")
    try:
        uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
    finally:
        if tunnel is not None:
            tunnel.stop()
    return 0


def _run_task(
    settings: Settings, goal: str, *, max_steps: int | None, session_id: str | None
) -> int:
    stack = None
    bridge = None
    if settings.human_auth_enabled:
        base_url = settings.relay_base_url
        public_base_url = None
        if not base_url:
            stack = LocalRelayStack(settings)
            try:
                urls = stack.start()
            except (RuntimeError, TunnelError) as exc:
                print(f"Local relay failed to start: {exc}", file=sys.stderr)
                return 1
            base_url, public_base_url = urls.relay_base_url, urls.public_base_url
        bridge = HumanAuthBridge.from_settings(
            settings, base_url=base_url, public_base_url=public_base_url
        )

    executor = TaskExecutor.from_settings(
        settings,
        device=AdbDevice.from_settings(settings),
        decision_client=build_decision_client(settings),
        trace_store=MarkdownSessionStore(settings.workspace_dir / "sessions"),
        bridge=bridge,
    )
    stop = threading.Event()
    outcome: list[TaskResult] = []
    worker = threading.Thread(
        target=lambda: outcome.append(
            executor.run_task(goal, session_id=session_id, stop_event=stop, max_steps=max_steps)
        ),
        name="task-run",
    )
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.5)
    except KeyboardInterrupt:
        print("Stopping task...", file=sys.stderr)
        stop.set()
        worker.join()
    finally:
        if stack is not None:
            stack.stop()

    if not outcome:
        return 1
    result = outcome[0]
    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0 if result.ok else 1


def _list_requests(settings: Settings, *, status: str | None) -> int:
    client = _operator_client(settings)
    try:
        rows = client.list_requests(status=status)
    except DecisionPollFailure as exc:
        print(f"Relay request failed: {exc}", file=sys.stderr)
        return 1
    if not rows:
        print("No requests.")
        return 0
    for row in rows:
        print(
            f"{row.request_id}  {row.status:<8}  {row.capability:<12}  "
            f"session={row.session_id} step={row.step}  {row.message}"
        )
    return 0


def _override(settings: Settings, request_id: str, decision: ResolveHumanAuthRequest) -> int:
    client = _operator_client(settings)
    try:
        status = client.override(request_id, decision)
    except DecisionPollFailure as exc:
        print(f"Relay request failed: {exc}", file=sys.stderr)
        return 1
    print(f"{status.request_id} -> {status.status}")
    return 0


def _approval_from_args(args: argparse.Namespace) -> ResolveHumanAuthRequest:
    artifact = None
    if args.text is not None:
        artifact = TextArtifactPayload(value=args.text)
    elif args.lat is not None and args.lon is not None:
        artifact = GeoArtifactPayload(lat=args.lat, lon=args.lon)
    return ResolveHumanAuthRequest(decision="approve", note=args.note, artifact=artifact)


def _operator_client(settings: Settings) -> RelayClient:
    base_url = settings.relay_base_url or f"http://127.0.0.1:{settings.relay_port}"
    return RelayClient(
        base_url, api_key=settings.relay_api_key, timeout_s=settings.relay_request_timeout_s
    )


if __name__ == "__main__":
    raise SystemExit(main())
