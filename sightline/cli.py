"""Command line interface for Sightline."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from sightline.config import DISPATCH_MODES, get_config
from sightline.errors import SightlineError
from sightline.orchestrator import Orchestrator


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _user_context(args: argparse.Namespace) -> dict:
    context: dict[str, Any] = {}
    if getattr(args, "primary_type", None):
        context["image"] = {"primary_type": args.primary_type}
    if getattr(args, "role", None):
        context["user"] = {"inferred_role": args.role}
    return context


def cmd_submit(args: argparse.Namespace, orchestrator: Orchestrator) -> None:
    request = {
        "imageId": args.image_id,
        "imageUrl": args.image_url,
        "projectId": args.project_id,
        "userContext": _user_context(args),
        "dispatchMode": args.dispatch,
    }
    _print(orchestrator.submit_job(request, args.user))


def cmd_group(args: argparse.Namespace, orchestrator: Orchestrator) -> None:
    request = {
        "groupId": args.group_id,
        "imageUrls": args.image_url,
        "projectId": args.project_id,
        "userContext": _user_context(args),
        "dispatchMode": args.dispatch,
    }
    _print(orchestrator.submit_group_job(request, args.user))


def cmd_status(args: argparse.Namespace, orchestrator: Orchestrator) -> None:
    _print(orchestrator.status(args.job_id))


def cmd_events(args: argparse.Namespace, orchestrator: Orchestrator) -> None:
    _print({"events": orchestrator.job_events(args.job_id)})


def cmd_cancel(args: argparse.Namespace, orchestrator: Orchestrator) -> None:
    job = orchestrator.cancel(args.job_id)
    _print({"ok": True, "job": job.to_dict()})


def cmd_reap(args: argparse.Namespace, orchestrator: Orchestrator) -> None:
    _print({"reaped": orchestrator.reap_stalled()})


def cmd_models(args: argparse.Namespace, orchestrator: Orchestrator) -> None:
    _print(orchestrator.models())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sightline")
    parser.add_argument("--log-level", help="DEBUG|INFO|WARNING|ERROR")
    sub = parser.add_subparsers(dest="command")

    submit = sub.add_parser("submit", help="Analyze a single image")
    submit.add_argument("--image-id", required=True)
    submit.add_argument("--image-url", required=True)
    submit.add_argument("--user", required=True)
    submit.add_argument("--project-id")
    submit.add_argument("--primary-type", help="dashboard|landing|mobile|form|ecommerce")
    submit.add_argument("--role", help="developer|designer|product|...")
    submit.add_argument("--dispatch", choices=DISPATCH_MODES)

    group = sub.add_parser("group", help="Analyze a group of images")
    group.add_argument("--group-id", required=True)
    group.add_argument("--image-url", action="append", required=True)
    group.add_argument("--user", required=True)
    group.add_argument("--project-id")
    group.add_argument("--primary-type")
    group.add_argument("--role")
    group.add_argument("--dispatch", choices=DISPATCH_MODES)

    for name in ("status", "events", "cancel"):
        cmd = sub.add_parser(name)
        cmd.add_argument("job_id")

    sub.add_parser("reap", help="Fail jobs stalled past their stage deadline")
    sub.add_parser("models", help="Show model rankings and metrics")
    sub.add_parser("serve", help="Run the HTTP server")
    return parser


COMMANDS = {
    "submit": cmd_submit,
    "group": cmd_group,
    "status": cmd_status,
    "events": cmd_events,
    "cancel": cmd_cancel,
    "reap": cmd_reap,
    "models": cmd_models,
}


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "serve":
        from sightline.server import main as serve
        serve()
        return
    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return

    config = get_config()
    level = (args.log_level or config.log_level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    orchestrator = Orchestrator(config)
    try:
        handler(args, orchestrator)
        orchestrator.dispatcher.wait()
    except SightlineError as exc:
        _print(exc.to_dict())
        sys.exit(1)


if __name__ == "__main__":
    main()
