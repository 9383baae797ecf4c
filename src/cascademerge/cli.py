from __future__ import annotations

import argparse
from pathlib import Path

import uvicorn

from cascademerge.cascade import CascadeResolver
from cascademerge.config import AppConfig, load_config, load_config_from_env
from cascademerge.models import CascadeEvent, Repository
from cascademerge.observability import configure_logging
from cascademerge.service import build_dispatcher, build_gateway, build_service
from cascademerge.versioning import release_line
from cascademerge.webhook import create_app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cascademerge")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser(
        "serve", help="Run the webhook server that drives cascading merges"
    )
    _add_common_arguments(serve_parser)

    resolve_parser = subparsers.add_parser(
        "resolve", help="Print the next cascade target for a merged release branch"
    )
    _add_common_arguments(resolve_parser)
    resolve_parser.add_argument("--repo", required=True, help="Repository as workspace/slug")
    resolve_parser.add_argument("--branch", required=True, help="Merged release branch")

    sweep_parser = subparsers.add_parser(
        "sweep", help="Approve and merge open cascade pull requests once"
    )
    _add_common_arguments(sweep_parser)
    sweep_parser.add_argument("--repo", required=True, help="Repository as workspace/slug")

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--config", type=Path, default=Path("cascademerge.toml"))
    source.add_argument(
        "--from-env",
        action="store_true",
        help="Read configuration from PORT, BITBUCKET_* and *_BRANCH_* variables",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Log to stderr; \"low\" keeps warnings and high-signal events only",
    )


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(getattr(args, "verbose", None))
    config = load_config_from_env() if args.from_env else load_config(args.config)

    if args.command == "serve":
        _cmd_serve(config)
        return
    if args.command == "resolve":
        _cmd_resolve(config, repo=parse_repository(args.repo), branch=args.branch)
        return
    if args.command == "sweep":
        _cmd_sweep(config, repo=parse_repository(args.repo))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_serve(config: AppConfig) -> None:
    service = build_service(config)
    app = create_app(service, shared_key=config.server.shared_key)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level="info",
        access_log=False,
    )


def _cmd_resolve(config: AppConfig, *, repo: Repository, branch: str) -> None:
    gateway = build_gateway(config)
    try:
        siblings = gateway.list_branches(repo, release_line(branch))
        resolver = CascadeResolver(
            gateway, default_development_branch=config.cascade.development_branch_name
        )
        print(resolver.resolve(repo, branch, siblings))
    finally:
        gateway.close()


def _cmd_sweep(config: AppConfig, *, repo: Repository) -> None:
    gateway = build_gateway(config)
    try:
        dispatcher = build_dispatcher(config, gateway)
        merged = dispatcher.try_merge(CascadeEvent(trigger="other", repository=repo))
    finally:
        gateway.close()
    if not merged:
        print("No cascade pull requests merged.")
        return
    for pull_request in merged:
        print(
            f"merged pr_id={pull_request.pr_id} "
            f"{pull_request.source_branch} -> {pull_request.destination_branch}"
        )


def parse_repository(raw: str) -> Repository:
    candidate = raw.strip()
    owner, sep, slug = candidate.partition("/")
    if not sep or not owner or not slug or "/" in slug:
        raise RuntimeError(f"--repo must look like workspace/slug, got {raw!r}")
    return Repository(owner=owner, slug=slug)
