"""codeartifact-proxy CLI entry point."""

from __future__ import annotations

import argparse
import logging
import secrets
import sys
from pathlib import Path

from codeartifact_proxy.errors import ConfigError

# ── Default template for `codeartifact-proxy init` ──────────────────────────

_DEFAULT_CONFIG = """\
# proxy.yaml: codeartifact-proxy configuration
#
# Any value here can be overridden by the deployment environment
# (AWS_REGION, BE_CODEARTIFACT_<ENV>_OWNER, BE_PROXY_<ENV>_TOKEN, ...).

listen:
  host: 0.0.0.0
  port: 8080

region: "{region}"
package_format: npm

environments:
  dev:
    owner: "{owner}"
    domain: "{domain}"
    repository: "{domain}-dev"
  stage:
    owner: "{owner}"
    domain: "{domain}"
    repository: "{domain}-stage"
  prod:
    owner: "{owner}"
    domain: "{domain}"
    repository: "{domain}-prod"

# Route tokens are long-lived secrets: clients send them as
# `Authorization: Bearer <token>` to select an environment.
routes:
  "{dev_token}": dev
  "{stage_token}": stage
  "{prod_token}": prod

reauth:
  interval: 15
  refresh_after_minutes: 45
  max_age_minutes: 60

rewrite:
  user_agents: [npm]
  content_types: [application/json, application/vnd.npm.install-v1+json]
"""


def _init_config(path: Path, region: str, owner: str, domain: str) -> None:
    if path.exists():
        print(f"Error: {path} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(1)

    path.write_text(
        _DEFAULT_CONFIG.format(
            region=region,
            owner=owner,
            domain=domain,
            dev_token=secrets.token_urlsafe(32),
            stage_token=secrets.token_urlsafe(32),
            prod_token=secrets.token_urlsafe(32),
        )
    )
    path.chmod(0o600)
    print(f"Wrote {path}")
    print()
    print("Next steps:")
    print(f"  1. Review the repositories in {path}")
    print("  2. Hand each route token to the clients of that environment")
    print(f"  3. Run: codeartifact-proxy serve --config {path}")


def _check_config(config_path: Path | None) -> None:
    from codeartifact_proxy.config import load_config

    try:
        config = load_config(config_path)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    for env, env_cfg in config.environments.items():
        tokens = sum(1 for bound in config.routes.values() if bound == env)
        print(
            f"{env.value:<6} {env_cfg.region} {env_cfg.domain}/{env_cfg.repository} "
            f"({env_cfg.package_format.value}, {tokens} route token(s))"
        )


def _serve(args: argparse.Namespace) -> None:
    import uvicorn

    from codeartifact_proxy.config import load_config
    from codeartifact_proxy.server import ProxyServer, create_app

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        logging.getLogger(__name__).error("%s", exc)
        sys.exit(1)

    server = ProxyServer(config)
    app = create_app(server)

    uv_server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=args.host or config.listen.host,
            port=args.port or config.listen.port,
            log_level=args.log_level.lower(),
            proxy_headers=False,
            server_header=False,
            date_header=False,
        )
    )

    def _shutdown(reason: str) -> None:
        logging.getLogger(__name__).critical("Shutting down proxy: %s", reason)
        uv_server.should_exit = True

    server.health.on_fatal(_shutdown)
    uv_server.run()

    if server.health.is_fatal:
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="codeartifact-proxy",
        description="Credential-injecting reverse proxy for AWS CodeArtifact",
    )
    subparsers = parser.add_subparsers(dest="command")

    # codeartifact-proxy serve
    serve_parser = subparsers.add_parser("serve", help="Start the proxy")
    serve_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to proxy.yaml (default: environment variables only)",
    )
    serve_parser.add_argument("--host", default=None, help="Host to bind to (default: from config)")
    serve_parser.add_argument(
        "--port", type=int, default=None, help="Port to bind to (default: from config)"
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    # codeartifact-proxy init
    init_parser = subparsers.add_parser("init", help="Write a starter proxy.yaml")
    init_parser.add_argument("--path", type=Path, default=Path("proxy.yaml"))
    init_parser.add_argument("--region", default="us-east-1")
    init_parser.add_argument("--owner", default="123456789012", help="Domain owner account ID")
    init_parser.add_argument("--domain", default="my-domain")

    # codeartifact-proxy check-config
    check_parser = subparsers.add_parser("check-config", help="Validate configuration and exit")
    check_parser.add_argument("--config", type=Path, default=None)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_config(args.path, args.region, args.owner, args.domain)
        return

    if args.command == "check-config":
        _check_config(args.config)
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    _serve(args)


if __name__ == "__main__":
    main()
