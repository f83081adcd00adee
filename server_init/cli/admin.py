"""``server-init``: registrar administration and server entry point.

Usage:
    server-init --repo https://git.example.com/cluster.git     # run the registrar
    server-init generate-otp --uses 3 --expires-in 24          # mint a token
    server-init check-otp 5b1e…                                 # is it still valid?
    server-init remove-otps                                     # revoke every token
"""

import argparse
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional, Sequence

import structlog
from rich.console import Console
from rich.markup import escape

from server_init.cluster.orchestrator import RegistrationOrchestrator
from server_init.cluster.repository import ClusterRepository
from server_init.config import RegistrarSettings, load_settings
from server_init.logging_config import configure_logging
from server_init.security.tokens import TokenStore
from server_init.server.app import serve
from server_init.storage.database import Database

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="server-init",
        description="Registrar for self-registering NixOS nodes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --repo https://git.example.com/cluster.git\n"
            "  %(prog)s generate-otp --uses 1 --expires-in 12\n"
            "  %(prog)s check-otp <code>\n"
            "  %(prog)s remove-otps\n"
        ),
    )
    parser.add_argument("-l", "--listen-ip", help="Address to bind (default: 127.0.0.1)")
    parser.add_argument("-p", "--port", type=int, help="Port to bind (default: 8080)")
    parser.add_argument("-r", "--repo", help="Repository with the cluster definition")
    parser.add_argument(
        "-n",
        "--no-auth",
        action="store_true",
        default=None,
        help="Accept registrations without checking tokens",
    )
    parser.add_argument("--config", type=Path, help="YAML settings file")
    parser.add_argument("--database", type=Path, help="Token database file")
    parser.add_argument("--repo-dir", type=Path, help="Local working copy directory")
    parser.add_argument("--log-format", choices=["console", "json"])
    parser.add_argument("--log-level", choices=["debug", "info", "warning", "error"])

    commands = parser.add_subparsers(dest="command")

    generate = commands.add_parser("generate-otp", help="Create a new token")
    generate.add_argument(
        "-u", "--uses", type=int, default=1, help="Number of uses before expiry (default: 1)"
    )
    generate.add_argument(
        "-e",
        "--expires-in",
        type=float,
        default=12,
        help="Hours until the token expires (default: 12)",
    )

    check = commands.add_parser("check-otp", help="Check a token without using it")
    check.add_argument("otp", help="The token")

    commands.add_parser("remove-otps", help="Delete every token")
    commands.add_parser("serve", help="Run the registrar (the default)")
    return parser


def settings_from_args(args: argparse.Namespace) -> RegistrarSettings:
    return load_settings(
        config_path=args.config,
        overrides={
            "listen_ip": args.listen_ip,
            "port": args.port,
            "repo_url": args.repo,
            "no_auth": args.no_auth,
            "database_path": args.database,
            "repo_dir": args.repo_dir,
            "log_format": args.log_format,
            "log_level": args.log_level,
        },
    )


def open_token_store(settings: RegistrarSettings) -> TokenStore:
    database = Database(settings.database_path)
    database.connect()
    return TokenStore(database)


def build_orchestrator(settings: RegistrarSettings) -> RegistrationOrchestrator:
    """Wire the token store and repository described by ``settings``.

    Raises:
        ValueError: No repository URL is configured.
    """
    if not settings.repo_url:
        raise ValueError("No repository for templates or state specified (use --repo)")
    repository = ClusterRepository(
        remote_url=settings.repo_url,
        local_dir=settings.repo_dir,
        cluster_document=settings.cluster_document,
        registry_attribute=settings.registry_attribute,
        git_timeout=settings.git_timeout,
        lock_timeout=settings.lock_timeout,
        author_name=settings.commit_author_name,
        author_email=settings.commit_author_email,
    )
    return RegistrationOrchestrator(
        token_store=open_token_store(settings),
        repository=repository,
        auth_enabled=not settings.no_auth,
        hosts_dir=settings.hosts_dir,
    )


def run_command(args: argparse.Namespace, settings: RegistrarSettings, console: Console) -> int:
    """Execute the selected command. Returns the process exit status."""
    if args.command == "generate-otp":
        store = open_token_store(settings)
        code = store.generate(uses=args.uses, ttl=timedelta(hours=args.expires_in))
        console.print(f"New otp generated: [bold]{code}[/bold]")
        return 0

    if args.command == "check-otp":
        store = open_token_store(settings)
        valid = store.validate(args.otp)
        console.print(f"Is the otp valid?\n{'yes' if valid else 'no'}")
        return 0 if valid else 1

    if args.command == "remove-otps":
        store = open_token_store(settings)
        removed = store.revoke_all()
        console.print(f"Removed {removed} otp(s).")
        return 0

    orchestrator = build_orchestrator(settings)
    serve(
        orchestrator,
        host=settings.listen_ip,
        port=settings.port,
        ssl_certfile=settings.ssl_certfile,
        ssl_keyfile=settings.ssl_keyfile,
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    console = Console()
    error_console = Console(stderr=True)

    try:
        settings = settings_from_args(args)
    except (OSError, ValueError) as exc:
        error_console.print(f"[red]Invalid configuration:[/red] {escape(str(exc))}")
        sys.exit(2)

    configure_logging(settings.log_format, settings.log_level)

    try:
        status = run_command(args, settings, console)
    except KeyboardInterrupt:
        logger.info("registrar_shutdown", reason="interrupted")
        status = 0
    except Exception as exc:
        error_console.print(f"[red]Error:[/red] {escape(str(exc))}")
        status = 1
    sys.exit(status)


if __name__ == "__main__":
    main()
