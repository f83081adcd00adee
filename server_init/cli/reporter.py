"""``server-init-report``: submit this machine to a registrar.

Runs on a freshly installed NixOS machine. Collects the machine's address,
SSH host key and NixOS configuration, sends them with an operator-supplied
token, and turns the registrar's status code into one fixed message.

Usage:
    server-init-report --url https://registrar.example.com/ --otp 5b1e…
    SERVER_INIT_OTP=5b1e… server-init-report --url https://registrar.example.com/
"""

import argparse
import asyncio
import os
import socket
import ssl
import sys
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence, Union
from urllib.parse import urlsplit

import httpx
import structlog
from rich.console import Console

from server_init.logging_config import configure_logging

logger = structlog.get_logger(__name__)

DEFAULT_HOSTKEY = Path("/etc/ssh/ssh_host_ed25519_key.pub")
DEFAULT_HARDWARE_CONFIG = Path("/etc/nixos/hardware-configuration.nix")
DEFAULT_CONFIGURATION = Path("/etc/nixos/configuration.nix")


class ReporterOutcome(Enum):
    """User-facing result of a submission: (exit status, message)."""

    SUCCESS = (0, "Registration completed.")
    MALFORMED = (2, "Request not formatted correctly")
    UNAUTHORIZED = (3, "otp not authorised: out of uses or expired")
    CONFLICT = (4, "pubkey already used on server: human intervention needed")
    TLS_REJECTED = (5, "Destination ssl certificate rejected")
    OTHER = (1, "Other error encountered")

    @property
    def exit_code(self) -> int:
        return self.value[0]

    @property
    def message(self) -> str:
        return self.value[1]


_STATUS_OUTCOMES = {
    200: ReporterOutcome.SUCCESS,
    400: ReporterOutcome.MALFORMED,
    401: ReporterOutcome.UNAUTHORIZED,
    409: ReporterOutcome.CONFLICT,
    526: ReporterOutcome.TLS_REJECTED,
}


def outcome_for_status(status_code: int) -> ReporterOutcome:
    return _STATUS_OUTCOMES.get(status_code, ReporterOutcome.OTHER)


def primary_address(target_host: Optional[str] = None) -> str:
    """Best guess at the address other machines use to reach this one.

    Opens a UDP socket towards ``target_host`` (no packet is sent) and reads
    the local address the kernel picked; falls back to resolving the
    hostname.
    """
    if target_host:
        try:
            family = socket.AF_INET6 if ":" in target_host else socket.AF_INET
            with socket.socket(family, socket.SOCK_DGRAM) as sock:
                sock.connect((target_host, 9))
                return sock.getsockname()[0]
        except OSError:
            logger.debug("address_lookup_failed", target=target_host)
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


def _is_certificate_error(exc: BaseException) -> bool:
    seen: Optional[BaseException] = exc
    while seen is not None:
        if isinstance(seen, ssl.SSLCertVerificationError):
            return True
        if "CERTIFICATE_VERIFY_FAILED" in str(seen):
            return True
        seen = seen.__cause__ or seen.__context__
    return False


class NodeReporter:
    """Collects local identity and configuration and submits it.

    Args:
        url: Registrar endpoint URL.
        otp: Token authorizing the registration.
        hostkey_path: SSH public host key file.
        hardware_config_path: ``hardware-configuration.nix``.
        configuration_path: ``configuration.nix``.
        timeout: HTTP timeout in seconds.
        ca_cert: CA bundle to trust instead of the system store.
        insecure: Allow a plain ``http://`` URL.
    """

    def __init__(
        self,
        url: str,
        otp: str,
        hostkey_path: Path = DEFAULT_HOSTKEY,
        hardware_config_path: Path = DEFAULT_HARDWARE_CONFIG,
        configuration_path: Path = DEFAULT_CONFIGURATION,
        timeout: float = 30.0,
        ca_cert: Optional[Path] = None,
        insecure: bool = False,
    ) -> None:
        if urlsplit(url).scheme != "https" and not insecure:
            raise ValueError("registrar URL must use https (pass --insecure to override)")
        self.url = url
        self.otp = otp
        self.hostkey_path = Path(hostkey_path)
        self.hardware_config_path = Path(hardware_config_path)
        self.configuration_path = Path(configuration_path)
        self.timeout = timeout
        self.ca_cert = ca_cert

    def __repr__(self) -> str:
        return f"NodeReporter(url={self.url!r})"

    def collect(self) -> dict[str, str]:
        """Build the registration payload.

        Raises:
            OSError: A local file could not be read.
        """
        return {
            "ip": primary_address(urlsplit(self.url).hostname),
            "otp": self.otp,
            "hostkey": self.hostkey_path.read_text(),
            "hardware_configuration": self.hardware_config_path.read_text(),
            "configuration": self.configuration_path.read_text(),
        }

    def _verify(self) -> Union[bool, ssl.SSLContext]:
        if self.ca_cert:
            return ssl.create_default_context(cafile=str(self.ca_cert))
        return True

    async def submit(
        self,
        payload: dict[str, str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> ReporterOutcome:
        """POST the payload and map the response status."""
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                verify=self._verify(),
                transport=transport,
            ) as client:
                response = await client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            if _is_certificate_error(exc):
                await logger.awarning("registrar_certificate_rejected", url=self.url)
                return ReporterOutcome.TLS_REJECTED
            await logger.awarning(
                "registrar_unreachable", url=self.url, error=type(exc).__name__
            )
            return ReporterOutcome.OTHER

        outcome = outcome_for_status(response.status_code)
        await logger.adebug(
            "registration_response", status=response.status_code, outcome=outcome.name
        )
        return outcome

    async def run(self) -> ReporterOutcome:
        """Collect and submit; local read failures map to ``OTHER``."""
        try:
            payload = self.collect()
        except OSError as exc:
            await logger.aerror(
                "local_file_unreadable", path=exc.filename, error=exc.strerror
            )
            return ReporterOutcome.OTHER
        return await self.submit(payload)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="server-init-report",
        description="Register this machine with a server-init registrar",
    )
    parser.add_argument("-u", "--url", required=True, help="Registrar URL")
    parser.add_argument(
        "-o",
        "--otp",
        default=os.environ.get("SERVER_INIT_OTP"),
        help="Token to authenticate with (default: $SERVER_INIT_OTP)",
    )
    parser.add_argument(
        "-s",
        "--ssh-hostkey",
        type=Path,
        default=DEFAULT_HOSTKEY,
        help=f"SSH public host key (default: {DEFAULT_HOSTKEY})",
    )
    parser.add_argument(
        "--hardware-config",
        type=Path,
        default=DEFAULT_HARDWARE_CONFIG,
        help=f"Hardware configuration (default: {DEFAULT_HARDWARE_CONFIG})",
    )
    parser.add_argument(
        "--configuration",
        type=Path,
        default=DEFAULT_CONFIGURATION,
        help=f"System configuration (default: {DEFAULT_CONFIGURATION})",
    )
    parser.add_argument("--ca-cert", type=Path, help="CA bundle to verify the registrar")
    parser.add_argument(
        "--timeout", type=float, default=30.0, help="HTTP timeout in seconds (default: 30)"
    )
    parser.add_argument(
        "--insecure", action="store_true", help="Allow a plain http:// registrar URL"
    )
    args = parser.parse_args(argv)
    if not args.otp:
        parser.error("an otp is required (--otp or $SERVER_INIT_OTP)")
    return args


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging("console", "warning")
    console = Console(stderr=True)
    try:
        reporter = NodeReporter(
            url=args.url,
            otp=args.otp,
            hostkey_path=args.ssh_hostkey,
            hardware_config_path=args.hardware_config,
            configuration_path=args.configuration,
            timeout=args.timeout,
            ca_cert=args.ca_cert,
            insecure=args.insecure,
        )
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        sys.exit(2)

    outcome = asyncio.run(reporter.run())
    if outcome is ReporterOutcome.SUCCESS:
        Console().print(outcome.message)
    else:
        console.print(f"[red]{outcome.message}[/red]")
    sys.exit(outcome.exit_code)


if __name__ == "__main__":
    main()
