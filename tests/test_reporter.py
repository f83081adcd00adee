"""Tests for the node-side reporter."""

import json
import ssl
from pathlib import Path

import httpx
import pytest

from server_init.cli import reporter as reporter_cli
from server_init.cli.reporter import (
    NodeReporter,
    ReporterOutcome,
    main,
    outcome_for_status,
    parse_args,
)

from tests.conftest import HARDWARE_NIX, OS_NIX, make_host_key

URL = "https://registrar.example.com/"


@pytest.fixture
def node_files(tmp_path: Path) -> dict[str, Path]:
    files = {
        "hostkey_path": tmp_path / "ssh_host_ed25519_key.pub",
        "hardware_config_path": tmp_path / "hardware-configuration.nix",
        "configuration_path": tmp_path / "configuration.nix",
    }
    files["hostkey_path"].write_text(make_host_key("node-01"))
    files["hardware_config_path"].write_text(HARDWARE_NIX)
    files["configuration_path"].write_text(OS_NIX)
    return files


@pytest.fixture
def reporter(node_files: dict[str, Path], monkeypatch: pytest.MonkeyPatch) -> NodeReporter:
    monkeypatch.setattr(reporter_cli, "primary_address", lambda target=None: "10.0.0.17")
    return NodeReporter(URL, "5b1e9f0c", **node_files)


def responding(status_code: int, seen: list) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code)

    return httpx.MockTransport(handler)


class TestOutcomeMapping:
    """Status code to message and exit status."""

    @pytest.mark.parametrize(
        "status_code, expected",
        [
            (200, ReporterOutcome.SUCCESS),
            (400, ReporterOutcome.MALFORMED),
            (401, ReporterOutcome.UNAUTHORIZED),
            (409, ReporterOutcome.CONFLICT),
            (526, ReporterOutcome.TLS_REJECTED),
            (500, ReporterOutcome.OTHER),
            (404, ReporterOutcome.OTHER),
            (502, ReporterOutcome.OTHER),
        ],
    )
    def test_mapping(self, status_code: int, expected: ReporterOutcome) -> None:
        assert outcome_for_status(status_code) is expected

    def test_exit_codes_are_distinct(self) -> None:
        codes = [outcome.exit_code for outcome in ReporterOutcome]
        assert len(set(codes)) == len(codes)
        assert ReporterOutcome.SUCCESS.exit_code == 0


class TestNodeReporter:
    """Collecting and submitting the registration."""

    def test_collect(self, reporter: NodeReporter) -> None:
        payload = reporter.collect()
        assert payload == {
            "ip": "10.0.0.17",
            "otp": "5b1e9f0c",
            "hostkey": make_host_key("node-01"),
            "hardware_configuration": HARDWARE_NIX,
            "configuration": OS_NIX,
        }

    def test_requires_https(self, node_files: dict[str, Path]) -> None:
        with pytest.raises(ValueError, match="https"):
            NodeReporter("http://registrar.example.com/", "t", **node_files)
        assert NodeReporter("http://localhost:8080/", "t", insecure=True, **node_files)

    def test_repr_hides_token(self, reporter: NodeReporter) -> None:
        assert "5b1e9f0c" not in repr(reporter)

    @pytest.mark.asyncio
    async def test_submit_posts_json(self, reporter: NodeReporter) -> None:
        seen: list[httpx.Request] = []

        outcome = await reporter.submit(reporter.collect(), transport=responding(200, seen))

        assert outcome is ReporterOutcome.SUCCESS
        assert len(seen) == 1
        assert seen[0].method == "POST"
        assert str(seen[0].url) == URL
        assert json.loads(seen[0].content)["otp"] == "5b1e9f0c"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 401, 409, 526, 503])
    async def test_submit_maps_status(self, reporter: NodeReporter, status_code: int) -> None:
        outcome = await reporter.submit(reporter.collect(), transport=responding(status_code, []))
        assert outcome is outcome_for_status(status_code)

    @pytest.mark.asyncio
    async def test_certificate_rejection(self, reporter: NodeReporter) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError(
                "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed", request=request
            ) from ssl.SSLCertVerificationError("self-signed certificate")

        outcome = await reporter.submit({}, transport=httpx.MockTransport(handler))

        assert outcome is ReporterOutcome.TLS_REJECTED

    @pytest.mark.asyncio
    async def test_connection_failure(self, reporter: NodeReporter) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        outcome = await reporter.submit({}, transport=httpx.MockTransport(handler))

        assert outcome is ReporterOutcome.OTHER

    @pytest.mark.asyncio
    async def test_missing_file(self, reporter: NodeReporter) -> None:
        reporter.hostkey_path.unlink()
        assert await reporter.run() is ReporterOutcome.OTHER


class TestCommandLine:
    """Argument handling and process exit."""

    @pytest.fixture(autouse=True)
    def keep_logging(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(reporter_cli, "configure_logging", lambda *args: None)

    def test_otp_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SERVER_INIT_OTP", "from-env")
        assert parse_args(["--url", URL]).otp == "from-env"

    def test_otp_required(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SERVER_INIT_OTP", raising=False)
        with pytest.raises(SystemExit) as info:
            parse_args(["--url", URL])
        assert info.value.code == 2

    @pytest.mark.parametrize(
        "outcome", [ReporterOutcome.SUCCESS, ReporterOutcome.CONFLICT, ReporterOutcome.OTHER]
    )
    def test_main_prints_message_and_exits(
        self,
        node_files: dict[str, Path],
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture,
        outcome: ReporterOutcome,
    ) -> None:
        async def fake_run(self: NodeReporter) -> ReporterOutcome:
            return outcome

        monkeypatch.setattr(NodeReporter, "run", fake_run)

        with pytest.raises(SystemExit) as info:
            main(
                [
                    "--url", URL,
                    "--otp", "secret-otp-value",
                    "--ssh-hostkey", str(node_files["hostkey_path"]),
                ]
            )

        captured = capsys.readouterr()
        assert info.value.code == outcome.exit_code
        assert outcome.message in captured.out + captured.err
        assert "secret-otp-value" not in captured.out + captured.err

    def test_main_rejects_plain_http(self, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit) as info:
            main(["--url", "http://registrar.example.com/", "--otp", "t"])
        assert info.value.code == 2
