"""Shared fixtures: token database, host keys and a seeded git remote."""

import base64
import hashlib
import shutil
import struct
import subprocess
from pathlib import Path

import pytest

from server_init.cluster.repository import ClusterRepository
from server_init.security.tokens import TokenStore
from server_init.storage.database import Database

CLUSTER_NIX = """\
let
  admin = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIAdmin admin@example";
in
{
  # Machines registered by server-init.
  hosts = {
  };

  "wireguard.age".publicKeys = [ admin ];
}
"""

HARDWARE_NIX = """\
{ config, lib, pkgs, modulesPath, ... }:

{
  imports = [ (modulesPath + "/installer/scan/not-detected.nix") ];

  boot.initrd.availableKernelModules = [ "xhci_pci" "ahci" "nvme" "usb_storage" ];
  boot.kernelModules = [ "kvm-intel" ];

  fileSystems."/" = {
    device = "/dev/disk/by-uuid/0d9b2c3e-1f2a-4b5c-8d9e-0a1b2c3d4e5f";
    fsType = "ext4";
  };

  swapDevices = [ ];
  nixpkgs.hostPlatform = lib.mkDefault "x86_64-linux";
}
"""

OS_NIX = """\
{ config, pkgs, ... }:

{
  imports = [ ./hardware-configuration.nix ];

  boot.loader.systemd-boot.enable = true;
  networking.hostName = "node-01";
  time.timeZone = "Europe/London";

  services.openssh = {
    enable = true;
    settings.PasswordAuthentication = false;
  };

  environment.systemPackages = with pkgs; [ git vim ];

  system.stateVersion = "24.05";
}
"""

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def make_host_key(seed: str = "node-01", key_type: str = "ssh-ed25519") -> str:
    """Deterministic, well-formed OpenSSH public key line."""
    name = key_type.encode()
    material = hashlib.sha256(seed.encode()).digest()
    blob = struct.pack(">I", len(name)) + name + struct.pack(">I", len(material)) + material
    return f"{key_type} {base64.b64encode(blob).decode()} root@{seed}\n"


def git(*args: str, cwd: Path) -> str:
    result = subprocess.run(
        [
            "git",
            "-c", "user.name=Test",
            "-c", "user.email=test@example.com",
            "-c", "commit.gpgsign=false",
            *args,
        ],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def make_remote(root: Path, files: dict[str, str]) -> Path:
    """Create a bare repository on ``main`` containing ``files``."""
    remote = root / "remote.git"
    remote.mkdir()
    git("init", "--bare", "--quiet", cwd=remote)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=remote)

    seed = root / "seed"
    seed.mkdir()
    git("init", "--quiet", cwd=seed)
    git("checkout", "--quiet", "-b", "main", cwd=seed)
    for relpath, content in files.items():
        path = seed / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    git("add", "-A", cwd=seed)
    git("commit", "--quiet", "-m", "Initial cluster", cwd=seed)
    git("push", "--quiet", str(remote), "main", cwd=seed)
    return remote


def remote_show(remote: Path, relpath: str) -> str:
    return git("show", f"main:{relpath}", cwd=remote)


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "otps.sqlite")
    db.connect()
    yield db
    db.disconnect()


@pytest.fixture
def token_store(database: Database) -> TokenStore:
    return TokenStore(database)


@pytest.fixture
def remote(tmp_path: Path) -> Path:
    return make_remote(tmp_path, {"secrets/secrets.nix": CLUSTER_NIX})


@pytest.fixture
def repository(tmp_path: Path, remote: Path) -> ClusterRepository:
    return ClusterRepository(
        remote_url=str(remote),
        local_dir=tmp_path / "work" / "repo",
        git_timeout=30.0,
        lock_timeout=30.0,
    )
