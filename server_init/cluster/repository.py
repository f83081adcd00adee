"""Local working copy of the cluster repository.

One ``ClusterRepository`` owns one directory bound to one remote. A git work
tree is not safe for concurrent writers, so every mutating sequence runs
inside ``session()``, which holds a process-wide lock.

All git calls go through the ``git`` executable with a timeout and with
terminal prompts disabled, so an unreachable or credential-prompting remote
fails the request instead of hanging it.
"""

import os
import shutil
import subprocess
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

import structlog

from server_init.cluster.merge import locate_cluster_root
from server_init.errors import RemoteTlsError, RepositoryError
from server_init.nix import ConfigDocument, Node

logger = structlog.get_logger(__name__)

_TLS_MARKERS = (
    "ssl certificate problem",
    "server certificate verification failed",
    "certificate verify failed",
    "unable to get local issuer certificate",
    "self signed certificate",
    "self-signed certificate",
)


def is_tls_failure(stderr: str) -> bool:
    """True if git's error output reports a rejected remote certificate."""
    lowered = stderr.lower()
    return any(marker in lowered for marker in _TLS_MARKERS)


class ClusterRepository:
    """Git working copy holding the cluster definition.

    Args:
        remote_url: URL of the source-of-truth repository.
        local_dir: Directory of the working copy.
        cluster_document: Path of the registry document inside the repository.
        registry_attribute: Registry attribute name in that document.
        git_timeout: Seconds before a git command is killed.
        lock_timeout: Seconds ``session()`` waits for the lock.
        author_name: Commit author name.
        author_email: Commit author email.
    """

    def __init__(
        self,
        remote_url: str,
        local_dir: Union[str, Path],
        cluster_document: str = "secrets/secrets.nix",
        registry_attribute: str = "hosts",
        git_timeout: float = 60.0,
        lock_timeout: float = 120.0,
        author_name: str = "server-init",
        author_email: str = "server-init@localhost",
    ) -> None:
        self.remote_url = remote_url
        self.local_dir = Path(local_dir)
        self.cluster_document = cluster_document
        self.registry_attribute = registry_attribute
        self.git_timeout = git_timeout
        self.lock_timeout = lock_timeout
        self.author_name = author_name
        self.author_email = author_email

        self._lock = threading.Lock()
        self._branch: Optional[str] = None

    # ── Locking ───────────────────────────────────────────────────

    @contextmanager
    def session(self) -> Iterator["ClusterRepository"]:
        """Hold the working-copy lock for the duration of the block.

        Raises:
            RepositoryError: The lock was not acquired within ``lock_timeout``.
        """
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise RepositoryError(
                f"repository busy: lock not acquired within {self.lock_timeout}s"
            )
        try:
            yield self
        finally:
            self._lock.release()

    # ── git plumbing ──────────────────────────────────────────────

    def _git(
        self,
        *args: str,
        cwd: Optional[Path] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        git = shutil.which("git")
        if not git:
            raise RepositoryError("git executable not found")

        env = dict(os.environ, GIT_TERMINAL_PROMPT="0", LC_ALL="C")
        cmd = [git, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(cwd or self.local_dir),
                env=env,
                capture_output=True,
                text=True,
                timeout=self.git_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            logger.error("git_timeout", command=args[0], timeout=self.git_timeout)
            raise RepositoryError(f"git {args[0]} timed out") from exc
        except OSError as exc:
            raise RepositoryError(f"git {args[0]} could not run: {exc}") from exc

        if check and result.returncode != 0:
            stderr = result.stderr.strip()
            logger.error(
                "git_failed",
                command=args[0],
                returncode=result.returncode,
                stderr=stderr,
            )
            if is_tls_failure(stderr):
                raise RemoteTlsError(f"git {args[0]}: {stderr}")
            raise RepositoryError(f"git {args[0]} failed: {stderr}")
        return result

    # ── Clone / open ──────────────────────────────────────────────

    def clone_or_open(self) -> None:
        """Clone the remote, or open the existing working copy.

        Safe to call on every request.

        Raises:
            RemoteTlsError: The remote's certificate was rejected.
            RepositoryError: Clone failed, or ``local_dir`` exists but is not
                a working copy of ``remote_url``.
        """
        if not self.local_dir.exists() or (
            self.local_dir.is_dir() and not any(self.local_dir.iterdir())
        ):
            self.local_dir.parent.mkdir(parents=True, exist_ok=True)
            self._git(
                "clone", "--quiet", "--", self.remote_url, str(self.local_dir),
                cwd=self.local_dir.parent,
            )
            logger.info("repository_cloned", local_dir=str(self.local_dir))
            return

        if not (self.local_dir / ".git").exists():
            raise RepositoryError(f"{self.local_dir} exists but is not a git working copy")

        origin = self._git("remote", "get-url", "origin", check=False)
        if origin.returncode != 0:
            raise RepositoryError(f"{self.local_dir} has no 'origin' remote")
        if origin.stdout.strip() != self.remote_url:
            raise RepositoryError(
                f"{self.local_dir} tracks {origin.stdout.strip()!r}, not the configured remote"
            )
        logger.debug("repository_opened", local_dir=str(self.local_dir))

    def default_branch(self) -> str:
        """Branch of the remote that registrations are pushed to."""
        if self._branch:
            return self._branch
        remote_head = self._git(
            "symbolic-ref", "--quiet", "--short", "refs/remotes/origin/HEAD", check=False
        )
        if remote_head.returncode == 0 and remote_head.stdout.strip():
            branch = remote_head.stdout.strip().split("/", 1)[-1]
        else:
            branch = self._git("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()
        self._branch = branch
        return branch

    # ── Reading ───────────────────────────────────────────────────

    def resolve(self, relpath: str) -> Path:
        """Absolute path of ``relpath`` inside the working copy.

        Raises:
            RepositoryError: ``relpath`` escapes the working copy.
        """
        root = self.local_dir.resolve()
        path = (root / relpath).resolve()
        if path != root and root not in path.parents:
            raise RepositoryError(f"path {relpath!r} escapes the repository")
        if path == root or ".git" in path.relative_to(root).parts:
            raise RepositoryError(f"path {relpath!r} is not a writable file path")
        return path

    def exists(self, relpath: str) -> bool:
        return self.resolve(relpath).exists()

    def read_text(self, relpath: str) -> str:
        try:
            return self.resolve(relpath).read_text()
        except OSError as exc:
            raise RepositoryError(f"cannot read {relpath}: {exc}") from exc

    @staticmethod
    def parse(text: str) -> ConfigDocument:
        """Parse a configuration text; raises ``ParseError`` on failure."""
        return ConfigDocument.parse(text)

    def locate_cluster_root(self, doc: ConfigDocument) -> Node:
        """Registry node of ``doc``; raises ``ClusterShapeError`` on bad shape."""
        return locate_cluster_root(doc, self.registry_attribute)

    def load_cluster_document(self) -> ConfigDocument:
        """Read and parse the cluster document; raises ``ParseError``."""
        return self.parse(self.read_text(self.cluster_document))

    # ── Writing ───────────────────────────────────────────────────

    def write_commit_push(self, files: dict[str, str], message: str) -> str:
        """Write ``files``, commit them, and push to the default branch.

        If anything fails before the commit exists, the working tree and
        index are restored to ``HEAD`` and newly created files are removed.
        Once the commit exists it is kept, even if the push fails.

        Args:
            files: Repository-relative path → content.
            message: Commit message.

        Returns:
            The new commit's sha.

        Raises:
            RemoteTlsError: The push was rejected because of the certificate.
            RepositoryError: Any other write, commit or push failure.
        """
        targets = {relpath: self.resolve(relpath) for relpath in files}
        created = [path for path in targets.values() if not path.exists()]

        try:
            for relpath, content in files.items():
                path = targets[relpath]
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content)
            self._git("add", "--", *files)
            self._git(
                "-c", f"user.name={self.author_name}",
                "-c", f"user.email={self.author_email}",
                "-c", "commit.gpgsign=false",
                "commit", "--quiet", "--no-verify", "-m", message,
            )
        except Exception as exc:
            logger.error("repository_write_failed", error=str(exc), paths=sorted(files))
            self._restore(created)
            if isinstance(exc, OSError):
                raise RepositoryError(f"cannot write files: {exc}") from exc
            raise

        sha = self._git("rev-parse", "HEAD").stdout.strip()
        logger.info("repository_committed", commit=sha, paths=sorted(files))

        branch = self.default_branch()
        try:
            self._git("push", "--quiet", "origin", f"HEAD:refs/heads/{branch}")
        except (RemoteTlsError, RepositoryError):
            logger.error("repository_push_failed", commit=sha, branch=branch)
            raise

        logger.info("repository_pushed", commit=sha, branch=branch)
        return sha

    def _restore(self, created: list[Path]) -> None:
        """Reset index and tracked files to HEAD and drop ``created`` files."""
        reset = self._git("reset", "--quiet", "--hard", "HEAD", check=False)
        if reset.returncode != 0:
            logger.error("repository_reset_failed", stderr=reset.stderr.strip())
        root = self.local_dir.resolve()
        for path in created:
            path.unlink(missing_ok=True)
            parent = path.parent
            while parent != root and root in parent.parents:
                if parent.exists():
                    if any(parent.iterdir()):
                        break
                    parent.rmdir()
                parent = parent.parent
        logger.warning("repository_restored", removed=len(created))
