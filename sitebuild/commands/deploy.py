"""
FTP deploy for sitebuild.

Pushes the built output tree to a remote path. Meant to run from CI after a
production build:

    sitebuild deploy --user $FTP_USER --password $FTP_PASSWORD
"""

from __future__ import annotations

import ftplib
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from sitebuild.build.config import BuildContext, DeployOptions
from sitebuild.core.errors import ConfigError, ConnectionFailure, MissingCredential, SiteBuildError
from sitebuild.core.utils import format_size, log

FtpFactory = Callable[..., ftplib.FTP]


@dataclass(frozen=True)
class Credentials:
    user: Optional[str]
    password: Optional[str] = field(default=None, repr=False)

    def require(self) -> None:
        """Raise MissingCredential unless both user and password are set."""
        missing = [name for name, value in (("user", self.user), ("password", self.password)) if not value]
        if missing:
            raise MissingCredential(
                f"Deploy needs --{' and --'.join(missing)} (e.g. --user $FTP_USER --password $FTP_PASSWORD)"
            )


# =============================================================================
# Connection
# =============================================================================


def connect(options: DeployOptions, credentials: Credentials, ftp_factory: Optional[FtpFactory] = None) -> ftplib.FTP:
    """Open and log in an FTP session. No retry."""
    try:
        ftp = (ftp_factory or ftplib.FTP)()
        ftp.connect(options.host, options.port, timeout=options.timeout)
    except ftplib.all_errors as e:
        raise ConnectionFailure(f"Cannot reach {options.host}:{options.port}: {e}") from e
    try:
        ftp.login(credentials.user, credentials.password)
    except ftplib.all_errors as e:
        ftp.close()
        raise ConnectionFailure(f"Login to {options.host} refused: {e}") from e
    log.success(f"FTP connection to {options.host} successful")
    return ftp


# =============================================================================
# Upload
# =============================================================================


def ensure_remote_dir(ftp: ftplib.FTP, remote_dir: str, known: set[str]) -> None:
    """Create remote_dir and its parents, tolerating ones that already exist."""
    if remote_dir in ("", "/") or remote_dir in known:
        return
    ensure_remote_dir(ftp, posixpath.dirname(remote_dir.rstrip("/")), known)
    try:
        ftp.mkd(remote_dir)
    except ftplib.error_perm as e:
        # 550: already exists
        if not str(e).startswith("550"):
            raise
    known.add(remote_dir)


def upload_tree(ftp: ftplib.FTP, local_root: Path, remote_root: str) -> tuple[int, int]:
    """Upload every file under local_root; returns (files, bytes)."""
    known: set[str] = set()
    files = total = 0
    for path in sorted(local_root.rglob("*")):
        if not path.is_file():
            continue
        rel = path.relative_to(local_root).as_posix()
        remote = posixpath.join(remote_root, rel)
        ensure_remote_dir(ftp, posixpath.dirname(remote), known)
        try:
            f = open(path, "rb")
        except OSError as e:
            raise SiteBuildError(f"Cannot read {path}: {e}") from e
        with f:
            ftp.storbinary(f"STOR {remote}", f)
        size = path.stat().st_size
        log.dim(f"{rel} ({format_size(size)})")
        files += 1
        total += size
    return files, total


def deploy_site(
    ctx: BuildContext,
    credentials: Credentials,
    ftp_factory: Optional[FtpFactory] = None,
) -> tuple[int, int]:
    """Upload the output directory to deploy.remote_path."""
    credentials.require()

    options = ctx.config.deploy
    if not options.host:
        raise ConfigError("deploy.host is not set in site.yaml")

    output = ctx.config.output_path
    if not output.is_dir() or not any(output.iterdir()):
        raise ConfigError(f"Nothing to deploy: {output} is empty (run 'sitebuild build --prod' first)")

    ftp = connect(options, credentials, ftp_factory)
    try:
        files, total = upload_tree(ftp, output, options.remote_path)
    except ftplib.all_errors as e:
        raise ConnectionFailure(f"Upload to {options.host} failed: {e}") from e
    finally:
        try:
            ftp.quit()
        except ftplib.all_errors:
            ftp.close()

    log.success(f"Deployed {files} files ({format_size(total)}) to {options.host}:{options.remote_path}")
    return files, total
