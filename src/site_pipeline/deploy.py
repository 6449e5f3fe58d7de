"""FTP deployment of the output tree, gated on build state."""

from __future__ import annotations

import asyncio
import ftplib
import posixpath
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Protocol, Sequence, Tuple

from loguru import logger
from pathspec import PathSpec
from pathspec.patterns import GitWildMatchPattern

from .config import ConnectionConfig, ConfigStore, MappingConfig
from .models import AssetType, PipelineState, ProjectLayout
from .reporting import format_file_size

# Mapping names whose upload depends on a tracked build.
GATED_ASSETS: Dict[str, AssetType] = {
    "styles": AssetType.STYLES,
    "scripts": AssetType.SCRIPTS,
}

EXPECTED_OUTPUTS: Dict[str, Tuple[str, ...]] = {
    "styles": ("css/main.min.css", "css/core.min.css"),
    "scripts": ("js/main.min.js", "js/core.min.js"),
    "all": ("css/main.min.css", "css/core.min.css", "js/main.min.js", "js/core.min.js"),
}


class DeployError(Exception):
    """Base class for deployment failures."""


class RemoteConnectionError(DeployError):
    """The remote host could not be reached or refused the login."""


class UploadError(DeployError):
    """A single file failed to upload; the rest of the deploy was aborted."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class PreconditionError(DeployError):
    """A deploy gate failed; nothing was sent."""


class Transport(Protocol):
    async def connect(self, connection: ConnectionConfig) -> None: ...

    async def ensure_dir(self, path: str) -> None: ...

    async def upload_file(self, local: Path, remote: str) -> None: ...

    async def close(self) -> None: ...


class FtpTransport:
    """``ftplib`` client driven from worker threads."""

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout
        self._ftp: ftplib.FTP | None = None

    @property
    def client(self) -> ftplib.FTP:
        if self._ftp is None:
            raise RemoteConnectionError("FTP session is not connected")
        return self._ftp

    async def connect(self, connection: ConnectionConfig) -> None:
        await asyncio.to_thread(self._connect_sync, connection)

    def _connect_sync(self, connection: ConnectionConfig) -> None:
        ftp = ftplib.FTP_TLS(timeout=self.timeout) if connection.secure else ftplib.FTP(timeout=self.timeout)
        try:
            ftp.connect(connection.host, connection.port)
            ftp.login(connection.user, connection.password)
            if isinstance(ftp, ftplib.FTP_TLS):
                ftp.prot_p()
        except (OSError, ftplib.Error) as exc:
            ftp.close()
            raise RemoteConnectionError(f"FTP connection failed: {exc}") from exc
        self._ftp = ftp

    async def ensure_dir(self, path: str) -> None:
        await asyncio.to_thread(self._ensure_dir_sync, path)

    def _ensure_dir_sync(self, path: str) -> None:
        ftp = self.client
        try:
            previous = ftp.pwd()
            if path.startswith("/"):
                ftp.cwd("/")
            for part in [segment for segment in path.split("/") if segment]:
                try:
                    ftp.cwd(part)
                except ftplib.error_perm:
                    ftp.mkd(part)
                    ftp.cwd(part)
            ftp.cwd(previous)
        except (OSError, ftplib.Error) as exc:
            raise UploadError(f"Could not create remote directory {path}: {exc}") from exc

    async def upload_file(self, local: Path, remote: str) -> None:
        await asyncio.to_thread(self._upload_sync, local, remote)

    def _upload_sync(self, local: Path, remote: str) -> None:
        try:
            with local.open("rb") as handle:
                self.client.storbinary(f"STOR {remote}", handle)
        except (OSError, ftplib.Error) as exc:
            raise UploadError(str(exc), path=local) from exc

    async def close(self) -> None:
        if self._ftp is None:
            return
        ftp, self._ftp = self._ftp, None
        await asyncio.to_thread(self._close_sync, ftp)

    @staticmethod
    def _close_sync(ftp: ftplib.FTP) -> None:
        try:
            ftp.quit()
        except (OSError, ftplib.Error):
            ftp.close()


def is_excluded(name: str, patterns: Sequence[str]) -> bool:
    """Match a directory entry name against glob-style exclude patterns."""

    if not patterns:
        return False
    spec = PathSpec.from_lines(GitWildMatchPattern, patterns)
    return spec.match_file(name)


def remote_join(*parts: str) -> str:
    cleaned = [part.replace("\\", "/") for part in parts if part]
    if not cleaned:
        return "/"
    return posixpath.normpath(posixpath.join(*cleaned))


class DeploymentManager:
    """Uploads configured mappings of the output directory to the remote host."""

    def __init__(
        self,
        layout: ProjectLayout,
        store: ConfigStore,
        state: PipelineState,
        transport_factory: Callable[[], Transport] = FtpTransport,
    ) -> None:
        self.layout = layout
        self.store = store
        self.state = state
        self.transport_factory = transport_factory

    @property
    def enabled(self) -> bool:
        return self.store.deploy is not None

    @property
    def local_root(self) -> Path:
        folder = self.store.deploy.deployment.local_folder if self.store.deploy else "dist"
        return self.layout.root / folder

    def expected_outputs(self, mapping_name: str) -> List[Path]:
        return [self.layout.dist / relative for relative in EXPECTED_OUTPUTS.get(mapping_name, ())]

    def _check_preconditions(self, mapping_name: str) -> MappingConfig:
        deploy = self.store.deploy
        if deploy is None:
            raise PreconditionError("FTP config not loaded")
        if not self.local_root.exists():
            raise PreconditionError(f"Output folder {self.local_root.name} does not exist; run a build first")
        mapping = deploy.deployment.mappings.get(mapping_name)
        if mapping is None:
            raise PreconditionError(f'Mapping "{mapping_name}" not found in FTP config')
        asset = GATED_ASSETS.get(mapping_name)
        if asset is not None and not self.state.last_successful.is_ready(asset):
            raise PreconditionError(f"{asset.value.upper()} build not successful yet")
        missing = [path for path in self.expected_outputs(mapping_name) if not path.exists()]
        if missing:
            names = ", ".join(str(path.relative_to(self.layout.root)) for path in missing)
            raise PreconditionError(f"Missing compiled files: {names}")
        return mapping

    async def deploy(self, mapping_name: str) -> bool:
        """Upload one mapping; ``False`` when a gate stopped it before any network call."""

        with self.state.active_operations.track(f"deploy:{mapping_name}"):
            try:
                mapping = self._check_preconditions(mapping_name)
            except PreconditionError as exc:
                logger.warning("Deployment skipped: {}", exc)
                return False

            local = self.local_root if mapping.local in ("", ".") else self.local_root / mapping.local
            if not local.exists():
                raise UploadError(f"Local path not found: {local}", path=local)

            deployment = self.store.deploy.deployment
            remote = remote_join(deployment.base_path, mapping.remote)
            transport = self.transport_factory()
            label = mapping.description or mapping_name
            logger.info("Deploying {} to {}", label, remote)
            try:
                await transport.connect(self.store.deploy.connection)
                await transport.ensure_dir(remote)
                count = await self._upload_tree(transport, local, remote, mapping.exclude, local)
            except DeployError as exc:
                logger.error("{} deployment failed: {}", label, exc)
                raise
            finally:
                await transport.close()
            logger.success("{} deployed successfully ({} file(s))", label, count)
            return True

    async def _upload_tree(
        self,
        transport: Transport,
        directory: Path,
        remote_dir: str,
        exclude: Sequence[str],
        base: Path,
    ) -> int:
        uploaded = 0
        try:
            entries = sorted(directory.iterdir(), key=lambda item: item.name)
        except OSError as exc:
            logger.error("{} - ✗ {}", directory.relative_to(base).as_posix(), exc)
            raise UploadError(str(exc), path=directory) from exc
        for entry in entries:
            if is_excluded(entry.name, exclude):
                logger.debug("Excluded {}", entry.relative_to(base))
                continue
            remote_path = posixpath.join(remote_dir, entry.name)
            if entry.is_dir():
                await transport.ensure_dir(remote_path)
                uploaded += await self._upload_tree(transport, entry, remote_path, exclude, base)
                continue
            relative = entry.relative_to(base).as_posix()
            try:
                size = format_file_size(entry.stat().st_size)
                await transport.upload_file(entry, remote_path)
            except UploadError as exc:
                logger.error("{} - ✗ {} → {}", relative, exc, remote_path)
                raise
            except (OSError, ConnectionError) as exc:
                logger.error("{} - ✗ {} → {}", relative, exc, remote_path)
                raise UploadError(str(exc), path=entry) from exc
            logger.info("{} - {} - ✓ → {}", relative, size, remote_path)
            uploaded += 1
        return uploaded

    async def auto_deploy(self, mapping_name: str, changed_path: Path | None = None) -> bool:
        """Deploy after a watched rebuild when auto-deploy is on; never raises."""

        if not self.state.auto_deploy or not self.enabled:
            return False
        if changed_path is not None:
            logger.info("Auto-deploy triggered for {} file: {}", mapping_name, changed_path.name)
        try:
            return await self.deploy(mapping_name)
        except DeployError as exc:
            logger.error("Auto-deploy failed: {}", exc)
            return False

    def mapping_names(self) -> Iterable[str]:
        if self.store.deploy is None:
            return ()
        return self.store.deploy.deployment.mappings.keys()


__all__ = [
    "DeployError",
    "DeploymentManager",
    "FtpTransport",
    "PreconditionError",
    "RemoteConnectionError",
    "Transport",
    "UploadError",
    "is_excluded",
    "remote_join",
]
