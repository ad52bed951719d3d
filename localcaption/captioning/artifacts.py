from __future__ import annotations

import asyncio
import os
import shutil
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, NamedTuple, Optional

import httpx

from localcaption.utils.logger import logger

from .cancellation import CancellationToken, check_cancelled
from .catalog import DEFAULT_CATALOG, ModelCatalog, ModelVariant
from .errors import DownloadError
from .types import DownloadProgress, ModelArtifactState, ModelInfo

ProgressCallback = Callable[[DownloadProgress], None]

TEMP_SUFFIX = ".download"
# Corruption detection is a size heuristic only; there is no checksum.
MIN_SIZE_RATIO = 0.8
_MB = 1024 * 1024


def temp_path_for(path: Path) -> Path:
    return path.with_name(path.name + TEMP_SUFFIX)


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def _default_client_factory(timeout_s: float) -> Callable[[], httpx.AsyncClient]:
    def _factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(timeout_s, connect=30.0),
        )

    return _factory


class _Artifact(NamedTuple):
    label: str
    url: str
    path: Path
    expected_size: int


class _ProgressThrottle:
    """Forward progress to a callback at most once per ``interval`` seconds."""

    def __init__(
        self,
        callback: Optional[ProgressCallback],
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._callback = callback
        self._interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def emit(self, done: int, total: int, message: str, *, force: bool = False) -> None:
        if self._callback is None:
            return
        now = self._clock()
        if not force and self._last is not None and now - self._last < self._interval:
            return
        self._last = now
        try:
            self._callback(DownloadProgress(int(done), int(total), message))
        except Exception as exc:
            logger.warning("Download progress callback failed: %s", exc)


class ModelLifecycleManager:
    """Owns on-disk presence of model artifacts and their downloads.

    Each variant has an in-flight flag guarded by ``_lock``. The lock is only
    held to read or flip flags, never across network or disk I/O, so transfers
    of different variants and status queries proceed independently. A second
    download of the same variant is rejected rather than queued.
    """

    def __init__(
        self,
        models_dir: Path | str,
        catalog: Optional[ModelCatalog] = None,
        *,
        client_factory: Optional[Callable[[], Any]] = None,
        progress_interval: float = 0.25,
        chunk_size: int = 1024 * 1024,
        timeout_s: float = 7200.0,
        disk_usage: Callable[[Path], Any] = shutil.disk_usage,
    ) -> None:
        self.models_dir = Path(models_dir).expanduser()
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.catalog = catalog or DEFAULT_CATALOG
        self._client_factory = client_factory or _default_client_factory(timeout_s)
        self._progress_interval = float(progress_interval)
        self._chunk_size = int(chunk_size)
        self._disk_usage = disk_usage
        self._lock = threading.Lock()
        self._downloading: Dict[str, bool] = {}

    def variant(self, key: str) -> ModelVariant:
        return self.catalog.get(key)

    def weights_path(self, key: str) -> Path:
        return self.catalog.get(key).weights_path(self.models_dir)

    def projector_path(self, key: str) -> Path:
        return self.catalog.get(key).projector_path(self.models_dir)

    def is_downloading(self, key: str) -> bool:
        variant = self.catalog.get(key)
        with self._lock:
            return bool(self._downloading.get(variant.key))

    def query_state(self, key: str) -> ModelArtifactState:
        variant = self.catalog.get(key)
        with self._lock:
            if self._downloading.get(variant.key):
                return ModelArtifactState.DOWNLOADING
        return self._inspect(variant)

    def _inspect(self, variant: ModelVariant) -> ModelArtifactState:
        weights = variant.weights_path(self.models_dir)
        projector = variant.projector_path(self.models_dir)
        if not weights.is_file() or not projector.is_file():
            return ModelArtifactState.NOT_PRESENT
        if _file_size(weights) < variant.weights_size * MIN_SIZE_RATIO:
            return ModelArtifactState.CORRUPTED
        return ModelArtifactState.PRESENT

    def info(
        self, key: str, state: Optional[ModelArtifactState] = None
    ) -> ModelInfo:
        variant = self.catalog.get(key)
        weights = variant.weights_path(self.models_dir)
        return ModelInfo(
            key=variant.key,
            display_name=variant.display_name,
            description=variant.description,
            state=state or self.query_state(variant.key),
            local_path=str(weights),
            size_bytes=_file_size(weights) if weights.is_file() else 0,
            expected_size_bytes=variant.weights_size,
        )

    def _try_begin(self, key: str) -> bool:
        with self._lock:
            if self._downloading.get(key):
                return False
            self._downloading[key] = True
            return True

    def _finish(self, key: str) -> None:
        with self._lock:
            self._downloading[key] = False

    async def download(
        self,
        key: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bool:
        """Fetch the projector then the weights of ``key``.

        Returns ``False`` for transfer failures and for a duplicate start of the
        same variant. Cancellation removes the partial file and propagates.
        """
        variant = self.catalog.get(key)
        reporter = _ProgressThrottle(on_progress, self._progress_interval)

        if self.query_state(variant.key) == ModelArtifactState.PRESENT:
            reporter.emit(
                variant.total_size,
                variant.total_size,
                "Model already downloaded",
                force=True,
            )
            return True

        if not self._try_begin(variant.key):
            logger.warning("%s model download already in progress", variant.key)
            return False

        try:
            await self._download_variant(variant, reporter, cancel_token)
            logger.info("%s downloaded to %s", variant.display_name, self.models_dir)
            return True
        except asyncio.CancelledError:
            logger.info("%s download cancelled", variant.display_name)
            reporter.emit(0, variant.total_size, "Download cancelled", force=True)
            raise
        except (DownloadError, httpx.HTTPError, OSError) as exc:
            logger.error("Failed to download %s: %s", variant.display_name, exc)
            reporter.emit(0, variant.total_size, f"Download failed: {exc}", force=True)
            return False
        finally:
            self._finish(variant.key)

    def _artifacts_for(self, variant: ModelVariant) -> list[_Artifact]:
        return [
            _Artifact(
                "CLIP projector",
                variant.projector_url,
                variant.projector_path(self.models_dir),
                variant.projector_size,
            ),
            _Artifact(
                "model",
                variant.weights_url,
                variant.weights_path(self.models_dir),
                variant.weights_size,
            ),
        ]

    @staticmethod
    def _is_complete(artifact: _Artifact) -> bool:
        return (
            artifact.path.is_file()
            and _file_size(artifact.path) >= artifact.expected_size * MIN_SIZE_RATIO
        )

    def _ensure_disk_space(self, variant: ModelVariant, artifacts: list[_Artifact]) -> None:
        required = sum(a.expected_size for a in artifacts if not self._is_complete(a))
        if required <= 0:
            return
        try:
            free = int(self._disk_usage(self.models_dir).free)
        except OSError as exc:
            logger.warning("Could not determine free space in %s: %s", self.models_dir, exc)
            return
        if free < required:
            raise DownloadError(
                f"Insufficient disk space for {variant.display_name}: "
                f"{required // _MB}MB required, {free // _MB}MB free"
            )

    async def _download_variant(
        self,
        variant: ModelVariant,
        reporter: _ProgressThrottle,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        total = variant.total_size
        artifacts = self._artifacts_for(variant)
        self._ensure_disk_space(variant, artifacts)

        offset = 0
        async with self._client_factory() as client:
            for artifact in artifacts:
                if self._is_complete(artifact):
                    offset += artifact.expected_size
                    continue
                check_cancelled(cancel_token)
                reporter.emit(
                    offset,
                    total,
                    f"Downloading {variant.display_name} {artifact.label}...",
                    force=True,
                )
                await self._fetch(
                    client,
                    artifact,
                    name=f"{variant.display_name} {artifact.label}",
                    offset=offset,
                    total=total,
                    reporter=reporter,
                    cancel_token=cancel_token,
                )
                offset += artifact.expected_size
        reporter.emit(total, total, "Download complete", force=True)

    async def _fetch(
        self,
        client: Any,
        artifact: _Artifact,
        *,
        name: str,
        offset: int,
        total: int,
        reporter: _ProgressThrottle,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        tmp_path = temp_path_for(artifact.path)
        completed = False
        try:
            async with client.stream("GET", artifact.url) as response:
                response.raise_for_status()
                length = response.headers.get("Content-Length")
                file_total = int(length) if length and length.isdigit() else artifact.expected_size
                done = 0
                with tmp_path.open("wb") as fh:
                    async for chunk in response.aiter_bytes(self._chunk_size):
                        check_cancelled(cancel_token)
                        fh.write(chunk)
                        done += len(chunk)
                        reporter.emit(
                            offset + min(done, artifact.expected_size),
                            total,
                            f"Downloading {name}... {done // _MB}MB / {file_total // _MB}MB",
                        )
                    fh.flush()
                    os.fsync(fh.fileno())
            check_cancelled(cancel_token)
            if done == 0:
                raise DownloadError(f"Empty response for {name} from {artifact.url}")
            os.replace(tmp_path, artifact.path)
            completed = True
            logger.info("%s downloaded successfully: %s", name, artifact.path)
        finally:
            if not completed:
                self._cleanup_partial(tmp_path)

    @staticmethod
    def _cleanup_partial(tmp_path: Path) -> None:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to clean up partial download %s: %s", tmp_path, exc)

    def delete(self, key: str) -> None:
        """Remove both artifact files. The caller unloads an active session first."""
        variant = self.catalog.get(key)
        for label, path in (
            ("model", variant.weights_path(self.models_dir)),
            ("CLIP projector", variant.projector_path(self.models_dir)),
        ):
            if path.exists():
                path.unlink()
                logger.info("%s %s deleted: %s", variant.key, label, path)
