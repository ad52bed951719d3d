from __future__ import annotations

import asyncio
import functools
import os
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Union

from localcaption.utils.logger import logger
from localcaption.utils.settings import CaptioningSettings

from .artifacts import ModelLifecycleManager, ProgressCallback
from .backends.base import InferenceBackend
from .cancellation import CancellationToken, check_cancelled, run_in_worker
from .catalog import ModelCatalog
from .engine import InferenceEngine
from .errors import BatchInProgressError, GenerationError, LoadError
from .postprocess import clean_caption, strip_control_tokens
from .preprocess import preprocess_image
from .types import (
    DEFAULT_SYSTEM_PROMPT,
    DEFAULT_TEMPERATURE,
    BatchSummary,
    CaptionJob,
    CaptionOutcome,
    CaptionProgress,
    ModelArtifactState,
    ModelInfo,
    PreprocessResult,
)

PathLike = Union[str, Path]
PreprocessFn = Callable[[str], PreprocessResult]
CaptionProgressCallback = Callable[[CaptionProgress], None]

CAPTION_EXTENSION = ".txt"


def write_caption(path: Path, text: str) -> None:
    """Write caption text atomically, creating the parent directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_text(text, encoding="utf-8")
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class CaptionOrchestrator:
    """Single-image and batch captioning on top of the engine and model store."""

    def __init__(
        self,
        artifacts: ModelLifecycleManager,
        engine: InferenceEngine,
        *,
        preprocess: Optional[PreprocessFn] = None,
        max_image_dimension: int = 2048,
    ) -> None:
        self.artifacts = artifacts
        self.engine = engine
        self._preprocess = preprocess or functools.partial(
            preprocess_image, max_dimension=max_image_dimension
        )
        self._batch_running = False

    @classmethod
    def from_settings(
        cls,
        settings: Optional[CaptioningSettings] = None,
        *,
        catalog: Optional[ModelCatalog] = None,
        backend: Optional[InferenceBackend] = None,
        client_factory: Optional[Callable[[], Any]] = None,
    ) -> "CaptionOrchestrator":
        settings = settings or CaptioningSettings()
        artifacts = ModelLifecycleManager(
            settings.models_path,
            catalog,
            client_factory=client_factory,
            progress_interval=settings.progress_interval_s,
            chunk_size=settings.download_chunk_size,
            timeout_s=settings.http_timeout_s,
        )
        engine = InferenceEngine(
            artifacts,
            backend,
            context_size=settings.context_size,
            gpu_layers=settings.gpu_layers,
            max_tokens=settings.max_tokens,
        )
        return cls(artifacts, engine, max_image_dimension=settings.max_image_dimension)

    @property
    def catalog(self) -> ModelCatalog:
        return self.artifacts.catalog

    @property
    def is_batch_running(self) -> bool:
        return self._batch_running

    def list_variants(self) -> List[ModelInfo]:
        active = self.engine.active_variant
        infos = []
        for variant in self.catalog:
            state = self.artifacts.query_state(variant.key)
            if variant.key == active and state == ModelArtifactState.PRESENT:
                state = ModelArtifactState.LOADED
            infos.append(self.artifacts.info(variant.key, state))
        return infos

    async def download(
        self,
        key: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> bool:
        return await self.artifacts.download(key, on_progress, cancel_token)

    async def load(
        self, key: str, cancel_token: Optional[CancellationToken] = None
    ) -> bool:
        return await self.engine.load(key, cancel_token)

    async def unload(self) -> None:
        await self.engine.unload()

    async def delete(self, key: str) -> None:
        if await self.engine.unload_if_active(key):
            logger.info("Unloaded %s before deleting it", key)
        self.artifacts.delete(key)

    async def close(self) -> None:
        await self.engine.close()

    @staticmethod
    def caption_path_for(
        image_path: PathLike, output_dir: Optional[PathLike] = None
    ) -> Path:
        image = Path(image_path)
        directory = Path(output_dir) if output_dir else image.parent
        return directory / f"{image.stem}{CAPTION_EXTENSION}"

    async def generate_one(
        self,
        image_path: PathLike,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        trigger_word: Optional[str] = None,
        blacklist: Optional[Iterable[str]] = None,
        temperature: float = DEFAULT_TEMPERATURE,
        cancel_token: Optional[CancellationToken] = None,
        *,
        output_path: Optional[PathLike] = None,
    ) -> CaptionOutcome:
        """Caption one image with the loaded model.

        The caption is written to ``output_path`` when one is given.
        """
        path = str(image_path or "")
        if not path.strip():
            return CaptionOutcome.failed(path, "Image path cannot be empty.")
        if not self.engine.is_loaded:
            return CaptionOutcome.failed(path, "No model is loaded. Load a model first.")
        return await self._caption_image(
            path,
            system_prompt,
            trigger_word,
            blacklist,
            temperature,
            output_path=Path(output_path) if output_path else None,
            cancel_token=cancel_token,
        )

    async def _caption_image(
        self,
        image_path: str,
        system_prompt: str,
        trigger_word: Optional[str],
        blacklist: Optional[Iterable[str]],
        temperature: float,
        *,
        output_path: Optional[Path],
        cancel_token: Optional[CancellationToken],
        variant_key: Optional[str] = None,
    ) -> CaptionOutcome:
        try:
            check_cancelled(cancel_token)
            prepared = await asyncio.to_thread(self._preprocess, image_path)
            if not prepared.ok:
                logger.warning("Skipping %s: %s", image_path, prepared.error)
                return CaptionOutcome.failed(
                    image_path, prepared.error or "Failed to preprocess image."
                )

            async with self.engine.exclusive() as session:
                if session is None:
                    return CaptionOutcome.failed(image_path, "Model is not loaded.")
                if variant_key is not None and session.variant.key != variant_key:
                    return CaptionOutcome.failed(
                        image_path,
                        f"Active model changed to {session.variant.key!r}; "
                        f"expected {variant_key!r}.",
                    )
                prompt = session.variant.render_prompt(system_prompt)
                fragments = []
                async for fragment in self.engine.stream(
                    session,
                    prompt,
                    prepared.data,
                    temperature=temperature,
                    stop=session.variant.stop_sequences,
                    cancel_token=cancel_token,
                ):
                    fragments.append(fragment)
                raw = "".join(fragments)
                if not strip_control_tokens(raw):
                    raise GenerationError("Model returned an empty caption")
                caption = clean_caption(
                    raw, trigger_word=trigger_word, blacklist=blacklist
                )
                if output_path is not None:
                    await run_in_worker(write_caption, output_path, caption)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Error generating caption for %s: %s", image_path, exc)
            return CaptionOutcome.failed(image_path, f"Error generating caption: {exc}")

        return CaptionOutcome.succeeded(
            image_path, caption, str(output_path) if output_path is not None else None
        )

    @staticmethod
    def _emit(
        callback: Optional[CaptionProgressCallback], progress: CaptionProgress
    ) -> None:
        if callback is None:
            return
        try:
            callback(progress)
        except Exception as exc:
            logger.warning("Caption progress callback failed: %s", exc)

    async def generate_many(
        self,
        job: CaptionJob,
        on_progress: Optional[CaptionProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[CaptionOutcome]:
        """Caption every image of ``job`` in order and write caption files.

        Existing captions are skipped unless ``job.overwrite`` is set. A load
        failure raises :class:`LoadError` before any image is processed.
        Cancellation propagates out of the loop.
        """
        job.ensure_valid()
        if self._batch_running:
            raise BatchInProgressError("A captioning batch is already running")
        self._batch_running = True
        try:
            variant_key = self.catalog.get(job.variant_key).key
            if not await self.engine.load(variant_key, cancel_token):
                raise LoadError(f"Failed to load model {job.variant_key!r}")

            total = len(job.image_paths)
            outcomes: List[CaptionOutcome] = []
            logger.info("Captioning %d image(s) with %s", total, variant_key)
            for index, image_path in enumerate(job.image_paths):
                check_cancelled(cancel_token)
                self._emit(
                    on_progress,
                    CaptionProgress(
                        index,
                        total,
                        image_path,
                        "processing",
                        outcomes[-1] if outcomes else None,
                    ),
                )
                destination = self.caption_path_for(image_path, job.output_dir)
                if not job.overwrite and destination.exists():
                    outcome = CaptionOutcome.skipped_because(
                        image_path, f"Caption already exists: {destination}"
                    )
                else:
                    outcome = await self._caption_image(
                        image_path,
                        job.system_prompt,
                        job.trigger_word,
                        job.blacklist,
                        job.temperature,
                        output_path=destination,
                        cancel_token=cancel_token,
                        variant_key=variant_key,
                    )
                outcomes.append(outcome)
                self._emit(
                    on_progress,
                    CaptionProgress(index + 1, total, image_path, outcome.status, outcome),
                )

            logger.info("Batch captioning finished: %s", BatchSummary.from_outcomes(outcomes))
            return outcomes
        finally:
            self._batch_running = False
