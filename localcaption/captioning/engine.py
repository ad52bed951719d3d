from __future__ import annotations

import asyncio
import contextlib
import functools
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

from localcaption.utils.logger import logger

from .artifacts import ModelLifecycleManager
from .backends.base import InferenceBackend
from .cancellation import CancellationToken, check_cancelled, run_in_worker
from .catalog import ModelVariant
from .errors import CaptioningError, GenerationError
from .types import DEFAULT_TEMPERATURE, ModelArtifactState

_EXHAUSTED = object()


def _close_iterator(iterator: Any) -> None:
    close = getattr(iterator, "close", None)
    if callable(close):
        close()


@dataclass
class LoadedSession:
    """Native handles of the active variant. Owned by the engine only."""

    variant: ModelVariant
    weights: Any
    context: Any
    projector: Any


def find_stop(text: str, stops: Iterable[str]) -> Optional[int]:
    """Return the index of the earliest stop sequence in ``text``."""
    positions = [text.find(stop) for stop in stops if stop]
    positions = [pos for pos in positions if pos >= 0]
    return min(positions) if positions else None


class InferenceEngine:
    """Holds at most one loaded session and serializes all access to it.

    ``load``, ``unload`` and generation share one ``asyncio.Lock``. Callers
    that generate take it through :meth:`exclusive` and consume :meth:`stream`
    while holding it.
    """

    def __init__(
        self,
        artifacts: ModelLifecycleManager,
        backend: Optional[InferenceBackend] = None,
        *,
        context_size: int = 4096,
        gpu_layers: int = -1,
        max_tokens: int = 512,
    ) -> None:
        if backend is None:
            from .backends.llama_cpp_backend import LlamaCppBackend

            backend = LlamaCppBackend()
        self.artifacts = artifacts
        self.backend = backend
        self.context_size = int(context_size)
        self.max_tokens = int(max_tokens)
        self._requested_gpu_layers = int(gpu_layers)
        self._lock = asyncio.Lock()
        self._session: Optional[LoadedSession] = None
        self.gpu_available = self._detect_gpu()

    def _detect_gpu(self) -> bool:
        try:
            available = bool(self.backend.supports_gpu_offload())
        except Exception as exc:
            logger.warning("GPU offload check failed, using CPU only: %s", exc)
            return False
        logger.info(
            "GPU offload %s", "available" if available else "not available, using CPU"
        )
        return available

    @property
    def gpu_layers(self) -> int:
        return self._requested_gpu_layers if self.gpu_available else 0

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    @property
    def active_variant(self) -> Optional[str]:
        session = self._session
        return session.variant.key if session is not None else None

    @contextlib.asynccontextmanager
    async def exclusive(self) -> AsyncIterator[Optional[LoadedSession]]:
        async with self._lock:
            yield self._session

    async def load(
        self, key: str, cancel_token: Optional[CancellationToken] = None
    ) -> bool:
        variant = self.artifacts.variant(key)
        async with self._lock:
            current = self._session
            if current is not None and current.variant.key == variant.key:
                return True
            if current is not None:
                logger.info("Unloading %s before loading %s", current.variant.key, variant.key)
                await self._teardown_locked()

            state = self.artifacts.query_state(variant.key)
            if state != ModelArtifactState.PRESENT:
                logger.error("Cannot load %s: model is %s", variant.key, state.value)
                return False

            try:
                self._session = await self._build_session(variant, cancel_token)
            except asyncio.CancelledError:
                logger.info("Loading %s cancelled", variant.key)
                raise
            except Exception as exc:
                logger.error("Failed to load %s: %s", variant.key, exc)
                return False

            logger.info(
                "Loaded %s (gpu_layers=%s, context=%s)",
                variant.display_name,
                self.gpu_layers,
                self.context_size,
            )
            return True

    async def _build_session(
        self, variant: ModelVariant, cancel_token: Optional[CancellationToken]
    ) -> LoadedSession:
        weights_path = variant.weights_path(self.artifacts.models_dir)
        projector_path = variant.projector_path(self.artifacts.models_dir)

        # Callbacks run in reverse: projector, context, then weights.
        with contextlib.ExitStack() as stack:
            check_cancelled(cancel_token)
            weights = await run_in_worker(
                self.backend.load_weights,
                weights_path,
                gpu_layers=self.gpu_layers,
                context_size=self.context_size,
                on_abandon=functools.partial(self._release_quietly, label="weights"),
            )
            stack.callback(self._release_quietly, weights, "weights")

            check_cancelled(cancel_token)
            context = await run_in_worker(
                self.backend.create_context,
                weights,
                context_size=self.context_size,
                on_abandon=functools.partial(self._release_quietly, label="context"),
            )
            stack.callback(self._release_quietly, context, "context")

            check_cancelled(cancel_token)
            projector = await run_in_worker(
                self.backend.load_projector,
                weights,
                context,
                projector_path,
                on_abandon=functools.partial(self._release_quietly, label="projector"),
            )
            stack.callback(self._release_quietly, projector, "projector")

            check_cancelled(cancel_token)
            session = LoadedSession(variant, weights, context, projector)
            stack.pop_all()
        return session

    def _release_quietly(self, handle: Any, label: str) -> None:
        try:
            self.backend.release(handle)
        except Exception as exc:
            logger.warning("Failed to release %s: %s", label, exc)

    def _release_session(self, session: LoadedSession) -> None:
        self._release_quietly(session.projector, "projector")
        self._release_quietly(session.context, "context")
        self._release_quietly(session.weights, "weights")

    async def _teardown_locked(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        await run_in_worker(self._release_session, session)
        logger.info("Unloaded %s", session.variant.key)

    async def unload(self) -> None:
        async with self._lock:
            await self._teardown_locked()

    async def unload_if_active(self, key: str) -> bool:
        """Unload only when ``key`` is the active variant; returns whether it was."""
        variant = self.artifacts.variant(key)
        async with self._lock:
            session = self._session
            if session is None or session.variant.key != variant.key:
                return False
            await self._teardown_locked()
            return True

    async def close(self) -> None:
        await self.unload()

    async def stream(
        self,
        session: Optional[LoadedSession],
        prompt: str,
        image: bytes,
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: Optional[int] = None,
        stop: Optional[Sequence[str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Yield generated text fragments, ending before the first stop sequence.

        Generation ends at a stop sequence, after ``max_tokens`` fragments, or
        when the backend runs out. The caller must hold :meth:`exclusive`.
        """
        if session is None:
            raise GenerationError("No model loaded")
        if not self._lock.locked() or session is not self._session:
            raise GenerationError("Generation requires the active session under exclusive access")

        stops = tuple(stop if stop is not None else session.variant.stop_sequences)
        budget = int(max_tokens) if max_tokens is not None else self.max_tokens
        # Hold back enough text that a stop sequence split across fragments is never emitted.
        holdback = max((len(s) for s in stops), default=1) - 1

        try:
            fragments = await run_in_worker(
                self.backend.generate,
                session.weights,
                session.context,
                session.projector,
                prompt,
                image,
                temperature=temperature,
                max_tokens=budget,
                stop=stops,
                on_abandon=_close_iterator,
            )
        except CaptioningError:
            raise
        except Exception as exc:
            raise GenerationError(f"Failed to start generation: {exc}") from exc

        iterator = iter(fragments)
        text = ""
        emitted = 0
        count = 0
        try:
            while count < budget:
                check_cancelled(cancel_token)
                try:
                    fragment = await run_in_worker(next, iterator, _EXHAUSTED)
                except CaptioningError:
                    raise
                except Exception as exc:
                    raise GenerationError(f"Generation failed: {exc}") from exc
                if fragment is _EXHAUSTED:
                    break
                count += 1
                text += fragment
                cut = find_stop(text, stops)
                if cut is not None:
                    if cut > emitted:
                        yield text[emitted:cut]
                    return
                safe = len(text) - holdback
                if safe > emitted:
                    yield text[emitted:safe]
                    emitted = safe
            if len(text) > emitted:
                yield text[emitted:]
        finally:
            _close_iterator(iterator)
