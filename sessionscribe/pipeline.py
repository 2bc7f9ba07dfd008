"""Processing pipeline for uploaded session recordings.

A run moves one recording through three stages:

* ``TRANSCRIBING`` – fetch the stored audio and transcribe it.
* ``REDACTING`` – replace identifiers with placeholders (pure, in-process).
* ``GENERATING`` – ask the note model for a structured note.

Every transition is written through :class:`SessionNoteStore`, which rejects
backwards moves, and the reporter receives a snapshot of the run after each
one.  A failing stage marks the run ``FAILED`` with the error message and no
later stage runs.  The note is stored in the same transaction that marks the
run ``COMPLETED``, so a failed run never leaves a partial note behind.

The PHI map produced by redaction is returned to the caller in memory and is
neither stored nor logged.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterator, Optional

import structlog

from .deid import PHIRedactor, get_redactor
from .errors import InvalidTransitionError, SessionScribeError
from .models import (
    ClinicalNote,
    DeIdentifiedTranscript,
    PHIMap,
    ProcessingRun,
    RunStatus,
    SessionContext,
)
from .note_generator import ClinicalNoteGenerator
from .observability import (
    PHI_SUBSTITUTIONS_TOTAL,
    PIPELINE_RUNS_TOTAL,
    PIPELINE_STAGE_SECONDS,
    hash_identifier,
)
from .store import SessionNoteStore
from .transcription import TranscriptionAdapter

logger = structlog.get_logger(__name__)

STAGE_SEQUENCE = (
    RunStatus.TRANSCRIBING,
    RunStatus.REDACTING,
    RunStatus.GENERATING,
)

ProgressCallback = Callable[[ProcessingRun], Awaitable[None] | None]


@dataclass
class PipelineResult:
    """Outcome of a run.  ``phi_map`` exists only in memory."""

    run: ProcessingRun
    note: Optional[ClinicalNote] = None
    deidentified: Optional[DeIdentifiedTranscript] = None
    phi_map: PHIMap = field(default_factory=dict, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.run.status is RunStatus.COMPLETED


@contextmanager
def _timed(stage: RunStatus) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        PIPELINE_STAGE_SECONDS.labels(stage=stage.value.lower()).observe(time.perf_counter() - started)


def _context_for(duration_seconds: int, language: Optional[str]) -> SessionContext:
    minutes = round(duration_seconds / 60) if duration_seconds else None
    return SessionContext(duration_minutes=minutes or None, language=language or "en")


class PipelineOrchestrator:
    """Drive a :class:`ProcessingRun` through transcription, redaction and generation."""

    def __init__(
        self,
        store: SessionNoteStore,
        transcriber: TranscriptionAdapter,
        generator: ClinicalNoteGenerator,
        *,
        redactor: Optional[PHIRedactor] = None,
        region: str = "ng",
    ) -> None:
        self._store = store
        self._transcriber = transcriber
        self._generator = generator
        self._redactor = redactor or get_redactor(region)

    async def process(
        self,
        recording_id: str,
        *,
        context: Optional[SessionContext] = None,
        reporter: Optional[ProgressCallback] = None,
    ) -> PipelineResult:
        """Run the pipeline for ``recording_id``.

        Raises ``LookupError`` for an unknown recording and
        :class:`RunInProgressError` when a run is already in flight.  Stage
        failures do not raise; they are reported on the returned run.
        """

        recording = await asyncio.to_thread(self._store.get_recording, recording_id)
        if recording is None:
            raise LookupError(f"Unknown recording {recording_id}")
        run = await asyncio.to_thread(self._store.create_run, recording_id)
        log = logger.bind(run=run.id, recording=hash_identifier(recording_id))
        log.info("pipeline.run_started")

        async def emit(current: ProcessingRun) -> None:
            if reporter is None:
                return
            try:
                maybe_awaitable = reporter(current)
                if asyncio.iscoroutine(maybe_awaitable):
                    await maybe_awaitable
            except Exception:  # pragma: no cover - reporter errors never fail the run
                log.exception("pipeline.reporter_failure")

        async def advance(status: RunStatus) -> ProcessingRun:
            current = await asyncio.to_thread(self._store.update_run_status, run.id, status)
            await emit(current)
            return current

        result = PipelineResult(run=run)
        await emit(run)
        stage = RunStatus.PENDING
        try:
            stage = RunStatus.TRANSCRIBING
            result.run = await advance(stage)
            with _timed(stage):
                transcript = await asyncio.to_thread(
                    self._transcriber.transcribe,
                    recording,
                    context.language if context else None,
                )
                await asyncio.to_thread(self._store.upsert_transcript, transcript)

            stage = RunStatus.REDACTING
            result.run = await advance(stage)
            with _timed(stage):
                deidentified, phi_map = self._redactor.deidentify(transcript.raw_text)
            for category, count in deidentified.category_counts.items():
                PHI_SUBSTITUTIONS_TOTAL.labels(category=category.value).inc(count)
            result.deidentified = deidentified
            result.phi_map = phi_map
            log.info("pipeline.redacted", substitutions=deidentified.substitutions)

            stage = RunStatus.GENERATING
            result.run = await advance(stage)
            session_context = context or _context_for(
                recording.duration_seconds, transcript.detected_language or transcript.language_hint
            )
            with _timed(stage):
                note = await asyncio.to_thread(self._generator.generate, deidentified.text, session_context)

            result.run = await asyncio.to_thread(
                self._store.complete_run,
                run.id,
                note,
                deidentified_text=deidentified.text,
            )
            result.note = note
        except SessionScribeError as exc:
            return await self._fail(result, stage, exc, log, emit)
        except Exception as exc:
            log.exception("pipeline.unexpected_error", stage=stage.value)
            return await self._fail(result, stage, exc, log, emit)

        PIPELINE_RUNS_TOTAL.labels(outcome="completed").inc()
        log.info("pipeline.run_completed")
        await emit(result.run)
        return result

    async def _fail(self, result, stage, exc, log, emit) -> PipelineResult:
        message = str(exc) or type(exc).__name__
        log.warning("pipeline.run_failed", stage=stage.value, error=type(exc).__name__)
        try:
            result.run = await asyncio.to_thread(
                self._store.update_run_status, result.run.id, RunStatus.FAILED, message
            )
        except InvalidTransitionError:
            # Already terminal, e.g. expired as abandoned by a newer run.
            result.run = await asyncio.to_thread(self._store.get_run, result.run.id) or result.run
        result.note = None
        PIPELINE_RUNS_TOTAL.labels(outcome="failed").inc()
        await emit(result.run)
        return result


__all__ = ["PipelineOrchestrator", "PipelineResult", "ProgressCallback", "STAGE_SEQUENCE"]
