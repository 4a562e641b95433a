from __future__ import annotations

"""
Recording session lifecycle and chunked transcription.

Design intent:
- One orchestrator instance owns at most one in-progress session (active or paused).
- Buffered audio is re-sent whole on every chunk; a byte marker decides when enough is new.
- Completions are checked against the run generation so results from a stopped run never land.
- Explicit operations raise and also publish on the `error` channel; timer work only logs.
"""

import asyncio
import functools
import logging
import math
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Set, TypeVar

from medscribe.asr.models import TranscriptSegment
from medscribe.asr.transcript_merger import TranscriptMerger, ensure_unique_ids
from medscribe.internal_core.asr.orchestrator import TranscriptionOrchestrator
from medscribe.internal_core.audio_utils import is_silent_region
from medscribe.internal_core.config import ScribeConfig
from medscribe.internal_core.contracts import (
    ClinicalDocumentation,
    PaginationOptions,
    PatientContext,
    Session,
    SessionFilter,
    SessionPage,
    utc_now,
)
from medscribe.internal_core.session_store import SessionNotFoundError, SessionStore
from medscribe.note.documentation import DocumentationGenerator

from . import query
from .capture import AudioCapture, CaptureState
from .events import EventChannel
from .timers import PeriodicTimer

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


class SessionStateError(RuntimeError):
    def __init__(self, session_id: str, status: str, action: str, detail: str = ""):
        message = f"Cannot {action} session {session_id} (status={status})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.session_id = session_id
        self.status = status
        self.action = action


def _reports_errors(func: F) -> F:
    @functools.wraps(func)
    async def wrapper(self: "SessionOrchestrator", *args: Any, **kwargs: Any) -> Any:
        try:
            return await func(self, *args, **kwargs)
        except Exception as exc:
            self._report(exc)
            raise

    return wrapper  # type: ignore[return-value]


def _touch(session: Session) -> None:
    session.updated_at = max(utc_now(), session.created_at)


class SessionOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        capture: AudioCapture,
        transcription: TranscriptionOrchestrator,
        documentation: DocumentationGenerator,
        cfg: ScribeConfig,
        *,
        merger: Optional[TranscriptMerger] = None,
    ) -> None:
        self._store = store
        self._capture = capture
        self._transcription = transcription
        self._documentation = documentation
        self._cfg = cfg
        self._merger = merger or TranscriptMerger()

        self.session_updated: EventChannel[Session] = EventChannel("session_updated")
        self.transcript_segment_added: EventChannel[TranscriptSegment] = EventChannel("transcript_segment_added")
        self.documentation_updated: EventChannel[ClinicalDocumentation] = EventChannel("documentation_updated")
        self.error: EventChannel[Exception] = EventChannel("error", copy_payload=False)
        self.last_error: Optional[Exception] = None

        self._active: Optional[Session] = None
        self._run_generation = 0
        self._marker = 0
        self._chunk_seq = 0
        self._chunk_in_flight_seq: Optional[int] = None
        self._live_running = False
        self._stopping = False
        self._live_tasks: Set[asyncio.Task[None]] = set()

        self._autosave_timer = PeriodicTimer("autosave", cfg.SCRIBE_AUTOSAVE_INTERVAL_SEC, self._autosave)
        self._chunk_timer = PeriodicTimer("chunk", cfg.SCRIBE_CHUNK_INTERVAL_SEC, self._chunk_tick)
        self._unsubscribe_capture = capture.on_state_change(self._on_capture_state)

    # State ------------------------------------------------------------------

    @property
    def active_session_id(self) -> Optional[str]:
        return self._active.id if self._active is not None else None

    def get_active_session(self) -> Optional[Session]:
        return self._active.model_copy(deep=True) if self._active is not None else None

    @property
    def last_transcribed_audio_size(self) -> int:
        return self._marker

    @property
    def run_generation(self) -> int:
        return self._run_generation

    @property
    def chunk_in_flight(self) -> bool:
        return self._chunk_in_flight_seq is not None

    @property
    def live_transcription_active(self) -> bool:
        return self._live_running

    def recording_state(self) -> CaptureState:
        return self._capture.get_state()

    def _report(self, exc: Exception) -> None:
        self.last_error = exc
        self.error.emit(exc)

    def _is_current(self, session_id: str, generation: int) -> bool:
        return (
            self._active is not None
            and self._active.id == session_id
            and self._run_generation == generation
            and not self._stopping
        )

    async def _current_or_raise(self, session_id: str, action: str, allowed: tuple[str, ...]) -> Session:
        session = self._active
        if session is None or session.id != session_id:
            stored = await self._store.get(session_id)
            if stored is None:
                raise SessionNotFoundError(session_id)
            raise SessionStateError(session_id, stored.status, action, "not the in-progress session")
        if session.status not in allowed:
            raise SessionStateError(session_id, session.status, action)
        return session

    def _start_timers(self) -> None:
        self._autosave_timer.start()
        self._chunk_timer.start()

    def _stop_timers(self) -> None:
        self._autosave_timer.stop()
        self._chunk_timer.stop()

    # Lifecycle --------------------------------------------------------------

    @_reports_errors
    async def create_session(self, patient_context: Optional[PatientContext] = None) -> Session:
        session = Session(patient_context=patient_context)
        await self._store.save(session)
        logger.info("session_create session_id=%s", session.id)
        self.session_updated.emit(session)
        return session.model_copy(deep=True)

    @_reports_errors
    async def start_session(self, session_id: str) -> Session:
        current = self._active
        if current is not None and current.id == session_id and current.status == "active":
            logger.info("session_start noop already active session_id=%s", session_id)
            return current.model_copy(deep=True)
        if current is not None and current.id == session_id:
            raise SessionStateError(session_id, current.status, "start", "resume the paused session instead")

        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if current is not None:
            raise SessionStateError(session_id, session.status, "start", f"session {current.id} is still in progress")

        await self._capture.start()
        self._run_generation += 1
        self._marker = 0
        session.status = "active"
        session.metadata.processing_status = "processing"
        _touch(session)
        self._active = session
        try:
            await self._store.save(session)
        except Exception:
            self._active = None
            await self._capture.stop()
            raise

        self._transcription.reset_availability()
        self._live_running = False
        if self._cfg.SCRIBE_REALTIME_TRANSCRIPTION:
            try:
                backend = await self._transcription.start_live(self._on_live_segment)
            except Exception as exc:
                # Live delivery stays off until the next start; chunked transcription still runs.
                logger.warning("session_live unavailable session_id=%s error=%s", session_id, exc)
            else:
                self._live_running = True
                logger.info("session_live started session_id=%s backend=%s", session_id, backend)

        self._start_timers()
        logger.info("session_start session_id=%s generation=%s", session_id, self._run_generation)
        self.session_updated.emit(session)
        return session.model_copy(deep=True)

    @_reports_errors
    async def pause_session(self, session_id: str) -> Session:
        session = await self._current_or_raise(session_id, "pause", ("active",))
        await self._capture.pause()
        self._stop_timers()
        session.status = "paused"
        _touch(session)
        await self._store.save(session)
        logger.info("session_pause session_id=%s", session_id)
        self.session_updated.emit(session)
        return session.model_copy(deep=True)

    @_reports_errors
    async def resume_session(self, session_id: str) -> Session:
        session = await self._current_or_raise(session_id, "resume", ("paused",))
        await self._capture.resume()
        session.status = "active"
        _touch(session)
        await self._store.save(session)
        self._start_timers()
        logger.info("session_resume session_id=%s", session_id)
        self.session_updated.emit(session)
        return session.model_copy(deep=True)

    @_reports_errors
    async def stop_session(self, session_id: str) -> Session:
        session = await self._current_or_raise(session_id, "stop", ("active", "paused"))
        self._stop_timers()
        self._run_generation += 1
        documented = False
        self._stopping = True
        try:
            final_audio = await self._capture.stop()
            if self._live_running:
                self._live_running = False
                await self._transcription.stop_live()

            if not final_audio.is_empty:
                try:
                    result = await self._transcription.transcribe(final_audio)
                except Exception as exc:
                    logger.warning(
                        "session_stop final transcription failed session_id=%s bytes=%s error=%s",
                        session_id,
                        final_audio.size,
                        exc,
                    )
                else:
                    if result.segments:
                        session.transcript = ensure_unique_ids(result.segments)
                        logger.info(
                            "session_stop transcript replaced session_id=%s segments=%s backend=%s",
                            session_id,
                            len(session.transcript),
                            result.backend,
                        )

            if session.transcript:
                try:
                    session.documentation = await self._documentation.generate(session.transcript)
                    documented = True
                except Exception as exc:
                    logger.warning("session_stop documentation failed session_id=%s error=%s", session_id, exc)

            state = self._capture.get_state()
            session.status = "completed"
            session.metadata.duration = max(session.metadata.duration, state.duration)
            session.metadata.processing_status = "completed"
            _touch(session)
            await self._store.save(session)
        finally:
            self._active = None
            self._stopping = False

        logger.info(
            "session_stop session_id=%s segments=%s duration=%.1f",
            session_id,
            len(session.transcript),
            session.metadata.duration,
        )
        self.session_updated.emit(session)
        if documented:
            self.documentation_updated.emit(session.documentation)
        return session.model_copy(deep=True)

    # Stored sessions --------------------------------------------------------

    @_reports_errors
    async def get_session(self, session_id: str) -> Session:
        if self._active is not None and self._active.id == session_id:
            return self._active.model_copy(deep=True)
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    @_reports_errors
    async def update_documentation(self, session_id: str, partial: Mapping[str, Any]) -> ClinicalDocumentation:
        """Overlay `partial` (ClinicalDocumentation fields) on the stored documentation."""
        active = self._active if self._active is not None and self._active.id == session_id else None
        session = active or await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        payload = dict(session.documentation)
        payload.update(partial)
        payload["last_updated"] = utc_now()
        doc = ClinicalDocumentation.model_validate(payload)

        if active is not None:
            active.documentation = doc
            _touch(active)
            await self._store.save(active)
            self.documentation_updated.emit(doc)
        else:
            await self._store.update(session_id, {"documentation": doc})
        return doc.model_copy(deep=True)

    @_reports_errors
    async def finalize_session(self, session_id: str) -> Session:
        if self._active is not None and self._active.id == session_id:
            raise SessionStateError(session_id, self._active.status, "finalize", "stop the session first")
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status == "active":
            raise SessionStateError(session_id, session.status, "finalize", "stop the session first")

        doc = session.documentation.model_copy(update={"is_finalized": True, "last_updated": utc_now()})
        updated = await self._store.update(session_id, {"status": "completed", "documentation": doc})
        logger.info("session_finalize session_id=%s", session_id)
        self.session_updated.emit(updated)
        self.documentation_updated.emit(updated.documentation)
        return updated

    @_reports_errors
    async def delete_session(self, session_id: str) -> None:
        if self._active is not None and self._active.id == session_id:
            raise SessionStateError(session_id, self._active.status, "delete", "session is in progress")
        await self._store.delete(session_id)
        logger.info("session_delete session_id=%s", session_id)

    # Querying ---------------------------------------------------------------

    async def _all_sessions(self) -> List[Session]:
        sessions = await self._store.list_all()
        if self._active is None:
            return sessions
        active = self._active.model_copy(deep=True)
        return [active if s.id == active.id else s for s in sessions]

    @_reports_errors
    async def list_sessions(self, flt: Optional[SessionFilter] = None) -> List[Session]:
        return query.filter_sessions(await self._all_sessions(), flt)

    @_reports_errors
    async def search_sessions(self, text: str, flt: Optional[SessionFilter] = None) -> List[Session]:
        return query.search_sessions(await self.list_sessions(flt), text)

    @_reports_errors
    async def get_sessions_page(self, options: Optional[PaginationOptions] = None) -> SessionPage:
        options = options or PaginationOptions()
        if options.search_query:
            sessions = await self.search_sessions(options.search_query, options.filter)
        else:
            sessions = await self.list_sessions(options.filter)
        return query.paginate(sessions, options)

    @_reports_errors
    async def search_suggestions(self, limit: int = 10) -> List[str]:
        return query.search_suggestions(await self._all_sessions(), limit)

    # Chunked transcription --------------------------------------------------

    def chunk_threshold(self, size: int) -> int:
        # Half-up rounding.
        return max(int(self._cfg.SCRIBE_CHUNK_MIN_BYTES), int(math.floor(size * self._cfg.SCRIBE_CHUNK_FRACTION + 0.5)))

    async def _chunk_tick(self) -> None:
        await self.run_chunk_transcription()

    async def run_chunk_transcription(self) -> int:
        """
        One chunk-timer firing; returns how many new segments landed.

        Below threshold, silent, stale or failed chunks leave the session unchanged.
        """
        session = self._active
        if session is None or session.status != "active":
            return 0
        if self._cfg.SCRIBE_CHUNK_SINGLE_FLIGHT and self.chunk_in_flight:
            logger.info("session_chunk skipped in_flight session_id=%s", session.id)
            return 0

        chunk = self._capture.get_current_buffered_audio()
        size = chunk.size
        new_bytes = size - self._marker
        threshold = self.chunk_threshold(size)
        if size <= 0 or new_bytes < threshold:
            logger.debug("session_chunk below threshold size=%s new=%s threshold=%s", size, new_bytes, threshold)
            return 0

        previous_marker, self._marker = self._marker, size
        if is_silent_region(chunk.data, previous_marker, self._cfg.ASR_SILENCE_RMS):
            logger.info("session_chunk skipped silent session_id=%s new=%s", session.id, new_bytes)
            return 0

        session_id, generation = session.id, self._run_generation
        self._chunk_seq += 1
        seq = self._chunk_seq
        self._chunk_in_flight_seq = seq
        try:
            result = await self._transcription.transcribe(chunk, list(session.transcript))
        except Exception as exc:
            logger.warning(
                "session_chunk transcription failed session_id=%s bytes=%s error=%s", session_id, size, exc
            )
            return 0
        finally:
            if self._chunk_in_flight_seq == seq:
                self._chunk_in_flight_seq = None

        if not self._is_current(session_id, generation):
            logger.info("session_chunk stale result dropped session_id=%s", session_id)
            return 0
        logger.info(
            "session_chunk transcribed session_id=%s bytes=%s new=%s segments=%s backend=%s",
            session_id,
            size,
            new_bytes,
            len(result.segments),
            result.backend,
        )
        added = await self._append_segments(self._active, generation, result.segments)
        return len(added)

    async def _append_segments(
        self,
        session: Session,
        generation: int,
        segments: List[TranscriptSegment],
    ) -> List[TranscriptSegment]:
        merged = self._merger.merge(session.transcript, segments)
        if merged.duplicates_dropped:
            logger.debug("session_merge duplicates=%s session_id=%s", merged.duplicates_dropped, session.id)
        if not merged.new_segments:
            return []

        session.transcript = merged.all_segments
        _touch(session)
        try:
            await self._store.save(session)
        except Exception:
            logger.exception("session_persist failed session_id=%s", session.id)

        for segment in merged.new_segments:
            self.transcript_segment_added.emit(segment)
        self.session_updated.emit(session)

        if self._cfg.SCRIBE_REALTIME_DOCUMENTATION:
            await self._update_documentation_incrementally(session, generation, merged.new_segments)
        return merged.new_segments

    async def _update_documentation_incrementally(
        self,
        session: Session,
        generation: int,
        new_segments: List[TranscriptSegment],
    ) -> None:
        try:
            doc = await self._documentation.update(session.documentation, new_segments)
        except Exception as exc:
            logger.warning("session_documentation update failed session_id=%s error=%s", session.id, exc)
            return
        if not self._is_current(session.id, generation):
            return
        session.documentation = doc
        _touch(session)
        self.documentation_updated.emit(doc)

    # Live transcription -----------------------------------------------------

    def _on_live_segment(self, segment: TranscriptSegment) -> None:
        session = self._active
        if session is None or self._stopping or session.status != "active":
            return
        task = asyncio.get_running_loop().create_task(
            self._handle_live_segment(session.id, self._run_generation, segment)
        )
        self._live_tasks.add(task)
        task.add_done_callback(self._live_tasks.discard)

    async def _handle_live_segment(self, session_id: str, generation: int, segment: TranscriptSegment) -> None:
        if not self._is_current(session_id, generation):
            return
        try:
            await self._append_segments(self._active, generation, [segment])
        except Exception:
            logger.exception("session_live segment failed session_id=%s", session_id)

    # Timers and capture -----------------------------------------------------

    async def _autosave(self) -> None:
        session = self._active
        if session is None:
            return
        try:
            await self._store.save(session)
        except Exception as exc:
            logger.warning("session_autosave failed session_id=%s error=%s", session.id, exc)

    def _on_capture_state(self, state: CaptureState) -> None:
        session = self._active
        if session is None or state.duration <= session.metadata.duration:
            return
        session.metadata.duration = state.duration
        _touch(session)
        self.session_updated.emit(session)

    async def dispose(self) -> None:
        if self._active is not None:
            try:
                await self.stop_session(self._active.id)
            except Exception:
                logger.exception("session_dispose stop failed")
        self._stop_timers()
        await self._chunk_timer.drain()
        await self._autosave_timer.drain()
        for task in list(self._live_tasks):
            task.cancel()
        if self._live_tasks:
            await asyncio.gather(*list(self._live_tasks), return_exceptions=True)
        self._unsubscribe_capture()
        for channel in (self.session_updated, self.transcript_segment_added, self.documentation_updated, self.error):
            channel.clear()
        await self._capture.dispose()
        await self._transcription.dispose()
