from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from datetime import datetime, tzinfo
from typing import Any, Awaitable

from assessment_session.core.clock import Clock, epoch_ms, utc_now
from assessment_session.core.config import settings
from assessment_session.core.errors import (
    ApplicationNotFoundError,
    AssessmentError,
    AssessmentValidationError,
    AuthError,
    NetworkError,
    SessionUnavailableError,
)
from assessment_session.core.kv_store import KeyValueStore
from assessment_session.schemas.application import (
    Application,
    DashboardEntry,
    DashboardOverview,
    DashboardResponse,
    WidgetResult,
)
from assessment_session.schemas.quiz import Question
from assessment_session.schemas.session import SessionResult, SessionState, SessionView, SubmitTrigger
from assessment_session.services.answer_store import AnswerStore, read_checkpoint
from assessment_session.services.countdown import CountdownCoordinator, SignalKind, TimerSignal
from assessment_session.services.events import (
    AnswerSelected,
    ApplicationsLoaded,
    CheckpointTick,
    QuestionNavigated,
    SessionClosed,
    SessionEvent,
    SessionOpened,
    SubmissionFinished,
    SubmitRequested,
    TimerTick,
)
from assessment_session.services.reconciler import ResultReconciler
from assessment_session.services.recruitment_api import RecruitmentApiClient, upcoming_interviews
from assessment_session.services.scheduler import (
    Availability,
    assessment_tz,
    availability_label,
    classify,
    format_remaining,
    format_start,
    is_urgent,
    result_label,
    window_for,
)
from assessment_session.services.submission import SubmissionController, SubmissionPhase

log = logging.getLogger(__name__)

WARNING_MESSAGE = "Only 1 minute remaining!"
EXPIRED_MESSAGE = "Time expired! We will auto-submit the questions you have attempted."
EXPIRED_BANNER = "Your test time has ended. We have auto-submitted the questions you attempted."
RESTORED_MESSAGE = "Restored your previous progress!"
LOAD_FAILED_MESSAGE = "Failed to load test questions. Please try again."
NO_QUESTIONS_MESSAGE = "No questions are available for this test yet."
SUBMIT_FAILED_MESSAGE = "Failed to submit test results. Please try again."
AUTO_SUBMIT_FAILED_MESSAGE = "Failed to auto-submit test results. Please try again."
AUTH_FAILED_MESSAGE = "Your login has expired. Please log in again."

DIRECTIONS = ("next", "previous")

_checkpoint_generations = itertools.count(1)


def unanswered_note(total: int, answered: int) -> str | None:
    missing = int(total) - int(answered)
    if missing <= 0:
        return None
    noun = "question was" if missing == 1 else "questions were"
    return f"Note: {missing} {noun} not answered due to time constraints."


class AssessmentSession:
    """One open test: questions, answers and what the candidate is shown."""

    def __init__(self, application: Application, store: KeyValueStore, *, max_age_ms: int | None = None):
        self.application = application
        self.state = SessionState.not_open
        self.questions: list[Question] = []
        self.answers = AnswerStore(store, application.id, state=lambda: self.state, max_age_ms=max_age_ms)
        self.message: str | None = None
        self.banner: str | None = None
        self.warning_issued = False
        self.time_expired = False
        self.result: SessionResult | None = None
        self.checkpoint_generation = next(_checkpoint_generations)
        self.checkpoint_task: asyncio.Task | None = None

    @property
    def application_id(self) -> int:
        return self.application.id

    def stop_checkpoints(self) -> None:
        task, self.checkpoint_task = self.checkpoint_task, None
        # New generation so an already queued tick is ignored.
        self.checkpoint_generation = next(_checkpoint_generations)
        if task is not None and not task.done():
            task.cancel()


class DashboardRuntime:
    """Everything one candidate sees, driven through a single event queue.

    Timer tasks, checkpoint tasks and network completions only ``post`` events.
    ``flush`` applies them in order with one clock sample per pass, so a timer
    expiry and a manual submit that land together are decided against the
    same instant and only one of them sends a request.
    """

    def __init__(
        self,
        api: RecruitmentApiClient,
        store: KeyValueStore,
        *,
        clock: Clock = utc_now,
        tz: tzinfo | None = None,
        autostart: bool = True,
        tick_interval: float | None = None,
        checkpoint_interval: float | None = None,
        max_age_ms: int | None = None,
    ):
        self.api = api
        self.store = store
        self.clock = clock
        self.tz = tz or assessment_tz()
        self.autostart = autostart
        self.checkpoint_interval = float(
            checkpoint_interval if checkpoint_interval is not None else settings.checkpoint_interval_seconds
        )
        self.max_age_ms = max_age_ms
        self.applications: dict[int, Application] = {}
        self.loaded = False
        self.session: AssessmentSession | None = None
        self.coordinator = CountdownCoordinator(
            emit=self._on_timer_tick,
            tz=self.tz,
            interval=tick_interval,
            autostart=autostart,
        )
        self.submissions = SubmissionController(api, store, clock=clock)
        self.reconciler = ResultReconciler(api, store, clock=clock)
        self._queue: deque[SessionEvent] = deque()
        self._flushing = False
        self._closed = False
        self._watchers: dict[int, asyncio.Task] = {}

    # -- queue --------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def post(self, event: SessionEvent) -> None:
        if self._closed:
            log.debug("dropping %s after close", type(event).__name__)
            return
        self._queue.append(event)

    def flush(self, now: datetime | None = None) -> None:
        """Apply queued events. Events posted while handling run in a later pass."""

        if self._flushing:
            return
        self._flushing = True
        try:
            while self._queue and not self._closed:
                pass_now = now or self.clock()
                now = None
                batch = list(self._queue)
                self._queue.clear()
                for event in batch:
                    if self._closed:
                        break
                    try:
                        self._handle(event, pass_now)
                    except AssessmentError as e:
                        log.warning("event %s rejected: %s", type(event).__name__, e.message)
                    except Exception:
                        log.exception("event %s failed", type(event).__name__)
        finally:
            self._flushing = False

    def _on_timer_tick(self, tick: TimerTick) -> None:
        self.post(tick)
        self.flush()

    def evaluate(self, now: datetime | None = None) -> datetime:
        """Tick every timer against one clock sample and return that sample."""

        now = now or self.clock()
        for timer in list(self.coordinator.dashboard_timers.values()):
            if not timer.stopped:
                self.post(TimerTick(timer.application_id, timer.role, timer.generation))
        timer = self.coordinator.session_timer
        if timer is not None and not timer.stopped:
            self.post(TimerTick(timer.application_id, timer.role, timer.generation))
        self.flush(now)
        return now

    def _handle(self, event: SessionEvent, now: datetime) -> None:
        if isinstance(event, TimerTick):
            self._apply_signals(
                self.coordinator.tick(event.application_id, event.role, event.generation, now),
                now,
            )
        elif isinstance(event, ApplicationsLoaded):
            self._on_applications_loaded(event, now)
        elif isinstance(event, SessionOpened):
            self._on_session_opened(event, now)
        elif isinstance(event, AnswerSelected):
            session = self._session_for(event.application_id)
            if session is not None:
                session.answers.record_answer(event.question_id, event.option_index)
        elif isinstance(event, QuestionNavigated):
            session = self._session_for(event.application_id)
            if session is not None:
                if event.direction == "next":
                    session.answers.next_question()
                else:
                    session.answers.previous_question()
        elif isinstance(event, CheckpointTick):
            session = self._session_for(event.application_id)
            if session is not None and session.checkpoint_generation == event.generation:
                session.answers.save_checkpoint(epoch_ms(now))
        elif isinstance(event, SubmitRequested):
            self._on_submit_requested(event, now)
        elif isinstance(event, SubmissionFinished):
            self._on_submission_finished(event)
        elif isinstance(event, SessionClosed):
            session = self._session_for(event.application_id)
            if session is not None:
                self._close_session(session, now)
        else:
            log.warning("unhandled event %r", event)

    # -- handlers -----------------------------------------------------------

    def _session_for(self, application_id: int) -> AssessmentSession | None:
        session = self.session
        if session is None or session.application_id != int(application_id):
            return None
        return session

    def _on_applications_loaded(self, event: ApplicationsLoaded, now: datetime) -> None:
        merged: dict[int, Application] = {}
        for app in event.applications:
            local = self.applications.get(app.id)
            if local is not None and (local.completed or self.submissions.phase(app.id) != SubmissionPhase.idle):
                # The listing can lag behind a submission this runtime already made.
                if app.completed and not local.completed:
                    local = app
                merged[app.id] = local
            else:
                merged[app.id] = app
        self.applications = merged

        session = self.session
        if session is not None and session.application_id in merged:
            session.application = merged[session.application_id]
            if session.application.completed and session.state != SessionState.submitted:
                self._completed_elsewhere(session)

        self._apply_signals(self.coordinator.sync(list(merged.values()), now), now)

    def _completed_elsewhere(self, session: AssessmentSession) -> None:
        # Submitted from another tab or device; the listing is authoritative.
        log.info("open test completed elsewhere application_id=%s", session.application_id)
        session.stop_checkpoints()
        session.state = SessionState.submitted
        session.message = None
        session.result = self._result_for(session.application)
        session.answers.clear()

    def _on_session_opened(self, event: SessionOpened, now: datetime) -> None:
        app = self.applications.get(event.application_id)
        if app is None:
            return
        current = self.session
        if current is not None and current.application_id != app.id:
            self._close_session(current, now)

        session = AssessmentSession(app, self.store, max_age_ms=self.max_age_ms)
        self.session = session

        if app.completed:
            session.state = SessionState.submitted
            session.result = self._result_for(app)
            return
        if self.submissions.phase(app.id) != SubmissionPhase.idle:
            session.state = SessionState.submitting
            return
        if event.load_error is not None:
            session.state = SessionState.error
            session.message = event.load_error
            return

        session.questions = list(event.questions)
        session.answers.load_questions(session.questions)
        session.state = SessionState.active
        if session.answers.recover_checkpoint(epoch_ms(now)) is not None:
            session.message = RESTORED_MESSAGE
        self._start_checkpoints(session)
        self._apply_signals(self.coordinator.enter_session(app, now), now)

    def _close_session(self, session: AssessmentSession, now: datetime) -> None:
        if session.state == SessionState.active:
            session.answers.save_checkpoint(epoch_ms(now))
        session.stop_checkpoints()
        self.session = None
        app = self.applications.get(session.application_id, session.application)
        self._apply_signals(self.coordinator.leave_session(app, now), now)

    def _apply_signals(self, signals: list[TimerSignal], now: datetime) -> None:
        for signal in signals:
            if signal.kind == SignalKind.warning:
                session = self._session_for(signal.application_id)
                if session is not None:
                    session.warning_issued = True
                    session.message = WARNING_MESSAGE
            elif signal.kind == SignalKind.expired:
                self._on_expired(signal.application_id, now)

    def _on_expired(self, application_id: int, now: datetime) -> None:
        log.info("assessment window closed application_id=%s", application_id)
        session = self._session_for(application_id)
        if session is not None:
            session.time_expired = True
            session.banner = EXPIRED_BANNER
            session.message = EXPIRED_MESSAGE
            session.stop_checkpoints()
            if session.state == SessionState.active:
                session.state = SessionState.time_expired
        self._start_submission(application_id, SubmitTrigger.expiry)

    def _on_submit_requested(self, event: SubmitRequested, now: datetime) -> None:
        session = self._session_for(event.application_id)
        if event.trigger == SubmitTrigger.manual:
            if session is None or session.state not in (SessionState.active, SessionState.time_expired):
                return
        self._start_submission(event.application_id, event.trigger)

    def _start_submission(self, application_id: int, trigger: SubmitTrigger) -> None:
        app = self.applications.get(int(application_id))
        if app is None or app.completed:
            return

        session = self._session_for(application_id)
        if session is not None and session.questions:
            answers = dict(session.answers.answers)
            total = len(session.questions)
        else:
            # Nobody has this test open; send whatever was checkpointed.
            cp = read_checkpoint(self.store, app.id)
            answers = dict(cp.answers) if cp is not None else {}
            total = 0

        task = self.submissions.submit(app, answers, total, trigger)
        if task is None:
            return
        if session is not None:
            session.stop_checkpoints()
            if trigger == SubmitTrigger.manual:
                session.state = SessionState.submitting
                session.message = None
        log.info(
            "submission started application_id=%s trigger=%s answered=%s", app.id, trigger.value, len(answers)
        )
        self._watchers[app.id] = asyncio.get_running_loop().create_task(self._await_submission(app.id, trigger, task))

    async def _await_submission(self, application_id: int, trigger: SubmitTrigger, task: asyncio.Task) -> None:
        outcome = await task
        error = None
        if outcome.error is not None:
            error = outcome.error.error_code
        self.post(SubmissionFinished(application_id, trigger, ok=outcome.ok, error=error))
        self.flush()

    def _on_submission_finished(self, event: SubmissionFinished) -> None:
        app = self.applications.get(event.application_id)
        session = self._session_for(event.application_id)
        if event.ok:
            self.coordinator.complete(event.application_id)
            if session is not None and app is not None:
                session.state = SessionState.submitted
                session.result = self._result_for(app)
                session.message = None
            return

        if session is None:
            return
        if event.error == AuthError.error_code:
            session.message = AUTH_FAILED_MESSAGE
        elif event.trigger == SubmitTrigger.expiry:
            session.message = AUTO_SUBMIT_FAILED_MESSAGE
        else:
            session.message = SUBMIT_FAILED_MESSAGE
        if session.state == SessionState.submitting:
            session.state = SessionState.time_expired if session.time_expired else SessionState.active
            if session.state == SessionState.active:
                self._start_checkpoints(session)

    def _result_for(self, app: Application) -> SessionResult | None:
        total = int(app.total_questions or 0)
        if total < 1 or app.score is None:
            return None
        answered = int(app.answered_questions or 0)
        passed = app.passed
        if passed is None:
            threshold = (
                app.scheduled_assessment.pass_percentage
                if app.scheduled_assessment is not None
                else settings.default_pass_percentage
            )
            passed = app.score >= threshold
        return SessionResult(
            score=app.score,
            passed=passed,
            total_questions=total,
            answered_questions=answered,
            unanswered_note=unanswered_note(total, answered),
        )

    # -- checkpoint timer ---------------------------------------------------

    def _start_checkpoints(self, session: AssessmentSession) -> None:
        if not self.autostart or self.checkpoint_interval <= 0:
            return
        session.stop_checkpoints()
        session.checkpoint_task = asyncio.get_running_loop().create_task(
            self._checkpoint_loop(session.application_id, session.checkpoint_generation)
        )

    async def _checkpoint_loop(self, application_id: int, generation: int) -> None:
        while not self._closed:
            await asyncio.sleep(self.checkpoint_interval)
            self.post(CheckpointTick(application_id, generation))
            self.flush()

    # -- operations ---------------------------------------------------------

    def _application(self, application_id: int) -> Application:
        app = self.applications.get(int(application_id))
        if app is None:
            raise ApplicationNotFoundError(f"application {application_id} not found")
        return app

    def _require_session(self, application_id: int) -> AssessmentSession:
        session = self._session_for(application_id)
        if session is None:
            raise SessionUnavailableError(f"no open session for application {application_id}")
        return session

    async def refresh(self) -> list[Application]:
        applications = await self.api.list_applications()
        self.post(ApplicationsLoaded(applications))
        self.flush()
        self.loaded = True
        session = self.session
        if session is not None and session.application.completed and session.result is None:
            await self.reconciler.reconcile(session.application)
            session.result = self._result_for(session.application)
        return list(self.applications.values())

    async def _ensure_loaded(self) -> None:
        if not self.loaded:
            await self.refresh()

    async def dashboard(self, *, refresh: bool = False, now: datetime | None = None) -> DashboardResponse:
        if refresh or not self.loaded:
            await self.refresh()
        now = self.evaluate(now)
        entries = [self._entry(app, now) for app in self.applications.values()]
        return DashboardResponse(now=now, applications=entries)

    def _entry(self, app: Application, now: datetime) -> DashboardEntry:
        availability = classify(now, app, self.tz)
        window = window_for(app, self.tz)
        remaining = self.coordinator.remaining(app.id) if availability == Availability.open else None
        sa = app.scheduled_assessment
        return DashboardEntry(
            application_id=app.id,
            title=app.title,
            company=app.company,
            status=app.status,
            availability=availability.value,
            label=availability_label(availability, window),
            quiz_title=sa.title if sa is not None else None,
            window_start=window.start if window is not None else None,
            window_end=window.end if window is not None else None,
            remaining_seconds=remaining,
            remaining_label=format_remaining(remaining),
            urgent=is_urgent(remaining),
            completed=app.completed,
            score=app.score,
            passed=app.passed,
            result_label=result_label(app),
        )

    async def open_session(self, application_id: int) -> SessionView:
        await self._ensure_loaded()
        app = self._application(application_id)
        now = self.evaluate()

        current = self._session_for(app.id)
        if current is not None and current.state != SessionState.error:
            return self.session_view(app.id, now=now)

        if app.completed:
            await self.reconciler.reconcile(app)
            self.post(SessionOpened(app.id))
            self.flush(now)
            return self.session_view(app.id, now=now)

        availability = classify(now, app, self.tz)
        if availability == Availability.inapplicable:
            raise SessionUnavailableError("no assessment is scheduled for this application")
        if availability == Availability.not_yet_open:
            window = window_for(app, self.tz)
            raise SessionUnavailableError(
                f"Test is scheduled for {format_start(window)}. Please wait until the scheduled time."
            )
        if availability == Availability.closed:
            raise SessionUnavailableError("Quiz Closed - Time Expired")

        questions: list[Question] = []
        load_error = None
        try:
            questions = await self.api.fetch_questions(app.scheduled_assessment.quiz_set_id)
            if not questions:
                load_error = NO_QUESTIONS_MESSAGE
        except NetworkError as e:
            log.warning("question load failed application_id=%s err=%s", app.id, e.message)
            load_error = LOAD_FAILED_MESSAGE

        self.post(SessionOpened(app.id, questions, load_error))
        self.flush()
        return self.session_view(app.id)

    def session_view(self, application_id: int, *, now: datetime | None = None) -> SessionView:
        session = self._require_session(application_id)
        if now is None:
            self.evaluate()
        remaining = None
        if session.state in (SessionState.active, SessionState.submitting):
            remaining = self.coordinator.remaining(session.application_id)
        elif session.state == SessionState.time_expired:
            remaining = 0
        app = session.application
        return SessionView(
            application_id=app.id,
            state=session.state,
            title=app.scheduled_assessment.title if app.scheduled_assessment is not None else app.title,
            company=app.company,
            questions=session.questions,
            current_question_index=session.answers.current_question_index,
            answers=dict(session.answers.answers),
            remaining_seconds=remaining,
            remaining_label=format_remaining(remaining),
            urgent=is_urgent(remaining),
            warning_issued=session.warning_issued,
            banner=session.banner,
            message=session.message,
            result=session.result,
        )

    def answer(self, application_id: int, question_id: int, option_index: int) -> SessionView:
        session = self._require_session(application_id)
        session.answers.validate(question_id, option_index)
        self.post(AnswerSelected(session.application_id, int(question_id), int(option_index)))
        self.flush()
        return self.session_view(application_id)

    def navigate(self, application_id: int, direction: str) -> SessionView:
        session = self._require_session(application_id)
        if direction not in DIRECTIONS:
            raise AssessmentValidationError(f"direction must be one of {', '.join(DIRECTIONS)}")
        self.post(QuestionNavigated(session.application_id, direction))
        self.flush()
        return self.session_view(application_id)

    async def submit(self, application_id: int, *, wait: bool = True) -> SessionView:
        session = self._require_session(application_id)
        if session.state not in (SessionState.active, SessionState.time_expired, SessionState.submitting):
            raise SessionUnavailableError(f"cannot submit a session in state {session.state.value}")
        self.post(SubmitRequested(session.application_id, SubmitTrigger.manual))
        self.flush()
        if wait:
            await self.wait_for_submission(application_id)
        return self.session_view(application_id)

    async def wait_for_submission(self, application_id: int) -> None:
        watcher = self._watchers.get(int(application_id))
        if watcher is not None and not watcher.done():
            await asyncio.wait({watcher})

    def leave_session(self, application_id: int) -> None:
        self._require_session(application_id)
        self.post(SessionClosed(int(application_id)))
        self.flush()

    async def results(self, application_id: int) -> SessionResult:
        await self._ensure_loaded()
        app = self._application(application_id)
        if not app.completed:
            raise SessionUnavailableError(f"application {application_id} has no completed test")
        stats = await self.reconciler.reconcile(app)
        score = int(app.score or 0)
        passed = app.passed
        if passed is None:
            threshold = (
                app.scheduled_assessment.pass_percentage
                if app.scheduled_assessment is not None
                else settings.default_pass_percentage
            )
            passed = score >= threshold
        return SessionResult(
            score=score,
            passed=passed,
            total_questions=stats.total_questions,
            answered_questions=stats.answered_questions,
            unanswered_note=unanswered_note(stats.total_questions, stats.answered_questions),
        )

    async def _widget(self, call: Awaitable[Any]) -> WidgetResult:
        try:
            return WidgetResult(ok=True, data=await call)
        except NetworkError as e:
            return WidgetResult(ok=False, error=e.message)

    async def overview(self, *, now: datetime | None = None) -> DashboardOverview:
        now = now or self.clock()

        async def interviews() -> list[dict[str, Any]]:
            return upcoming_interviews(await self.api.scheduled_interviews(), now.astimezone(self.tz))

        counts, upcoming, results = await asyncio.gather(
            self._widget(self.api.application_counts()),
            self._widget(interviews()),
            self._widget(self.api.test_results()),
        )
        return DashboardOverview(counts=counts, upcoming_interviews=upcoming, test_results=results)

    async def close(self) -> None:
        """Stop every timer, checkpoint and submission task owned by this runtime."""

        self._closed = True
        self._queue.clear()
        tasks: list[asyncio.Task] = []
        if self.session is not None:
            if self.session.checkpoint_task is not None:
                tasks.append(self.session.checkpoint_task)
            self.session.stop_checkpoints()
        tasks.extend(t.task for t in self.coordinator.live_timers() if t.task is not None)
        self.coordinator.cancel_all()
        tasks.extend(self.submissions.in_flight())
        self.submissions.cancel_all()
        for watcher in self._watchers.values():
            if not watcher.done():
                watcher.cancel()
                tasks.append(watcher)
        self._watchers.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.api.aclose()
        log.info("dashboard runtime closed")

    def live_tasks(self) -> list[asyncio.Task]:
        tasks = [t.task for t in self.coordinator.live_timers() if t.task is not None]
        if self.session is not None and self.session.checkpoint_task is not None:
            if not self.session.checkpoint_task.done():
                tasks.append(self.session.checkpoint_task)
        tasks.extend(self.submissions.in_flight())
        tasks.extend(w for w in self._watchers.values() if not w.done())
        return tasks
