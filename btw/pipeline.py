"""
Assistant - one transcript in, one routed outcome out.

    pending confirmation -> yes / no (anything else is ignored)
    command              -> execute, or ask for confirmation when dangerous
    missing parameters   -> clarifying message, nothing runs
    general query        -> response router

Session-abort and rejected errors become a notification plus a spoken
message; fatal errors propagate.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Set

from .errors import BtwError, ConfirmationAborted, ConfirmationPending, ErrorCategory
from .intent import Intent, IntentRouter
from .responder import Answer, ResponseRouter
from .safety import (
    DEFAULT_AFFIRMATIVE,
    DEFAULT_NEGATIVE,
    CommandSafety,
    ConfirmationRequest,
    ExecutionOutcome,
    classify_confirmation,
)
from .session import SessionMachine, SessionState

logger = logging.getLogger(__name__)

EXECUTED = "executed"
CONFIRMATION_REQUESTED = "confirmation_requested"
CLARIFY = "clarify"
ANSWERED = "answered"
ABORTED = "aborted"
REJECTED = "rejected"
IGNORED = "ignored"


@dataclass
class TurnOutcome:
    kind: str
    message: str = ""
    intent: Optional[Intent] = None
    execution: Optional[ExecutionOutcome] = None
    answer: Optional[Answer] = None
    request: Optional[ConfirmationRequest] = None


class Assistant:
    def __init__(
        self,
        router: IntentRouter,
        safety: CommandSafety,
        responder: ResponseRouter,
        notifier=None,
        speaker=None,
        session: Optional[SessionMachine] = None,
        affirmative: Sequence[str] = DEFAULT_AFFIRMATIVE,
        negative: Sequence[str] = DEFAULT_NEGATIVE,
        confirm_via_notification: bool = True,
    ):
        self.router = router
        self.safety = safety
        self.responder = responder
        self.notifier = notifier
        self.speaker = speaker
        self.session = session
        self.affirmative = tuple(affirmative)
        self.negative = tuple(negative)
        self.confirm_via_notification = confirm_via_notification
        self._confirmation_task: Optional["asyncio.Task[TurnOutcome]"] = None
        self._tasks: Set[asyncio.Task] = set()

    async def handle_transcript(self, text: str) -> TurnOutcome:
        self._enter(SessionState.ROUTING)
        try:
            if self.safety.has_pending:
                return await self._handle_pending(text)

            intent = self.router.route(text)
            if intent.is_general:
                return await self._answer(intent)
            if intent.missing_parameters:
                return self._clarify(intent)
            if intent.matched_command.dangerous:
                return await self._request_confirmation(intent)
            return await self._execute(intent)

        except BtwError as e:
            if e.category is ErrorCategory.FATAL:
                raise
            return self.report_error(e)

    async def _handle_pending(self, text: str) -> TurnOutcome:
        pending = self.safety.pending
        decision = classify_confirmation(text, self.affirmative, self.negative)
        if decision is None:
            intent = self.router.route(text)
            if intent.is_command and intent.matched_command.dangerous:
                raise ConfirmationPending(f"{pending.command_id} is awaiting confirmation")
            message = f"Waiting for confirmation of {_spoken(pending.command_id)}. Say yes or no."
            logger.info(f"Ignoring {text!r} while {pending.command_id} awaits confirmation")
            self._tell(message)
            return TurnOutcome(IGNORED, message, intent=intent, request=pending)

        self._enter(SessionState.CONFIRMING)
        self.safety.resolve(decision, "voice")
        task = self._confirmation_task
        if task is None:
            return TurnOutcome(IGNORED, "No confirmation in progress")
        return await task

    async def _answer(self, intent: Intent) -> TurnOutcome:
        self._enter(SessionState.ANSWERING)
        answer = await self.responder.answer(intent.raw_text)
        logger.info(f"Answer ({answer.source}): {answer.text}")
        self.responder.deliver(answer)
        return TurnOutcome(ANSWERED, answer.text, intent=intent, answer=answer)

    def _clarify(self, intent: Intent) -> TurnOutcome:
        command = intent.matched_command
        wanted = " and ".join(p.replace("_", " ") for p in intent.missing_parameters)
        message = f"I need the {wanted} to {command.description.lower() or _spoken(command.id)}. Please try again."
        logger.info(f"{command.id}: missing {list(intent.missing_parameters)}")
        self._tell(message)
        return TurnOutcome(CLARIFY, message, intent=intent)

    async def _execute(self, intent: Intent) -> TurnOutcome:
        self._enter(SessionState.EXECUTING)
        execution = await self.safety.handle(intent)
        return self._report_execution(execution, intent)

    async def _request_confirmation(self, intent: Intent) -> TurnOutcome:
        request = self.safety.request_confirmation(intent)
        self._enter(SessionState.CONFIRMING)

        seconds = int(round(self.safety.confirmation_timeout_seconds))
        prompt = f"{intent.matched_command.description or _spoken(request.command_id)}? Say yes or no within {seconds} seconds."
        logger.info(f"Confirmation requested: {request.rendered}")
        self._tell(prompt, urgency="critical", notify=not self._uses_action_prompt)

        self._confirmation_task = asyncio.get_running_loop().create_task(self._watch(request))
        if self._uses_action_prompt:
            self._spawn(self._confirm_via_notification(request, prompt))
        return TurnOutcome(CONFIRMATION_REQUESTED, prompt, intent=intent, request=request)

    @property
    def _uses_action_prompt(self) -> bool:
        return self.confirm_via_notification and self.notifier is not None and self.notifier.enabled

    async def _watch(self, request: ConfirmationRequest) -> TurnOutcome:
        try:
            execution = await self.safety.await_decision(request)
        except ConfirmationAborted as e:
            return self.report_error(e)
        finally:
            if self._confirmation_task is asyncio.current_task():
                self._confirmation_task = None
        return self._report_execution(execution)

    async def _confirm_via_notification(self, request: ConfirmationRequest, prompt: str) -> None:
        timeout_ms = int(self.safety.confirmation_timeout_seconds * 1000)
        choice = await self.notifier.ask_confirmation(prompt, timeout_ms)
        if choice is not None and self.safety.pending is request and request.is_pending:
            self.safety.resolve(choice, "notification")

    def _report_execution(self, execution: ExecutionOutcome, intent: Optional[Intent] = None) -> TurnOutcome:
        message = execution.summary
        if execution.ok:
            logger.info(message)
            self._tell(message, speak=False)
        else:
            logger.warning(message)
            self._tell(message, urgency="critical")
        return TurnOutcome(EXECUTED, message, intent=intent, execution=execution)

    def report_error(self, error: BtwError) -> TurnOutcome:
        kind = REJECTED if error.category is ErrorCategory.REJECTED else ABORTED
        logger.warning(f"{kind}: {type(error).__name__}: {error.message}")
        self._tell(error.user_message, urgency="critical" if kind == REJECTED else "normal")
        return TurnOutcome(kind, error.user_message)

    def _tell(self, message: str, urgency: str = "normal", speak: bool = True, notify: bool = True) -> None:
        """Perceptible signal: notification and, when enabled, speech."""
        if notify and self.notifier is not None:
            self.notifier.notify(message, urgency=urgency)
        if speak and self.speaker is not None:
            self.speaker.speak_background(message)

    def _enter(self, state: SessionState) -> None:
        if self.session is not None and self.session.can_transition(state):
            self.session.transition(state)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_for_confirmation(self) -> Optional[TurnOutcome]:
        """Block until the outstanding confirmation settles (CLI one-shot mode)."""
        task = self._confirmation_task
        if task is None:
            return None
        return await task

    async def shutdown(self) -> None:
        self.safety.cancel_pending("shutdown")
        pending = [t for t in self._tasks if not t.done()]
        if self._confirmation_task is not None:
            pending.append(self._confirmation_task)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def _spoken(command_id: str) -> str:
    return command_id.replace("_", " ")
