"""
Command safety machine.

    not dangerous -> execute
    dangerous     -> pending confirmation -> confirmed -> execute
                                          -> expired   -> abort
                                          -> denied    -> abort

At most one confirmation is outstanding. The wait races the decision
against the deadline with first_of(); whichever loses is cancelled, and the
request's state can only leave PENDING once.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

from .commands import CommandSpec, render_command, validate_parameters
from .errors import ConfirmationAborted, ConfirmationPending
from .intent import Intent
from .normalization import normalize_text

logger = logging.getLogger(__name__)

DEFAULT_AFFIRMATIVE = ("yes", "confirm", "do it", "yes please", "go ahead")
DEFAULT_NEGATIVE = ("no", "cancel", "stop", "abort", "never mind")

MAX_OUTPUT_CHARS = 2000


class ConfirmationState(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    ABORTED = "aborted"


@dataclass
class ConfirmationRequest:
    command: CommandSpec
    parameters: Dict[str, str]
    rendered: str
    deadline: float
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    state: ConfirmationState = ConfirmationState.PENDING
    decided_by: Optional[str] = None

    @property
    def command_id(self) -> str:
        return self.command.id

    @property
    def is_pending(self) -> bool:
        return self.state is ConfirmationState.PENDING

    def transition(self, new_state: ConfirmationState, source: Optional[str] = None) -> bool:
        """Leave PENDING exactly once. Later calls are no-ops returning False."""
        if new_state is ConfirmationState.PENDING:
            raise ValueError("cannot transition back to pending")
        if self.state is not ConfirmationState.PENDING:
            return False
        self.state = new_state
        self.decided_by = source
        logger.info("confirmation %s (%s): %s by %s",
                    self.request_id, self.command_id, new_state.value, source)
        return True


@dataclass
class RunResult:
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


@dataclass
class ExecutionOutcome:
    command_id: str
    rendered: str
    dry_run: bool = False
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.dry_run or self.exit_code == 0

    @property
    def summary(self) -> str:
        if self.dry_run:
            return f"Dry run: {self.rendered}"
        if self.timed_out:
            return f"{self.command_id} timed out"
        if self.exit_code == 0:
            return f"Done: {self.command_id}"
        detail = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else ""
        return f"{self.command_id} failed (exit {self.exit_code})" + (f": {detail}" if detail else "")


async def first_of(*aws: Awaitable[Any]) -> Tuple[int, Any]:
    """
    Wait for the first of several awaitables.

    Returns (index, result) of the winner; every other branch is cancelled
    and awaited before returning. If several finish together the lowest
    index wins.
    """
    tasks = [asyncio.ensure_future(a) for a in aws]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        losers = [t for t in tasks if not t.done()]
        for t in losers:
            t.cancel()
        if losers:
            await asyncio.gather(*losers, return_exceptions=True)

    for index, task in enumerate(tasks):
        if task in done:
            return index, task.result()
    raise RuntimeError("first_of: no task finished")


def classify_confirmation(
    text: str,
    affirmative: Iterable[str] = DEFAULT_AFFIRMATIVE,
    negative: Iterable[str] = DEFAULT_NEGATIVE,
) -> Optional[bool]:
    """True for an affirmative phrase, False for a negative one, None otherwise."""
    folded = normalize_text(text)
    if not folded:
        return None
    if folded in {normalize_text(p) for p in negative}:
        return False
    if folded in {normalize_text(p) for p in affirmative}:
        return True
    return None


class CommandRunner:
    """Runs a rendered command line through /bin/sh."""

    def __init__(self, shell: str = "/bin/sh", default_timeout: float = 30.0):
        self.shell = shell
        self.default_timeout = default_timeout

    async def run(self, command: str, timeout: Optional[float] = None) -> RunResult:
        timeout = self.default_timeout if timeout is None else timeout
        logger.info("exec: %s", command)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.shell, "-c", command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to spawn {self.shell}: {e}")
            return RunResult(exit_code=127, stderr=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("exec: killed after %.1fs: %s", timeout, command)
            return RunResult(exit_code=None, timed_out=True)

        result = RunResult(
            exit_code=proc.returncode,
            stdout=stdout.decode(errors="replace")[-MAX_OUTPUT_CHARS:],
            stderr=stderr.decode(errors="replace")[-MAX_OUTPUT_CHARS:],
        )
        if result.exit_code != 0:
            logger.warning("exec: exit %s: %s", result.exit_code, result.stderr.strip())
        return result


class CommandSafety:
    """
    Gate between a matched intent and process execution.

    ``clock`` returns monotonic seconds and is injectable for tests. Dry run
    reports the rendered command and never reaches the runner.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        confirmation_timeout_seconds: float = 10.0,
        dry_run: bool = False,
        command_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner or CommandRunner()
        self.confirmation_timeout_seconds = float(confirmation_timeout_seconds)
        self.dry_run = dry_run
        self.command_timeout_seconds = command_timeout_seconds
        self._clock = clock
        self._pending: Optional[ConfirmationRequest] = None
        self._decision: Optional["asyncio.Future[ConfirmationState]"] = None

    @property
    def pending(self) -> Optional[ConfirmationRequest]:
        return self._pending

    @property
    def has_pending(self) -> bool:
        return self._pending is not None and self._pending.is_pending

    async def handle(self, intent: Intent) -> ExecutionOutcome:
        """Validate, render and run a non-dangerous command."""
        command = self._command_of(intent)
        if command.dangerous:
            raise ValueError(f"{command.id} needs confirmation")
        rendered = render_command(command, intent.extracted_parameters)
        return await self._execute(command, rendered)

    def request_confirmation(self, intent: Intent) -> ConfirmationRequest:
        """
        Open a confirmation for a dangerous command.

        Parameters are validated first so a malformed request never becomes
        pending. Raises ConfirmationPending while another request is open.
        """
        command = self._command_of(intent)
        if self.has_pending:
            logger.warning("rejecting %s: %s is awaiting confirmation",
                           command.id, self._pending.command_id)
            raise ConfirmationPending(f"{self._pending.command_id} is awaiting confirmation")

        params = validate_parameters(command, intent.extracted_parameters)
        rendered = render_command(command, params)
        request = ConfirmationRequest(
            command=command,
            parameters=params,
            rendered=rendered,
            deadline=self._clock() + self.confirmation_timeout_seconds,
        )
        self._decision = asyncio.get_running_loop().create_future()
        self._pending = request
        logger.info("confirmation %s opened for %s (%.1fs)",
                    request.request_id, command.id, self.confirmation_timeout_seconds)
        return request

    async def await_decision(self, request: ConfirmationRequest) -> ExecutionOutcome:
        """
        Wait for resolve() or the deadline, whichever comes first.

        Executes on confirmation; raises ConfirmationAborted when the request
        expires or is denied.
        """
        if request.is_pending:
            if request is not self._pending or self._decision is None:
                raise ValueError(f"confirmation {request.request_id} is not the pending request")
            decision = self._decision
            try:
                remaining = max(0.0, request.deadline - self._clock())
                index, _ = await first_of(asyncio.shield(decision), asyncio.sleep(remaining))
                if index == 1:
                    request.transition(ConfirmationState.EXPIRED, "deadline")
            finally:
                self._clear(request)
                if not decision.done():
                    decision.set_result(request.state)
        else:
            self._clear(request)

        if request.state is ConfirmationState.CONFIRMED:
            return await self._execute(request.command, request.rendered)
        if request.state is ConfirmationState.EXPIRED:
            raise ConfirmationAborted(f"No confirmation, {_spoken(request.command_id)} cancelled.")
        raise ConfirmationAborted(f"Cancelled {_spoken(request.command_id)}.")

    def resolve(self, affirmative: bool, source: str = "voice") -> Optional[ConfirmationState]:
        """
        Decide the outstanding request. A decision at or after the deadline
        expires it instead. Returns the resulting state, or None if nothing
        was pending.
        """
        request = self._pending
        if request is None:
            return None
        if self._clock() >= request.deadline:
            request.transition(ConfirmationState.EXPIRED, "deadline")
        elif affirmative:
            request.transition(ConfirmationState.CONFIRMED, source)
        else:
            request.transition(ConfirmationState.ABORTED, source)
        self._wake_waiter(request)
        return request.state

    def cancel_pending(self, reason: str = "cancelled") -> bool:
        request = self._pending
        if request is None:
            return False
        changed = request.transition(ConfirmationState.ABORTED, reason)
        self._wake_waiter(request)
        self._clear(request)
        return changed

    def _wake_waiter(self, request: ConfirmationRequest) -> None:
        if self._decision is not None and not self._decision.done():
            self._decision.set_result(request.state)

    def _clear(self, request: ConfirmationRequest) -> None:
        if self._pending is request:
            self._pending = None
            self._decision = None

    @staticmethod
    def _command_of(intent: Intent) -> CommandSpec:
        if intent.matched_command is None:
            raise ValueError("intent has no matched command")
        return intent.matched_command

    async def _execute(self, command: CommandSpec, rendered: str) -> ExecutionOutcome:
        if self.dry_run:
            logger.info("dry run: %s -> %s", command.id, rendered)
            return ExecutionOutcome(command_id=command.id, rendered=rendered, dry_run=True)

        result = await self.runner.run(rendered, self.command_timeout_seconds)
        return ExecutionOutcome(
            command_id=command.id,
            rendered=rendered,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            timed_out=result.timed_out,
        )


def _spoken(command_id: str) -> str:
    return command_id.replace("_", " ")
