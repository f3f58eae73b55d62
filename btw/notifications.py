"""
Async notification utilities using notify-send.

Provides fast, non-blocking desktop notifications. Passive notifications are
fire-and-forget; confirmation prompts and answers with an "Open in browser"
button wait for the chosen action on notify-send's stdout.
"""

import asyncio
import logging
from typing import List, Literal, Optional, Sequence, Set, Tuple
from urllib.parse import quote_plus

logger = logging.getLogger(__name__)


UrgencyLevel = Literal["low", "normal", "critical"]

# Quote characters some daemons turn into COPY actions
_QUOTES = str.maketrans("", "", "\"'“”‘’`")

INFO_HINTS = (
    "string:x-canonical-private-synchronous:btwd-info",
    "string:category:im.received",
    "int:transient:1",
)
ANSWER_HINTS = (
    "string:x-canonical-private-synchronous:btwd-answer",
    "string:category:im.received",
    "int:transient:1",
)


def sanitize_body(body: str) -> str:
    """Keep passive bodies plain and unquoted"""
    return body.translate(_QUOTES)


def web_search_url(query: str) -> str:
    return f"https://www.google.com/search?q={quote_plus(query)}"


def build_command(
    title: str,
    message: str,
    urgency: UrgencyLevel = "normal",
    timeout: int = 5000,
    hints: Sequence[str] = (),
    actions: Sequence[Tuple[str, str]] = (),
) -> List[str]:
    cmd = ["notify-send", "-u", urgency, "-t", str(timeout)]
    for hint in hints:
        cmd += ["-h", hint]
    for key, label in actions:
        cmd += ["--action", f"{key}={label}"]
    cmd += [title, message]
    return cmd


async def send_notification_async(
    title: str,
    message: str,
    urgency: UrgencyLevel = "normal",
    timeout: int = 5000,
    hints: Sequence[str] = (),
) -> bool:
    """
    Send desktop notification using notify-send (async, non-blocking).

    Returns:
        True if notification sent successfully
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *build_command(title, message, urgency, timeout, hints),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL
        )

        await proc.wait()
        return proc.returncode == 0

    except OSError as e:
        logger.error(f"Failed to send notification: {e}")
        return False


async def send_action_notification_async(
    title: str,
    message: str,
    actions: Sequence[Tuple[str, str]],
    urgency: UrgencyLevel = "normal",
    timeout: int = 5000,
    hints: Sequence[str] = (),
) -> Optional[str]:
    """
    Show a notification with action buttons and wait for the user.

    Returns:
        The key of the chosen action, or None if dismissed, expired or failed
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *build_command(title, message, urgency, timeout, hints, actions),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL
        )
    except OSError as e:
        logger.error(f"Failed to send notification: {e}")
        return None

    try:
        stdout, _ = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        raise

    if proc.returncode != 0:
        logger.warning(f"notify-send failed: status={proc.returncode}")
        return None

    selection = stdout.decode(errors="replace").strip()
    return selection or None


class Notifier:
    """
    Desktop notifications for the daemon.

    Does nothing when disabled. Background tasks are held until they finish
    so they are not garbage collected mid-flight.
    """

    def __init__(self, enabled: bool = True, timeout_ms: int = 5000, title: str = "Btw",
                 answer_timeout_ms: int = 15000):
        self.enabled = enabled
        self.timeout_ms = timeout_ms
        self.answer_timeout_ms = max(answer_timeout_ms, timeout_ms)
        self.title = title
        self._tasks: Set["asyncio.Task"] = set()

    def _spawn(self, coro) -> Optional["asyncio.Task"]:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.debug("No running loop, notification dropped")
            return None
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def notify(self, message: str, title: Optional[str] = None,
               urgency: UrgencyLevel = "normal") -> None:
        """Fire-and-forget passive notification"""
        if not self.enabled:
            return
        logger.debug(f"notify: {message}")
        self._spawn(send_notification_async(
            title or self.title, sanitize_body(message), urgency, self.timeout_ms, INFO_HINTS
        ))

    def notify_listening(self) -> None:
        self.notify("Listening…", title="btwd", urgency="low")

    def notify_answer(self, answer: str, source: str) -> None:
        if not self.enabled:
            return
        self._spawn(send_notification_async(
            self.title, sanitize_body(f"{answer}\n\n:source: {source}"),
            "normal", self.answer_timeout_ms, ANSWER_HINTS,
        ))

    def notify_answer_with_link(self, answer: str, source: str, query: str) -> Optional["asyncio.Task"]:
        """Answer notification with an "Open in browser" action for a web search of the query"""
        if not self.enabled:
            return None
        return self._spawn(self._answer_with_link(
            sanitize_body(f"{answer}\n\n:source: {source}"), web_search_url(query)
        ))

    async def _answer_with_link(self, body: str, url: str) -> None:
        choice = await send_action_notification_async(
            self.title, body, [("open", "Open in browser")],
            "normal", self.answer_timeout_ms, ANSWER_HINTS,
        )
        if choice == "open":
            await open_url(url)

    async def ask_confirmation(self, message: str, timeout_ms: int) -> Optional[bool]:
        """
        Confirmation prompt with Yes / No buttons.

        Returns True or False for a button press, None when disabled,
        dismissed or expired.
        """
        if not self.enabled:
            return None
        choice = await send_action_notification_async(
            self.title, sanitize_body(message), [("yes", "Yes"), ("no", "No")],
            "critical", timeout_ms,
        )
        if choice == "yes":
            return True
        if choice == "no":
            return False
        return None

    async def drain(self) -> None:
        """Wait for outstanding notifications (used on shutdown and in tests)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()


async def open_url(url: str) -> bool:
    try:
        proc = await asyncio.create_subprocess_exec(
            "xdg-open", url,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL
        )
        await proc.wait()
        return proc.returncode == 0
    except OSError as e:
        logger.error(f"xdg-open error: {e}")
        return False
