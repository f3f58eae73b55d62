"""
Tests for transcript handling end to end (fake runner, LLM and notifier)
"""

import asyncio

import pytest

from btw.commands import ParameterType, load_catalog
from btw.errors import CatalogError
from btw.pipeline import (
    ABORTED,
    ANSWERED,
    CLARIFY,
    CONFIRMATION_REQUESTED,
    EXECUTED,
    IGNORED,
    REJECTED,
)

from conftest import FakeLLM, FakeNotifier, FakeRunner, make_assistant


class TestCommands:
    @pytest.mark.asyncio
    async def test_safe_command_executes(self, catalog, runner, notifier, speaker):
        assistant = make_assistant(catalog, runner, notifier=notifier, speaker=speaker)

        outcome = await assistant.handle_transcript("lock my computer")

        assert outcome.kind == EXECUTED
        assert outcome.execution.ok
        assert runner.commands == ["loginctl lock-session"]
        assert notifier.messages == ["Done: lock_screen"]
        # Success is shown, not spoken
        assert speaker.spoken == []

    @pytest.mark.asyncio
    async def test_failed_command_is_spoken(self, catalog, notifier, speaker):
        runner = FakeRunner(exit_code=1, stderr="no session")
        assistant = make_assistant(catalog, runner, notifier=notifier, speaker=speaker)

        outcome = await assistant.handle_transcript("lock my computer")

        assert outcome.kind == EXECUTED
        assert not outcome.execution.ok
        assert speaker.spoken == ["lock_screen failed (exit 1): no session"]

    @pytest.mark.asyncio
    async def test_dry_run(self, catalog, runner):
        assistant = make_assistant(catalog, runner, dry_run=True)
        outcome = await assistant.handle_transcript("set volume to 40")
        assert outcome.message == "Dry run: pactl set-sink-volume @DEFAULT_SINK@ 40%"
        assert runner.commands == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text,rendered", [
        ("set volume to 50 percent", "pactl set-sink-volume @DEFAULT_SINK@ 50%"),
        ("set volume to fifty percent", "pactl set-sink-volume @DEFAULT_SINK@ 50%"),
        ("set brightness to 40 percent", "brightnessctl set 40%"),
    ])
    async def test_percent_phrasing_executes(self, catalog, runner, notifier, text, rendered):
        assistant = make_assistant(catalog, runner, notifier=notifier)
        outcome = await assistant.handle_transcript(text)
        assert outcome.kind == EXECUTED
        assert runner.commands == [rendered]

    @pytest.mark.asyncio
    async def test_missing_parameter_asks(self, catalog, runner, notifier):
        assistant = make_assistant(catalog, runner, notifier=notifier)
        outcome = await assistant.handle_transcript("set volume")
        assert outcome.kind == CLARIFY
        assert "level" in outcome.message
        assert runner.commands == []

    @pytest.mark.asyncio
    async def test_invalid_parameter_aborts(self, catalog, runner, notifier):
        assistant = make_assistant(catalog, runner, notifier=notifier)
        outcome = await assistant.handle_transcript("set volume to 900")
        assert outcome.kind == ABORTED
        assert "at most 150" in outcome.message
        assert runner.commands == []

    @pytest.mark.asyncio
    async def test_fatal_errors_propagate(self, catalog, runner):
        assistant = make_assistant(catalog, runner)

        def broken(text):
            raise CatalogError("catalog vanished")

        assistant.router.route = broken
        with pytest.raises(CatalogError):
            await assistant.handle_transcript("lock my computer")


class TestConfirmation:
    @pytest.mark.asyncio
    async def test_yes_executes(self, catalog, runner, notifier, speaker):
        assistant = make_assistant(catalog, runner, notifier=notifier, speaker=speaker)

        outcome = await assistant.handle_transcript("power off")
        assert outcome.kind == CONFIRMATION_REQUESTED
        assert "Say yes or no within 10 seconds" in outcome.message
        assert speaker.spoken == [outcome.message]
        assert runner.commands == []

        outcome = await assistant.handle_transcript("yes")
        assert outcome.kind == EXECUTED
        assert runner.commands == ["systemctl poweroff"]

    @pytest.mark.asyncio
    async def test_no_cancels(self, catalog, runner, notifier):
        assistant = make_assistant(catalog, runner, notifier=notifier)
        await assistant.handle_transcript("reboot")

        outcome = await assistant.handle_transcript("no")

        assert outcome.kind == ABORTED
        assert outcome.message == "Cancelled system reboot."
        assert runner.commands == []

    @pytest.mark.asyncio
    async def test_timeout_never_executes(self, catalog, runner, notifier):
        assistant = make_assistant(catalog, runner, notifier=notifier, confirmation_timeout=0.05)
        await assistant.handle_transcript("power off")

        outcome = await assistant.wait_for_confirmation()

        assert outcome.kind == ABORTED
        assert outcome.message == "No confirmation, system shutdown cancelled."
        assert runner.commands == []

        # Too late: "yes" is now an ordinary (general) utterance
        outcome = await assistant.handle_transcript("yes")
        assert outcome.kind == ANSWERED
        assert runner.commands == []

    @pytest.mark.asyncio
    async def test_other_speech_ignored_while_pending(self, catalog, runner, notifier):
        assistant = make_assistant(catalog, runner, notifier=notifier)
        await assistant.handle_transcript("power off")

        outcome = await assistant.handle_transcript("lock my computer")

        assert outcome.kind == IGNORED
        assert "Say yes or no" in outcome.message
        assert runner.commands == []
        assert assistant.safety.has_pending
        await assistant.shutdown()

    @pytest.mark.asyncio
    async def test_second_dangerous_command_rejected(self, catalog, runner, notifier):
        assistant = make_assistant(catalog, runner, notifier=notifier)
        first = await assistant.handle_transcript("power off")

        outcome = await assistant.handle_transcript("reboot")

        assert outcome.kind == REJECTED
        assert assistant.safety.pending is first.request

        outcome = await assistant.handle_transcript("yes")
        assert outcome.kind == EXECUTED
        assert runner.commands == ["systemctl poweroff"]

    @pytest.mark.asyncio
    async def test_notification_action_confirms(self, catalog, runner):
        notifier = FakeNotifier(enabled=True, confirmation=True)
        assistant = make_assistant(catalog, runner, notifier=notifier)

        outcome = await assistant.handle_transcript("empty the trash")
        assert outcome.kind == CONFIRMATION_REQUESTED

        outcome = await assistant.wait_for_confirmation()

        assert outcome.kind == EXECUTED
        assert runner.commands == ["gio trash --empty"]
        assert assistant.safety.pending is None
        assert len(notifier.prompts) == 1

    @pytest.mark.asyncio
    async def test_dismissed_notification_leaves_voice_open(self, catalog, runner):
        notifier = FakeNotifier(enabled=True, confirmation=None)
        assistant = make_assistant(catalog, runner, notifier=notifier)
        await assistant.handle_transcript("empty the trash")
        await asyncio.sleep(0)

        assert assistant.safety.has_pending
        outcome = await assistant.handle_transcript("confirm")
        assert outcome.kind == EXECUTED
        assert runner.commands == ["gio trash --empty"]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending(self, catalog, runner):
        assistant = make_assistant(catalog, runner)
        request = (await assistant.handle_transcript("power off")).request

        await assistant.shutdown()

        assert not request.is_pending
        assert assistant.safety.pending is None
        assert runner.commands == []


class TestGeneralQueries:
    @pytest.mark.asyncio
    async def test_answer_delivered(self, catalog, runner, speaker):
        notifier = FakeNotifier(enabled=True)
        assistant = make_assistant(catalog, runner, notifier=notifier, speaker=speaker,
                                   llm=FakeLLM("Paris."))

        outcome = await assistant.handle_transcript("what's the capital of France")

        assert outcome.kind == ANSWERED
        assert outcome.answer.text == "Paris."
        assert notifier.answers == [{"text": "Paris.", "source": "llm", "link": None}]
        assert speaker.spoken == ["Paris."]
        assert runner.commands == []

    @pytest.mark.asyncio
    async def test_llm_failure_says_dont_know(self, catalog, runner):
        assistant = make_assistant(catalog, runner, llm=FakeLLM())
        outcome = await assistant.handle_transcript("what's the capital of France")
        assert outcome.kind == ANSWERED
        assert outcome.message == "I don't know."


def sample_transcript(command):
    """The command's first example with an acceptable value in every slot"""
    text = command.examples[0]
    for name, spec in command.parameters.items():
        if spec.type is ParameterType.ENUM:
            value = spec.choices[0]
        elif spec.type in (ParameterType.INTEGER, ParameterType.NUMBER):
            value = str(int(spec.minimum or 0) + 1)
        else:
            value = "test"
        text = text.replace("{" + name + "}", value)
    return text


PACKAGED = list(load_catalog())


class TestDryRunCatalog:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", PACKAGED, ids=[c.id for c in PACKAGED])
    async def test_no_process_spawned(self, catalog, runner, command):
        assistant = make_assistant(catalog, runner, dry_run=True)

        outcome = await assistant.handle_transcript(sample_transcript(command))
        assert outcome.intent.matched_command.id == command.id

        if command.dangerous:
            assert outcome.kind == CONFIRMATION_REQUESTED
            outcome = await assistant.handle_transcript("yes")

        assert outcome.kind == EXECUTED
        assert outcome.execution.dry_run
        assert outcome.message.startswith("Dry run: ")
        assert runner.commands == []
