#!/usr/bin/env python3
"""
btw - voice-activated local assistant
Runs the wake word daemon, or routes a single text transcript
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from .commands import CommandCatalog, load_catalog
from .config import BtwConfig, init_config
from .errors import BtwError, ErrorCategory, LLMError, SpeechError
from .intent import IntentRouter
from .llm import create_llm
from .logs import setup_logging
from .notifications import Notifier
from .pipeline import CONFIRMATION_REQUESTED, Assistant
from .responder import ResponseRouter
from .safety import CommandRunner, CommandSafety
from .search import TavilySearch
from .session import SessionMachine

logger = logging.getLogger("btw")


def build_assistant(
    config: BtwConfig,
    catalog: CommandCatalog,
    dry_run: bool = False,
    speak: bool = True,
) -> Assistant:
    """Wire router, safety machine and responder from configuration."""
    execution = config.get_execution_config()
    ui = config.get_ui_config()

    notifier = Notifier(
        enabled=ui["osd"],
        timeout_ms=ui["osd_timeout_ms"],
        answer_timeout_ms=ui["answer_timeout_ms"],
    )

    speaker = None
    if speak:
        from .tts import create_speaker
        try:
            speaker = create_speaker(config.get_speech_output_config())
        except SpeechError as e:
            logger.warning(f"Speech output disabled: {e.message}")

    try:
        llm = create_llm(config.get_llm_config())
    except LLMError as e:
        logger.warning(f"LLM unavailable, general questions will not be answered: {e.message}")
        llm = None

    responder = ResponseRouter(
        llm=llm,
        search=TavilySearch(),
        speaker=speaker,
        notifier=notifier,
        search_cfg=config.get_search_config(),
    )
    safety = CommandSafety(
        runner=CommandRunner(default_timeout=execution["command_timeout_seconds"]),
        confirmation_timeout_seconds=execution["confirmation_timeout_seconds"],
        dry_run=dry_run or execution["dry_run"],
        command_timeout_seconds=execution["command_timeout_seconds"],
    )
    router = IntentRouter(catalog, min_confidence=config.get_intent_config()["min_confidence"])

    return Assistant(
        router=router,
        safety=safety,
        responder=responder,
        notifier=notifier,
        speaker=speaker,
        session=SessionMachine(),
        affirmative=execution["affirmative"],
        negative=execution["negative"],
        confirm_via_notification=execution["confirm_via_notification"],
    )


async def run_once(assistant: Assistant, text: str) -> int:
    """Route one transcript, waiting for a confirmation if one is requested."""
    try:
        outcome = await assistant.handle_transcript(text)
        print(outcome.message)
        if outcome.kind == CONFIRMATION_REQUESTED:
            outcome = await assistant.wait_for_confirmation()
            if outcome is not None:
                print(outcome.message)
        if assistant.speaker is not None:
            await assistant.speaker.wait()
        if assistant.notifier is not None:
            await assistant.notifier.drain()
        if outcome is not None and outcome.execution is not None and not outcome.execution.ok:
            return 1
        return 0
    finally:
        await assistant.shutdown()


async def run_daemon(config: BtwConfig, assistant: Assistant, commands_path: Optional[str]) -> int:
    """Open the microphone and listen until SIGINT/SIGTERM."""
    from .audio import FrameSource
    from .listener import VoiceListener
    from .segmenter import UtteranceSegmenter
    from .transcription import TranscriptionBridge, create_transcriber
    from .wake import WakeGate, build_detector

    audio_cfg = config.get_audio_config()
    stt_cfg = config.get_stt_config()

    detector = build_detector(config.get_wake_config())
    source = FrameSource(
        sample_rate=detector.sample_rate,
        frame_length=audio_cfg["frame_length"],
        device=audio_cfg["device"],
        queue_size=audio_cfg["queue_size"],
    )
    segmenter = UtteranceSegmenter(sample_rate=detector.sample_rate, **config.get_speech_config())
    bridge = TranscriptionBridge(create_transcriber(stt_cfg), stt_cfg["timeout_seconds"])

    listener = VoiceListener(
        source=source,
        wake_gate=WakeGate(detector),
        segmenter=segmenter,
        bridge=bridge,
        assistant=assistant,
        notifier=assistant.notifier,
        speaker=assistant.speaker,
        stop_on_wake=bool(config.get("speech_output", "stop_on_wake", True)),
    )

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, listener.stop)
    loop.add_signal_handler(signal.SIGTERM, listener.stop)
    loop.add_signal_handler(signal.SIGHUP, lambda: listener.reload_catalog(commands_path))

    await listener.run()
    return 0


def list_commands(catalog: CommandCatalog) -> None:
    for command in catalog:
        flag = " [dangerous]" if command.dangerous else ""
        print(f"{command.id}{flag} - {command.description}")
        print(f"    examples: {'; '.join(command.examples)}")
        print(f"    runs:     {command.shell_command_template}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="btw",
        description="btw - voice-activated local assistant",
        epilog="Examples:\n"
               "  btw                          # Wake word daemon\n"
               "  btw 'lock my computer'       # Route one transcript\n"
               "  btw --dry-run 'power off'    # Resolve without running\n"
               "  btw --list-commands          # Show the command catalog\n",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "text",
        nargs="*",
        help="Transcript to route instead of listening"
    )
    parser.add_argument(
        "--config",
        help="Path to config.toml (default: $XDG_CONFIG_HOME/btw/config.toml)"
    )
    parser.add_argument(
        "--commands",
        help="Path to commands.json (default: $XDG_CONFIG_HOME/btw/commands.json)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Resolve commands but never run them"
    )
    parser.add_argument(
        "--list-commands",
        action="store_true",
        help="Print the command catalog and exit"
    )
    parser.add_argument(
        "--no-speech",
        action="store_true",
        help="Disable spoken responses"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args(argv)

    try:
        config = init_config(args.config)
        log_cfg = config.get_logging_config()
        setup_logging("DEBUG" if args.verbose else log_cfg["level"], log_cfg["file"])

        commands_path = args.commands or str(config.commands_path)
        catalog = load_catalog(commands_path)

        if args.list_commands:
            list_commands(catalog)
            return 0

        assistant = build_assistant(config, catalog, dry_run=args.dry_run, speak=not args.no_speech)

        if args.text:
            return asyncio.run(run_once(assistant, " ".join(args.text)))
        return asyncio.run(run_daemon(config, assistant, commands_path))

    except BtwError as e:
        if e.category is not ErrorCategory.FATAL:
            logger.error(f"{type(e).__name__}: {e.message}")
            return 1
        logger.error(f"Fatal: {type(e).__name__}: {e.message}")
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
