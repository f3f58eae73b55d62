"""
Tests for transcript -> intent routing
"""

import pytest

from btw.commands import CommandCatalog
from btw.intent import ExampleMatcher, IntentRouter, extract_slots
from btw.normalization import normalize_example, normalize_text, tokenize


@pytest.fixture
def router(catalog):
    return IntentRouter(catalog)


class TestNormalization:
    def test_case_and_punctuation(self):
        assert normalize_text("Lock my Computer, please!") == "lock my computer please"

    def test_contractions_and_fillers(self):
        assert tokenize("Um, what's the time?") == ["what", "is", "the", "time"]

    def test_example_keeps_slots(self):
        assert normalize_example("Set volume to {level}!") == ["set", "volume", "to", "{level}"]


class TestRouting:
    @pytest.mark.parametrize("text,command_id", [
        ("lock my computer", "lock_screen"),
        ("Lock my computer.", "lock_screen"),
        ("please lock the screen now", "lock_screen"),
        ("power off", "system_shutdown"),
        ("next track", "media_next"),
        ("take a screenshot", "take_screenshot"),
    ])
    def test_commands(self, router, text, command_id):
        intent = router.route(text)
        assert intent.is_command
        assert intent.matched_command.id == command_id
        assert intent.is_complete

    def test_exact_match_scores_one(self, router):
        assert router.route("power off").match_score == pytest.approx(1.0)

    def test_general_query(self, router):
        intent = router.route("what's the capital of France")
        assert intent.is_general
        assert intent.matched_command is None
        assert intent.match_score < 0.6

    def test_empty_text_is_general(self, router):
        assert router.route("").is_general

    def test_slot_from_containment(self, router):
        intent = router.route("set volume to 40")
        assert intent.matched_command.id == "set_volume"
        assert intent.extracted_parameters == {"level": "40"}

    def test_inner_slot_stops_at_next_word(self, router):
        intent = router.route("set the volume to forty percent")
        assert intent.matched_command.id == "set_volume"
        assert intent.extracted_parameters == {"level": "forty"}

    def test_slot_from_keyword_anchor(self, router):
        intent = router.route("set volume up to 30")
        assert intent.matched_command.id == "set_volume"
        assert intent.extracted_parameters == {"level": "30"}

    def test_missing_parameter(self, router):
        intent = router.route("set volume")
        assert intent.matched_command.id == "set_volume"
        assert intent.missing_parameters == ("level",)
        assert not intent.is_complete

    def test_enum_slot(self, router):
        intent = router.route("open firefox")
        assert intent.matched_command.id == "open_application"
        assert intent.extracted_parameters == {"app": "firefox"}

    def test_similarity_below_containment(self, router):
        intent = router.route("lock computer")
        assert intent.matched_command.id == "lock_screen"
        assert intent.match_score < 0.9

    def test_min_confidence_floor(self, catalog):
        strict = IntentRouter(catalog, min_confidence=0.99)
        assert strict.route("please lock the screen now").is_general

    def test_catalog_swap(self, router):
        router.catalog = CommandCatalog.from_data([{
            "id": "hello",
            "examples": ["say hello"],
            "shell_command_template": "echo hello",
        }])
        assert router.route("say hello").matched_command.id == "hello"
        assert router.route("lock my computer").is_general


class TestRanking:
    def test_tie_goes_to_first_declared(self):
        catalog = CommandCatalog.from_data([
            {"id": "first", "examples": ["toggle the lights"], "shell_command_template": "true"},
            {"id": "second", "examples": ["toggle the lights"], "shell_command_template": "true"},
        ])
        ranked = ExampleMatcher().rank("toggle the lights", catalog)
        assert [c.command.id for c in ranked] == ["first", "second"]
        assert ranked[0].score == ranked[1].score
        assert IntentRouter(catalog).route("toggle the lights").matched_command.id == "first"

    def test_containment_beats_similarity(self):
        catalog = CommandCatalog.from_data([
            {"id": "fuzzy", "examples": ["lights kitchen on"], "shell_command_template": "true"},
            {"id": "exact", "examples": ["kitchen lights on"], "shell_command_template": "true"},
        ])
        ranked = ExampleMatcher().rank("turn the kitchen lights on", catalog)
        assert ranked[0].command.id == "exact"

    def test_zero_scores_dropped(self, catalog):
        assert ExampleMatcher().rank("xyzzy plugh", catalog) == []


class TestExtractSlots:
    def test_anchor_before_and_after(self):
        example = normalize_example("set brightness to {percent} percent")
        tokens = tokenize("please set brightness to fifty percent now")
        assert extract_slots(example, tokens) == {"percent": "fifty"}

    def test_trailing_slot_last_token(self):
        example = normalize_example("launch {app}")
        assert extract_slots(example, tokenize("could you firefox")) == {"app": "firefox"}

    def test_trailing_slot_skips_example_words(self):
        example = normalize_example("set volume to {level}")
        assert extract_slots(example, tokenize("set volume")) == {}


class TestTypedSlotTies:
    @pytest.mark.parametrize("text,command_id,params", [
        ("set volume to 50 percent", "set_volume", {"level": "50"}),
        ("set volume to fifty percent", "set_volume", {"level": "fifty"}),
        ("set brightness to 40 percent", "set_brightness", {"percent": "40"}),
    ])
    def test_example_with_valid_slot_wins(self, router, text, command_id, params):
        intent = router.route(text)
        assert intent.matched_command.id == command_id
        assert intent.extracted_parameters == params
        assert intent.matched_example.endswith("percent")

    def test_plain_value_keeps_first_example(self, router):
        intent = router.route("set volume to 40")
        assert intent.matched_example == "set volume to {level}"

    def test_invalid_value_still_matches(self, router):
        # Nothing validates, so the command is still chosen and the
        # pipeline reports the bad value
        intent = router.route("set volume to 900")
        assert intent.matched_command.id == "set_volume"
        assert intent.extracted_parameters == {"level": "900"}


class TestFragments:
    @pytest.mark.parametrize("text", ["screen", "next", "trash", "sleep", "volume"])
    def test_single_word_fragment_is_general(self, router, text):
        assert router.route(text).is_general

    @pytest.mark.parametrize("text,command_id", [
        ("mute", "mute_toggle"),
        ("reboot", "system_reboot"),
        ("screenshot", "take_screenshot"),
    ])
    def test_single_word_examples_still_match(self, router, text, command_id):
        assert router.route(text).matched_command.id == command_id

    def test_half_the_words_is_not_enough(self):
        catalog = CommandCatalog.from_data([
            {"id": "lights", "examples": ["kitchen lights on"], "shell_command_template": "true"},
        ])
        assert ExampleMatcher().rank("lights please", catalog) == []
        assert ExampleMatcher().rank("kitchen lights please", catalog)[0].command.id == "lights"
