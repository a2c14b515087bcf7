"""
Tests for command_parser.py - prefix classification and field splitting.
"""
import pytest

from command_parser import (
    parse_command, normalize_line, CommandContext,
    ListCommands, CompleteTask, AddSchedule, AddProject, AddTask, UnrecognizedCommand,
)


@pytest.fixture
def ctx():
    return CommandContext(room_code="R", sender_id="u1", username="kim")


class TestClassification:
    """Each prefix maps to exactly one command variant."""

    @pytest.mark.parametrize("line,kind", [
        ("!commands", ListCommands),
        ("!help", ListCommands),
        ("!명령어", ListCommands),
        ("!done Capstone, design", CompleteTask),
        ("!과제완료 Capstone, design", CompleteTask),
        ("!schedule standup, tomorrow, 09:30", AddSchedule),
        ("!일정 회의, 내일, 10:00", AddSchedule),
        ("!project Capstone", AddProject),
        ("!프로젝트 캡스톤 최종", AddProject),
        ("!task Capstone, design, Kim", AddTask),
        ("!과제 캡스톤, 설계, 김", AddTask),
        ("hello everyone", UnrecognizedCommand),
    ])
    def test_prefixes(self, ctx, line, kind):
        assert isinstance(parse_command(line, ctx), kind)

    def test_longest_prefix_wins(self, ctx):
        """The completion prefix starts with the task prefix."""
        command = parse_command("!과제완료 P, T", ctx)
        assert isinstance(command, CompleteTask)
        assert command.fields == ["P", "T"]

    def test_prefix_needs_word_boundary(self, ctx):
        assert isinstance(parse_command("!tasks are fun", ctx), UnrecognizedCommand)
        assert isinstance(parse_command("!projector broken", ctx), UnrecognizedCommand)

    def test_prefix_in_middle_is_chat(self, ctx):
        assert isinstance(parse_command("try !task later", ctx), UnrecognizedCommand)

    def test_context_is_carried(self, ctx):
        command = parse_command("!task a, b, c", ctx)
        assert command.context is ctx


class TestFields:
    """Field extraction does not validate anything."""

    def test_fields_are_trimmed(self, ctx):
        command = parse_command("!task  Capstone ,  design,Kim , completed ", ctx)
        assert command.fields == ["Capstone", "design", "Kim", "completed"]

    def test_missing_fields_are_kept_short(self, ctx):
        assert parse_command("!task Capstone, design", ctx).fields == ["Capstone", "design"]

    def test_no_remainder_means_no_fields(self, ctx):
        assert parse_command("!schedule", ctx).fields == []

    def test_empty_fields_preserved(self, ctx):
        assert parse_command("!task a, , c", ctx).fields == ["a", "", "c"]

    def test_project_name_is_not_split(self, ctx):
        command = parse_command("!project  Final, part 2  ", ctx)
        assert command.name == "Final, part 2"

    def test_plain_chat_text_untouched(self, ctx):
        command = parse_command("  hi, there  ", ctx)
        assert command.text == "hi, there"


class TestNormalize:
    def test_strips_line_breaks(self):
        assert normalize_line("!task a,\r\n b, c\n") == "!task a, b, c"

    def test_nfkc(self):
        # Fullwidth exclamation mark and letters
        assert normalize_line("！ｔａｓｋ a, b, c") == "!task a, b, c"

    def test_none(self):
        assert normalize_line(None) == ""
