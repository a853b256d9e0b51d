"""Tests for response_analyzer module."""

import pytest

from config import ExitDetectionConfig
from response_analyzer import (
    COMPLETION_SIGNALS,
    PERMISSION_DENIED,
    PLAN_COMPLETE,
    PROJECT_COMPLETE,
    SAFETY_CIRCUIT_BREAKER,
    TEST_SATURATION,
    ExitSignalAnalyzer,
    ExitSignalWindow,
    classify_output,
    clear_exit_signals,
    count_plan_items,
    detect_errors,
    is_test_only_text,
    parse_status_block,
)
from state_store import StateStore

from helpers import FakeClock, bash_denial, build_json_result, status_block


@pytest.fixture
def analyzer(store: StateStore, clock: FakeClock) -> ExitSignalAnalyzer:
    return ExitSignalAnalyzer(store, ExitDetectionConfig(), clock=clock)


def working_output(files: int = 2) -> str:
    return "Added the settings page.\n\n" + status_block(files_modified=files)


class TestParseStatusBlock:
    def test_fields_parsed(self) -> None:
        fields = parse_status_block(status_block(status="COMPLETE", exit_signal=True))
        assert fields["STATUS"] == "COMPLETE"
        assert fields["EXIT_SIGNAL"] == "true"
        assert fields["FILES_MODIFIED"] == "2"

    def test_last_block_wins(self) -> None:
        text = status_block(status="IN_PROGRESS") + "\nmore work\n" + status_block(status="BLOCKED")
        assert parse_status_block(text)["STATUS"] == "BLOCKED"

    def test_no_block(self) -> None:
        assert parse_status_block("no status here") == {}


class TestDetectErrors:
    def test_real_error_line(self) -> None:
        raw = "compiling...\nError: Cannot find module 'left-pad'\ndone"
        assert detect_errors(raw) == "Error: Cannot find module 'left-pad'"

    def test_json_error_fields_are_not_errors(self) -> None:
        raw = '{\n  "is_error": false,\n  "error_count": 0\n}'
        assert detect_errors(raw) is None

    def test_clean_output(self) -> None:
        assert detect_errors("All 42 tests passed") is None


class TestTestOnlyHeuristic:
    def test_only_running_tests(self) -> None:
        assert is_test_only_text("Running tests with pytest, all tests pass.")

    def test_tests_plus_implementation(self) -> None:
        assert not is_test_only_text("Implementing the parser, then running tests.")

    def test_no_test_activity(self) -> None:
        assert not is_test_only_text("Reviewed the README.")


class TestClassifyOutput:
    def test_status_block_drives_signals(self) -> None:
        raw = "Finished.\n" + status_block(status="COMPLETE", exit_signal=True, files_modified=5)
        analysis = classify_output(raw, loop_number=7)
        assert analysis.loop_number == 7
        assert analysis.exit_signal is True
        assert analysis.completion_indicator is True
        assert analysis.done_signal is True
        assert analysis.files_modified == 5
        assert analysis.confidence_score == 80

    def test_phrase_counts_as_done_but_not_completion_indicator(self) -> None:
        analysis = classify_output(
            "All tasks complete. Nothing else to do.",
            completion_phrases=["all tasks complete"],
        )
        assert analysis.done_signal is True
        assert analysis.completion_indicator is False
        assert analysis.exit_signal is False

    def test_work_type_testing_is_test_only(self) -> None:
        analysis = classify_output(status_block(work_type="TESTING"))
        assert analysis.is_test_only is True

    def test_json_result_carries_session_and_denials(self) -> None:
        raw = build_json_result(
            "Tried to install dependencies.",
            session_id="sess-77",
            permission_denials=[bash_denial("npm install express")],
        )
        analysis = classify_output(raw)
        assert analysis.output_format == "json"
        assert analysis.session_id == "sess-77"
        assert analysis.has_permission_denials is True
        assert analysis.denied_commands == ["Bash(npm install)"]
        assert analysis.has_errors is False
        assert (analysis.cost_usd, analysis.num_turns) == (0.05, 4)

    def test_error_flagged_result_counts_as_error(self) -> None:
        analysis = classify_output(build_json_result("Tool crashed while building", is_error=True))
        assert analysis.has_errors is True
        assert analysis.error_line == "Tool crashed while building"

    def test_status_block_inside_json_result(self) -> None:
        raw = build_json_result("Done.\n" + status_block(exit_signal=True))
        assert classify_output(raw).exit_signal is True

    def test_summary_prefers_recommendation(self) -> None:
        analysis = classify_output(status_block(recommendation="Wire up the CLI next"))
        assert analysis.work_summary == "Wire up the CLI next"
        assert classify_output("\n\nFirst line\nsecond").work_summary == "First line"


class TestSignalWindow:
    def test_window_caps_at_five_and_keeps_latest(
        self, analyzer: ExitSignalAnalyzer
    ) -> None:
        for loop in range(1, 9):
            analyzer.analyze(status_block(work_type="TESTING"), loop)
        assert analyzer.window().test_only_loops == [4, 5, 6, 7, 8]

    def test_negative_loops_do_not_remove_entries(
        self, analyzer: ExitSignalAnalyzer
    ) -> None:
        analyzer.analyze(status_block(exit_signal=True), 1)
        analyzer.analyze(working_output(), 2)
        analyzer.analyze(working_output(), 3)
        assert analyzer.window().completion_indicators == [1]

    def test_clear_empties_window_and_analysis(
        self, analyzer: ExitSignalAnalyzer, store: StateStore
    ) -> None:
        analyzer.analyze(status_block(status="COMPLETE", exit_signal=True), 1)
        clear_exit_signals(store)
        assert analyzer.window() == ExitSignalWindow()
        assert analyzer.latest() is None
        assert not store.response_analysis_file.exists()


class TestShouldExit:
    def test_keep_going_on_normal_work(self, analyzer: ExitSignalAnalyzer) -> None:
        analyzer.analyze(working_output(), 1)
        assert analyzer.should_exit() == ""

    def test_permission_denial_takes_priority(self, analyzer: ExitSignalAnalyzer) -> None:
        """A denial wins even when completion indicators already qualify."""
        analyzer.analyze(status_block(exit_signal=True), 1)
        analyzer.analyze(status_block(exit_signal=True), 2)
        raw = build_json_result(
            status_block(exit_signal=True),
            permission_denials=[bash_denial("git push origin main")],
        )
        analyzer.analyze(raw, 3)
        assert analyzer.should_exit() == PERMISSION_DENIED

    def test_test_saturation(self, analyzer: ExitSignalAnalyzer) -> None:
        for loop in range(1, 4):
            analyzer.analyze(status_block(work_type="TESTING"), loop)
        assert analyzer.should_exit() == TEST_SATURATION

    def test_two_done_signals(self, analyzer: ExitSignalAnalyzer) -> None:
        analyzer.analyze("The project is complete.", 1)
        assert analyzer.should_exit() == ""
        analyzer.analyze("Project complete, ready for review.", 2)
        assert analyzer.should_exit() == COMPLETION_SIGNALS

    def test_project_complete_needs_latest_exit_signal(
        self, analyzer: ExitSignalAnalyzer
    ) -> None:
        analyzer.analyze(status_block(exit_signal=True), 1)
        analyzer.analyze(working_output(), 2)
        analyzer.analyze(status_block(exit_signal=True), 3)
        assert analyzer.should_exit() == PROJECT_COMPLETE

    def test_indicators_without_latest_exit_signal_keep_going(
        self, analyzer: ExitSignalAnalyzer
    ) -> None:
        analyzer.analyze(status_block(exit_signal=True), 1)
        analyzer.analyze(status_block(exit_signal=True), 2)
        analyzer.analyze(working_output(), 3)
        assert analyzer.should_exit() == ""

    def test_safety_breaker_at_five_indicators(
        self, analyzer: ExitSignalAnalyzer, store: StateStore
    ) -> None:
        store.save_model(
            store.exit_signals_file,
            ExitSignalWindow(completion_indicators=[1, 2, 3, 4, 5]),
        )
        analyzer.record(classify_output(working_output(), loop_number=6))
        assert analyzer.should_exit() == SAFETY_CIRCUIT_BREAKER

    def test_plan_complete(self, analyzer: ExitSignalAnalyzer) -> None:
        analyzer.plan_file.write_text("# Plan\n- [x] login\n- [X] logout\n", encoding="utf-8")
        analyzer.analyze(working_output(), 1)
        assert analyzer.should_exit() == PLAN_COMPLETE

    def test_plan_with_open_items_keeps_going(self, analyzer: ExitSignalAnalyzer) -> None:
        analyzer.plan_file.write_text("- [x] login\n- [ ] logout\n", encoding="utf-8")
        analyzer.analyze(working_output(), 1)
        assert analyzer.should_exit() == ""


class TestCountPlanItems:
    def test_counts(self, tmp_path) -> None:
        plan = tmp_path / "fix_plan.md"
        plan.write_text("- [ ] a\n  - [x] b\n- [ ] c\nnot - [ ] inline\n", encoding="utf-8")
        assert count_plan_items(plan) == (2, 1)

    def test_missing_file(self, tmp_path) -> None:
        assert count_plan_items(tmp_path / "nope.md") == (0, 0)
